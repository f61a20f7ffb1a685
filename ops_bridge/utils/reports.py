"""JSON + markdown run reports under ``<report_dir>/<batch_code>/``."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from .time import file_stamp


def markdown_json_block(value: Any) -> list[str]:
    return ["```json", json.dumps(value, indent=2, default=str), "```"]


def write_report_files(
    report: dict[str, Any],
    markdown_lines: Iterable[str],
    *,
    report_dir: str,
    batch_code: str,
    slug: str,
) -> tuple[str, str]:
    directory = Path(report_dir) / batch_code
    directory.mkdir(parents=True, exist_ok=True)
    stamp = file_stamp()
    json_path = directory / f"{stamp}-{slug}.json"
    md_path = directory / f"{stamp}-{slug}.md"
    json_path.write_text(json.dumps(report, indent=2, default=str) + "\n", encoding="utf-8")
    md_path.write_text("\n".join(markdown_lines) + "\n", encoding="utf-8")
    return str(json_path), str(md_path)


__all__ = ["markdown_json_block", "write_report_files"]
