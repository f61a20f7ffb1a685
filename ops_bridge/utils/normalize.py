"""Value normalization for raw source rows.

Source systems hand back loosely typed values (strings for numbers, several
truthy spellings, naive timestamps). These helpers never raise: unparseable
input falls back to the given default.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

_WHITESPACE = re.compile(r"\s+")
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def norm_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    out = _WHITESPACE.sub(" ", str(value)).strip()
    return out or None


def norm_upper(value: Any) -> Optional[str]:
    out = norm_text(value)
    return out.upper() if out else None


def norm_slug(value: Any) -> Optional[str]:
    out = norm_text(value)
    if not out:
        return None
    slug = _SLUG_STRIP.sub("-", out.lower()).strip("-")
    return slug or None


def norm_currency(value: Any, fallback: str = "USD") -> str:
    out = norm_upper(value)
    return out[:3] if out else fallback


def parse_num(value: Any, fallback: Optional[float] = 0.0) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return fallback


def parse_int_or(value: Any, fallback: Optional[int] = 0) -> Optional[int]:
    """Truncate to a non-negative int; anything else yields ``fallback``."""
    number = parse_num(value, None)
    if number is None or number != number or number < 0:
        return fallback
    return int(number)


def parse_bool(value: Any, fallback: bool = False) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    raw = str(value).strip().lower()
    if raw in {"1", "true", "t", "yes", "y"}:
        return True
    if raw in {"0", "false", "f", "no", "n"}:
        return False
    return fallback


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse a timestamp into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        raw = str(value).strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date_only(value: Any) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    parsed = parse_iso(value)
    return parsed.date() if parsed else None


__all__ = [
    "norm_text",
    "norm_upper",
    "norm_slug",
    "norm_currency",
    "parse_num",
    "parse_int_or",
    "parse_bool",
    "parse_iso",
    "parse_date_only",
]
