"""Fixed-schedule retry delays for ingest processing."""
from __future__ import annotations

from typing import Optional, Sequence

from ops_bridge.config import RETRY_POLICY


def retry_delay_seconds(attempt: int, delays: Optional[Sequence[int]] = None) -> int:
    """Delay before the attempt after ``attempt``; the last entry repeats once exhausted."""
    schedule = list(delays if delays is not None else RETRY_POLICY["delays_seconds"])  # type: ignore[arg-type]
    if not schedule:
        raise ValueError("Retry delay schedule is empty")
    if attempt < 1:
        attempt = 1
    return int(schedule[min(attempt - 1, len(schedule) - 1)])


def should_retry(attempt: int, retryable: bool, max_attempts: Optional[int] = None) -> bool:
    cap = int(max_attempts if max_attempts is not None else RETRY_POLICY["max_attempts"])  # type: ignore[arg-type]
    return retryable and attempt < cap


__all__ = ["retry_delay_seconds", "should_retry"]
