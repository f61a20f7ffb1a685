"""Ingest job payload structure."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class IngestJobReason(str, enum.Enum):
    INGEST_RECEIVED = "INGEST_RECEIVED"
    REPLAY = "REPLAY"
    RETRY = "RETRY"


@dataclass(slots=True)
class IngestJob:
    event_key: str
    attempt_number: int = 1
    reason: str = IngestJobReason.INGEST_RECEIVED.value
    correlation_id: Optional[str] = None

    def next_attempt(self) -> "IngestJob":
        return IngestJob(
            event_key=self.event_key,
            attempt_number=self.attempt_number + 1,
            reason=IngestJobReason.RETRY.value,
            correlation_id=self.correlation_id,
        )


__all__ = ["IngestJob", "IngestJobReason"]
