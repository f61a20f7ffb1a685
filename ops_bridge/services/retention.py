"""Retention cleanup for ingest history, dead letters and closed mapping entries."""
from __future__ import annotations

from datetime import timedelta
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from ops_bridge.config import RETENTION_SETTINGS
from ops_bridge.models.db import IngestDeadLetter, IngestEventLog, UnmappedQueue
from ops_bridge.models.db.enums import DeadLetterStatus, IngestProcessStatus, UnmappedStatus
from ops_bridge.utils import get_logger, log_business_event
from ops_bridge.utils.time import Clock, utc_now

logger = get_logger(__name__)

TERMINAL_DEAD_LETTER_STATUSES = (
    DeadLetterStatus.RESOLVED.value,
    DeadLetterStatus.SUCCEEDED.value,
    DeadLetterStatus.CLOSED.value,
    DeadLetterStatus.FAILED.value,
)
SETTLED_EVENT_STATUSES = (IngestProcessStatus.DONE.value, IngestProcessStatus.FAILED.value)
CLOSED_UNMAPPED_STATUSES = (UnmappedStatus.RESOLVED.value, UnmappedStatus.CLOSED.value)


def run_retention_cleanup(
    session: Session,
    settings: Optional[Mapping[str, int]] = None,
    clock: Clock = utc_now,
) -> dict[str, int]:
    """Delete expired rows in one transaction and return per-table counts.

    Events are evaluated before dead letters are removed, so an event whose
    dead letter expires in this run is kept until the next one.
    """
    settings = settings if settings is not None else RETENTION_SETTINGS
    now = clock()
    event_cutoff = now - timedelta(days=int(settings["idempotency_ttl_days"]))
    dlq_cutoff = now - timedelta(days=int(settings["dlq_retention_days"]))
    unmapped_cutoff = now - timedelta(days=int(settings["unmapped_retention_days"]))

    try:
        dead_lettered = session.query(IngestDeadLetter.event_key)
        deleted_events = (
            session.query(IngestEventLog)
            .filter(
                IngestEventLog.request_received_at < event_cutoff,
                IngestEventLog.process_status.in_(SETTLED_EVENT_STATUSES),
                ~IngestEventLog.event_key.in_(dead_lettered.scalar_subquery()),
            )
            .delete(synchronize_session=False)
        )
        deleted_dead_letters = (
            session.query(IngestDeadLetter)
            .filter(
                IngestDeadLetter.updated_at < dlq_cutoff,
                IngestDeadLetter.status.in_(TERMINAL_DEAD_LETTER_STATUSES),
            )
            .delete(synchronize_session=False)
        )
        deleted_unmapped = (
            session.query(UnmappedQueue)
            .filter(
                UnmappedQueue.updated_at < unmapped_cutoff,
                UnmappedQueue.status.in_(CLOSED_UNMAPPED_STATUSES),
            )
            .delete(synchronize_session=False)
        )
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.error("Retention cleanup failed", error=str(exc))
        raise

    result = {
        "deletedIngestEventLogRows": int(deleted_events),
        "deletedDeadLetterRows": int(deleted_dead_letters),
        "deletedUnmappedRows": int(deleted_unmapped),
    }
    logger.info("Retention cleanup done", **result)
    log_business_event("retention_cleanup", result)
    return result


__all__ = ["run_retention_cleanup"]
