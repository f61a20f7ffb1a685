"""
Signed booking-event ingest endpoints.
"""
import json
import time
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from ops_bridge.api.deps import (
    get_db,
    get_idempotency_store,
    get_queue,
    get_security_gate,
    require_replay_enabled,
    require_webhook_enabled,
)
from ops_bridge.config import FEATURE_FLAGS
from ops_bridge.errors import ValidationError
from ops_bridge.jobs.ingest_job import IngestJob, IngestJobReason
from ops_bridge.jobs.queue import Scheduler
from ops_bridge.models.schemas.base import ResponseBase
from ops_bridge.models.schemas.ingest import IngestEventOut, dump
from ops_bridge.services.ingest_security import IdempotencyStore, IngestSecurityGate
from ops_bridge.services.ingest_service import IngestService
from ops_bridge.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)


def _enqueue(queue: Optional[Scheduler], job: IngestJob) -> bool:
    if not FEATURE_FLAGS["queue_enabled"] or queue is None:
        return False
    queue.enqueue(job)
    logger.info("Ingest job enqueued", event_key=job.event_key, reason=job.reason, attempt=job.attempt_number)
    return True


@router.post(
    "/bookings/events",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Accept a signed booking event",
    dependencies=[Depends(require_webhook_enabled)],
)
async def ingest_booking_event(
    request: Request,
    db: Session = Depends(get_db),
    gate: IngestSecurityGate = Depends(get_security_gate),
    idempotency_store: IdempotencyStore = Depends(get_idempotency_store),
    queue: Optional[Scheduler] = Depends(get_queue),
) -> ResponseBase:
    """Verify the request, record the event once per idempotency key and queue it for processing.

    The signature covers the raw body, so the body is read before any JSON parsing.
    A repeated idempotency key returns the original event with ``idempotentReplay=true``.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)
    raw_body = await request.body()
    verified = gate.validate_request(request.method, request.url.path, request.headers, raw_body)
    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        raise ValidationError("INVALID_INGEST_PAYLOAD", "Request body is not valid JSON")

    service = IngestService(db, idempotency_store=idempotency_store)
    record, replay = service.create_event(payload, verified)
    queued = False
    if not replay:
        queued = _enqueue(
            queue,
            IngestJob(record.event_key, 1, IngestJobReason.INGEST_RECEIVED.value, correlation_id=request_id),
        )

    log_performance(
        operation="ingest_booking_event",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"idempotent_replay": replay, "queued": queued},
    )
    return ResponseBase(
        success=True,
        message="Event already accepted" if replay else "Event accepted",
        data={
            "eventId": record.event_key,
            "processStatus": record.process_status,
            "idempotentReplay": replay,
        },
    )


@router.get(
    "/bookings/events/{event_id}",
    response_model=ResponseBase,
    summary="Get an ingest event",
)
async def get_ingest_event(event_id: str, db: Session = Depends(get_db)) -> ResponseBase:
    record = IngestService(db).get_event(event_id)
    return ResponseBase(success=True, data=dump(IngestEventOut.model_validate(record)))


@router.post(
    "/bookings/events/{event_id}/replay",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Replay a dead-lettered event",
    dependencies=[Depends(require_replay_enabled)],
)
async def replay_ingest_event(
    event_id: str,
    request: Request,
    db: Session = Depends(get_db),
    queue: Optional[Scheduler] = Depends(get_queue),
) -> ResponseBase:
    """Move a READY dead letter to REPLAYING and queue attempt 1 again."""
    record = IngestService(db).replay_event(event_id)
    queued = _enqueue(
        queue,
        IngestJob(
            record.event_key,
            1,
            IngestJobReason.REPLAY.value,
            correlation_id=getattr(request.state, "request_id", None),
        ),
    )
    return ResponseBase(
        success=True,
        message="Replay accepted",
        data={"eventId": record.event_key, "processStatus": record.process_status, "queued": queued},
    )
