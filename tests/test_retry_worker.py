"""Retry scheduling and dead-lettering in the ingest worker."""
import logging
from datetime import datetime, timedelta, timezone

import pytest

from ops_bridge import database
from ops_bridge.errors import (
    FatalProcessingError,
    ServiceUnavailableError,
    TransientProcessingError,
    ValidationError,
)
from ops_bridge.jobs.ingest_job import IngestJob
from ops_bridge.jobs.queue import DelayQueue
from ops_bridge.jobs.worker_ingest import (
    OUTCOME_DEAD_LETTERED,
    OUTCOME_DONE,
    OUTCOME_RETRY_SCHEDULED,
    IngestRetryHandler,
    ingest_runtime_metrics,
)
from ops_bridge.models.db import BookingCore, IngestDeadLetter, IngestEventLog
from ops_bridge.services.ingest_security import IdempotencyStore, VerifiedRequest
from ops_bridge.services.ingest_service import IngestService
from ops_bridge.utils.identity import booking_identity_key

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
POLICY = {"delays_seconds": [30, 120, 600, 1800, 7200], "max_attempts": 5}


class RecordingScheduler:
    """Captures retries instead of sleeping on them."""

    def __init__(self):
        self.scheduled: list[tuple[IngestJob, float]] = []

    def enqueue(self, job, *, priority="normal", delay_seconds=0.0):
        self.scheduled.append((job, delay_seconds))

    def dequeue(self, *, block=True, timeout=None):
        return None

    def ack(self, *, failed=False):
        pass

    def counts(self):
        return {}

    def snapshot(self):
        return {}

    def shutdown(self):
        pass

    def purge(self):
        self.scheduled.clear()


def _create_event(session, payload_extra=None, ref="WEB-1"):
    payload = {
        "payloadVersion": "v1",
        "source": "DIRECT",
        "eventType": "UPDATED",
        "externalBookingRef": ref,
        "eventTime": "2026-03-01T11:59:00Z",
    }
    payload.update(payload_extra or {})
    verified = VerifiedRequest(
        idempotency_key=f"idem-{ref}-{len(payload)}",
        nonce="n",
        payload_hash="0" * 64,
        timestamp=NOW,
    )
    record, replay = IngestService(session, clock=lambda: NOW).create_event(payload, verified)
    assert replay is False
    return record.event_key


@pytest.fixture()
def scheduler():
    return RecordingScheduler()


@pytest.fixture()
def handler(scheduler):
    return IngestRetryHandler(database.SessionLocal, scheduler, POLICY, clock=lambda: NOW)


def test_successful_processing_marks_done(db_session, handler):
    event_key = _create_event(db_session)
    assert handler.handle(IngestJob(event_key)) == OUTCOME_DONE
    db_session.expire_all()
    event = db_session.get(IngestEventLog, event_key)
    assert event.process_status == "DONE"
    assert event.attempt_count == 1


def test_retryable_failure_exhausts_then_dead_letters(db_session, handler, scheduler):
    event_key = _create_event(db_session, {"_simulateProcessingError": "RETRYABLE"})

    job = IngestJob(event_key)
    outcomes = []
    while True:
        outcome = handler.handle(job)
        outcomes.append(outcome)
        if outcome != OUTCOME_RETRY_SCHEDULED:
            break
        job, _delay = scheduler.scheduled[-1]

    assert outcomes == [OUTCOME_RETRY_SCHEDULED] * 4 + [OUTCOME_DEAD_LETTERED]
    assert [delay for _, delay in scheduler.scheduled] == [30, 120, 600, 1800]
    assert [job.attempt_number for job, _ in scheduler.scheduled] == [2, 3, 4, 5]

    db_session.expire_all()
    event = db_session.get(IngestEventLog, event_key)
    assert event.process_status == "FAILED"
    assert event.attempt_count == 5
    dead_letter = db_session.query(IngestDeadLetter).filter_by(event_key=event_key).one()
    assert dead_letter.status == "OPEN"
    assert dead_letter.reason_code == "TRANSIENT_ERROR"
    assert dead_letter.poison_message is True


def test_non_retryable_failure_dead_letters_immediately(db_session, handler, scheduler):
    event_key = _create_event(db_session, {"_simulateProcessingError": "NON_RETRYABLE"})
    assert handler.handle(IngestJob(event_key)) == OUTCOME_DEAD_LETTERED
    assert scheduler.scheduled == []
    dead_letter = db_session.query(IngestDeadLetter).filter_by(event_key=event_key).one()
    assert dead_letter.reason_code == "SCHEMA_MISMATCH"


def test_retry_records_next_retry_time(db_session, handler):
    event_key = _create_event(db_session, {"_simulateProcessingError": "RETRYABLE"})
    handler.handle(IngestJob(event_key))
    db_session.expire_all()
    event = db_session.get(IngestEventLog, event_key)
    assert event.process_status == "FAILED"
    assert event.next_retry_at is not None
    assert event.error_message == "TRANSIENT_RUNTIME_FAILURE"


def test_explicit_refund_event_applies_to_paid_booking(db_session, handler):
    booking_key = booking_identity_key("DIRECT", "WEB-7")
    db_session.add(BookingCore(
        booking_key=booking_key,
        channel_code="DIRECT",
        source_enum_compat="DIRECT",
        external_booking_ref="WEB-7",
        booking_created_at=NOW,
        tour_date=NOW.date(),
        currency_code="USD",
        total_price=100,
        number_of_adult=1,
        number_of_child=0,
        customer_payment_status="PAID",
        ops_fulfillment_status="READY",
        package_ref_type="LEGACY_PACKAGE",
    ))
    db_session.commit()

    event_key = _create_event(db_session, {"paymentStatus": "refunded"}, ref="WEB-7")
    assert handler.handle(IngestJob(event_key)) == OUTCOME_DONE
    db_session.expire_all()
    assert db_session.get(BookingCore, booking_key).customer_payment_status == "REFUNDED"


def test_missing_event_reported(handler):
    assert handler.handle(IngestJob("missing")) == "MISSING"


def test_runtime_metrics_for_memory_queue(flags):
    flags(queue_enabled=True)
    queue = DelayQueue()
    queue.enqueue(IngestJob("a"))
    queue.enqueue(IngestJob("b"), delay_seconds=60)
    metrics = ingest_runtime_metrics(queue)
    assert metrics["enabled"] is True
    assert metrics["connected"] is True
    assert metrics["backend"] == "memory"
    assert metrics["waiting"] == 1
    assert metrics["delayed"] == 1


@pytest.mark.parametrize(
    "exc,retryable,reason_code",
    [
        (TransientProcessingError("TRANSIENT_RUNTIME_FAILURE"), True, "TRANSIENT_ERROR"),
        (ValidationError("SCHEMA_MISMATCH"), False, "SCHEMA_MISMATCH"),
        (ServiceUnavailableError("DB_DOWN"), True, "INFRA_UNAVAILABLE"),
        (FatalProcessingError("UNPROCESSABLE_BOOKING"), False, "UNPROCESSABLE_BOOKING"),
        (RuntimeError("boom"), True, "TRANSIENT_ERROR"),
    ],
)
def test_failure_classification(exc, retryable, reason_code):
    failure = IngestService.classify_processing_error(exc)
    assert failure.retryable is retryable
    assert failure.reason_code == reason_code


def test_create_event_writes_audit_record_and_replays(db_session, caplog):
    store = IdempotencyStore(timedelta(minutes=30), clock=lambda: NOW)
    service = IngestService(db_session, idempotency_store=store, clock=lambda: NOW)
    payload = {
        "payloadVersion": "v1",
        "source": "DIRECT",
        "eventType": "CREATED",
        "externalBookingRef": "WEB-9",
        "eventTime": "2026-03-01T11:00:00Z",
    }
    verified = VerifiedRequest(idempotency_key="idem-audit", nonce="n", payload_hash="0" * 64, timestamp=NOW)

    audit_logger = logging.getLogger("ops_bridge.audit")
    audit_logger.addHandler(caplog.handler)
    try:
        with caplog.at_level(logging.INFO, logger="ops_bridge.audit"):
            first, first_replay = service.create_event(payload, verified)
            second, second_replay = service.create_event(payload, verified)
    finally:
        audit_logger.removeHandler(caplog.handler)

    assert (first_replay, second_replay) == (False, True)
    assert second.event_key == first.event_key
    audit = [r for r in caplog.records if r.name == "ops_bridge.audit"]
    assert [r.fields["event_type"] for r in audit] == ["ingest_event_accepted", "ingest_event_replayed"]
    assert audit[0].fields["ingest_event_type"] == "CREATED"
