"""Ingest event log and dead-letter operations.

Event lifecycle::

    RECEIVED -> PROCESSING -> DONE
                          \\-> FAILED (retry scheduled, back to PROCESSING)
                          \\-> FAILED + dead letter (non-retryable / attempts exhausted)

Dead letters move only along ``DEAD_LETTER_TRANSITIONS``; replay is allowed
only from READY and flips the dead letter to REPLAYING until the next attempt
settles it as SUCCEEDED or FAILED.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ops_bridge.errors import (
    ConflictError,
    NotFoundError,
    OpsBridgeError,
    ServiceUnavailableError,
    TransientProcessingError,
    ValidationError,
)
from ops_bridge.models.db import BookingCore, IngestDeadLetter, IngestEventLog
from ops_bridge.models.db.enums import (
    ChannelCode,
    DeadLetterStatus,
    IngestEventType,
    IngestProcessStatus,
)
from ops_bridge.services.ingest_security import IdempotencyStore, VerifiedRequest
from ops_bridge.services.sync_engine import apply_payment_status_event
from ops_bridge.utils import get_logger, log_business_event
from ops_bridge.utils.identity import booking_identity_key
from ops_bridge.utils.normalize import norm_upper, parse_iso
from ops_bridge.utils.time import Clock, utc_now

logger = get_logger(__name__)

SUPPORTED_SOURCES = {channel.value for channel in ChannelCode}
SUPPORTED_EVENT_TYPES = {event_type.value for event_type in IngestEventType}
SUPPORTED_PAYLOAD_VERSION = "v1"

DEFAULT_DEAD_LETTER_LIMIT = 50
MAX_DEAD_LETTER_LIMIT = 200

_DL = DeadLetterStatus
DEAD_LETTER_TRANSITIONS: dict[str, frozenset[str]] = {
    _DL.OPEN.value: frozenset({_DL.READY.value, _DL.IN_REVIEW.value, _DL.RESOLVED.value, _DL.CLOSED.value}),
    _DL.IN_REVIEW.value: frozenset({_DL.READY.value, _DL.RESOLVED.value, _DL.CLOSED.value}),
    _DL.READY.value: frozenset({_DL.REPLAYING.value}),
    _DL.REPLAYING.value: frozenset({_DL.SUCCEEDED.value, _DL.FAILED.value, _DL.READY.value, _DL.IN_REVIEW.value}),
    _DL.FAILED.value: frozenset({_DL.READY.value, _DL.IN_REVIEW.value, _DL.RESOLVED.value, _DL.CLOSED.value}),
    _DL.SUCCEEDED.value: frozenset({_DL.RESOLVED.value, _DL.CLOSED.value}),
    _DL.RESOLVED.value: frozenset({_DL.CLOSED.value}),
    _DL.CLOSED.value: frozenset(),
}


@dataclass(frozen=True, slots=True)
class ParsedPayload:
    source: str
    channel_code: str
    external_booking_ref: str
    event_type: str
    event_time: datetime
    event_time_normalized: datetime


@dataclass(frozen=True, slots=True)
class ProcessingFailure:
    retryable: bool
    reason_code: str
    message: str


def _read_string(payload: dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str):
        raise ValidationError(f"INVALID_FIELD_{field.upper()}")
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError(f"EMPTY_FIELD_{field.upper()}")
    return trimmed


def parse_payload(payload: Any) -> ParsedPayload:
    if not isinstance(payload, dict):
        raise ValidationError("INVALID_INGEST_PAYLOAD")
    version = _read_string(payload, "payloadVersion").lower()
    source = _read_string(payload, "source").upper()
    event_type = _read_string(payload, "eventType").upper()
    external_ref = _read_string(payload, "externalBookingRef")
    raw_time = _read_string(payload, "eventTime")
    event_time = parse_iso(raw_time)
    if event_time is None:
        raise ValidationError("INVALID_EVENT_TIME", f"Unparseable eventTime {raw_time!r}")
    if source not in SUPPORTED_SOURCES:
        raise ValidationError("UNSUPPORTED_SOURCE", f"UNSUPPORTED_SOURCE:{source}")
    if version != SUPPORTED_PAYLOAD_VERSION:
        raise ValidationError("UNSUPPORTED_PAYLOAD_VERSION", f"UNSUPPORTED_PAYLOAD_VERSION:{version}")
    if event_type not in SUPPORTED_EVENT_TYPES:
        raise ValidationError("UNSUPPORTED_EVENT_TYPE", f"UNSUPPORTED_EVENT_TYPE:{event_type}")
    return ParsedPayload(
        source=source,
        channel_code=source,
        external_booking_ref=external_ref,
        event_type=event_type,
        event_time=event_time,
        event_time_normalized=event_time.replace(microsecond=0),
    )


def ensure_dead_letter_status(value: str) -> str:
    normalized = (value or "").strip().upper()
    if normalized not in DEAD_LETTER_TRANSITIONS:
        raise ValidationError("INVALID_DEAD_LETTER_STATUS", f"INVALID_DEAD_LETTER_STATUS:{value}")
    return normalized


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in DEAD_LETTER_TRANSITIONS.get(from_status, frozenset())


class IngestService:
    def __init__(self, session: Session, idempotency_store: Optional[IdempotencyStore] = None, clock: Clock = utc_now):
        self.session = session
        self.idempotency_store = idempotency_store
        self.clock = clock

    # ------------------------------ lookups ------------------------------ #
    def _find_by_idempotency(self, key: str) -> Optional[IngestEventLog]:
        return self.session.query(IngestEventLog).filter(IngestEventLog.idempotency_key == key).one_or_none()

    def _find_by_secondary_dedup(self, parsed: ParsedPayload) -> Optional[IngestEventLog]:
        return (
            self.session.query(IngestEventLog)
            .filter(
                IngestEventLog.source_enum == parsed.source,
                IngestEventLog.external_booking_ref == parsed.external_booking_ref,
                IngestEventLog.event_type == parsed.event_type,
                IngestEventLog.event_time_normalized == parsed.event_time_normalized,
            )
            .order_by(IngestEventLog.request_received_at.asc())
            .first()
        )

    def get_event(self, event_key: str) -> IngestEventLog:
        event = self.session.get(IngestEventLog, event_key)
        if event is None:
            raise NotFoundError("EVENT_NOT_FOUND", f"Ingest event not found: {event_key}")
        return event

    def _latest_dead_letter(self, event_key: str) -> Optional[IngestDeadLetter]:
        return self.session.query(IngestDeadLetter).filter(IngestDeadLetter.event_key == event_key).one_or_none()

    # ------------------------------ create ------------------------------- #
    def _create_or_find(self, payload: dict[str, Any], parsed: ParsedPayload, verified: VerifiedRequest) -> tuple[str, bool]:
        existing = self._find_by_idempotency(verified.idempotency_key)
        if existing is not None:
            return existing.event_key, True
        duplicate = self._find_by_secondary_dedup(parsed)
        if duplicate is not None:
            return duplicate.event_key, True

        now = self.clock()
        event = IngestEventLog(
            event_key=str(uuid.uuid4()),
            idempotency_key=verified.idempotency_key,
            nonce=verified.nonce,
            source_enum=parsed.source,
            channel_code=parsed.channel_code,
            external_booking_ref=parsed.external_booking_ref,
            event_type=parsed.event_type,
            event_time=parsed.event_time,
            event_time_normalized=parsed.event_time_normalized,
            payload_hash=verified.payload_hash,
            signature_verified=verified.signature_verified,
            process_status=IngestProcessStatus.RECEIVED.value,
            attempt_count=0,
            raw_payload=payload,
            request_received_at=now,
            updated_at=now,
        )
        self.session.add(event)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raced = self._find_by_idempotency(verified.idempotency_key)
            if raced is None:
                raise
            return raced.event_key, True
        return event.event_key, False

    def create_event(self, payload: Any, verified: VerifiedRequest) -> tuple[IngestEventLog, bool]:
        parsed = parse_payload(payload)
        if self.idempotency_store is not None:
            event_key, replay = self.idempotency_store.claim(
                verified.idempotency_key, lambda: self._create_or_find(payload, parsed, verified)
            )
        else:
            event_key, replay = self._create_or_find(payload, parsed, verified)
        record = self.get_event(event_key)
        log_business_event(
            "ingest_event_replayed" if replay else "ingest_event_accepted",
            {"event_key": record.event_key, "source": parsed.source, "ingest_event_type": parsed.event_type},
        )
        return record, replay

    # ------------------------------ replay ------------------------------- #
    def replay_event(self, event_key: str) -> IngestEventLog:
        event = self.get_event(event_key)
        dead_letter = self._latest_dead_letter(event_key)
        if dead_letter is None:
            raise ConflictError("EVENT_NOT_IN_DEAD_LETTER")
        if dead_letter.status != DeadLetterStatus.READY.value:
            raise ConflictError(
                "DEAD_LETTER_NOT_READY_FOR_REPLAY", f"DEAD_LETTER_NOT_READY_FOR_REPLAY:{dead_letter.status}"
            )
        now = self.clock()
        dead_letter.replay_count += 1
        dead_letter.status = DeadLetterStatus.REPLAYING.value
        dead_letter.next_replay_at = None
        dead_letter.updated_at = now
        event.process_status = IngestProcessStatus.RECEIVED.value
        event.attempt_count += 1
        event.next_retry_at = None
        event.error_message = None
        event.updated_at = now
        self.session.commit()
        log_business_event("ingest_event_replay_requested", {"event_key": event_key, "replay_count": dead_letter.replay_count})
        return event

    # ------------------------- processing markers ------------------------ #
    def mark_processing_attempt(self, event_key: str, attempt_number: int) -> None:
        event = self.get_event(event_key)
        event.process_status = IngestProcessStatus.PROCESSING.value
        event.attempt_count = max(event.attempt_count or 0, attempt_number)
        event.error_message = None
        event.updated_at = self.clock()
        self.session.commit()

    def mark_retryable_failure(self, event_key: str, error_message: str, next_retry_at: datetime) -> None:
        event = self.get_event(event_key)
        event.process_status = IngestProcessStatus.FAILED.value
        event.error_message = error_message
        event.next_retry_at = next_retry_at
        event.updated_at = self.clock()
        self.session.commit()

    def mark_done(self, event_key: str) -> None:
        event = self.get_event(event_key)
        now = self.clock()
        event.process_status = IngestProcessStatus.DONE.value
        event.processed_at = now
        event.error_message = None
        event.next_retry_at = None
        event.updated_at = now
        self.session.commit()

    def mark_replay_succeeded(self, event_key: str) -> None:
        dead_letter = self._latest_dead_letter(event_key)
        if dead_letter is None or dead_letter.status != DeadLetterStatus.REPLAYING.value:
            return
        dead_letter.status = DeadLetterStatus.SUCCEEDED.value
        dead_letter.next_replay_at = None
        dead_letter.updated_at = self.clock()
        self.session.commit()
        log_business_event("dead_letter_status_changed", {"dead_letter_key": dead_letter.dead_letter_key, "to": dead_letter.status})

    def process_event(self, event_key: str) -> None:
        event = self.get_event(event_key)
        payload = event.raw_payload if isinstance(event.raw_payload, dict) else {}
        simulated = payload.get("_simulateProcessingError")
        if simulated == "NON_RETRYABLE":
            raise ValidationError("SCHEMA_MISMATCH")
        if simulated == "RETRYABLE":
            raise TransientProcessingError("TRANSIENT_RUNTIME_FAILURE")

        payment_status = norm_upper(payload.get("paymentStatus"))
        if payment_status:
            booking_key = booking_identity_key(event.channel_code, norm_upper(event.external_booking_ref) or "")
            if self.session.get(BookingCore, booking_key) is not None:
                stored = apply_payment_status_event(self.session, booking_key, payment_status, clock=self.clock)
                logger.info("Applied explicit payment status", event_key=event_key, booking_key=booking_key, status=stored)
        self.mark_done(event_key)

    @staticmethod
    def classify_processing_error(exc: BaseException) -> ProcessingFailure:
        message = getattr(exc, "message", None) or str(exc)
        if isinstance(exc, (ValidationError, ConflictError)):
            return ProcessingFailure(False, "SCHEMA_MISMATCH", message or "NON_RETRYABLE_PROCESSING_ERROR")
        if isinstance(exc, NotFoundError):
            return ProcessingFailure(False, "EVENT_NOT_FOUND", message or "EVENT_NOT_FOUND")
        if isinstance(exc, (ServiceUnavailableError, OperationalError)):
            return ProcessingFailure(True, "INFRA_UNAVAILABLE", message or "SERVICE_UNAVAILABLE")
        if isinstance(exc, OpsBridgeError) and not isinstance(exc, TransientProcessingError):
            return ProcessingFailure(False, exc.code, message or exc.code)
        return ProcessingFailure(True, "TRANSIENT_ERROR", message or "UNCLASSIFIED_ERROR")

    # ---------------------------- dead letters --------------------------- #
    def mark_event_failed(
        self,
        event_key: str,
        reason_code: str,
        reason_detail: Optional[str] = None,
        poison_message: bool = False,
    ) -> IngestDeadLetter:
        event = self.get_event(event_key)
        code = reason_code.strip().upper()
        now = self.clock()
        event.process_status = IngestProcessStatus.FAILED.value
        event.error_message = reason_detail or code
        event.processed_at = now
        event.next_retry_at = None
        event.updated_at = now

        dead_letter = self._latest_dead_letter(event_key)
        if dead_letter is None:
            dead_letter = IngestDeadLetter(
                dead_letter_key=str(uuid.uuid4()),
                event_key=event_key,
                reason_code=code,
                reason_detail=reason_detail,
                poison_message=poison_message,
                replay_count=0,
                status=DeadLetterStatus.OPEN.value,
                first_failed_at=now,
                last_failed_at=now,
                raw_payload=event.raw_payload,
                updated_at=now,
            )
            self.session.add(dead_letter)
        else:
            dead_letter.status = (
                DeadLetterStatus.FAILED.value
                if dead_letter.status == DeadLetterStatus.REPLAYING.value
                else DeadLetterStatus.OPEN.value
            )
            dead_letter.reason_code = code
            dead_letter.reason_detail = reason_detail
            dead_letter.poison_message = poison_message
            dead_letter.next_replay_at = None
            dead_letter.last_failed_at = now
            dead_letter.updated_at = now
        self.session.commit()
        logger.warning("Event dead-lettered", event_key=event_key, reason_code=code, status=dead_letter.status)
        log_business_event("dead_letter_status_changed", {"dead_letter_key": dead_letter.dead_letter_key, "to": dead_letter.status, "reason_code": code})
        return dead_letter

    def list_dead_letters(self, status: Optional[str] = None, limit: Optional[int] = None) -> list[IngestDeadLetter]:
        if limit is None:
            limit = DEFAULT_DEAD_LETTER_LIMIT
        limit = min(max(int(limit), 1), MAX_DEAD_LETTER_LIMIT)
        query = self.session.query(IngestDeadLetter)
        if status:
            query = query.filter(IngestDeadLetter.status == ensure_dead_letter_status(status))
        return query.order_by(IngestDeadLetter.last_failed_at.desc()).limit(limit).all()

    def get_dead_letter(self, dead_letter_key: str) -> IngestDeadLetter:
        dead_letter = self.session.get(IngestDeadLetter, dead_letter_key)
        if dead_letter is None:
            raise NotFoundError("DEAD_LETTER_NOT_FOUND", f"Dead letter not found: {dead_letter_key}")
        return dead_letter

    def update_dead_letter_status(self, dead_letter_key: str, to_status: str) -> IngestDeadLetter:
        target = ensure_dead_letter_status(to_status)
        dead_letter = self.get_dead_letter(dead_letter_key)
        current = dead_letter.status
        if not can_transition(current, target):
            raise ConflictError("INVALID_DEAD_LETTER_TRANSITION", f"INVALID_DEAD_LETTER_TRANSITION:{current}->{target}")
        dead_letter.status = target
        dead_letter.updated_at = self.clock()
        self.session.commit()
        log_business_event("dead_letter_status_changed", {"dead_letter_key": dead_letter_key, "from": current, "to": target})
        return dead_letter

    def dead_letter_metrics(self) -> dict[str, Any]:
        by_status = {status.value: 0 for status in DeadLetterStatus}
        rows = (
            self.session.query(IngestDeadLetter.status, func.count(IngestDeadLetter.dead_letter_key))
            .group_by(IngestDeadLetter.status)
            .all()
        )
        for status, count in rows:
            if status in by_status:
                by_status[status] = int(count)
        return {"total": sum(by_status.values()), "byStatus": by_status}


__all__ = [
    "DEAD_LETTER_TRANSITIONS",
    "ParsedPayload",
    "ProcessingFailure",
    "IngestService",
    "parse_payload",
    "ensure_dead_letter_status",
    "can_transition",
]
