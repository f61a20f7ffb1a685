"""Idempotent sync of merged rows into the canonical store.

``SyncEngine.apply*`` writes one merge result as a single transaction:
every row is upserted by its canonical key (external refs by their natural
tuple), so applying the same result twice leaves the store unchanged apart from
``updated_at``. A unique-constraint violation anywhere rolls the whole batch
back and surfaces as ``SyncConflictError``; nothing is left half written.

Payment status is guarded at write time by ``resolve_payment_status``: the
stored value is re-read inside the transaction, so a racing run that merged
against stale data still cannot move a PAID booking backwards.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ops_bridge.errors import SyncConflictError, ValidationError
from ops_bridge.models.db import (
    BookingContact,
    BookingCore,
    BookingItemSnapshot,
    BookingParty,
    CatalogProduct,
    CatalogVariant,
    ChannelExternalRef,
    OpsBookingState,
    OpsFinanceBridge,
    PaymentEvent,
    UnmappedQueue,
)
from ops_bridge.models.db.enums import PaymentStatus, UnmappedStatus
from ops_bridge.services.catalog_merge import CatalogMergeResult
from ops_bridge.services.merge_engine import MergeResult
from ops_bridge.services.payment_merge import PaymentMergeResult
from ops_bridge.utils import get_logger
from ops_bridge.utils.time import Clock, utc_now

logger = get_logger(__name__)

PAYMENT_BRIDGE_SOURCE = "payment-finance-bridge"

_LOW_CONFIDENCE = {PaymentStatus.PENDING_PAYMENT.value, PaymentStatus.DRAFT.value}
_EXPLICIT_ONLY = {PaymentStatus.REFUNDED.value, PaymentStatus.FAILED.value}
_PAYMENT_VALUES = {status.value for status in PaymentStatus}

COUNTED_TABLES = {
    "bookingCore": BookingCore,
    "bookingContact": BookingContact,
    "bookingParty": BookingParty,
    "bookingItemSnapshot": BookingItemSnapshot,
    "channelExternalRefs": ChannelExternalRef,
    "opsBookingState": OpsBookingState,
    "opsFinanceBridge": OpsFinanceBridge,
    "paymentEvent": PaymentEvent,
    "catalogProduct": CatalogProduct,
    "catalogVariant": CatalogVariant,
    "unmappedQueue": UnmappedQueue,
}

EXTERNAL_REF_NATURAL_KEY = ("entity_type", "channel_code", "external_ref_kind", "external_ref")


def resolve_payment_status(current: Optional[str], incoming: str, *, explicit: bool = False) -> str:
    """Status to store when ``incoming`` arrives for a booking stored at ``current``.

    PAID never moves to PENDING_PAYMENT or DRAFT. PAID moves to REFUNDED or
    FAILED only through an explicit, separately validated event.
    """
    if current != PaymentStatus.PAID.value:
        return incoming
    if incoming in _LOW_CONFIDENCE:
        return current
    if incoming in _EXPLICIT_ONLY and not explicit:
        return current
    return incoming


def table_counts(session: Session, tables: Optional[Iterable[str]] = None) -> dict[str, int]:
    names = list(tables) if tables is not None else list(COUNTED_TABLES)
    return {name: int(session.query(func.count()).select_from(COUNTED_TABLES[name]).scalar() or 0) for name in names}


@dataclass
class SyncOutcome:
    dry_run: bool
    prepared: dict[str, int]
    before: dict[str, int]
    after: dict[str, int]
    status_updates: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dryRun": self.dry_run,
            "prepared": self.prepared,
            "before": self.before,
            "after": self.after,
            "statusUpdates": self.status_updates,
        }


class SyncEngine:
    def __init__(self, session: Session, clock: Clock = utc_now):
        self.session = session
        self.clock = clock
        self._pending: dict[tuple, Any] = {}

    # ------------------------------------------------------------------ #
    def _find(self, model: type, lookup: dict[str, Any]) -> Any:
        cache_key = (model.__tablename__, tuple(sorted(lookup.items())))
        if cache_key in self._pending:
            return self._pending[cache_key]
        pk_names = [col.name for col in model.__table__.primary_key.columns]
        if list(lookup) == pk_names and len(pk_names) == 1:
            return self.session.get(model, lookup[pk_names[0]])
        return self.session.query(model).filter_by(**lookup).one_or_none()

    def _upsert(self, model: type, lookup: dict[str, Any], values: dict[str, Any]) -> Any:
        now = self.clock()
        existing = self._find(model, lookup)
        if existing is None:
            existing = model(**values)
            existing.updated_at = now
            self.session.add(existing)
        else:
            for column, value in values.items():
                setattr(existing, column, value)
            existing.updated_at = now
        self._pending[(model.__tablename__, tuple(sorted(lookup.items())))] = existing
        return existing

    def _upsert_many(self, model: type, rows: Iterable[dict[str, Any]], key_columns: Sequence[str]) -> None:
        for row in rows:
            self._upsert(model, {col: row[col] for col in key_columns}, row)

    def _run(
        self, label: str, prepared: dict[str, int], tables: list[str], dry_run: bool, writer, commit: bool = True
    ) -> SyncOutcome:
        before = table_counts(self.session, tables)
        if dry_run:
            logger.info("Sync dry run, nothing written", batch=label, **prepared)
            return SyncOutcome(dry_run=True, prepared=prepared, before=before, after=dict(before))
        self._pending = {}
        try:
            status_updates = writer() or 0
            if commit:
                self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.error("Sync aborted on unique conflict", batch=label, error=str(exc.orig))
            raise SyncConflictError(f"{label}: {exc.orig}") from exc
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._pending = {}
        after = table_counts(self.session, tables)
        logger.info("Sync committed" if commit else "Sync flushed", batch=label, status_updates=status_updates, **after)
        return SyncOutcome(dry_run=False, prepared=prepared, before=before, after=after, status_updates=status_updates)

    # ------------------------------------------------------------------ #
    def commit(self, label: str) -> None:
        """Commit phases applied with ``commit=False`` as one unit."""
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.error("Sync aborted on unique conflict", batch=label, error=str(exc.orig))
            raise SyncConflictError(f"{label}: {exc.orig}") from exc
        logger.info("Sync committed", batch=label)

    def apply(self, result: MergeResult, *, dry_run: bool = False, commit: bool = True) -> SyncOutcome:
        tables = [
            "bookingCore", "bookingContact", "bookingParty", "bookingItemSnapshot",
            "channelExternalRefs", "opsBookingState", "opsFinanceBridge",
        ]
        return self._run(
            "bookings", result.prepared_counts(), tables, dry_run, lambda: self._write_bookings(result), commit
        )

    def _write_bookings(self, result: MergeResult) -> int:
        stored_status: dict[str, str] = {}
        for row in result.booking_core:
            values = dict(row)
            existing = self._find(BookingCore, {"booking_key": row["booking_key"]})
            if existing is not None:
                values["customer_payment_status"] = resolve_payment_status(
                    existing.customer_payment_status, row["customer_payment_status"]
                )
            stored_status[row["booking_key"]] = values["customer_payment_status"]
            self._upsert(BookingCore, {"booking_key": row["booking_key"]}, values)

        self._upsert_many(BookingContact, result.booking_contact, ("booking_key",))
        self._upsert_many(BookingParty, result.booking_party, ("booking_key",))
        self._upsert_many(BookingItemSnapshot, result.booking_items, ("booking_item_key",))
        self._upsert_many(ChannelExternalRef, result.external_refs, EXTERNAL_REF_NATURAL_KEY)

        for row in result.ops_state:
            values = dict(row)
            status = stored_status.get(row["booking_key"])
            if status is not None:
                values["is_paid_flag"] = status == PaymentStatus.PAID.value
            existing = self._find(OpsBookingState, {"booking_key": row["booking_key"]})
            if existing is not None and values.get("paid_at") is None:
                values["paid_at"] = existing.paid_at
            self._upsert(OpsBookingState, {"booking_key": row["booking_key"]}, values)

        self._upsert_many(OpsFinanceBridge, result.finance_bridge, ("booking_key",))
        self.session.flush()
        return 0

    # ------------------------------------------------------------------ #
    def apply_payments(self, result: PaymentMergeResult, *, dry_run: bool = False, commit: bool = True) -> SyncOutcome:
        tables = ["paymentEvent", "opsFinanceBridge", "opsBookingState", "bookingCore"]
        return self._run(
            "payments", result.prepared_counts(), tables, dry_run, lambda: self._write_payments(result), commit
        )

    def _write_payments(self, result: PaymentMergeResult) -> int:
        self._upsert_many(PaymentEvent, result.payment_events, ("payment_key",))
        self._upsert_many(OpsFinanceBridge, result.finance_bridge, ("booking_key",))
        updates = 0
        for candidate in result.status_candidates:
            booking = self._find(BookingCore, {"booking_key": candidate.booking_key})
            if booking is None:
                continue
            current = booking.customer_payment_status
            next_status = resolve_payment_status(current, candidate.status)
            if next_status == current and not (next_status == PaymentStatus.PAID.value and candidate.paid_at):
                continue
            booking.customer_payment_status = next_status
            booking.updated_at = self.clock()
            self._touch_ops_state(
                candidate.booking_key,
                next_status,
                candidate.paid_at if next_status == PaymentStatus.PAID.value else None,
                candidate.ops_fulfillment_status or booking.ops_fulfillment_status,
            )
            updates += 1
        self.session.flush()
        return updates

    def _touch_ops_state(self, booking_key: str, status: str, paid_at, ops_status: str) -> None:
        state = self._find(OpsBookingState, {"booking_key": booking_key})
        if state is None:
            state = OpsBookingState(booking_key=booking_key, ops_fulfillment_status=ops_status)
            self.session.add(state)
            self._pending[(OpsBookingState.__tablename__, (("booking_key", booking_key),))] = state
        state.is_paid_flag = status == PaymentStatus.PAID.value
        if paid_at is not None:
            state.paid_at = paid_at
        state.updated_from_source = PAYMENT_BRIDGE_SOURCE
        state.updated_at = self.clock()

    # ------------------------------------------------------------------ #
    def apply_catalog(self, result: CatalogMergeResult, *, dry_run: bool = False) -> SyncOutcome:
        tables = ["catalogProduct", "catalogVariant", "unmappedQueue"]
        return self._run("catalog", result.prepared_counts(), tables, dry_run, lambda: self._write_catalog(result))

    def _write_catalog(self, result: CatalogMergeResult) -> int:
        self._upsert_many(CatalogProduct, result.products.values(), ("product_key",))
        self._upsert_many(CatalogVariant, result.variants.values(), ("variant_key",))
        for row in result.unmapped.values():
            self._upsert(UnmappedQueue, {"queue_key": row["queue_key"]}, {**row, "status": UnmappedStatus.OPEN.value})
        self.session.flush()
        return 0


def apply_payment_status_event(session: Session, booking_key: str, status: str, *, clock: Clock = utc_now) -> Optional[str]:
    """Explicit status change from a validated ingest event.

    Returns the stored status, or None when the booking is unknown. The caller
    owns the transaction.
    """
    if status not in _PAYMENT_VALUES:
        raise ValidationError("INVALID_FIELD_PAYMENTSTATUS", f"Unsupported payment status {status!r}")
    booking = session.get(BookingCore, booking_key)
    if booking is None:
        return None
    next_status = resolve_payment_status(booking.customer_payment_status, status, explicit=True)
    if next_status != booking.customer_payment_status:
        booking.customer_payment_status = next_status
        booking.updated_at = clock()
        state = session.get(OpsBookingState, booking_key)
        if state is not None:
            state.is_paid_flag = next_status == PaymentStatus.PAID.value
            state.updated_at = clock()
    return next_status


__all__ = [
    "resolve_payment_status",
    "table_counts",
    "SyncOutcome",
    "SyncEngine",
    "apply_payment_status_event",
    "PAYMENT_BRIDGE_SOURCE",
]
