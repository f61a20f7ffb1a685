"""Payment and finance supplement to the booking merge.

Runs after the booking sync: source payments are attached to canonical bookings
through the external ref rows the booking sync wrote, finance rows through the
ops-system booking id. Status changes are only *candidates*; the sync engine
applies them under the no-downgrade rule against the stored value.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from ops_bridge.models.db.enums import ChannelCode, ExternalRefKind, PaymentStatus
from ops_bridge.services.status_rules import aggregate_payment_status, normalize_method, to_payment_status
from ops_bridge.utils import get_logger
from ops_bridge.utils.identity import NS_PAYMENT, derive_key, finance_bridge_key
from ops_bridge.utils.normalize import (
    norm_currency,
    norm_text,
    norm_upper,
    parse_bool,
    parse_int_or,
    parse_iso,
    parse_num,
)
from ops_bridge.utils.time import Clock, utc_now

logger = get_logger(__name__)


@dataclass
class StatusCandidate:
    booking_key: str
    status: str
    paid_at: Optional[datetime] = None
    ops_fulfillment_status: Optional[str] = None


@dataclass
class PaymentMergeResult:
    payment_events: list[dict[str, Any]] = field(default_factory=list)
    finance_bridge: list[dict[str, Any]] = field(default_factory=list)
    status_candidates: list[StatusCandidate] = field(default_factory=list)
    orphans: list[dict[str, Optional[str]]] = field(default_factory=list)

    def prepared_counts(self) -> dict[str, int]:
        return {
            "paymentEvent": len(self.payment_events),
            "opsFinanceBridge": len(self.finance_bridge),
            "bookingStatusCandidates": len(self.status_candidates),
            "orphanSourcePayments": len(self.orphans),
        }


@dataclass
class _RefIndex:
    by_web_id: dict[str, str] = field(default_factory=dict)
    by_ops_id: dict[str, str] = field(default_factory=dict)
    by_direct_ref: dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, ref_rows: Iterable[dict[str, Any]]) -> "_RefIndex":
        index = cls()
        for row in ref_rows:
            booking_key = norm_text(row.get("entity_key"))
            kind = norm_upper(row.get("external_ref_kind"))
            value = norm_text(row.get("external_ref"))
            if not booking_key or not kind or not value:
                continue
            if kind == ExternalRefKind.BALISNAP_BOOKING_ID.value:
                index.by_web_id[value] = booking_key
            elif kind == ExternalRefKind.BSTADMIN_BOOKING_ID.value:
                index.by_ops_id[value] = booking_key
            elif kind == ExternalRefKind.BOOKING_REF.value and norm_upper(row.get("channel_code")) == ChannelCode.DIRECT.value:
                index.by_direct_ref[norm_upper(value) or value] = booking_key
        return index


def merge_payments(
    payment_rows: Iterable[dict[str, Any]],
    finance_rows: Iterable[dict[str, Any]],
    ops_paid_rows: Iterable[dict[str, Any]],
    ref_rows: Iterable[dict[str, Any]],
    bookings: dict[str, dict[str, Any]],
    *,
    clock: Clock = utc_now,
) -> PaymentMergeResult:
    """Prepare payment events, finance bridge rows and status candidates.

    ``bookings`` maps booking_key to its stored ``channel_code``,
    ``customer_payment_status`` and ``ops_fulfillment_status``.
    """
    now = clock()
    refs = _RefIndex.build(ref_rows)
    result = PaymentMergeResult()
    statuses_by_booking: dict[str, set[str]] = {}
    latest_paid_at: dict[str, datetime] = {}

    for row in payment_rows:
        payment_id = norm_text(row.get("payment_id"))
        booking_id = norm_text(row.get("booking_id"))
        booking_ref = norm_upper(row.get("booking_ref"))
        booking_key = (refs.by_web_id.get(booking_id) if booking_id else None) or (
            refs.by_direct_ref.get(booking_ref) if booking_ref else None
        )
        if not payment_id or not booking_key:
            result.orphans.append({"paymentId": payment_id, "bookingId": booking_id, "bookingRef": booking_ref})
            continue

        status = to_payment_status(row.get("payment_status_v2"), row.get("payment_status"))
        payment_time = parse_iso(row.get("payment_date")) or now
        legacy_raw = row.get("payment_status") if row.get("payment_status") is not None else ""
        v2_raw = row.get("payment_status_v2") if row.get("payment_status_v2") is not None else ""
        raw_payload = row.get("raw_payload")
        result.payment_events.append({
            "payment_key": derive_key(NS_PAYMENT, f"balisnap:Payment:{payment_id}"),
            "booking_key": booking_key,
            "payment_time": payment_time,
            "amount": parse_num(row.get("amount"), 0.0),
            "currency_code": norm_currency(row.get("currency_code")),
            "method": normalize_method(row.get("payment_method")),
            "gateway": norm_text(row.get("gateway")),
            "gateway_order_id": norm_text(row.get("gateway_order_id")),
            "gateway_capture_id": norm_text(row.get("gateway_capture_id")),
            "payment_ref": norm_text(row.get("payment_ref")),
            "status_raw": norm_text(f"{legacy_raw}|{v2_raw}"),
            "payment_status_v2": status,
            "raw_payload": raw_payload if isinstance(raw_payload, dict) else None,
        })
        statuses_by_booking.setdefault(booking_key, set()).add(status)
        if status == PaymentStatus.PAID.value:
            current = latest_paid_at.get(booking_key)
            if current is None or payment_time > current:
                latest_paid_at[booking_key] = payment_time

    for row in finance_rows:
        booking_id = norm_text(row.get("booking_id"))
        finance_id = norm_text(row.get("booking_finance_id"))
        booking_key = refs.by_ops_id.get(booking_id) if booking_id else None
        if not booking_key or not finance_id:
            continue
        result.finance_bridge.append({
            "finance_bridge_key": finance_bridge_key(finance_id),
            "booking_key": booking_key,
            "booking_finance_id": parse_int_or(finance_id, None),
            "pattern_id": parse_int_or(row.get("pattern_id"), None),
            "validated_at": parse_iso(row.get("validated_at")),
            "is_locked": parse_bool(row.get("is_locked"), False),
            "settlement_status": norm_upper(row.get("settlement_status")) or "PENDING",
            "last_reconciled_at": now,
        })

    non_direct: dict[str, tuple[bool, Optional[datetime]]] = {}
    for row in ops_paid_rows:
        booking_id = norm_text(row.get("booking_id"))
        booking_key = refs.by_ops_id.get(booking_id) if booking_id else None
        if not booking_key:
            continue
        if (norm_upper(row.get("source")) or ChannelCode.MANUAL.value) == ChannelCode.DIRECT.value:
            continue
        non_direct[booking_key] = (parse_bool(row.get("is_paid"), False), parse_iso(row.get("paid_at")))

    for booking_key, booking in bookings.items():
        candidate: Optional[str] = None
        paid_at: Optional[datetime] = None
        if booking.get("channel_code") == ChannelCode.DIRECT.value:
            if booking_key in statuses_by_booking:
                candidate = aggregate_payment_status(statuses_by_booking[booking_key])
                paid_at = latest_paid_at.get(booking_key)
        elif booking_key in non_direct:
            is_paid, paid_at = non_direct[booking_key]
            candidate = PaymentStatus.PAID.value if is_paid else PaymentStatus.PENDING_PAYMENT.value
        if candidate is None:
            continue
        result.status_candidates.append(StatusCandidate(
            booking_key=booking_key,
            status=candidate,
            paid_at=paid_at if candidate == PaymentStatus.PAID.value else None,
            ops_fulfillment_status=booking.get("ops_fulfillment_status"),
        ))

    if result.orphans:
        logger.warning("Orphan source payments", count=len(result.orphans))
    logger.info("Payment merge prepared", **result.prepared_counts())
    return result


__all__ = ["StatusCandidate", "PaymentMergeResult", "merge_payments"]
