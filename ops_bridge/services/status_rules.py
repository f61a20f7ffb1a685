"""Status vocabularies for the source systems.

Each vocabulary is an ordered list of ``StatusRule(predicate, result)`` pairs
evaluated top to bottom; the first matching predicate wins and a fixed fallback
applies when none match. Keeping the rules as data means they can be listed,
tested one at a time and extended without touching control flow.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

from ops_bridge.models.db.enums import ChannelCode, OpsFulfillmentStatus, PaymentStatus
from ops_bridge.utils.normalize import norm_text, norm_upper


@dataclass(frozen=True, slots=True)
class PaymentSignals:
    status_v2: Optional[str]
    legacy_status: Optional[str]
    paid_flag: bool = False


@dataclass(frozen=True, slots=True)
class StatusRule:
    name: str
    predicate: Callable[[Any], bool]
    result: Any


def evaluate(rules: Sequence[StatusRule], subject: Any, fallback: Any) -> Any:
    for rule in rules:
        if rule.predicate(subject):
            return rule.result(subject) if callable(rule.result) else rule.result
    return fallback


def _v2_in(*values: str) -> Callable[[PaymentSignals], bool]:
    wanted = set(values)
    return lambda s: norm_upper(s.status_v2) in wanted


def _legacy_in(*values: str) -> Callable[[PaymentSignals], bool]:
    wanted = set(values)
    return lambda s: norm_upper(s.legacy_status) in wanted


# ------------------------------ payment status ------------------------------ #
# status_v2 is authoritative, then the legacy column; the boolean paid flag is
# the weakest evidence and only counts when no status string classified.
PAYMENT_STATUS_RULES: tuple[StatusRule, ...] = (
    StatusRule("v2_paid", _v2_in("PAID", "CONFIRMED", "COMPLETED"), PaymentStatus.PAID.value),
    StatusRule("v2_refunded", _v2_in("REFUNDED"), PaymentStatus.REFUNDED.value),
    StatusRule("v2_failed", _v2_in("FAILED", "CANCELLED"), PaymentStatus.FAILED.value),
    StatusRule("v2_draft", _v2_in("DRAFT"), PaymentStatus.DRAFT.value),
    StatusRule(
        "legacy_paid",
        _legacy_in("PAID", "COMPLETED", "CAPTURED", "SUCCESS", "CONFIRMED"),
        PaymentStatus.PAID.value,
    ),
    StatusRule("legacy_failed", _legacy_in("FAILED", "CANCELLED"), PaymentStatus.FAILED.value),
    StatusRule("paid_flag", lambda s: bool(s.paid_flag), PaymentStatus.PAID.value),
)


def to_payment_status(status_v2: Any, legacy_status: Any, paid_flag: bool = False) -> str:
    signals = PaymentSignals(norm_text(status_v2), norm_text(legacy_status), bool(paid_flag))
    return evaluate(PAYMENT_STATUS_RULES, signals, PaymentStatus.PENDING_PAYMENT.value)


# ------------------------------- ops status --------------------------------- #
_OPS_VALUES = {status.value for status in OpsFulfillmentStatus}

OPS_STATUS_RULES: tuple[StatusRule, ...] = (
    StatusRule("known_value", lambda value: value in _OPS_VALUES, lambda value: value),
)


def to_ops_status_ops_system(value: Any) -> str:
    return evaluate(OPS_STATUS_RULES, norm_upper(value), OpsFulfillmentStatus.NEW.value)


# The web system has no fulfilment lifecycle; derive one from its status + payment.
WEB_OPS_STATUS_RULES: tuple[StatusRule, ...] = (
    StatusRule("cancelled", lambda s: s[0] == "CANCELLED", OpsFulfillmentStatus.CANCELLED.value),
    StatusRule("finished", lambda s: s[0] in {"DONE", "COMPLETED"}, lambda s: s[0]),
    StatusRule("paid", lambda s: s[1] == PaymentStatus.PAID.value, OpsFulfillmentStatus.READY.value),
)


def to_ops_status_web_system(status: Any, payment_status: str) -> str:
    return evaluate(WEB_OPS_STATUS_RULES, (norm_upper(status), payment_status), OpsFulfillmentStatus.NEW.value)


# ------------------------------- channels ----------------------------------- #
_CHANNELS = {channel.value for channel in ChannelCode}


def normalize_channel_code(value: Any) -> str:
    out = norm_upper(value)
    return out if out in _CHANNELS else ChannelCode.MANUAL.value


# --------------------------- payment method ---------------------------------- #
METHOD_RULES: tuple[StatusRule, ...] = (
    StatusRule("empty", lambda m: not m, "UNKNOWN"),
    StatusRule("paypal", lambda m: "PAYPAL" in m, "PAYPAL"),
    StatusRule("bank", lambda m: "BANK" in m, "BANK_TRANSFER"),
    StatusRule("card", lambda m: "CARD" in m, "CARD"),
)


def normalize_method(value: Any) -> str:
    method = norm_upper(value) or ""
    return evaluate(METHOD_RULES, method, method[:32])


# ------------------------- aggregate over payments --------------------------- #
AGGREGATE_PRIORITY: tuple[str, ...] = (
    PaymentStatus.REFUNDED.value,
    PaymentStatus.PAID.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.DRAFT.value,
)


def aggregate_payment_status(statuses: Iterable[str]) -> str:
    present = set(statuses)
    for status in AGGREGATE_PRIORITY:
        if status in present:
            return status
    return PaymentStatus.PENDING_PAYMENT.value


# --------------------------- contact placeholders ---------------------------- #
_EMAIL_SHAPE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PLACEHOLDER_NAMES = frozenset({"guest", "customer", "unknown", "n/a", "na", "-", "test"})
PLACEHOLDER_EMAILS = frozenset({"-", "n/a", "na", "unknown", "test@test.com"})


def is_valid_email(value: Any) -> bool:
    raw = norm_text(value)
    return bool(raw and _EMAIL_SHAPE.match(raw))


def is_placeholder_name(value: Any) -> bool:
    raw = norm_text(value)
    return not raw or raw.lower() in PLACEHOLDER_NAMES


def is_placeholder_email(value: Any) -> bool:
    raw = norm_text(value)
    if not raw:
        return True
    lowered = raw.lower()
    return lowered.endswith("@example.com") or lowered in PLACEHOLDER_EMAILS


__all__ = [
    "StatusRule",
    "PaymentSignals",
    "evaluate",
    "PAYMENT_STATUS_RULES",
    "to_payment_status",
    "to_ops_status_ops_system",
    "to_ops_status_web_system",
    "normalize_channel_code",
    "normalize_method",
    "aggregate_payment_status",
    "is_valid_email",
    "is_placeholder_name",
    "is_placeholder_email",
]
