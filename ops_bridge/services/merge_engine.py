"""Cross-source booking merge.

Raw rows from the web booking system and the operations system of record are
normalized into ``SourceRecord`` values, grouped into identity groups keyed by
``(channel_code, EXTERNAL_REF)`` and resolved to one canonical field set per
group. The output is a ``MergeResult``: plain row dicts keyed by ORM column name,
ready for the sync engine.

Identity groups live in an arena (``IdentityArena``) indexed by their key;
records only carry the key of the group they belong to, never a reference to it.
Grouping, merging and row building are single threaded over the batch.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional

from ops_bridge.config import SOURCE_SETTINGS
from ops_bridge.models.db.enums import ExternalRefKind, PackageRefType, PaymentStatus
from ops_bridge.services.source_feed import FetchResult
from ops_bridge.services.status_rules import (
    is_placeholder_email,
    is_placeholder_name,
    is_valid_email,
    normalize_channel_code,
    to_ops_status_ops_system,
    to_ops_status_web_system,
    to_payment_status,
)
from ops_bridge.utils import get_logger
from ops_bridge.utils.identity import (
    NS_BOOKING,
    NS_CATALOG_VARIANT,
    booking_identity_key,
    booking_ref_key,
    derive_key,
    finance_bridge_key,
    source_ref_key,
)
from ops_bridge.utils.normalize import (
    norm_currency,
    norm_text,
    norm_upper,
    parse_bool,
    parse_date_only,
    parse_int_or,
    parse_iso,
    parse_num,
)
from ops_bridge.utils.time import Clock, utc_now

logger = get_logger(__name__)

WEB_SYSTEM = str(SOURCE_SETTINGS["web_system"])
OPS_SYSTEM = str(SOURCE_SETTINGS["ops_system"])

IdentityKey = tuple[str, str]


@dataclass(frozen=True, slots=True)
class SourceContact:
    main_name: Optional[str] = None
    main_email: Optional[str] = None
    phone: Optional[str] = None
    pickup_location: Optional[str] = None
    meeting_point: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SourceRecord:
    source_system: str
    source_table: str
    source_pk: str
    channel_code: str
    external_booking_ref: str
    customer_payment_status: str
    ops_fulfillment_status: str
    payment_score: int = 0
    package_id: Optional[str] = None
    booking_created_at: Optional[datetime] = None
    booking_date: Optional[date] = None
    tour_date: Optional[date] = None
    currency_code: str = "USD"
    total_price: float = 0.0
    number_of_adult: int = 0
    number_of_child: int = 0
    note: Optional[str] = None
    assigned_driver_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    contact: SourceContact = field(default_factory=SourceContact)

    @property
    def identity(self) -> IdentityKey:
        return (self.channel_code, self.external_booking_ref)

    @property
    def score(self) -> int:
        return (10 if self.customer_payment_status == PaymentStatus.PAID.value else 0) + self.payment_score


@dataclass
class IdentityGroup:
    channel_code: str
    external_booking_ref: str
    primary_index: int
    source_indexes: list[int] = field(default_factory=list)

    @property
    def key(self) -> IdentityKey:
        return (self.channel_code, self.external_booking_ref)


def _prefers(candidate: SourceRecord, current: SourceRecord) -> bool:
    """True when ``candidate`` should replace ``current`` as group primary."""
    if candidate.score != current.score:
        return candidate.score > current.score
    return candidate.source_system == OPS_SYSTEM and current.source_system != OPS_SYSTEM


class IdentityArena:
    """Owns every record and group of one run."""

    def __init__(self) -> None:
        self.records: list[SourceRecord] = []
        self.groups: dict[IdentityKey, IdentityGroup] = {}

    def add(self, record: SourceRecord) -> IdentityKey:
        index = len(self.records)
        self.records.append(record)
        key = record.identity
        group = self.groups.get(key)
        if group is None:
            self.groups[key] = IdentityGroup(key[0], key[1], primary_index=index, source_indexes=[index])
            return key
        group.source_indexes.append(index)
        if _prefers(record, self.records[group.primary_index]):
            group.primary_index = index
        return key

    def primary(self, key: IdentityKey) -> SourceRecord:
        return self.records[self.groups[key].primary_index]

    def sources(self, key: IdentityKey) -> list[SourceRecord]:
        return [self.records[i] for i in self.groups[key].source_indexes]

    def __len__(self) -> int:
        return len(self.groups)

    def __iter__(self):
        return iter(list(self.groups))


# ------------------------------ record building ------------------------------ #

def build_web_record(row: dict[str, Any], payment_summary: Optional[dict[str, Any]] = None) -> Optional[SourceRecord]:
    booking_id = norm_text(row.get("booking_id"))
    if not booking_id:
        return None
    payment_summary = payment_summary or {}
    has_paid = bool(parse_int_or(payment_summary.get("has_paid_v2"), 0) or parse_int_or(payment_summary.get("has_paid_legacy"), 0))
    payment_status = to_payment_status(row.get("status_v2"), row.get("status"), has_paid)
    return SourceRecord(
        source_system=WEB_SYSTEM,
        source_table="Booking",
        source_pk=booking_id,
        channel_code="DIRECT",
        external_booking_ref=norm_upper(row.get("booking_ref")) or f"BS-{booking_id}",
        customer_payment_status=payment_status,
        ops_fulfillment_status=to_ops_status_web_system(row.get("status"), payment_status),
        payment_score=parse_int_or(payment_summary.get("payment_count"), 0) or 0,
        package_id=norm_text(row.get("package_id")),
        booking_created_at=parse_iso(row.get("created_at")) or parse_iso(row.get("booking_date")),
        booking_date=parse_date_only(row.get("booking_date")),
        tour_date=parse_date_only(row.get("booking_date")) or parse_date_only(row.get("created_at")),
        currency_code=norm_currency(row.get("currency_code")),
        total_price=parse_num(row.get("total_price"), 0.0) or 0.0,
        number_of_adult=parse_int_or(row.get("number_of_adult"), 0) or 0,
        number_of_child=parse_int_or(row.get("number_of_child"), 0) or 0,
        note=norm_text(row.get("note")),
        updated_at=parse_iso(row.get("updated_at")) or parse_iso(row.get("created_at")),
        contact=SourceContact(
            main_name=norm_text(row.get("main_contact_name")),
            main_email=norm_text(row.get("main_contact_email")),
            phone=norm_text(row.get("phone_number")),
            meeting_point=norm_text(row.get("meeting_point")),
        ),
    )


def build_ops_record(row: dict[str, Any]) -> Optional[SourceRecord]:
    booking_id = norm_text(row.get("booking_id"))
    if not booking_id:
        return None
    is_paid = parse_bool(row.get("is_paid"), False)
    return SourceRecord(
        source_system=OPS_SYSTEM,
        source_table="bookings",
        source_pk=booking_id,
        channel_code=normalize_channel_code(row.get("source")),
        external_booking_ref=norm_upper(row.get("booking_ref")) or f"OPS-{booking_id}",
        customer_payment_status=PaymentStatus.PAID.value if is_paid else PaymentStatus.PENDING_PAYMENT.value,
        ops_fulfillment_status=to_ops_status_ops_system(row.get("status")),
        payment_score=2 if is_paid else 0,
        package_id=norm_text(row.get("package_id")),
        booking_created_at=parse_iso(row.get("created_at")) or parse_iso(row.get("booking_date")),
        booking_date=parse_date_only(row.get("booking_date")),
        tour_date=parse_date_only(row.get("tour_date")) or parse_date_only(row.get("booking_date")),
        currency_code=norm_currency(row.get("currency")),
        total_price=parse_num(row.get("total_price"), 0.0) or 0.0,
        number_of_adult=parse_int_or(row.get("number_of_adult"), 0) or 0,
        number_of_child=parse_int_or(row.get("number_of_child"), 0) or 0,
        note=norm_text(row.get("note")),
        assigned_driver_id=parse_int_or(row.get("assigned_driver_id"), None),
        assigned_at=parse_iso(row.get("assigned_at")),
        paid_at=parse_iso(row.get("paid_at")),
        updated_at=parse_iso(row.get("updated_at")) or parse_iso(row.get("created_at")),
        contact=SourceContact(
            main_name=norm_text(row.get("main_contact_name")),
            main_email=norm_text(row.get("main_contact_email")),
            phone=norm_text(row.get("phone_number")),
            pickup_location=norm_text(row.get("pickup_location")),
            meeting_point=norm_text(row.get("meeting_point")),
        ),
    )


# ------------------------------ contact resolution ---------------------------- #

@dataclass(frozen=True, slots=True)
class ContactResolution:
    main_name: Optional[str]
    main_email: Optional[str]
    phone: Optional[str]
    pickup_location: Optional[str]
    meeting_point: Optional[str]
    is_placeholder_name: bool
    is_placeholder_email: bool
    updated_from_source: str

    def as_row(self, booking_key: str) -> dict[str, Any]:
        return {
            "booking_key": booking_key,
            "main_name": self.main_name,
            "main_email": self.main_email,
            "phone": self.phone,
            "pickup_location": self.pickup_location,
            "meeting_point": self.meeting_point,
            "is_placeholder_name": self.is_placeholder_name,
            "is_placeholder_email": self.is_placeholder_email,
            "updated_from_source": self.updated_from_source,
        }


def _recency(record: SourceRecord) -> float:
    return record.updated_at.timestamp() if record.updated_at else 0.0


def pick_contact(sources: Iterable[SourceRecord]) -> ContactResolution:
    """Most recently updated usable value per field.

    Name and email skip placeholders (and malformed emails) but fall back to the
    most recent non-empty value when every candidate is a placeholder.
    """
    ordered = sorted(sources, key=_recency, reverse=True)

    def first(attr: str, accept=bool) -> Optional[str]:
        for source in ordered:
            value = getattr(source.contact, attr)
            if value and accept(value):
                return value
        return None

    main_name = first("main_name", lambda v: not is_placeholder_name(v)) or first("main_name")
    main_email = first("main_email", lambda v: is_valid_email(v) and not is_placeholder_email(v)) or first("main_email")
    return ContactResolution(
        main_name=main_name,
        main_email=main_email,
        phone=first("phone"),
        pickup_location=first("pickup_location"),
        meeting_point=first("meeting_point"),
        is_placeholder_name=is_placeholder_name(main_name),
        is_placeholder_email=is_placeholder_email(main_email) or not is_valid_email(main_email),
        updated_from_source=ordered[0].source_system if ordered else "unknown",
    )


# ---------------------------------- merge ------------------------------------ #

@dataclass
class BookingSources:
    web_bookings: list[dict[str, Any]] = field(default_factory=list)
    web_items: list[dict[str, Any]] = field(default_factory=list)
    web_travelers: list[dict[str, Any]] = field(default_factory=list)
    web_payment_summary: list[dict[str, Any]] = field(default_factory=list)
    ops_bookings: list[dict[str, Any]] = field(default_factory=list)
    ops_finances: list[dict[str, Any]] = field(default_factory=list)
    catalog_variants: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_fetch(cls, fetched: FetchResult, catalog_variants: list[dict[str, Any]]) -> "BookingSources":
        return cls(
            web_bookings=fetched.get("web_bookings"),
            web_items=fetched.get("web_items"),
            web_travelers=fetched.get("web_travelers"),
            web_payment_summary=fetched.get("web_payment_summary"),
            ops_bookings=fetched.get("ops_bookings"),
            ops_finances=fetched.get("ops_finances"),
            catalog_variants=catalog_variants,
        )

    def extracted_counts(self) -> dict[str, int]:
        return {
            "webBookings": len(self.web_bookings),
            "webItems": len(self.web_items),
            "webTravelers": len(self.web_travelers),
            "opsBookings": len(self.ops_bookings),
            "opsFinances": len(self.ops_finances),
        }


@dataclass
class MergeResult:
    booking_core: list[dict[str, Any]] = field(default_factory=list)
    booking_contact: list[dict[str, Any]] = field(default_factory=list)
    booking_party: list[dict[str, Any]] = field(default_factory=list)
    booking_items: list[dict[str, Any]] = field(default_factory=list)
    external_refs: list[dict[str, Any]] = field(default_factory=list)
    ops_state: list[dict[str, Any]] = field(default_factory=list)
    finance_bridge: list[dict[str, Any]] = field(default_factory=list)
    primaries: dict[str, str] = field(default_factory=dict)  # booking_key -> primary source_system

    def prepared_counts(self) -> dict[str, int]:
        return {
            "bookingCore": len(self.booking_core),
            "bookingContact": len(self.booking_contact),
            "bookingParty": len(self.booking_party),
            "bookingItemSnapshot": len(self.booking_items),
            "channelExternalRefs": len(self.external_refs),
            "opsBookingState": len(self.ops_state),
            "opsFinanceBridge": len(self.finance_bridge),
        }


def _variant_lookup(rows: Iterable[dict[str, Any]]) -> tuple[dict[str, str], set[str]]:
    by_package: dict[str, str] = {}
    known: set[str] = set()
    for row in rows:
        variant_key = norm_text(row.get("variant_key"))
        if not variant_key:
            continue
        known.add(variant_key)
        code = norm_upper(row.get("code"))
        if code and code.startswith("PKG-"):
            by_package[code[4:]] = variant_key
    return by_package, known


def _traveler_row(row: dict[str, Any]) -> dict[str, Any]:
    birth_date = parse_date_only(row.get("birth_date"))
    return {
        "travelerType": norm_upper(row.get("traveler_type")) or "ADULT",
        "firstName": norm_text(row.get("first_name")),
        "lastName": norm_text(row.get("last_name")),
        "email": norm_text(row.get("email")),
        "phone": norm_text(row.get("phone")),
        "nationality": norm_text(row.get("nationality")),
        "passportNumber": norm_text(row.get("passport_number")),
        "specialRequest": norm_text(row.get("special_request")),
        "birthDate": birth_date.isoformat() if birth_date else None,
    }


def synthetic_item(booking_key: str, primary: SourceRecord, variant_key: Optional[str]) -> dict[str, Any]:
    """Single approximate line item for a booking with no itemized source data.

    The total is divided evenly across adult + child travelers and the row is
    flagged ``synthetic`` so finance consumers can tell it from a real item.
    """
    pax = primary.number_of_adult + primary.number_of_child
    adult_unit_price = round(primary.total_price / pax, 2) if pax > 0 else primary.total_price
    return {
        "booking_item_key": derive_key(NS_BOOKING, f"{primary.source_system}:{primary.source_pk}:synthetic"),
        "booking_key": booking_key,
        "variant_key": variant_key,
        "variant_external_id": primary.package_id,
        "departure_external_id": None,
        "currency_code": primary.currency_code,
        "adult_qty": primary.number_of_adult,
        "child_qty": primary.number_of_child,
        "infant_qty": 0,
        "adult_unit_price": adult_unit_price,
        "child_unit_price": 0.0,
        "discount_amount": 0.0,
        "tax_amount": 0.0,
        "total_amount": primary.total_price,
        "snapshot_json": {"synthetic": True, "source": primary.source_system},
    }


def merge_bookings(sources: BookingSources, *, clock: Clock = utc_now) -> MergeResult:
    now = clock()
    payment_by_booking = {str(row.get("booking_id")): row for row in sources.web_payment_summary}
    finance_by_booking = {str(row.get("booking_id")): row for row in sources.ops_finances}
    variant_by_package, known_variants = _variant_lookup(sources.catalog_variants)

    arena = IdentityArena()
    web_identity_by_id: dict[str, IdentityKey] = {}
    for row in sources.web_bookings:
        record = build_web_record(row, payment_by_booking.get(str(row.get("booking_id"))))
        if record is not None:
            web_identity_by_id[record.source_pk] = arena.add(record)
    for row in sources.ops_bookings:
        record = build_ops_record(row)
        if record is not None:
            arena.add(record)

    travelers_by_item: dict[str, list[dict[str, Any]]] = {}
    for row in sources.web_travelers:
        item_id = norm_text(row.get("booking_item_id"))
        if item_id:
            travelers_by_item.setdefault(item_id, []).append(row)

    items_by_identity: dict[IdentityKey, list[dict[str, Any]]] = {}
    for row in sources.web_items:
        identity = web_identity_by_id.get(norm_text(row.get("booking_id")) or "")
        if identity is not None:
            items_by_identity.setdefault(identity, []).append(row)

    result = MergeResult()
    for identity in arena:
        primary = arena.primary(identity)
        group_sources = arena.sources(identity)
        channel_code, external_ref = identity
        booking_key = booking_identity_key(channel_code, external_ref)
        package_ref_key = variant_by_package.get(primary.package_id) if primary.package_id else None

        adult_qty = child_qty = infant_qty = 0
        travelers: list[dict[str, Any]] = []
        source_items = items_by_identity.get(identity, [])
        if source_items:
            for item in source_items:
                adult_qty += parse_int_or(item.get("adult_qty"), 0) or 0
                child_qty += parse_int_or(item.get("child_qty"), 0) or 0
                infant_qty += parse_int_or(item.get("infant_qty"), 0) or 0
                item_id = norm_text(item.get("booking_item_id")) or ""
                travelers.extend(_traveler_row(t) for t in travelers_by_item.get(item_id, []))
                variant_external_id = norm_text(item.get("variant_id"))
                candidate = (
                    derive_key(NS_CATALOG_VARIANT, f"{WEB_SYSTEM}:TourVariant:{variant_external_id}")
                    if variant_external_id else None
                )
                result.booking_items.append({
                    "booking_item_key": derive_key(NS_BOOKING, f"{WEB_SYSTEM}:BookingItem:{item_id}"),
                    "booking_key": booking_key,
                    "variant_key": candidate if candidate in known_variants else None,
                    "variant_external_id": variant_external_id,
                    "departure_external_id": norm_text(item.get("departure_id")),
                    "currency_code": norm_currency(item.get("currency_code"), primary.currency_code),
                    "adult_qty": parse_int_or(item.get("adult_qty"), 0) or 0,
                    "child_qty": parse_int_or(item.get("child_qty"), 0) or 0,
                    "infant_qty": parse_int_or(item.get("infant_qty"), 0) or 0,
                    "adult_unit_price": parse_num(item.get("adult_unit_price"), 0.0),
                    "child_unit_price": parse_num(item.get("child_unit_price"), 0.0),
                    "discount_amount": parse_num(item.get("discount_amount"), 0.0),
                    "tax_amount": parse_num(item.get("tax_amount"), 0.0),
                    "total_amount": parse_num(item.get("total_amount"), 0.0),
                    "snapshot_json": item.get("snapshot") if isinstance(item.get("snapshot"), dict) else None,
                })
        else:
            adult_qty, child_qty = primary.number_of_adult, primary.number_of_child
            result.booking_items.append(synthetic_item(booking_key, primary, package_ref_key))

        legacy_package_id = None
        if primary.package_id and primary.package_id.isdigit():
            legacy_package_id = int(primary.package_id)
        result.booking_core.append({
            "booking_key": booking_key,
            "channel_code": channel_code,
            "source_enum_compat": primary.channel_code,
            "external_booking_ref": external_ref,
            "booking_created_at": primary.booking_created_at or now,
            "booking_date": primary.booking_date,
            "tour_date": primary.tour_date or primary.booking_date or now.date(),
            "currency_code": primary.currency_code,
            "total_price": primary.total_price,
            "number_of_adult": primary.number_of_adult,
            "number_of_child": primary.number_of_child,
            "customer_payment_status": primary.customer_payment_status,
            "ops_fulfillment_status": primary.ops_fulfillment_status,
            "package_ref_type": (PackageRefType.CATALOG_VARIANT if package_ref_key else PackageRefType.LEGACY_PACKAGE).value,
            "package_ref_key": package_ref_key,
            "legacy_package_id": legacy_package_id,
            "note": primary.note,
        })
        result.booking_contact.append(pick_contact(group_sources).as_row(booking_key))
        result.booking_party.append({
            "booking_key": booking_key,
            "adult_qty": adult_qty,
            "child_qty": child_qty,
            "infant_qty": infant_qty,
            "traveler_rows": travelers or None,
        })

        result.external_refs.append({
            "external_ref_key": booking_ref_key(channel_code, external_ref),
            "entity_type": "BOOKING",
            "entity_key": booking_key,
            "channel_code": channel_code,
            "external_ref_kind": ExternalRefKind.BOOKING_REF.value,
            "external_ref": external_ref,
            "source_system": "canonical",
            "source_table": "booking_core",
            "source_pk": booking_key,
        })
        for source in group_sources:
            kind = (
                ExternalRefKind.BALISNAP_BOOKING_ID if source.source_system == WEB_SYSTEM
                else ExternalRefKind.BSTADMIN_BOOKING_ID
            ).value
            result.external_refs.append({
                "external_ref_key": source_ref_key(kind, channel_code, source.source_pk),
                "entity_type": "BOOKING",
                "entity_key": booking_key,
                "channel_code": channel_code,
                "external_ref_kind": kind,
                "external_ref": source.source_pk,
                "source_system": source.source_system,
                "source_table": source.source_table,
                "source_pk": source.source_pk,
            })

        result.ops_state.append({
            "booking_key": booking_key,
            "ops_fulfillment_status": primary.ops_fulfillment_status,
            "assigned_driver_id": primary.assigned_driver_id,
            "assigned_at": primary.assigned_at,
            "is_paid_flag": primary.customer_payment_status == PaymentStatus.PAID.value,
            "paid_at": primary.paid_at,
            "updated_from_source": primary.source_system,
        })

        ops_source = next((s for s in group_sources if s.source_system == OPS_SYSTEM), None)
        finance = finance_by_booking.get(ops_source.source_pk) if ops_source else None
        if finance:
            result.finance_bridge.append({
                "finance_bridge_key": finance_bridge_key(norm_text(finance.get("booking_finance_id"))),
                "booking_key": booking_key,
                "booking_finance_id": parse_int_or(finance.get("booking_finance_id"), None),
                "pattern_id": parse_int_or(finance.get("pattern_id"), None),
                "validated_at": parse_iso(finance.get("validated_at")),
                "is_locked": parse_bool(finance.get("is_locked"), False),
                "settlement_status": norm_upper(finance.get("settlement_status")) or "PENDING",
                "last_reconciled_at": now,
            })
        result.primaries[booking_key] = primary.source_system

    logger.info("Booking merge prepared", identities=len(arena), **result.prepared_counts())
    return result


__all__ = [
    "SourceContact",
    "SourceRecord",
    "IdentityGroup",
    "IdentityArena",
    "ContactResolution",
    "BookingSources",
    "MergeResult",
    "build_web_record",
    "build_ops_record",
    "pick_contact",
    "synthetic_item",
    "merge_bookings",
]
