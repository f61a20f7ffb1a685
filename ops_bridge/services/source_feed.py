"""Read-only source record feeds.

A feed is one query per source system and entity type, consumed in bulk per
reconciliation run. ``fetch_all`` fans the reads out over a thread pool and fans
the rows back in before any grouping starts; a failing feed degrades to an empty
row list plus a warning so the run report shows exactly what was missing.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ops_bridge.config import SOURCE_SETTINGS, SYNC_SETTINGS
from ops_bridge.utils import get_logger, log_performance

logger = get_logger(__name__)


class SourceFeed(Protocol):
    name: str

    def fetch(self, warnings: list[str]) -> list[dict[str, Any]]: ...


class SqlSourceFeed:
    """Run each SQL text in order and return the first result set that succeeds."""

    def __init__(self, name: str, engine: Optional[Engine], queries: Sequence[str], label: Optional[str] = None):
        self.name = name
        self.engine = engine
        self.queries = list(queries)
        self.label = label or name

    def fetch(self, warnings: list[str]) -> list[dict[str, Any]]:
        if self.engine is None:
            warnings.append(f"{self.label}: source database not configured")
            return []
        last_error: Optional[Exception] = None
        for sql in self.queries:
            try:
                with self.engine.connect() as conn:
                    return [dict(row) for row in conn.execute(text(sql)).mappings()]
            except SQLAlchemyError as exc:
                last_error = exc
                logger.debug("Source query variant failed", feed=self.name, error=str(exc))
        warnings.append(f"{self.label}: {last_error}")
        return []


class StaticSourceFeed:
    """In-memory rows (tests, JSON imports)."""

    def __init__(self, name: str, rows: Iterable[dict[str, Any]]):
        self.name = name
        self._rows = [dict(row) for row in rows]

    def fetch(self, warnings: list[str]) -> list[dict[str, Any]]:
        return [dict(row) for row in self._rows]


@dataclass
class FetchResult:
    rows: dict[str, list[dict[str, Any]]]
    warnings: list[str] = field(default_factory=list)

    def get(self, name: str) -> list[dict[str, Any]]:
        return self.rows.get(name, [])

    def extracted_counts(self) -> dict[str, int]:
        return {name: len(rows) for name, rows in self.rows.items()}


def fetch_all(feeds: Sequence[SourceFeed], max_workers: Optional[int] = None) -> FetchResult:
    """Read every feed concurrently; returns only after all reads completed."""
    workers = int(max_workers or SYNC_SETTINGS["fanout_workers"])  # type: ignore[arg-type]
    start = time.time()

    def _run(feed: SourceFeed) -> tuple[str, list[dict[str, Any]], list[str]]:
        local_warnings: list[str] = []
        rows = feed.fetch(local_warnings)
        return feed.name, rows, local_warnings

    result = FetchResult(rows={})
    if not feeds:
        return result
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(feeds))), thread_name_prefix="source-feed") as pool:
        for name, rows, feed_warnings in pool.map(_run, feeds):
            result.rows[name] = rows
            result.warnings.extend(feed_warnings)

    log_performance(
        operation="source_fetch_all",
        duration_ms=(time.time() - start) * 1000,
        additional_data=result.extracted_counts(),
    )
    return result

# ----------------------------- source queries ----------------------------- #

WEB_BOOKING_SQL = """
select
  cast(b.booking_id as text) as booking_id, cast(b.booking_ref as text) as booking_ref,
  cast(b.package_id as text) as package_id, b.booking_date, b.created_at, b.updated_at,
  b.currency_code, b.total_price, b.number_of_adult, b.number_of_child, b.status,
  cast(b.status_v2 as text) as status_v2, b.main_contact_name, b.main_contact_email,
  b.phone_number, b.meeting_point, b.note
from "Booking" b
"""

WEB_ITEM_SQL = """
select
  cast(i.booking_item_id as text) as booking_item_id, cast(i.booking_id as text) as booking_id,
  cast(i.variant_id as text) as variant_id, cast(i.departure_id as text) as departure_id,
  i.currency_code, i.adult_qty, i.child_qty, i.infant_qty, i.adult_unit_price, i.child_unit_price,
  i.discount_amount, i.tax_amount, i.total_amount, i.snapshot
from "BookingItem" i
"""

WEB_TRAVELER_SQL = """
select
  cast(t.booking_item_id as text) as booking_item_id, t.traveler_type, t.first_name, t.last_name,
  t.email, t.phone, t.nationality, t.passport_number, t.special_request, t.birth_date
from "BookingTraveler" t
"""

WEB_PAYMENT_AGG_SQL = """
select
  cast(p.booking_id as text) as booking_id,
  count(*) as payment_count,
  max(case when upper(coalesce(cast(p.payment_status_v2 as text), '')) in ('PAID', 'CONFIRMED', 'COMPLETED') then 1 else 0 end) as has_paid_v2,
  max(case when lower(coalesce(cast(p.payment_status as text), '')) in ('paid', 'completed', 'confirmed', 'captured', 'success') then 1 else 0 end) as has_paid_legacy
from "Payment" p
group by p.booking_id
"""

WEB_PAYMENT_ROW_SQL = (
    """
select
  cast(p.payment_id as text) as payment_id, cast(p.booking_id as text) as booking_id,
  cast(b.booking_ref as text) as booking_ref, p.payment_date, p.amount, p.currency_code,
  p.payment_method, cast(p.payment_status as text) as payment_status,
  cast(p.payment_status_v2 as text) as payment_status_v2, p.gateway, p.gateway_order_id,
  p.gateway_capture_id, p.payment_ref, p.raw_payload
from "Payment" p
left join "Booking" b on b.booking_id = p.booking_id
""",
    """
select
  cast(p.payment_id as text) as payment_id, cast(p.booking_id as text) as booking_id,
  cast(b.booking_ref as text) as booking_ref, p.payment_date, p.amount, p.currency_code,
  p.payment_method, cast(p.payment_status as text) as payment_status,
  null as payment_status_v2, p.gateway, p.gateway_order_id,
  p.gateway_capture_id, p.payment_ref, p.raw_payload
from payment p
left join booking b on b.booking_id = p.booking_id
""",
)

OPS_BOOKING_SQL = """
select
  cast(b.booking_id as text) as booking_id, cast(b.booking_ref as text) as booking_ref,
  cast(b.source as text) as source, cast(b.package_id as text) as package_id,
  b.booking_date, b.tour_date, b.created_at, b.updated_at, b.currency, b.total_price,
  b.number_of_adult, b.number_of_child, cast(b.status as text) as status,
  b.main_contact_name, b.main_contact_email, b.phone_number, b.pickup_location,
  b.meeting_point, b.note, b.assigned_driver_id, b.assigned_at, b.is_paid, b.paid_at
from bookings b
"""

OPS_FINANCE_SQL = (
    """
select
  cast(f.booking_id as text) as booking_id, cast(f.booking_finance_id as text) as booking_finance_id,
  cast(f.pattern_id as text) as pattern_id, f.validated_at, f.is_locked,
  case
    when count(fi.finance_item_id) = 0 then 'PENDING'
    when min(case when coalesce(fi.paid, false) then 1 else 0 end) = 1 then 'SETTLED'
    else 'PENDING'
  end as settlement_status
from booking_finances f
left join booking_finance_items fi on fi.booking_finance_id = f.booking_finance_id
group by f.booking_id, f.booking_finance_id, f.pattern_id, f.validated_at, f.is_locked
""",
    """
select
  cast(f.booking_id as text) as booking_id, cast(f.id as text) as booking_finance_id,
  cast(f.pattern_id as text) as pattern_id, f.validated_at, f.is_locked,
  case
    when count(fi.id) = 0 then 'PENDING'
    when min(case when coalesce(fi.paid, false) then 1 else 0 end) = 1 then 'SETTLED'
    else 'PENDING'
  end as settlement_status
from "BookingFinance" f
left join "BookingFinanceItem" fi on fi.booking_finance_id = f.id
group by f.booking_id, f.id, f.pattern_id, f.validated_at, f.is_locked
""",
)

OPS_PAID_SQL = (
    "select cast(b.booking_id as text) as booking_id, cast(b.source as text) as source, b.is_paid, b.paid_at from bookings b",
    'select cast(b.booking_id as text) as booking_id, cast(b.source as text) as source, b.is_paid, b.paid_at from "Booking" b',
)

WEB_PRODUCT_SQL = """
select
  cast(product_id as text) as product_id, cast(legacy_package_id as text) as legacy_package_id,
  product_name, slug, category, short_description, is_active, is_featured, thumbnail_url, country_code
from "TourProduct"
"""

WEB_VARIANT_SQL = """
select
  cast(variant_id as text) as variant_id, cast(product_id as text) as product_id,
  cast(legacy_package_id as text) as legacy_package_id, variant_code, variant_name, service_type,
  duration_days, min_pax, max_pax, currency_code, is_default, is_active
from "TourVariant"
"""

OPS_PACKAGE_SQL = """
select
  cast(p.package_id as text) as package_id, p.package_name, p.slug, p.short_description,
  p.duration_days, p.min_booking, p.max_booking, p.is_featured, p.thumbnail_url, p.base_currency
from tour_packages p
"""

_ENGINES: dict[str, Engine] = {}


def source_engine(url: Optional[str]) -> Optional[Engine]:
    if not url:
        return None
    if url not in _ENGINES:
        _ENGINES[url] = create_engine(url, pool_pre_ping=True)
    return _ENGINES[url]


def booking_feeds(web: Optional[Engine] = None, ops: Optional[Engine] = None) -> list[SourceFeed]:
    web = web or source_engine(SOURCE_SETTINGS["balisnap_db_url"])
    ops = ops or source_engine(SOURCE_SETTINGS["bstadmin_db_url"])
    return [
        SqlSourceFeed("web_bookings", web, [WEB_BOOKING_SQL], "balisnap booking"),
        SqlSourceFeed("web_items", web, [WEB_ITEM_SQL], "balisnap booking_item"),
        SqlSourceFeed("web_travelers", web, [WEB_TRAVELER_SQL], "balisnap booking_traveler"),
        SqlSourceFeed("web_payment_summary", web, [WEB_PAYMENT_AGG_SQL], "balisnap payment"),
        SqlSourceFeed("ops_bookings", ops, [OPS_BOOKING_SQL], "bstadmin bookings"),
        SqlSourceFeed("ops_finances", ops, OPS_FINANCE_SQL, "bstadmin booking_finances"),
    ]


def payment_feeds(web: Optional[Engine] = None, ops: Optional[Engine] = None) -> list[SourceFeed]:
    web = web or source_engine(SOURCE_SETTINGS["balisnap_db_url"])
    ops = ops or source_engine(SOURCE_SETTINGS["bstadmin_db_url"])
    return [
        SqlSourceFeed("web_payments", web, WEB_PAYMENT_ROW_SQL, "balisnap payment source"),
        SqlSourceFeed("ops_finances", ops, OPS_FINANCE_SQL, "bstadmin finance source"),
        SqlSourceFeed("ops_paid", ops, OPS_PAID_SQL, "bstadmin paid source"),
    ]


def catalog_feeds(web: Optional[Engine] = None, ops: Optional[Engine] = None) -> list[SourceFeed]:
    web = web or source_engine(SOURCE_SETTINGS["balisnap_db_url"])
    ops = ops or source_engine(SOURCE_SETTINGS["bstadmin_db_url"])
    return [
        SqlSourceFeed("web_products", web, [WEB_PRODUCT_SQL], "balisnap TourProduct"),
        SqlSourceFeed("web_variants", web, [WEB_VARIANT_SQL], "balisnap TourVariant"),
        SqlSourceFeed("ops_packages", ops, [OPS_PACKAGE_SQL], "bstadmin tour_packages"),
    ]


__all__ = [
    "SourceFeed",
    "SqlSourceFeed",
    "StaticSourceFeed",
    "FetchResult",
    "fetch_all",
    "source_engine",
    "booking_feeds",
    "payment_feeds",
    "catalog_feeds",
]
