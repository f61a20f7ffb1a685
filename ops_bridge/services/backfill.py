"""Reconciliation run orchestration.

``run_booking_backfill`` runs one end-to-end pass:

1. Fan out the source reads (bookings side) and fan them back in.
2. Merge into canonical rows.
3. Sync bookings in one transaction.
4. Merge + sync payments and finance against the refs just written.
5. Write the JSON and markdown run report.

A run that fails still leaves a FAIL report with the error message, then the
error propagates to the caller (API route or CLI).
"""
from __future__ import annotations

import time
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from ops_bridge.config import SYNC_SETTINGS
from ops_bridge.errors import ValidationError
from ops_bridge.models.db import BookingCore, CatalogVariant, ChannelExternalRef
from ops_bridge.services.catalog_merge import merge_catalog
from ops_bridge.services.merge_engine import BookingSources, MergeResult, merge_bookings
from ops_bridge.services.payment_merge import merge_payments
from ops_bridge.services.source_feed import (
    SourceFeed,
    booking_feeds,
    catalog_feeds,
    fetch_all,
    payment_feeds,
)
from ops_bridge.services.sync_engine import SyncEngine
from ops_bridge.utils import get_logger, log_business_event, log_performance
from ops_bridge.utils.reports import markdown_json_block, write_report_files
from ops_bridge.utils.time import Clock, iso_z, utc_now

logger = get_logger(__name__)

BOOKING_GATE = "BOOKING_BRIDGE_BACKFILL"
CATALOG_GATE = "CATALOG_BRIDGE_BACKFILL"


def _settings(dry_run: Optional[bool], batch_code: Optional[str], report_dir: Optional[str]) -> tuple[bool, str, str]:
    return (
        bool(SYNC_SETTINGS["dry_run"]) if dry_run is None else bool(dry_run),
        batch_code or str(SYNC_SETTINGS["batch_code"]),
        report_dir or str(SYNC_SETTINGS["report_dir"]),
    )


def render_backfill_markdown(report: dict[str, Any], title: str) -> list[str]:
    warnings = report.get("warnings") or []
    return [
        f"# {title}",
        "",
        f"- result: {report['result']}",
        f"- batch: {report['batchCode']}",
        f"- dryRun: {report['dryRun']}",
        f"- startedAt: {report['startedAt']}",
        f"- endedAt: {report['endedAt']}",
        "",
        "## Counts",
        *markdown_json_block(report.get("counts", {})),
        "",
        "## Warnings",
        *([f"- {item}" for item in warnings] if warnings else ["- none"]),
        "",
    ]


def _finish(report: dict[str, Any], title: str, slug: str, report_dir: str, clock: Clock) -> dict[str, Any]:
    report["endedAt"] = iso_z(clock())
    json_path, md_path = write_report_files(
        report,
        render_backfill_markdown(report, title),
        report_dir=report_dir,
        batch_code=report["batchCode"],
        slug=slug,
    )
    report["reportPaths"] = {"json": json_path, "markdown": md_path}
    log_business_event(f"{slug}_completed", {"result": report["result"], "batch_code": report["batchCode"], "dry_run": report["dryRun"]})
    return report


def _store_refs(session: Session, result: MergeResult) -> list[dict[str, Any]]:
    rows = [
        {
            "entity_key": ref.entity_key,
            "external_ref_kind": ref.external_ref_kind,
            "external_ref": ref.external_ref,
            "channel_code": ref.channel_code,
        }
        for ref in session.query(ChannelExternalRef).filter(ChannelExternalRef.entity_type == "BOOKING")
    ]
    # Dry runs never wrote this run's refs; the merged ones stand in.
    rows.extend(dict(ref) for ref in result.external_refs)
    return rows


def _store_bookings(session: Session, result: MergeResult) -> dict[str, dict[str, Any]]:
    bookings = {
        row["booking_key"]: {
            "channel_code": row["channel_code"],
            "customer_payment_status": row["customer_payment_status"],
            "ops_fulfillment_status": row["ops_fulfillment_status"],
        }
        for row in result.booking_core
    }
    for booking in session.query(BookingCore):
        bookings[booking.booking_key] = {
            "channel_code": booking.channel_code,
            "customer_payment_status": booking.customer_payment_status,
            "ops_fulfillment_status": booking.ops_fulfillment_status,
        }
    return bookings


def run_booking_backfill(
    session: Session,
    sources: Optional[Sequence[SourceFeed]] = None,
    payment_sources: Optional[Sequence[SourceFeed]] = None,
    *,
    dry_run: Optional[bool] = None,
    batch_code: Optional[str] = None,
    report_dir: Optional[str] = None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    dry_run, batch_code, report_dir = _settings(dry_run, batch_code, report_dir)
    started = time.time()
    report: dict[str, Any] = {
        "gate": BOOKING_GATE,
        "batchCode": batch_code,
        "startedAt": iso_z(clock()),
        "endedAt": None,
        "dryRun": dry_run,
        "result": "FAIL",
        "counts": {},
        "warnings": [],
    }
    try:
        fetched = fetch_all(list(sources) if sources is not None else booking_feeds())
        report["warnings"].extend(fetched.warnings)
        variants = [
            {"variant_key": key, "code": code}
            for key, code in session.query(CatalogVariant.variant_key, CatalogVariant.code)
        ]
        bundle = BookingSources.from_fetch(fetched, variants)
        report["counts"]["extracted"] = bundle.extracted_counts()
        if not bundle.web_bookings and not bundle.ops_bookings:
            raise ValidationError("NO_SOURCE_ROWS", "No booking source rows extracted from balisnap/bstadmin.")

        merged = merge_bookings(bundle, clock=clock)
        engine = SyncEngine(session, clock=clock)
        booking_outcome = engine.apply(merged, dry_run=dry_run, commit=False)
        report["counts"]["prepared"] = booking_outcome.prepared
        report["counts"]["before"] = booking_outcome.before
        report["counts"]["after"] = booking_outcome.after

        payment_fetch = fetch_all(list(payment_sources) if payment_sources is not None else payment_feeds())
        report["warnings"].extend(payment_fetch.warnings)
        payments = merge_payments(
            payment_fetch.get("web_payments"),
            payment_fetch.get("ops_finances"),
            payment_fetch.get("ops_paid"),
            _store_refs(session, merged),
            _store_bookings(session, merged),
            clock=clock,
        )
        payment_outcome = engine.apply_payments(payments, dry_run=dry_run, commit=False)
        if not dry_run:
            engine.commit("bookings+payments")
        report["counts"]["payments"] = {
            "extracted": payment_fetch.extracted_counts(),
            **payment_outcome.to_dict(),
        }
        if payments.orphans:
            report["warnings"].append(f"orphan source payments={len(payments.orphans)}")
        report["result"] = "PASS"
    except Exception as exc:
        session.rollback()
        report["result"] = "FAIL"
        report["warnings"].append(getattr(exc, "message", None) or str(exc))
        logger.error("Booking backfill failed", batch=batch_code, error=str(exc))
        _finish(report, "Booking Bridge Backfill", "booking-bridge-backfill", report_dir, clock)
        raise
    finally:
        log_performance("booking_backfill", (time.time() - started) * 1000, {"dry_run": dry_run})
    return _finish(report, "Booking Bridge Backfill", "booking-bridge-backfill", report_dir, clock)


def run_catalog_backfill(
    session: Session,
    sources: Optional[Sequence[SourceFeed]] = None,
    *,
    dry_run: Optional[bool] = None,
    batch_code: Optional[str] = None,
    report_dir: Optional[str] = None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    dry_run, batch_code, report_dir = _settings(dry_run, batch_code, report_dir)
    report: dict[str, Any] = {
        "gate": CATALOG_GATE,
        "batchCode": batch_code,
        "startedAt": iso_z(clock()),
        "endedAt": None,
        "dryRun": dry_run,
        "result": "FAIL",
        "counts": {},
        "warnings": [],
    }
    try:
        fetched = fetch_all(list(sources) if sources is not None else catalog_feeds())
        report["warnings"].extend(fetched.warnings)
        report["counts"]["extracted"] = fetched.extracted_counts()
        if not fetched.get("web_products") and not fetched.get("ops_packages"):
            raise ValidationError("NO_SOURCE_ROWS", "No catalog source rows extracted from balisnap/bstadmin.")
        merged = merge_catalog(fetched.get("web_products"), fetched.get("web_variants"), fetched.get("ops_packages"))
        outcome = SyncEngine(session, clock=clock).apply_catalog(merged, dry_run=dry_run)
        report["counts"].update(outcome.to_dict())
        if merged.unmapped:
            report["warnings"].append(f"unmapped catalog entries={len(merged.unmapped)}")
        report["result"] = "PASS"
    except Exception as exc:
        report["warnings"].append(getattr(exc, "message", None) or str(exc))
        logger.error("Catalog backfill failed", batch=batch_code, error=str(exc))
        _finish(report, "Catalog Bridge Backfill", "catalog-bridge-backfill", report_dir, clock)
        raise
    return _finish(report, "Catalog Bridge Backfill", "catalog-bridge-backfill", report_dir, clock)


__all__ = ["run_booking_backfill", "run_catalog_backfill", "render_backfill_markdown"]
