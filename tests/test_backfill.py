"""End-to-end reconciliation runs over in-memory source feeds."""
import json
from pathlib import Path

import pytest

from ops_bridge.errors import SyncConflictError, ValidationError
from ops_bridge.models.db import BookingCore, OpsFinanceBridge, PaymentEvent, UnmappedQueue
from ops_bridge.services.backfill import run_booking_backfill, run_catalog_backfill
from ops_bridge.services.source_feed import StaticSourceFeed
from ops_bridge.services.sync_engine import SyncEngine
from ops_bridge.utils.identity import booking_identity_key, finance_bridge_key


def _booking_feeds(**rows):
    names = ["web_bookings", "web_items", "web_travelers", "web_payment_summary", "ops_bookings", "ops_finances"]
    return [StaticSourceFeed(name, rows.get(name, [])) for name in names]


def _payment_feeds(**rows):
    return [StaticSourceFeed(name, rows.get(name, [])) for name in ("web_payments", "ops_finances", "ops_paid")]


WEB_BOOKING = {
    "booking_id": "101",
    "booking_ref": "WEB-1",
    "status_v2": "PENDING",
    "package_id": "12",
    "booking_date": "2026-02-01",
    "total_price": 300,
    "number_of_adult": 2,
    "number_of_child": 1,
    "main_contact_name": "Ayu Lestari",
    "main_contact_email": "ayu@balisnap.id",
}


def test_booking_backfill_writes_and_reports(db_session, tmp_path):
    report = run_booking_backfill(
        db_session,
        _booking_feeds(web_bookings=[WEB_BOOKING]),
        _payment_feeds(web_payments=[{
            "payment_id": "p1",
            "booking_id": "101",
            "payment_status_v2": "PAID",
            "amount": 300,
            "payment_date": "2026-01-11T00:00:00Z",
        }]),
        dry_run=False,
        batch_code="run-1",
        report_dir=str(tmp_path),
    )

    assert report["result"] == "PASS"
    assert report["dryRun"] is False
    assert report["counts"]["extracted"]["webBookings"] == 1
    assert report["counts"]["after"]["bookingCore"] == 1
    assert report["counts"]["payments"]["after"]["paymentEvent"] == 1
    assert report["counts"]["payments"]["statusUpdates"] == 1

    booking = db_session.get(BookingCore, booking_identity_key("DIRECT", "WEB-1"))
    assert booking.customer_payment_status == "PAID"
    assert booking.package_ref_type == "LEGACY_PACKAGE"
    assert db_session.query(PaymentEvent).count() == 1

    stored = json.loads(Path(report["reportPaths"]["json"]).read_text(encoding="utf-8"))
    assert stored["result"] == "PASS"
    assert Path(report["reportPaths"]["markdown"]).read_text(encoding="utf-8").startswith("# Booking Bridge Backfill")


def test_rerun_is_stable(db_session, tmp_path):
    kwargs = {"dry_run": False, "batch_code": "run-2", "report_dir": str(tmp_path)}
    first = run_booking_backfill(db_session, _booking_feeds(web_bookings=[WEB_BOOKING]), _payment_feeds(), **kwargs)
    second = run_booking_backfill(db_session, _booking_feeds(web_bookings=[WEB_BOOKING]), _payment_feeds(), **kwargs)
    assert second["counts"]["before"] == first["counts"]["after"]
    assert second["counts"]["after"] == first["counts"]["after"]


def test_dry_run_leaves_store_untouched(db_session, tmp_path):
    report = run_booking_backfill(
        db_session,
        _booking_feeds(web_bookings=[WEB_BOOKING]),
        _payment_feeds(web_payments=[{"payment_id": "p1", "booking_id": "101", "payment_status_v2": "PAID"}]),
        dry_run=True,
        report_dir=str(tmp_path),
    )
    assert report["result"] == "PASS"
    assert report["dryRun"] is True
    assert report["counts"]["prepared"]["bookingCore"] == 1
    assert db_session.query(BookingCore).count() == 0
    assert db_session.query(PaymentEvent).count() == 0


def test_orphan_payment_becomes_warning(db_session, tmp_path):
    report = run_booking_backfill(
        db_session,
        _booking_feeds(web_bookings=[WEB_BOOKING]),
        _payment_feeds(web_payments=[{"payment_id": "p9", "booking_id": "999"}]),
        dry_run=False,
        report_dir=str(tmp_path),
    )
    assert report["result"] == "PASS"
    assert "orphan source payments=1" in report["warnings"]


def test_no_source_rows_fails_with_report(db_session, tmp_path):
    with pytest.raises(ValidationError) as excinfo:
        run_booking_backfill(db_session, _booking_feeds(), _payment_feeds(), batch_code="empty", report_dir=str(tmp_path))
    assert excinfo.value.code == "NO_SOURCE_ROWS"

    reports = list((tmp_path / "empty").glob("*-booking-bridge-backfill.json"))
    assert len(reports) == 1
    stored = json.loads(reports[0].read_text(encoding="utf-8"))
    assert stored["result"] == "FAIL"
    assert "No booking source rows" in stored["warnings"][-1]


def test_catalog_backfill_then_bookings_resolve_variant(db_session, tmp_path):
    catalog = run_catalog_backfill(
        db_session,
        [
            StaticSourceFeed("web_products", [{"product_id": "1", "product_name": "Ubud Day Tour", "slug": "ubud-day-tour"}]),
            StaticSourceFeed("web_variants", [{"variant_id": "10", "product_id": "1", "variant_code": "UBUD-PRIVATE"}]),
            StaticSourceFeed("ops_packages", [{"package_id": "12", "package_name": "Kintamani Sunrise", "slug": "kintamani"}]),
        ],
        dry_run=False,
        report_dir=str(tmp_path),
    )
    assert catalog["result"] == "PASS"
    assert catalog["counts"]["after"] == {"catalogProduct": 2, "catalogVariant": 2, "unmappedQueue": 1}
    assert "unmapped catalog entries=1" in catalog["warnings"]
    unmapped = db_session.query(UnmappedQueue).one()
    assert unmapped.queue_type == "PRODUCT_MAPPING"
    assert unmapped.source_pk == "12"

    run_booking_backfill(
        db_session,
        _booking_feeds(web_bookings=[WEB_BOOKING]),
        _payment_feeds(),
        dry_run=False,
        report_dir=str(tmp_path),
    )
    booking = db_session.get(BookingCore, booking_identity_key("DIRECT", "WEB-1"))
    assert booking.package_ref_type == "CATALOG_VARIANT"
    assert booking.package_ref_key is not None


def test_failed_payment_write_rolls_back_bookings(db_session, tmp_path, monkeypatch):
    def fail_payments(self, result):
        raise SyncConflictError("payments: duplicate payment_ref")

    monkeypatch.setattr(SyncEngine, "_write_payments", fail_payments)
    with pytest.raises(SyncConflictError):
        run_booking_backfill(
            db_session,
            _booking_feeds(web_bookings=[WEB_BOOKING]),
            _payment_feeds(),
            dry_run=False,
            batch_code="half",
            report_dir=str(tmp_path),
        )

    assert db_session.query(BookingCore).count() == 0
    stored = json.loads(next((tmp_path / "half").glob("*-booking-bridge-backfill.json")).read_text(encoding="utf-8"))
    assert stored["result"] == "FAIL"


def test_finance_bridge_keyed_once_across_booking_and_payment_passes(db_session, tmp_path):
    ops_booking = {
        "booking_id": "9001",
        "source": "DIRECT",
        "booking_ref": "WEB-1",
        "is_paid": False,
        "status": "READY",
        "tour_date": "2026-02-01",
        "currency": "USD",
        "total_price": 300,
        "number_of_adult": 2,
        "number_of_child": 1,
    }
    finance = {"booking_finance_id": "55", "booking_id": "9001", "settlement_status": "settled"}
    kwargs = {"dry_run": False, "report_dir": str(tmp_path)}
    for _ in range(2):
        run_booking_backfill(
            db_session,
            _booking_feeds(ops_bookings=[ops_booking], ops_finances=[finance]),
            _payment_feeds(ops_finances=[finance]),
            **kwargs,
        )

    bridge = db_session.query(OpsFinanceBridge).one()
    assert bridge.finance_bridge_key == finance_bridge_key("55")
    assert bridge.booking_key == booking_identity_key("DIRECT", "WEB-1")
    assert bridge.settlement_status == "SETTLED"
