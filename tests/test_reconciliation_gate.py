"""Reconciliation gate checks, thresholds and reports."""
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

from ops_bridge.models.db import BookingCore, CatalogProduct, PaymentEvent, UnmappedQueue
from ops_bridge.services.merge_engine import BookingSources, merge_bookings
from ops_bridge.services.reconciliation_gate import (
    GateMetrics,
    collect_metrics,
    evaluate_gate,
    render_markdown,
    write_gate_report,
)
from ops_bridge.services.sync_engine import SyncEngine

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ALLOW_EMPTY = {"allow_empty_catalog_denominator": True}


def _checks(report):
    return {check["name"]: check for check in report["checks"]}


def _healthy(**overrides) -> GateMetrics:
    values = {"booking_total": 10, "catalog_entity_total": 10}
    values.update(overrides)
    return GateMetrics(**values)


def _seed_booking(session, ref="WEB-1", booking_id="101"):
    sources = BookingSources(
        web_bookings=[{
            "booking_id": booking_id,
            "booking_ref": ref,
            "status_v2": "PAID",
            "booking_date": "2026-02-01",
            "total_price": 200,
            "number_of_adult": 2,
        }],
    )
    SyncEngine(session).apply(merge_bookings(sources))


def test_clean_metrics_pass():
    report = evaluate_gate(_healthy(), clock=lambda: NOW)
    assert report["result"] == "PASS"
    assert report["generatedAt"] == "2026-03-01T12:00:00Z"
    assert [check["name"] for check in report["checks"]] == [
        "booking_core_null_identity",
        "booking_core_duplicate_identity",
        "booking_pax_mismatch_ratio_percent",
        "booking_package_ref_type_completeness",
        "payment_orphan_rows",
        "ops_done_not_paid_ratio",
        "ingest_secondary_dedup_duplicates",
        "unmapped_ratio_percent",
        "global_mismatch_ratio",
    ]


def test_ratio_exactly_at_threshold_passes():
    metrics = GateMetrics(booking_total=2, duplicate_identity_excess_rows=1, catalog_entity_total=1)
    at_limit = evaluate_gate(metrics, {"max_duplicate_identity_ratio": 0.5})
    below = evaluate_gate(metrics, {"max_duplicate_identity_ratio": 0.49})
    assert _checks(at_limit)["booking_core_duplicate_identity"]["passed"] is True
    assert _checks(below)["booking_core_duplicate_identity"]["passed"] is False


def test_ops_done_not_paid_ratio_threshold():
    ok = evaluate_gate(_healthy(ops_done_total=100, ops_done_not_paid=1))
    too_many = evaluate_gate(_healthy(ops_done_total=100, ops_done_not_paid=2))
    assert _checks(ok)["ops_done_not_paid_ratio"]["passed"] is True
    assert _checks(too_many)["ops_done_not_paid_ratio"]["passed"] is False


def test_empty_store_fails_on_zero_denominators():
    report = evaluate_gate(GateMetrics())
    checks = _checks(report)
    assert report["result"] == "FAIL"
    assert checks["booking_pax_mismatch_ratio_percent"]["passed"] is False
    assert checks["unmapped_ratio_percent"]["passed"] is False
    assert checks["unmapped_ratio_percent"]["detail"] == "denominator=0, unmapped=0"
    assert checks["global_mismatch_ratio"]["passed"] is True


def test_empty_catalog_denominator_allowed_only_without_unmapped():
    allowed = _checks(evaluate_gate(_healthy(catalog_entity_total=0), ALLOW_EMPTY))
    assert allowed["unmapped_ratio_percent"]["passed"] is True
    assert "allowed by QUALITY_ALLOW_EMPTY_CATALOG_DENOMINATOR=true" in allowed["unmapped_ratio_percent"]["detail"]

    pending = _checks(evaluate_gate(_healthy(catalog_entity_total=0, unmapped_rows=1), ALLOW_EMPTY))
    assert pending["unmapped_ratio_percent"]["passed"] is False


def test_ingest_duplicates_fail_gate():
    report = evaluate_gate(_healthy(ingest_event_total=4, ingest_dedup_groups=1, ingest_dedup_excess_rows=1))
    check = _checks(report)["ingest_secondary_dedup_duplicates"]
    assert check["passed"] is False
    assert check["detail"] == "groups=1, excessRows=1"
    assert report["domains"]["ingest"]["ratio"] == 0.25


def test_collect_metrics_from_store(db_session):
    _seed_booking(db_session)
    metrics = collect_metrics(db_session)
    assert metrics.booking_total == 1
    assert metrics.null_identity_rows == 0
    assert metrics.pax_mismatch_rows == 0
    assert metrics.package_ref_type_null_rows == 0
    assert metrics.duplicate_identity_groups == 0

    report = evaluate_gate(metrics, ALLOW_EMPTY)
    assert report["result"] == "PASS"


def test_collect_metrics_sees_problems(db_session):
    _seed_booking(db_session)
    db_session.add_all([
        # second row for the same identity, with no items behind its pax
        BookingCore(
            booking_key=str(uuid.uuid4()),
            channel_code="DIRECT",
            external_booking_ref="WEB-1",
            number_of_adult=1,
            package_ref_type=None,
        ),
        PaymentEvent(payment_key=str(uuid.uuid4()), booking_key="no-such-booking", amount=10),
        CatalogProduct(product_key=str(uuid.uuid4()), slug="ubud", name="Ubud"),
        UnmappedQueue(
            queue_key=str(uuid.uuid4()),
            queue_type="VARIANT_MAPPING",
            source_system="bstadmin",
            source_table="packages",
            source_pk="7",
            reason_code="PACKAGE_WITHOUT_VARIANT",
        ),
    ])
    db_session.commit()

    metrics = collect_metrics(db_session)
    assert metrics.booking_total == 2
    assert metrics.duplicate_identity_groups == 1
    assert metrics.duplicate_identity_excess_rows == 1
    assert metrics.pax_mismatch_rows == 1
    assert metrics.package_ref_type_null_rows == 1
    assert metrics.payment_orphan_rows == 1
    assert metrics.unmapped_rows == 1
    assert metrics.catalog_entity_total == 1

    checks = _checks(evaluate_gate(metrics))
    assert checks["booking_core_duplicate_identity"]["passed"] is False
    assert checks["payment_orphan_rows"]["passed"] is False
    assert checks["unmapped_ratio_percent"]["passed"] is False
    assert checks["booking_core_null_identity"]["passed"] is True


def test_report_files_and_markdown(tmp_path):
    report = evaluate_gate(_healthy(), clock=lambda: NOW)
    json_path, md_path = write_gate_report(report, str(tmp_path), "batch-7")

    assert Path(json_path).parent == tmp_path / "batch-7"
    stored = json.loads(Path(json_path).read_text(encoding="utf-8"))
    assert stored["result"] == "PASS"
    assert stored["batchCode"] == "batch-7"

    markdown = Path(md_path).read_text(encoding="utf-8")
    assert markdown.startswith("# Reconciliation Gate Report")
    assert "- batch: batch-7" in markdown
    assert "| global_mismatch_ratio | PASS |" in markdown
    assert render_markdown(report)[6] == "## Checks"


def test_gate_endpoint_without_report(client, db_session):
    _seed_booking(db_session)
    response = client.get("/api/v1/reconciliation/gate", params={"write_report": "false"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["report"]["metrics"]["booking_total"] == 1
    assert "reportPaths" not in data["report"]
    assert data["markdown"].startswith("# Reconciliation Gate Report")
