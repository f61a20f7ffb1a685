"""Reconciliation gate: read-only quality checks over the canonical store.

The gate is an auditor, not a guard. It runs after a batch committed, reports
its findings and never writes to the canonical tables. Every ratio is rounded
to six decimals before the ``<=`` comparison, so a value exactly at its
threshold passes.
"""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ops_bridge.config import GATE_THRESHOLDS, SYNC_SETTINGS
from ops_bridge.models.db import (
    BookingCore,
    BookingItemSnapshot,
    CatalogProduct,
    CatalogVariant,
    IngestEventLog,
    PaymentEvent,
    UnmappedQueue,
)
from ops_bridge.models.db.enums import OpsFulfillmentStatus, PaymentStatus, UnmappedQueueType, UnmappedStatus
from ops_bridge.utils import get_logger, log_business_event, log_performance
from ops_bridge.utils.metrics import percent_or_null, ratio_or_zero
from ops_bridge.utils.reports import markdown_json_block, write_report_files
from ops_bridge.utils.time import Clock, iso_z, utc_now

logger = get_logger(__name__)

GATE_NAME = "RECONCILIATION_GATE"
GATE_QUEUE_TYPES = tuple(item.value for item in UnmappedQueueType)


@dataclass
class GateMetrics:
    booking_total: int = 0
    null_identity_rows: int = 0
    duplicate_identity_groups: int = 0
    duplicate_identity_excess_rows: int = 0
    pax_mismatch_rows: int = 0
    package_ref_type_null_rows: int = 0
    payment_total: int = 0
    payment_orphan_rows: int = 0
    ops_done_total: int = 0
    ops_done_not_paid: int = 0
    ingest_event_total: int = 0
    ingest_dedup_groups: int = 0
    ingest_dedup_excess_rows: int = 0
    unmapped_rows: int = 0
    catalog_entity_total: int = 0

    @property
    def pax_mismatch_ratio_percent(self) -> Optional[float]:
        return percent_or_null(self.pax_mismatch_rows, self.booking_total)

    @property
    def unmapped_ratio_percent(self) -> Optional[float]:
        return percent_or_null(self.unmapped_rows, self.catalog_entity_total)

    @property
    def ops_done_not_paid_ratio(self) -> float:
        return ratio_or_zero(self.ops_done_not_paid, self.ops_done_total)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["pax_mismatch_ratio_percent"] = self.pax_mismatch_ratio_percent
        data["unmapped_ratio_percent"] = self.unmapped_ratio_percent
        data["ops_done_not_paid_ratio"] = self.ops_done_not_paid_ratio
        return data


def _count(query) -> int:
    return int(query.scalar() or 0)


def _duplicate_groups(session: Session, *columns) -> tuple[int, int]:
    grouped = (
        session.query(*columns, func.count().label("total_rows"))
        .group_by(*columns)
        .having(func.count() > 1)
        .subquery()
    )
    groups, excess = session.query(
        func.count(),
        func.coalesce(func.sum(grouped.c.total_rows - 1), 0),
    ).select_from(grouped).one()
    return int(groups or 0), int(excess or 0)


def collect_metrics(session: Session) -> GateMetrics:
    """Run the gate aggregates. Nothing here adds, flushes or commits."""
    metrics = GateMetrics()
    metrics.booking_total = _count(session.query(func.count(BookingCore.booking_key)))
    metrics.null_identity_rows = _count(
        session.query(func.count(BookingCore.booking_key)).filter(
            or_(BookingCore.channel_code.is_(None), BookingCore.external_booking_ref.is_(None))
        )
    )
    metrics.duplicate_identity_groups, metrics.duplicate_identity_excess_rows = _duplicate_groups(
        session, BookingCore.channel_code, BookingCore.external_booking_ref
    )
    metrics.package_ref_type_null_rows = _count(
        session.query(func.count(BookingCore.booking_key)).filter(
            or_(BookingCore.package_ref_type.is_(None), func.trim(BookingCore.package_ref_type) == "")
        )
    )

    item_pax = (
        session.query(
            BookingItemSnapshot.booking_key.label("booking_key"),
            func.sum(
                func.coalesce(BookingItemSnapshot.adult_qty, 0) + func.coalesce(BookingItemSnapshot.child_qty, 0)
            ).label("item_pax"),
        )
        .group_by(BookingItemSnapshot.booking_key)
        .subquery()
    )
    head_pax = func.coalesce(BookingCore.number_of_adult, 0) + func.coalesce(BookingCore.number_of_child, 0)
    metrics.pax_mismatch_rows = _count(
        session.query(func.count(BookingCore.booking_key))
        .select_from(BookingCore)
        .outerjoin(item_pax, item_pax.c.booking_key == BookingCore.booking_key)
        .filter(func.abs(head_pax - func.coalesce(item_pax.c.item_pax, 0)) > 0)
    )

    metrics.payment_total = _count(session.query(func.count(PaymentEvent.payment_key)))
    metrics.payment_orphan_rows = _count(
        session.query(func.count(PaymentEvent.payment_key))
        .select_from(PaymentEvent)
        .outerjoin(BookingCore, BookingCore.booking_key == PaymentEvent.booking_key)
        .filter(BookingCore.booking_key.is_(None))
    )

    done = BookingCore.ops_fulfillment_status == OpsFulfillmentStatus.DONE.value
    metrics.ops_done_total = _count(session.query(func.count(BookingCore.booking_key)).filter(done))
    metrics.ops_done_not_paid = _count(
        session.query(func.count(BookingCore.booking_key)).filter(
            done, BookingCore.customer_payment_status != PaymentStatus.PAID.value
        )
    )

    metrics.ingest_event_total = _count(session.query(func.count(IngestEventLog.event_key)))
    metrics.ingest_dedup_groups, metrics.ingest_dedup_excess_rows = _duplicate_groups(
        session,
        IngestEventLog.source_enum,
        IngestEventLog.external_booking_ref,
        IngestEventLog.event_type,
        IngestEventLog.event_time_normalized,
    )

    metrics.unmapped_rows = _count(
        session.query(func.count(UnmappedQueue.queue_key)).filter(
            UnmappedQueue.status == UnmappedStatus.OPEN.value,
            UnmappedQueue.queue_type.in_(GATE_QUEUE_TYPES),
        )
    )
    metrics.catalog_entity_total = _count(session.query(func.count(CatalogProduct.product_key))) + _count(
        session.query(func.count(CatalogVariant.variant_key))
    )
    return metrics


def _check(name: str, passed: bool, detail: str) -> dict[str, Any]:
    return {"name": name, "passed": bool(passed), "detail": detail}


def _unmapped_check(metrics: GateMetrics, thresholds: Mapping[str, Any]) -> dict[str, Any]:
    maximum = float(thresholds["max_unmapped_ratio_percent"])
    if metrics.catalog_entity_total == 0:
        allow_empty = bool(thresholds["allow_empty_catalog_denominator"])
        passed = allow_empty and metrics.unmapped_rows == 0
        if allow_empty:
            detail = (
                "denominator=0 (allowed by QUALITY_ALLOW_EMPTY_CATALOG_DENOMINATOR=true), "
                f"unmapped={metrics.unmapped_rows}"
            )
        else:
            detail = f"denominator=0, unmapped={metrics.unmapped_rows}"
        return _check("unmapped_ratio_percent", passed, detail)
    ratio = metrics.unmapped_ratio_percent
    return _check(
        "unmapped_ratio_percent",
        ratio is not None and ratio <= maximum,
        f"ratio={ratio}, max={maximum:g}, unmapped={metrics.unmapped_rows}, denominator={metrics.catalog_entity_total}",
    )


def _domain(mismatch_rows: int, denominator: int, threshold: float) -> dict[str, Any]:
    ratio = ratio_or_zero(mismatch_rows, denominator)
    return {
        "mismatchRows": mismatch_rows,
        "denominator": denominator,
        "ratio": ratio,
        "thresholdRatio": threshold,
        "passed": ratio <= threshold,
    }


def evaluate_gate(
    metrics: GateMetrics,
    thresholds: Optional[Mapping[str, Any]] = None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    thresholds = dict(GATE_THRESHOLDS if thresholds is None else {**GATE_THRESHOLDS, **thresholds})
    global_max = float(thresholds["max_global_mismatch_ratio"])

    duplicate_ratio = ratio_or_zero(metrics.duplicate_identity_excess_rows, metrics.booking_total)
    duplicate_max = float(thresholds["max_duplicate_identity_ratio"])
    pax_percent = metrics.pax_mismatch_ratio_percent
    pax_max = float(thresholds["max_pax_mismatch_ratio_percent"])
    orphan_ratio = ratio_or_zero(metrics.payment_orphan_rows, metrics.payment_total)
    orphan_max = float(thresholds["max_payment_orphan_ratio"])
    not_paid_max = float(thresholds["max_ops_done_not_paid_ratio"])

    booking_mismatch = (
        metrics.null_identity_rows + metrics.duplicate_identity_excess_rows + metrics.pax_mismatch_rows
    )
    global_numerator = (
        booking_mismatch
        + metrics.payment_orphan_rows
        + metrics.ingest_dedup_excess_rows
        + metrics.unmapped_rows
    )
    global_denominator = (
        metrics.booking_total + metrics.payment_total + metrics.ingest_event_total + metrics.catalog_entity_total
    )
    global_ratio = ratio_or_zero(global_numerator, global_denominator)

    checks = [
        _check(
            "booking_core_null_identity",
            metrics.null_identity_rows == 0,
            f"count={metrics.null_identity_rows}",
        ),
        _check(
            "booking_core_duplicate_identity",
            duplicate_ratio <= duplicate_max,
            f"groups={metrics.duplicate_identity_groups}, excessRows={metrics.duplicate_identity_excess_rows}, "
            f"ratio={duplicate_ratio:.6f}, max={duplicate_max:g}",
        ),
        _check(
            "booking_pax_mismatch_ratio_percent",
            metrics.booking_total > 0 and pax_percent is not None and pax_percent <= pax_max,
            f"ratio={pax_percent if pax_percent is not None else 'n/a'}, max={pax_max:g}, "
            f"mismatchRows={metrics.pax_mismatch_rows}, denominator={metrics.booking_total}",
        ),
        _check(
            "booking_package_ref_type_completeness",
            metrics.package_ref_type_null_rows == 0,
            f"count={metrics.package_ref_type_null_rows}",
        ),
        _check(
            "payment_orphan_rows",
            orphan_ratio <= orphan_max,
            f"count={metrics.payment_orphan_rows}, ratio={orphan_ratio:.6f}, max={orphan_max:g}",
        ),
        _check(
            "ops_done_not_paid_ratio",
            metrics.ops_done_not_paid_ratio <= not_paid_max,
            f"ratio={metrics.ops_done_not_paid_ratio:.6f}, max={not_paid_max:g}, "
            f"opsDone={metrics.ops_done_total}, mismatch={metrics.ops_done_not_paid}",
        ),
        _check(
            "ingest_secondary_dedup_duplicates",
            metrics.ingest_dedup_groups == 0,
            f"groups={metrics.ingest_dedup_groups}, excessRows={metrics.ingest_dedup_excess_rows}",
        ),
        _unmapped_check(metrics, thresholds),
        _check(
            "global_mismatch_ratio",
            global_ratio <= global_max,
            f"ratio={global_ratio:.6f}, max={global_max:g}, mismatchRows={global_numerator}, "
            f"denominator={global_denominator}",
        ),
    ]

    return {
        "gate": GATE_NAME,
        "generatedAt": iso_z(clock()),
        "result": "PASS" if all(check["passed"] for check in checks) else "FAIL",
        "checks": checks,
        "domains": {
            "booking": _domain(booking_mismatch, metrics.booking_total, global_max),
            "payment": _domain(metrics.payment_orphan_rows, metrics.payment_total, global_max),
            "ingest": _domain(metrics.ingest_dedup_excess_rows, metrics.ingest_event_total, global_max),
            "catalog": _domain(metrics.unmapped_rows, metrics.catalog_entity_total, global_max),
        },
        "global": {
            "mismatchRows": global_numerator,
            "denominator": global_denominator,
            "ratio": global_ratio,
            "thresholdRatio": global_max,
        },
        "thresholds": thresholds,
        "metrics": metrics.to_dict(),
    }


def render_markdown(report: Mapping[str, Any], batch_code: Optional[str] = None) -> list[str]:
    lines = [
        "# Reconciliation Gate Report",
        "",
        f"- batch: {batch_code or report.get('batchCode') or SYNC_SETTINGS['batch_code']}",
        f"- generatedAt: {report['generatedAt']}",
        f"- result: {report['result']}",
        "",
        "## Checks",
        "| Check | Result | Detail |",
        "|---|---|---|",
    ]
    for check in report["checks"]:
        lines.append(f"| {check['name']} | {'PASS' if check['passed'] else 'FAIL'} | {check['detail']} |")
    lines.extend(["", "## Domains", "| Domain | Mismatch | Denominator | Ratio | Result |", "|---|---|---|---|---|"])
    for name, domain in report["domains"].items():
        lines.append(
            f"| {name} | {domain['mismatchRows']} | {domain['denominator']} | {domain['ratio']:.6f} | "
            f"{'PASS' if domain['passed'] else 'FAIL'} |"
        )
    lines.extend(["", "## Metrics", *markdown_json_block(report["metrics"]), ""])
    return lines


def write_gate_report(
    report: dict[str, Any],
    report_dir: Optional[str] = None,
    batch_code: Optional[str] = None,
) -> tuple[str, str]:
    batch_code = batch_code or str(SYNC_SETTINGS["batch_code"])
    report["batchCode"] = batch_code
    return write_report_files(
        report,
        render_markdown(report, batch_code),
        report_dir=report_dir or str(SYNC_SETTINGS["report_dir"]),
        batch_code=batch_code,
        slug="reconciliation-gate",
    )


def run_gate(
    session: Session,
    thresholds: Optional[Mapping[str, Any]] = None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    started = time.time()
    report = evaluate_gate(collect_metrics(session), thresholds, clock=clock)
    log_performance("reconciliation_gate", (time.time() - started) * 1000, {"result": report["result"]})
    failed = [check["name"] for check in report["checks"] if not check["passed"]]
    if failed:
        logger.warning("Reconciliation gate failed", failed_checks=failed)
    log_business_event("reconciliation_gate", {"result": report["result"], "failed_checks": failed})
    return report


__all__ = [
    "GateMetrics",
    "collect_metrics",
    "evaluate_gate",
    "render_markdown",
    "write_gate_report",
    "run_gate",
]
