"""
Reconciliation backfill and quality-gate endpoints.
"""
import time

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ops_bridge.api.deps import get_db
from ops_bridge.models.schemas.base import ResponseBase
from ops_bridge.models.schemas.reconciliation import BackfillTrigger, GateTrigger
from ops_bridge.services.backfill import run_booking_backfill, run_catalog_backfill
from ops_bridge.services.reconciliation_gate import render_markdown, run_gate, write_gate_report
from ops_bridge.utils import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.post("/backfill", response_model=ResponseBase, summary="Run a reconciliation backfill")
async def trigger_backfill(
    trigger_data: BackfillTrigger,
    request: Request,
    db: Session = Depends(get_db),
) -> ResponseBase:
    """Merge the configured source feeds into the canonical store.

    With ``include_catalog`` the catalog merge runs first so booking items can
    resolve variant keys. ``dry_run`` computes and reports without writing.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)
    logger.info("Backfill triggered", dry_run=trigger_data.dry_run, request_id=request_id)

    data = {}
    if trigger_data.include_catalog:
        data["catalog"] = run_catalog_backfill(
            db, dry_run=trigger_data.dry_run, batch_code=trigger_data.batch_code
        )
    data["booking"] = run_booking_backfill(db, dry_run=trigger_data.dry_run, batch_code=trigger_data.batch_code)

    log_business_event(
        event_type="manual_backfill_triggered",
        details={"dry_run": data["booking"]["dryRun"], "result": data["booking"]["result"]},
        request_id=request_id,
    )
    log_performance(operation="trigger_backfill", duration_ms=(time.time() - start_time) * 1000)
    return ResponseBase(success=True, message=f"Backfill {data['booking']['result']}", data=data)


@router.get("/gate", response_model=ResponseBase, summary="Run the reconciliation gate")
async def reconciliation_gate(
    params: GateTrigger = Depends(),
    db: Session = Depends(get_db),
) -> ResponseBase:
    report = run_gate(db)
    if params.write_report:
        json_path, md_path = write_gate_report(report, batch_code=params.batch_code)
        report["reportPaths"] = {"json": json_path, "markdown": md_path}
    return ResponseBase(
        success=True,
        message=f"Gate {report['result']}",
        data={"report": report, "markdown": "\n".join(render_markdown(report, params.batch_code))},
    )
