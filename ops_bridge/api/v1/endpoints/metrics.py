"""
Ingest queue and dead-letter metrics.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ops_bridge.api.deps import get_db, get_queue
from ops_bridge.jobs.queue import Scheduler
from ops_bridge.jobs.worker_ingest import ingest_runtime_metrics
from ops_bridge.models.schemas.base import ResponseBase
from ops_bridge.services.ingest_service import IngestService

router = APIRouter()


@router.get("/queue", response_model=ResponseBase, summary="Queue counts and dead-letter totals")
async def queue_metrics(
    db: Session = Depends(get_db),
    queue: Optional[Scheduler] = Depends(get_queue),
) -> ResponseBase:
    return ResponseBase(
        success=True,
        data={
            "queue": ingest_runtime_metrics(queue),
            "deadLetter": IngestService(db).dead_letter_metrics(),
        },
    )
