"""
Dead-letter queue inspection and status transitions.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ops_bridge.api.deps import get_db
from ops_bridge.models.schemas.base import ResponseBase
from ops_bridge.models.schemas.ingest import DeadLetterOut, dump
from ops_bridge.services.ingest_service import DEFAULT_DEAD_LETTER_LIMIT, IngestService
from ops_bridge.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("", response_model=ResponseBase, summary="List dead letters")
async def list_dead_letters(
    status: Optional[str] = Query(None),
    limit: int = Query(DEFAULT_DEAD_LETTER_LIMIT),
    db: Session = Depends(get_db),
) -> ResponseBase:
    """Newest failures first; ``limit`` is clamped to 1..200."""
    items = IngestService(db).list_dead_letters(status, limit)
    return ResponseBase(
        success=True,
        data={"items": [dump(DeadLetterOut.model_validate(item)) for item in items], "count": len(items)},
    )


@router.get("/{dead_letter_key}", response_model=ResponseBase, summary="Get a dead letter")
async def get_dead_letter(dead_letter_key: str, db: Session = Depends(get_db)) -> ResponseBase:
    item = IngestService(db).get_dead_letter(dead_letter_key)
    return ResponseBase(success=True, data=dump(DeadLetterOut.model_validate(item)))


@router.patch(
    "/{dead_letter_key}/status/{status}",
    response_model=ResponseBase,
    summary="Move a dead letter to another status",
)
async def update_dead_letter_status(
    dead_letter_key: str,
    status: str,
    request: Request,
    db: Session = Depends(get_db),
) -> ResponseBase:
    item = IngestService(db).update_dead_letter_status(dead_letter_key, status)
    logger.info(
        "Dead letter status updated",
        dead_letter_key=dead_letter_key,
        status=item.status,
        request_id=getattr(request.state, "request_id", None),
    )
    return ResponseBase(success=True, message=f"Dead letter moved to {item.status}", data=dump(DeadLetterOut.model_validate(item)))
