"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import dead_letter, ingest, metrics, reconciliation

api_router = APIRouter()

api_router.include_router(
    ingest.router,
    prefix="/ingest",
    tags=["ingest"]
)

api_router.include_router(
    dead_letter.router,
    prefix="/ingest/dead-letter",
    tags=["dead-letter"]
)

api_router.include_router(
    metrics.router,
    prefix="/ingest/metrics",
    tags=["metrics"]
)

api_router.include_router(
    reconciliation.router,
    prefix="/reconciliation",
    tags=["reconciliation"]
)
