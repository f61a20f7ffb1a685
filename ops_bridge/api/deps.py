"""
Dependencies for database sessions, ingest security and the job queue.
"""
from typing import Generator, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from ops_bridge.config import FEATURE_FLAGS
from ops_bridge.database import SessionLocal
from ops_bridge.errors import ServiceUnavailableError
from ops_bridge.jobs.queue import Scheduler
from ops_bridge.services.ingest_security import (
    IdempotencyStore,
    IngestSecurityGate,
    NonceCache,
    build_idempotency_store,
    build_nonce_cache,
)
from ops_bridge.utils import get_logger

logger = get_logger(__name__)

# One nonce cache and one idempotency store per process.
_nonce_cache: Optional[NonceCache] = None
_idempotency_store: Optional[IdempotencyStore] = None
_security_gate: Optional[IngestSecurityGate] = None


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def get_nonce_cache() -> NonceCache:
    global _nonce_cache
    if _nonce_cache is None:
        _nonce_cache = build_nonce_cache()
    return _nonce_cache


def get_idempotency_store() -> IdempotencyStore:
    global _idempotency_store
    if _idempotency_store is None:
        _idempotency_store = build_idempotency_store()
    return _idempotency_store


def get_security_gate() -> IngestSecurityGate:
    global _security_gate
    if _security_gate is None:
        _security_gate = IngestSecurityGate(get_nonce_cache())
    return _security_gate


def get_queue(request: Request) -> Optional[Scheduler]:
    """Queue started by the application lifespan; None when the app runs without one."""
    return getattr(request.app.state, "ingest_queue", None)


def require_webhook_enabled() -> None:
    if not FEATURE_FLAGS["webhook_enabled"]:
        raise ServiceUnavailableError("INGEST_WEBHOOK_DISABLED", "Ingest webhook is disabled")


def require_replay_enabled() -> None:
    if not FEATURE_FLAGS["replay_enabled"]:
        raise ServiceUnavailableError("INGEST_REPLAY_DISABLED", "Ingest replay is disabled")


__all__ = [
    "get_db",
    "get_nonce_cache",
    "get_idempotency_store",
    "get_security_gate",
    "get_queue",
    "require_webhook_enabled",
    "require_replay_enabled",
]
