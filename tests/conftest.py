import json
import os
import uuid
from datetime import datetime, timezone

import pytest

# File-based SQLite so the API thread and the test thread share one database.
# Must be set before ops_bridge.database is imported.
TEST_DB_FILE = "test_ops_bridge.db"
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///./{TEST_DB_FILE}"
os.environ.setdefault("LOG_FILE", "logs/test.log")

from fastapi.testclient import TestClient  # noqa: E402

from ops_bridge import database  # noqa: E402
from ops_bridge.api import deps  # noqa: E402
from ops_bridge.config import FEATURE_FLAGS, INGEST_SECURITY  # noqa: E402
from ops_bridge.main import app  # noqa: E402
from ops_bridge.models import db as _models  # noqa: E402,F401  (registers every table on Base.metadata)
from ops_bridge.services.ingest_security import (  # noqa: E402
    IngestSecurityGate,
    build_idempotency_store,
    build_nonce_cache,
    sign,
)

INGEST_PATH = "/api/v1/ingest/bookings/events"


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    database.Base.metadata.create_all(bind=database.engine)
    yield
    database.Base.metadata.drop_all(bind=database.engine)
    database.engine.dispose()
    try:
        os.remove(TEST_DB_FILE)
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _clean_tables():
    """Every test starts from empty canonical and ingest tables."""
    yield
    with database.engine.begin() as connection:
        for table in reversed(database.Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture()
def db_session():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def ingest_state():
    """Fresh nonce cache and idempotency store per test."""
    nonce_cache = build_nonce_cache()
    store = build_idempotency_store()
    gate = IngestSecurityGate(nonce_cache)
    app.dependency_overrides[deps.get_security_gate] = lambda: gate
    app.dependency_overrides[deps.get_idempotency_store] = lambda: store
    yield {"nonce_cache": nonce_cache, "idempotency_store": store, "gate": gate}
    app.dependency_overrides.pop(deps.get_security_gate, None)
    app.dependency_overrides.pop(deps.get_idempotency_store, None)


@pytest.fixture()
def flags(monkeypatch):
    """Turn ingest feature flags on for one test: ``flags(webhook_enabled=True)``."""
    def _set(**values: bool):
        for name, value in values.items():
            monkeypatch.setitem(FEATURE_FLAGS, name, value)
    return _set


@pytest.fixture()
def client():
    return TestClient(app)


# ---------- Data factory helpers ----------

def booking_event(external_ref: str = "WEB-1", **overrides):
    payload = {
        "payloadVersion": "v1",
        "source": "DIRECT",
        "eventType": "CREATED",
        "externalBookingRef": external_ref,
        "eventTime": "2026-03-01T10:00:00Z",
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def event_payload():
    return booking_event


@pytest.fixture()
def signed_request():
    """Build ``(raw_body, headers)`` for a signed ingest call."""
    def _build(
        payload,
        *,
        nonce: str | None = None,
        idempotency_key: str | None = None,
        timestamp: str | None = None,
        path: str = INGEST_PATH,
        secret: str | None = None,
        token: str | None = None,
    ):
        raw = json.dumps(payload).encode("utf-8")
        nonce = nonce or uuid.uuid4().hex
        idempotency_key = idempotency_key or f"idem-{uuid.uuid4().hex}"
        timestamp = timestamp or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        signature = sign(
            secret or str(INGEST_SECURITY["service_secret"]),
            "POST",
            path,
            timestamp,
            nonce,
            idempotency_key,
            raw,
        )
        headers = {
            "Authorization": f"Bearer {token or INGEST_SECURITY['service_token']}",
            "Content-Type": "application/json",
            "x-signature": signature,
            "x-signature-algorithm": "HMAC-SHA256",
            "x-timestamp": timestamp,
            "x-nonce": nonce,
            "x-idempotency-key": idempotency_key,
        }
        return raw, headers
    return _build
