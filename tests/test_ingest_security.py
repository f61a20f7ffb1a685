"""Signed request verification: order of checks, nonce replay, freshness."""
from datetime import datetime, timedelta, timezone

import pytest

from ops_bridge.errors import AuthenticationError, ReplayRejectedError
from ops_bridge.services.ingest_security import (
    IdempotencyStore,
    IngestSecurityGate,
    NonceCache,
    sign,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SETTINGS = {
    "service_token": "token-1",
    "service_secret": "secret-1",
    "signature_algorithm": "HMAC-SHA256",
    "timestamp_drift_minutes": 5,
}
PATH = "/api/v1/ingest/bookings/events"
BODY = b'{"externalBookingRef": "WEB-1"}'


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _headers(*, nonce="n-1", idem="idem-1", sent_at=NOW, secret="secret-1", body=BODY, **overrides):
    timestamp = sent_at.isoformat().replace("+00:00", "Z")
    headers = {
        "authorization": "Bearer token-1",
        "x-signature": sign(secret, "POST", PATH, timestamp, nonce, idem, body),
        "x-signature-algorithm": "HMAC-SHA256",
        "x-timestamp": timestamp,
        "x-nonce": nonce,
        "x-idempotency-key": idem,
    }
    headers.update(overrides)
    return headers


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def nonce_cache(clock):
    return NonceCache(timedelta(minutes=10), clock)


@pytest.fixture()
def gate(nonce_cache, clock):
    return IngestSecurityGate(nonce_cache, SETTINGS, clock)


def test_valid_request_returns_verified_fields(gate):
    verified = gate.validate_request("POST", PATH, _headers(), BODY)
    assert verified.idempotency_key == "idem-1"
    assert verified.nonce == "n-1"
    assert verified.signature_verified is True
    assert len(verified.payload_hash) == 64


def test_nonce_reuse_rejected_even_with_valid_signature(gate):
    gate.validate_request("POST", PATH, _headers(idem="idem-1"), BODY)
    with pytest.raises(ReplayRejectedError) as excinfo:
        gate.validate_request("POST", PATH, _headers(idem="idem-2"), BODY)
    assert excinfo.value.code == "NONCE_REUSED"


def test_nonce_usable_again_after_ttl(gate, clock):
    gate.validate_request("POST", PATH, _headers(), BODY)
    clock.now = NOW + timedelta(minutes=11)
    gate.validate_request("POST", PATH, _headers(sent_at=clock.now), BODY)


def test_stale_timestamp_rejected_before_nonce_is_stored(gate, nonce_cache):
    stale = NOW - timedelta(minutes=10)
    with pytest.raises(ReplayRejectedError) as excinfo:
        gate.validate_request("POST", PATH, _headers(sent_at=stale), BODY)
    assert excinfo.value.code == "TIMESTAMP_DRIFT_EXCEEDED"
    assert len(nonce_cache) == 0


def test_timestamp_at_drift_edge_accepted(gate):
    gate.validate_request("POST", PATH, _headers(sent_at=NOW - timedelta(minutes=5)), BODY)


def test_bad_signature_does_not_burn_nonce(gate, nonce_cache):
    with pytest.raises(AuthenticationError) as excinfo:
        gate.validate_request("POST", PATH, _headers(secret="wrong"), BODY)
    assert excinfo.value.code == "SIGNATURE_MISMATCH"
    assert len(nonce_cache) == 0
    # the legitimate sender can still use the nonce
    gate.validate_request("POST", PATH, _headers(), BODY)


def test_tampered_body_rejected(gate):
    with pytest.raises(AuthenticationError) as excinfo:
        gate.validate_request("POST", PATH, _headers(), b'{"externalBookingRef": "WEB-2"}')
    assert excinfo.value.code == "SIGNATURE_MISMATCH"


@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"authorization": "Basic abc"}, "MISSING_OR_INVALID_AUTHORIZATION"),
        ({"authorization": "Bearer nope"}, "INVALID_SERVICE_TOKEN"),
        ({"x-nonce": ""}, "MISSING_REQUIRED_INGEST_HEADERS"),
        ({"x-signature-algorithm": "HMAC-SHA1"}, "UNSUPPORTED_SIGNATURE_ALGORITHM"),
    ],
)
def test_authentication_failures(gate, overrides, code):
    with pytest.raises(AuthenticationError) as excinfo:
        gate.validate_request("POST", PATH, _headers(**overrides), BODY)
    assert excinfo.value.code == code
    assert excinfo.value.status_code == 401


def test_unparseable_timestamp(gate):
    with pytest.raises(ReplayRejectedError) as excinfo:
        gate.validate_request("POST", PATH, _headers(**{"x-timestamp": "yesterday"}), BODY)
    assert excinfo.value.code == "INVALID_TIMESTAMP_FORMAT"


def test_idempotency_store_runs_factory_once(clock):
    store = IdempotencyStore(timedelta(minutes=30), clock)
    calls = []

    def factory():
        calls.append(1)
        return "event-1", False

    assert store.claim("idem-1", factory) == ("event-1", False)
    assert store.claim("idem-1", factory) == ("event-1", True)
    assert len(calls) == 1

    clock.now = NOW + timedelta(minutes=31)
    assert store.get("idem-1") is None


def test_idempotency_store_evicts_expired_keys(clock):
    store = IdempotencyStore(timedelta(minutes=1), clock)
    for i in range(1000):
        store.claim(f"idem-{i}", lambda i=i: (f"event-{i}", False))
    assert len(store) == 1000

    clock.now = NOW + timedelta(days=1)
    store.claim("idem-fresh", lambda: ("event-fresh", False))
    assert len(store) == 1
    assert len(store._key_locks) == 1
