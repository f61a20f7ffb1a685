"""Ingest endpoint behaviour through the HTTP surface."""
from ops_bridge.jobs.ingest_job import IngestJob
from ops_bridge.jobs.queue import DelayQueue
from ops_bridge.main import app
from ops_bridge.models.db import IngestEventLog

INGEST_PATH = "/api/v1/ingest/bookings/events"


def test_webhook_disabled_returns_503(client, signed_request, event_payload):
    raw, headers = signed_request(event_payload())
    response = client.post(INGEST_PATH, content=raw, headers=headers)
    assert response.status_code == 503
    assert response.json()["code"] == "INGEST_WEBHOOK_DISABLED"


def test_accepts_signed_event(client, flags, signed_request, event_payload, db_session):
    flags(webhook_enabled=True)
    raw, headers = signed_request(event_payload())
    response = client.post(INGEST_PATH, content=raw, headers=headers)
    assert response.status_code == 202
    data = response.json()["data"]
    assert data["idempotentReplay"] is False
    assert data["processStatus"] == "RECEIVED"

    event = db_session.get(IngestEventLog, data["eventId"])
    assert event is not None
    assert event.signature_verified is True
    assert event.external_booking_ref == "WEB-1"

    detail = client.get(f"{INGEST_PATH}/{data['eventId']}")
    assert detail.status_code == 200
    assert detail.json()["data"]["idempotencyKey"] == headers["x-idempotency-key"]


def test_same_idempotency_key_replays_original(client, flags, signed_request, event_payload, db_session):
    flags(webhook_enabled=True)
    raw, headers = signed_request(event_payload(), idempotency_key="idem-fixed")
    first = client.post(INGEST_PATH, content=raw, headers=headers).json()["data"]

    raw, headers = signed_request(event_payload(), idempotency_key="idem-fixed")
    second = client.post(INGEST_PATH, content=raw, headers=headers)
    assert second.status_code == 202
    assert second.json()["data"]["idempotentReplay"] is True
    assert second.json()["data"]["eventId"] == first["eventId"]
    assert db_session.query(IngestEventLog).count() == 1


def test_secondary_dedup_catches_new_key_for_same_event(client, flags, signed_request, event_payload, db_session):
    flags(webhook_enabled=True)
    raw, headers = signed_request(event_payload())
    first = client.post(INGEST_PATH, content=raw, headers=headers).json()["data"]
    raw, headers = signed_request(event_payload(eventTime="2026-03-01T10:00:00.400Z"))
    second = client.post(INGEST_PATH, content=raw, headers=headers).json()["data"]
    assert second["idempotentReplay"] is True
    assert second["eventId"] == first["eventId"]
    assert db_session.query(IngestEventLog).count() == 1


def test_reused_nonce_rejected(client, flags, signed_request, event_payload):
    flags(webhook_enabled=True)
    raw, headers = signed_request(event_payload(), nonce="nonce-1")
    assert client.post(INGEST_PATH, content=raw, headers=headers).status_code == 202
    raw, headers = signed_request(event_payload("WEB-2"), nonce="nonce-1")
    response = client.post(INGEST_PATH, content=raw, headers=headers)
    assert response.status_code == 401
    assert response.json()["code"] == "NONCE_REUSED"


def test_stale_request_never_reaches_idempotency_store(client, flags, signed_request, event_payload, ingest_state):
    flags(webhook_enabled=True)
    raw, headers = signed_request(
        event_payload(), idempotency_key="idem-stale", timestamp="2020-01-01T00:00:00Z"
    )
    response = client.post(INGEST_PATH, content=raw, headers=headers)
    assert response.status_code == 401
    assert response.json()["code"] == "TIMESTAMP_DRIFT_EXCEEDED"
    assert ingest_state["idempotency_store"].get("idem-stale") is None


def test_invalid_payload_rejected_synchronously(client, flags, signed_request, event_payload, db_session):
    flags(webhook_enabled=True)
    raw, headers = signed_request(event_payload(source="EXPEDIA"))
    response = client.post(INGEST_PATH, content=raw, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "UNSUPPORTED_SOURCE"

    raw, headers = signed_request(event_payload(externalBookingRef="  "))
    response = client.post(INGEST_PATH, content=raw, headers=headers)
    assert response.json()["code"] == "EMPTY_FIELD_EXTERNALBOOKINGREF"
    assert db_session.query(IngestEventLog).count() == 0


def test_accepted_event_enqueued_when_queue_enabled(client, flags, signed_request, event_payload):
    flags(webhook_enabled=True, queue_enabled=True)
    queue = DelayQueue()
    app.state.ingest_queue = queue
    try:
        raw, headers = signed_request(event_payload())
        data = client.post(INGEST_PATH, content=raw, headers=headers).json()["data"]
        job = queue.dequeue(block=False)
        assert isinstance(job, IngestJob)
        assert job.event_key == data["eventId"]
        assert job.attempt_number == 1
        assert job.reason == "INGEST_RECEIVED"

        # replays are not queued a second time
        raw, headers = signed_request(event_payload(), idempotency_key=headers["x-idempotency-key"])
        replay = client.post(INGEST_PATH, content=raw, headers=headers).json()["data"]
        assert replay["idempotentReplay"] is True
        assert queue.dequeue(block=False) is None
    finally:
        app.state.ingest_queue = None


def test_unknown_event_404(client):
    response = client.get(f"{INGEST_PATH}/does-not-exist")
    assert response.status_code == 404
    assert response.json()["code"] == "EVENT_NOT_FOUND"


def test_replay_disabled_returns_503(client):
    response = client.post(f"{INGEST_PATH}/anything/replay")
    assert response.status_code == 503
    assert response.json()["code"] == "INGEST_REPLAY_DISABLED"


def test_queue_metrics_shape(client):
    response = client.get("/api/v1/ingest/metrics/queue")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["queue"]["enabled"] is False
    assert data["queue"]["waiting"] == 0
    assert data["deadLetter"]["total"] == 0
    assert set(data["deadLetter"]["byStatus"]) >= {"OPEN", "READY", "REPLAYING", "CLOSED"}
