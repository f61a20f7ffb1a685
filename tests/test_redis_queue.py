"""Tests for the Redis-backed ingest queue against a mocked Redis client.

The mock keeps a real list / sorted set / hash in memory so enqueue, promotion
and dequeue behave the way they would against a server.
"""
import time
from unittest.mock import MagicMock, patch

import pytest
import redis

from ops_bridge.config import QUEUE_SETTINGS
from ops_bridge.jobs.ingest_job import IngestJob
from ops_bridge.jobs.queue import DelayQueue, QueueItem
from ops_bridge.jobs.redis_queue import RedisQueue, deserialize_item, serialize_item
from ops_bridge.jobs.worker_ingest import create_queue


def _fake_client():
    ready: list = []
    scheduled: dict = {}
    stats: dict = {}

    client = MagicMock()
    client.ping.return_value = True
    client.rpush.side_effect = lambda key, value: ready.append(value) or len(ready)
    client.lpop.side_effect = lambda key: ready.pop(0) if ready else None
    client.blpop.side_effect = lambda keys, timeout=0: (keys[0], ready.pop(0)) if ready else None
    client.llen.side_effect = lambda key: len(ready)

    def zadd(key, mapping):
        scheduled.update(mapping)
        return len(mapping)

    def zrangebyscore(key, low, high):
        return [member for member, score in sorted(scheduled.items(), key=lambda kv: kv[1]) if low <= score <= high]

    def zrem(key, member):
        return 1 if scheduled.pop(member, None) is not None else 0

    def hincrby(key, field, amount):
        stats[field] = stats.get(field, 0) + amount
        return stats[field]

    def delete(*keys):
        ready.clear()
        scheduled.clear()
        stats.clear()

    client.zadd.side_effect = zadd
    client.zrangebyscore.side_effect = zrangebyscore
    client.zrem.side_effect = zrem
    client.zcard.side_effect = lambda key: len(scheduled)
    client.hincrby.side_effect = hincrby
    client.hgetall.side_effect = lambda key: {k.encode(): str(v).encode() for k, v in stats.items()}
    client.delete.side_effect = delete
    client._scheduled = scheduled
    return client


@pytest.fixture
def mock_redis():
    with patch("redis.from_url") as from_url:
        client = _fake_client()
        from_url.return_value = client
        yield client


@pytest.fixture
def redis_queue(mock_redis):
    queue = RedisQueue()
    yield queue
    queue.shutdown()


def test_connects_with_configured_url(mock_redis, redis_queue):
    assert redis_queue.connected is True
    assert redis_queue.snapshot()["redis_active"] is True
    mock_redis.ping.assert_called()


def test_ready_job_round_trip(mock_redis, redis_queue):
    redis_queue.enqueue(IngestJob("evt-1", correlation_id="req-1"))
    mock_redis.rpush.assert_called_once()
    assert mock_redis.rpush.call_args[0][0] == QUEUE_SETTINGS["redis_ready_key"]

    job = redis_queue.dequeue(block=False)
    assert isinstance(job, IngestJob)
    assert job.event_key == "evt-1"
    assert job.correlation_id == "req-1"
    assert redis_queue.dequeue(block=False) is None


def test_delayed_job_goes_to_sorted_set_and_is_promoted(mock_redis, redis_queue):
    redis_queue.enqueue(IngestJob("evt-2", attempt_number=2, reason="RETRY"), delay_seconds=30)
    mock_redis.zadd.assert_called_once()
    assert redis_queue.counts()["delayed"] == 1
    assert redis_queue.dequeue(block=False) is None

    # pretend the delay has elapsed
    for member in list(mock_redis._scheduled):
        mock_redis._scheduled[member] = time.time() - 1
    job = redis_queue.dequeue(block=False)
    assert job.event_key == "evt-2"
    assert job.attempt_number == 2
    assert redis_queue.counts()["delayed"] == 0


def test_ack_counts_outcomes(mock_redis, redis_queue):
    redis_queue.enqueue(IngestJob("evt-3"))
    redis_queue.enqueue(IngestJob("evt-4"))
    redis_queue.dequeue(block=False)
    redis_queue.ack()
    redis_queue.dequeue(block=False)
    redis_queue.ack(failed=True)
    counts = redis_queue.counts()
    assert counts["completed"] == 1
    assert counts["failed"] == 1
    assert counts["active"] == 0


def test_purge_clears_keys(mock_redis, redis_queue):
    redis_queue.enqueue(IngestJob("evt-5"))
    redis_queue.purge()
    mock_redis.delete.assert_called_once()
    assert redis_queue.depth() == 0


def test_unreachable_redis_falls_back_to_memory():
    with patch("redis.from_url", side_effect=redis.ConnectionError("refused")):
        queue = RedisQueue()
        assert queue.connected is False
        queue.enqueue(IngestJob("evt-6"))
        assert queue.snapshot()["redis_active"] is False
        assert queue.dequeue(block=False).event_key == "evt-6"


def test_create_queue_defaults_to_memory(monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", False)
    assert isinstance(create_queue(), DelayQueue)


def test_create_queue_falls_back_when_redis_down(monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    with patch("redis.from_url", side_effect=redis.ConnectionError("refused")):
        assert isinstance(create_queue(), DelayQueue)


def test_serialized_job_restores_ingest_job():
    item = QueueItem(
        job=IngestJob("evt-7", 3, "RETRY", "req-7"),
        priority_label="normal",
        priority_value=5,
        enqueued_at=1.0,
        ready_at=2.0,
        seq=9,
    )
    restored = deserialize_item(serialize_item(item).encode("utf-8"))
    assert restored.job == IngestJob("evt-7", 3, "RETRY", "req-7")
    assert restored.ready_at == 2.0
    assert restored.seq == 9
