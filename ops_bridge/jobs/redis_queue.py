"""Redis-backed priority + delay queue for ingest jobs.

Features:
- Optional delay (scheduled execution time) per job.
- Persistence across application restarts.
- Thread-safe operations.
- Fallback to the in-memory DelayQueue if Redis is unavailable.

Data structures in Redis:
 1. List: ops_bridge:ingest:ready - serialized jobs that are ready to execute
 2. Sorted Set: ops_bridge:ingest:scheduled - scores=ready_at_ts, members=serialized jobs
 3. Hash: ops_bridge:ingest:stats - completed / failed counters

On enqueue:
  - If ready_at <= now -> push to ready list else scheduled sorted set.
On dequeue:
  - Promote any scheduled items whose ready_at <= now to ready list.
  - Pop from ready list.
  - If nothing ready: wait using blocking pop with timeout.

Redis health is checked before operations, with fallback to the in-memory queue.
"""
from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Optional

import redis

from ops_bridge.config import QUEUE_SETTINGS
from ops_bridge.jobs.ingest_job import IngestJob
from ops_bridge.jobs.queue import DelayQueue, QueueItem
from ops_bridge.utils import get_logger

logger = get_logger(__name__)

# job_type -> constructor used when reading a job back from Redis
JOB_TYPES: dict[str, Callable[..., Any]] = {"IngestJob": IngestJob}


def serialize_item(item: QueueItem) -> str:
    job = item.job
    if isinstance(job, IngestJob):
        job_dict = {
            "event_key": job.event_key,
            "attempt_number": job.attempt_number,
            "reason": job.reason,
            "correlation_id": job.correlation_id,
        }
    else:
        job_dict = job.__dict__ if hasattr(job, "__dict__") else {"data": str(job)}
    return json.dumps(
        {
            "job": job_dict,
            "job_type": job.__class__.__name__,
            "priority_label": item.priority_label,
            "priority_value": item.priority_value,
            "enqueued_at": item.enqueued_at,
            "ready_at": item.ready_at,
            "seq": item.seq,
        }
    )


def deserialize_item(serialized: str | bytes) -> QueueItem:
    if isinstance(serialized, bytes):
        serialized = serialized.decode("utf-8")
    job_data = json.loads(serialized)
    job_type = job_data.get("job_type")
    job_dict = job_data.get("job", {})
    factory = JOB_TYPES.get(job_type)
    if factory is not None:
        job = factory(**job_dict)
    else:
        logger.warning("Unknown job type encountered", job_type=job_type)
        job = job_dict
    return QueueItem(
        job=job,
        priority_label=job_data.get("priority_label", "normal"),
        priority_value=job_data.get("priority_value", 5),
        enqueued_at=job_data.get("enqueued_at", time.time()),
        ready_at=job_data.get("ready_at", time.time()),
        seq=job_data.get("seq", 0),
    )


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return int(value)
    except (ValueError, TypeError) as e:
        logger.warning("Failed to convert Redis value to int", value_type=type(value).__name__, error=str(e))
        return 0


class RedisQueue:
    def __init__(self) -> None:
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        self._ready_key: str = str(QUEUE_SETTINGS.get("redis_ready_key", "ops_bridge:ingest:ready"))
        self._scheduled_key: str = str(QUEUE_SETTINGS.get("redis_scheduled_key", "ops_bridge:ingest:scheduled"))
        self._stats_key: str = str(QUEUE_SETTINGS.get("redis_stats_key", "ops_bridge:ingest:stats"))
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = priorities_cfg if isinstance(priorities_cfg, dict) else {"normal": 5}

        self._fallback_queue = DelayQueue()
        self._redis_client: Optional[redis.Redis] = None
        self._lock = threading.RLock()
        self._is_redis_active = False
        self._shutdown = False
        self._paused = False
        self._active = 0
        self._init_redis_client()

    def _init_redis_client(self) -> None:
        try:
            self._redis_client = redis.from_url(
                self._redis_url, socket_connect_timeout=self._health_check_timeout
            )
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", url=self._redis_url)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis, using in-memory fallback queue", error=str(e))

    @property
    def connected(self) -> bool:
        return self._is_redis_active

    def health_check(self) -> bool:
        with self._lock:
            if self._redis_client is None:
                self._init_redis_client()
                return self._is_redis_active
            try:
                self._redis_client.ping()
                if not self._is_redis_active:
                    logger.info("Redis connection restored")
                self._is_redis_active = True
                return True
            except (redis.RedisError, ConnectionError) as e:
                if self._is_redis_active:
                    logger.warning("Redis connection lost, using in-memory fallback queue", error=str(e))
                self._is_redis_active = False
                return False

    def _promote_scheduled(self) -> None:
        if not self._is_redis_active or self._redis_client is None:
            return
        try:
            jobs = self._redis_client.zrangebyscore(self._scheduled_key, 0, time.time())
            for job_data in jobs or []:
                job_str = job_data.decode("utf-8") if isinstance(job_data, bytes) else str(job_data)
                # Only the caller that removed the member may push it.
                if self._redis_client.zrem(self._scheduled_key, job_str):
                    self._redis_client.rpush(self._ready_key, job_str)
            if jobs:
                logger.debug("Promoted scheduled jobs to ready queue", count=len(jobs))
        except redis.RedisError as e:
            logger.error("Error promoting scheduled jobs", error=str(e))
            self._is_redis_active = False

    def enqueue(self, job: Any, *, priority: str = "normal", delay_seconds: float = 0.0) -> QueueItem:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{priority}'")
            now_ts = time.time()
            ready_at_ts = now_ts + max(0.0, delay_seconds)
            item = QueueItem(
                job=job,
                priority_label=priority,
                priority_value=self._priority_map[priority],
                enqueued_at=now_ts,
                ready_at=ready_at_ts,
                seq=int(now_ts * 1000),
            )
            if not self.health_check() or self._redis_client is None:
                logger.warning("Redis unavailable, falling back to in-memory queue")
                return self._fallback_queue.enqueue(job, priority=priority, delay_seconds=delay_seconds)
            try:
                serialized = serialize_item(item)
                if ready_at_ts <= now_ts:
                    self._redis_client.rpush(self._ready_key, serialized)
                else:
                    self._redis_client.zadd(self._scheduled_key, {serialized: ready_at_ts})
                depth = self.depth()
                if depth >= self._warn_depth:
                    logger.warning("Queue depth warning", depth=depth)
                return item
            except redis.RedisError as e:
                logger.error("Redis error during enqueue", error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.enqueue(job, priority=priority, delay_seconds=delay_seconds)

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Any:
        if self._shutdown and self.depth() == 0:
            return None
        if self._paused:
            if block and timeout:
                time.sleep(min(timeout, 1.0))
            return None
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return self._fallback_queue.dequeue(block=block, timeout=timeout)
            try:
                self._promote_scheduled()
                if block:
                    result = self._redis_client.blpop([self._ready_key], timeout=max(1, int(timeout or 1)))
                    if not result:
                        return None
                    _, value = result
                else:
                    value = self._redis_client.lpop(self._ready_key)
                    if value is None:
                        return None
                job = deserialize_item(value).job
                self._active += 1
                return job
            except redis.RedisError as e:
                logger.error("Redis error during dequeue", error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.dequeue(block=block, timeout=timeout)

    def ack(self, *, failed: bool = False) -> None:
        with self._lock:
            self._active = max(0, self._active - 1)
            if not self._is_redis_active or self._redis_client is None:
                self._fallback_queue.ack(failed=failed)
                return
            try:
                self._redis_client.hincrby(self._stats_key, "failed" if failed else "completed", 1)
            except redis.RedisError as e:
                logger.error("Error recording job outcome", error=str(e))
                self._is_redis_active = False

    def pause(self) -> None:
        with self._lock:
            self._paused = True
            self._fallback_queue.pause()

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            self._fallback_queue.resume()

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._fallback_queue.shutdown()

    def purge(self) -> None:
        with self._lock:
            self._fallback_queue.purge()
            if not self.health_check() or self._redis_client is None:
                return
            try:
                self._redis_client.delete(self._ready_key, self._scheduled_key, self._stats_key)
                logger.info("Redis queue purged")
            except redis.RedisError as e:
                logger.error("Error purging Redis queue", error=str(e))
                self._is_redis_active = False

    def depth(self) -> int:
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return self._fallback_queue.depth()
            try:
                return _as_int(self._redis_client.llen(self._ready_key)) + _as_int(
                    self._redis_client.zcard(self._scheduled_key)
                )
            except redis.RedisError as e:
                logger.error("Error getting queue depth", error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.depth()

    def __len__(self) -> int:
        return self.depth()

    def counts(self) -> dict[str, int]:
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return self._fallback_queue.counts()
            try:
                waiting = _as_int(self._redis_client.llen(self._ready_key))
                stats = self._redis_client.hgetall(self._stats_key) or {}
                stats = {
                    (key.decode("utf-8") if isinstance(key, bytes) else str(key)): value
                    for key, value in stats.items()
                }
                return {
                    "waiting": 0 if self._paused else waiting,
                    "active": self._active,
                    "delayed": _as_int(self._redis_client.zcard(self._scheduled_key)),
                    "completed": _as_int(stats.get("completed")),
                    "failed": _as_int(stats.get("failed")),
                    "paused": waiting if self._paused else 0,
                }
            except redis.RedisError as e:
                logger.error("Error reading queue counts", error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.counts()

    def snapshot(self) -> dict:
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot
            try:
                ready = _as_int(self._redis_client.llen(self._ready_key))
                scheduled = _as_int(self._redis_client.zcard(self._scheduled_key))
                return {
                    "depth": ready + scheduled,
                    "ready": ready,
                    "scheduled": scheduled,
                    "paused": self._paused,
                    "shutdown": self._shutdown,
                    "redis_active": True,
                    "redis_url": self._redis_url,
                }
            except redis.RedisError as e:
                logger.error("Error getting queue snapshot", error=str(e))
                self._is_redis_active = False
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot


__all__ = ["RedisQueue", "serialize_item", "deserialize_item", "JOB_TYPES"]
