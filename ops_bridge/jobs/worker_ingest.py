"""Background worker and retry handling for ingest jobs.

The handler never sleeps between attempts. A retryable failure records the
next retry time on the event, schedules ``attempt + 1`` on the queue with the
backoff delay and returns. Once attempts are exhausted, or the failure is not
retryable, the event goes to the dead-letter queue as a poison message.
"""
from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy.orm import Session

from ops_bridge.config import FEATURE_FLAGS, QUEUE_SETTINGS, RETRY_POLICY
from ops_bridge.database import SessionLocal
from ops_bridge.errors import NotFoundError
from ops_bridge.jobs.ingest_job import IngestJob
from ops_bridge.jobs.queue import DelayQueue, Scheduler
from ops_bridge.jobs.redis_queue import RedisQueue
from ops_bridge.services.ingest_service import IngestService
from ops_bridge.utils import get_logger
from ops_bridge.utils.backoff import retry_delay_seconds, should_retry
from ops_bridge.utils.time import Clock, utc_now

logger = get_logger(__name__)

OUTCOME_DONE = "DONE"
OUTCOME_RETRY_SCHEDULED = "RETRY_SCHEDULED"
OUTCOME_DEAD_LETTERED = "DEAD_LETTERED"
OUTCOME_MISSING = "MISSING"


class IngestRetryHandler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        scheduler: Scheduler,
        policy: Optional[Mapping[str, Any]] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.policy = policy if policy is not None else RETRY_POLICY
        self.clock = clock

    @property
    def max_attempts(self) -> int:
        return int(self.policy["max_attempts"])

    @property
    def delays(self) -> list[int]:
        return list(self.policy["delays_seconds"])

    def handle(self, job: IngestJob) -> str:
        session = self.session_factory()
        service = IngestService(session, clock=self.clock)
        try:
            try:
                service.mark_processing_attempt(job.event_key, job.attempt_number)
            except NotFoundError:
                logger.warning("Ingest job for unknown event", event_key=job.event_key)
                return OUTCOME_MISSING
            try:
                service.process_event(job.event_key)
                service.mark_replay_succeeded(job.event_key)
            except Exception as exc:
                session.rollback()
                return self._on_failure(service, job, exc)
            logger.info("Event processed", event_key=job.event_key, attempt=job.attempt_number)
            return OUTCOME_DONE
        finally:
            session.close()

    def _on_failure(self, service: IngestService, job: IngestJob, exc: Exception) -> str:
        failure = service.classify_processing_error(exc)
        if should_retry(job.attempt_number, failure.retryable, self.max_attempts):
            delay = retry_delay_seconds(job.attempt_number, self.delays)
            service.mark_retryable_failure(
                job.event_key, failure.message, self.clock() + timedelta(seconds=delay)
            )
            self.scheduler.enqueue(job.next_attempt(), delay_seconds=delay)
            logger.warning(
                "Retry scheduled",
                event_key=job.event_key,
                attempt=job.attempt_number + 1,
                delay_seconds=delay,
                reason_code=failure.reason_code,
            )
            return OUTCOME_RETRY_SCHEDULED
        service.mark_event_failed(
            job.event_key,
            failure.reason_code,
            reason_detail=failure.message,
            poison_message=True,
        )
        logger.error(
            "Event sent to dead-letter queue",
            event_key=job.event_key,
            attempt=job.attempt_number,
            reason_code=failure.reason_code,
        )
        return OUTCOME_DEAD_LETTERED


class IngestWorker:
    def __init__(self, queue: Scheduler, handler: IngestRetryHandler, *, poll_timeout: Optional[float] = None):
        self.queue = queue
        self.handler = handler
        self.poll_timeout = float(poll_timeout if poll_timeout is not None else QUEUE_SETTINGS.get("poll_timeout_seconds", 5.0))  # type: ignore[arg-type]
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="ingest-worker", daemon=True)
        self._thread.start()
        logger.info("Ingest worker started")

    def stop(self) -> None:
        self._stop_event.set()
        logger.info("Ingest worker stop requested")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.queue.dequeue(timeout=self.poll_timeout)
                if job is None:
                    continue
                if not isinstance(job, IngestJob):
                    logger.warning("Skipping unknown job type", job_type=type(job).__name__)
                    self.queue.ack(failed=True)
                    continue
                self._process(job)
            except Exception as e:
                logger.error("Worker loop error", error=str(e), exc_info=True)
                time.sleep(1)

    def _process(self, job: IngestJob) -> None:
        logger.info("Processing ingest job", event_key=job.event_key, attempt=job.attempt_number, reason=job.reason)
        try:
            outcome = self.handler.handle(job)
        except Exception as e:
            self.queue.ack(failed=True)
            logger.error("Ingest job failed", event_key=job.event_key, error=str(e), exc_info=True)
            return
        self.queue.ack(failed=outcome == OUTCOME_DEAD_LETTERED)


def create_queue() -> Union[DelayQueue, RedisQueue]:
    """Create and return the appropriate queue based on configuration."""
    if QUEUE_SETTINGS.get("use_redis", False):
        try:
            redis_queue = RedisQueue()
            if redis_queue.health_check():
                logger.info("Using Redis-backed queue")
                return redis_queue
            logger.warning("Redis server is not reachable, using in-memory queue")
        except Exception as e:
            logger.warning("Error initializing Redis queue, falling back to in-memory queue", error=str(e))
    logger.info("Using in-memory queue")
    return DelayQueue()


def create_worker(queue: Scheduler) -> IngestWorker:
    return IngestWorker(queue, IngestRetryHandler(SessionLocal, queue))


def ingest_runtime_metrics(scheduler: Optional[Scheduler]) -> dict[str, Any]:
    enabled = bool(FEATURE_FLAGS["queue_enabled"])
    base: dict[str, Any] = {
        "enabled": enabled,
        "connected": False,
        "backend": "redis" if isinstance(scheduler, RedisQueue) else "memory",
        "waiting": 0,
        "active": 0,
        "delayed": 0,
        "completed": 0,
        "failed": 0,
        "paused": 0,
    }
    if scheduler is None:
        return base
    base.update(scheduler.counts())
    base["connected"] = scheduler.connected if isinstance(scheduler, RedisQueue) else True
    return base


__all__ = [
    "IngestRetryHandler",
    "IngestWorker",
    "create_queue",
    "create_worker",
    "ingest_runtime_metrics",
    "OUTCOME_DONE",
    "OUTCOME_RETRY_SCHEDULED",
    "OUTCOME_DEAD_LETTERED",
]
