"""In-memory priority + delay queue for ingest jobs.

Features:
- Priority ordering (lower numeric priority value = higher priority).
- Optional delay (scheduled execution time) per job.
- Capacity limits / backpressure via QUEUE_SETTINGS.
- Thread-safe with condition variable.
- Injectable monotonic time source so retry delays can be tested without sleeping.

Two-heaps strategy:
 1. ready_heap: (priority, seq, item)
 2. scheduled_heap: (ready_at_ts, priority, seq, item)

On enqueue:
  - If ready_at <= now -> push to ready_heap else scheduled_heap.
On dequeue:
  - Promote any scheduled items whose ready_at <= now.
  - Pop highest priority from ready_heap (ties resolved by seq FIFO).
  - If nothing ready: wait until next scheduled item's ready_at or until notified.

A job handed out by ``dequeue`` counts as active until the consumer calls
``ack(failed=...)``.
"""
from __future__ import annotations

import heapq
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from ops_bridge.config import QUEUE_SETTINGS
from ops_bridge.utils import get_logger

logger = get_logger(__name__)

TimeSource = Callable[[], float]


@dataclass(slots=True)
class QueueItem:
    job: Any
    priority_label: str
    priority_value: int
    enqueued_at: float
    ready_at: float
    seq: int


class Scheduler(Protocol):
    def enqueue(self, job: Any, *, priority: str = "normal", delay_seconds: float = 0.0) -> Any: ...
    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Any: ...
    def ack(self, *, failed: bool = False) -> None: ...
    def counts(self) -> dict[str, int]: ...
    def snapshot(self) -> dict: ...
    def shutdown(self) -> None: ...
    def purge(self) -> None: ...


class DelayQueue:
    def __init__(self, time_source: TimeSource = time.monotonic) -> None:
        priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = priorities_cfg if isinstance(priorities_cfg, dict) else {"normal": 5}
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        self._max_in_memory = int(QUEUE_SETTINGS.get("max_in_memory", 5000))  # type: ignore[arg-type]
        self._now = time_source
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._ready_heap: list[tuple[int, int, QueueItem]] = []
        self._scheduled_heap: list[tuple[float, int, int, QueueItem]] = []
        self._seq_counter = 0
        self._shutdown = False
        self._paused = False
        self._active = 0
        self._completed = 0
        self._failed = 0

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _promote_scheduled(self) -> None:
        now_ts = self._now()
        while self._scheduled_heap and self._scheduled_heap[0][0] <= now_ts:
            _, priority_value, seq, item = heapq.heappop(self._scheduled_heap)
            heapq.heappush(self._ready_heap, (priority_value, seq, item))

    def _await_next_ready(self, timeout: Optional[float]) -> None:
        if self._ready_heap and not self._paused:
            return
        if not self._scheduled_heap or self._paused:
            self._cv.wait(timeout=timeout)
            return
        wait_time = max(0.0, self._scheduled_heap[0][0] - self._now())
        if timeout is not None:
            wait_time = min(wait_time, timeout)
        if wait_time > 0:
            self._cv.wait(timeout=wait_time)

    # ----------------------------- public API ----------------------------- #
    def enqueue(self, job: Any, *, priority: str = "normal", delay_seconds: float = 0.0) -> QueueItem:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if self.depth() >= self._max_in_memory:
                raise OverflowError("Queue capacity exceeded")
            if priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{priority}'")
            now_ts = self._now()
            ready_at_ts = now_ts + max(0.0, delay_seconds)
            item = QueueItem(
                job=job,
                priority_label=priority,
                priority_value=self._priority_map[priority],
                enqueued_at=now_ts,
                ready_at=ready_at_ts,
                seq=self._next_seq(),
            )
            if ready_at_ts <= now_ts:
                heapq.heappush(self._ready_heap, (item.priority_value, item.seq, item))
            else:
                heapq.heappush(self._scheduled_heap, (ready_at_ts, item.priority_value, item.seq, item))
            if self.depth() >= self._warn_depth:
                logger.warning("Queue depth warning", depth=self.depth())
            self._cv.notify()
            return item

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Any:
        """Pop next ready job. Returns None if non-blocking and empty, paused, or timeout occurs."""
        end_time = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            while True:
                if self._shutdown and not self._ready_heap and not self._scheduled_heap:
                    return None
                if not self._paused:
                    self._promote_scheduled()
                    if self._ready_heap:
                        _, _, item = heapq.heappop(self._ready_heap)
                        self._active += 1
                        return item.job
                if not block:
                    return None
                remaining = None if end_time is None else max(0.0, end_time - time.monotonic())
                if end_time is not None and remaining == 0:
                    return None
                self._await_next_ready(remaining)

    def ack(self, *, failed: bool = False) -> None:
        with self._lock:
            self._active = max(0, self._active - 1)
            if failed:
                self._failed += 1
            else:
                self._completed += 1

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            self._cv.notify_all()

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._cv.notify_all()

    def purge(self) -> None:
        """Remove all queued (ready + scheduled) jobs; used for test isolation."""
        with self._lock:
            self._ready_heap.clear()
            self._scheduled_heap.clear()
            self._cv.notify_all()

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        return len(self._ready_heap) + len(self._scheduled_heap)

    def __len__(self) -> int:
        return self.depth()

    def counts(self) -> dict[str, int]:
        with self._lock:
            self._promote_scheduled()
            waiting = len(self._ready_heap)
            return {
                "waiting": 0 if self._paused else waiting,
                "active": self._active,
                "delayed": len(self._scheduled_heap),
                "completed": self._completed,
                "failed": self._failed,
                "paused": waiting if self._paused else 0,
            }

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "depth": self.depth(),
                "ready": len(self._ready_heap),
                "scheduled": len(self._scheduled_heap),
                "paused": self._paused,
                "shutdown": self._shutdown,
            }


__all__ = ["DelayQueue", "QueueItem", "Scheduler", "TimeSource"]
