"""In-memory priority + delay queue for run jobs (single process).

Ready jobs are ordered by (priority value, enqueue sequence); delayed jobs
wait in a second heap keyed by their ready time and are promoted on dequeue.
Keeping the heaps apart means a far-future high-priority retry never blocks
a lower-priority run that is ready now.

Priorities: `high` for runs resumed after a restart, `normal` for new runs,
`low` for delayed re-attempts.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import heapq
import threading
import time

from payment_check.config import QUEUE_SETTINGS
from payment_check.jobs.check_job import PaymentCheckJob
from payment_check.utils import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class QueueItem:
    job: PaymentCheckJob
    priority_label: str
    priority_value: int
    enqueued_at: float
    ready_at: float
    seq: int


class PriorityDelayQueue:
    def __init__(self) -> None:
        priorities = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = dict(priorities) if isinstance(priorities, dict) else {"normal": 5}
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        self._max_in_memory = int(QUEUE_SETTINGS.get("max_in_memory", 5000))  # type: ignore[arg-type]
        self._cv = threading.Condition(threading.RLock())
        self._ready: list[tuple[int, int, QueueItem]] = []
        self._scheduled: list[tuple[float, int, QueueItem]] = []
        self._seq = 0
        self._shutdown = False

    def _promote_due(self, now: float) -> None:
        while self._scheduled and self._scheduled[0][0] <= now:
            _, _, item = heapq.heappop(self._scheduled)
            heapq.heappush(self._ready, (item.priority_value, item.seq, item))

    def _wait_time(self, deadline: Optional[float], now: float) -> Optional[float]:
        """How long to sleep before something could become ready (None = until notified)."""
        waits = []
        if self._scheduled:
            waits.append(max(0.0, self._scheduled[0][0] - now))
        if deadline is not None:
            waits.append(max(0.0, deadline - now))
        return min(waits) if waits else None

    # ----------------------------- public API ----------------------------- #
    def enqueue(self, job: PaymentCheckJob, *, priority: Optional[str] = None, delay_seconds: float = 0.0) -> QueueItem:
        label = priority or job.priority
        with self._cv:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if self.depth() >= self._max_in_memory:
                raise OverflowError("Queue capacity exceeded")
            if label not in self._priority_map:
                raise ValueError(f"Unknown priority '{label}'")
            now = time.time()
            self._seq += 1
            item = QueueItem(
                job=job,
                priority_label=label,
                priority_value=self._priority_map[label],
                enqueued_at=now,
                ready_at=now + max(0.0, delay_seconds),
                seq=self._seq,
            )
            if item.ready_at <= now:
                heapq.heappush(self._ready, (item.priority_value, item.seq, item))
            else:
                heapq.heappush(self._scheduled, (item.ready_at, item.seq, item))
            if self.depth() >= self._warn_depth:
                logger.warning("Queue depth warning", depth=self.depth())
            self._cv.notify()
            return item

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[PaymentCheckJob]:
        """Pop the next ready job; None when non-blocking and empty, on timeout, or after shutdown drains."""
        deadline = None if timeout is None else time.time() + timeout
        with self._cv:
            while True:
                now = time.time()
                self._promote_due(now)
                if self._ready:
                    return heapq.heappop(self._ready)[2].job
                if self._shutdown and not self._scheduled:
                    return None
                if not block or (deadline is not None and now >= deadline):
                    return None
                self._cv.wait(timeout=self._wait_time(deadline, now))

    def shutdown(self) -> None:
        with self._cv:
            self._shutdown = True
            self._cv.notify_all()

    def purge(self) -> None:
        """Drop every queued job (test isolation)."""
        with self._cv:
            self._ready.clear()
            self._scheduled.clear()
            self._cv.notify_all()

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        return len(self._ready) + len(self._scheduled)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def snapshot(self) -> dict:
        with self._cv:
            return {
                "depth": self.depth(),
                "ready": len(self._ready),
                "scheduled": len(self._scheduled),
                "shutdown": self._shutdown,
            }


__all__ = ["PriorityDelayQueue", "QueueItem"]
