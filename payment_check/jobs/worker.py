"""Background worker that executes queued payment-check runs."""
from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Optional, Union

from payment_check.config import QUEUE_SETTINGS
from payment_check.exceptions import RunNotFoundError
from payment_check.jobs.check_job import PaymentCheckJob
from payment_check.jobs.queue import PriorityDelayQueue
from payment_check.jobs.redis_queue import RedisQueue
from payment_check.utils import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from payment_check.services.run_manager import RunManager

logger = get_logger(__name__)

RunQueue = Union[PriorityDelayQueue, RedisQueue]


class PaymentCheckWorker:
    def __init__(
        self,
        queue: RunQueue,
        run_manager: "RunManager",
        *,
        poll_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
    ):
        self.queue = queue
        self.run_manager = run_manager
        self.poll_timeout = float(poll_timeout if poll_timeout is not None else QUEUE_SETTINGS.get("worker_poll_timeout", 5.0))  # type: ignore[arg-type]
        self.max_attempts = int(max_attempts if max_attempts is not None else QUEUE_SETTINGS.get("max_run_attempts", 3))  # type: ignore[arg-type]
        self.retry_delay_seconds = float(
            retry_delay_seconds if retry_delay_seconds is not None else QUEUE_SETTINGS.get("run_retry_delay_seconds", 30.0)  # type: ignore[arg-type]
        )
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="payment-check-worker", daemon=True)
        self._thread.start()
        logger.info("Payment check worker started")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        logger.info("Payment check worker stop requested")
        if timeout is not None and self._thread is not None:
            self._thread.join(timeout=timeout)

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.queue.dequeue(timeout=self.poll_timeout)
                if job is None:
                    continue
                self.process(job)
            except Exception as e:  # pragma: no cover
                logger.error("Worker loop error", error=str(e), exc_info=True)
                time.sleep(1)

    def process(self, job: PaymentCheckJob) -> None:
        """Execute one job; re-enqueue it with a delay if execution raised."""
        logger.info("Processing payment check run", run_id=job.run_id, attempt=job.attempt, correlation_id=job.correlation_id)
        try:
            self.run_manager.execute(job.run_id, attempt=job.attempt)
        except RunNotFoundError:
            logger.warning("Dropping job for unknown run", run_id=job.run_id)
        except Exception as e:
            if job.attempt >= self.max_attempts:
                logger.error(
                    "Payment check run failed, giving up",
                    run_id=job.run_id,
                    attempt=job.attempt,
                    error=str(e),
                    exc_info=True,
                )
                self.run_manager.mark_failed(job.run_id, str(e))
                return
            logger.warning(
                "Payment check run failed, re-enqueueing",
                run_id=job.run_id,
                attempt=job.attempt,
                delay_seconds=self.retry_delay_seconds,
                error=str(e),
            )
            retry = PaymentCheckJob(
                run_id=job.run_id,
                priority="low",
                attempt=job.attempt + 1,
                correlation_id=job.correlation_id,
            )
            self.queue.enqueue(retry, delay_seconds=self.retry_delay_seconds)


def create_queue() -> RunQueue:
    """Create the Redis-backed queue when configured and reachable, else the in-memory one."""
    if QUEUE_SETTINGS.get("use_redis", False):
        redis_queue = RedisQueue()
        if redis_queue.health_check():
            logger.info("Using Redis-backed queue")
            return redis_queue
        logger.warning("Redis server is not reachable, using in-memory queue")
    logger.info("Using in-memory queue")
    return PriorityDelayQueue()


__all__ = ["PaymentCheckWorker", "RunQueue", "create_queue"]
