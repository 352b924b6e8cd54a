"""Redis-backed priority + delay queue for run jobs.

Features:
- One Redis list per priority label; BLPOP is given the lists in priority
  order, so a ready high-priority job always wins.
- Delayed jobs wait in a sorted set scored by ready time and are promoted on
  dequeue.
- Queued runs survive an application restart.
- Falls back to the in-memory queue whenever Redis is unreachable.

Keys:
 1. {ready_key}:{priority}  - lists of serialized jobs ready to execute
 2. {scheduled_key}         - sorted set, score = ready_at epoch seconds
"""
from __future__ import annotations

import json
import threading
import time
from typing import Any, Optional

import redis

from payment_check.config import QUEUE_SETTINGS
from payment_check.jobs.check_job import PaymentCheckJob
from payment_check.jobs.queue import PriorityDelayQueue, QueueItem
from payment_check.utils import get_logger

logger = get_logger(__name__)


class RedisQueue:
    def __init__(self) -> None:
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        self._ready_key: str = str(QUEUE_SETTINGS.get("redis_ready_key", "payment_check:ready_queue"))
        self._scheduled_key: str = str(QUEUE_SETTINGS.get("redis_scheduled_key", "payment_check:scheduled_jobs"))
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        priorities = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = dict(priorities) if isinstance(priorities, dict) else {"normal": 5}

        self._fallback_queue = PriorityDelayQueue()
        self._redis_client: Optional[redis.Redis] = None
        self._lock = threading.RLock()
        self._is_redis_active = False
        self._shutdown = False
        self._init_redis_client()

    def _init_redis_client(self) -> None:
        try:
            self._redis_client = redis.from_url(self._redis_url, socket_connect_timeout=self._health_check_timeout)
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", url=self._redis_url)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis, using in-memory fallback queue", error=str(e))

    def health_check(self) -> bool:
        """Ping Redis and update the active flag."""
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

    def _ready_keys(self) -> list[str]:
        ordered = sorted(self._priority_map.items(), key=lambda kv: kv[1])
        return [f"{self._ready_key}:{label}" for label, _ in ordered]

    @staticmethod
    def _serialize(item: QueueItem) -> str:
        return json.dumps({
            "job": item.job.to_dict(),
            "priority_label": item.priority_label,
            "enqueued_at": item.enqueued_at,
            "ready_at": item.ready_at,
            "seq": item.seq,
        })

    @staticmethod
    def _deserialize(raw: Any) -> tuple[PaymentCheckJob, str]:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        data = json.loads(text)
        return PaymentCheckJob.from_dict(data["job"]), str(data.get("priority_label", "normal"))

    def _promote_scheduled(self) -> None:
        assert self._redis_client is not None
        due = self._redis_client.zrangebyscore(self._scheduled_key, 0, time.time()) or []
        for raw in due:
            _, label = self._deserialize(raw)
            # Only the client that removes the member moves it
            if self._redis_client.zrem(self._scheduled_key, raw):
                self._redis_client.rpush(f"{self._ready_key}:{label}", raw)
        if due:
            logger.debug("Promoted scheduled jobs to ready queue", count=len(due))

    def enqueue(self, job: PaymentCheckJob, *, priority: Optional[str] = None, delay_seconds: float = 0.0) -> QueueItem:
        label = priority or job.priority
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if label not in self._priority_map:
                raise ValueError(f"Unknown priority '{label}'")
            if not self.health_check() or self._redis_client is None:
                return self._fallback_queue.enqueue(job, priority=label, delay_seconds=delay_seconds)

            now = time.time()
            item = QueueItem(
                job=job,
                priority_label=label,
                priority_value=self._priority_map[label],
                enqueued_at=now,
                ready_at=now + max(0.0, delay_seconds),
                seq=int(now * 1000),
            )
            try:
                payload = self._serialize(item)
                if item.ready_at <= now:
                    self._redis_client.rpush(f"{self._ready_key}:{label}", payload)
                else:
                    self._redis_client.zadd(self._scheduled_key, {payload: item.ready_at})
                depth = self.depth()
                if depth >= self._warn_depth:
                    logger.warning("Queue depth warning", depth=depth)
                return item
            except redis.RedisError as e:
                logger.error("Redis error during enqueue", error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.enqueue(job, priority=label, delay_seconds=delay_seconds)

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[PaymentCheckJob]:
        # Jobs that landed in the fallback while Redis was down go first
        fallback_job = self._fallback_queue.dequeue(block=False)
        if fallback_job is not None:
            return fallback_job
        if self._shutdown and self.depth() == 0:
            return None

        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return self._fallback_queue.dequeue(block=block, timeout=timeout)
            try:
                self._promote_scheduled()
                if block:
                    # BLPOP timeout is whole seconds; 0 would block forever
                    wait = max(1, int(timeout)) if timeout else 1
                    popped = self._redis_client.blpop(self._ready_keys(), timeout=wait)
                    if not popped:
                        return None
                    _, raw = popped
                else:
                    raw = None
                    for key in self._ready_keys():
                        raw = self._redis_client.lpop(key)
                        if raw is not None:
                            break
                    if raw is None:
                        return None
                job, _ = self._deserialize(raw)
                return job
            except (redis.RedisError, ValueError, KeyError) as e:
                logger.error("Redis error during dequeue", error=str(e))
                if isinstance(e, redis.RedisError):
                    self._is_redis_active = False
                return None

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._fallback_queue.shutdown()

    def purge(self) -> None:
        """Remove all queued jobs (test isolation)."""
        with self._lock:
            self._fallback_queue.purge()
            if not self.health_check() or self._redis_client is None:
                return
            try:
                self._redis_client.delete(*self._ready_keys(), self._scheduled_key)
            except redis.RedisError as e:
                logger.error("Error purging Redis queue", error=str(e))
                self._is_redis_active = False

    @staticmethod
    def _as_int(value: Any) -> int:
        if value is None:
            return 0
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    def _counts(self) -> tuple[int, int]:
        assert self._redis_client is not None
        ready = sum(self._as_int(self._redis_client.llen(key)) for key in self._ready_keys())
        scheduled = self._as_int(self._redis_client.zcard(self._scheduled_key))
        return ready, scheduled

    def depth(self) -> int:
        with self._lock:
            fallback = self._fallback_queue.depth()
            if not self._is_redis_active or self._redis_client is None:
                return fallback
            try:
                ready, scheduled = self._counts()
                return ready + scheduled + fallback
            except redis.RedisError as e:
                logger.error("Error getting queue depth", error=str(e))
                self._is_redis_active = False
                return fallback

    def __len__(self) -> int:
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                snap = self._fallback_queue.snapshot()
                snap["redis_active"] = False
                return snap
            try:
                ready, scheduled = self._counts()
                return {
                    "depth": ready + scheduled + self._fallback_queue.depth(),
                    "ready": ready,
                    "scheduled": scheduled,
                    "shutdown": self._shutdown,
                    "redis_active": True,
                    "redis_url": self._redis_url,
                }
            except redis.RedisError as e:
                logger.error("Error getting queue snapshot", error=str(e))
                self._is_redis_active = False
                snap = self._fallback_queue.snapshot()
                snap["redis_active"] = False
                return snap


__all__ = ["RedisQueue"]
