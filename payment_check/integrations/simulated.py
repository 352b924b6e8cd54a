"""
Simulated collaborators (MOCK IMPLEMENTATION).

Stand-ins for the search index, notify facade and status gateway used for
local runs and demos. Each call fails transiently with probability
`failure_rate`; once a call succeeds its success is remembered, so retries
eventually get through, mirroring the idempotent real services.

Gateway assignment is deterministic: a payment id that mentions a known
gateway name maps to it, anything else is hashed onto the list.
"""
import asyncio
import hashlib
import random
import threading
from typing import Iterable, List, Optional

from payment_check.config import MOCK_FAILURE_RATE
from payment_check.exceptions import NotFoundError, TransientError
from payment_check.integrations.base import BatchNotifier, GatewayLookup, StatusTrigger
from payment_check.utils import get_logger

logger = get_logger(__name__)

DEFAULT_GATEWAYS = ("stripe", "adyen", "paypal")


def determine_gateway(payment_id: str, gateways: Iterable[str] = DEFAULT_GATEWAYS) -> str:
    gateways = tuple(gateways)
    lowered = payment_id.lower()
    for gateway in gateways:
        if gateway in lowered:
            return gateway
    digest = hashlib.md5(payment_id.encode("utf-8")).digest()
    return gateways[digest[0] % len(gateways)]


class SimulatedGatewayServices(GatewayLookup, BatchNotifier, StatusTrigger):
    """All three collaborator capabilities backed by one in-memory success cache."""

    def __init__(
        self,
        failure_rate: Optional[float] = None,
        *,
        gateways: Iterable[str] = DEFAULT_GATEWAYS,
        latency_seconds: tuple[float, float] = (0.01, 0.05),
        unknown_prefix: str = "unknown",
        rng: Optional[random.Random] = None,
    ):
        self.failure_rate = MOCK_FAILURE_RATE if failure_rate is None else failure_rate
        self.gateways = tuple(gateways)
        self.latency_seconds = latency_seconds
        self.unknown_prefix = unknown_prefix
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._gateway_cache: dict[str, str] = {}
        self._notified: set[str] = set()
        self._triggered: set[str] = set()

    async def _simulate_latency(self) -> None:
        low, high = self.latency_seconds
        await asyncio.sleep(self._rng.uniform(low, high))

    def _should_fail(self) -> bool:
        return self._rng.random() < self.failure_rate

    async def lookup_gateway(self, payment_id: str) -> str:
        await self._simulate_latency()
        if payment_id.lower().startswith(self.unknown_prefix):
            raise NotFoundError(payment_id)
        with self._lock:
            cached = self._gateway_cache.get(payment_id)
        if cached is not None:
            return cached
        if self._should_fail():
            logger.warning("Simulated search index failure", payment_id=payment_id)
            raise TransientError(f"Simulated search index error for payment {payment_id}")
        gateway = determine_gateway(payment_id, self.gateways)
        with self._lock:
            self._gateway_cache[payment_id] = gateway
        return gateway

    async def batch_notify(self, gateway: str, payment_ids: List[str]) -> None:
        await self._simulate_latency()
        key = f"{gateway}:{','.join(payment_ids)}"
        with self._lock:
            if key in self._notified:
                return
        if self._should_fail():
            logger.warning("Simulated notify facade failure", gateway=gateway, payment_count=len(payment_ids))
            raise TransientError(f"Simulated notify facade error for gateway {gateway}")
        with self._lock:
            self._notified.add(key)

    async def trigger_status_check(self, gateway: str, payment_id: str) -> None:
        await self._simulate_latency()
        with self._lock:
            if payment_id in self._triggered:
                return
        if self._should_fail():
            logger.warning("Simulated status gateway failure", gateway=gateway, payment_id=payment_id)
            raise TransientError(f"Simulated status gateway error for payment {payment_id}")
        with self._lock:
            self._triggered.add(payment_id)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "gateway_cache_size": len(self._gateway_cache),
                "notified_chunks": len(self._notified),
                "triggered_payments": len(self._triggered),
            }


__all__ = ["SimulatedGatewayServices", "determine_gateway", "DEFAULT_GATEWAYS"]
