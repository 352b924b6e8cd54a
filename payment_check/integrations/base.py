from abc import ABC, abstractmethod
from typing import List


class GatewayLookup(ABC):
    @abstractmethod
    async def lookup_gateway(self, payment_id: str) -> str:
        """Return the name of the gateway owning `payment_id`.

        Raises NotFoundError or TransientError.
        """


class BatchNotifier(ABC):
    @abstractmethod
    async def batch_notify(self, gateway: str, payment_ids: List[str]) -> None:
        """Pre-notify the facade about a chunk of payments of one gateway."""


class StatusTrigger(ABC):
    @abstractmethod
    async def trigger_status_check(self, gateway: str, payment_id: str) -> None:
        """Ask the gateway to re-check the status of one payment."""
