"""
Notify facade integration: batch pre-notification for a chunk of payments.
"""
from typing import List, Optional

from payment_check.config import EXTERNAL_SERVICES
from payment_check.integrations.base import BatchNotifier
from payment_check.integrations.http import classify_status, request
from payment_check.utils import get_logger

logger = get_logger(__name__)


class NotifyFacadeClient(BatchNotifier):
    NOTIFY_PATH = "/api/v1/payments/notify"

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: float = 30.0):
        self.base_url = (base_url or EXTERNAL_SERVICES["notify_facade"]["url"]).rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def batch_notify(self, gateway: str, payment_ids: List[str]) -> None:
        logger.info(
            "Calling notify facade",
            gateway=gateway,
            payment_count=len(payment_ids),
        )
        context = f"batch notify for gateway {gateway}"
        status, _ = await request(
            "POST",
            f"{self.base_url}{self.NOTIFY_PATH}",
            context=context,
            timeout_seconds=self.timeout_seconds,
            json={"gatewayName": gateway, "paymentIds": list(payment_ids)},
        )
        error = classify_status(status, context)
        if error is not None:
            raise error
        logger.info("Notify facade accepted chunk", gateway=gateway)


__all__ = ["NotifyFacadeClient"]
