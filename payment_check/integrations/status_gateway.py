"""
Status gateway integration: trigger a status re-check for a single payment.
"""
from typing import Optional
from urllib.parse import quote

from payment_check.config import EXTERNAL_SERVICES
from payment_check.integrations.base import StatusTrigger
from payment_check.integrations.http import classify_status, request
from payment_check.utils import get_logger

logger = get_logger(__name__)


class StatusGatewayClient(StatusTrigger):
    def __init__(self, base_url: Optional[str] = None, timeout_seconds: float = 30.0):
        self.base_url = (base_url or EXTERNAL_SERVICES["status_gateway"]["url"]).rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def trigger_status_check(self, gateway: str, payment_id: str) -> None:
        context = f"status trigger for payment {payment_id} on gateway {gateway}"
        status, _ = await request(
            "POST",
            f"{self.base_url}/api/v1/payments/{quote(payment_id, safe='')}/check-status",
            context=context,
            timeout_seconds=self.timeout_seconds,
            headers={"X-Gateway-Name": gateway},
        )
        error = classify_status(status, context)
        if error is not None:
            raise error
        logger.debug("Status check triggered", gateway=gateway, payment_id=payment_id)


__all__ = ["StatusGatewayClient"]
