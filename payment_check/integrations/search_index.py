"""
Search index integration resolving which gateway owns a payment.
Documents live at `{url}/{index}/_doc/{payment_id}` with the gateway name
under `_source.gatewayName`.
"""
from typing import Optional
from urllib.parse import quote

from payment_check.config import EXTERNAL_SERVICES
from payment_check.exceptions import NotFoundError
from payment_check.integrations.base import GatewayLookup
from payment_check.integrations.http import classify_status, request
from payment_check.utils import get_logger

logger = get_logger(__name__)


class SearchIndexGatewayLookup(GatewayLookup):
    """Search index lookup client."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        index: Optional[str] = None,
        timeout_seconds: float = 30.0,
    ):
        settings = EXTERNAL_SERVICES["search_index"]
        self.base_url = (base_url or settings["url"]).rstrip("/")
        self.index = index or settings["index"]
        self.timeout_seconds = timeout_seconds

    async def lookup_gateway(self, payment_id: str) -> str:
        logger.debug("Looking up gateway for payment", payment_id=payment_id)
        url = f"{self.base_url}/{self.index}/_doc/{quote(payment_id, safe='')}"
        context = f"gateway lookup for payment {payment_id}"

        status, body = await request("GET", url, context=context, timeout_seconds=self.timeout_seconds)
        if status == 404:
            raise NotFoundError(payment_id)
        error = classify_status(status, context)
        if error is not None:
            logger.warning("Search index request failed", payment_id=payment_id, status_code=status)
            raise error

        source = (body or {}).get("_source") or {}
        gateway_name = source.get("gatewayName")
        if not gateway_name:
            raise NotFoundError(payment_id, f"Gateway not found for payment: {payment_id}")

        logger.debug("Found gateway for payment", payment_id=payment_id, gateway=gateway_name)
        return str(gateway_name)


__all__ = ["SearchIndexGatewayLookup"]
