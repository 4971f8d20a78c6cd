import logging
from typing import Optional

from exceptions import ConfigurationError
from gateway_utils import ACCEPTED, GatewayResult, ProcessorClient

logger = logging.getLogger(__name__)


class MollieGateway(ProcessorClient):
    """Card/bank checkout processor."""

    name = "mollie"

    def __init__(self, api_key: str, base_url: str = "https://api.mollie.com",
                 webhook_url: Optional[str] = None, default_redirect_url: Optional[str] = None,
                 timeout: float = 15.0, transport=None):
        super().__init__(base_url, api_key, timeout=timeout, transport=transport)
        self.webhook_url = webhook_url
        self.default_redirect_url = default_redirect_url

    def require(self) -> None:
        if not self.configured:
            raise ConfigurationError(
                "Missing MOLLIE_API_KEY on backend. Add it to the environment and redeploy."
            )

    async def initiate_payment(self, amount: str, description: str, return_url: Optional[str],
                               metadata: dict, currency: str = "EUR") -> GatewayResult:
        """
        Creates a checkout. amount must already be a two-decimal string.
        """
        self.require()
        payload = {
            "amount": {"currency": currency, "value": amount},
            "description": description or "FutaPay transfer",
            "redirectUrl": return_url or self.default_redirect_url,
            "metadata": metadata,
        }
        if self.webhook_url:
            payload["webhookUrl"] = self.webhook_url

        resp = await self.fetch("/v2/payments", method="POST", body=payload)
        if not resp.ok:
            return GatewayResult(False, http_status=resp.status, raw_body=resp.data, reason=resp.reason)

        data = resp.data or {}
        checkout = ((data.get("_links") or {}).get("checkout") or {}).get("href")
        return GatewayResult(
            True,
            external_id=data.get("id"),
            http_status=resp.status,
            raw_body=data,
            reason=ACCEPTED,
            checkout_url=checkout,
        )

    async def fetch_payment(self, payment_id: str) -> GatewayResult:
        """Reads the current state of a payment; raw_body carries "status"."""
        self.require()
        resp = await self.fetch(f"/v2/payments/{payment_id}")
        return GatewayResult(
            resp.ok,
            external_id=(resp.data or {}).get("id", payment_id) if resp.ok else payment_id,
            http_status=resp.status,
            raw_body=resp.data,
            reason=resp.reason,
        )
