import logging
import uuid
from typing import Optional

from exceptions import ConfigurationError
from gateway_utils import ACCEPTED, REJECTED, GatewayResult, ProcessorClient, ProcessorResponse, lookup_first
from phone_utils import CanonicalRecipient

logger = logging.getLogger(__name__)

# Body statuses pawaPay uses to decline a request it answered with 2xx
REJECTED_BODY_STATUSES = ("REJECTED", "DUPLICATE_IGNORED")

# Where the payment page answer puts the payer redirect, in order of preference
REDIRECT_PATHS = (("redirectUrl",), ("_links", "redirect", "href"), ("_links", "paymentPage", "href"))


class PawaPayGateway(ProcessorClient):
    """Mobile-money payout processor."""

    name = "pawapay"

    def require(self) -> None:
        if not self.configured:
            raise ConfigurationError(
                "Missing PAWAPAY_TOKEN on the backend. Add it to the environment and redeploy."
            )

    async def initiate_payout(self, amount: str, currency: str, recipient: CanonicalRecipient,
                              metadata: dict, customer_message: str = "FutaPay payout",
                              payout_id: Optional[str] = None) -> GatewayResult:
        """
        The recipient must already be normalized; nothing is re-validated here.
        Pass `payout_id` when it was reserved before the call.
        """
        self.require()
        payout_id = payout_id or str(uuid.uuid4())
        payload = {
            "payoutId": payout_id,
            "amount": str(amount),
            "currency": currency,
            "recipient": {
                "type": "MMO",
                "accountDetails": {
                    "provider": recipient.provider,
                    "phoneNumber": recipient.msisdn,
                },
            },
            "customerMessage": customer_message,
            "metadata": [{key: str(value)} for key, value in metadata.items()],
        }

        resp = await self.fetch("/v2/payouts", method="POST", body=payload)
        data = resp.data if isinstance(resp.data, dict) else {"raw": resp.data}
        body_status = str(data.get("status") or "").upper()

        if resp.ok and body_status in REJECTED_BODY_STATUSES:
            logger.warning("pawaPay declined payout %s: %s", payout_id, data.get("failureReason"))
            return GatewayResult(False, payout_id, resp.status, data, REJECTED, request=payload)

        return GatewayResult(
            resp.ok,
            external_id=payout_id,
            http_status=resp.status,
            raw_body=data,
            reason=resp.reason if not resp.ok else ACCEPTED,
            request=payload,
        )

    async def availability(self, country: str = "ZMB", operation_type: str = "PAYOUT") -> ProcessorResponse:
        self.require()
        return await self.fetch(
            "/v2/availability", params={"country": country, "operationType": operation_type}
        )

    async def active_configuration(self) -> ProcessorResponse:
        self.require()
        return await self.fetch("/v2/active-configuration")

    async def initiate_deposit(self, amount: str, currency: str, msisdn: str, return_url: str,
                               customer_message: str = "FutaPay deposit") -> GatewayResult:
        """
        Opens a hosted payment page where the payer approves a deposit.
        checkout_url on the result is where to send the payer.
        """
        self.require()
        deposit_id = str(uuid.uuid4())
        payload = {
            "depositId": deposit_id,
            "amount": str(amount),
            "currency": currency,
            "payer": {"type": "MSISDN", "address": {"value": msisdn}},
            "customerMessage": customer_message,
            "returnUrl": return_url,
        }

        resp = await self.fetch("/payment-page/deposits", method="POST", body=payload)
        data = resp.data if isinstance(resp.data, dict) else {"raw": resp.data}
        if not resp.ok:
            logger.warning("pawaPay payment page for deposit %s failed (%s, %s)",
                           deposit_id, resp.reason, resp.status)
            return GatewayResult(False, deposit_id, resp.status, data, resp.reason, request=payload)

        redirect = lookup_first(data, REDIRECT_PATHS)
        return GatewayResult(True, deposit_id, resp.status, data, ACCEPTED,
                             checkout_url=redirect, request=payload)
