"""Tests for the processor gateways, with httpx.MockTransport as the processor."""

import asyncio
import json

import httpx
import pytest

from exceptions import ConfigurationError
from gateway_utils import ACCEPTED, REJECTED, TRANSPORT_ERROR, TRANSPORT_TIMEOUT
from mollie_utils import MollieGateway
from pawapay_utils import PawaPayGateway
from phone_utils import CanonicalRecipient

RECIPIENT = CanonicalRecipient(country="ZMB", msisdn="260771234567", provider="MTN_MOMO_ZMB")
METADATA = {"ownerId": "user-1", "transactionId": "tx-1"}


class TestMollieGateway:
    def test_initiate_payment(self, mollie, fake_mollie) -> None:
        result = asyncio.run(mollie.initiate_payment("10.00", "Gift", None, METADATA))

        assert result.accepted
        assert result.reason == ACCEPTED
        assert result.external_id == "tr_test1"
        assert result.http_status == 201
        assert result.checkout_url == "https://checkout.example/tr_test1"

        request = fake_mollie.requests[0]
        assert request.headers["Authorization"] == "Bearer test_mollie_key"
        payload = json.loads(request.content)
        assert payload["amount"] == {"currency": "EUR", "value": "10.00"}
        assert payload["webhookUrl"] == "https://relay.example/webhooks/payment"
        assert payload["redirectUrl"] == "https://relay.example/mollie/return"
        assert payload["metadata"] == METADATA

    def test_rejection_keeps_body(self, mollie, fake_mollie) -> None:
        fake_mollie.create_status = 422
        fake_mollie.create_body = {"status": 422, "detail": "The amount is lower than the minimum"}

        result = asyncio.run(mollie.initiate_payment("0.01", "", None, METADATA))

        assert not result.accepted
        assert result.reason == REJECTED
        assert result.http_status == 422
        assert result.raw_body["detail"].startswith("The amount")

    def test_fetch_payment(self, mollie, fake_mollie) -> None:
        asyncio.run(mollie.initiate_payment("10.00", "", None, METADATA))
        fake_mollie.set_status("tr_test1", "paid")

        result = asyncio.run(mollie.fetch_payment("tr_test1"))

        assert result.accepted
        assert result.raw_body["status"] == "paid"

    def test_missing_key_is_configuration_error(self) -> None:
        gateway = MollieGateway("")
        with pytest.raises(ConfigurationError, match="MOLLIE_API_KEY"):
            asyncio.run(gateway.initiate_payment("10.00", "", None, METADATA))


class TestPawaPayGateway:
    def test_initiate_payout(self, pawapay, fake_pawapay) -> None:
        result = asyncio.run(pawapay.initiate_payout("25.00", "ZMW", RECIPIENT, METADATA))

        assert result.accepted
        payload = fake_pawapay.payouts[0]
        assert result.external_id == payload["payoutId"]
        assert payload["recipient"] == {
            "type": "MMO",
            "accountDetails": {"provider": "MTN_MOMO_ZMB", "phoneNumber": "260771234567"},
        }
        assert payload["amount"] == "25.00"
        assert payload["currency"] == "ZMW"
        assert result.audit()["request"] == payload
        assert fake_pawapay.requests[0].headers["Authorization"] == "Bearer test_pawapay_token"

    def test_each_call_gets_a_new_payout_id(self, pawapay, fake_pawapay) -> None:
        first = asyncio.run(pawapay.initiate_payout("1.00", "ZMW", RECIPIENT, METADATA))
        second = asyncio.run(pawapay.initiate_payout("1.00", "ZMW", RECIPIENT, METADATA))
        assert first.external_id != second.external_id

    def test_reserved_payout_id_is_sent(self, pawapay, fake_pawapay) -> None:
        result = asyncio.run(pawapay.initiate_payout("1.00", "ZMW", RECIPIENT, METADATA, payout_id="po-reserved"))
        assert result.external_id == "po-reserved"
        assert fake_pawapay.payouts[0]["payoutId"] == "po-reserved"

    def test_rejected_body_with_200(self, pawapay, fake_pawapay) -> None:
        fake_pawapay.reply_body_status = "REJECTED"

        result = asyncio.run(pawapay.initiate_payout("0.01", "ZMW", RECIPIENT, METADATA))

        assert not result.accepted
        assert result.reason == REJECTED
        assert result.http_status == 200
        assert result.raw_body["failureReason"]["failureCode"] == "INVALID_AMOUNT"

    def test_http_error_status(self, pawapay, fake_pawapay) -> None:
        fake_pawapay.reply_status = 400
        fake_pawapay.reply_body_status = "INVALID"

        result = asyncio.run(pawapay.initiate_payout("1.00", "ZMW", RECIPIENT, METADATA))

        assert not result.accepted
        assert result.reason == REJECTED
        assert result.http_status == 400

    def test_timeout_is_distinct(self, pawapay, fake_pawapay) -> None:
        fake_pawapay.raise_error = lambda request: httpx.ReadTimeout("timed out", request=request)

        result = asyncio.run(pawapay.initiate_payout("1.00", "ZMW", RECIPIENT, METADATA))

        assert not result.accepted
        assert result.reason == TRANSPORT_TIMEOUT
        assert result.is_transport_failure
        assert result.http_status is None

    def test_connection_error(self, pawapay, fake_pawapay) -> None:
        fake_pawapay.raise_error = lambda request: httpx.ConnectError("refused", request=request)

        result = asyncio.run(pawapay.initiate_payout("1.00", "ZMW", RECIPIENT, METADATA))

        assert result.reason == TRANSPORT_ERROR

    def test_non_json_body_is_preserved(self, settings) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(502, text="<html>Bad gateway</html>"))
        gateway = PawaPayGateway("https://api.pawapay.test", "tok", transport=transport)

        result = asyncio.run(gateway.initiate_payout("1.00", "ZMW", RECIPIENT, METADATA))

        assert not result.accepted
        assert result.raw_body == {"raw": "<html>Bad gateway</html>"}

    def test_missing_token_is_configuration_error(self) -> None:
        gateway = PawaPayGateway("https://api.pawapay.test", "  ")
        with pytest.raises(ConfigurationError, match="PAWAPAY_TOKEN"):
            asyncio.run(gateway.initiate_payout("1.00", "ZMW", RECIPIENT, METADATA))

    def test_availability(self, pawapay) -> None:
        result = asyncio.run(pawapay.availability("KEN"))
        assert result.ok
        assert result.data[0]["country"] == "KEN"

    def test_initiate_deposit(self, pawapay, fake_pawapay) -> None:
        result = asyncio.run(pawapay.initiate_deposit("15.00", "ZMW", "260971234567", "futapay://deposit"))

        assert result.accepted
        payload = fake_pawapay.deposits[0]
        assert result.external_id == payload["depositId"]
        assert result.checkout_url == f"https://paywith.example/{payload['depositId']}"
        assert payload["payer"] == {"type": "MSISDN", "address": {"value": "260971234567"}}
        assert fake_pawapay.requests[0].url.path == "/payment-page/deposits"

    def test_deposit_timeout(self, pawapay, fake_pawapay) -> None:
        fake_pawapay.raise_error = lambda request: httpx.ReadTimeout("timed out", request=request)

        result = asyncio.run(pawapay.initiate_deposit("15.00", "ZMW", "260971234567", "futapay://deposit"))

        assert not result.accepted
        assert result.reason == TRANSPORT_TIMEOUT
        assert result.checkout_url is None
