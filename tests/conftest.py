"""Pytest configuration and fixtures."""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from config import Settings, get_settings
from database import get_session, init_db, make_engine
from main import app, get_mollie, get_pawapay
from mollie_utils import MollieGateway
from pawapay_utils import PawaPayGateway


class FakeMollie:
    """In-memory stand-in for the checkout processor's HTTP API."""

    def __init__(self):
        self.requests = []
        self.payments = {}
        self.create_status = 201
        self.create_body = None

    def set_status(self, payment_id: str, status: str) -> None:
        self.payments[payment_id]["status"] = status

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == "/v2/payments":
            if self.create_body is not None:
                return httpx.Response(self.create_status, json=self.create_body)
            body = json.loads(request.content)
            payment_id = f"tr_test{len(self.payments) + 1}"
            self.payments[payment_id] = {
                "id": payment_id,
                "status": "open",
                "amount": body["amount"],
                "metadata": body["metadata"],
                "_links": {"checkout": {"href": f"https://checkout.example/{payment_id}"}},
            }
            return httpx.Response(self.create_status, json=self.payments[payment_id])
        if request.method == "GET" and request.url.path.startswith("/v2/payments/"):
            payment_id = request.url.path.rsplit("/", 1)[-1]
            if payment_id not in self.payments:
                return httpx.Response(404, json={"status": 404, "title": "Not Found"})
            return httpx.Response(200, json=self.payments[payment_id])
        return httpx.Response(404, json={"title": "Not Found"})


class FakePawaPay:
    """In-memory stand-in for the payout processor's HTTP API."""

    def __init__(self):
        self.requests = []
        self.payouts = []
        self.reply_status = 200
        self.reply_body_status = "ACCEPTED"
        self.raise_error = None
        self.deposits = []
        self.deposit_status = 200
        self.deposit_body = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error(request)
        if request.method == "POST" and request.url.path == "/v2/payouts":
            body = json.loads(request.content)
            self.payouts.append(body)
            reply = {"payoutId": body["payoutId"], "status": self.reply_body_status}
            if self.reply_body_status == "REJECTED":
                reply["failureReason"] = {"failureCode": "INVALID_AMOUNT", "failureMessage": "Too small"}
            return httpx.Response(self.reply_status, json=reply)
        if request.method == "POST" and request.url.path == "/payment-page/deposits":
            body = json.loads(request.content)
            self.deposits.append(body)
            if self.deposit_body is not None:
                return httpx.Response(self.deposit_status, json=self.deposit_body)
            return httpx.Response(
                self.deposit_status, json={"redirectUrl": f"https://paywith.example/{body['depositId']}"}
            )
        if request.url.path == "/v2/availability":
            return httpx.Response(200, json=[{"country": request.url.params["country"], "providers": []}])
        if request.url.path == "/v2/active-configuration":
            return httpx.Response(200, json={"companyName": "FutaPay"})
        return httpx.Response(404, json={})


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        public_base_url="https://relay.example",
        mollie_api_key="test_mollie_key",
        pawapay_token="test_pawapay_token",
        correlation_grace_seconds=0,
        correlation_poll_seconds=0.01,
    )


@pytest.fixture
def fake_mollie() -> FakeMollie:
    return FakeMollie()


@pytest.fixture
def fake_pawapay() -> FakePawaPay:
    return FakePawaPay()


@pytest.fixture
def mollie(settings, fake_mollie) -> MollieGateway:
    return MollieGateway(
        settings.mollie_api_key,
        base_url="https://api.mollie.test",
        webhook_url=settings.payment_webhook_url,
        default_redirect_url=settings.payment_return_url,
        transport=httpx.MockTransport(fake_mollie.handler),
    )


@pytest.fixture
def pawapay(settings, fake_pawapay) -> PawaPayGateway:
    return PawaPayGateway(
        "https://api.pawapay.test",
        settings.pawapay_token,
        transport=httpx.MockTransport(fake_pawapay.handler),
    )


@pytest.fixture
def client(engine, settings, mollie, pawapay):
    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_mollie] = lambda: mollie
    app.dependency_overrides[get_pawapay] = lambda: pawapay
    yield TestClient(app)
    app.dependency_overrides.clear()
