import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request, Depends
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

import correlation_utils
import ledger_utils
from config import Settings, get_settings
from correlation_utils import TransactionRef
from database import init_db, get_session
from exceptions import (
    ConfigurationError, CorrelationConflictError, LedgerError, NormalizationError, ValidationError
)
from gateway_utils import GatewayResult, REJECTED, TRANSPORT_ERROR, TRANSPORT_TIMEOUT
from logging_utils import setup_logging
from models import Processor, TransactionKind
from mollie_utils import MollieGateway
from pawapay_utils import PawaPayGateway
from phone_utils import (
    default_currency, load_network_config, normalize_amount, normalize_country, normalize_msisdn,
    normalize_recipient,
)
from webhook_utils import PaymentCallbackAdapter, PayoutCallbackAdapter, reconcile

VERSION = "server-v2"
SERVICE = "futapay-backend"

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    init_db()
    logger.info("Public base URL: %s", settings.public_base_url)
    yield

app = FastAPI(lifespan=lifespan, title="FutaPay Relay")


def get_mollie(settings: Settings = Depends(get_settings)) -> MollieGateway:
    return MollieGateway(
        settings.mollie_api_key,
        base_url=settings.mollie_base_url,
        webhook_url=settings.payment_webhook_url,
        default_redirect_url=settings.payment_return_url,
        timeout=settings.processor_timeout,
    )


def get_pawapay(settings: Settings = Depends(get_settings)) -> PawaPayGateway:
    return PawaPayGateway(
        settings.pawapay_base_url, settings.pawapay_token, timeout=settings.processor_timeout
    )


# --- ERROR MAPPING ---

@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    content = {"ok": False, "error": str(exc)}
    if isinstance(exc, NormalizationError):
        content["msisdn"] = exc.msisdn
        if exc.expected_format:
            content["expectedFormat"] = exc.expected_format
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(CorrelationConflictError)
@app.exception_handler(LedgerError)
async def conflict_error_handler(request: Request, exc: Exception):
    logger.error("Ledger conflict on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=409, content={"ok": False, "error": str(exc)})


# --- HELPERS ---

async def read_json(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Request body must be a JSON object.")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


async def read_callback_body(request: Request) -> dict:
    """
    Callbacks arrive as JSON or as form posts depending on the processor.
    """
    content_type = request.headers.get("content-type", "")
    if "form" in content_type:
        return dict(await request.form())
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return dict(parse_qsl(raw.decode("utf-8", "replace")))
    return data if isinstance(data, dict) else {"payload": data}


def parse_kind(value) -> str:
    if not value:
        return TransactionKind.SEND.value
    try:
        return TransactionKind(str(value).lower()).value
    except ValueError:
        raise ValidationError("Invalid kind. Use 'send' or 'receive'.")


def rejection_response(result: GatewayResult, message: str, **extra) -> JSONResponse:
    if result.reason == TRANSPORT_TIMEOUT:
        status = 504
    elif result.reason == TRANSPORT_ERROR:
        status = 502
    else:
        status = result.http_status if result.http_status and result.http_status >= 400 else 502
    content = {
        "ok": False,
        "accepted": False,
        "error": message,
        "reason": result.reason,
        "details": result.raw_body,
        "externalId": result.external_id,
    }
    content.update(extra)
    return JSONResponse(status_code=status, content=content)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- BASICS ---

@app.get("/version")
async def version():
    return {"ok": True, "version": VERSION, "ts": now_iso()}


@app.get("/health")
async def health():
    return {"ok": True, "service": SERVICE, "ts": now_iso()}


@app.get("/transactions/{owner_id}/{transaction_id}")
async def read_transaction(owner_id: str, transaction_id: str, session: Session = Depends(get_session)):
    txn = await run_in_threadpool(
        ledger_utils.get_transaction, session, TransactionRef(owner_id, transaction_id)
    )
    if txn is None:
        return JSONResponse(status_code=404, content={"ok": False, "error": "Transaction not found"})
    return {"ok": True, "transaction": txn.to_public()}


# --- PAYMENTS (checkout processor) ---

@app.post("/payments")
@app.post("/mollie/payments")
async def create_payment(
    request: Request,
    session: Session = Depends(get_session),
    mollie: MollieGateway = Depends(get_mollie),
):
    mollie.require()
    body = await read_json(request)
    amount = normalize_amount(body.get("amount"))
    currency = str(body.get("currency") or "EUR").upper()

    metadata = body.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object.")
    owner_id = metadata.get("ownerId") or metadata.get("uid")
    transaction_id = metadata.get("transactionId") or metadata.get("txId") or metadata.get("txid")
    if not owner_id or not transaction_id:
        raise ValidationError(
            "Missing metadata.ownerId or metadata.transactionId (needed to reconcile the payment)."
        )
    ref = TransactionRef(str(owner_id), str(transaction_id))

    await run_in_threadpool(
        ledger_utils.ensure_transaction, session, ref,
        kind=parse_kind(body.get("kind")), amount=amount, currency=currency,
    )
    # One checkout per transaction; refuse before creating another
    await run_in_threadpool(ledger_utils.check_payment_unbound, session, ref)

    result = await mollie.initiate_payment(
        amount,
        body.get("description"),
        body.get("returnUrl") or body.get("redirectUrl"),
        {**metadata, "ownerId": ref.owner_id, "transactionId": ref.transaction_id},
        currency=currency,
    )

    await run_in_threadpool(
        ledger_utils.record_payment_initiation, session, ref, result.accepted, result.external_id,
        result.audit(),
    )
    if result.accepted and result.external_id:
        await run_in_threadpool(
            correlation_utils.record, session, Processor.MOLLIE.value, result.external_id, ref
        )

    if not result.accepted:
        return rejection_response(result, "Payment creation failed")

    return {
        "ok": True,
        "accepted": True,
        "externalId": result.external_id,
        "paymentId": result.external_id,
        "checkoutUrl": result.checkout_url,
    }


@app.post("/webhooks/payment")
@app.post("/webhooks/mollie")
async def payment_webhook(
    request: Request,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    mollie: MollieGateway = Depends(get_mollie),
):
    # Always ACK; a failure here would only make the processor retry.
    try:
        body = await read_callback_body(request)
        await reconcile(
            session, PaymentCallbackAdapter(mollie), body, request.query_params,
            settings.correlation_grace_seconds, settings.correlation_poll_seconds,
        )
    except Exception:
        logger.exception("Payment webhook error")
    return PlainTextResponse("ok")


@app.get("/mollie/return", response_class=HTMLResponse)
async def payment_return():
    return """
    <html><body style="font-family: system-ui; padding:24px;">
      <h2>Thanks, return to the app.</h2>
      <p>Your payment status will update shortly.</p>
    </body></html>
    """


# --- PAYOUTS (mobile-money processor) ---

@app.post("/payouts")
@app.post("/pawapay/payouts")
async def create_payout(
    request: Request,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    pawapay: PawaPayGateway = Depends(get_pawapay),
):
    pawapay.require()
    body = await read_json(request)

    owner_id = body.get("ownerId") or body.get("uid")
    transaction_id = body.get("transactionId") or body.get("txId")
    if not owner_id or not transaction_id:
        raise ValidationError("Missing required fields: ownerId, transactionId")

    provider, phone = body.get("provider"), body.get("phoneNumber")
    if not provider or not phone or not body.get("amount"):
        raise ValidationError("Missing required fields: provider, phoneNumber, amount")

    ref = TransactionRef(str(owner_id), str(transaction_id))
    amount = normalize_amount(body.get("amount"))
    iso3 = normalize_country(body.get("countryCode") or body.get("countryIso3"))
    currency = str(body.get("currency") or default_currency(iso3) or "").upper()
    if not currency:
        raise ValidationError(f"Missing currency for {iso3}.")
    kind = parse_kind(body.get("kind"))

    try:
        recipient = normalize_recipient(phone, provider, iso3, load_network_config(settings.networks_file))
    except NormalizationError as e:
        await run_in_threadpool(
            ledger_utils.ensure_transaction, session, ref, kind=kind, amount=amount, currency=currency,
            recipient_phone=str(phone), recipient_country=iso3,
        )
        await run_in_threadpool(ledger_utils.record_payout_audit, session, ref, {
            "lastHttpStatus": 400,
            "lastResponse": {
                "failureReason": {"failureCode": "INVALID_RECIPIENT_FORMAT", "failureMessage": str(e)}
            },
            "phoneNumberUsed": e.msisdn,
        })
        raise

    await run_in_threadpool(
        ledger_utils.ensure_transaction, session, ref,
        kind=kind, amount=amount, currency=currency, recipient_phone=str(phone),
        recipient_msisdn=recipient.msisdn, recipient_provider=recipient.provider,
        recipient_country=recipient.country,
    )

    # The payout id is bound before any money moves; a second request gets 409 here
    payout_id = str(uuid.uuid4())
    await run_in_threadpool(ledger_utils.reserve_payout, session, ref, payout_id)

    result = await pawapay.initiate_payout(
        amount, currency, recipient,
        {"ownerId": ref.owner_id, "transactionId": ref.transaction_id},
        customer_message=body.get("customerMessage") or "FutaPay payout",
        payout_id=payout_id,
    )

    # After a timeout the payout may still go through, so its callback must resolve
    if result.accepted or result.is_transport_failure:
        await run_in_threadpool(
            correlation_utils.record, session, Processor.PAWAPAY.value, result.external_id, ref
        )
    audit = {
        **result.audit(),
        "payoutId": result.external_id,
        "status": (result.raw_body or {}).get("status") or ("ACCEPTED" if result.accepted else "REQUEST_FAILED"),
        "providerUsed": recipient.provider,
        "phoneNumberUsed": recipient.msisdn,
    }
    # Only a definite refusal frees the transaction for another attempt
    release = result.reason == REJECTED and (result.http_status or 500) < 500
    await run_in_threadpool(
        ledger_utils.record_payout_initiation, session, ref, result.accepted, result.external_id, audit,
        release,
    )

    if not result.accepted:
        return rejection_response(
            result, "Payout creation failed",
            providerUsed=recipient.provider, phoneNumberUsed=recipient.msisdn,
        )

    return {
        "ok": True,
        "accepted": True,
        "externalId": result.external_id,
        "payoutId": result.external_id,
        "providerUsed": recipient.provider,
        "phoneNumberUsed": recipient.msisdn,
    }


@app.post("/webhooks/payout")
@app.post("/webhooks/pawapay")
async def payout_webhook(
    request: Request,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    try:
        body = await read_callback_body(request)
        await reconcile(
            session, PayoutCallbackAdapter(), body, request.query_params,
            settings.correlation_grace_seconds, settings.correlation_poll_seconds,
        )
    except Exception:
        logger.exception("Payout webhook error")
    return PlainTextResponse("ok")


@app.get("/pawapay/availability")
async def payout_availability(
    country: str = "ZMB", operationType: str = "PAYOUT", pawapay: PawaPayGateway = Depends(get_pawapay)
):
    result = await pawapay.availability(country, operationType)
    status = 200 if result.ok else (result.status or 502)
    return JSONResponse(status_code=status, content={"ok": result.ok, "status": result.status, "data": result.data})


@app.get("/pawapay/active-conf")
async def payout_active_configuration(pawapay: PawaPayGateway = Depends(get_pawapay)):
    result = await pawapay.active_configuration()
    status = 200 if result.ok else (result.status or 502)
    return JSONResponse(status_code=status, content={"ok": result.ok, "status": result.status, "data": result.data})


@app.post("/pawapay/paymentpage/deposit")
async def create_deposit_page(
    request: Request,
    settings: Settings = Depends(get_settings),
    pawapay: PawaPayGateway = Depends(get_pawapay),
):
    """
    Starts a deposit on pawaPay's hosted payment page. Nothing is written to
    the ledger; the caller sends the payer to redirectUrl.
    """
    pawapay.require()
    body = await read_json(request)
    if not body.get("amount") or not body.get("phoneNumber"):
        raise ValidationError("Missing required fields: amount, phoneNumber")

    amount = normalize_amount(body.get("amount"))
    iso3 = normalize_country(body.get("countryCode") or body.get("countryIso3"))
    currency = str(body.get("currency") or default_currency(iso3) or "").upper()
    if not currency:
        raise ValidationError(f"Missing currency for {iso3}.")
    msisdn = normalize_msisdn(body.get("phoneNumber"), iso3)

    result = await pawapay.initiate_deposit(
        amount, currency, msisdn,
        body.get("returnUrl") or settings.payout_return_url,
        customer_message=body.get("customerMessage") or "FutaPay deposit",
    )
    if not result.accepted:
        return rejection_response(result, "pawaPay deposit creation failed", depositId=result.external_id)

    return {
        "ok": True,
        "depositId": result.external_id,
        "redirectUrl": result.checkout_url,
        "raw": result.raw_body,
    }


@app.get("/pawapay/return", response_class=HTMLResponse)
async def payout_return():
    return """
    <html><body style="font-family: system-ui; padding:24px;">
      <h2>Thanks, we received your return.</h2>
      <p>You can now go back to the app.</p>
    </body></html>
    """
