"""
Callback reconciliation.

Each processor gets one CallbackAdapter: an ordered list of field paths for
the external id and for the status (first present wins), a status mapping,
and the ledger write for its leg. Adding a processor means adding an adapter.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple

from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

import correlation_utils
import ledger_utils
from correlation_utils import TransactionRef
from models import Processor, utcnow
from mollie_utils import MollieGateway
from status_utils import map_payment_status, map_payout_status

logger = logging.getLogger(__name__)

IGNORED = "ignored"
UNRESOLVED = "unresolved"
APPLIED = "applied"
MISSING_TRANSACTION = "missing_transaction"
NO_STATUS = "no_status"


def lookup(source: Any, path: Sequence[str]) -> Any:
    for key in path:
        if not isinstance(source, Mapping):
            return None
        source = source.get(key)
    return source


def first_present(sources: Sequence[Any], paths: Sequence[Tuple[str, ...]]) -> Optional[str]:
    for path in paths:
        for source in sources:
            value = lookup(source, path)
            if value not in (None, ""):
                return str(value)
    return None


@dataclass
class Callback:
    external_id: str
    raw_status: Optional[str]
    body: dict


class CallbackAdapter:
    processor: str = ""
    id_field: str = "externalId"
    id_paths: Tuple[Tuple[str, ...], ...] = ()
    status_paths: Tuple[Tuple[str, ...], ...] = ()
    status_required = True

    def extract(self, body: Mapping, query: Mapping) -> Optional[Callback]:
        body = dict(body or {})
        sources = (body, dict(query or {}))
        external_id = first_present(sources, self.id_paths)
        raw_status = first_present((body,), self.status_paths)
        if not external_id or (self.status_required and not raw_status):
            return None
        return Callback(external_id, raw_status, body)

    async def complete_status(self, callback: Callback) -> Optional[str]:
        return callback.raw_status

    def audit(self, callback: Callback, raw_status: str) -> dict:
        return {
            self.id_field: callback.external_id,
            "status": raw_status,
            "lastCallback": callback.body,
            "callbackReceivedAt": utcnow().isoformat(),
        }

    def apply(self, session: Session, ref: TransactionRef, raw_status: str, audit: dict):
        raise NotImplementedError


class PaymentCallbackAdapter(CallbackAdapter):
    """
    The checkout processor posts only `id=...`. Anyone can post that, so the
    status is always read back from its API; a status in the body is ignored.
    """

    processor = Processor.MOLLIE.value
    id_field = "paymentId"
    id_paths = (("id",), ("paymentId",), ("payment", "id"), ("data", "id"))
    status_required = False

    def __init__(self, gateway: Optional[MollieGateway] = None):
        self.gateway = gateway

    async def complete_status(self, callback: Callback) -> Optional[str]:
        if self.gateway is None or not self.gateway.configured:
            logger.warning("Cannot look up payment %s: checkout processor not configured",
                           callback.external_id)
            return None
        result = await self.gateway.fetch_payment(callback.external_id)
        if not result.accepted:
            logger.warning("Payment lookup for %s failed (%s, %s)",
                           callback.external_id, result.reason, result.http_status)
            return None
        return (result.raw_body or {}).get("status")

    def apply(self, session, ref, raw_status, audit):
        signal = map_payment_status(raw_status)
        if signal is None:
            logger.info("Untracked payment status %r for %s", raw_status, audit.get("paymentId"))
        return ledger_utils.apply_payment_signal(session, ref, signal, audit)


class PayoutCallbackAdapter(CallbackAdapter):
    processor = Processor.PAWAPAY.value
    id_field = "payoutId"
    id_paths = (("payoutId",), ("payoutID",), ("payout", "payoutId"), ("payout", "payoutID"),
                ("data", "payoutId"))
    status_paths = (("status",), ("payoutStatus",), ("payout", "status"), ("payout", "payoutStatus"),
                    ("data", "status"))

    def apply(self, session, ref, raw_status, audit):
        return ledger_utils.apply_payout_signal(session, ref, map_payout_status(raw_status), audit)


async def resolve_with_grace(session: Session, processor: str, external_id: str,
                             grace_seconds: float, poll_seconds: float) -> Optional[TransactionRef]:
    """
    A callback may overtake the record() of its own initiation, so a miss is
    retried until the grace period runs out.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(grace_seconds, 0)
    while True:
        ref = await run_in_threadpool(correlation_utils.resolve, session, processor, external_id)
        if ref is not None or loop.time() >= deadline:
            return ref
        await asyncio.sleep(max(poll_seconds, 0.01))


async def reconcile(session: Session, adapter: CallbackAdapter, body: Mapping, query: Mapping,
                    grace_seconds: float = 0.0, poll_seconds: float = 0.25) -> str:
    """
    Applies one callback delivery to the ledger. Returns the outcome; never
    signals failure to the processor.
    """
    received_at = utcnow().isoformat()
    callback = adapter.extract(body, query)
    if callback is None:
        logger.warning(
            "Ignoring %s callback without id/status",
            adapter.processor,
            extra={"processor": adapter.processor, "receivedAt": received_at, "rawBody": dict(body or {})},
        )
        return IGNORED

    ref = await resolve_with_grace(session, adapter.processor, callback.external_id,
                                   grace_seconds, poll_seconds)
    if ref is None:
        # Only place a callback can be lost; log enough to reconcile by hand.
        logger.warning(
            "Dropping %s callback for unknown id %s (received %s): %s",
            adapter.processor, callback.external_id, received_at, callback.body,
            extra={
                "processor": adapter.processor,
                "externalId": callback.external_id,
                "receivedAt": received_at,
                "rawBody": callback.body,
            },
        )
        return UNRESOLVED

    raw_status = await adapter.complete_status(callback)
    if not raw_status:
        return NO_STATUS

    audit = adapter.audit(callback, raw_status)
    result = await run_in_threadpool(adapter.apply, session, ref, raw_status, audit)
    if result is None:
        logger.warning("Correlated transaction %s/%s no longer exists", *ref)
        return MISSING_TRANSACTION

    old, new = result
    logger.info("%s %s: %s/%s %s -> %s (raw %s)", adapter.processor, callback.external_id,
                ref.owner_id, ref.transaction_id, old, new, raw_status)
    return APPLIED
