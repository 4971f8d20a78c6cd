import logging
from typing import Callable, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from correlation_utils import TransactionRef
from exceptions import LedgerError
from models import Transaction, TransactionKind, next_timestamp
from status_utils import PaymentStatus, PayoutStatus, apply_payment, apply_payout

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 10


def _merged_state(txn: Transaction, processor: str, updates: dict) -> dict:
    state = dict(txn.raw_processor_state or {})
    state[processor] = {**state.get(processor, {}), **updates}
    return state


def _locked(session: Session, ref: TransactionRef) -> Optional[Transaction]:
    statement = (
        select(Transaction)
        .where(Transaction.owner_id == ref.owner_id, Transaction.id == ref.transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return session.exec(statement).first()


def _write(session: Session, ref: TransactionRef, compute: Callable):
    """
    Read-modify-write on one transaction row.

    `compute(txn)` returns (changes, result). The changes are written only if
    the row's version is still the one that was read; otherwise the row is
    read again and `compute` runs on the fresh copy. Databases without row
    locks (SQLite) still serialize concurrent writers this way.

    Returns (found, result). A missing row gives (False, None).
    """
    for attempt in range(WRITE_ATTEMPTS):
        txn = _locked(session, ref)
        if txn is None:
            session.rollback()
            return False, None
        try:
            changes, result = compute(txn)
        except LedgerError:
            session.rollback()
            raise
        if not changes:
            session.rollback()
            return True, result

        statement = (
            update(Transaction)
            .where(
                Transaction.owner_id == ref.owner_id,
                Transaction.id == ref.transaction_id,
                Transaction.version == txn.version,
            )
            .values(**changes, version=txn.version + 1, updated_at=next_timestamp(txn.updated_at))
        )
        outcome = session.exec(statement)
        if outcome.rowcount == 1:
            session.commit()
            return True, result
        session.rollback()
        logger.info("Transaction %s/%s changed during write, retrying (%d)", *ref, attempt + 1)

    raise LedgerError(f"Could not update transaction {ref.owner_id}/{ref.transaction_id}, too many concurrent writes")


def _require(found: bool, ref: TransactionRef) -> None:
    if not found:
        raise LedgerError(f"Unknown transaction {ref.owner_id}/{ref.transaction_id}")


def get_transaction(session: Session, ref: TransactionRef) -> Optional[Transaction]:
    return session.get(Transaction, (ref.owner_id, ref.transaction_id), populate_existing=True)


def ensure_transaction(session: Session, ref: TransactionRef, **fields) -> Transaction:
    """
    Returns the transaction, creating it on first sight. Fields that are
    already set are left alone.
    """
    txn = get_transaction(session, ref)
    if txn is None:
        txn = Transaction(owner_id=ref.owner_id, id=ref.transaction_id)
        txn.kind = fields.pop("kind", None) or TransactionKind.SEND.value
        for name, value in fields.items():
            setattr(txn, name, value)
        session.add(txn)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if get_transaction(session, ref) is None:
                raise
        else:
            logger.info("Created transaction %s/%s", *ref)
            return txn

    def fill(current: Transaction):
        missing = {
            name: value for name, value in fields.items()
            if value is not None and getattr(current, name, None) is None
        }
        return missing, None

    _require(_write(session, ref, fill)[0], ref)
    return get_transaction(session, ref)


def _check_ref(txn: Transaction, field: str, external_id: str) -> None:
    current = getattr(txn, field)
    if current and current != external_id:
        raise LedgerError(f"Transaction {txn.owner_id}/{txn.id} already has {field}={current}")


def check_payment_unbound(session: Session, ref: TransactionRef) -> None:
    """Refuses a second checkout for a transaction that already has one."""
    txn = get_transaction(session, ref)
    if txn is not None and txn.payment_id:
        raise LedgerError(f"Transaction {ref.owner_id}/{ref.transaction_id} already has payment_id={txn.payment_id}")


def reserve_payout(session: Session, ref: TransactionRef, payout_id: str) -> None:
    """
    Binds a payout id before the payout is sent. Only one payout can hold a
    transaction; a second reservation raises LedgerError.
    """
    def claim(txn: Transaction):
        _check_ref(txn, "payout_id", payout_id)
        return {"payout_id": payout_id}, None

    _require(_write(session, ref, claim)[0], ref)
    logger.info("Reserved payout %s for %s/%s", payout_id, *ref)


def record_payment_initiation(
    session: Session, ref: TransactionRef, accepted: bool, payment_id: Optional[str], audit: dict
) -> Transaction:
    """
    An accepted checkout moves the payment to open. A refused or unanswered one
    only leaves its diagnostics, so the request can be retried.
    """
    def initiate(txn: Transaction):
        changes = {"raw_processor_state": _merged_state(txn, "mollie", audit)}
        if accepted:
            if payment_id:
                _check_ref(txn, "payment_id", payment_id)
                changes["payment_id"] = payment_id
            changes["payment_status"] = apply_payment(txn.payment_status, PaymentStatus.OPEN).value
        return changes, None

    _require(_write(session, ref, initiate)[0], ref)
    return get_transaction(session, ref)


def record_payout_initiation(
    session: Session,
    ref: TransactionRef,
    accepted: bool,
    payout_id: Optional[str],
    audit: dict,
    release: bool = False,
) -> Transaction:
    """
    An accepted payout moves to accepted. Otherwise only the diagnostics are
    stored; with `release` the reserved payout id is dropped as well, which
    is right only when the processor definitely refused the payout.
    """
    def initiate(txn: Transaction):
        changes = {"raw_processor_state": _merged_state(txn, "pawapay", audit)}
        if accepted:
            if payout_id:
                _check_ref(txn, "payout_id", payout_id)
                changes["payout_id"] = payout_id
            changes["payout_status"] = apply_payout(txn.payout_status, PayoutStatus.ACCEPTED).value
        elif release and payout_id and txn.payout_id == payout_id:
            changes["payout_id"] = None
        return changes, None

    _require(_write(session, ref, initiate)[0], ref)
    return get_transaction(session, ref)


def record_payout_audit(session: Session, ref: TransactionRef, audit: dict) -> Transaction:
    """Stores payout diagnostics without touching the payout status."""
    def merge(txn: Transaction):
        return {"raw_processor_state": _merged_state(txn, "pawapay", audit)}, None

    _require(_write(session, ref, merge)[0], ref)
    return get_transaction(session, ref)


def apply_payment_signal(
    session: Session, ref: TransactionRef, signal: Optional[PaymentStatus], audit: dict
) -> Optional[Tuple[str, str]]:
    """
    Applies a checkout callback. Returns (old, new) or None when the
    transaction does not exist.
    """
    def transition(txn: Transaction):
        old = txn.payment_status
        new = apply_payment(old, signal).value
        changes = {"payment_status": new, "raw_processor_state": _merged_state(txn, "mollie", audit)}
        return changes, (old, new)

    found, result = _write(session, ref, transition)
    if not found:
        return None
    old, new = result
    if signal is not None and new != signal.value:
        logger.info("Payment %s/%s stays %s, ignoring %s", ref.owner_id, ref.transaction_id, old, signal.value)
    return result


def apply_payout_signal(
    session: Session, ref: TransactionRef, signal: PayoutStatus, audit: dict
) -> Optional[Tuple[Optional[str], str]]:
    def transition(txn: Transaction):
        old = txn.payout_status
        new = apply_payout(old, signal).value
        changes = {"payout_status": new, "raw_processor_state": _merged_state(txn, "pawapay", audit)}
        return changes, (old, new)

    found, result = _write(session, ref, transition)
    if not found:
        return None
    old, new = result
    if new != signal.value:
        logger.info("Payout %s/%s stays %s, ignoring %s", ref.owner_id, ref.transaction_id, old, signal.value)
    return result
