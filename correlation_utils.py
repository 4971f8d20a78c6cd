import logging
from typing import NamedTuple, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from exceptions import CorrelationConflictError
from models import CorrelationEntry

logger = logging.getLogger(__name__)


class TransactionRef(NamedTuple):
    owner_id: str
    transaction_id: str


def record(session: Session, processor: str, external_id: str, ref: TransactionRef) -> CorrelationEntry:
    """
    Binds an external id to a transaction. Write-once: writing the same ref
    again is a no-op, a different ref raises CorrelationConflictError.
    """
    key = (str(processor), str(external_id))
    existing = session.get(CorrelationEntry, key)
    if existing is None:
        entry = CorrelationEntry(
            processor=key[0],
            external_id=key[1],
            owner_id=ref.owner_id,
            transaction_id=ref.transaction_id,
        )
        session.add(entry)
        try:
            session.commit()
            logger.info("Correlated %s %s -> %s/%s", processor, external_id, *ref)
            return entry
        except IntegrityError:
            # Lost a race with a concurrent record() for the same id
            session.rollback()
            existing = session.get(CorrelationEntry, key)
            if existing is None:
                raise

    if TransactionRef(existing.owner_id, existing.transaction_id) != ref:
        raise CorrelationConflictError(
            f"{processor} id {external_id} is already bound to "
            f"{existing.owner_id}/{existing.transaction_id}"
        )
    return existing


def resolve(session: Session, processor: str, external_id: str) -> Optional[TransactionRef]:
    entry = session.get(CorrelationEntry, (str(processor), str(external_id)))
    if entry is None:
        return None
    return TransactionRef(entry.owner_id, entry.transaction_id)
