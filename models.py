from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without an offset; they were written as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def next_timestamp(previous: Optional[datetime]) -> datetime:
    """Current UTC time, nudged forward so it is always after `previous`."""
    now = utcnow()
    previous = as_utc(previous)
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


def _timestamp_column() -> Column:
    return Column(DateTime(timezone=True), nullable=False)


class TransactionKind(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class Processor(str, Enum):
    MOLLIE = "mollie"
    PAWAPAY = "pawapay"


class Transaction(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_transaction_payment_id"),
        UniqueConstraint("payout_id", name="uq_transaction_payout_id"),
    )

    owner_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    kind: str = Field(default=TransactionKind.SEND.value)
    amount: Optional[str] = None
    currency: Optional[str] = None

    # Recipient, as entered and as normalized
    recipient_phone: Optional[str] = None
    recipient_msisdn: Optional[str] = None
    recipient_provider: Optional[str] = None
    recipient_country: Optional[str] = None

    # Inbound and outbound legs never share a field
    payment_status: str = Field(default="initiated")
    payout_status: Optional[str] = None

    payment_id: Optional[str] = None
    payout_id: Optional[str] = None

    raw_processor_state: dict = Field(default_factory=dict, sa_column=Column(JSON))

    # Bumped by every ledger write; writes are compare-and-set on it
    version: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column())

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "kind": self.kind,
            "amount": self.amount,
            "currency": self.currency,
            "recipient": {
                "phoneNumber": self.recipient_phone,
                "normalizedMsisdn": self.recipient_msisdn,
                "provider": self.recipient_provider,
                "countryCode": self.recipient_country,
            },
            "paymentStatus": self.payment_status,
            "payoutStatus": self.payout_status,
            "processorRefs": {"paymentId": self.payment_id, "payoutId": self.payout_id},
            "rawProcessorState": self.raw_processor_state or {},
            "createdAt": as_utc(self.created_at).isoformat(),
            "updatedAt": as_utc(self.updated_at).isoformat(),
        }


class CorrelationEntry(SQLModel, table=True):
    processor: str = Field(primary_key=True)
    external_id: str = Field(primary_key=True)
    owner_id: str
    transaction_id: str
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column())
