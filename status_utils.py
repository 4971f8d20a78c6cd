"""
Payment and payout status machines.

Both transition functions are pure, defined for every (state, signal) pair
and idempotent: apply(apply(s, x), x) == apply(s, x).
"""
from enum import Enum
from typing import Optional


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    OPEN = "open"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELED = "canceled"


class PayoutStatus(str, Enum):
    ACCEPTED = "accepted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


PAYMENT_TERMINAL = frozenset(
    {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.CANCELED}
)
PAYOUT_TERMINAL = frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED})

# Checkout processor statuses
_PAYMENT_SIGNALS = {
    "open": PaymentStatus.OPEN,
    "pending": PaymentStatus.OPEN,
    "paid": PaymentStatus.PAID,
    "authorized": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "expired": PaymentStatus.EXPIRED,
    "canceled": PaymentStatus.CANCELED,
    "cancelled": PaymentStatus.CANCELED,
}

# Payout processor statuses
_PAYOUT_SIGNALS = {
    "ACCEPTED": PayoutStatus.PROCESSING,
    "ENQUEUED": PayoutStatus.PROCESSING,
    "PENDING": PayoutStatus.PROCESSING,
    "PROCESSING": PayoutStatus.PROCESSING,
    "SUBMITTED": PayoutStatus.PROCESSING,
    "COMPLETED": PayoutStatus.COMPLETED,
    "SUCCESSFUL": PayoutStatus.COMPLETED,
    "SUCCESS": PayoutStatus.COMPLETED,
    "FAILED": PayoutStatus.FAILED,
    "REJECTED": PayoutStatus.FAILED,
    "CANCELLED": PayoutStatus.FAILED,
    "CANCELED": PayoutStatus.FAILED,
    "EXPIRED": PayoutStatus.FAILED,
}


def map_payment_status(raw) -> Optional[PaymentStatus]:
    """None when the checkout processor reports something we do not track."""
    return _PAYMENT_SIGNALS.get(str(raw or "").strip().lower())


def map_payout_status(raw) -> PayoutStatus:
    return _PAYOUT_SIGNALS.get(str(raw or "").strip().upper(), PayoutStatus.UNKNOWN)


def apply_payment(current, signal) -> PaymentStatus:
    """
    First terminal outcome wins; "initiated" never follows "open".
    """
    state = PaymentStatus(current) if current else PaymentStatus.INITIATED
    if signal is None:
        return state
    signal = PaymentStatus(signal)
    if state in PAYMENT_TERMINAL:
        return state
    if signal == PaymentStatus.INITIATED:
        return state
    return signal


def apply_payout(current, signal) -> PayoutStatus:
    """
    completed/failed are final. Otherwise the latest signal wins, except that
    "accepted" never rolls back progress already reported by a callback.
    """
    signal = PayoutStatus(signal)
    if not current:
        return signal
    state = PayoutStatus(current)
    if state in PAYOUT_TERMINAL:
        return state
    if signal == PayoutStatus.ACCEPTED and state not in (PayoutStatus.ACCEPTED, PayoutStatus.UNKNOWN):
        return state
    return signal


def is_terminal_payment(status) -> bool:
    return bool(status) and PaymentStatus(status) in PAYMENT_TERMINAL


def is_terminal_payout(status) -> bool:
    return bool(status) and PayoutStatus(status) in PAYOUT_TERMINAL
