"""Payment status model and transition table.

Legal moves:

    pending   -> completed | failed | refunded
    completed -> refunded
    failed    -> completed
    refunded: terminal

Same-status application is always accepted (idempotent redelivery).
"""

from enum import Enum
from typing import Optional

from smachno_api.billing.errors import InvalidTransitionError


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"


_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
    # A declined invoice may be paid on retry under the same reference
    PaymentStatus.FAILED: frozenset({PaymentStatus.COMPLETED}),
}

# Gateway transactionStatus -> ledger status
_GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "Approved": PaymentStatus.COMPLETED,
    "Refunded": PaymentStatus.REFUNDED,
    "Voided": PaymentStatus.REFUNDED,
    "Declined": PaymentStatus.FAILED,
    "Expired": PaymentStatus.FAILED,
}


def is_allowed(current: PaymentStatus, new: PaymentStatus) -> bool:
    """Return True if current -> new is legal (same status included)."""
    if current == new:
        return True
    return new in _TRANSITIONS[current]


def require_allowed(reference: str, current: PaymentStatus, new: PaymentStatus) -> None:
    """Raise InvalidTransitionError unless current -> new is legal."""
    if not is_allowed(current, new):
        raise InvalidTransitionError(reference, current.value, new.value)


def from_gateway(transaction_status: Optional[str]) -> PaymentStatus:
    """Map a gateway transactionStatus to a ledger status.

    Unknown values (InProcessing, WaitingAuthComplete, Pending, ...) map to
    pending.
    """
    if not transaction_status:
        return PaymentStatus.PENDING
    return _GATEWAY_STATUS_MAP.get(transaction_status, PaymentStatus.PENDING)
