"""Billing exception taxonomy."""

from typing import Optional


class LedgerError(Exception):
    """Base exception for payment ledger errors."""

    pass


class UnresolvableUserError(LedgerError):
    """A notification for an unknown reference carries no resolvable user.

    Raised instead of silently dropping the payment; the webhook answers 500
    so the gateway redelivers while an operator investigates.
    """

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Cannot resolve user for payment reference {reference!r}")


class NoCreditsError(LedgerError):
    """User has neither free nor paid generations available."""

    def __init__(self, telegram_id: int):
        self.telegram_id = telegram_id
        super().__init__(f"No generation credits available for user {telegram_id}")


class InvalidTransitionError(LedgerError):
    """Requested status change is not allowed by the transition table."""

    def __init__(self, reference: str, current: str, requested: str):
        self.reference = reference
        self.current = current
        self.requested = requested
        super().__init__(
            f"Payment {reference}: transition {current} -> {requested} not allowed"
        )


class PaymentNotFoundError(LedgerError):
    """No payment intent with the given reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Payment {reference!r} not found")


class GenerationInProgressError(Exception):
    """Another generation for the same user is already running."""

    def __init__(self, user_key: str):
        self.user_key = user_key
        super().__init__(f"Generation already in progress for user {user_key}")


class CheckoutUnavailableError(Exception):
    """The gateway could not produce a checkout handle."""

    def __init__(self, message: str, reference: Optional[str] = None):
        self.reference = reference
        super().__init__(message)
