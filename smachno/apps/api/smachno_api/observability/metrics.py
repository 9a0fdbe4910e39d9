"""Observability metrics helpers for the entitlement ledger.

Metrics are structured log lines (event=<name>) aggregated downstream.

Usage:
    from smachno_api.observability.metrics import log_payment_attempt, log_payment_success

    log_payment_attempt(telegram_id=42, reference="creative_42_1700000000000", amount_minor=3000)
    log_payment_success(telegram_id=42, reference="creative_42_1700000000000", amount_minor=3000)

Security:
- Signatures, card numbers and gateway keys are NEVER logged
- Telegram ids and order references are internal identifiers, logged in full
"""

import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def fingerprint(value: str) -> str:
    """Short SHA256 fingerprint for correlating a secret without logging it.

    Args:
        value: Secret value (signature, key)

    Returns:
        SHA256 hash (first 16 chars)
    """
    if not value:
        return "unknown"

    return hashlib.sha256(value.encode()).hexdigest()[:16]


# ============================================================================
# Payment Metrics
# ============================================================================


def log_payment_attempt(
    telegram_id: int,
    reference: str,
    amount_minor: int,
    checkout_mode: Optional[str] = None,
) -> None:
    """Log checkout creation (denominator of the payment success rate).

    Args:
        telegram_id: Paying user
        reference: Order reference
        amount_minor: Amount in minor units
        checkout_mode: "invoice" or "widget" (optional)
    """
    logger.info(
        "payment.attempt",
        extra={
            "event": "payment.attempt",
            "telegram_id": telegram_id,
            "order_reference": reference,
            "amount_minor": amount_minor,
            "checkout_mode": checkout_mode,
        },
    )


def log_payment_success(
    telegram_id: int,
    reference: str,
    amount_minor: int,
    self_healed: bool = False,
) -> None:
    """Log a payment entering completed (credit granted)."""
    logger.info(
        "payment.success",
        extra={
            "event": "payment.success",
            "telegram_id": telegram_id,
            "order_reference": reference,
            "amount_minor": amount_minor,
            "self_healed": self_healed,
        },
    )


def log_payment_refund(
    telegram_id: int,
    reference: str,
    amount_minor: int,
    counter_effect: bool,
) -> None:
    """Log a refund.

    Args:
        telegram_id: Refunded user
        reference: Order reference
        amount_minor: Refunded amount in minor units
        counter_effect: False when the refund arrived before completion
    """
    logger.info(
        "payment.refund",
        extra={
            "event": "payment.refund",
            "telegram_id": telegram_id,
            "order_reference": reference,
            "amount_minor": amount_minor,
            "counter_effect": counter_effect,
        },
    )


def log_payment_failure(
    telegram_id: int,
    reference: str,
    reason_code: Optional[str] = None,
) -> None:
    logger.info(
        "payment.failure",
        extra={
            "event": "payment.failure",
            "telegram_id": telegram_id,
            "order_reference": reference,
            "reason_code": reason_code,
        },
    )


def log_transition_rejected(
    reference: str,
    current_status: str,
    requested_status: str,
) -> None:
    """Log an out-of-order or illegal status transition.

    completed/refunded -> failed is expected noise from redeliveries; a
    completion arriving after a refund (refunded -> completed) is alert-worthy.
    """
    level = logging.ERROR if requested_status == "completed" else logging.WARNING
    logger.log(
        level,
        "payment.transition_rejected",
        extra={
            "event": "payment.transition_rejected",
            "order_reference": reference,
            "current_status": current_status,
            "requested_status": requested_status,
        },
    )


# ============================================================================
# Security Metrics
# ============================================================================


def log_signature_rejected(
    reference: Optional[str],
    merchant_account: Optional[str],
    signature: Optional[str],
    keys_tried: int,
) -> None:
    """Log a notification rejected for a bad signature.

    Args:
        reference: Order reference from the payload (unverified)
        merchant_account: Merchant account from the payload (unverified)
        signature: Received signature (hashed, never logged raw)
        keys_tried: Number of candidate keys compared
    """
    logger.warning(
        "security.signature_rejected",
        extra={
            "event": "security.signature_rejected",
            "order_reference": reference,
            "merchant_account": merchant_account,
            "signature_hash": fingerprint(signature or ""),
            "keys_tried": keys_tried,
        },
    )


# ============================================================================
# Entitlement Metrics
# ============================================================================


def log_paid_usage_corrected(
    telegram_id: int,
    paid_used: int,
    paid_granted: int,
) -> None:
    """Log paid usage exceeding granted credits (clamped to zero available).

    This is the alerting hook for counter drift; it should never fire in a
    healthy deployment.
    """
    logger.warning(
        "entitlement.paid_usage_corrected",
        extra={
            "event": "entitlement.paid_usage_corrected",
            "telegram_id": telegram_id,
            "paid_used": paid_used,
            "paid_granted": paid_granted,
            "overage": paid_used - paid_granted,
        },
    )


def log_generation_consumed(telegram_id: int, source: str, remaining: int) -> None:
    logger.info(
        "entitlement.consumed",
        extra={
            "event": "entitlement.consumed",
            "telegram_id": telegram_id,
            "source": source,
            "remaining": remaining,
        },
    )


def log_stale_lock_recovered(user_key: str, age_seconds: float, backend: str) -> None:
    """Log a generation lock force-released after exceeding its max age."""
    logger.warning(
        "guard.stale_lock_recovered",
        extra={
            "event": "guard.stale_lock_recovered",
            "user_key": user_key,
            "age_seconds": round(age_seconds, 3),
            "backend": backend,
        },
    )
