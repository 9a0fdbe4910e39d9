"""Environment variable resolution utilities.

Canonical env names + fail-fast validation for the billing ledger.
"""

import logging
import os
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./smachno.db"


def get_smachno_env() -> str:
    """Get deployment environment name.

    Priority:
    1. SMACHNO_ENV (canonical)
    2. NODE_ENV (legacy bot deployments)
    3. Default: "local"

    Returns:
        Environment name (lowercase)
    """
    return (
        os.getenv("SMACHNO_ENV")
        or os.getenv("NODE_ENV")
        or "local"
    ).lower()


def is_production_env() -> bool:
    """Return True when running in prod/production."""
    return get_smachno_env() in {"prod", "production"}


def get_database_url() -> str:
    """Get database URL from environment.

    Production fail-fast: DATABASE_URL is mandatory in prod/production.
    Development falls back to a local SQLite file.

    Raises:
        RuntimeError: If DATABASE_URL is missing in production
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if is_production_env():
        raise RuntimeError(
            "DATABASE_URL environment variable is required in production (SMACHNO_ENV=prod/production). "
            "Check deployment configuration and secrets injection."
        )
    return DEFAULT_DATABASE_URL


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


class BillingSettings(BaseModel):
    """Resolved billing / entitlement configuration."""

    merchant_account: Optional[str] = None
    secret_key: Optional[str] = None
    merchant_password: Optional[str] = None
    merchant_domain_name: str = "your-domain.com"
    product_name: str = "Generation of creative for Instagram"
    use_widget: bool = False
    app_url: str = "https://your-app.com"

    # Flat per-generation price, major currency units
    payment_amount: int = Field(default=30, gt=0)
    currency: str = "UAH"

    free_generations: int = Field(default=2, ge=0)
    paid_generations_per_payment: int = Field(default=1, ge=1)

    generation_lock_max_age_seconds: int = Field(default=300, gt=0)
    generation_guard_backend: str = "memory"

    @property
    def payment_amount_minor(self) -> int:
        """Price per generation in minor units (kopecks)."""
        return self.payment_amount * 100

    @property
    def signature_keys(self) -> list[str]:
        """Candidate keys for notification verification, in trial order.

        The gateway dashboard issues a merchant password and a secret key;
        either may be the one signing notifications.
        """
        return [key for key in (self.merchant_password, self.secret_key) if key]

    @property
    def webhook_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/payment/webhook"

    @property
    def return_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/payment/callback"


def load_billing_settings() -> BillingSettings:
    """Build BillingSettings from the environment.

    Raises:
        ValueError: If a numeric variable is malformed, or if production runs
            without any gateway key (notifications could never be verified)
    """
    settings = BillingSettings(
        merchant_account=os.getenv("WAYFORPAY_MERCHANT_ACCOUNT") or None,
        secret_key=os.getenv("WAYFORPAY_SECRET_KEY") or None,
        merchant_password=os.getenv("WAYFORPAY_MERCHANT_PASSWORD") or None,
        merchant_domain_name=os.getenv("MERCHANT_DOMAIN_NAME", "your-domain.com"),
        product_name=os.getenv("WAYFORPAY_PRODUCT_NAME", "Generation of creative for Instagram"),
        use_widget=_get_bool("WAYFORPAY_USE_WIDGET"),
        app_url=os.getenv("APP_URL", "https://your-app.com"),
        payment_amount=_get_int("PAYMENT_AMOUNT", 30),
        currency=os.getenv("PAYMENT_CURRENCY", "UAH"),
        free_generations=_get_int("FREE_GENERATIONS", 2),
        paid_generations_per_payment=_get_int("PAID_GENERATIONS_PER_PAYMENT", 1),
        generation_lock_max_age_seconds=_get_int("GENERATION_LOCK_MAX_AGE_SECONDS", 300),
        generation_guard_backend=os.getenv("GENERATION_GUARD_BACKEND", "memory").lower(),
    )

    if not settings.signature_keys:
        if is_production_env():
            raise ValueError(
                "WAYFORPAY_SECRET_KEY or WAYFORPAY_MERCHANT_PASSWORD is required in production. "
                "Gateway notifications cannot be verified without a key."
            )
        logger.warning(
            "No WayForPay keys configured; all payment notifications will be rejected",
            extra={"event": "config.billing.no_signature_keys"},
        )

    if "t_me_" in settings.merchant_domain_name:
        # Merchant account pasted into the domain field breaks invoice signatures
        logger.warning(
            "MERCHANT_DOMAIN_NAME looks like a merchant account, expected a domain",
            extra={"event": "config.billing.domain_suspicious"},
        )

    return settings


# Global settings instance (singleton)
_billing_settings: Optional[BillingSettings] = None


def get_billing_settings() -> BillingSettings:
    """Get global BillingSettings instance (singleton)."""
    global _billing_settings
    if _billing_settings is None:
        _billing_settings = load_billing_settings()
    return _billing_settings


def reset_billing_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _billing_settings
    _billing_settings = None
