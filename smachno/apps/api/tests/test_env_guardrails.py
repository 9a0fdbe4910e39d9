"""Tests for environment resolution and billing settings guardrails.

Test Coverage:
1. Environment name priority (SMACHNO_ENV > NODE_ENV > local)
2. DATABASE_URL production fail-fast, local SQLite fallback
3. BillingSettings loading, defaults and derived values
4. Key order for notification verification
5. Production without gateway keys fails fast
6. Malformed numeric variables fail fast
"""

import pytest
from pydantic import ValidationError

from smachno_api.config import env
from smachno_api.config.env import (
    BillingSettings,
    get_billing_settings,
    get_database_url,
    get_smachno_env,
    is_production_env,
    load_billing_settings,
    reset_billing_settings,
)

_BILLING_VARS = (
    "WAYFORPAY_MERCHANT_ACCOUNT",
    "WAYFORPAY_SECRET_KEY",
    "WAYFORPAY_MERCHANT_PASSWORD",
    "MERCHANT_DOMAIN_NAME",
    "WAYFORPAY_USE_WIDGET",
    "APP_URL",
    "PAYMENT_AMOUNT",
    "PAYMENT_CURRENCY",
    "FREE_GENERATIONS",
    "PAID_GENERATIONS_PER_PAYMENT",
    "GENERATION_LOCK_MAX_AGE_SECONDS",
    "GENERATION_GUARD_BACKEND",
    "SMACHNO_ENV",
    "NODE_ENV",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _BILLING_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ============================================================================
# Environment name / database URL
# ============================================================================


def test_env_defaults_to_local(clean_env):
    assert get_smachno_env() == "local"
    assert not is_production_env()


def test_smachno_env_wins_over_node_env(clean_env):
    clean_env.setenv("NODE_ENV", "development")
    clean_env.setenv("SMACHNO_ENV", "PROD")

    assert get_smachno_env() == "prod"
    assert is_production_env()


def test_node_env_fallback(clean_env):
    clean_env.setenv("NODE_ENV", "production")

    assert is_production_env()


def test_database_url_required_in_production(clean_env):
    clean_env.setenv("SMACHNO_ENV", "production")
    clean_env.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        get_database_url()


def test_database_url_local_fallback(clean_env):
    clean_env.delenv("DATABASE_URL", raising=False)

    assert get_database_url() == "sqlite:///./smachno.db"


def test_database_url_from_env(clean_env):
    clean_env.setenv("DATABASE_URL", "postgresql://u:p@db/smachno")

    assert get_database_url() == "postgresql://u:p@db/smachno"


# ============================================================================
# Billing settings
# ============================================================================


def test_load_billing_settings_from_env(clean_env):
    clean_env.setenv("WAYFORPAY_MERCHANT_ACCOUNT", "t_me_bot")
    clean_env.setenv("WAYFORPAY_SECRET_KEY", "secret")
    clean_env.setenv("WAYFORPAY_MERCHANT_PASSWORD", "password")
    clean_env.setenv("APP_URL", "https://smachno.example.com/")
    clean_env.setenv("PAYMENT_AMOUNT", "45")
    clean_env.setenv("FREE_GENERATIONS", "3")
    clean_env.setenv("WAYFORPAY_USE_WIDGET", "yes")
    clean_env.setenv("GENERATION_GUARD_BACKEND", "Redis")

    settings = load_billing_settings()

    assert settings.merchant_account == "t_me_bot"
    assert settings.payment_amount_minor == 4500
    assert settings.free_generations == 3
    assert settings.use_widget is True
    assert settings.generation_guard_backend == "redis"
    assert settings.webhook_url == "https://smachno.example.com/payment/webhook"
    assert settings.return_url == "https://smachno.example.com/payment/callback"


def test_billing_defaults(clean_env):
    settings = load_billing_settings()

    assert settings.payment_amount == 30
    assert settings.currency == "UAH"
    assert settings.free_generations == 2
    assert settings.paid_generations_per_payment == 1
    assert settings.generation_lock_max_age_seconds == 300
    assert settings.signature_keys == []


def test_signature_keys_order_and_empty_skipped():
    settings = BillingSettings(merchant_password="password", secret_key="secret")
    assert settings.signature_keys == ["password", "secret"]

    assert BillingSettings(merchant_password="", secret_key="secret").signature_keys == ["secret"]


def test_production_without_keys_fails_fast(clean_env):
    clean_env.setenv("SMACHNO_ENV", "prod")

    with pytest.raises(ValueError, match="required in production"):
        load_billing_settings()


def test_local_without_keys_warns(clean_env, caplog):
    with caplog.at_level("WARNING"):
        load_billing_settings()

    assert any(
        getattr(r, "event", None) == "config.billing.no_signature_keys" for r in caplog.records
    )


def test_malformed_integer_fails_fast(clean_env):
    clean_env.setenv("PAYMENT_AMOUNT", "thirty")

    with pytest.raises(ValueError, match="PAYMENT_AMOUNT must be an integer"):
        load_billing_settings()


def test_non_positive_amount_rejected(clean_env):
    with pytest.raises(ValidationError):
        BillingSettings(payment_amount=0)


def test_billing_settings_singleton(clean_env):
    clean_env.setattr(env, "_billing_settings", None)

    first = get_billing_settings()
    assert get_billing_settings() is first

    reset_billing_settings()
    assert get_billing_settings() is not first
