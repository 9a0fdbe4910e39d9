"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

# The module-level engine in smachno_api.db.session must never touch a file DB in tests
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SMACHNO_JSON_LOGS", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from smachno_api.billing import generation_guard, wayforpay
from smachno_api.billing.generation_guard import InMemoryGenerationGuard
from smachno_api.config import env
from smachno_api.config.env import BillingSettings
from smachno_api.db.models import Base
from smachno_api.db.session import get_db
from smachno_api.main import app

TEST_DATABASE_URL = "sqlite://"

MERCHANT_ACCOUNT = "test_merch_n1"
MERCHANT_PASSWORD = "merchant-password-32-chars-xxxxx"
SECRET_KEY = "flk3409refn54t54t*FNJRET"


@pytest.fixture(scope="function")
def db_session() -> Session:
    """
    Create a fresh in-memory SQLite database session for each test.
    """
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def billing_settings(monkeypatch) -> BillingSettings:
    """Install deterministic billing settings as the global singleton."""
    settings = BillingSettings(
        merchant_account=MERCHANT_ACCOUNT,
        secret_key=SECRET_KEY,
        merchant_password=MERCHANT_PASSWORD,
        merchant_domain_name="smachno.example.com",
        app_url="https://smachno.example.com",
        payment_amount=30,
        currency="UAH",
        free_generations=2,
        paid_generations_per_payment=1,
        generation_lock_max_age_seconds=300,
    )
    monkeypatch.setattr(env, "_billing_settings", settings)
    monkeypatch.setattr(wayforpay, "_wayforpay_client", None)
    return settings


@pytest.fixture
def guard(monkeypatch) -> InMemoryGenerationGuard:
    """Fresh in-memory guard installed as the global singleton."""
    fresh = InMemoryGenerationGuard(max_age_seconds=300)
    monkeypatch.setattr(generation_guard, "_generation_guard", fresh)
    return fresh


@pytest.fixture
def test_client(db_session: Session, billing_settings: BillingSettings):
    """TestClient with db_session dependency override."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close - db_session fixture will handle it

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
