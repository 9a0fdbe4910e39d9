"""Tests for generation entitlements.

Test Coverage:
1. Unknown user sees the full free quota and no paid credits
2. consume_one spends free credits first, then paid
3. Exhausted user -> NoCreditsError, counters untouched
4. Refund removes the paid credit
5. Paid usage above granted credits is clamped (and audited on consume)
6. Available counts are never negative
"""

import pytest
from sqlalchemy import select

from smachno_api.billing.entitlements import EntitlementCalculator
from smachno_api.billing.errors import NoCreditsError
from smachno_api.billing.ledger import PaymentLedger
from smachno_api.db.models import BillingAuditLog, User

TELEGRAM_ID = 5151


@pytest.fixture
def calculator(db_session, billing_settings) -> EntitlementCalculator:
    return EntitlementCalculator(db_session, billing_settings)


@pytest.fixture
def ledger(db_session, billing_settings) -> PaymentLedger:
    return PaymentLedger(db_session, billing_settings)


def _set_counters(db_session, **values) -> None:
    db_session.execute(User.__table__.update().where(User.telegram_id == TELEGRAM_ID).values(**values))
    db_session.commit()


def test_unknown_user_snapshot(calculator, db_session):
    snapshot = calculator.snapshot(TELEGRAM_ID)

    assert snapshot.free_remaining == 2
    assert snapshot.paid_available == 0
    assert snapshot.total == 2
    # Reads never create users
    assert db_session.execute(select(User)).first() is None


def test_free_credits_consumed_first(calculator, ledger):
    ledger.mark_completed(ledger.create_intent(TELEGRAM_ID).reference)

    first = calculator.consume_one(TELEGRAM_ID)
    second = calculator.consume_one(TELEGRAM_ID)
    third = calculator.consume_one(TELEGRAM_ID)

    assert [first.source, second.source, third.source] == ["free", "free", "paid"]
    assert first.snapshot.total == 2
    assert third.snapshot.total == 0
    assert third.snapshot.paid_used == 1


def test_no_credits_raises(calculator, db_session):
    calculator.consume_one(TELEGRAM_ID)
    calculator.consume_one(TELEGRAM_ID)

    with pytest.raises(NoCreditsError) as exc_info:
        calculator.consume_one(TELEGRAM_ID)

    assert exc_info.value.telegram_id == TELEGRAM_ID
    db_session.expire_all()
    user = db_session.execute(select(User).where(User.telegram_id == TELEGRAM_ID)).scalar_one()
    assert user.free_generations_used == 2
    assert user.paid_generations_used == 0
    assert user.total_generations == 2


def test_each_payment_grants_configured_credits(calculator, ledger, billing_settings):
    billing_settings.paid_generations_per_payment = 3
    ledger.mark_completed(ledger.create_intent(TELEGRAM_ID, reference="creative_5151_1").reference)
    ledger.mark_completed(ledger.create_intent(TELEGRAM_ID, reference="creative_5151_2").reference)

    snapshot = calculator.snapshot(TELEGRAM_ID)

    assert snapshot.completed_payments == 2
    assert snapshot.paid_granted == 6
    assert snapshot.paid_available == 6


def test_refund_removes_paid_credit(calculator, ledger):
    intent = ledger.create_intent(TELEGRAM_ID)
    ledger.mark_completed(intent.reference)
    assert calculator.available_paid(TELEGRAM_ID) == 1

    ledger.mark_refunded(intent.reference)

    assert calculator.available_paid(TELEGRAM_ID) == 0


def test_pending_and_failed_payments_grant_nothing(calculator, ledger):
    ledger.create_intent(TELEGRAM_ID, reference="creative_5151_1")
    ledger.mark_failed(ledger.create_intent(TELEGRAM_ID, reference="creative_5151_2").reference)

    assert calculator.available_paid(TELEGRAM_ID) == 0


def test_paid_overuse_is_clamped(calculator, ledger, db_session, caplog):
    intent = ledger.create_intent(TELEGRAM_ID)
    ledger.mark_completed(intent.reference)
    _set_counters(db_session, free_generations_used=2, paid_generations_used=1)
    ledger.mark_refunded(intent.reference)

    with caplog.at_level("WARNING"):
        snapshot = calculator.snapshot(TELEGRAM_ID)

    assert snapshot.corrected is True
    assert snapshot.paid_available == 0
    assert snapshot.total == 0
    assert any(r.getMessage() == "entitlement.paid_usage_corrected" for r in caplog.records)


def test_consume_with_overuse_writes_audit(calculator, ledger, db_session):
    intent = ledger.create_intent(TELEGRAM_ID)
    ledger.mark_completed(intent.reference)
    _set_counters(db_session, free_generations_used=2, paid_generations_used=1)
    ledger.mark_refunded(intent.reference)

    with pytest.raises(NoCreditsError):
        calculator.consume_one(TELEGRAM_ID)

    events = db_session.execute(
        select(BillingAuditLog.event_type).where(BillingAuditLog.telegram_id == TELEGRAM_ID)
    ).scalars().all()
    assert "PAID_USAGE_CORRECTED" in events


@pytest.mark.parametrize(
    "free_used,paid_used,completed",
    [(0, 0, 0), (5, 0, 0), (2, 3, 1), (0, 7, 2), (9, 9, 0)],
)
def test_available_never_negative(calculator, ledger, db_session, free_used, paid_used, completed):
    for n in range(completed):
        ledger.mark_completed(
            ledger.create_intent(TELEGRAM_ID, reference=f"creative_{TELEGRAM_ID}_{n}").reference
        )
    calculator.users.upsert(TELEGRAM_ID)
    db_session.commit()
    _set_counters(db_session, free_generations_used=free_used, paid_generations_used=paid_used)

    snapshot = calculator.snapshot(TELEGRAM_ID)

    assert snapshot.free_remaining >= 0
    assert snapshot.paid_available >= 0
    assert snapshot.free_remaining == max(0, 2 - free_used)
    assert snapshot.paid_available == max(0, completed - paid_used)


def test_available_counts_agree_with_snapshot(calculator, ledger):
    ledger.mark_completed(ledger.create_intent(TELEGRAM_ID).reference)
    calculator.consume_one(TELEGRAM_ID)

    assert calculator.available_free(TELEGRAM_ID) == 1
    assert calculator.available_paid(TELEGRAM_ID) == 1
    assert calculator.total_available(TELEGRAM_ID) == 2
