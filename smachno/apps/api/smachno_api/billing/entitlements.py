"""Entitlement calculator: how many generations a user may still run.

    free_remaining = max(0, free_quota - free_generations_used)
    paid_granted   = completed_payments * paid_generations_per_payment
    paid_available = paid_granted - min(paid_generations_used, paid_granted)

Every call re-reads live counters; nothing is cached between requests.
"""

import logging
from typing import Literal, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from smachno_api.billing.errors import NoCreditsError
from smachno_api.billing.ledger import write_audit
from smachno_api.config.env import BillingSettings, get_billing_settings
from smachno_api.db.models import User
from smachno_api.db.repo_payments import PaymentRepository
from smachno_api.db.repo_users import UserRepository
from smachno_api.observability.metrics import (
    log_generation_consumed,
    log_paid_usage_corrected,
)

logger = logging.getLogger(__name__)


class EntitlementSnapshot(BaseModel):
    """Derived view of a user's credits. Never persisted."""

    telegram_id: int
    free_remaining: int
    paid_available: int
    free_used: int = 0
    paid_used: int = 0
    paid_granted: int = 0
    completed_payments: int = 0
    corrected: bool = False

    @property
    def total(self) -> int:
        return self.free_remaining + self.paid_available


class ConsumeResult(BaseModel):
    source: Literal["free", "paid"]
    snapshot: EntitlementSnapshot


class EntitlementCalculator:
    """Reads and consumes generation credits."""

    def __init__(self, db: Session, settings: Optional[BillingSettings] = None):
        self.db = db
        self.settings = settings or get_billing_settings()
        self.users = UserRepository(db)
        self.payments = PaymentRepository(db)

    def snapshot(self, telegram_id: int) -> EntitlementSnapshot:
        user = self.users.get_by_telegram_id(telegram_id)
        if user is None:
            return EntitlementSnapshot(
                telegram_id=telegram_id,
                free_remaining=self.settings.free_generations,
                paid_available=0,
            )
        return self._compute(user)

    def available_free(self, telegram_id: int) -> int:
        return self.snapshot(telegram_id).free_remaining

    def available_paid(self, telegram_id: int) -> int:
        return self.snapshot(telegram_id).paid_available

    def total_available(self, telegram_id: int) -> int:
        return self.snapshot(telegram_id).total

    def consume_one(self, telegram_id: int) -> ConsumeResult:
        """Spend one credit, free pool first.

        Each pool is charged with a guarded UPDATE (counter < limit), so two
        racing callers can never both take the last credit.

        Raises:
            NoCreditsError: Nothing left in either pool
        """
        try:
            user = self.users.upsert(telegram_id)

            if self.users.try_consume_free(user.id, self.settings.free_generations):
                source = "free"
            else:
                completed = self.payments.count_completed(user.id)
                granted = completed * self.settings.paid_generations_per_payment
                if self.users.try_consume_paid(user.id, granted):
                    source = "paid"
                else:
                    self.db.refresh(user)
                    if user.paid_generations_used > granted:
                        write_audit(
                            self.db,
                            "PAID_USAGE_CORRECTED",
                            telegram_id=telegram_id,
                            actor="SYSTEM",
                            details={
                                "paid_used": user.paid_generations_used,
                                "paid_granted": granted,
                            },
                        )
                    self.db.commit()
                    raise NoCreditsError(telegram_id)

            self.db.commit()
        except NoCreditsError:
            raise
        except Exception:
            self.db.rollback()
            raise

        snapshot = self.snapshot(telegram_id)
        log_generation_consumed(telegram_id, source, snapshot.total)
        return ConsumeResult(source=source, snapshot=snapshot)

    def _compute(self, user: User) -> EntitlementSnapshot:
        free_used = user.free_generations_used or 0
        paid_used = user.paid_generations_used or 0

        completed = self.payments.count_completed(user.id)
        granted = completed * self.settings.paid_generations_per_payment

        corrected = paid_used > granted
        if corrected:
            log_paid_usage_corrected(user.telegram_id, paid_used, granted)

        effective_paid_used = min(paid_used, granted)
        return EntitlementSnapshot(
            telegram_id=user.telegram_id,
            free_remaining=max(0, self.settings.free_generations - free_used),
            paid_available=max(0, granted - effective_paid_used),
            free_used=free_used,
            paid_used=paid_used,
            paid_granted=granted,
            completed_payments=completed,
            corrected=corrected,
        )
