"""Payment ledger: exactly-once reconciliation of gateway notifications.

apply_status is the single entry point for status changes:

  1. Lock the intent row (SELECT ... FOR UPDATE where the backend supports it)
  2. Unknown reference -> self-heal: attribute the payment via the reference,
     upsert the user, insert the intent directly in the notified status
  3. Known reference -> validate against the transition table, then DB-CAS
     (UPDATE ... WHERE reference=:r AND status=:prev). Only the CAS winner
     applies counter side effects, so redelivered or concurrent notifications
     credit at most once.

Counter side effects:
  * -> completed           total_paid += amount
  completed -> refunded    total_paid = max(0, total_paid - amount)
  anything else            none
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from smachno_api.billing import order_reference
from smachno_api.billing.errors import (
    InvalidTransitionError,
    PaymentNotFoundError,
    UnresolvableUserError,
)
from smachno_api.billing.status import PaymentStatus, require_allowed
from smachno_api.config.env import BillingSettings, get_billing_settings
from smachno_api.context import reference_var
from smachno_api.db.models import BillingAuditLog, PaymentIntent
from smachno_api.db.repo_payments import PaymentRepository
from smachno_api.db.repo_users import UserRepository
from smachno_api.observability.metrics import (
    log_payment_failure,
    log_payment_refund,
    log_payment_success,
    log_transition_rejected,
)

logger = logging.getLogger(__name__)

# Statuses move forward only, so a CAS can lose at most this many times
_MAX_CAS_ATTEMPTS = 4


def write_audit(
    db: Session,
    event_type: str,
    *,
    telegram_id: Optional[int] = None,
    reference: Optional[str] = None,
    actor: str = "SYSTEM",
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Append an audit row to the current transaction (caller commits)."""
    db.add(
        BillingAuditLog(
            event_type=event_type,
            telegram_id=telegram_id,
            reference=reference,
            actor=actor,
            details=details or {},
        )
    )


class LedgerStats(BaseModel):
    """Service-wide aggregates for the admin /stats view. Read-only."""

    total_users: int
    total_generations: int
    completed_payments: int
    # Sum of completed payment amounts, minor units
    total_revenue: int
    currency: str


class PaymentLedger:
    """Records payment intents and applies status notifications.

    Every public mutating method commits on success and rolls back on error.
    """

    def __init__(self, db: Session, settings: Optional[BillingSettings] = None):
        self.db = db
        self.settings = settings or get_billing_settings()
        self.users = UserRepository(db)
        self.payments = PaymentRepository(db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_intent(self, reference: str) -> Optional[PaymentIntent]:
        return self.payments.get_by_reference(reference)

    def count_completed(self, user_pk: int) -> int:
        return self.payments.count_completed(user_pk)

    def stats(self) -> LedgerStats:
        """Aggregate users, generations and completed revenue.

        Refunded payments leave the completed set, so revenue is net of refunds.
        """
        total_users, total_generations = self.users.totals()
        completed_payments, total_revenue = self.payments.completed_totals()
        return LedgerStats(
            total_users=total_users,
            total_generations=total_generations,
            completed_payments=completed_payments,
            total_revenue=total_revenue,
            currency=self.settings.currency,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_intent(
        self,
        user_id: int,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        reference: Optional[str] = None,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
    ) -> PaymentIntent:
        """Insert a new pending intent for telegram user user_id.

        Args:
            user_id: Telegram user id (user is upserted)
            amount: Minor units; defaults to the configured price
            currency: Defaults to the configured currency
            reference: Defaults to a freshly encoded reference

        Raises:
            IntegrityError: If reference already exists
        """
        amount = self.settings.payment_amount_minor if amount is None else amount
        currency = currency or self.settings.currency
        reference = reference or order_reference.encode(user_id)

        try:
            user = self.users.upsert(user_id, username=username, first_name=first_name)
            intent = self.payments.create(
                reference=reference,
                user_pk=user.id,
                amount=amount,
                currency=currency,
                status=PaymentStatus.PENDING.value,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "PAYMENT_INTENT_CREATED",
            extra={
                "event": "payment.intent_created",
                "telegram_id": user_id,
                "order_reference": reference,
                "amount_minor": amount,
                "currency": currency,
            },
        )
        return intent

    def apply_status(
        self,
        reference: str,
        new_status: PaymentStatus | str,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        user_id: Optional[int] = None,
        *,
        gateway_status: Optional[str] = None,
        reason_code: Optional[str] = None,
        actor: str = "WEBHOOK",
    ) -> PaymentIntent:
        """Apply a status notification to reference.

        Args:
            reference: Order reference
            new_status: Target ledger status
            amount: Notified amount in minor units (used only for self-heal)
            currency: Notified currency (used only for self-heal)
            user_id: Telegram id override for self-heal
            gateway_status: Raw gateway transactionStatus (audit only)
            reason_code: Raw gateway reasonCode (audit only)
            actor: Audit actor label

        Returns:
            The intent after the call. For rejected transitions this is the
            unchanged intent.

        Raises:
            UnresolvableUserError: Reference unknown and no user derivable
        """
        new_status = PaymentStatus(new_status)
        token = reference_var.set(reference)
        try:
            try:
                intent = self._apply(
                    reference,
                    new_status,
                    amount=amount,
                    currency=currency,
                    user_id=user_id,
                    gateway_status=gateway_status,
                    reason_code=reason_code,
                    actor=actor,
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            self.db.refresh(intent)
            return intent
        finally:
            reference_var.reset(token)

    def mark_completed(self, reference: str, **kwargs: Any) -> PaymentIntent:
        return self.apply_status(reference, PaymentStatus.COMPLETED, **kwargs)

    def mark_refunded(self, reference: str, **kwargs: Any) -> PaymentIntent:
        return self.apply_status(reference, PaymentStatus.REFUNDED, **kwargs)

    def mark_failed(self, reference: str, **kwargs: Any) -> PaymentIntent:
        return self.apply_status(reference, PaymentStatus.FAILED, **kwargs)

    # ------------------------------------------------------------------
    # Internals (run inside the caller's transaction)
    # ------------------------------------------------------------------

    def _apply(
        self,
        reference: str,
        new_status: PaymentStatus,
        *,
        amount: Optional[int],
        currency: Optional[str],
        user_id: Optional[int],
        gateway_status: Optional[str],
        reason_code: Optional[str],
        actor: str,
    ) -> PaymentIntent:
        intent = self.payments.get_by_reference(reference, for_update=True)
        if intent is None:
            healed = self._self_heal(
                reference,
                new_status,
                amount=amount,
                currency=currency,
                user_id=user_id,
                gateway_status=gateway_status,
                reason_code=reason_code,
                actor=actor,
            )
            if healed is not None:
                return healed
            # Lost the insert race; the winner's row is now visible
            intent = self.payments.get_by_reference(reference, for_update=True)
            if intent is None:
                raise PaymentNotFoundError(reference)

        if amount is not None and amount != intent.amount:
            logger.warning(
                "PAYMENT_AMOUNT_MISMATCH",
                extra={
                    "event": "payment.amount_mismatch",
                    "order_reference": reference,
                    "recorded_amount": intent.amount,
                    "notified_amount": amount,
                },
            )

        return self._transition(
            intent,
            new_status,
            gateway_status=gateway_status,
            reason_code=reason_code,
            actor=actor,
        )

    def _self_heal(
        self,
        reference: str,
        new_status: PaymentStatus,
        *,
        amount: Optional[int],
        currency: Optional[str],
        user_id: Optional[int],
        gateway_status: Optional[str],
        reason_code: Optional[str],
        actor: str,
    ) -> Optional[PaymentIntent]:
        """Record a payment the ledger never saw. None if another handler won."""
        telegram_id = user_id if user_id is not None else order_reference.decode(reference)
        if telegram_id is None:
            logger.error(
                "PAYMENT_SELF_HEAL_UNRESOLVABLE",
                extra={
                    "event": "payment.self_heal_unresolvable",
                    "order_reference": reference,
                    "requested_status": new_status.value,
                },
            )
            raise UnresolvableUserError(reference)

        user = self.users.upsert(telegram_id)
        amount = self.settings.payment_amount_minor if amount is None else amount
        currency = currency or self.settings.currency

        try:
            with self.db.begin_nested():
                intent = self.payments.create(
                    reference=reference,
                    user_pk=user.id,
                    amount=amount,
                    currency=currency,
                    status=new_status.value,
                    gateway_status=gateway_status,
                    reason_code=reason_code,
                )
        except IntegrityError:
            logger.info(
                "PAYMENT_SELF_HEAL_RACE_LOST",
                extra={"event": "payment.self_heal_race_lost", "order_reference": reference},
            )
            return None

        if new_status == PaymentStatus.COMPLETED:
            self.users.add_total_paid(user.id, amount)

        write_audit(
            self.db,
            "PAYMENT_SELF_HEALED",
            telegram_id=telegram_id,
            reference=reference,
            actor=actor,
            details={
                "status": new_status.value,
                "amount": amount,
                "currency": currency,
                "gateway_status": gateway_status,
            },
        )
        logger.warning(
            "PAYMENT_SELF_HEALED",
            extra={
                "event": "payment.self_healed",
                "telegram_id": telegram_id,
                "order_reference": reference,
                "status": new_status.value,
                "amount_minor": amount,
            },
        )
        self._emit_metric(telegram_id, intent, None, new_status, self_healed=True)
        return intent

    def _transition(
        self,
        intent: PaymentIntent,
        new_status: PaymentStatus,
        *,
        gateway_status: Optional[str],
        reason_code: Optional[str],
        actor: str,
    ) -> PaymentIntent:
        reference = intent.reference

        for _ in range(_MAX_CAS_ATTEMPTS):
            current = PaymentStatus(intent.status)

            if current == new_status:
                logger.info(
                    "PAYMENT_STATUS_DUPLICATE",
                    extra={
                        "event": "payment.status_duplicate",
                        "order_reference": reference,
                        "status": current.value,
                    },
                )
                return intent

            try:
                require_allowed(reference, current, new_status)
            except InvalidTransitionError:
                log_transition_rejected(reference, current.value, new_status.value)
                write_audit(
                    self.db,
                    "PAYMENT_TRANSITION_REJECTED",
                    telegram_id=self._telegram_id(intent),
                    reference=reference,
                    actor=actor,
                    details={
                        "current_status": current.value,
                        "requested_status": new_status.value,
                        "gateway_status": gateway_status,
                        "reason_code": reason_code,
                    },
                )
                return intent

            won = self.payments.compare_and_set_status(
                reference,
                expected_status=current.value,
                new_status=new_status.value,
                gateway_status=gateway_status,
                reason_code=reason_code,
            )
            if won:
                self._apply_side_effects(
                    intent, current, new_status, actor=actor, reason_code=reason_code
                )
                return intent

            # Another handler moved the row first; re-read and re-validate
            self.db.refresh(intent)

        raise RuntimeError(f"Payment {reference}: status CAS did not converge")

    def _apply_side_effects(
        self,
        intent: PaymentIntent,
        previous: PaymentStatus,
        new_status: PaymentStatus,
        *,
        actor: str,
        reason_code: Optional[str] = None,
    ) -> None:
        telegram_id = self._telegram_id(intent)

        if new_status == PaymentStatus.COMPLETED:
            self.users.add_total_paid(intent.user_id, intent.amount)
            event_type = "PAYMENT_COMPLETED"
        elif new_status == PaymentStatus.REFUNDED:
            if previous == PaymentStatus.COMPLETED:
                self.users.subtract_total_paid_floored(intent.user_id, intent.amount)
            event_type = "PAYMENT_REFUNDED"
        elif new_status == PaymentStatus.FAILED:
            event_type = "PAYMENT_FAILED"
        else:
            return

        write_audit(
            self.db,
            event_type,
            telegram_id=telegram_id,
            reference=intent.reference,
            actor=actor,
            details={
                "previous_status": previous.value,
                "amount": intent.amount,
                "currency": intent.currency,
            },
        )
        self._emit_metric(telegram_id, intent, previous, new_status, reason_code=reason_code)

    def _emit_metric(
        self,
        telegram_id: int,
        intent: PaymentIntent,
        previous: Optional[PaymentStatus],
        new_status: PaymentStatus,
        self_healed: bool = False,
        reason_code: Optional[str] = None,
    ) -> None:
        if new_status == PaymentStatus.COMPLETED:
            log_payment_success(telegram_id, intent.reference, intent.amount, self_healed=self_healed)
        elif new_status == PaymentStatus.REFUNDED:
            log_payment_refund(
                telegram_id,
                intent.reference,
                intent.amount,
                counter_effect=previous == PaymentStatus.COMPLETED,
            )
        elif new_status == PaymentStatus.FAILED:
            log_payment_failure(telegram_id, intent.reference, reason_code or intent.reason_code)

    def _telegram_id(self, intent: PaymentIntent) -> Optional[int]:
        user = self.users.get_by_id(intent.user_id)
        return user.telegram_id if user is not None else None
