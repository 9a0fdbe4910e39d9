"""Generation gate: the single call the chat layer makes before generating.

    decision = await GenerationGate(db).begin(telegram_id, username, first_name)

    proceed            -> one credit already charged; run the generation
    checkout_required  -> show decision.checkout_url to the user
    busy               -> a generation for this user is already running

The guard is held only while deciding and charging, never during the
generation itself.
"""

import logging
from typing import Literal, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from smachno_api.billing.entitlements import EntitlementCalculator
from smachno_api.billing.errors import (
    CheckoutUnavailableError,
    GenerationInProgressError,
    NoCreditsError,
)
from smachno_api.billing.generation_guard import GenerationGuard, get_generation_guard
from smachno_api.billing.ledger import PaymentLedger
from smachno_api.billing.wayforpay import WayForPayClient, get_wayforpay_client
from smachno_api.config.env import BillingSettings, get_billing_settings
from smachno_api.context import user_id_var
from smachno_api.db.repo_users import UserRepository
from smachno_api.observability.metrics import log_payment_attempt

logger = logging.getLogger(__name__)


class GenerationDecision(BaseModel):
    kind: Literal["proceed", "checkout_required", "busy"]
    source: Optional[Literal["free", "paid"]] = None
    remaining: Optional[int] = None
    checkout_url: Optional[str] = None
    amount_display: Optional[str] = None
    reference: Optional[str] = None

    @classmethod
    def proceed(cls, source: str, remaining: int) -> "GenerationDecision":
        return cls(kind="proceed", source=source, remaining=remaining)

    @classmethod
    def checkout_required(
        cls, checkout_url: str, amount_display: str, reference: str
    ) -> "GenerationDecision":
        return cls(
            kind="checkout_required",
            checkout_url=checkout_url,
            amount_display=amount_display,
            reference=reference,
        )

    @classmethod
    def busy(cls) -> "GenerationDecision":
        return cls(kind="busy")


class GenerationGate:
    def __init__(
        self,
        db: Session,
        guard: Optional[GenerationGuard] = None,
        client: Optional[WayForPayClient] = None,
        settings: Optional[BillingSettings] = None,
    ):
        self.db = db
        self.settings = settings or get_billing_settings()
        self.guard = guard or get_generation_guard()
        self._client = client
        self.ledger = PaymentLedger(db, self.settings)
        self.entitlements = EntitlementCalculator(db, self.settings)

    async def begin(
        self,
        telegram_id: int,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
    ) -> GenerationDecision:
        """Decide whether telegram_id may generate now, charging a credit if so.

        Raises:
            CheckoutUnavailableError: No credits and no checkout could be created
        """
        token = user_id_var.set(str(telegram_id))
        try:
            try:
                with self.guard.hold(telegram_id):
                    return await self._decide(telegram_id, username, first_name)
            except GenerationInProgressError:
                logger.info(
                    "GENERATION_BUSY",
                    extra={"event": "generation.busy", "telegram_id": telegram_id},
                )
                return GenerationDecision.busy()
        finally:
            user_id_var.reset(token)

    async def _decide(
        self,
        telegram_id: int,
        username: Optional[str],
        first_name: Optional[str],
    ) -> GenerationDecision:
        try:
            UserRepository(self.db).upsert(telegram_id, username=username, first_name=first_name)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        try:
            result = self.entitlements.consume_one(telegram_id)
        except NoCreditsError:
            return await self._checkout(telegram_id)

        return GenerationDecision.proceed(result.source, result.snapshot.total)

    async def _checkout(self, telegram_id: int) -> GenerationDecision:
        try:
            client = self._client or get_wayforpay_client()
        except ValueError as e:
            logger.error(
                "Checkout unavailable: gateway not configured",
                extra={"event": "generation.checkout_misconfigured", "telegram_id": telegram_id},
            )
            raise CheckoutUnavailableError(str(e)) from e

        intent = self.ledger.create_intent(telegram_id)
        try:
            handle = await client.create_invoice(intent.reference, intent.amount)
        except CheckoutUnavailableError:
            self.ledger.mark_failed(intent.reference, actor="GATE")
            raise

        log_payment_attempt(telegram_id, intent.reference, intent.amount, checkout_mode=handle.mode)
        return GenerationDecision.checkout_required(
            checkout_url=handle.checkout_url,
            amount_display=handle.amount_display,
            reference=intent.reference,
        )
