"""Payment intent repository.

Status changes go through compare_and_set_status (DB-CAS):

    UPDATE payments SET status=:new ... WHERE reference=:ref AND status=:expected

rowcount == 1 means this caller won the transition; 0 means another handler
moved the row first and the caller must re-read.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from smachno_api.db.models import PaymentIntent


class PaymentRepository:
    """Data access for the payments table. Does not commit."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_reference(
        self, reference: str, for_update: bool = False
    ) -> Optional[PaymentIntent]:
        """Fetch an intent by reference.

        Args:
            reference: Order reference
            for_update: Take a row lock (SELECT ... FOR UPDATE). Backends
                without row locks (SQLite) ignore the clause.
        """
        stmt = select(PaymentIntent).where(PaymentIntent.reference == reference)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def create(
        self,
        reference: str,
        user_pk: int,
        amount: int,
        currency: str,
        status: str = "pending",
        gateway_status: Optional[str] = None,
        reason_code: Optional[str] = None,
    ) -> PaymentIntent:
        """Insert an intent. IntegrityError propagates on duplicate reference."""
        now = datetime.now(timezone.utc)
        intent = PaymentIntent(
            reference=reference,
            user_id=user_pk,
            amount=amount,
            currency=currency,
            status=status,
            gateway_status=gateway_status,
            reason_code=reason_code,
            created_at=now,
            updated_at=now,
            completed_at=now if status == "completed" else None,
        )
        self.db.add(intent)
        self.db.flush()
        return intent

    def compare_and_set_status(
        self,
        reference: str,
        expected_status: str,
        new_status: str,
        gateway_status: Optional[str] = None,
        reason_code: Optional[str] = None,
    ) -> bool:
        """Atomically move reference from expected_status to new_status.

        completed_at is set iff new_status is completed.

        Returns:
            True if this call performed the transition
        """
        now = datetime.now(timezone.utc)
        values: dict = {"status": new_status, "updated_at": now}
        if new_status == "completed":
            values["completed_at"] = now
        if gateway_status is not None:
            values["gateway_status"] = gateway_status
        if reason_code is not None:
            values["reason_code"] = reason_code

        result = self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.reference == reference,
                PaymentIntent.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def count_completed(self, user_pk: int) -> int:
        stmt = select(func.count(PaymentIntent.id)).where(
            PaymentIntent.user_id == user_pk,
            PaymentIntent.status == "completed",
        )
        return int(self.db.execute(stmt).scalar_one())

    def completed_totals(self) -> tuple[int, int]:
        """Return (count, sum of amount) over completed payments."""
        stmt = select(
            func.count(PaymentIntent.id),
            func.coalesce(func.sum(PaymentIntent.amount), 0),
        ).where(PaymentIntent.status == "completed")
        count, revenue = self.db.execute(stmt).one()
        return int(count), int(revenue)
