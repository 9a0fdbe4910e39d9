"""SQLAlchemy ORM Models for the Smachno entitlement ledger."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BIGINT,
    INTEGER,
    JSON,
    TEXT,
    TIMESTAMP,
    CheckConstraint,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT on PostgreSQL; INTEGER on SQLite so ROWID autoincrement works
PK_BIGINT = BIGINT().with_variant(INTEGER(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class User(Base):
    """Chat user with generation counters.

    Counters are mutated only by the payment ledger and the entitlement
    calculator, always through atomic SQL expressions.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BIGINT, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    free_generations_used: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    paid_generations_used: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    total_generations: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)

    # Minor units (kopecks); decremented only by refunds, floored at zero
    total_paid: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("telegram_id", name="uq_users_telegram_id"),
        CheckConstraint("free_generations_used >= 0", name="ck_users_free_used_nonneg"),
        CheckConstraint("paid_generations_used >= 0", name="ck_users_paid_used_nonneg"),
        CheckConstraint("total_paid >= 0", name="ck_users_total_paid_nonneg"),
    )


class PaymentIntent(Base):
    """Payment intent registered with the gateway.

    One row per order reference. Status moves along
    pending -> completed -> refunded or pending -> failed.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(TEXT, nullable=False)
    user_id: Mapped[int] = mapped_column(
        BIGINT, ForeignKey("users.id"), nullable=False
    )

    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)  # minor units
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="UAH")
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    # pending, completed, refunded, failed

    # Last raw gateway values (audit only, never drive state)
    gateway_status: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    reason_code: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("reference", name="uq_payments_reference"),
        Index("idx_payments_user_status", "user_id", "status"),
    )


class BillingAuditLog(Base):
    """BillingAuditLog model - append-only trail for ledger decisions."""

    __tablename__ = "billing_audit_logs"

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)

    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    # PAYMENT_COMPLETED, PAYMENT_REFUNDED, PAYMENT_FAILED, PAYMENT_SELF_HEALED,
    # PAYMENT_TRANSITION_REJECTED, PAID_USAGE_CORRECTED

    telegram_id: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    actor: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # SYSTEM, WEBHOOK, GATE
    details: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("idx_billing_audit_reference", "reference"),
        Index("idx_billing_audit_created", "created_at"),
    )
