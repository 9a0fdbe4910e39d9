"""create_ledger_tables

Revision ID: 4c1f0e7a9b2d
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1f0e7a9b2d'
down_revision = None
branch_labels = None
depends_on = None

PK_BIGINT = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', PK_BIGINT, primary_key=True, autoincrement=True),
        sa.Column('telegram_id', sa.BigInteger(), nullable=False),
        sa.Column('username', sa.Text(), nullable=True),
        sa.Column('first_name', sa.Text(), nullable=True),
        sa.Column('free_generations_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('paid_generations_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_generations', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_paid', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('telegram_id', name='uq_users_telegram_id'),
        sa.CheckConstraint('free_generations_used >= 0', name='ck_users_free_used_nonneg'),
        sa.CheckConstraint('paid_generations_used >= 0', name='ck_users_paid_used_nonneg'),
        sa.CheckConstraint('total_paid >= 0', name='ck_users_total_paid_nonneg'),
    )

    op.create_table(
        'payments',
        sa.Column('id', PK_BIGINT, primary_key=True, autoincrement=True),
        sa.Column('reference', sa.Text(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.Text(), nullable=False, server_default='UAH'),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('gateway_status', sa.Text(), nullable=True),
        sa.Column('reason_code', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('reference', name='uq_payments_reference'),
    )
    op.create_index('idx_payments_user_status', 'payments', ['user_id', 'status'])

    op.create_table(
        'billing_audit_logs',
        sa.Column('id', PK_BIGINT, primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('telegram_id', sa.BigInteger(), nullable=True),
        sa.Column('reference', sa.Text(), nullable=True),
        sa.Column('actor', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('idx_billing_audit_reference', 'billing_audit_logs', ['reference'])
    op.create_index('idx_billing_audit_created', 'billing_audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_index('idx_billing_audit_created', table_name='billing_audit_logs')
    op.drop_index('idx_billing_audit_reference', table_name='billing_audit_logs')
    op.drop_table('billing_audit_logs')
    op.drop_index('idx_payments_user_status', table_name='payments')
    op.drop_table('payments')
    op.drop_table('users')
