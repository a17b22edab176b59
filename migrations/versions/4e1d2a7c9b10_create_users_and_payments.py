"""create users and payments ledger

Revision ID: 4e1d2a7c9b10
Revises:
Create Date: 2026-10-17 00:00:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '4e1d2a7c9b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PENDING_WHERE = "status IN ('pending', 'attached')"


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('telegram_id', sa.BigInteger(), nullable=True),
        sa.Column('plan', sa.String(length=64), nullable=False, server_default='Free'),
        sa.Column('plan_expiry', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_telegram_id', 'users', ['telegram_id'], unique=True)

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.Integer(), nullable=True),
        sa.Column('plan', sa.String(length=64), nullable=True),
        sa.Column('billing_period', sa.String(length=32), nullable=False, server_default='one-off'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('gateway_order_id', sa.String(length=128), nullable=True),
        sa.Column('gateway_capture_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('client_correlation_token', sa.String(length=128), nullable=True),
        sa.Column('reason', sa.String(length=40), nullable=True),
        sa.Column('change_to', sa.String(length=64), nullable=True),
        sa.Column('payer_email', sa.String(length=256), nullable=True),
        sa.Column('payer_name', sa.String(length=256), nullable=True),
        sa.Column('gateway_payload', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('created_at_bucket', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('entitlement_applied_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('ix_payments_owner_id', 'payments', ['owner_id'])
    op.create_index('ux_payments_gateway_order_id', 'payments', ['gateway_order_id'], unique=True)
    op.create_index('ux_payments_gateway_capture_id', 'payments', ['gateway_capture_id'], unique=True)
    op.create_index(
        'ux_payments_client_correlation_token', 'payments', ['client_correlation_token'], unique=True
    )
    # Не больше одной незавершённой строки на владельца/план/период/минуту
    op.create_index(
        'ux_payments_pending_bucket',
        'payments',
        ['owner_id', 'plan', 'billing_period', 'created_at_bucket'],
        unique=True,
        sqlite_where=sa.text(PENDING_WHERE),
        postgresql_where=sa.text(PENDING_WHERE),
    )
    op.create_index('ix_payments_owner_status', 'payments', ['owner_id', 'status'])
    op.create_index('ix_payments_bucket_amount', 'payments', ['created_at_bucket', 'amount'])


def downgrade() -> None:
    op.drop_index('ix_payments_bucket_amount', table_name='payments')
    op.drop_index('ix_payments_owner_status', table_name='payments')
    op.drop_index('ux_payments_pending_bucket', table_name='payments')
    op.drop_index('ux_payments_client_correlation_token', table_name='payments')
    op.drop_index('ux_payments_gateway_capture_id', table_name='payments')
    op.drop_index('ux_payments_gateway_order_id', table_name='payments')
    op.drop_index('ix_payments_owner_id', table_name='payments')
    op.drop_index('ix_payments_id', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_users_telegram_id', table_name='users')
    op.drop_index('ix_users_id', table_name='users')
    op.drop_table('users')
