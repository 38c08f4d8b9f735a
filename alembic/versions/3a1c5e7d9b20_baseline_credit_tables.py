"""baseline_credit_tables

Revision ID: 3a1c5e7d9b20
Revises:
Create Date: 2026-09-28 10:12:41.118204

Production-safe migration: only creates tables that do not exist yet.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '3a1c5e7d9b20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    """Create credit ledger and subscription tables if they don't exist."""
    if not table_exists('credit_accounts'):
        op.create_table('credit_accounts',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('user_id', sa.String(), nullable=False),
            sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('frozen_balance', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total_earned', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total_spent', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.CheckConstraint('balance >= 0', name='ck_credit_accounts_balance_non_negative'),
            sa.CheckConstraint(
                'frozen_balance >= 0 AND frozen_balance <= balance',
                name='ck_credit_accounts_frozen_within_balance',
            ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_credit_accounts_user_id'), 'credit_accounts', ['user_id'], unique=True)

    if not table_exists('credit_transactions'):
        op.create_table('credit_transactions',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('user_id', sa.String(), nullable=False),
            sa.Column('type', sa.String(), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('balance_after', sa.Integer(), nullable=False),
            sa.Column('source', sa.String(), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('reference_id', sa.String(), nullable=False),
            sa.Column('metadata', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('reference_id')
        )
        op.create_index('idx_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'], unique=False)
        op.create_index(op.f('ix_credit_transactions_user_id'), 'credit_transactions', ['user_id'], unique=False)
        op.create_index(op.f('ix_credit_transactions_source'), 'credit_transactions', ['source'], unique=False)
        op.create_index(op.f('ix_credit_transactions_created_at'), 'credit_transactions', ['created_at'], unique=False)

    if not table_exists('subscriptions'):
        op.create_table('subscriptions',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('user_id', sa.String(), nullable=False),
            sa.Column('provider', sa.String(), nullable=False, server_default='stripe'),
            sa.Column('subscription_id', sa.String(), nullable=False),
            sa.Column('customer_id', sa.String(), nullable=True),
            sa.Column('price_id', sa.String(), nullable=True),
            sa.Column('product_id', sa.String(), nullable=True),
            sa.Column('status', sa.String(), nullable=False, server_default='incomplete'),
            sa.Column('interval', sa.String(), nullable=True),
            sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('scheduled_plan_id', sa.String(), nullable=True),
            sa.Column('scheduled_interval', sa.String(), nullable=True),
            sa.Column('scheduled_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('scheduled_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('subscription_id')
        )
        op.create_index('idx_subscriptions_user_status', 'subscriptions', ['user_id', 'status'], unique=False)
        op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=False)
        op.create_index(op.f('ix_subscriptions_customer_id'), 'subscriptions', ['customer_id'], unique=False)

    if not table_exists('daily_checkins'):
        op.create_table('daily_checkins',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('user_id', sa.String(), nullable=False),
            sa.Column('checkin_date', sa.String(length=10), nullable=False),
            sa.Column('consecutive_days', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('credits_earned', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('weekly_bonus_earned', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('user_id', 'checkin_date', name='uq_daily_checkins_user_date')
        )
        op.create_index(op.f('ix_daily_checkins_user_id'), 'daily_checkins', ['user_id'], unique=False)


def downgrade() -> None:
    """Drop tables created by this migration."""
    op.drop_table('daily_checkins')
    op.drop_table('subscriptions')
    op.drop_table('credit_transactions')
    op.drop_table('credit_accounts')
