"""user_referrals

Revision ID: 5b7e1f3c9a42
Revises: 8d4f2b6a1e37
Create Date: 2026-10-17 09:31:22.604117

Referral registrations; the referrer is paid on the invited user's first payment.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '5b7e1f3c9a42'
down_revision: Union[str, None] = '8d4f2b6a1e37'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    if table_exists('user_referrals'):
        return

    op.create_table('user_referrals',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('referrer_id', sa.String(), nullable=False),
        sa.Column('referred_user_id', sa.String(), nullable=False),
        sa.Column('credits_awarded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('credits_awarded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('referred_user_id')
    )
    op.create_index(op.f('ix_user_referrals_referrer_id'), 'user_referrals', ['referrer_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_user_referrals_referrer_id'), table_name='user_referrals')
    op.drop_table('user_referrals')
