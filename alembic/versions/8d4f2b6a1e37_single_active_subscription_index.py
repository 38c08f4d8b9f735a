"""single_active_subscription_index

Revision ID: 8d4f2b6a1e37
Revises: 3a1c5e7d9b20
Create Date: 2026-10-02 14:47:09.530611

Collapses existing duplicate active subscriptions, then adds a partial
unique index so the database rejects a second active row per user.
"""
from datetime import datetime, timezone
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '8d4f2b6a1e37'
down_revision: Union[str, None] = '3a1c5e7d9b20'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

INDEX_NAME = 'uq_subscriptions_single_active_user'
ACTIVE_WHERE = "status IN ('active', 'trialing', 'past_due')"


def index_exists(table_name: str, index_name: str) -> bool:
    bind = op.get_bind()
    inspector = inspect(bind)
    return index_name in [ix['name'] for ix in inspector.get_indexes(table_name)]


def _as_naive(value):
    # SQLite hands back strings or naive datetimes; Postgres hands back aware ones
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def collapse_duplicate_actives(bind) -> int:
    """
    Keep one active row per user (latest period_end, then created_at, then id)
    and mark the rest canceled with no pending period-end cancel, matching
    what reconcile() leaves behind. Returns the number of rows canceled.
    """
    rows = bind.execute(sa.text(
        f"SELECT id, user_id, period_end, created_at FROM subscriptions WHERE {ACTIVE_WHERE}"
    )).fetchall()

    by_user = {}
    for row in rows:
        by_user.setdefault(row.user_id, []).append(row)

    canceled = 0
    for user_rows in by_user.values():
        if len(user_rows) < 2:
            continue
        user_rows.sort(
            key=lambda r: (
                r.period_end is not None,
                _as_naive(r.period_end) or datetime.min,
                _as_naive(r.created_at) or datetime.min,
                r.id,
            ),
            reverse=True,
        )
        for row in user_rows[1:]:
            bind.execute(
                sa.text(
                    "UPDATE subscriptions SET status = 'canceled', cancel_at_period_end = :off, "
                    "updated_at = CURRENT_TIMESTAMP WHERE id = :id"
                ),
                {"id": row.id, "off": False},
            )
            canceled += 1
    return canceled


def upgrade() -> None:
    if index_exists('subscriptions', INDEX_NAME):
        return

    collapse_duplicate_actives(op.get_bind())

    op.create_index(
        INDEX_NAME,
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_WHERE),
        sqlite_where=sa.text(ACTIVE_WHERE),
    )


def downgrade() -> None:
    # Canceled duplicates are not restored
    op.drop_index(INDEX_NAME, table_name='subscriptions')
