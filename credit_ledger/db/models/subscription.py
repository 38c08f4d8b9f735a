import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Index, text
from sqlalchemy.sql import func
from credit_ledger.db.base import Base, utcnow

# Statuses that count towards the one-active-subscription-per-user rule
ACTIVE_STATUSES = ("active", "trialing", "past_due")

SUBSCRIPTION_STATUSES = (
    "active",
    "trialing",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
    "paused",
)

SINGLE_ACTIVE_INDEX_NAME = "uq_subscriptions_single_active_user"
SINGLE_ACTIVE_WHERE = "status IN ('active', 'trialing', 'past_due')"


class Subscription(Base):
    """
    One row per billing-provider subscription object.

    A user accumulates many rows over time but at most one of them may be in
    an ACTIVE_STATUSES status. Rows are never deleted; cancellation is a
    status change.
    """
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False, default="stripe")  # stripe | creem
    subscription_id = Column(String, nullable=False, unique=True)
    customer_id = Column(String, nullable=True, index=True)
    price_id = Column(String, nullable=True)
    product_id = Column(String, nullable=True)

    status = Column(String, nullable=False, default="incomplete")
    interval = Column(String, nullable=True)  # month | year
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Pending plan change applied by the period-end sweep
    scheduled_plan_id = Column(String, nullable=True)
    scheduled_interval = Column(String, nullable=True)
    scheduled_period_start = Column(DateTime(timezone=True), nullable=True)
    scheduled_period_end = Column(DateTime(timezone=True), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_subscriptions_user_status", "user_id", "status"),
        # Database-enforced one-active-per-user; partial on PostgreSQL and SQLite
        Index(
            SINGLE_ACTIVE_INDEX_NAME,
            "user_id",
            unique=True,
            postgresql_where=text(SINGLE_ACTIVE_WHERE),
            sqlite_where=text(SINGLE_ACTIVE_WHERE),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
