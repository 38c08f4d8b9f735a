import uuid

from sqlalchemy import Column, Integer, String, Text, DateTime, Index
from sqlalchemy.sql import func
from credit_ledger.db.base import Base, utcnow

TRANSACTION_TYPES = ("earn", "spend", "freeze", "unfreeze", "admin_adjust")

TRANSACTION_SOURCES = (
    "subscription",
    "purchase",
    "api_call",
    "admin",
    "storage",
    "bonus",
    "checkin",
    "referral",
    "social_share",
)


class CreditTransaction(Base):
    """
    Append-only credit ledger entry.

    amount is always positive; the sign comes from type. reference_id is the
    idempotency key for the logical event and is unique across the table.
    """
    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)  # earn | spend | freeze | unfreeze | admin_adjust
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    reference_id = Column(String, nullable=False, unique=True)
    metadata_json = Column("metadata", Text, nullable=True)  # serialized JSON, opaque to the ledger
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
    )
