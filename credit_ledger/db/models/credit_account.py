import uuid

from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint
from sqlalchemy.sql import func
from credit_ledger.db.base import Base, utcnow


class CreditAccount(Base):
    """
    Per-user credit balance.

    Created lazily on first earn/spend and never deleted. Only the ledger
    service writes to this table; every change is paired with exactly one
    CreditTransaction row.
    """
    __tablename__ = "credit_accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, unique=True, index=True)
    balance = Column(Integer, nullable=False, default=0)
    frozen_balance = Column(Integer, nullable=False, default=0)  # held, not spendable
    total_earned = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        CheckConstraint(
            "frozen_balance >= 0 AND frozen_balance <= balance",
            name="ck_credit_accounts_frozen_within_balance",
        ),
    )

    @property
    def spendable_balance(self) -> int:
        return (self.balance or 0) - (self.frozen_balance or 0)
