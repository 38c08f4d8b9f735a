import uuid

from sqlalchemy import Column, Integer, String, Boolean, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from credit_ledger.db.base import Base, utcnow


class DailyCheckin(Base):
    """
    Daily check-in record backing the check-in reward streak.

    One record per user per day.
    """
    __tablename__ = "daily_checkins"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    checkin_date = Column(String(10), nullable=False)  # YYYY-MM-DD format
    consecutive_days = Column(Integer, nullable=False, default=1)
    credits_earned = Column(Integer, nullable=False, default=0)
    weekly_bonus_earned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "checkin_date", name="uq_daily_checkins_user_date"),
    )
