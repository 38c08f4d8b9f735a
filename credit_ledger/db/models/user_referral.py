import uuid

from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.sql import func
from credit_ledger.db.base import Base, utcnow


class UserReferral(Base):
    """
    Who invited whom.

    Registered when the invited user signs up with a referral code; the
    referrer is paid once, when the invited user first pays (subscription
    or credit pack).
    """
    __tablename__ = "user_referrals"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    referrer_id = Column(String, nullable=False, index=True)
    referred_user_id = Column(String, nullable=False, unique=True)
    credits_awarded = Column(Boolean, nullable=False, default=False)
    credits_awarded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
