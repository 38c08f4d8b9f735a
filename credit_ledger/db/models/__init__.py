"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from credit_ledger.db.models.credit_account import CreditAccount
from credit_ledger.db.models.credit_transaction import CreditTransaction
from credit_ledger.db.models.subscription import Subscription
from credit_ledger.db.models.daily_checkin import DailyCheckin
from credit_ledger.db.models.user_referral import UserReferral

__all__ = [
    "CreditAccount",
    "CreditTransaction",
    "Subscription",
    "DailyCheckin",
    "UserReferral",
]
