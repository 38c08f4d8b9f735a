"""
Error taxonomy for the ledger and subscription reconciler.

Duplicate events are never errors: idempotent calls return the existing row.
"""
from typing import Optional


class CreditLedgerError(Exception):
    """Base class for ledger and reconciler errors."""


class InvalidAmount(CreditLedgerError):
    """Amount is non-positive or exceeds what the operation allows."""


class InsufficientCredits(CreditLedgerError):
    """Spend exceeds the spendable balance (balance - frozen_balance)."""

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits for user {user_id}. "
            f"Required: {required}, available: {available}"
        )


class AccountNotFound(CreditLedgerError):
    """Operation forbids lazy account creation and the account does not exist."""


class SubscriptionNotFound(CreditLedgerError):
    pass


class InvalidStatusTransition(CreditLedgerError):
    def __init__(self, subscription_id: str, current: str, target: str):
        self.subscription_id = subscription_id
        self.current = current
        self.target = target
        super().__init__(
            f"Subscription {subscription_id} cannot move from {current} to {target}"
        )


class ProviderCancelFailed(CreditLedgerError):
    """The billing provider rejected a cancel after local state already moved."""

    def __init__(self, subscription_id: str, reason: Optional[str] = None):
        self.subscription_id = subscription_id
        self.reason = reason
        super().__init__(f"Provider cancel failed for {subscription_id}: {reason}")


class AlreadyCheckedIn(CreditLedgerError):
    pass


class InvalidReferral(CreditLedgerError):
    pass
