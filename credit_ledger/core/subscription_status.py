"""
Subscription status vocabulary and lifecycle rules.

Provider payloads spell statuses many ways ("trial", "cancelled", "ended");
normalize_status folds them onto the internal enum before anything is stored.
"""
from typing import Dict, FrozenSet, Optional

# Allowed status moves; canceled and incomplete_expired are terminal
ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "incomplete": frozenset({"active", "incomplete_expired"}),
    "trialing": frozenset({"active", "canceled"}),
    "active": frozenset({"past_due", "canceled", "paused", "unpaid"}),
    "past_due": frozenset({"active", "canceled", "paused", "unpaid"}),
    "paused": frozenset({"active", "canceled"}),
    "unpaid": frozenset({"active", "canceled"}),
    "canceled": frozenset(),
    "incomplete_expired": frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def normalize_status(status: Optional[str]) -> str:
    """Normalize a provider status string to the internal subscription status enum."""
    value = (status or "").strip().lower()

    if not value:
        return "active"
    if "trial" in value:
        return "trialing"
    if "cancel" in value:
        return "canceled"
    if "past" in value:
        return "past_due"
    if "unpaid" in value:
        return "unpaid"
    if "incomplete" in value and "expired" in value:
        return "incomplete_expired"
    if "incomplete" in value or "pending" in value:
        return "incomplete"
    if "paused" in value:
        return "paused"
    if "expired" in value or "ended" in value:
        return "canceled"
    return "active"
