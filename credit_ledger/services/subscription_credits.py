"""
Subscription and credit-pack grants.

Turns plan/price identifiers into credit amounts and records them through
the ledger with provider-scoped reference ids.
"""
import logging
from datetime import datetime
from typing import Optional

from credit_ledger.core.config import BILLING_PROVIDER
from credit_ledger.core.errors import InvalidAmount
from credit_ledger.core.plan_credits import format_plan_name, get_credits_for_plan, get_pack_credits
from credit_ledger.db.base import utcnow
from credit_ledger.db.models.credit_transaction import CreditTransaction
from credit_ledger.schemas.credits import PurchaseMetadata, SubscriptionGrantMetadata
from credit_ledger.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)


def build_grant_reference(
    provider: str,
    subscription_id: str,
    is_renewal: bool,
    granted_at: datetime,
) -> str:
    """{provider}_{subscription_id}_{initial|renewal}_{epoch millis}"""
    kind = "renewal" if is_renewal else "initial"
    millis = int(granted_at.timestamp() * 1000)
    return f"{provider}_{subscription_id}_{kind}_{millis}"


def has_initial_grant(
    ledger: CreditLedger,
    subscription_id: str,
    provider: Optional[str] = None,
) -> bool:
    """
    Whether an initial grant was already recorded for this subscription.

    Webhook handlers call this before grant_subscription_credits(is_renewal=False);
    the timestamp in the reference id means the ledger cannot de-duplicate
    two initial grants on its own.
    """
    provider = provider or BILLING_PROVIDER
    return ledger.has_reference_prefix(f"{provider}_{subscription_id}_initial_")


def grant_subscription_credits(
    ledger: CreditLedger,
    user_id: str,
    plan_identifier: str,
    subscription_id: str,
    interval: Optional[str] = None,
    is_renewal: bool = False,
    provider: Optional[str] = None,
    granted_at: Optional[datetime] = None,
) -> Optional[CreditTransaction]:
    """
    Grant the configured credits for a plan's billing cycle.

    Args:
        ledger: Ledger bound to the caller's session
        user_id: Owning user
        plan_identifier: Plan id, price id or product key
        subscription_id: Provider subscription id
        interval: "month" or "year"; defaults to what the identifier implies
        is_renewal: Renewal grants get their own reference id per cycle
        provider: Reference id prefix, defaults to BILLING_PROVIDER
        granted_at: Timestamp used in the reference id (now if omitted)

    Returns:
        The earn transaction, or None when the plan grants no credits
    """
    provider = provider or BILLING_PROVIDER
    credit_info = get_credits_for_plan(plan_identifier, interval)

    if not credit_info.plan_id or credit_info.amount <= 0:
        logger.info(
            f"No credits to grant: plan_identifier={plan_identifier}, "
            f"interval={interval or 'auto'}, subscription_id={subscription_id}"
        )
        return None

    granted_at = granted_at or utcnow()
    reference_id = build_grant_reference(provider, subscription_id, is_renewal, granted_at)
    plan_name = format_plan_name(credit_info.plan_id, plan_identifier)

    transaction = ledger.earn(
        user_id,
        credit_info.amount,
        "subscription",
        f"{plan_name} subscription {'renewal' if is_renewal else 'credits'} ({provider})",
        reference_id,
        SubscriptionGrantMetadata(
            plan_id=credit_info.plan_id,
            plan_identifier=plan_identifier,
            is_yearly=credit_info.is_yearly,
            subscription_id=subscription_id,
            provider=provider,
            is_renewal=is_renewal,
        ),
    )

    logger.info(
        f"Granted subscription credits: user_id={user_id}, plan={credit_info.plan_id}, "
        f"interval={credit_info.interval}, amount={credit_info.amount}, renewal={is_renewal}"
    )
    return transaction


def grant_credit_pack(
    ledger: CreditLedger,
    user_id: str,
    pack_id: str,
    checkout_id: str,
    provider: Optional[str] = None,
) -> CreditTransaction:
    """
    Grant a one-time credit pack purchase.

    Raises:
        InvalidAmount: unknown pack id
    """
    provider = provider or BILLING_PROVIDER
    credits = get_pack_credits(pack_id)
    if not credits:
        raise InvalidAmount(f"Unknown credit pack: {pack_id}")

    return ledger.earn(
        user_id,
        credits,
        "purchase",
        f"Credit pack {pack_id} ({provider})",
        f"purchase_{provider}_{checkout_id}",
        PurchaseMetadata(pack_id=pack_id, provider=provider, checkout_id=checkout_id),
    )
