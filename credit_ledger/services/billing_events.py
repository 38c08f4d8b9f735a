"""
Billing event orchestration.

Sequences the reconciler and the ledger for each inbound billing event:
import the subscription snapshot, collapse duplicate actives, cancel the
demoted subscriptions at the provider, then grant credits. Provider calls
always happen after the local commit; a failed provider cancel is reported
as a partial success and never rolls local state back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from credit_ledger.core.config import BILLING_PROVIDER
from credit_ledger.core.plan_credits import get_pack_credits
from credit_ledger.core.errors import InvalidStatusTransition, ProviderCancelFailed, SubscriptionNotFound
from credit_ledger.db.models.credit_transaction import CreditTransaction
from credit_ledger.db.models.subscription import Subscription
from credit_ledger.schemas.subscription import SubscriptionImport
from credit_ledger.services.billing_provider import BillingProvider
from credit_ledger.services.credit_ledger import CreditLedger
from credit_ledger.services.rewards_service import RewardsService
from credit_ledger.services.subscription_credits import grant_credit_pack, grant_subscription_credits, has_initial_grant
from credit_ledger.services.subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)


@dataclass
class ProviderCancelResult:
    subscription_id: str
    local_success: bool
    provider_success: bool
    error: Optional[str] = None


@dataclass
class ReconcileOutcome:
    user_id: str
    kept: Optional[Subscription]
    canceled: List[Subscription] = field(default_factory=list)
    provider_results: List[ProviderCancelResult] = field(default_factory=list)

    @property
    def provider_success(self) -> bool:
        return all(result.provider_success for result in self.provider_results)

    @property
    def failed_provider_cancels(self) -> List[str]:
        return [r.subscription_id for r in self.provider_results if not r.provider_success]


@dataclass
class SubscriptionEventOutcome:
    subscription: Subscription
    reconcile: ReconcileOutcome
    grant: Optional[CreditTransaction] = None


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class BillingEventProcessor:
    """Thin orchestration over SubscriptionReconciler + CreditLedger."""

    def __init__(self, db: Session, provider: Optional[BillingProvider] = None):
        self.db = db
        self.provider = provider
        self.reconciler = SubscriptionReconciler(db)
        self.ledger = CreditLedger(db)
        self.rewards = RewardsService(db, self.ledger)

    # ==========================================
    # PROVIDER CANCELLATION
    # ==========================================

    def cancel_at_provider(self, subscriptions: List[Subscription]) -> List[ProviderCancelResult]:
        """Cancel already-canceled-locally subscriptions at the billing provider."""
        results = []
        for subscription in subscriptions:
            if self.provider is None:
                logger.warning(
                    f"No billing provider configured, provider cancel skipped: "
                    f"subscription_id={subscription.subscription_id}"
                )
                results.append(ProviderCancelResult(
                    subscription_id=subscription.subscription_id,
                    local_success=True,
                    provider_success=False,
                    error="billing provider not configured",
                ))
                continue

            if subscription.provider != self.provider.name:
                results.append(ProviderCancelResult(
                    subscription_id=subscription.subscription_id,
                    local_success=True,
                    provider_success=False,
                    error=f"no client for provider {subscription.provider}",
                ))
                continue

            try:
                self.provider.cancel_subscription(subscription.subscription_id)
                results.append(ProviderCancelResult(
                    subscription_id=subscription.subscription_id,
                    local_success=True,
                    provider_success=True,
                ))
            except ProviderCancelFailed as e:
                logger.error(
                    f"Provider cancel failed, local cancel kept: "
                    f"subscription_id={subscription.subscription_id}, reason={e.reason}"
                )
                results.append(ProviderCancelResult(
                    subscription_id=subscription.subscription_id,
                    local_success=True,
                    provider_success=False,
                    error=e.reason,
                ))
        return results

    def reconcile_and_cancel(self, user_id: str) -> ReconcileOutcome:
        """Reconcile locally (committed), then cancel the demoted rows at the provider."""
        result = self.reconciler.reconcile(user_id)
        provider_results = self.cancel_at_provider(result.canceled)
        return ReconcileOutcome(
            user_id=user_id,
            kept=result.kept,
            canceled=result.canceled,
            provider_results=provider_results,
        )

    def cancel_subscription(self, subscription_id: str) -> ProviderCancelResult:
        """Cancel immediately: local first, provider second."""
        subscription = self.reconciler.downgrade_or_cancel(subscription_id, "free", schedule_at_period_end=False)
        return self.cancel_at_provider([subscription])[0]

    # ==========================================
    # PROVIDER-NEUTRAL EVENTS
    # ==========================================

    def _import_and_reconcile(self, record: SubscriptionImport) -> Tuple[Subscription, ReconcileOutcome]:
        """
        Import a snapshot, then reconcile its user.

        Rows demoted by the import itself (single-active index conflict) are
        canceled at the provider first and reported in the same outcome as
        the rows reconcile() cancels.
        """
        imported = self.reconciler.import_subscription(record)
        demoted_results = self.cancel_at_provider(imported.demoted)
        outcome = self.reconcile_and_cancel(imported.subscription.user_id)
        outcome.canceled = imported.demoted + outcome.canceled
        outcome.provider_results = demoted_results + outcome.provider_results
        subscription = self.reconciler.get_subscription(record.subscription_id)
        return subscription, outcome

    def handle_subscription_event(
        self,
        record: SubscriptionImport,
        plan_identifier: Optional[str] = None,
    ) -> SubscriptionEventOutcome:
        """
        Subscription created/updated.

        The initial grant is only issued for an active subscription that
        survived reconciliation and has not been granted before.
        """
        subscription, outcome = self._import_and_reconcile(record)

        grant = None
        is_kept = outcome.kept is not None and outcome.kept.id == subscription.id
        if subscription.status == "active" and is_kept:
            if has_initial_grant(self.ledger, subscription.subscription_id, subscription.provider):
                logger.info(f"Initial credits already granted: subscription_id={subscription.subscription_id}")
            else:
                grant = grant_subscription_credits(
                    self.ledger,
                    subscription.user_id,
                    plan_identifier or subscription.price_id or subscription.product_id or "",
                    subscription.subscription_id,
                    subscription.interval,
                    is_renewal=False,
                    provider=subscription.provider,
                )
                if grant is not None:
                    self.rewards.award_referral_for_paid_user(subscription.user_id, "subscription")

        return SubscriptionEventOutcome(subscription=subscription, reconcile=outcome, grant=grant)

    def handle_renewal(
        self,
        subscription_id: str,
        renewed_at: datetime,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        plan_identifier: Optional[str] = None,
    ) -> Optional[CreditTransaction]:
        """
        Subscription renewed for a new billing cycle.

        renewed_at should come from the provider event (invoice time) so a
        redelivered event maps to the same reference id and is ignored.
        """
        subscription = self.reconciler.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription not found for subscription_id={subscription_id}")

        subscription, _ = self._import_and_reconcile(SubscriptionImport(
            user_id=subscription.user_id,
            provider=subscription.provider,
            subscription_id=subscription.subscription_id,
            customer_id=subscription.customer_id,
            price_id=subscription.price_id,
            product_id=subscription.product_id,
            status="active",
            interval=subscription.interval,
            period_start=period_start or subscription.period_start,
            period_end=period_end or subscription.period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
        ))
        if subscription.status != "active":
            logger.warning(f"Renewal for demoted subscription skipped: subscription_id={subscription_id}")
            return None

        return grant_subscription_credits(
            self.ledger,
            subscription.user_id,
            plan_identifier or subscription.price_id or subscription.product_id or "",
            subscription.subscription_id,
            subscription.interval,
            is_renewal=True,
            provider=subscription.provider,
            granted_at=renewed_at,
        )

    def handle_credit_pack_purchase(
        self,
        user_id: str,
        pack_id: str,
        checkout_id: str,
        provider: Optional[str] = None,
    ) -> CreditTransaction:
        """One-time pack purchase; a redelivered checkout grants nothing extra."""
        grant = grant_credit_pack(self.ledger, user_id, pack_id, checkout_id, provider=provider)
        self.rewards.award_referral_for_paid_user(user_id, "credit_pack")
        return grant

    def _move_status(self, subscription_id: str, status: str) -> Optional[Subscription]:
        try:
            return self.reconciler.transition(subscription_id, status)
        except SubscriptionNotFound:
            logger.warning(f"Status event for unknown subscription: subscription_id={subscription_id}")
        except InvalidStatusTransition as e:
            logger.warning(f"Status event ignored: {e}")
        return None

    def handle_payment_failed(self, subscription_id: str) -> Optional[Subscription]:
        return self._move_status(subscription_id, "past_due")

    def handle_subscription_deleted(self, subscription_id: str) -> Optional[Subscription]:
        return self._move_status(subscription_id, "canceled")

    # ==========================================
    # STRIPE EVENTS
    # ==========================================

    def _user_id_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        row = (
            self.db.query(Subscription.user_id)
            .filter(Subscription.customer_id == customer_id)
            .first()
        )
        return row[0] if row else None

    def _stripe_subscription_import(self, subscription_data: Dict[str, Any]) -> SubscriptionImport:
        metadata = subscription_data.get("metadata") or {}
        customer_id = subscription_data.get("customer")
        user_id = metadata.get("user_id") or self._user_id_for_customer(customer_id)
        if not user_id:
            raise ValueError(f"Cannot identify user for customer_id={customer_id}")

        item = ((subscription_data.get("items") or {}).get("data") or [{}])[0]
        price = item.get("price") or {}
        recurring = price.get("recurring") or {}

        return SubscriptionImport(
            user_id=str(user_id),
            provider="stripe",
            subscription_id=subscription_data.get("id"),
            customer_id=customer_id,
            price_id=price.get("id"),
            product_id=price.get("product"),
            status=subscription_data.get("status"),
            interval=recurring.get("interval"),
            period_start=_from_timestamp(
                subscription_data.get("current_period_start") or item.get("current_period_start")
            ),
            period_end=_from_timestamp(
                subscription_data.get("current_period_end") or item.get("current_period_end")
            ),
            cancel_at_period_end=bool(subscription_data.get("cancel_at_period_end")),
        )

    def handle_stripe_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Dispatch a verified Stripe webhook event.

        Returns a small summary for the webhook response and logs.
        """
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}

        if event_type in ("customer.subscription.created", "customer.subscription.updated"):
            outcome = self.handle_subscription_event(self._stripe_subscription_import(data))
            return {
                "event_type": event_type,
                "handled": True,
                "status": outcome.subscription.status,
                "credits_granted": outcome.grant.amount if outcome.grant else 0,
                "provider_cancel_failures": outcome.reconcile.failed_provider_cancels,
            }

        if event_type == "customer.subscription.deleted":
            self.handle_subscription_deleted(data.get("id"))
            return {"event_type": event_type, "handled": True}

        if event_type == "invoice.payment_succeeded":
            subscription_id = data.get("subscription")
            if not subscription_id or data.get("billing_reason") != "subscription_cycle":
                return {"event_type": event_type, "handled": False}
            line = ((data.get("lines") or {}).get("data") or [{}])[0]
            period = line.get("period") or {}
            grant = self.handle_renewal(
                subscription_id,
                renewed_at=_from_timestamp(data.get("created")) or datetime.now(timezone.utc),
                period_start=_from_timestamp(period.get("start")),
                period_end=_from_timestamp(period.get("end")),
            )
            return {
                "event_type": event_type,
                "handled": True,
                "credits_granted": grant.amount if grant else 0,
            }

        if event_type == "invoice.payment_failed":
            subscription_id = data.get("subscription")
            if subscription_id:
                self.handle_payment_failed(subscription_id)
            return {"event_type": event_type, "handled": bool(subscription_id)}

        if event_type == "checkout.session.completed":
            if data.get("mode") != "payment" or data.get("payment_status") != "paid":
                return {"event_type": event_type, "handled": False}
            metadata = data.get("metadata") or {}
            user_id = metadata.get("user_id") or data.get("client_reference_id")
            pack_id = metadata.get("pack_id")
            if not user_id or not get_pack_credits(pack_id or ""):
                raise ValueError(f"Checkout {data.get('id')} has no user or known credit pack")
            grant = self.handle_credit_pack_purchase(str(user_id), pack_id, data.get("id"), provider="stripe")
            return {
                "event_type": event_type,
                "handled": True,
                "credits_granted": grant.amount,
            }

        logger.debug(f"Unhandled billing event: {event_type}")
        return {"event_type": event_type, "handled": False}


def build_processor(db: Session, provider: Optional[BillingProvider] = None) -> BillingEventProcessor:
    """Processor wired to the configured billing provider."""
    if provider is None and BILLING_PROVIDER == "stripe":
        from credit_ledger.services.billing_provider import StripeBillingProvider
        provider = StripeBillingProvider()
    return BillingEventProcessor(db, provider)
