"""
Tests for billing event orchestration: import, reconcile, provider cancel, grant.
"""
from datetime import datetime, timezone

import pytest

from credit_ledger.core.errors import ProviderCancelFailed, SubscriptionNotFound
from credit_ledger.db.models.credit_transaction import CreditTransaction
from credit_ledger.schemas.subscription import SubscriptionImport
from credit_ledger.services.billing_events import BillingEventProcessor
from credit_ledger.services.credit_ledger import CreditLedger


class FakeBillingProvider:
    """Records cancel calls; fails for ids listed in fail_for."""

    name = "stripe"

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.canceled = []

    def cancel_subscription(self, subscription_id):
        if subscription_id in self.fail_for:
            raise ProviderCancelFailed(subscription_id, "provider unavailable")
        self.canceled.append(subscription_id)


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def processor(db, provider):
    return BillingEventProcessor(db, provider)


def subscription_record(subscription_id, status="active", period_end=datetime(2026, 3, 1), **fields):
    return SubscriptionImport(
        user_id=fields.pop("user_id", "user_1"),
        provider=fields.pop("provider", "stripe"),
        subscription_id=subscription_id,
        price_id=fields.pop("price_id", "price_pro_monthly"),
        status=status,
        interval="month",
        period_end=period_end,
        **fields,
    )


def balance(db, user_id="user_1"):
    return CreditLedger(db).get_balance(user_id)["balance"]


# ==========================================
# SUBSCRIPTION EVENTS
# ==========================================

def test_new_active_subscription_grants_initial_credits(db, processor):
    outcome = processor.handle_subscription_event(subscription_record("sub_1"))

    assert outcome.subscription.status == "active"
    assert outcome.grant.amount == 500
    assert balance(db) == 500


def test_redelivered_subscription_event_grants_once(db, processor):
    processor.handle_subscription_event(subscription_record("sub_1"))
    outcome = processor.handle_subscription_event(subscription_record("sub_1"))

    assert outcome.grant is None
    assert balance(db) == 500
    assert db.query(CreditTransaction).count() == 1


def test_trialing_subscription_waits_for_activation(db, processor):
    outcome = processor.handle_subscription_event(subscription_record("sub_1", status="trialing"))
    assert outcome.grant is None
    assert balance(db) == 0

    outcome = processor.handle_subscription_event(subscription_record("sub_1", status="active"))
    assert outcome.grant.amount == 500


def test_second_active_subscription_cancels_older_at_provider(db, processor, provider):
    processor.handle_subscription_event(subscription_record("sub_old", period_end=datetime(2026, 2, 1)))

    outcome = processor.handle_subscription_event(
        subscription_record("sub_new", price_id="price_proplus_monthly", period_end=datetime(2026, 3, 1))
    )

    assert outcome.reconcile.kept.subscription_id == "sub_new"
    assert [s.subscription_id for s in outcome.reconcile.canceled] == ["sub_old"]
    assert provider.canceled == ["sub_old"]
    assert outcome.reconcile.provider_success
    assert outcome.grant.amount == 900
    assert balance(db) == 1400


def test_demoted_subscription_gets_no_grant(db, processor, provider):
    processor.handle_subscription_event(subscription_record("sub_current", period_end=datetime(2026, 3, 1)))

    outcome = processor.handle_subscription_event(
        subscription_record("sub_stale", period_end=datetime(2026, 1, 1))
    )

    assert outcome.subscription.status == "canceled"
    assert outcome.grant is None
    assert provider.canceled == ["sub_stale"]
    assert [s.subscription_id for s in outcome.reconcile.canceled] == ["sub_stale"]
    assert balance(db) == 500


def test_import_demotion_provider_failure_is_partial_success(db):
    provider = FakeBillingProvider(fail_for={"sub_old"})
    processor = BillingEventProcessor(db, provider)
    processor.handle_subscription_event(subscription_record("sub_old", period_end=datetime(2026, 2, 1)))

    outcome = processor.handle_subscription_event(subscription_record("sub_new", period_end=datetime(2026, 3, 1)))

    assert outcome.reconcile.failed_provider_cancels == ["sub_old"]
    result = outcome.reconcile.provider_results[0]
    assert result.local_success is True
    assert result.provider_success is False
    assert result.error == "provider unavailable"
    assert processor.reconciler.get_subscription("sub_old").status == "canceled"
    assert processor.reconciler.find_active_subscription("user_1").subscription_id == "sub_new"


# ==========================================
# PROVIDER CANCELLATION
# ==========================================

@pytest.mark.usefixtures("without_single_active_index")
def test_provider_failure_is_partial_success(db):
    provider = FakeBillingProvider(fail_for={"sub_old"})
    processor = BillingEventProcessor(db, provider)
    processor.reconciler.import_or_update_subscription(subscription_record("sub_old", period_end=datetime(2026, 2, 1)))
    processor.reconciler.import_or_update_subscription(subscription_record("sub_new", period_end=datetime(2026, 3, 1)))

    outcome = processor.reconcile_and_cancel("user_1")

    assert not outcome.provider_success
    assert outcome.failed_provider_cancels == ["sub_old"]
    result = outcome.provider_results[0]
    assert result.local_success is True
    assert result.error == "provider unavailable"
    # Local cancel is kept even though the provider call failed
    assert processor.reconciler.get_subscription("sub_old").status == "canceled"


@pytest.mark.usefixtures("without_single_active_index")
def test_reconcile_without_provider_reports_failure(db):
    processor = BillingEventProcessor(db, provider=None)
    processor.reconciler.import_or_update_subscription(subscription_record("sub_a", period_end=datetime(2026, 2, 1)))
    processor.reconciler.import_or_update_subscription(subscription_record("sub_b", period_end=datetime(2026, 3, 1)))

    outcome = processor.reconcile_and_cancel("user_1")

    assert outcome.failed_provider_cancels == ["sub_a"]
    assert outcome.provider_results[0].error == "billing provider not configured"


@pytest.mark.usefixtures("without_single_active_index")
def test_provider_mismatch_not_sent_to_wrong_provider(db, processor, provider):
    processor.reconciler.import_or_update_subscription(
        subscription_record("creem_sub", provider="creem", period_end=datetime(2026, 2, 1))
    )
    processor.reconciler.import_or_update_subscription(subscription_record("sub_b", period_end=datetime(2026, 3, 1)))

    outcome = processor.reconcile_and_cancel("user_1")

    assert provider.canceled == []
    assert outcome.provider_results[0].error == "no client for provider creem"


def test_cancel_subscription_local_then_provider(db, processor, provider):
    processor.reconciler.import_or_update_subscription(subscription_record("sub_1"))

    result = processor.cancel_subscription("sub_1")

    assert result.provider_success
    assert provider.canceled == ["sub_1"]
    assert processor.reconciler.get_subscription("sub_1").status == "canceled"


# ==========================================
# RENEWALS / STATUS EVENTS
# ==========================================

def test_renewal_grants_once_per_cycle(db, processor):
    processor.handle_subscription_event(subscription_record("sub_1"))
    renewed_at = datetime(2026, 3, 1, 0, 5, tzinfo=timezone.utc)

    first = processor.handle_renewal("sub_1", renewed_at, period_end=datetime(2026, 4, 1, tzinfo=timezone.utc))
    again = processor.handle_renewal("sub_1", renewed_at)

    assert first.id == again.id
    assert "_renewal_" in first.reference_id
    assert balance(db) == 1000


def test_renewal_unknown_subscription(processor):
    with pytest.raises(SubscriptionNotFound):
        processor.handle_renewal("missing", datetime(2026, 3, 1, tzinfo=timezone.utc))


def test_payment_failed_moves_to_past_due(processor):
    processor.handle_subscription_event(subscription_record("sub_1"))
    assert processor.handle_payment_failed("sub_1").status == "past_due"
    assert processor.handle_payment_failed("missing") is None


def test_subscription_deleted(processor):
    processor.handle_subscription_event(subscription_record("sub_1"))
    assert processor.handle_subscription_deleted("sub_1").status == "canceled"
    # Deleting again is a no-op, not an error
    assert processor.handle_subscription_deleted("sub_1").status == "canceled"


# ==========================================
# STRIPE EVENTS
# ==========================================

def stripe_subscription_event(event_type, subscription_id="sub_stripe_1", status="active", **overrides):
    data = {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": 1767225600,
        "current_period_end": 1769904000,
        "metadata": {"user_id": "user_1"},
        "items": {"data": [{
            "price": {"id": "price_pro_monthly", "product": "prod_pro", "recurring": {"interval": "month"}},
        }]},
    }
    data.update(overrides)
    return {"id": "evt_1", "type": event_type, "data": {"object": data}}


def test_stripe_subscription_created(db, processor):
    summary = processor.handle_stripe_event(stripe_subscription_event("customer.subscription.created"))

    assert summary["handled"] is True
    assert summary["credits_granted"] == 500
    subscription = processor.reconciler.get_subscription("sub_stripe_1")
    assert subscription.customer_id == "cus_123"
    assert subscription.product_id == "prod_pro"
    assert subscription.period_end == datetime(2026, 2, 1)


def test_stripe_event_finds_user_by_customer(db, processor):
    processor.handle_stripe_event(stripe_subscription_event("customer.subscription.created"))

    summary = processor.handle_stripe_event(stripe_subscription_event(
        "customer.subscription.updated", cancel_at_period_end=True, metadata={}
    ))

    assert summary["handled"] is True
    assert processor.reconciler.get_subscription("sub_stripe_1").cancel_at_period_end is True


def test_stripe_event_unknown_user_raises(processor):
    with pytest.raises(ValueError):
        processor.handle_stripe_event(stripe_subscription_event(
            "customer.subscription.created", metadata={}, customer="cus_unknown"
        ))


def test_stripe_cycle_invoice_grants_renewal(db, processor):
    processor.handle_stripe_event(stripe_subscription_event("customer.subscription.created"))
    invoice = {
        "id": "evt_2",
        "type": "invoice.payment_succeeded",
        "data": {"object": {
            "subscription": "sub_stripe_1",
            "billing_reason": "subscription_cycle",
            "created": 1769904300,
            "lines": {"data": [{"period": {"start": 1769904000, "end": 1772323200}}]},
        }},
    }

    first = processor.handle_stripe_event(invoice)
    second = processor.handle_stripe_event(invoice)

    assert first["credits_granted"] == 500
    assert second["credits_granted"] == 500
    assert balance(db) == 1000


def test_stripe_first_invoice_not_treated_as_renewal(processor):
    summary = processor.handle_stripe_event({
        "type": "invoice.payment_succeeded",
        "data": {"object": {"subscription": "sub_1", "billing_reason": "subscription_create"}},
    })
    assert summary["handled"] is False


def test_stripe_payment_failed_and_deleted(processor):
    processor.handle_stripe_event(stripe_subscription_event("customer.subscription.created"))

    processor.handle_stripe_event({
        "type": "invoice.payment_failed",
        "data": {"object": {"subscription": "sub_stripe_1"}},
    })
    assert processor.reconciler.get_subscription("sub_stripe_1").status == "past_due"

    processor.handle_stripe_event({
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_stripe_1"}},
    })
    assert processor.reconciler.get_subscription("sub_stripe_1").status == "canceled"


def test_unhandled_stripe_event(processor):
    assert processor.handle_stripe_event({"type": "charge.refunded", "data": {"object": {}}})["handled"] is False


def test_stripe_second_subscription_cancels_first_at_provider(db, processor, provider):
    processor.handle_stripe_event(stripe_subscription_event("customer.subscription.created"))

    summary = processor.handle_stripe_event(stripe_subscription_event(
        "customer.subscription.created",
        subscription_id="sub_stripe_2",
        current_period_end=1772323200,
    ))

    assert summary["status"] == "active"
    assert summary["provider_cancel_failures"] == []
    assert provider.canceled == ["sub_stripe_1"]
    assert processor.reconciler.get_subscription("sub_stripe_1").status == "canceled"


# ==========================================
# REFERRALS / CREDIT PACKS
# ==========================================

def test_initial_grant_pays_referrer_once(db, processor):
    processor.rewards.register_referral("user_1", "user_9")

    processor.handle_subscription_event(subscription_record("sub_1"))
    processor.handle_renewal("sub_1", datetime(2026, 3, 1, tzinfo=timezone.utc))

    assert balance(db, "user_9") == 10
    assert processor.rewards.get_referral("user_1").credits_awarded is True


def test_trialing_subscription_does_not_pay_referrer(db, processor):
    processor.rewards.register_referral("user_1", "user_9")

    processor.handle_subscription_event(subscription_record("sub_1", status="trialing"))

    assert balance(db, "user_9") == 0


def test_credit_pack_purchase_grants_and_pays_referrer(db, processor):
    processor.rewards.register_referral("user_1", "user_9")

    first = processor.handle_credit_pack_purchase("user_1", "pack-1000", "cs_1", provider="stripe")
    again = processor.handle_credit_pack_purchase("user_1", "pack-1000", "cs_1", provider="stripe")

    assert first.id == again.id
    assert first.reference_id == "purchase_stripe_cs_1"
    assert balance(db) == 1000
    assert balance(db, "user_9") == 10


def stripe_checkout_event(**overrides):
    data = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "client_reference_id": "user_1",
        "metadata": {"pack_id": "pack-2000"},
    }
    data.update(overrides)
    return {"id": "evt_3", "type": "checkout.session.completed", "data": {"object": data}}


def test_stripe_checkout_grants_credit_pack(db, processor):
    first = processor.handle_stripe_event(stripe_checkout_event())
    second = processor.handle_stripe_event(stripe_checkout_event())

    assert first["handled"] is True
    assert first["credits_granted"] == 2000
    assert second["credits_granted"] == 2000
    assert balance(db) == 2000


def test_stripe_subscription_checkout_not_treated_as_pack(db, processor):
    summary = processor.handle_stripe_event(stripe_checkout_event(mode="subscription"))

    assert summary["handled"] is False
    assert balance(db) == 0


def test_stripe_checkout_unknown_pack_raises(processor):
    with pytest.raises(ValueError):
        processor.handle_stripe_event(stripe_checkout_event(metadata={"pack_id": "pack-7"}))
