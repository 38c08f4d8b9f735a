"""
Tests for the maintenance scripts (reconcile sweep, CSV import, signup backfill).
"""
import csv
import io
from datetime import datetime

import pytest

from credit_ledger.core.errors import ProviderCancelFailed
from credit_ledger.services.credit_ledger import CreditLedger
from credit_ledger.services.subscription_reconciler import SubscriptionReconciler
from scripts.fix_missing_signup_credits import fix_missing_signup_credits
from scripts.import_subscriptions_csv import import_rows, parse_row
from scripts.reconcile_subscriptions import reconcile_users


class RecordingProvider:
    name = "stripe"

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.canceled = []

    def cancel_subscription(self, subscription_id):
        if subscription_id in self.fail_for:
            raise ProviderCancelFailed(subscription_id, "rate limited")
        self.canceled.append(subscription_id)


CSV_TEXT = """user_id,provider,subscription_id,customer_id,price_id,product_id,status,interval,period_start,period_end,cancel_at_period_end
user_1,stripe,sub_a,cus_1,price_pro_monthly,,active,month,2026-01-01T00:00:00,2026-02-01T00:00:00,false
user_1,stripe,sub_b,cus_1,price_proplus_monthly,,active,month,2026-02-01T00:00:00,2026-03-01T00:00:00,FALSE
user_2,creem,sub_c,,,prod_pro,Cancelled,Monthly,,,yes
user_3,paypal,sub_d,,,,active,month,,,
"""


def csv_rows():
    return list(csv.DictReader(io.StringIO(CSV_TEXT)))


def test_parse_row_blank_cells_and_flags():
    record = parse_row(csv_rows()[2])

    assert record.provider == "creem"
    assert record.status == "canceled"
    assert record.interval == "month"
    assert record.price_id is None
    assert record.period_end is None
    assert record.cancel_at_period_end is True


def test_import_rows_skips_invalid_and_is_repeatable(db):
    summary = import_rows(db, csv_rows())

    assert summary["imported"] == 3
    assert summary["skipped"] == 1
    assert summary["users"] == {"user_1", "user_2"}
    assert summary["demoted"] == ["sub_a"]

    again = import_rows(db, csv_rows())
    assert again["imported"] == 3
    reconciler = SubscriptionReconciler(db)
    assert len(reconciler.list_subscriptions("user_1")) == 2


def test_import_rows_with_reconcile(db):
    provider = RecordingProvider()
    summary = import_rows(db, csv_rows(), reconcile=True, provider=provider)

    reconciler = SubscriptionReconciler(db)
    assert reconciler.find_active_subscription("user_1").subscription_id == "sub_b"
    assert provider.canceled == ["sub_a"]
    assert summary["provider_failures"] == []


def test_import_rows_without_reconcile_leaves_provider_alone(db):
    provider = RecordingProvider()
    summary = import_rows(db, csv_rows(), provider=provider)

    assert summary["demoted"] == ["sub_a"]
    assert provider.canceled == []
    assert SubscriptionReconciler(db).get_subscription("sub_a").status == "canceled"


def test_import_rows_reports_demoted_provider_failures(db):
    provider = RecordingProvider(fail_for={"sub_a"})
    summary = import_rows(db, csv_rows(), reconcile=True, provider=provider)

    assert summary["provider_failures"] == ["sub_a"]
    assert SubscriptionReconciler(db).find_active_subscription("user_1").subscription_id == "sub_b"


@pytest.mark.usefixtures("without_single_active_index")
def test_reconcile_users_sweeps_duplicates(db):
    reconciler = SubscriptionReconciler(db)
    for subscription_id, period_end in (("sub_1", datetime(2026, 2, 1)), ("sub_2", datetime(2026, 3, 1))):
        reconciler.import_or_update_subscription({
            "user_id": "user_1", "subscription_id": subscription_id, "period_end": period_end,
        })
    reconciler.import_or_update_subscription({"user_id": "user_2", "subscription_id": "sub_3"})

    dry_run = reconcile_users(db, dry_run=True)
    assert dry_run["users"] == 1
    assert dry_run["canceled"] == 0

    summary = reconcile_users(db, provider=RecordingProvider(fail_for={"sub_1"}))
    assert summary["canceled"] == 1
    assert summary["provider_failures"] == ["sub_1"]
    assert reconciler.find_users_with_duplicate_actives() == []

    # Converged: nothing left to sweep
    assert reconcile_users(db, provider=RecordingProvider())["users"] == 0


def test_fix_missing_signup_credits(db):
    ledger = CreditLedger(db)
    ledger.earn("user_1", 30, "bonus", "Sign-up bonus", "signup_user_1")
    ledger.earn("user_2", 5, "social_share", "Shared", "social_share_s1", {"share_id": "s1", "platform": "x"})
    SubscriptionReconciler(db).import_or_update_subscription({"user_id": "user_3", "subscription_id": "sub_1"})

    assert fix_missing_signup_credits(db, dry_run=True) == ["user_2", "user_3"]
    assert ledger.get_balance("user_2")["balance"] == 5

    assert fix_missing_signup_credits(db) == ["user_2", "user_3"]
    assert ledger.get_balance("user_2")["balance"] == 35
    assert ledger.get_balance("user_3")["balance"] == 30

    assert fix_missing_signup_credits(db) == []
