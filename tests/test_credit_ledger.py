"""
Unit tests for the credit ledger service.
Tests earn/spend idempotency, balance boundaries, freeze/unfreeze and admin adjustments.
"""
import pytest
from pydantic import ValidationError

from credit_ledger.core.errors import AccountNotFound, InsufficientCredits, InvalidAmount
from credit_ledger.db.models.credit_account import CreditAccount
from credit_ledger.db.models.credit_transaction import CreditTransaction
from credit_ledger.schemas.credits import deserialize_metadata
from credit_ledger.services.credit_ledger import MAX_CREDIT_AMOUNT, CreditLedger


@pytest.fixture
def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def funded_user(ledger):
    """User with 100 credits."""
    ledger.earn("user_1", 100, "bonus", "Starting credits", "seed_user_1")
    return "user_1"


def transaction_count(db, user_id):
    return db.query(CreditTransaction).filter(CreditTransaction.user_id == user_id).count()


# ==========================================
# EARN
# ==========================================

def test_earn_creates_account_lazily(ledger, db):
    """First earn creates the account and records one row."""
    assert ledger.get_account("new_user") is None

    txn = ledger.earn("new_user", 30, "bonus", "Sign-up bonus", "signup_new_user")

    account = ledger.get_account("new_user")
    assert account.balance == 30
    assert account.total_earned == 30
    assert txn.type == "earn"
    assert txn.amount == 30
    assert txn.balance_after == 30
    assert transaction_count(db, "new_user") == 1


def test_earn_same_reference_applies_once(ledger, db):
    first = ledger.earn("user_1", 50, "purchase", "Pack", "purchase_stripe_cs_1")
    second = ledger.earn("user_1", 50, "purchase", "Pack", "purchase_stripe_cs_1")

    assert first.id == second.id
    assert ledger.get_balance("user_1")["balance"] == 50
    assert transaction_count(db, "user_1") == 1


@pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10", MAX_CREDIT_AMOUNT + 1, 3_000_000_000])
def test_earn_rejects_invalid_amounts(ledger, db, amount):
    with pytest.raises(InvalidAmount):
        ledger.earn("user_1", amount, "bonus", "bad", f"bad_{amount!r}")
    assert db.query(CreditAccount).count() == 0


def test_earn_up_to_max_amount(ledger):
    txn = ledger.earn("user_1", MAX_CREDIT_AMOUNT, "bonus", "Max grant", "max_1")
    assert txn.balance_after == MAX_CREDIT_AMOUNT


def test_earn_that_would_overflow_balance_rejected(ledger, funded_user):
    with pytest.raises(InvalidAmount):
        ledger.earn(funded_user, MAX_CREDIT_AMOUNT - 99, "bonus", "Too much", "overflow_1")

    assert ledger.get_balance(funded_user)["balance"] == 100
    assert ledger.find_by_reference("overflow_1") is None
    assert ledger.verify_balance(funded_user)


@pytest.mark.parametrize("operation", ["spend", "freeze", "unfreeze"])
def test_over_limit_amount_rejected_before_any_write(ledger, funded_user, operation):
    with pytest.raises(InvalidAmount):
        if operation == "spend":
            ledger.spend(funded_user, MAX_CREDIT_AMOUNT + 1, "api_call", "Job")
        else:
            getattr(ledger, operation)(funded_user, MAX_CREDIT_AMOUNT + 1)
    assert transaction_count(ledger.db, funded_user) == 1


def test_earn_requires_reference(ledger):
    with pytest.raises(ValueError):
        ledger.earn("user_1", 10, "bonus", "no key", "")


def test_earn_validates_metadata_for_source(ledger, db):
    """Metadata that does not match the source schema is rejected before any write."""
    with pytest.raises(ValidationError):
        ledger.earn("user_1", 2, "checkin", "Check-in", "checkin_user_1_x", {"foo": "bar"})
    assert ledger.get_account("user_1") is None


def test_earn_stores_metadata(ledger):
    txn = ledger.earn(
        "user_1", 10, "referral", "Referral reward", "referral_user_2",
        {"referred_user_id": "user_2"},
    )
    assert deserialize_metadata(txn.metadata_json) == {"referred_user_id": "user_2"}


# ==========================================
# SPEND
# ==========================================

def test_spend_exact_balance_reaches_zero(ledger, funded_user):
    txn = ledger.spend(funded_user, 100, "api_call", "Big job", "task_1")

    assert txn.balance_after == 0
    balance = ledger.get_balance(funded_user)
    assert balance["balance"] == 0
    assert balance["total_spent"] == 100


def test_spend_one_over_balance_fails_without_side_effects(ledger, db, funded_user):
    with pytest.raises(InsufficientCredits) as exc_info:
        ledger.spend(funded_user, 101, "api_call", "Too big", "task_2")

    assert exc_info.value.required == 101
    assert exc_info.value.available == 100
    assert ledger.get_balance(funded_user)["balance"] == 100
    assert transaction_count(db, funded_user) == 1


def test_spend_without_account_fails(ledger, db):
    with pytest.raises(InsufficientCredits) as exc_info:
        ledger.spend("ghost", 1, "api_call", "Job")

    assert exc_info.value.available == 0
    assert ledger.get_account("ghost") is None


def test_spend_without_reference_gets_generated_key(ledger, funded_user):
    txn = ledger.spend(funded_user, 5, "api_call", "Job")
    assert txn.reference_id.startswith("spend_")


def test_spend_same_reference_applies_once(ledger, db, funded_user):
    first = ledger.spend(funded_user, 10, "api_call", "Job", "task_3")
    second = ledger.spend(funded_user, 10, "api_call", "Job", "task_3")

    assert first.id == second.id
    assert ledger.get_balance(funded_user)["balance"] == 90


def test_has_enough_credits(ledger, funded_user):
    assert ledger.has_enough_credits(funded_user, 100)
    assert not ledger.has_enough_credits(funded_user, 101)
    assert not ledger.has_enough_credits("nobody", 1)


# ==========================================
# FREEZE / UNFREEZE
# ==========================================

def test_freeze_reduces_spendable_not_balance(ledger, funded_user):
    ledger.freeze(funded_user, 40, "Dispute hold")

    balance = ledger.get_balance(funded_user)
    assert balance["balance"] == 100
    assert balance["frozen_balance"] == 40
    assert balance["spendable_balance"] == 60

    with pytest.raises(InsufficientCredits):
        ledger.spend(funded_user, 61, "api_call", "Job")
    ledger.spend(funded_user, 60, "api_call", "Job")
    assert ledger.get_balance(funded_user)["balance"] == 40


def test_freeze_whole_balance_allowed(ledger, funded_user):
    ledger.freeze(funded_user, 100)
    assert ledger.get_balance(funded_user)["spendable_balance"] == 0


def test_freeze_more_than_balance_rejected(ledger, funded_user):
    with pytest.raises(InvalidAmount):
        ledger.freeze(funded_user, 101)
    assert ledger.get_balance(funded_user)["frozen_balance"] == 0


def test_freeze_unknown_account(ledger):
    with pytest.raises(AccountNotFound):
        ledger.freeze("ghost", 1)


def test_unfreeze_all(ledger, funded_user):
    ledger.freeze(funded_user, 30)
    txn = ledger.unfreeze(funded_user)

    assert txn.type == "unfreeze"
    assert txn.amount == 30
    assert ledger.get_balance(funded_user)["frozen_balance"] == 0


def test_unfreeze_nothing_frozen_returns_none(ledger, funded_user):
    assert ledger.unfreeze(funded_user) is None


def test_unfreeze_more_than_frozen_rejected(ledger, funded_user):
    ledger.freeze(funded_user, 10)
    with pytest.raises(InvalidAmount):
        ledger.unfreeze(funded_user, 11)
    assert ledger.get_balance(funded_user)["frozen_balance"] == 10


def test_unfreeze_unknown_account(ledger):
    with pytest.raises(AccountNotFound):
        ledger.unfreeze("ghost")


# ==========================================
# ADMIN ADJUST
# ==========================================

def test_admin_adjust_credit_and_debit(ledger, funded_user):
    ledger.admin_adjust(funded_user, 25, "Goodwill", "adj_1")
    txn = ledger.admin_adjust(funded_user, -50, "Refund reversal", "adj_2")

    assert txn.type == "admin_adjust"
    assert txn.amount == 50
    assert deserialize_metadata(txn.metadata_json)["direction"] == "debit"
    balance = ledger.get_balance(funded_user)
    assert balance["balance"] == 75
    # Corrections do not count as earned/spent
    assert balance["total_earned"] == 100
    assert balance["total_spent"] == 0
    assert ledger.verify_balance(funded_user)


def test_admin_adjust_cannot_debit_frozen_credits(ledger, funded_user):
    ledger.freeze(funded_user, 80)
    with pytest.raises(InvalidAmount):
        ledger.admin_adjust(funded_user, -21, "Too much", "adj_3")
    assert ledger.get_balance(funded_user)["balance"] == 100


def test_admin_adjust_zero_rejected(ledger, funded_user):
    with pytest.raises(InvalidAmount):
        ledger.admin_adjust(funded_user, 0, "Nothing", "adj_4")


def test_admin_adjust_idempotent(ledger, funded_user):
    ledger.admin_adjust(funded_user, 10, "Goodwill", "adj_5")
    ledger.admin_adjust(funded_user, 10, "Goodwill", "adj_5")
    assert ledger.get_balance(funded_user)["balance"] == 110


@pytest.mark.parametrize("delta", [MAX_CREDIT_AMOUNT + 1, -(MAX_CREDIT_AMOUNT + 1), MAX_CREDIT_AMOUNT])
def test_admin_adjust_over_limit_rejected(ledger, funded_user, delta):
    with pytest.raises(InvalidAmount):
        ledger.admin_adjust(funded_user, delta, "Typo", "adj_big")
    assert ledger.get_balance(funded_user)["balance"] == 100


# ==========================================
# READS
# ==========================================

def test_get_balance_unknown_user_is_zero(ledger, db):
    balance = ledger.get_balance("nobody")
    assert balance["balance"] == 0
    assert balance["spendable_balance"] == 0
    assert db.query(CreditAccount).count() == 0


def test_get_transactions_newest_first_and_filtered(ledger, funded_user):
    ledger.spend(funded_user, 5, "api_call", "Job", "task_a")
    ledger.earn(funded_user, 7, "bonus", "Promo", "promo_1")

    transactions = ledger.get_transactions(funded_user)
    assert [t.reference_id for t in transactions] == ["promo_1", "task_a", "seed_user_1"]

    spends = ledger.get_transactions(funded_user, type="spend")
    assert [t.reference_id for t in spends] == ["task_a"]

    page = ledger.get_transactions(funded_user, limit=1, offset=1)
    assert [t.reference_id for t in page] == ["task_a"]


def test_has_reference_prefix_escapes_wildcards(ledger):
    ledger.earn("user_1", 10, "bonus", "x", "stripeXsub_initial_1")

    assert ledger.has_reference_prefix("stripeXsub_")
    assert not ledger.has_reference_prefix("stripe_sub_")
    assert not ledger.has_reference_prefix("stripe%")


def test_replay_matches_stored_balance(ledger, funded_user):
    ledger.spend(funded_user, 30, "api_call", "Job")
    ledger.freeze(funded_user, 20)
    ledger.unfreeze(funded_user, 5)
    ledger.admin_adjust(funded_user, -10, "Fix", "adj_6")

    assert ledger.replay_balance(funded_user) == 60
    assert ledger.get_balance(funded_user)["balance"] == 60
    assert ledger.verify_balance(funded_user)
