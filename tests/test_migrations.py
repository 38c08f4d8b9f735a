"""
Tests for the data step of the single-active-subscription migration.
"""
import importlib.util
from datetime import datetime
from pathlib import Path

import pytest

from credit_ledger.db.models.subscription import Subscription

VERSIONS_DIR = Path(__file__).resolve().parents[1] / "alembic" / "versions"


def load_revision(filename):
    spec = importlib.util.spec_from_file_location(filename[:-3], VERSIONS_DIR / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def single_active_revision():
    return load_revision("8d4f2b6a1e37_single_active_subscription_index.py")


def add_subscription(db, subscription_id, user_id="user_1", period_end=None, **fields):
    db.add(Subscription(
        user_id=user_id,
        subscription_id=subscription_id,
        status=fields.pop("status", "active"),
        period_end=period_end,
        created_at=datetime(2026, 1, 1),
        **fields,
    ))
    db.commit()


def stored(db, subscription_id):
    return db.query(Subscription).filter(Subscription.subscription_id == subscription_id).populate_existing().one()


@pytest.mark.usefixtures("without_single_active_index")
def test_collapse_duplicate_actives_matches_reconcile(db, single_active_revision):
    add_subscription(db, "sub_feb", period_end=datetime(2026, 2, 1), cancel_at_period_end=True)
    add_subscription(db, "sub_mar", period_end=datetime(2026, 3, 1), cancel_at_period_end=True)
    add_subscription(db, "sub_open", status="past_due", cancel_at_period_end=True)
    add_subscription(db, "sub_other", user_id="user_2", cancel_at_period_end=True)

    canceled = single_active_revision.collapse_duplicate_actives(db.connection())
    db.commit()

    assert canceled == 2
    for subscription_id in ("sub_feb", "sub_open"):
        loser = stored(db, subscription_id)
        assert loser.status == "canceled"
        assert loser.cancel_at_period_end is False

    kept = stored(db, "sub_mar")
    assert kept.status == "active"
    assert kept.cancel_at_period_end is True
    assert stored(db, "sub_other").status == "active"


@pytest.mark.usefixtures("without_single_active_index")
def test_collapse_duplicate_actives_is_noop_when_converged(db, single_active_revision):
    add_subscription(db, "sub_1", period_end=datetime(2026, 2, 1))
    add_subscription(db, "sub_2", status="canceled")

    assert single_active_revision.collapse_duplicate_actives(db.connection()) == 0
