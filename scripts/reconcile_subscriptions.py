"""
Collapse duplicate active subscriptions and cancel the losers at the provider.
Run: python -m scripts.reconcile_subscriptions [--user-id ID ...] [--dry-run]

Without --user-id every user with more than one active/trialing/past_due
subscription is swept. Safe to re-run: a converged user is a no-op.
"""
import argparse
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from credit_ledger.db.session import SessionLocal
from credit_ledger.services.billing_events import build_processor
from credit_ledger.services.subscription_reconciler import SubscriptionReconciler
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def reconcile_users(db, user_ids=None, dry_run=False, provider=None):
    """
    Reconcile the given users (or every user with duplicates).

    Returns a dict with counts and the subscription ids whose provider cancel failed.
    """
    reconciler = SubscriptionReconciler(db)
    user_ids = list(user_ids or reconciler.find_users_with_duplicate_actives())
    summary = {"users": len(user_ids), "canceled": 0, "provider_failures": []}

    if dry_run:
        for user_id in user_ids:
            actives = reconciler.list_active_subscriptions(user_id)
            logger.info(f"[dry-run] user_id={user_id} active_subscriptions={len(actives)}")
        return summary

    processor = build_processor(db, provider)
    for user_id in user_ids:
        outcome = processor.reconcile_and_cancel(user_id)
        summary["canceled"] += len(outcome.canceled)
        summary["provider_failures"].extend(outcome.failed_provider_cancels)
        logger.info(
            f"Reconciled user_id={user_id}: kept={outcome.kept.subscription_id if outcome.kept else None}, "
            f"canceled={[s.subscription_id for s in outcome.canceled]}"
        )
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.split("\n")[1])
    parser.add_argument("--user-id", action="append", dest="user_ids", help="Reconcile only this user (repeatable)")
    parser.add_argument("--dry-run", action="store_true", help="List affected users without changing anything")
    args = parser.parse_args(argv)

    db = SessionLocal()
    try:
        summary = reconcile_users(db, args.user_ids, args.dry_run)
    finally:
        db.close()

    print(
        f"\nUsers: {summary['users']}, canceled: {summary['canceled']}, "
        f"provider failures: {len(summary['provider_failures'])}"
    )
    for subscription_id in summary["provider_failures"]:
        print(f"  [RETRY] provider cancel failed for {subscription_id}")
    return 1 if summary["provider_failures"] else 0


if __name__ == "__main__":
    sys.exit(main())
