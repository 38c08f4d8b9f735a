"""
Grant the signup bonus to users who never received it.
Run: python -m scripts.fix_missing_signup_credits [--user-id ID ...] [--dry-run]

Without --user-id, every user known to the credit or subscription tables is
checked. The bonus is keyed on signup_{user_id}, so re-running never
double-grants.
"""
import argparse
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from credit_ledger.db.session import SessionLocal
from credit_ledger.db.models.credit_account import CreditAccount
from credit_ledger.db.models.subscription import Subscription
from credit_ledger.services.rewards_service import RewardsService
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def known_user_ids(db):
    accounts = {row[0] for row in db.query(CreditAccount.user_id).all()}
    subscribers = {row[0] for row in db.query(Subscription.user_id).distinct().all()}
    return sorted(accounts | subscribers)


def fix_missing_signup_credits(db, user_ids=None, dry_run=False):
    """Returns the list of user ids that were (or in dry-run, would be) granted."""
    rewards = RewardsService(db)
    granted = []
    for user_id in user_ids or known_user_ids(db):
        if rewards.has_signup_bonus(user_id):
            continue
        if dry_run:
            logger.info(f"[dry-run] would grant signup bonus: user_id={user_id}")
        else:
            rewards.grant_signup_bonus(user_id)
            logger.info(f"Granted missing signup bonus: user_id={user_id}")
        granted.append(user_id)
    return granted


def main(argv=None):
    parser = argparse.ArgumentParser(description="Backfill missing signup bonuses")
    parser.add_argument("--user-id", action="append", dest="user_ids", help="Check only this user (repeatable)")
    parser.add_argument("--dry-run", action="store_true", help="Report without granting")
    args = parser.parse_args(argv)

    db = SessionLocal()
    try:
        granted = fix_missing_signup_credits(db, args.user_ids, args.dry_run)
    except Exception:
        db.rollback()
        logger.error("Signup bonus backfill failed", exc_info=True)
        raise
    finally:
        db.close()

    print(f"\n{'Would grant' if args.dry_run else 'Granted'} signup bonus to {len(granted)} user(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
