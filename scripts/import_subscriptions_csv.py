"""
Backfill subscriptions from a CSV export.
Run: python -m scripts.import_subscriptions_csv subscriptions.csv [--reconcile]

Expected header (extra columns are ignored):
    user_id,provider,subscription_id,customer_id,price_id,product_id,status,
    interval,period_start,period_end,cancel_at_period_end

Every row goes through the same upsert as webhooks, so re-importing the same
file is a no-op and duplicate actives are resolved by the usual precedence.
"""
import argparse
import csv
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from credit_ledger.db.session import SessionLocal
from credit_ledger.schemas.subscription import SubscriptionImport
from credit_ledger.services.billing_events import build_processor
from credit_ledger.services.subscription_reconciler import SubscriptionReconciler
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "y", "t"}


def parse_row(row: dict) -> SubscriptionImport:
    """Turn a CSV row into a SubscriptionImport; blank cells become None."""
    values = {key.strip(): (value.strip() if isinstance(value, str) else value) for key, value in row.items() if key}
    values = {key: value for key, value in values.items() if value not in ("", None)}
    values["cancel_at_period_end"] = str(values.get("cancel_at_period_end", "")).lower() in TRUE_VALUES
    return SubscriptionImport(**{k: v for k, v in values.items() if k in SubscriptionImport.model_fields})


def import_rows(db, rows, reconcile=False, provider=None):
    """
    Import rows; returns a summary dict. Bad rows are logged and skipped.

    Rows canceled locally because a newer active subscription won the
    single-active check are listed under "demoted". With reconcile=True they
    are also canceled at the provider before the affected users are reconciled.
    """
    reconciler = SubscriptionReconciler(db)
    summary = {"imported": 0, "skipped": 0, "users": set(), "demoted": [], "provider_failures": []}
    demoted = {}

    for line_number, row in enumerate(rows, start=2):
        try:
            record = parse_row(row)
            result = reconciler.import_subscription(record)
        except (ValidationError, ValueError, IntegrityError) as e:
            db.rollback()
            logger.error(f"Skipping line {line_number}: {e}")
            summary["skipped"] += 1
            continue
        summary["imported"] += 1
        summary["users"].add(record.user_id)
        for subscription in result.demoted:
            demoted[subscription.subscription_id] = subscription

    summary["demoted"] = sorted(demoted)

    if reconcile:
        processor = build_processor(db, provider)
        for result in processor.cancel_at_provider([demoted[key] for key in sorted(demoted)]):
            if not result.provider_success:
                summary["provider_failures"].append(result.subscription_id)
        for user_id in sorted(summary["users"]):
            outcome = processor.reconcile_and_cancel(user_id)
            summary["provider_failures"].extend(outcome.failed_provider_cancels)

    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Backfill subscriptions from a CSV export")
    parser.add_argument("csv_path", help="Path to the CSV file")
    parser.add_argument("--reconcile", action="store_true", help="Reconcile and provider-cancel affected users afterwards")
    args = parser.parse_args(argv)

    db = SessionLocal()
    try:
        with open(args.csv_path, newline="", encoding="utf-8") as f:
            summary = import_rows(db, csv.DictReader(f), reconcile=args.reconcile)
    finally:
        db.close()

    print(
        f"\nImported: {summary['imported']}, skipped: {summary['skipped']}, "
        f"users: {len(summary['users'])}, demoted: {len(summary['demoted'])}"
    )
    if summary["demoted"] and not args.reconcile:
        print("  Demoted subscriptions are canceled locally only; re-run with --reconcile to cancel them at the provider")
    for subscription_id in summary["provider_failures"]:
        print(f"  [RETRY] provider cancel failed for {subscription_id}")
    return 1 if summary["skipped"] or summary["provider_failures"] else 0


if __name__ == "__main__":
    sys.exit(main())
