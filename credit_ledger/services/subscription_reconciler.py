"""
Subscription reconciler.

Keeps at most one active/trialing/past_due subscription row per user. Rows
arrive from webhooks, manual imports and CSV backfills; all of them go
through import_subscription, and reconcile() collapses any
duplicates with a deterministic keep/cancel policy:

    period_end DESC NULLS LAST, created_at DESC, id DESC

This module only owns local-store consistency. Cancelling the demoted rows
at the billing provider is the caller's job (see billing_events).
"""
import calendar
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credit_ledger.core.errors import InvalidStatusTransition, SubscriptionNotFound
from credit_ledger.core.subscription_status import can_transition
from credit_ledger.db.base import utcnow
from credit_ledger.db.models.subscription import ACTIVE_STATUSES, SUBSCRIPTION_STATUSES, Subscription
from credit_ledger.db.upsert import insert_ignore
from credit_ledger.schemas.subscription import SubscriptionImport

logger = logging.getLogger(__name__)

FREE_PLAN_ID = "free"

# Order used both to pick the canonical active row and to resolve conflicts
PRECEDENCE = (
    Subscription.period_end.is_(None),
    Subscription.period_end.desc(),
    Subscription.created_at.desc(),
    Subscription.id.desc(),
)

_UPDATABLE_FIELDS = (
    "customer_id",
    "price_id",
    "product_id",
    "interval",
    "period_start",
    "period_end",
)


@dataclass
class ReconcileResult:
    kept: Optional[Subscription]
    canceled: List[Subscription] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.canceled)


@dataclass
class ImportResult:
    """Stored row plus any active rows the import canceled to keep a single active one."""
    subscription: Subscription
    demoted: List[Subscription] = field(default_factory=list)


def _naive_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.min
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _same_value(current, incoming) -> bool:
    # SQLite hands back naive datetimes; compare both sides in UTC
    if isinstance(current, datetime) and isinstance(incoming, datetime):
        return _naive_utc(current) == _naive_utc(incoming)
    return current == incoming


def _rank(period_end: Optional[datetime], created_at: Optional[datetime]):
    """Sort key matching PRECEDENCE: larger ranks win."""
    return (period_end is not None, _naive_utc(period_end), _naive_utc(created_at))


def add_interval(start: datetime, interval: Optional[str]) -> datetime:
    """Advance start by one billing interval, clamping to the end of shorter months."""
    months = 12 if interval == "year" else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class SubscriptionReconciler:
    """Single-active-subscription enforcement, bound to one database session."""

    def __init__(self, db: Session):
        self.db = db

    # ==========================================
    # READS
    # ==========================================

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Look up by provider subscription id."""
        return (
            self.db.query(Subscription)
            .filter(Subscription.subscription_id == subscription_id)
            .populate_existing()
            .first()
        )

    def _require(self, subscription_id: str) -> Subscription:
        subscription = self.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription not found for subscription_id={subscription_id}")
        return subscription

    def _active_query(self, user_id: str):
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status.in_(ACTIVE_STATUSES),
            )
            .order_by(*PRECEDENCE)
        )

    def list_active_subscriptions(self, user_id: str) -> List[Subscription]:
        """Active/trialing/past_due rows in PRECEDENCE order."""
        return self._active_query(user_id).all()

    def list_subscriptions(self, user_id: str) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    def find_active_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        Return the user's active/trialing/past_due subscription, or None.

        If duplicates exist this still answers, choosing by PRECEDENCE, so
        read paths stay available until reconcile() repairs the data.
        """
        candidates = self._active_query(user_id).limit(2).all()
        if len(candidates) > 1:
            logger.warning(f"User has multiple active subscriptions: user_id={user_id}")
        return candidates[0] if candidates else None

    def find_users_with_duplicate_actives(self) -> List[str]:
        rows = (
            self.db.query(Subscription.user_id)
            .filter(Subscription.status.in_(ACTIVE_STATUSES))
            .group_by(Subscription.user_id)
            .having(func.count(Subscription.id) > 1)
            .all()
        )
        return [row[0] for row in rows]

    # ==========================================
    # RECONCILE
    # ==========================================

    def reconcile(self, user_id: str) -> ReconcileResult:
        """
        Collapse a user's active subscriptions down to one.

        The kept row is the first by PRECEDENCE. Every other active row is
        canceled by a single conditional UPDATE, so concurrent calls for the
        same user cannot both leave a different row standing. Calling this on
        consistent data changes nothing.
        """
        actives = self._active_query(user_id).all()
        if len(actives) <= 1:
            return ReconcileResult(kept=actives[0] if actives else None)

        keep = actives[0]
        keep_id = keep.id
        loser_ids = [subscription.id for subscription in actives[1:]]

        updated = (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status.in_(ACTIVE_STATUSES),
                Subscription.id != keep_id,
            )
            .update(
                {
                    Subscription.status: "canceled",
                    Subscription.cancel_at_period_end: False,
                    Subscription.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

        kept = self.db.query(Subscription).filter(Subscription.id == keep_id).populate_existing().one()
        canceled = (
            self.db.query(Subscription)
            .filter(Subscription.id.in_(loser_ids), Subscription.status == "canceled")
            .populate_existing()
            .all()
        )

        logger.warning(
            f"Reconciled subscriptions: user_id={user_id}, kept={kept.subscription_id}, "
            f"canceled={[subscription.subscription_id for subscription in canceled]}, rows_updated={updated}"
        )
        return ReconcileResult(kept=kept, canceled=canceled)

    # ==========================================
    # INGESTION
    # ==========================================

    def _upsert(self, record: SubscriptionImport) -> Subscription:
        """Insert or update in place; never touches created_at. Does not commit."""
        now = utcnow()
        values: Dict[str, Any] = record.model_dump()
        inserted = insert_ignore(
            self.db,
            Subscription,
            {"id": str(uuid.uuid4()), **values, "created_at": now, "updated_at": now},
            ["subscription_id"],
        )
        subscription = self.get_subscription(record.subscription_id)
        if inserted:
            logger.info(
                f"Subscription imported: user_id={record.user_id}, "
                f"subscription_id={record.subscription_id}, status={record.status}"
            )
            return subscription

        if subscription.user_id != record.user_id:
            logger.warning(
                f"Subscription owner mismatch ignored: subscription_id={record.subscription_id}, "
                f"stored_user_id={subscription.user_id}, incoming_user_id={record.user_id}"
            )

        changed = False
        if subscription.status != record.status:
            if not can_transition(subscription.status, record.status):
                logger.warning(
                    f"Provider moved subscription off the lifecycle graph: "
                    f"subscription_id={record.subscription_id}, {subscription.status} -> {record.status}"
                )
            subscription.status = record.status
            changed = True

        for name in _UPDATABLE_FIELDS:
            value = getattr(record, name)
            if value is not None and not _same_value(getattr(subscription, name), value):
                setattr(subscription, name, value)
                changed = True

        if subscription.cancel_at_period_end != record.cancel_at_period_end:
            subscription.cancel_at_period_end = record.cancel_at_period_end
            changed = True

        if changed:
            subscription.updated_at = now
            self.db.flush()
            logger.info(
                f"Subscription updated: subscription_id={record.subscription_id}, status={record.status}"
            )
        return subscription

    def _upsert_demoting_competitors(self, record: SubscriptionImport) -> Tuple[Subscription, List[str]]:
        """
        Resolve a single-active index conflict.

        The incoming record keeps its active status only if it outranks every
        other active row of the user; otherwise it is stored as canceled.
        Returns the stored row and the ids of the rows that lost.
        """
        existing = self.get_subscription(record.subscription_id)
        created_at = existing.created_at if existing is not None else utcnow()
        competitors = (
            self._active_query(record.user_id)
            .filter(Subscription.subscription_id != record.subscription_id)
            .all()
        )
        incoming_rank = _rank(record.period_end, created_at)

        if all(incoming_rank > _rank(c.period_end, c.created_at) for c in competitors):
            demoted_ids = [c.id for c in competitors]
            (
                self.db.query(Subscription)
                .filter(Subscription.id.in_(demoted_ids))
                .update(
                    {
                        Subscription.status: "canceled",
                        Subscription.cancel_at_period_end: False,
                        Subscription.updated_at: utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            logger.warning(
                f"Demoted active subscriptions on import: user_id={record.user_id}, "
                f"kept={record.subscription_id}, canceled={[c.subscription_id for c in competitors]}"
            )
            return self._upsert(record), demoted_ids

        logger.warning(
            f"Imported subscription outranked by an active one, storing as canceled: "
            f"subscription_id={record.subscription_id}"
        )
        record = record.model_copy(update={"status": "canceled", "cancel_at_period_end": False})
        subscription = self._upsert(record)
        return subscription, [subscription.id]

    def import_subscription(self, record: Union[SubscriptionImport, Dict[str, Any]]) -> ImportResult:
        """
        Upsert a subscription snapshot keyed on the provider subscription id.

        Webhooks and backfills share this path so the single-active rule
        applies the same way regardless of entry point. When the partial
        unique index rejects a second active row, the conflict is resolved by
        PRECEDENCE in the same transaction and the losing rows are returned
        as demoted. They are canceled locally only; the caller still has to
        cancel them at the billing provider.
        """
        if not isinstance(record, SubscriptionImport):
            record = SubscriptionImport(**record)

        demoted_ids: List[str] = []
        try:
            subscription = self._upsert(record)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if record.status not in ACTIVE_STATUSES:
                raise
            subscription, demoted_ids = self._upsert_demoting_competitors(record)
            self.db.commit()

        self.db.refresh(subscription)
        demoted = []
        if demoted_ids:
            demoted = (
                self.db.query(Subscription)
                .filter(Subscription.id.in_(demoted_ids))
                .order_by(*PRECEDENCE)
                .populate_existing()
                .all()
            )
        return ImportResult(subscription=subscription, demoted=demoted)

    def import_or_update_subscription(
        self, record: Union[SubscriptionImport, Dict[str, Any]]
    ) -> Subscription:
        """Same as import_subscription, returning only the stored row."""
        return self.import_subscription(record).subscription

    # ==========================================
    # LIFECYCLE
    # ==========================================

    def transition(self, subscription_id: str, new_status: str) -> Subscription:
        """
        Move a subscription along the lifecycle graph (admin/reconciliation actions).

        Raises:
            SubscriptionNotFound: unknown subscription id
            InvalidStatusTransition: the move is not allowed from the current status
        """
        if new_status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Unknown subscription status: {new_status}")
        subscription = self._require(subscription_id)
        if not can_transition(subscription.status, new_status):
            raise InvalidStatusTransition(subscription_id, subscription.status, new_status)

        if subscription.status != new_status:
            subscription.status = new_status
            if new_status == "canceled":
                subscription.cancel_at_period_end = False
            subscription.updated_at = utcnow()
            self.db.commit()
            self.db.refresh(subscription)
            logger.info(f"Subscription status changed: subscription_id={subscription_id}, status={new_status}")
        return subscription

    def downgrade_or_cancel(
        self,
        subscription_id: str,
        target_plan_id: str,
        schedule_at_period_end: bool,
        target_interval: Optional[str] = None,
    ) -> Subscription:
        """
        Downgrade or cancel a paid subscription.

        schedule_at_period_end=True records the target plan in the scheduled_*
        fields and leaves status and credits alone; a period-end sweep applies
        it later. schedule_at_period_end=False cancels now. There is no free
        subscription row: free tier is the absence of an active one.

        Raises:
            SubscriptionNotFound: unknown subscription id
            InvalidStatusTransition: scheduling a change on an inactive subscription
        """
        subscription = self._require(subscription_id)
        target = (target_plan_id or FREE_PLAN_ID).lower()
        now = utcnow()

        if not schedule_at_period_end:
            if subscription.status == "canceled":
                return subscription
            if not can_transition(subscription.status, "canceled"):
                raise InvalidStatusTransition(subscription_id, subscription.status, "canceled")
            subscription.status = "canceled"
            subscription.cancel_at_period_end = False
            self._clear_schedule(subscription)
            subscription.updated_at = now
            self.db.commit()
            self.db.refresh(subscription)
            logger.info(f"Subscription canceled immediately: subscription_id={subscription_id}, target={target}")
            return subscription

        if subscription.status not in ACTIVE_STATUSES:
            raise InvalidStatusTransition(subscription_id, subscription.status, f"scheduled:{target}")

        start = subscription.period_end or now
        if target == FREE_PLAN_ID:
            subscription.scheduled_plan_id = FREE_PLAN_ID
            subscription.scheduled_interval = None
            subscription.scheduled_period_start = start
            subscription.scheduled_period_end = None
            subscription.cancel_at_period_end = True
        else:
            interval = target_interval or subscription.interval or "month"
            subscription.scheduled_plan_id = target
            subscription.scheduled_interval = interval
            subscription.scheduled_period_start = start
            subscription.scheduled_period_end = add_interval(start, interval)
        subscription.scheduled_at = now
        subscription.updated_at = now
        self.db.commit()
        self.db.refresh(subscription)

        logger.info(
            f"Plan change scheduled: subscription_id={subscription_id}, target={target}, "
            f"effective={subscription.scheduled_period_start}"
        )
        return subscription

    def reactivate(self, subscription_id: str) -> Subscription:
        """Undo a pending period-end cancellation or scheduled plan change."""
        subscription = self._require(subscription_id)
        if subscription.status not in ACTIVE_STATUSES:
            raise InvalidStatusTransition(subscription_id, subscription.status, "active")

        subscription.cancel_at_period_end = False
        self._clear_schedule(subscription)
        subscription.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(f"Subscription reactivated: subscription_id={subscription_id}")
        return subscription

    @staticmethod
    def _clear_schedule(subscription: Subscription) -> None:
        subscription.scheduled_plan_id = None
        subscription.scheduled_interval = None
        subscription.scheduled_period_start = None
        subscription.scheduled_period_end = None
        subscription.scheduled_at = None
