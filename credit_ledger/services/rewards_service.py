"""
Reward grants: signup bonus, daily check-in, referral and social share.

Each reward maps to a reference id that can only be used once, so the
ledger's idempotency is what makes every reward one-time-only.
"""
import logging
from datetime import date, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credit_ledger.core.errors import AlreadyCheckedIn, InvalidReferral
from credit_ledger.core.plan_credits import REWARDS, get_signup_bonus
from credit_ledger.db.base import utcnow
from credit_ledger.db.models.credit_transaction import CreditTransaction
from credit_ledger.db.models.daily_checkin import DailyCheckin
from credit_ledger.db.models.user_referral import UserReferral
from credit_ledger.schemas.credits import CheckinMetadata, ReferralMetadata, SocialShareMetadata
from credit_ledger.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)


class RewardsService:

    def __init__(self, db: Session, ledger: Optional[CreditLedger] = None):
        self.db = db
        self.ledger = ledger or CreditLedger(db)

    def grant_signup_bonus(self, user_id: str) -> Optional[CreditTransaction]:
        """One-time signup credits; safe to call from backfill scripts."""
        amount = get_signup_bonus()
        if amount <= 0:
            return None
        return self.ledger.earn(
            user_id,
            amount,
            "bonus",
            "Sign-up bonus",
            f"signup_{user_id}",
        )

    def has_signup_bonus(self, user_id: str) -> bool:
        return self.ledger.find_by_reference(f"signup_{user_id}") is not None

    def daily_checkin(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Record today's check-in and award credits.

        Consecutive days build a streak; reaching the streak length adds a
        weekly bonus unless one was already paid in the current window, so a
        continuous streak is paid on days 7, 14, 21 and so on.

        Raises:
            AlreadyCheckedIn: the user already checked in (and was paid) today
        """
        today = today or utcnow().date()
        today_key = today.isoformat()
        reference_id = f"checkin_{user_id}_{today_key}"
        streak_days = REWARDS["checkin_streak_days"]

        existing = (
            self.db.query(DailyCheckin)
            .filter(DailyCheckin.user_id == user_id, DailyCheckin.checkin_date == today_key)
            .first()
        )
        if existing is not None:
            if self.ledger.find_by_reference(reference_id) is not None:
                raise AlreadyCheckedIn(f"User {user_id} already checked in on {today_key}")
            # Check-in row without credits: a previous attempt failed after insert
            logger.warning(f"Removing orphaned check-in: user_id={user_id}, date={today_key}")
            self.db.delete(existing)
            self.db.commit()

        last = (
            self.db.query(DailyCheckin)
            .filter(DailyCheckin.user_id == user_id)
            .order_by(DailyCheckin.checkin_date.desc())
            .first()
        )
        consecutive_days = 1
        if last is not None and date.fromisoformat(last.checkin_date) == today - timedelta(days=1):
            consecutive_days = last.consecutive_days + 1

        credits = REWARDS["checkin_daily"]
        weekly_bonus_earned = False
        if consecutive_days >= streak_days:
            recent = (
                self.db.query(DailyCheckin)
                .filter(DailyCheckin.user_id == user_id)
                .order_by(DailyCheckin.checkin_date.desc())
                .limit(streak_days - 1)
                .all()
            )
            if not any(c.weekly_bonus_earned for c in recent):
                credits += REWARDS["checkin_weekly_bonus"]
                weekly_bonus_earned = True

        checkin = DailyCheckin(
            user_id=user_id,
            checkin_date=today_key,
            consecutive_days=consecutive_days,
            credits_earned=credits,
            weekly_bonus_earned=weekly_bonus_earned,
        )
        self.db.add(checkin)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise AlreadyCheckedIn(f"User {user_id} already checked in on {today_key}")

        description = f"Daily check-in (Day {consecutive_days})"
        if weekly_bonus_earned:
            description += " + Weekly bonus"
        transaction = self.ledger.earn(
            user_id,
            credits,
            "checkin",
            description,
            reference_id,
            CheckinMetadata(
                checkin_date=today_key,
                consecutive_days=consecutive_days,
                weekly_bonus_earned=weekly_bonus_earned,
            ),
        )

        logger.info(
            f"Check-in rewarded: user_id={user_id}, day={consecutive_days}, "
            f"credits={credits}, weekly_bonus={weekly_bonus_earned}"
        )
        return {
            "credits_earned": credits,
            "balance_after": transaction.balance_after,
            "reference_id": reference_id,
            "consecutive_days": consecutive_days,
            "weekly_bonus_earned": weekly_bonus_earned,
        }

    def award_referral(
        self, referrer_id: str, referred_user_id: str, trigger: Optional[str] = None
    ) -> CreditTransaction:
        """
        Pay the referrer once per referred user.

        Raises:
            InvalidReferral: self-referral
        """
        if not referrer_id or referrer_id == referred_user_id:
            raise InvalidReferral(f"Invalid referral: referrer={referrer_id}, referred={referred_user_id}")
        return self.ledger.earn(
            referrer_id,
            REWARDS["referral"],
            "referral",
            "Referral reward",
            f"referral_{referred_user_id}",
            ReferralMetadata(referred_user_id=referred_user_id, trigger=trigger),
        )

    def get_referral(self, referred_user_id: str) -> Optional[UserReferral]:
        return (
            self.db.query(UserReferral)
            .filter(UserReferral.referred_user_id == referred_user_id)
            .populate_existing()
            .first()
        )

    def register_referral(self, referred_user_id: str, referrer_id: str) -> UserReferral:
        """
        Record who invited referred_user_id. Nothing is paid until the invited
        user's first payment (see award_referral_for_paid_user).

        Raises:
            InvalidReferral: self-referral, or the user was already referred by someone else
        """
        if not referrer_id or referrer_id == referred_user_id:
            raise InvalidReferral(f"Invalid referral: referrer={referrer_id}, referred={referred_user_id}")

        existing = self.get_referral(referred_user_id)
        if existing is None:
            self.db.add(UserReferral(referrer_id=referrer_id, referred_user_id=referred_user_id))
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
            existing = self.get_referral(referred_user_id)

        if existing.referrer_id != referrer_id:
            raise InvalidReferral(f"User {referred_user_id} was already referred by another user")
        logger.info(f"Referral registered: referrer_id={referrer_id}, referred_user_id={referred_user_id}")
        return existing

    def award_referral_for_paid_user(self, user_id: str, trigger: str) -> Optional[CreditTransaction]:
        """
        Pay the referrer of user_id after the user's first payment.

        Returns None when the user was not referred or the reward was already paid.
        """
        referral = self.get_referral(user_id)
        if referral is None or referral.credits_awarded:
            return None

        transaction = self.award_referral(referral.referrer_id, user_id, trigger=trigger)
        referral.credits_awarded = True
        referral.credits_awarded_at = utcnow()
        self.db.commit()

        logger.info(
            f"Referral rewarded: referrer_id={referral.referrer_id}, referred_user_id={user_id}, trigger={trigger}"
        )
        return transaction

    def award_social_share(self, user_id: str, share_id: str, platform: str) -> CreditTransaction:
        return self.ledger.earn(
            user_id,
            REWARDS["social_share"],
            "social_share",
            f"Shared on {platform}",
            f"social_share_{share_id}",
            SocialShareMetadata(share_id=share_id, platform=platform),
        )
