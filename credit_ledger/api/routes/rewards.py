"""
Reward endpoints: daily check-in, social share and referral registration.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from credit_ledger.core.errors import AlreadyCheckedIn
from credit_ledger.core.identity import get_current_user_id
from credit_ledger.db.session import get_db
from credit_ledger.schemas.credits import ReferralRequest, ReferralResponse, RewardResponse, SocialShareRequest
from credit_ledger.services.rewards_service import RewardsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rewards", tags=["Rewards"])


@router.post("/checkin", response_model=RewardResponse)
def daily_checkin(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Check in for today. A second check-in on the same day returns 409."""
    try:
        return RewardsService(db).daily_checkin(user_id)
    except AlreadyCheckedIn as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/share", response_model=RewardResponse)
def social_share(
    request: SocialShareRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Reward a social share. Re-submitting the same share_id pays nothing extra."""
    transaction = RewardsService(db).award_social_share(user_id, request.share_id, request.platform)
    if transaction.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Share already rewarded")
    return RewardResponse(
        credits_earned=transaction.amount,
        balance_after=transaction.balance_after,
        reference_id=transaction.reference_id,
    )


@router.post("/referral", response_model=ReferralResponse)
def register_referral(
    request: ReferralRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Register who referred the current user; the referrer is paid on the user's first payment."""
    referral = RewardsService(db).register_referral(user_id, request.referrer_id)
    return ReferralResponse(
        referrer_id=referral.referrer_id,
        referred_user_id=referral.referred_user_id,
        credits_awarded=referral.credits_awarded,
    )
