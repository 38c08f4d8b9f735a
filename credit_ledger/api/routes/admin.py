"""
Operator endpoints: subscription reconciliation and manual credit corrections.

All routes require the X-Admin-Token header.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from credit_ledger.core.identity import require_admin
from credit_ledger.db.session import get_db
from credit_ledger.schemas.credits import AdminAdjustRequest, CreditTransactionResponse
from credit_ledger.schemas.subscription import (
    ProviderCancelResponse,
    ReconcileResponse,
    SubscriptionResponse,
)
from credit_ledger.services.billing_events import build_processor
from credit_ledger.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@router.post("/subscriptions/{user_id}/reconcile", response_model=ReconcileResponse)
def reconcile_user(user_id: str, db: Session = Depends(get_db)):
    """
    Collapse a user's active subscriptions to one and cancel the rest at the provider.

    Provider failures are reported per subscription; local state is already committed.
    """
    outcome = build_processor(db).reconcile_and_cancel(user_id)
    logger.info(
        f"Admin reconcile: user_id={user_id}, canceled={len(outcome.canceled)}, "
        f"provider_failures={outcome.failed_provider_cancels}"
    )
    return ReconcileResponse(
        user_id=user_id,
        kept=SubscriptionResponse.model_validate(outcome.kept) if outcome.kept else None,
        canceled=[SubscriptionResponse.model_validate(s) for s in outcome.canceled],
        provider_results=[
            ProviderCancelResponse(
                subscription_id=r.subscription_id,
                local_success=r.local_success,
                provider_success=r.provider_success,
                error=r.error,
            )
            for r in outcome.provider_results
        ],
    )


@router.post("/credits/adjust", response_model=CreditTransactionResponse)
def adjust_credits(request: AdminAdjustRequest, db: Session = Depends(get_db)):
    transaction = CreditLedger(db).admin_adjust(
        request.user_id,
        request.delta,
        request.reason,
        request.reference_id,
        metadata={"reason": request.reason},
    )
    return CreditTransactionResponse.from_transaction(transaction)
