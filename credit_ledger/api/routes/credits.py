"""
Credit balance endpoints.

Read-only views of the caller's credit account and ledger history.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from credit_ledger.core.identity import get_current_user_id
from credit_ledger.db.models.credit_transaction import TRANSACTION_TYPES
from credit_ledger.db.session import get_db
from credit_ledger.schemas.credits import (
    CreditBalanceResponse,
    CreditCheckResponse,
    CreditHistoryResponse,
    CreditTransactionResponse,
)
from credit_ledger.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.get("/balance", response_model=CreditBalanceResponse, status_code=status.HTTP_200_OK)
def get_balance(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Current balance for the calling user.

    Users without an account get an all-zero balance; no account is created.
    """
    return CreditLedger(db).get_balance(user_id)


@router.get("/history", response_model=CreditHistoryResponse)
def get_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: Optional[str] = Query(None, pattern="^(" + "|".join(TRANSACTION_TYPES) + ")$"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Ledger rows for the calling user, newest first."""
    transactions = CreditLedger(db).get_transactions(user_id, limit=limit, offset=offset, type=type)
    return CreditHistoryResponse(
        transactions=[CreditTransactionResponse.from_transaction(t) for t in transactions],
        limit=limit,
        offset=offset,
    )


@router.get("/check", response_model=CreditCheckResponse)
def check_credits(
    amount: int = Query(..., gt=0),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Advisory pre-check; a later spend can still fail."""
    ledger = CreditLedger(db)
    spendable = ledger.get_balance(user_id)["spendable_balance"]
    return CreditCheckResponse(
        required=amount,
        spendable_balance=spendable,
        has_enough=spendable >= amount,
    )
