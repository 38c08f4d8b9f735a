"""
Pydantic schemas for credit metadata and credit endpoints.

Ledger metadata is validated here, per source category, and stored as an
opaque JSON string. The ledger itself never reads it back except for the
admin_adjust direction.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field


class LedgerMetadata(BaseModel):
    """Base for per-source metadata; unknown keys are kept for audit."""
    model_config = ConfigDict(extra="allow")


class SubscriptionGrantMetadata(LedgerMetadata):
    plan_id: str
    plan_identifier: str
    is_yearly: bool
    subscription_id: str
    provider: str
    is_renewal: bool


class PurchaseMetadata(LedgerMetadata):
    pack_id: str
    provider: str
    checkout_id: str


class CheckinMetadata(LedgerMetadata):
    checkin_date: str
    consecutive_days: int
    weekly_bonus_earned: bool


class ReferralMetadata(LedgerMetadata):
    referred_user_id: str
    trigger: Optional[str] = None  # subscription | credit_pack


class SocialShareMetadata(LedgerMetadata):
    share_id: str
    platform: str


class AdminMetadata(LedgerMetadata):
    direction: Optional[str] = Field(None, pattern="^(credit|debit)$")
    operator: Optional[str] = None
    reason: Optional[str] = None


class UsageMetadata(LedgerMetadata):
    feature: Optional[str] = None
    model: Optional[str] = None
    task_id: Optional[str] = None


METADATA_SCHEMAS: Dict[str, Type[LedgerMetadata]] = {
    "subscription": SubscriptionGrantMetadata,
    "purchase": PurchaseMetadata,
    "checkin": CheckinMetadata,
    "referral": ReferralMetadata,
    "social_share": SocialShareMetadata,
    "admin": AdminMetadata,
    "api_call": UsageMetadata,
    "storage": UsageMetadata,
}

MetadataInput = Union[LedgerMetadata, Dict[str, Any], None]


def serialize_metadata(source: str, metadata: MetadataInput) -> Optional[str]:
    """
    Validate metadata against the schema for its source and serialize it.

    Raises pydantic.ValidationError when a dict does not match the source schema.
    """
    if metadata is None:
        return None
    if isinstance(metadata, LedgerMetadata):
        model = metadata
    else:
        schema = METADATA_SCHEMAS.get(source, LedgerMetadata)
        model = schema.model_validate(metadata)
    return json.dumps(model.model_dump(mode="json", exclude_none=True), sort_keys=True)


def deserialize_metadata(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


class CreditBalanceResponse(BaseModel):
    """Response schema for GET /credits/balance."""
    user_id: str
    balance: int = Field(..., description="Current balance including frozen credits")
    frozen_balance: int = Field(..., description="Credits held and excluded from spending")
    spendable_balance: int = Field(..., description="balance - frozen_balance")
    total_earned: int
    total_spent: int

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "user_123",
            "balance": 530,
            "frozen_balance": 0,
            "spendable_balance": 530,
            "total_earned": 530,
            "total_spent": 0,
        }
    })


class CreditTransactionResponse(BaseModel):
    id: str
    type: str
    amount: int
    balance_after: int
    source: str
    description: Optional[str] = None
    reference_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_transaction(cls, transaction) -> "CreditTransactionResponse":
        # The ORM attribute is metadata_json; "metadata" is reserved on declarative models
        return cls(
            id=transaction.id,
            type=transaction.type,
            amount=transaction.amount,
            balance_after=transaction.balance_after,
            source=transaction.source,
            description=transaction.description,
            reference_id=transaction.reference_id,
            metadata=deserialize_metadata(transaction.metadata_json),
            created_at=transaction.created_at,
        )


class CreditHistoryResponse(BaseModel):
    """Response schema for GET /credits/history."""
    transactions: List[CreditTransactionResponse]
    limit: int
    offset: int


class CreditCheckResponse(BaseModel):
    required: int
    spendable_balance: int
    has_enough: bool


class AdminAdjustRequest(BaseModel):
    """Request schema for POST /admin/credits/adjust."""
    user_id: str
    delta: int = Field(..., description="Signed credit change; must not be zero")
    reason: str = Field(..., min_length=1)
    reference_id: str = Field(..., min_length=1, description="Idempotency key for this correction")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "user_123",
            "delta": -50,
            "reason": "Refund reversal",
            "reference_id": "admin_adjust_ticket_4411",
        }
    })


class SocialShareRequest(BaseModel):
    share_id: str = Field(..., min_length=1)
    platform: str = Field(..., min_length=1)


class RewardResponse(BaseModel):
    credits_earned: int
    balance_after: int
    reference_id: str
    consecutive_days: Optional[int] = None
    weekly_bonus_earned: Optional[bool] = None


class ReferralRequest(BaseModel):
    referrer_id: str = Field(..., min_length=1, description="Referral code; the referrer's user id")


class ReferralResponse(BaseModel):
    referrer_id: str
    referred_user_id: str
    credits_awarded: bool
