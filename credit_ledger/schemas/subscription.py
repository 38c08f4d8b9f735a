"""
Pydantic schemas for subscription ingestion and reconciliation responses.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from credit_ledger.core.plan_credits import normalize_interval
from credit_ledger.core.subscription_status import normalize_status


class SubscriptionImport(BaseModel):
    """
    Provider-neutral subscription snapshot.

    Webhook handlers and CSV backfills both build one of these and hand it to
    SubscriptionReconciler.import_subscription.
    """
    user_id: str = Field(..., min_length=1)
    provider: str = Field("stripe", pattern="^(stripe|creem)$")
    subscription_id: str = Field(..., min_length=1)
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    status: str = "active"
    interval: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        return normalize_status(value)

    @field_validator("interval", mode="before")
    @classmethod
    def _normalize_interval(cls, value):
        return normalize_interval(value) if value else None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    provider: str
    subscription_id: str
    price_id: Optional[str] = None
    status: str
    interval: Optional[str] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    scheduled_plan_id: Optional[str] = None


class ProviderCancelResponse(BaseModel):
    subscription_id: str
    local_success: bool
    provider_success: bool
    error: Optional[str] = None


class ReconcileResponse(BaseModel):
    """Response schema for POST /admin/subscriptions/{user_id}/reconcile."""
    user_id: str
    kept: Optional[SubscriptionResponse] = None
    canceled: List[SubscriptionResponse] = Field(default_factory=list)
    provider_results: List[ProviderCancelResponse] = Field(default_factory=list)
