"""
Pydantic schemas for the subscription API.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SubscribeRequest(BaseModel):
    user_id: UUID
    plan_id: UUID
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    metadata: Optional[dict[str, Any]] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class SubscriptionDetail(BaseModel):
    """Subscription state exposed to API callers."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    plan_id: UUID
    status: str
    is_paused: bool = False
    paused_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    renewal_failures: int = 0
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    external_subscription_id: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    original_price: Optional[Decimal] = None


class PaymentDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: Decimal
    currency: str
    status: str
    external_payment_id: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    original_amount: Optional[Decimal] = None
    coupon_code: Optional[str] = None
    payment_date: Optional[datetime] = None


class CheckoutResponse(BaseModel):
    subscription: SubscriptionDetail
    payment: PaymentDetail


class TransitionResponse(BaseModel):
    subscription: SubscriptionDetail
    applied: bool
    previous_status: Optional[str] = None


class RenewalResponse(BaseModel):
    success: bool
    new_status: Optional[str] = None
    error: Optional[str] = None
    subscription: Optional[SubscriptionDetail] = None
    payment: Optional[PaymentDetail] = None


class ReconcileResponse(BaseModel):
    external_id: str
    outcome: str
    subscription_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None


class ActiveSubscriptionSummary(BaseModel):
    id: UUID
    plan_name: str
    next_billing_date: Optional[datetime] = None


class ActiveSubscriptionCheck(BaseModel):
    """Answer to "does this user have an active subscription?"."""

    has_active_subscription: bool
    subscription: Optional[ActiveSubscriptionSummary] = None
