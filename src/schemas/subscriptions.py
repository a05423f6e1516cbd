from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class ChangePlanRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=50)
    billing_cycle: Literal["monthly", "yearly"] = "monthly"


class ChangePlanResponse(BaseModel):
    kind: Literal["portal_redirect", "checkout_redirect", "scheduled_downgrade"]
    url: str | None = None
    effective_date: datetime | None = None
    target_plan: str | None = None
    message: str | None = None


class SubscriptionResponse(BaseModel):
    plan: str
    status: str
    billing_cycle: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    subscribed_tools: list[str]
    usage_limits: dict[str, int]
    has_gateway_subscription: bool


class PaymentResponse(BaseModel):
    id: str
    amount: Decimal
    currency: str
    status: str
    payment_type: str
    payment_method: str
    billing_reason: str | None = None
    description: str | None = None
    paid_at: datetime | None = None
    created_at: datetime


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    reason: str = Field(default="requested_by_customer", min_length=1, max_length=200)


class RefundResponse(BaseModel):
    refund_id: str | None = None
    refund_payment_id: str
    original_payment_id: str
    amount: Decimal
    currency: str
    status: str
    is_partial_refund: bool


class GatewayWebhookResponse(BaseModel):
    received: bool
    event_type: str
    object_id: str | None = None
    tenant_id: str | None = None
    updated: bool = False
