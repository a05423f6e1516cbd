from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field


class ImmediateDowngradeRequest(BaseModel):
    new_plan: str = Field(min_length=1, max_length=50)
    refund_requested: bool = False
    reason: str = Field(default="plan_downgrade", max_length=200)


class ImmediateDowngradeResponse(BaseModel):
    tenant_id: str
    previous_plan: str
    plan: str
    status: str
    proration_amount: Decimal
    refund_amount: Decimal
    refund_id: str | None = None
    pending_refund_payment_id: str | None = None
    impact: dict[str, object]


class SystemHealthResponse(BaseModel):
    status: str
    database_ok: bool
    redis_ok: bool
    total_tenants: int
    pending_identity_repairs: int
