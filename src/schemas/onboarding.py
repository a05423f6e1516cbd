from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator


class ProvisionTenantRequest(BaseModel):
    company_name: str = Field(min_length=2, max_length=255)
    admin_email: EmailStr
    admin_first_name: str = Field(default="", max_length=100)
    admin_last_name: str = Field(default="", max_length=100)
    subdomain: str | None = Field(default=None, min_length=1, max_length=63)
    selected_plan: Literal["trial", "free", "starter", "professional", "enterprise"] = "trial"
    billing_cycle: Literal["monthly", "yearly"] = "monthly"

    @field_validator("subdomain")
    @classmethod
    def _lowercase_subdomain(cls, value: str | None) -> str | None:
        return value.strip().lower() if value else None


class SubscriptionSummaryResponse(BaseModel):
    plan: str
    status: str
    billing_cycle: str
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    subscribed_tools: list[str]
    usage_limits: dict[str, int]


class IdentityStatusResponse(BaseModel):
    org_fallback: bool
    user_fallback: bool
    reconciliation_status: str
    reconciliation_attempts: int
    verified: bool
    degraded_steps: list[str]


class ProvisionTenantResponse(BaseModel):
    tenant_id: str
    subdomain: str
    external_org_ref: str
    admin_user_ref: str
    onboarding_completed: bool
    subscription: SubscriptionSummaryResponse
    identity: IdentityStatusResponse


class SubdomainAvailabilityResponse(BaseModel):
    subdomain: str
    available: bool
