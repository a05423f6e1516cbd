from __future__ import annotations

from sqlalchemy import JSON, Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import TimestampedBase


class Tenant(TimestampedBase):
    __tablename__ = "tenants"

    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    subdomain: Mapped[str] = mapped_column(String(63), unique=True, nullable=False, index=True)
    admin_email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False, index=True)
    clerk_org_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    onboarding_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    onboarding_progress: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    trial_status: Mapped[str] = mapped_column(String(30), nullable=False, default="active")
    subscription_status: Mapped[str] = mapped_column(String(30), nullable=False, default="trialing")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
