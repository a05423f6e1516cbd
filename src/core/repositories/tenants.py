from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.tenant import Tenant


class TenantDirectory:
    """Cross-tenant lookups on the tenant root aggregate."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tenant_id: UUID) -> Tenant | None:
        return await self.session.scalar(select(Tenant).where(Tenant.id == tenant_id))

    async def get_by_admin_email(self, email: str) -> Tenant | None:
        return await self.session.scalar(
            select(Tenant).where(func.lower(Tenant.admin_email) == email.strip().lower())
        )

    async def get_by_subdomain(self, subdomain: str) -> Tenant | None:
        return await self.session.scalar(select(Tenant).where(Tenant.subdomain == subdomain))

    async def get_by_clerk_org_id(self, clerk_org_id: str) -> Tenant | None:
        return await self.session.scalar(select(Tenant).where(Tenant.clerk_org_id == clerk_org_id))

    async def is_subdomain_available(self, subdomain: str) -> bool:
        return await self.get_by_subdomain(subdomain) is None
