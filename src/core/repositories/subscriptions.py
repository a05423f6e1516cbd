from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.repositories.base import TenantRepository
from src.models.subscription import Subscription


class SubscriptionRepository(TenantRepository[Subscription]):
    def __init__(self, session: AsyncSession, tenant_id: UUID) -> None:
        super().__init__(session=session, model=Subscription, tenant_id=tenant_id)

    async def get_current(self) -> Subscription | None:
        await self._apply_rls()
        result = await self.session.execute(
            self._scoped_select().order_by(Subscription.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()


async def find_subscription_by_gateway_ref(session: AsyncSession, gateway_ref: str) -> Subscription | None:
    return await session.scalar(
        select(Subscription).where(Subscription.stripe_subscription_id == gateway_ref)
    )
