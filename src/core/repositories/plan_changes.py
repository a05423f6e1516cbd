from __future__ import annotations

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.repositories.base import TenantRepository
from src.models.scheduled_plan_change import ScheduledPlanChange


class ScheduledPlanChangeRepository(TenantRepository[ScheduledPlanChange]):
    def __init__(self, session: AsyncSession, tenant_id: UUID) -> None:
        super().__init__(session=session, model=ScheduledPlanChange, tenant_id=tenant_id)

    async def pending_for(self, subscription_id: UUID) -> list[ScheduledPlanChange]:
        await self._apply_rls()
        result = await self.session.execute(
            self._scoped_select().where(
                ScheduledPlanChange.subscription_id == subscription_id,
                ScheduledPlanChange.status == "pending",
            )
        )
        return list(result.scalars().all())
