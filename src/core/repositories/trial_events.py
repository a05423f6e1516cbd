from __future__ import annotations

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.repositories.base import TenantRepository
from src.models.trial_event import TrialEvent


class TrialEventRepository(TenantRepository[TrialEvent]):
    def __init__(self, session: AsyncSession, tenant_id: UUID) -> None:
        super().__init__(session=session, model=TrialEvent, tenant_id=tenant_id)

    async def record(self, event_type: str, *, subscription_id: UUID | None, **event_data: object) -> TrialEvent:
        return await self.create(
            subscription_id=subscription_id,
            event_type=event_type,
            event_data=event_data,
        )
