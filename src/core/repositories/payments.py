from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.repositories.base import TenantRepository
from src.models.payment import Payment


class PaymentRepository(TenantRepository[Payment]):
    def __init__(self, session: AsyncSession, tenant_id: UUID) -> None:
        super().__init__(session=session, model=Payment, tenant_id=tenant_id)

    async def latest_successful_subscription_payment(self) -> Payment | None:
        await self._apply_rls()
        result = await self.session.execute(
            self._scoped_select()
            .where(Payment.status == "succeeded", Payment.payment_type == "subscription")
            .order_by(Payment.paid_at.desc().nulls_last(), Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def history(self, *, limit: int = 50) -> list[Payment]:
        return await self.list(limit=limit)


async def load_payment(session: AsyncSession, payment_id: UUID) -> Payment | None:
    return await session.scalar(select(Payment).where(Payment.id == payment_id))


async def refunded_total(session: AsyncSession, payment_id: UUID) -> Decimal:
    total = await session.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.payment_type == "refund",
            Payment.status.not_in(("failed", "canceled")),
            Payment.payment_metadata["original_payment_id"].as_string() == str(payment_id),
        )
    )
    return abs(Decimal(total or 0))
