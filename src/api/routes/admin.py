from __future__ import annotations

from uuid import UUID

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth import require_super_admin
from src.core.config import settings
from src.core.db import get_db_session
from src.core.dependencies import get_plan_change_engine
from src.core.identity import IdentityClaims
from src.core.plan_change import PlanChangeEngine
from src.models.tenant import Tenant
from src.schemas.admin import ImmediateDowngradeRequest, ImmediateDowngradeResponse, SystemHealthResponse

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/tenants/{tenant_id}/downgrade", response_model=ImmediateDowngradeResponse)
async def downgrade_tenant(
    tenant_id: UUID,
    payload: ImmediateDowngradeRequest,
    _: IdentityClaims = Depends(require_super_admin),
    engine: PlanChangeEngine = Depends(get_plan_change_engine),
) -> ImmediateDowngradeResponse:
    result = await engine.immediate_downgrade(
        tenant_id,
        payload.new_plan,
        refund_requested=payload.refund_requested,
        reason=payload.reason,
    )
    return ImmediateDowngradeResponse(
        tenant_id=str(tenant_id),
        previous_plan=result.previous_plan,
        plan=result.subscription.plan,
        status=result.subscription.status,
        proration_amount=result.proration.amount,
        refund_amount=result.refund_amount,
        refund_id=result.refund.refund_id if result.refund else None,
        pending_refund_payment_id=(
            str(result.pending_refund_payment_id) if result.pending_refund_payment_id else None
        ),
        impact=result.impact,
    )


@router.get("/system/health", response_model=SystemHealthResponse)
async def system_health(
    _: IdentityClaims = Depends(require_super_admin),
    session: AsyncSession = Depends(get_db_session),
) -> SystemHealthResponse:
    database_ok = True
    total_tenants = 0
    try:
        await session.execute(text("SELECT 1"))
        total_tenants = int(await session.scalar(select(func.count(Tenant.id))) or 0)
    except Exception:
        database_ok = False

    redis_ok = True
    pending_repairs = 0
    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        redis_ok = bool(await redis_client.ping())
        pending_repairs = int(await redis_client.xlen(settings.identity_repair_stream_name))
    except Exception:
        redis_ok = False
    finally:
        await redis_client.aclose()

    return SystemHealthResponse(
        status="ok" if database_ok and redis_ok else "degraded",
        database_ok=database_ok,
        redis_ok=redis_ok,
        total_tenants=total_tenants,
        pending_identity_repairs=pending_repairs,
    )
