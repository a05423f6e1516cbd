from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from src.core.auth import AuthContext, require_auth_context
from src.core.dependencies import get_payment_ledger, get_plan_change_engine
from src.core.ledger import PaymentLedger
from src.core.plan_change import CheckoutRedirect, PlanChangeEngine, PortalRedirect
from src.schemas.subscriptions import (
    ChangePlanRequest,
    ChangePlanResponse,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    SubscriptionResponse,
)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/current", response_model=SubscriptionResponse)
async def get_current_subscription(
    context: AuthContext = Depends(require_auth_context),
    engine: PlanChangeEngine = Depends(get_plan_change_engine),
) -> SubscriptionResponse:
    subscription = await engine.current_subscription(context.tenant_id)
    return SubscriptionResponse(
        plan=subscription.plan,
        status=subscription.status,
        billing_cycle=subscription.billing_cycle,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        trial_end=subscription.trial_end,
        subscribed_tools=list(subscription.subscribed_tools or []),
        usage_limits=dict(subscription.usage_limits or {}),
        has_gateway_subscription=bool(subscription.stripe_subscription_id),
    )


@router.post("/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    payload: ChangePlanRequest,
    context: AuthContext = Depends(require_auth_context),
    engine: PlanChangeEngine = Depends(get_plan_change_engine),
) -> ChangePlanResponse:
    result = await engine.change_plan(context.tenant_id, payload.plan_id, payload.billing_cycle)
    if isinstance(result, (PortalRedirect, CheckoutRedirect)):
        return ChangePlanResponse(kind=result.kind, url=result.url)
    return ChangePlanResponse(
        kind=result.kind,
        effective_date=result.effective_date,
        target_plan=result.target_plan,
        message=result.message,
    )


@router.get("/payments", response_model=list[PaymentResponse])
async def list_payments(
    limit: int = Query(default=50, ge=1, le=200),
    context: AuthContext = Depends(require_auth_context),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> list[PaymentResponse]:
    payments = await ledger.payment_history(context.tenant_id, limit=limit)
    return [
        PaymentResponse(
            id=str(payment.id),
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            payment_type=payment.payment_type,
            payment_method=payment.payment_method,
            billing_reason=payment.billing_reason,
            description=payment.description,
            paid_at=payment.paid_at,
            created_at=payment.created_at,
        )
        for payment in payments
    ]


@router.post("/payments/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: UUID,
    payload: RefundRequest,
    context: AuthContext = Depends(require_auth_context),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> RefundResponse:
    result = await ledger.process_refund(
        context.tenant_id,
        payment_id,
        amount=payload.amount,
        reason=payload.reason,
    )
    return RefundResponse(
        refund_id=result.refund_id,
        refund_payment_id=str(result.refund_payment_id),
        original_payment_id=str(result.original_payment_id),
        amount=result.amount,
        currency=result.currency,
        status=result.status,
        is_partial_refund=result.is_partial_refund,
    )
