from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import UUID

from src.core.config import settings
from src.core.db import TenantStore
from src.core.errors import GatewayError, NotFoundError, PlanChangeRejected, ValidationError
from src.core.ledger import PaymentLedger, PaymentRecordData, RefundResult, to_money
from src.core.notifications import NotificationSink
from src.core.payments import StripePaymentGateway
from src.core.plans import (
    CYCLE_DAYS,
    PlanDefinition,
    downgrade_impact,
    get_plan,
    plan_for_price_id,
    plan_level,
    price_id_for,
)
from src.core.repositories.payments import PaymentRepository
from src.core.repositories.plan_changes import ScheduledPlanChangeRepository
from src.core.repositories.subscriptions import SubscriptionRepository, find_subscription_by_gateway_ref
from src.core.repositories.tenants import TenantDirectory
from src.core.repositories.trial_events import TrialEventRepository
from src.models.payment import Payment
from src.models.subscription import Subscription

logger = logging.getLogger(__name__)

TRIAL_PLAN = "trial"
PAID_CHECKOUT_STATUSES = frozenset({"paid", "no_payment_required"})


@dataclass(slots=True)
class PortalRedirect:
    url: str
    kind: Literal["portal_redirect"] = "portal_redirect"


@dataclass(slots=True)
class CheckoutRedirect:
    url: str
    kind: Literal["checkout_redirect"] = "checkout_redirect"


@dataclass(slots=True)
class ScheduledDowngrade:
    effective_date: datetime
    target_plan: str
    message: str
    kind: Literal["scheduled_downgrade"] = "scheduled_downgrade"


PlanChangeResult = PortalRedirect | CheckoutRedirect | ScheduledDowngrade


@dataclass(slots=True)
class ProrationQuote:
    base_amount: Decimal
    remaining_days: int
    total_days: int
    ratio: Decimal
    amount: Decimal


@dataclass(slots=True)
class DowngradeResult:
    previous_plan: str
    subscription: Subscription
    proration: ProrationQuote
    refund_amount: Decimal
    refund: RefundResult | None = None
    pending_refund_payment_id: UUID | None = None
    impact: dict[str, object] = field(default_factory=dict)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def days_until(end: datetime, now: datetime) -> int:
    return math.ceil((_aware(end) - _aware(now)).total_seconds() / 86400)


def _cancels_gateway_subscription(plan: PlanDefinition) -> bool:
    return plan.id == TRIAL_PLAN or plan.monthly_price <= 0


def format_renewal_date(value: datetime) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def proration_ratio(remaining_days: int, total_days: int) -> Decimal:
    if total_days <= 0:
        return Decimal("0")
    ratio = Decimal(remaining_days) / Decimal(total_days)
    return min(Decimal("1"), max(Decimal("0"), ratio))


def quote_proration(base_amount: Decimal, remaining_days: int, total_days: int) -> ProrationQuote:
    ratio = proration_ratio(remaining_days, total_days)
    base = to_money(base_amount)
    return ProrationQuote(
        base_amount=base,
        remaining_days=max(0, remaining_days),
        total_days=total_days,
        ratio=ratio,
        amount=to_money(base * ratio),
    )


class PlanChangeEngine:
    def __init__(
        self,
        *,
        store: TenantStore,
        gateway: StripePaymentGateway,
        ledger: PaymentLedger,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] | None = None,
        downgrade_window_days: int | None = None,
        frontend_url: str | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._ledger = ledger
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._downgrade_window_days = downgrade_window_days or settings.downgrade_window_days
        self._frontend_url = (frontend_url or settings.frontend_url).rstrip("/")

    async def current_subscription(self, tenant_id: UUID) -> Subscription:
        async with self._store.session() as session:
            subscription = await SubscriptionRepository(session, tenant_id).get_current()
        if subscription is None:
            raise NotFoundError("Subscription not found", context={"tenant_id": str(tenant_id)})
        return subscription

    async def change_plan(
        self,
        tenant_id: UUID,
        target_plan_id: str,
        billing_cycle: str = "monthly",
    ) -> PlanChangeResult:
        target_id = (target_plan_id or "").strip().lower()
        if target_id == TRIAL_PLAN:
            raise ValidationError(
                "Trial plans cannot be selected through subscription changes. "
                "Trials are only available during onboarding."
            )
        target_plan = get_plan(target_id)
        if target_plan is None or not target_plan.selectable:
            raise ValidationError(f"Invalid plan ID: {target_plan_id}", context={"plan_id": target_plan_id})
        if billing_cycle not in CYCLE_DAYS:
            raise ValidationError(f"Invalid billing cycle: {billing_cycle}")

        async with self._store.session() as session:
            subscription = await SubscriptionRepository(session, tenant_id).get_current()
            tenant = await TenantDirectory(session).get(tenant_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", context={"tenant_id": str(tenant_id)})

        current_level = plan_level(subscription.plan)
        target_level = plan_level(target_id)
        is_downgrade = target_level < current_level

        if is_downgrade and subscription.status == "active":
            return await self._gate_downgrade(tenant_id, subscription, target_plan, billing_cycle)

        if is_downgrade and not target_plan.allow_downgrade:
            raise PlanChangeRejected(
                f"Cannot downgrade from {subscription.plan} to {target_id} - plan restrictions apply",
                context={"current_plan": subscription.plan, "target_plan": target_id},
            )

        logger.info(
            "Plan change tenant_id=%s from=%s to=%s cycle=%s",
            tenant_id,
            subscription.plan,
            target_id,
            billing_cycle,
        )
        if subscription.stripe_subscription_id and self._gateway.is_configured():
            customer_id = subscription.stripe_customer_id
            if not customer_id:
                gateway_subscription = await asyncio.to_thread(
                    self._gateway.retrieve_subscription, subscription.stripe_subscription_id
                )
                customer_id = gateway_subscription.customer_id
            if not customer_id:
                raise GatewayError("Gateway subscription has no customer")
            url = await asyncio.to_thread(
                self._gateway.create_billing_portal_session,
                tenant_id,
                f"{self._frontend_url}/billing?payment=success&plan={target_id}",
                customer_id=customer_id,
            )
            return PortalRedirect(url=url)

        url = await asyncio.to_thread(
            self._gateway.create_checkout_session,
            tenant_id,
            target_id,
            success_url=f"{self._frontend_url}/billing?payment=success&plan={target_id}&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self._frontend_url}/billing?payment=cancelled",
            billing_cycle=billing_cycle,
            customer_id=subscription.stripe_customer_id,
            customer_email=tenant.admin_email if tenant is not None else None,
        )
        return CheckoutRedirect(url=url)

    async def _gate_downgrade(
        self,
        tenant_id: UUID,
        subscription: Subscription,
        target_plan: PlanDefinition,
        billing_cycle: str,
    ) -> ScheduledDowngrade:
        period_end = subscription.current_period_end
        if period_end is None:
            raise PlanChangeRejected("Subscription has no billing period end; downgrade cannot be scheduled")

        remaining = days_until(period_end, self._clock())
        renewal = format_renewal_date(period_end)
        cycle = subscription.billing_cycle
        if remaining > self._downgrade_window_days:
            raise PlanChangeRejected(
                f"Plan downgrades are only allowed within {self._downgrade_window_days} days of your "
                f"billing cycle end. Your current {cycle} plan renews on {renewal}. You can schedule a "
                f"plan change to take effect on {renewal}, or wait until then to downgrade. Since you've "
                f"paid for the full {cycle} period, you'll continue to have access to all features "
                f"until {renewal}.",
                renewal_date=period_end,
                context={"days_remaining": remaining},
            )

        async with self._store.transaction() as session:
            repo = ScheduledPlanChangeRepository(session, tenant_id)
            for pending in await repo.pending_for(subscription.id):
                pending.status = "superseded"
            await repo.create(
                subscription_id=subscription.id,
                change_type="scheduled_downgrade",
                from_plan=subscription.plan,
                to_plan=target_plan.id,
                billing_cycle=billing_cycle,
                effective_date=period_end,
                status="pending",
            )

        logger.info(
            "Downgrade scheduled tenant_id=%s from=%s to=%s effective=%s",
            tenant_id,
            subscription.plan,
            target_plan.id,
            period_end.isoformat(),
        )
        return ScheduledDowngrade(
            effective_date=period_end,
            target_plan=target_plan.id,
            message=(
                f"Your plan will change from {subscription.plan} to {target_plan.id} on {renewal}. "
                f"You keep access to all {subscription.plan} features until then."
            ),
        )

    def _quote(self, subscription: Subscription, latest_payment: Payment | None, now: datetime) -> ProrationQuote:
        total_days = CYCLE_DAYS.get(subscription.billing_cycle, CYCLE_DAYS["monthly"])
        if subscription.stripe_subscription_id:
            remaining = (
                max(0, days_until(subscription.current_period_end, now))
                if subscription.current_period_end
                else 0
            )
            base = subscription.yearly_price if subscription.billing_cycle == "yearly" else subscription.monthly_price
            return quote_proration(base or Decimal("0"), remaining, total_days)

        if latest_payment is not None:
            paid_at = latest_payment.paid_at or latest_payment.created_at
            days_since = days_until(now, paid_at)
            return quote_proration(latest_payment.amount, max(0, total_days - days_since), total_days)

        return quote_proration(Decimal("0"), 0, total_days)

    async def immediate_downgrade(
        self,
        tenant_id: UUID,
        new_plan_id: str,
        *,
        refund_requested: bool,
        reason: str = "plan_downgrade",
    ) -> DowngradeResult:
        new_plan = get_plan(new_plan_id)
        if new_plan is None:
            raise ValidationError(f"Invalid plan ID: {new_plan_id}", context={"plan_id": new_plan_id})

        async with self._store.session() as session:
            subscription = await SubscriptionRepository(session, tenant_id).get_current()
            tenant = await TenantDirectory(session).get(tenant_id)
            latest_payment = await PaymentRepository(session, tenant_id).latest_successful_subscription_payment()
        if subscription is None:
            raise NotFoundError("Subscription not found", context={"tenant_id": str(tenant_id)})

        previous_plan = subscription.plan
        if new_plan.id == previous_plan:
            raise ValidationError(f"Tenant is already on the {previous_plan} plan")

        now = self._clock()
        proration = self._quote(subscription, latest_payment, now)
        refund_amount = proration.amount if refund_requested else Decimal("0.00")
        to_trial = new_plan.id == TRIAL_PLAN

        gateway_ref = subscription.stripe_subscription_id
        if gateway_ref:
            await self._apply_gateway_change(gateway_ref, new_plan, subscription.billing_cycle, refund_requested)

        async with self._store.transaction() as session:
            values: dict[str, object] = {
                "plan": new_plan.id,
                "subscribed_tools": list(new_plan.applications),
                "usage_limits": dict(new_plan.usage_limits),
                "monthly_price": new_plan.monthly_price,
                "yearly_price": new_plan.yearly_price,
            }
            if to_trial:
                values.update(status="trialing", stripe_subscription_id=None, stripe_customer_id=None)
            elif gateway_ref and _cancels_gateway_subscription(new_plan):
                values["stripe_subscription_id"] = None
            updated = await SubscriptionRepository(session, tenant_id).update(subscription.id, **values)

            tenant_row = await TenantDirectory(session).get(tenant_id)
            if tenant_row is not None:
                tenant_row.subscription_status = updated.status

            if to_trial:
                await TrialEventRepository(session, tenant_id).record(
                    "plan_downgraded_to_trial",
                    subscription_id=subscription.id,
                    from_plan=previous_plan,
                    refund_requested=refund_requested,
                    refund_amount=str(refund_amount),
                    reason=reason,
                )
            else:
                await self._ledger.create_payment_record(
                    PaymentRecordData(
                        tenant_id=tenant_id,
                        subscription_id=subscription.id,
                        amount=new_plan.monthly_price,
                        status="succeeded",
                        payment_type="plan_change",
                        payment_method="system",
                        billing_reason="plan_downgrade",
                        description=f"Downgrade from {previous_plan} to {new_plan.id}",
                        proration_amount=-proration.amount,
                        metadata={
                            "from_plan": previous_plan,
                            "to_plan": new_plan.id,
                            "remaining_days": proration.remaining_days,
                            "total_days": proration.total_days,
                            "refund_requested": refund_requested,
                        },
                    ),
                    session=session,
                )

        logger.info(
            "Immediate downgrade tenant_id=%s from=%s to=%s proration=%s refund=%s",
            tenant_id,
            previous_plan,
            new_plan.id,
            proration.amount,
            refund_amount,
        )

        result = DowngradeResult(
            previous_plan=previous_plan,
            subscription=updated,
            proration=proration,
            refund_amount=refund_amount,
            impact=downgrade_impact(previous_plan, new_plan.id),
        )

        if refund_requested and refund_amount > 0:
            if latest_payment is not None:
                result.refund = await self._ledger.process_refund(
                    tenant_id,
                    latest_payment.id,
                    amount=min(refund_amount, to_money(latest_payment.amount)),
                    reason=reason,
                )
            else:
                pending = await self._ledger.create_payment_record(
                    PaymentRecordData(
                        tenant_id=tenant_id,
                        subscription_id=subscription.id,
                        amount=-refund_amount,
                        status="pending",
                        payment_type="refund",
                        payment_method="refund",
                        billing_reason="downgrade_refund",
                        description=f"Manual refund for downgrade from {previous_plan} to {new_plan.id}",
                        metadata={"requires_manual_processing": True, "reason": reason},
                    )
                )
                result.pending_refund_payment_id = pending.id

        if self._notifier is not None and tenant is not None:
            await self._notifier.send_downgrade_confirmation(
                tenant_id=tenant_id,
                admin_email=tenant.admin_email,
                from_plan=previous_plan,
                to_plan=new_plan.id,
                refund_amount=str(refund_amount),
                impact=result.impact,
            )

        return result

    async def _apply_gateway_change(
        self,
        gateway_ref: str,
        new_plan: PlanDefinition,
        billing_cycle: str,
        refund_requested: bool,
    ) -> None:
        if _cancels_gateway_subscription(new_plan):
            await asyncio.to_thread(
                self._gateway.cancel_subscription,
                gateway_ref,
                prorate=refund_requested,
                invoice_now=refund_requested,
            )
            return

        price_id = price_id_for(new_plan.id, billing_cycle)
        if not price_id:
            raise GatewayError(f"No gateway price configured for plan={new_plan.id} cycle={billing_cycle}")

        gateway_subscription = await asyncio.to_thread(self._gateway.retrieve_subscription, gateway_ref)
        if not gateway_subscription.items:
            raise GatewayError(f"Gateway subscription {gateway_ref} has no items")

        await asyncio.to_thread(
            self._gateway.update_subscription,
            gateway_ref,
            items=[{"id": gateway_subscription.items[0].id, "price": price_id}],
            proration_behavior="always_invoice" if refund_requested else "none",
        )

    async def complete_checkout(self, session_id: str) -> Subscription | None:
        details = await asyncio.to_thread(self._gateway.retrieve_checkout_session, session_id, ["subscription"])
        if details.payment_status not in PAID_CHECKOUT_STATUSES:
            logger.info("Checkout not paid yet session_id=%s status=%s", session_id, details.payment_status)
            return None

        try:
            tenant_id = UUID(details.metadata.get("tenant_id", ""))
        except ValueError as exc:
            raise ValidationError("Checkout session is missing tenant metadata") from exc

        plan_id = details.metadata.get("plan_id")
        billing_cycle = details.metadata.get("billing_cycle") or "monthly"
        gateway_subscription = details.subscription
        if not plan_id and gateway_subscription is not None and gateway_subscription.items:
            resolved = plan_for_price_id(gateway_subscription.items[0].price_id or "")
            if resolved is not None:
                plan_id, billing_cycle = resolved
        plan = get_plan(plan_id or "")
        if plan is None:
            raise ValidationError(f"Checkout session references unknown plan '{plan_id}'")

        async with self._store.transaction() as session:
            repo = SubscriptionRepository(session, tenant_id)
            subscription = await repo.get_current()
            if subscription is None:
                raise NotFoundError("Subscription not found", context={"tenant_id": str(tenant_id)})

            if (
                subscription.stripe_subscription_id == details.subscription_id
                and subscription.status == "active"
                and subscription.plan == plan.id
            ):
                return subscription

            was_trialing = subscription.status == "trialing"
            values: dict[str, object] = {
                "plan": plan.id,
                "status": "active",
                "billing_cycle": billing_cycle,
                "stripe_subscription_id": details.subscription_id,
                "stripe_customer_id": details.customer_id,
                "subscribed_tools": list(plan.applications),
                "usage_limits": dict(plan.usage_limits),
                "monthly_price": plan.monthly_price,
                "yearly_price": plan.yearly_price,
            }
            if gateway_subscription is not None:
                values["current_period_start"] = gateway_subscription.current_period_start
                values["current_period_end"] = gateway_subscription.current_period_end
            subscription = await repo.update(subscription.id, **values)

            tenant = await TenantDirectory(session).get(tenant_id)
            if tenant is not None:
                tenant.subscription_status = "active"
                if was_trialing:
                    tenant.trial_status = "converted"

            for pending in await ScheduledPlanChangeRepository(session, tenant_id).pending_for(subscription.id):
                pending.status = "superseded"

            if details.amount_total:
                await self._ledger.create_payment_record(
                    PaymentRecordData(
                        tenant_id=tenant_id,
                        subscription_id=subscription.id,
                        amount=details.amount_total,
                        currency=details.currency,
                        status="succeeded",
                        payment_type="subscription",
                        billing_reason="subscription_create",
                        description=f"{plan.name} plan ({billing_cycle})",
                        stripe_payment_intent_id=details.payment_intent_id,
                        metadata={"checkout_session_id": session_id},
                    ),
                    session=session,
                )

            if was_trialing:
                await TrialEventRepository(session, tenant_id).record(
                    "trial_converted",
                    subscription_id=subscription.id,
                    plan=plan.id,
                    billing_cycle=billing_cycle,
                )

        logger.info("Checkout completed tenant_id=%s plan=%s", tenant_id, plan.id)
        return subscription

    async def mark_gateway_subscription_canceled(self, gateway_ref: str) -> UUID | None:
        async with self._store.transaction() as session:
            subscription = await find_subscription_by_gateway_ref(session, gateway_ref)
            if subscription is None:
                return None
            subscription.status = "canceled"
            tenant = await TenantDirectory(session).get(subscription.tenant_id)
            if tenant is not None:
                tenant.subscription_status = "canceled"
            tenant_id = subscription.tenant_id

        logger.info("Gateway subscription canceled tenant_id=%s ref=%s", tenant_id, gateway_ref)
        return tenant_id
