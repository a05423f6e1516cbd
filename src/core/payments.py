from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

import stripe

from src.core.config import settings
from src.core.errors import GatewayError
from src.core.plans import price_id_for

logger = logging.getLogger(__name__)

REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


@dataclass(slots=True)
class GatewaySubscriptionItem:
    id: str
    price_id: str | None


@dataclass(slots=True)
class GatewaySubscription:
    id: str
    customer_id: str | None
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    items: list[GatewaySubscriptionItem] = field(default_factory=list)


@dataclass(slots=True)
class CheckoutSessionDetails:
    id: str
    metadata: dict[str, str]
    amount_total: Decimal | None
    currency: str
    payment_status: str | None
    customer_id: str | None = None
    subscription_id: str | None = None
    payment_intent_id: str | None = None
    subscription: GatewaySubscription | None = None


@dataclass(slots=True)
class GatewayRefund:
    refund_id: str
    status: str
    amount: Decimal


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | None) -> Decimal | None:
    if amount is None:
        return None
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def _field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _ref(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def _map_subscription(raw: Any) -> GatewaySubscription:
    items = [
        GatewaySubscriptionItem(id=_field(item, "id"), price_id=_field(_field(item, "price"), "id"))
        for item in _field(_field(raw, "items"), "data", [])
    ]
    first_item = (_field(_field(raw, "items"), "data", []) or [None])[0]
    return GatewaySubscription(
        id=_field(raw, "id"),
        customer_id=_ref(_field(raw, "customer")),
        status=_field(raw, "status", "unknown"),
        current_period_start=_timestamp(
            _field(raw, "current_period_start") or _field(first_item, "current_period_start")
        ),
        current_period_end=_timestamp(
            _field(raw, "current_period_end") or _field(first_item, "current_period_end")
        ),
        items=items,
    )


class StripePaymentGateway:
    def __init__(self, secret_key: str | None = None, *, client: Any | None = None) -> None:
        self.secret_key = settings.stripe_secret_key if secret_key is None else secret_key
        if client is None and self.secret_key:
            client = stripe.StripeClient(self.secret_key)
        self._client = client

    def is_configured(self) -> bool:
        return self._client is not None

    def get_config_status(self) -> dict[str, object]:
        return {
            "configured": self.is_configured(),
            "mode": "live" if self.secret_key.startswith("sk_live") else "test",
            "webhook_secret_configured": bool(settings.stripe_webhook_secret),
            "price_ids_configured": sorted(settings.stripe_price_ids()),
        }

    @property
    def _api(self) -> Any:
        if self._client is None:
            raise GatewayError("Payment gateway is not configured")
        return getattr(self._client, "v1", self._client)

    def _call(self, action: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as exc:
            logger.exception("Stripe %s failed", action)
            raise GatewayError(
                f"Payment gateway {action} failed: {exc.user_message or exc}",
                context={"action": action, "code": getattr(exc, "code", None)},
            ) from exc

    def create_checkout_session(
        self,
        tenant_id: UUID,
        plan_id: str,
        *,
        success_url: str,
        cancel_url: str,
        billing_cycle: str = "monthly",
        customer_id: str | None = None,
        customer_email: str | None = None,
    ) -> str:
        price_id = price_id_for(plan_id, billing_cycle)
        if not price_id:
            raise GatewayError(
                f"No gateway price configured for plan={plan_id} cycle={billing_cycle}",
                context={"plan_id": plan_id, "billing_cycle": billing_cycle},
            )

        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "billing_address_collection": "required",
            "metadata": {
                "tenant_id": str(tenant_id),
                "plan_id": plan_id,
                "billing_cycle": billing_cycle,
            },
            "subscription_data": {"metadata": {"tenant_id": str(tenant_id), "plan_id": plan_id}},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        session = self._call("create_checkout_session", self._api.checkout.sessions.create, params=params)
        return _field(session, "url")

    def create_billing_portal_session(self, tenant_id: UUID, return_url: str, *, customer_id: str) -> str:
        session = self._call(
            "create_billing_portal_session",
            self._api.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        logger.info("Billing portal session created tenant_id=%s", tenant_id)
        return _field(session, "url")

    def retrieve_subscription(self, subscription_ref: str) -> GatewaySubscription:
        raw = self._call(
            "retrieve_subscription",
            self._api.subscriptions.retrieve,
            subscription_ref,
            params={"expand": ["items.data"]},
        )
        return _map_subscription(raw)

    def update_subscription(
        self,
        subscription_ref: str,
        *,
        items: list[dict[str, str]],
        proration_behavior: str,
    ) -> GatewaySubscription:
        raw = self._call(
            "update_subscription",
            self._api.subscriptions.update,
            subscription_ref,
            params={"items": items, "proration_behavior": proration_behavior},
        )
        return _map_subscription(raw)

    def cancel_subscription(self, subscription_ref: str, *, prorate: bool, invoice_now: bool) -> None:
        self._call(
            "cancel_subscription",
            self._api.subscriptions.cancel,
            subscription_ref,
            params={"prorate": prorate, "invoice_now": invoice_now},
        )

    def create_refund(
        self,
        *,
        amount: Decimal,
        reason: str,
        metadata: dict[str, str],
        payment_intent_id: str | None = None,
        charge_id: str | None = None,
    ) -> GatewayRefund:
        if not payment_intent_id and not charge_id:
            raise GatewayError("Refund requires a payment intent or charge reference")

        params: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "reason": reason if reason in REFUND_REASONS else "requested_by_customer",
            "metadata": {**metadata, "reason_detail": reason},
        }
        if payment_intent_id:
            params["payment_intent"] = payment_intent_id
        else:
            params["charge"] = charge_id

        refund = self._call("create_refund", self._api.refunds.create, params=params)
        return GatewayRefund(
            refund_id=_field(refund, "id"),
            status=_field(refund, "status", "pending"),
            amount=from_minor_units(_field(refund, "amount")) or amount,
        )

    def retrieve_checkout_session(
        self,
        session_id: str,
        expand: list[str] | None = None,
    ) -> CheckoutSessionDetails:
        raw = self._call(
            "retrieve_checkout_session",
            self._api.checkout.sessions.retrieve,
            session_id,
            params={"expand": expand or []},
        )
        subscription_raw = _field(raw, "subscription")
        subscription = None
        if subscription_raw is not None and not isinstance(subscription_raw, str):
            subscription = _map_subscription(subscription_raw)

        metadata = _field(raw, "metadata", {})
        if hasattr(metadata, "to_dict"):
            metadata = metadata.to_dict()
        return CheckoutSessionDetails(
            id=_field(raw, "id"),
            metadata={str(key): str(value) for key, value in dict(metadata).items()},
            amount_total=from_minor_units(_field(raw, "amount_total")),
            currency=str(_field(raw, "currency", settings.default_currency)).upper(),
            payment_status=_field(raw, "payment_status"),
            customer_id=_ref(_field(raw, "customer")),
            subscription_id=_ref(subscription_raw),
            payment_intent_id=_ref(_field(raw, "payment_intent")),
            subscription=subscription,
        )
