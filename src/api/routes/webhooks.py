from __future__ import annotations

import json

import redis.asyncio as redis
import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from src.core.config import settings
from src.core.dependencies import get_plan_change_engine
from src.core.plan_change import PlanChangeEngine
from src.schemas.subscriptions import GatewayWebhookResponse

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

HANDLED_EVENTS = frozenset({"checkout.session.completed", "customer.subscription.deleted"})


def _event_object(payload: dict) -> dict:
    return (payload.get("data") or {}).get("object") or {}


async def _publish_tenant_status(tenant_id: str, subscription_status: str) -> None:
    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await redis_client.set(f"tenant:subscription_status:{tenant_id}", subscription_status)
        await redis_client.publish(f"billing:tenant_status:{tenant_id}", subscription_status)
    finally:
        await redis_client.aclose()


def _verify_and_parse_event(raw_body: bytes, stripe_signature: str | None) -> dict:
    if settings.stripe_webhook_secret and not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Stripe signature",
        )

    if stripe_signature and settings.stripe_webhook_secret:
        try:
            stripe.Webhook.construct_event(
                payload=raw_body,
                sig_header=stripe_signature,
                secret=settings.stripe_webhook_secret,
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid Stripe signature: {exc}",
            ) from exc

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        )
    return payload


@router.post("/billing", response_model=GatewayWebhookResponse)
async def billing_webhook(
    request: Request,
    engine: PlanChangeEngine = Depends(get_plan_change_engine),
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> GatewayWebhookResponse:
    raw_body = await request.body()
    payload = _verify_and_parse_event(raw_body, stripe_signature)
    event_type = payload.get("type", "unknown")
    response = GatewayWebhookResponse(received=True, event_type=event_type)

    if event_type not in HANDLED_EVENTS:
        return response

    object_id = _event_object(payload).get("id")
    if not object_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload missing object identifier",
        )
    response.object_id = object_id

    if event_type == "checkout.session.completed":
        subscription = await engine.complete_checkout(object_id)
        if subscription is None:
            return response
        tenant_id, subscription_status = str(subscription.tenant_id), subscription.status
    else:
        canceled_tenant_id = await engine.mark_gateway_subscription_canceled(object_id)
        if canceled_tenant_id is None:
            return response
        tenant_id, subscription_status = str(canceled_tenant_id), "canceled"

    await _publish_tenant_status(tenant_id, subscription_status)
    response.tenant_id = tenant_id
    response.updated = True
    return response
