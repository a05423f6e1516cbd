from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from uuid import UUID

import requests

from src.core.config import settings

logger = logging.getLogger(__name__)


class NotificationSink:
    """Fire-and-forget event delivery to the n8n email workflow."""

    def __init__(self, webhook_url: str | None = None, *, timeout: int = 10) -> None:
        self.webhook_url = settings.n8n_email_webhook_url if webhook_url is None else webhook_url
        self.timeout = timeout

    async def dispatch(self, payload: dict[str, object]) -> None:
        if not self.webhook_url:
            raise ValueError("Notification webhook is not configured")

        def _post() -> None:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()

        await asyncio.to_thread(_post)

    async def notify(self, event_type: str, tenant_id: UUID, **fields: object) -> bool:
        payload: dict[str, object] = {
            "event_type": event_type,
            "tenant_id": str(tenant_id),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **fields,
        }
        try:
            await self.dispatch(payload)
        except Exception as exc:
            logger.warning("Notification delivery failed event=%s tenant_id=%s: %s", event_type, tenant_id, exc)
            return False
        return True

    async def send_welcome(
        self,
        *,
        tenant_id: UUID,
        admin_email: str,
        admin_name: str,
        company_name: str,
        subdomain: str,
        trial_end: datetime | None,
    ) -> bool:
        return await self.notify(
            "tenant_welcome",
            tenant_id,
            destination=admin_email,
            admin_name=admin_name,
            company_name=company_name,
            subdomain=subdomain,
            dashboard_url=f"{settings.frontend_url.rstrip('/')}/dashboard",
            trial_end=trial_end.isoformat() if trial_end else None,
        )

    async def send_downgrade_confirmation(
        self,
        *,
        tenant_id: UUID,
        admin_email: str,
        from_plan: str,
        to_plan: str,
        refund_amount: str,
        impact: dict[str, object],
    ) -> bool:
        return await self.notify(
            "subscription_downgraded",
            tenant_id,
            destination=admin_email,
            from_plan=from_plan,
            to_plan=to_plan,
            refund_amount=refund_amount,
            impact=impact,
        )
