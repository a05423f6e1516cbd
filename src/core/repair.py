from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as redis

from src.core.config import settings

logger = logging.getLogger(__name__)


class IdentityRepairQueue:
    """Redis stream of tenants whose identity-provider mirror needs manual repair."""

    def __init__(self, redis_url: str | None = None, stream_name: str | None = None) -> None:
        self.redis_url = redis_url or settings.redis_url
        self.stream_name = stream_name or settings.identity_repair_stream_name

    async def publish(self, entry: dict[str, object]) -> bool:
        fields = {
            key: value if isinstance(value, str) else json.dumps(value, default=str)
            for key, value in entry.items()
        }
        fields["queued_at"] = datetime.now(timezone.utc).isoformat()

        redis_client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await redis_client.xadd(self.stream_name, fields)
        except Exception as exc:
            logger.warning("Identity repair entry not queued tenant_id=%s: %s", entry.get("tenant_id"), exc)
            return False
        finally:
            await redis_client.aclose()
        return True
