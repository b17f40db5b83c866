import logging
from typing import Optional

import redis.asyncio as redis

from .config import REDIS_URL, WEBHOOK_DEDUPE_TTL_SECONDS

log = logging.getLogger(__name__)


class RedisManager:
    """Optional Redis connection; every helper is a no-op while disconnected."""

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or REDIS_URL
        self.redis_client: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        try:
            self.redis_client = redis.from_url(self.redis_url)
            await self.redis_client.ping()
            log.info("Redis connected")
        except Exception as exc:
            log.error("Redis connection failed: %s", exc)
            self.redis_client = None

    async def close(self) -> None:
        if self.redis_client:
            try:
                await self.redis_client.close()
            finally:
                self.redis_client = None

    async def mark_webhook_message_seen(self, whatsapp_message_id: str) -> bool:
        """Return True the first time a WhatsApp message id is seen (Meta retries deliveries).

        Without Redis this always returns True and callers fall back to the DB lookup.
        """
        if not self.redis_client or not whatsapp_message_id:
            return True
        try:
            created = await self.redis_client.set(
                f"wa:seen:{whatsapp_message_id}",
                "1",
                ex=int(WEBHOOK_DEDUPE_TTL_SECONDS),
                nx=True,
            )
            return bool(created)
        except Exception as exc:
            log.warning("Redis dedupe check failed for %s: %s", whatsapp_message_id, exc)
            return True
