"""
Redis connection handle and key layout.
"""

import json
import logging
from typing import Any, Optional
import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client, constructed at startup and injected into components."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client: Optional[redis.Redis] = None

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    @property
    def client(self) -> Optional[redis.Redis]:
        """Raw client for atomic commands and scripts (None when disabled)."""
        return self._client

    async def connect(self):
        """Connect to Redis."""
        if not self.enabled:
            logger.info("Redis disabled, using in-process state")
            return
        self._client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        await self._client.ping()
        logger.info("Redis connected")

    async def disconnect(self):
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis disconnected")

    async def get(self, key: str) -> Optional[Any]:
        """Get JSON value from cache."""
        if not self._client:
            return None
        value = await self._client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = 3600):
        """Set JSON value in cache with TTL."""
        if not self._client:
            return
        await self._client.setex(key, ttl, json.dumps(value))

    async def delete(self, key: str):
        """Delete key from cache."""
        if not self._client:
            return
        await self._client.delete(key)


# Key patterns
class CacheKeys:
    @staticmethod
    def stock(product_id: str) -> str:
        return f"stock:{product_id}"

    @staticmethod
    def released_tokens(product_id: str) -> str:
        return f"stock:{product_id}:released"

    @staticmethod
    def order_guard(product_id: str, user_id: str) -> str:
        return f"order:{product_id}:{user_id}"

    @staticmethod
    def sale(product_id: str) -> str:
        return f"flash_sale:{product_id}"

    @staticmethod
    def settlement(order_id: str) -> str:
        return f"settlement:{order_id}"
