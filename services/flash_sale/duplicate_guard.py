"""
Duplicate purchase guard: one entry per (product, user) holding the order id.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import redis.asyncio as redis

from .redis_client import CacheKeys

logger = logging.getLogger(__name__)

# Returns the existing order id, or nil after claiming.
CLAIM_SCRIPT = """
local existing = redis.call('GET', KEYS[1])
if existing then
    return existing
end
redis.call('SET', KEYS[1], ARGV[1])
return false
"""

COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    existing_order_id: Optional[str] = None


class DuplicateGuard:
    """
    Claimed before the token is reserved and before settlement, so repeat
    attempts are rejected without a database round trip. Entries carry no TTL:
    a guard must outlive its order.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self._redis = redis_client
        self._entries: Dict[Tuple[str, str], str] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def try_claim(self, product_id: str, user_id: str, order_id: str) -> ClaimResult:
        if self._redis:
            existing = await self._redis.eval(
                CLAIM_SCRIPT, 1, CacheKeys.order_guard(product_id, user_id), order_id
            )
        else:
            key = (product_id, user_id)
            async with self._locks[key]:
                existing = self._entries.get(key)
                if existing is None:
                    self._entries[key] = order_id

        if existing:
            return ClaimResult(claimed=False, existing_order_id=existing)
        return ClaimResult(claimed=True)

    async def get(self, product_id: str, user_id: str) -> Optional[str]:
        if self._redis:
            return await self._redis.get(CacheKeys.order_guard(product_id, user_id))
        return self._entries.get((product_id, user_id))

    async def release(
        self,
        product_id: str,
        user_id: str,
        order_id: Optional[str] = None
    ) -> bool:
        """
        Delete the entry. With ``order_id`` it is deleted only while it still
        holds that order, so a replayed release cannot drop a newer claim.
        """
        if self._redis:
            key = CacheKeys.order_guard(product_id, user_id)
            if order_id is None:
                deleted = await self._redis.delete(key)
            else:
                deleted = await self._redis.eval(COMPARE_AND_DELETE_SCRIPT, 1, key, order_id)
            return bool(deleted)

        key = (product_id, user_id)
        async with self._locks[key]:
            if key not in self._entries:
                return False
            if order_id is not None and self._entries[key] != order_id:
                return False
            del self._entries[key]
            return True
