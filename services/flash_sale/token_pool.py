"""
Stock token pool.

Each unsold unit is a unique token in a Redis list. Reserving a unit is a
single LPOP, so two concurrent buyers can never receive the same token and an
empty pool answers "sold out" without side effects. The pool length is only
advisory; nothing gates on it.
"""

import asyncio
import logging
import uuid
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Set

import redis.asyncio as redis

from .redis_client import CacheKeys

logger = logging.getLogger(__name__)

# KEYS[1] = stock list, KEYS[2] = released-set
# ARGV[1] = token, ARGV[2] = release id
RELEASE_ONCE_SCRIPT = """
if redis.call('SADD', KEYS[2], ARGV[2]) == 1 then
    redis.call('RPUSH', KEYS[1], ARGV[1])
    return 1
end
return 0
"""


def generate_tokens(count: int) -> List[str]:
    """Generate ``count`` unique stock tokens."""
    tokens: Set[str] = set()
    while len(tokens) < count:
        tokens.add(str(uuid.uuid4()))
    return list(tokens)


class TokenPool:
    """
    Atomically poppable pool of stock tokens, one list per product.

    With a Redis client every operation is a single atomic command or script.
    Without one the pool lives in this process and each product is guarded by
    its own lock.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self._redis = redis_client
        self._stock: Dict[str, Deque[str]] = defaultdict(deque)
        self._released: Dict[str, Set[str]] = defaultdict(set)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def reserve(self, product_id: str) -> Optional[str]:
        """Pop one token, or None when the pool is empty."""
        if self._redis:
            return await self._redis.lpop(CacheKeys.stock(product_id))

        async with self._locks[product_id]:
            stock = self._stock[product_id]
            return stock.popleft() if stock else None

    async def release(
        self,
        product_id: str,
        token: str,
        release_id: Optional[str] = None
    ) -> bool:
        """
        Push a token back into circulation.

        When ``release_id`` is given, a release already recorded under that id
        is a no-op. Returns True if the token was pushed.
        """
        if self._redis:
            if release_id is None:
                await self._redis.rpush(CacheKeys.stock(product_id), token)
                return True
            pushed = await self._redis.eval(
                RELEASE_ONCE_SCRIPT,
                2,
                CacheKeys.stock(product_id),
                CacheKeys.released_tokens(product_id),
                token,
                release_id
            )
            return bool(pushed)

        async with self._locks[product_id]:
            if release_id is not None:
                if release_id in self._released[product_id]:
                    return False
                self._released[product_id].add(release_id)
            self._stock[product_id].append(token)
            return True

    async def forget_release(self, product_id: str, release_id: str):
        """
        Drop a recorded release id once the order is durably compensated.

        Keeps the released-id set bounded by the compensations in flight.
        """
        if self._redis:
            await self._redis.srem(CacheKeys.released_tokens(product_id), release_id)
            return
        async with self._locks[product_id]:
            self._released[product_id].discard(release_id)

    async def remaining(self, product_id: str) -> int:
        """Number of unsold tokens (advisory, for display)."""
        if self._redis:
            return await self._redis.llen(CacheKeys.stock(product_id))
        return len(self._stock[product_id])

    async def replace(self, product_id: str, tokens: List[str]):
        """Reset the pool to exactly ``tokens``."""
        if self._redis:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(CacheKeys.stock(product_id))
                if tokens:
                    pipe.rpush(CacheKeys.stock(product_id), *tokens)
                await pipe.execute()
        else:
            async with self._locks[product_id]:
                self._stock[product_id] = deque(tokens)

        logger.info(f"Token pool for {product_id} replaced with {len(tokens)} tokens")
