"""
Settlement ledger: per-order processing checkpoint.

Tracks how far each reservation event got so redelivered events never
settle twice, and a compensation in progress is resumed rather than repeated.

States::

    (none) -> settling -> settled
                       -> compensating -> compensated
    (none) -> compensating -> compensated      (request-path compensation)

Every state expires after the ledger TTL except ``compensated``: a parked
event may be replayed at any time, and its token has already gone back to the
pool. An expired ``settled`` entry is safe to lose since the order row itself
rejects a second insert.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from .redis_client import CacheKeys

logger = logging.getLogger(__name__)


class LedgerState(str, Enum):
    SETTLING = "settling"
    SETTLED = "settled"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


DURABLE_STATES = (LedgerState.COMPENSATED,)

CLAIM_SETTLEMENT_SCRIPT = """
local state = redis.call('GET', KEYS[1])
if (not state) or state == 'settling' then
    redis.call('SET', KEYS[1], 'settling', 'EX', ARGV[1])
    return 'settling'
end
return state
"""

BEGIN_COMPENSATION_SCRIPT = """
local state = redis.call('GET', KEYS[1])
if (not state) or state == 'compensating' then
    redis.call('SET', KEYS[1], 'compensating', 'EX', ARGV[1])
    return 1
end
return 0
"""


class SettlementLedger:
    """
    Checkpoint store keyed by order id.

    Uses Redis when available; otherwise an in-process dict that honours the
    same expiry rules.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic
    ):
        self._redis = redis_client
        self._ttl = ttl_seconds
        self._clock = clock
        self._states: Dict[str, Tuple[LedgerState, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _current(self, order_id: str) -> Optional[LedgerState]:
        entry = self._states.get(order_id)
        if entry is None:
            return None
        state, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._states[order_id]
            return None
        return state

    def _put(self, order_id: str, state: LedgerState):
        expires_at = None if state in DURABLE_STATES else self._clock() + self._ttl
        self._states[order_id] = (state, expires_at)

    async def state(self, order_id: str) -> Optional[LedgerState]:
        if self._redis:
            value = await self._redis.get(CacheKeys.settlement(order_id))
            return LedgerState(value) if value else None
        return self._current(order_id)

    async def claim_settlement(self, order_id: str) -> LedgerState:
        """
        Take the order for settlement.

        Returns SETTLING when the caller may proceed with the durable insert;
        any other state means the order already moved past settlement.
        """
        if self._redis:
            value = await self._redis.eval(
                CLAIM_SETTLEMENT_SCRIPT, 1, CacheKeys.settlement(order_id), self._ttl
            )
            return LedgerState(value)

        async with self._lock:
            current = self._current(order_id)
            if current in (None, LedgerState.SETTLING):
                self._put(order_id, LedgerState.SETTLING)
                return LedgerState.SETTLING
            return current

    async def try_begin_compensation(self, order_id: str) -> bool:
        """
        Checkpoint a compensation for an order nobody is settling.

        False means a worker already holds (or finished) the order.
        """
        if self._redis:
            started = await self._redis.eval(
                BEGIN_COMPENSATION_SCRIPT, 1, CacheKeys.settlement(order_id), self._ttl
            )
            return bool(started)

        async with self._lock:
            current = self._current(order_id)
            if current in (None, LedgerState.COMPENSATING):
                self._put(order_id, LedgerState.COMPENSATING)
                return True
            return False

    async def mark(self, order_id: str, state: LedgerState):
        if self._redis:
            key = CacheKeys.settlement(order_id)
            if state in DURABLE_STATES:
                await self._redis.set(key, state.value)
            else:
                await self._redis.setex(key, self._ttl, state.value)
        else:
            async with self._lock:
                self._put(order_id, state)
