"""
Read-through cache of sale metadata.
"""

import logging
from datetime import datetime
from typing import Optional

from .metrics import SALE_CACHE_HITS_TOTAL, SALE_CACHE_MISSES_TOTAL
from .redis_client import CacheKeys, RedisClient
from .repository import SaleRepository
from .schemas import SaleRecord, SaleStatus

logger = logging.getLogger(__name__)


def derive_status(now: datetime, start: datetime, end: datetime) -> SaleStatus:
    """Sale status is a pure function of the clock and the window."""
    if now < start:
        return SaleStatus.UPCOMING
    if now <= end:
        return SaleStatus.ACTIVE
    return SaleStatus.ENDED


class SaleCache:
    def __init__(self, redis_client: RedisClient, repository: SaleRepository, ttl_seconds: int = 300):
        self.redis = redis_client
        self.repository = repository
        self.ttl_seconds = ttl_seconds

    async def get_sale(self, product_id: str) -> Optional[SaleRecord]:
        cached = await self.redis.get(CacheKeys.sale(product_id))
        if cached:
            SALE_CACHE_HITS_TOTAL.inc()
            return SaleRecord.model_validate(cached)

        SALE_CACHE_MISSES_TOTAL.inc()
        sale = await self.repository.get(product_id)
        if sale is None:
            return None

        await self.redis.set(
            CacheKeys.sale(product_id),
            sale.model_dump(mode="json"),
            ttl=self.ttl_seconds
        )
        return sale

    async def invalidate(self, product_id: str):
        await self.redis.delete(CacheKeys.sale(product_id))
        logger.info(f"Sale cache invalidated for {product_id}")
