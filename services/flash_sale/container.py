"""
Process-scoped handles for every component.

Built once from ``Settings``, started in the application lifespan, injected
into request handlers and the settlement worker, and stopped on shutdown.
"""

import asyncio
import logging
from typing import Optional

from .compensation import Compensator
from .config import Settings
from .database import Database
from .duplicate_guard import DuplicateGuard
from .order_reader import OrderReader
from .purchase import PurchaseService
from .redis_client import RedisClient
from .repository import OrderRepository, SaleRepository
from .sale_cache import SaleCache
from .sale_service import SaleService
from .settlement_ledger import SettlementLedger
from .settlement_queue import build_settlement_queue
from .settlement_worker import SettlementWorker
from .token_pool import TokenPool

logger = logging.getLogger(__name__)


class FlashSaleContainer:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis = RedisClient(settings.redis_url)
        self.database = Database(settings.database_url, echo=settings.debug)
        self.queue = build_settlement_queue(settings)
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """Connect to every backing service and wire the components."""
        logger.info(f"Starting {self.settings.service_name}...")
        try:
            await self.database.connect()
            await self.database.create_all()
            await self.redis.connect()
            await self.queue.start()
        except Exception:
            logger.exception(f"{self.settings.service_name} failed to start, releasing connections")
            await self.stop()
            raise

        raw_redis = self.redis.client
        self.token_pool = TokenPool(raw_redis)
        self.guard = DuplicateGuard(raw_redis)
        self.ledger = SettlementLedger(raw_redis, ttl_seconds=self.settings.ledger_ttl_seconds)

        self.sale_repository = SaleRepository(self.database)
        self.order_repository = OrderRepository(self.database)
        self.sale_cache = SaleCache(
            self.redis, self.sale_repository, ttl_seconds=self.settings.sale_cache_ttl_seconds
        )
        self.compensator = Compensator(self.token_pool, self.guard, self.ledger)

        self.sale_service = SaleService(self.sale_cache, self.sale_repository, self.token_pool)
        self.purchase_service = PurchaseService(
            self.sale_cache, self.guard, self.token_pool, self.queue, self.compensator
        )
        self.order_reader = OrderReader(self.order_repository, self.guard)
        self.worker = SettlementWorker(
            self.order_repository,
            self.ledger,
            self.compensator,
            max_retries=self.settings.settlement_max_retries,
            retry_backoff_ms=self.settings.settlement_retry_backoff_ms
        )

    def start_worker(self) -> asyncio.Task:
        """Run the settlement worker as a background consumer task."""
        self._worker_task = asyncio.create_task(self.queue.consume(self.worker.handle))
        return self._worker_task

    async def stop(self):
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        await self.queue.stop()
        await self.redis.disconnect()
        await self.database.disconnect()
        logger.info(f"{self.settings.service_name} stopped")
