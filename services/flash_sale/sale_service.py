"""
Sale status reads and the administrative sale update.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import SaleNotFound, ValidationError
from .metrics import update_remaining_stock
from .repository import SaleRepository
from .sale_cache import SaleCache, derive_status
from .schemas import SaleRecord, SaleStatusResponse
from .token_pool import TokenPool, generate_tokens

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SaleService:
    def __init__(
        self,
        sale_cache: SaleCache,
        repository: SaleRepository,
        token_pool: TokenPool,
        clock: Callable[[], datetime] = utc_now
    ):
        self.sale_cache = sale_cache
        self.repository = repository
        self.token_pool = token_pool
        self.clock = clock

    async def get_status(self, product_id: str) -> SaleStatusResponse:
        """Sale details with the derived status and the remaining stock."""
        sale = await self.sale_cache.get_sale(product_id)
        if sale is None:
            raise SaleNotFound()

        remaining = await self.token_pool.remaining(product_id)
        update_remaining_stock(product_id, remaining)

        return SaleStatusResponse(
            **sale.model_dump(),
            status=derive_status(self.clock(), sale.start_date, sale.end_date),
            remaining_stock=remaining
        )

    async def update_sale(
        self,
        product_id: str,
        start_date: datetime,
        end_date: datetime,
        quantity: Optional[int] = None
    ) -> SaleRecord:
        """
        Update the sale window and, when ``quantity`` is given, reset the stock.

        The durable record is written first, then the cache is invalidated, and
        only then is the token pool replaced, so a reader never pairs the new
        stock with a stale window.
        """
        sale = await self.repository.update_sale(product_id, start_date, end_date, quantity)
        if sale is None:
            raise ValidationError("Invalid product id")

        await self.sale_cache.invalidate(product_id)

        if quantity is not None:
            await self.token_pool.replace(product_id, generate_tokens(quantity))
            update_remaining_stock(product_id, quantity)

        logger.info(
            f"Sale {sale.flash_sale_id} updated: window={sale.start_date.isoformat()}"
            f"..{sale.end_date.isoformat()}, quantity={quantity}"
        )
        return sale
