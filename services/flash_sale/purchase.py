"""
Purchase request path.

Steps, each an await point:
  1. Sale cache: is the sale active?
  2. Duplicate guard: claim (product, user) with a fresh order id.
  3. Token pool: pop one token.
  4. Settlement queue: hand the reservation off.
and return ``pending`` without waiting for settlement.

Rejections before step 3 leave no side effects. Once a token is held, any
failure to hand off is compensated here before the error reaches the caller.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from .compensation import Compensator, Reservation
from .duplicate_guard import DuplicateGuard
from .errors import AlreadyPurchased, AmbiguousReservation, SaleNotActive, SoldOut, ValidationError
from .metrics import RESERVATIONS_TOTAL
from .sale_cache import SaleCache, derive_status
from .schemas import ReservationResponse, SaleStatus
from .settlement_queue import SettlementQueue
from .token_pool import TokenPool

logger = logging.getLogger(__name__)


class PurchaseService:
    def __init__(
        self,
        sale_cache: SaleCache,
        guard: DuplicateGuard,
        token_pool: TokenPool,
        queue: SettlementQueue,
        compensator: Compensator,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.sale_cache = sale_cache
        self.guard = guard
        self.token_pool = token_pool
        self.queue = queue
        self.compensator = compensator
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_reservation(
        self,
        user_id: str,
        product_id: str,
        correlation_id: Optional[str] = None
    ) -> ReservationResponse:
        if not user_id or not product_id:
            raise ValidationError("user_id and product_id are required")

        sale = await self.sale_cache.get_sale(product_id)
        if sale is None or derive_status(self.clock(), sale.start_date, sale.end_date) != SaleStatus.ACTIVE:
            RESERVATIONS_TOTAL.labels(outcome="sale_not_active").inc()
            raise SaleNotActive()

        order_id = str(uuid.uuid4())
        claim = await self.guard.try_claim(product_id, user_id, order_id)
        if not claim.claimed:
            RESERVATIONS_TOTAL.labels(outcome="already_purchased").inc()
            raise AlreadyPurchased(claim.existing_order_id)

        try:
            token = await self.token_pool.reserve(product_id)
        except BaseException:
            await self.guard.release(product_id, user_id, order_id=order_id)
            raise

        if token is None:
            await self.guard.release(product_id, user_id, order_id=order_id)
            RESERVATIONS_TOTAL.labels(outcome="sold_out").inc()
            raise SoldOut()

        reservation = Reservation(
            product_id=product_id,
            user_id=user_id,
            order_id=order_id,
            token=token,
            created_at=self.clock()
        )
        await self._hand_off(reservation, correlation_id)

        RESERVATIONS_TOTAL.labels(outcome="accepted").inc()
        logger.info(
            f"Reservation accepted: order_id={order_id}, product_id={product_id}, "
            f"user_id={user_id}, correlation_id={correlation_id}"
        )
        return ReservationResponse(order_id=order_id, product_id=product_id)

    async def _hand_off(self, reservation: Reservation, correlation_id: Optional[str]):
        """Publish the reservation; compensate if the hand-off did not happen."""
        try:
            published = await self.queue.publish(reservation.to_event(correlation_id))
        except Exception:
            logger.exception(f"Publishing order {reservation.order_id} raised")
            published = False
        except BaseException:
            # Cancelled mid hand-off
            await self.compensator.compensate(reservation, source="request")
            raise

        if published:
            return

        logger.error(f"Publishing order {reservation.order_id} failed, compensating")
        if await self.compensator.compensate(reservation, source="request"):
            RESERVATIONS_TOTAL.labels(outcome="ambiguous").inc()
            raise AmbiguousReservation()
        # The worker already holds the order: the event went through after all.
