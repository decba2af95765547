"""
Reservation records and compensation.

A reservation exists between "token popped" and "settled or compensated".
Compensation returns the token to the pool and then clears the guard, in that
order, and is idempotent under redelivery: the ledger checkpoint is written
before any side effect, the token release is deduplicated by order id, and the
guard is only deleted while it still holds this order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .duplicate_guard import DuplicateGuard
from .events import ReservationEvent
from .metrics import COMPENSATIONS_TOTAL
from .settlement_ledger import LedgerState, SettlementLedger
from .token_pool import TokenPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    """One token claimed by one user, pending durable settlement."""
    product_id: str
    user_id: str
    order_id: str
    token: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_event(cls, event: ReservationEvent) -> "Reservation":
        return cls(
            product_id=event.product_id,
            user_id=event.user_id,
            order_id=event.order_id,
            token=event.reserved_token,
            created_at=event.created_at
        )

    def to_event(self, correlation_id: Optional[str] = None) -> ReservationEvent:
        return ReservationEvent(
            order_id=self.order_id,
            product_id=self.product_id,
            user_id=self.user_id,
            reserved_token=self.token,
            created_at=self.created_at,
            correlation_id=correlation_id
        )


class Compensator:
    """Reverses a reservation's side effects (token, then guard)."""

    def __init__(self, token_pool: TokenPool, guard: DuplicateGuard, ledger: SettlementLedger):
        self.token_pool = token_pool
        self.guard = guard
        self.ledger = ledger

    async def compensate(self, reservation: Reservation, force: bool = False, source: str = "worker") -> bool:
        """
        Release the reservation's token and guard.

        ``force`` is for the settlement worker, which already holds the order in
        the ledger. Without it the compensation only starts if no worker has
        picked the order up; returns False in that case.
        """
        order_id = reservation.order_id

        if force:
            await self.ledger.mark(order_id, LedgerState.COMPENSATING)
        elif not await self.ledger.try_begin_compensation(order_id):
            logger.info(f"Order {order_id} already picked up by settlement, not compensating")
            return False

        pushed = await self.token_pool.release(
            reservation.product_id, reservation.token, release_id=order_id
        )
        await self.guard.release(reservation.product_id, reservation.user_id, order_id=order_id)
        await self.ledger.mark(order_id, LedgerState.COMPENSATED)
        # compensated never expires, so the release id is no longer needed
        await self.token_pool.forget_release(reservation.product_id, order_id)

        COMPENSATIONS_TOTAL.labels(source=source).inc()
        logger.warning(
            f"Compensated order {order_id}: token {'returned' if pushed else 'already returned'}, "
            f"guard cleared for user {reservation.user_id}"
        )
        return True
