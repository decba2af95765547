"""
Settlement worker: turns reservation events into durable orders.

Processing flow per event:
1. Claim the order in the settlement ledger (skip if already finished,
   resume if a compensation was in progress)
2. Insert the order keyed by order_id, retrying transient store errors with
   exponential backoff; a duplicate key counts as already persisted
3. On success: mark settled
4. On giving up: compensate (token, then guard), raise an operator alert and
   report FAILED so the queue parks the event
"""

import asyncio
import logging
from enum import Enum

from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError

from .compensation import Compensator, Reservation
from .errors import SettlementFailure
from .events import ReservationEvent
from .metrics import DUPLICATE_EVENTS_TOTAL, SETTLEMENT_ALERTS_TOTAL, SETTLEMENTS_TOTAL, track_settlement
from .repository import OrderRepository
from .settlement_ledger import LedgerState, SettlementLedger

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError, asyncio.TimeoutError)


class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    DUPLICATE = "duplicate"
    COMPENSATED = "compensated"
    FAILED = "failed"


class SettlementWorker:
    def __init__(
        self,
        orders: OrderRepository,
        ledger: SettlementLedger,
        compensator: Compensator,
        max_retries: int = 3,
        retry_backoff_ms: int = 100
    ):
        self.orders = orders
        self.ledger = ledger
        self.compensator = compensator
        self.max_retries = max_retries
        self.retry_backoff_ms = retry_backoff_ms

    async def handle(self, event: ReservationEvent) -> SettlementOutcome:
        with track_settlement():
            outcome = await self._settle(event)
        SETTLEMENTS_TOTAL.labels(outcome=outcome.value).inc()
        return outcome

    async def _settle(self, event: ReservationEvent) -> SettlementOutcome:
        reservation = Reservation.from_event(event)
        state = await self.ledger.claim_settlement(event.order_id)

        if state in (LedgerState.SETTLED, LedgerState.COMPENSATED):
            DUPLICATE_EVENTS_TOTAL.inc()
            logger.info(f"Skipping duplicate event for order {event.order_id} ({state.value})")
            return SettlementOutcome.DUPLICATE

        if state == LedgerState.COMPENSATING:
            logger.info(f"Resuming compensation for order {event.order_id}")
            await self.compensator.compensate(reservation, force=True)
            return SettlementOutcome.COMPENSATED

        try:
            inserted = await self._persist_with_retry(event)
        except SettlementFailure as e:
            await self.compensator.compensate(reservation, force=True)
            SETTLEMENT_ALERTS_TOTAL.inc()
            logger.critical(
                f"ALERT: settlement of order {event.order_id} abandoned and compensated: {e.message} "
                f"[product_id={event.product_id}, user_id={event.user_id}, "
                f"correlation_id={event.correlation_id}]"
            )
            return SettlementOutcome.FAILED

        await self.ledger.mark(event.order_id, LedgerState.SETTLED)
        if not inserted:
            DUPLICATE_EVENTS_TOTAL.inc()
            logger.info(f"Order {event.order_id} was already persisted")
            return SettlementOutcome.DUPLICATE

        logger.info(f"Order {event.order_id} settled for user {event.user_id}")
        return SettlementOutcome.SETTLED

    async def _persist_with_retry(self, event: ReservationEvent) -> bool:
        """Insert the order, retrying transient failures. Raises SettlementFailure."""
        for attempt in range(self.max_retries + 1):
            try:
                return await self.orders.insert(
                    order_id=event.order_id,
                    product_id=event.product_id,
                    user_id=event.user_id,
                    reserved_token=event.reserved_token,
                    created_at=event.created_at
                )
            except TRANSIENT_ERRORS as e:
                if attempt < self.max_retries:
                    wait_time = self.retry_backoff_ms * (2 ** attempt) / 1000
                    logger.warning(
                        f"Order insert failed (attempt {attempt + 1}/{self.max_retries + 1}), "
                        f"retrying in {wait_time}s: {e}"
                    )
                    await asyncio.sleep(wait_time)
                else:
                    raise SettlementFailure(
                        f"store unavailable after {self.max_retries + 1} attempts: {e}"
                    ) from e
            except Exception as e:
                # Structural failure (e.g. a constraint other than the order id)
                raise SettlementFailure(f"insert rejected: {e}") from e

        raise SettlementFailure("no insert attempt made")
