"""
Settlement queue: carries accepted reservations from the request path to the
settlement worker.

Both backends expose the same contract:

    await queue.start() / await queue.stop()
    await queue.publish(event) -> bool       # True = acknowledged
    await queue.consume(handler)             # runs until stopped
    await queue.park(payload, reason)        # dead-letter

Delivery is at-least-once; the handler must tolerate redelivery.
"""

import asyncio
import logging
from typing import Any, Dict, List, Union

from pydantic import ValidationError as SchemaError

from .config import Settings
from .events import ReservationEvent
from .kafka_consumer import Handler, SettlementConsumer, decode_event
from .kafka_producer import SettlementPublisher
from .metrics import DLQ_MESSAGES_TOTAL
from .settlement_worker import SettlementOutcome

logger = logging.getLogger(__name__)


class KafkaSettlementQueue:
    """Settlement queue on a Kafka topic, partitioned by (product, user)."""

    def __init__(self, settings: Settings):
        self.publisher = SettlementPublisher(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            topic=settings.settlement_topic,
            dead_letter_topic=settings.dead_letter_topic,
            service_name=settings.service_name,
            max_retries=settings.publish_max_retries,
            retry_backoff_ms=settings.publish_retry_backoff_ms,
            connect_attempts=settings.broker_connect_attempts,
            connect_retry_seconds=settings.broker_connect_retry_seconds
        )
        self.consumer = SettlementConsumer(
            topic=settings.settlement_topic,
            group_id=settings.consumer_group,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            publisher=self.publisher
        )

    async def start(self):
        await self.publisher.start()
        await self.consumer.start()

    async def stop(self):
        await self.consumer.stop()
        await self.publisher.stop()

    async def publish(self, event: ReservationEvent) -> bool:
        return await self.publisher.publish(event)

    async def consume(self, handler: Handler):
        await self.consumer.consume(handler)

    async def park(self, payload: Dict[str, Any], reason: str):
        await self.publisher.park(payload, reason)


class InMemorySettlementQueue:
    """
    Single-process settlement queue on ``asyncio.Queue``.

    Events are stored serialised and re-validated on delivery, exactly like
    the Kafka path. A handler exception puts the event back on the queue.
    """

    def __init__(self, redelivery_backoff_ms: int = 50):
        self.redelivery_backoff_ms = redelivery_backoff_ms
        self.parked: List[Dict[str, Any]] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._running = False

    async def start(self):
        self._running = True
        logger.info("In-memory settlement queue started")

    async def stop(self):
        self._running = False
        logger.info("In-memory settlement queue stopped")

    def pending(self) -> int:
        return self._queue.qsize()

    async def publish(self, event: ReservationEvent) -> bool:
        await self._queue.put(event.model_dump_json().encode("utf-8"))
        return True

    async def consume(self, handler: Handler):
        while self._running:
            raw = await self._queue.get()
            await self._deliver(raw, handler)

    async def drain(self, handler: Handler) -> List[SettlementOutcome]:
        """Deliver every event queued right now once. Redeliveries stay queued."""
        outcomes = []
        for _ in range(self._queue.qsize()):
            outcome = await self._deliver(self._queue.get_nowait(), handler)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def park(self, payload: Dict[str, Any], reason: str):
        DLQ_MESSAGES_TOTAL.labels(reason=reason.split(":")[0]).inc()
        self.parked.append({"original_event": payload, "error_reason": reason})
        logger.error(f"Event parked [order_id={payload.get('order_id')}, reason={reason}]")

    async def _deliver(self, raw: bytes, handler: Handler):
        try:
            event = decode_event(raw)
        except SchemaError as e:
            await self.park({"raw": raw.decode("utf-8", errors="replace")}, f"invalid_schema: {e.error_count()} errors")
            return None

        try:
            outcome = await handler(event)
        except Exception as e:
            logger.error(f"Settlement of order {event.order_id} raised, requeueing: {e}")
            await asyncio.sleep(self.redelivery_backoff_ms / 1000)
            await self._queue.put(raw)
            return None

        if outcome == SettlementOutcome.FAILED:
            await self.park(event.model_dump(mode="json"), "settlement_failed")
        return outcome


SettlementQueue = Union[KafkaSettlementQueue, InMemorySettlementQueue]


def build_settlement_queue(settings: Settings) -> SettlementQueue:
    if settings.queue_backend == "memory":
        return InMemorySettlementQueue()
    if settings.queue_backend == "kafka":
        return KafkaSettlementQueue(settings)
    raise ValueError(f"Unknown queue backend: {settings.queue_backend}")
