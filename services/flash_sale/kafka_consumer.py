"""
Kafka consumer for settlement events.

Features:
- Consumer group for horizontal scaling of settlement workers
- Manual offset commit after the handler reached an outcome (at-least-once)
- Handler exceptions are not committed: the partition is rewound and the
  event redelivered after a backoff
- Invalid or unsupported-version payloads are parked, never half-processed
"""

import logging
import asyncio
from typing import Awaitable, Callable, Optional
from aiokafka import AIOKafkaConsumer, TopicPartition
from pydantic import ValidationError as SchemaError

from .events import ReservationEvent
from .kafka_producer import SettlementPublisher
from .settlement_worker import SettlementOutcome

logger = logging.getLogger(__name__)

Handler = Callable[[ReservationEvent], Awaitable[SettlementOutcome]]


def decode_event(raw: bytes) -> ReservationEvent:
    """Decode and validate a settlement event. Raises pydantic ValidationError."""
    return ReservationEvent.model_validate_json(raw)


class SettlementConsumer:
    def __init__(
        self,
        topic: str,
        group_id: str,
        bootstrap_servers: str,
        publisher: SettlementPublisher,
        redelivery_backoff_ms: int = 500
    ):
        self.topic = topic
        self.group_id = group_id
        self.bootstrap_servers = bootstrap_servers
        self.publisher = publisher
        self.redelivery_backoff_ms = redelivery_backoff_ms
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._running = False

    async def start(self):
        self._consumer = AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            # Manual commit for reliability
            enable_auto_commit=False,
            auto_offset_reset='earliest',
            max_poll_records=100,
            session_timeout_ms=30000,
            heartbeat_interval_ms=10000,
        )
        await self._consumer.start()
        self._running = True
        logger.info(f"Settlement consumer started: group={self.group_id}, topic={self.topic}")

    async def stop(self):
        self._running = False
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
            logger.info("Settlement consumer stopped")

    async def consume(self, handler: Handler):
        if not self._consumer:
            raise RuntimeError("Consumer not started")

        async for message in self._consumer:
            if not self._running:
                break

            try:
                event = decode_event(message.value)
            except SchemaError as e:
                raw = message.value.decode("utf-8", errors="replace")
                logger.error(f"Invalid settlement event at offset {message.offset}: {e}")
                await self.publisher.park({"raw": raw}, f"invalid_schema: {e.error_count()} errors")
                await self._consumer.commit()
                continue

            logger.debug(
                f"Received {event.event_type} [order_id={event.order_id}, "
                f"correlation_id={event.correlation_id}, partition={message.partition}]"
            )

            try:
                outcome = await handler(event)
                if outcome == SettlementOutcome.FAILED:
                    await self.publisher.park(event.model_dump(mode="json"), "settlement_failed")
            except Exception as e:
                wait_time = self.redelivery_backoff_ms / 1000
                logger.error(
                    f"Settlement of order {event.order_id} raised, redelivering in {wait_time}s: {e}"
                )
                self._consumer.seek(TopicPartition(message.topic, message.partition), message.offset)
                await asyncio.sleep(wait_time)
                continue

            await self._consumer.commit()
