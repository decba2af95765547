"""
Kafka producer for settlement events.

Features:
- Idempotent producer, acks from all in-sync replicas
- Broker connection retried at startup
- Publish retried with exponential backoff; reports failure instead of raising
- Dead-letter topic for parked events
"""

import json
import logging
import asyncio
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from .events import ReservationEvent
from .metrics import DLQ_MESSAGES_TOTAL

logger = logging.getLogger(__name__)


class SettlementPublisher:
    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        dead_letter_topic: str,
        service_name: str,
        max_retries: int = 3,
        retry_backoff_ms: int = 100,
        connect_attempts: int = 4,
        connect_retry_seconds: float = 5.0
    ):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.dead_letter_topic = dead_letter_topic
        self.service_name = service_name
        self.max_retries = max_retries
        self.retry_backoff_ms = retry_backoff_ms
        self.connect_attempts = connect_attempts
        self.connect_retry_seconds = connect_retry_seconds
        self._producer: Optional[AIOKafkaProducer] = None

    def _build_producer(self) -> AIOKafkaProducer:
        return AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode('utf-8'),
            key_serializer=lambda k: k.encode('utf-8') if k else None,
            enable_idempotence=True,
            acks='all',
            linger_ms=5,
        )

    async def start(self):
        """Start the producer, waiting for the broker to come up."""
        for attempt in range(1, self.connect_attempts + 1):
            producer = self._build_producer()
            try:
                await producer.start()
                self._producer = producer
                logger.info(f"Settlement publisher started for {self.service_name}")
                return
            except KafkaError as e:
                await producer.stop()
                if attempt == self.connect_attempts:
                    logger.error(f"Kafka not reachable after {attempt} attempts: {e}")
                    raise
                logger.warning(
                    f"Kafka not ready (attempt {attempt}), retrying in {self.connect_retry_seconds}s: {e}"
                )
                await asyncio.sleep(self.connect_retry_seconds)

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Settlement publisher stopped")

    async def publish(self, event: ReservationEvent) -> bool:
        """
        Publish a reservation event.

        Returns True once the broker acknowledged it, False after the last
        retry failed.
        """
        if not self._producer:
            raise RuntimeError("Producer not started")

        headers = [
            ("event_type", event.event_type.encode()),
            ("schema_version", str(event.schema_version).encode()),
            ("source", self.service_name.encode()),
        ]
        if event.correlation_id:
            headers.append(("correlation_id", event.correlation_id.encode()))

        for attempt in range(self.max_retries + 1):
            try:
                await self._producer.send_and_wait(
                    self.topic,
                    value=event.model_dump(mode="json"),
                    key=event.partition_key,
                    headers=headers
                )
                logger.debug(
                    f"Published {event.event_type} to {self.topic} "
                    f"[key={event.partition_key}, order_id={event.order_id}]"
                )
                return True

            except KafkaError as e:
                if attempt < self.max_retries:
                    wait_time = self.retry_backoff_ms * (2 ** attempt) / 1000
                    logger.warning(
                        f"Kafka publish failed (attempt {attempt + 1}), "
                        f"retrying in {wait_time}s: {e}"
                    )
                    await asyncio.sleep(wait_time)
                else:
                    logger.error(f"Kafka publish failed for order {event.order_id}: {e}")

        return False

    async def park(self, payload: Dict[str, Any], reason: str):
        """Send an event to the dead-letter topic for manual reprocessing."""
        dlq_payload = {
            "original_topic": self.topic,
            "original_event": payload,
            "error_reason": reason,
            "failed_at": datetime.now(timezone.utc).isoformat()
        }
        DLQ_MESSAGES_TOTAL.labels(reason=reason.split(":")[0]).inc()

        try:
            await self._producer.send_and_wait(
                self.dead_letter_topic,
                value=dlq_payload,
                key=f"dlq:{payload.get('order_id', 'unknown')}"
            )
            logger.error(
                f"Event parked on {self.dead_letter_topic} "
                f"[order_id={payload.get('order_id')}, reason={reason}]"
            )
        except Exception as e:
            logger.critical(f"Failed to send to DLQ: {e} [payload={payload}]")
            raise
