"""
Tests for the settlement worker, compensation, the settlement queue and the
Kafka publisher.
"""

import json
from unittest.mock import AsyncMock

import pytest
from aiokafka.errors import KafkaError
from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import OperationalError

from flash_sale.compensation import Compensator, Reservation
from flash_sale.config import Settings
from flash_sale.events import ReservationEvent
from flash_sale.kafka_producer import SettlementPublisher
from flash_sale.repository import OrderRepository
from flash_sale.settlement_ledger import LedgerState, SettlementLedger
from flash_sale.settlement_queue import InMemorySettlementQueue, build_settlement_queue
from flash_sale.settlement_worker import SettlementOutcome, SettlementWorker
from flash_sale.token_pool import TokenPool

from conftest import PRODUCT_ID


def store_down():
    return OperationalError("INSERT INTO orders", {}, ConnectionError("connection refused"))


@pytest.fixture
async def reservation(token_pool, guard):
    """A reservation as the request path leaves it: token popped, guard claimed."""
    await token_pool.replace(PRODUCT_ID, ["tok-1"])
    token = await token_pool.reserve(PRODUCT_ID)
    await guard.try_claim(PRODUCT_ID, "u1", "order-1")
    return Reservation(product_id=PRODUCT_ID, user_id="u1", order_id="order-1", token=token)


@pytest.fixture
def event(reservation):
    return reservation.to_event(correlation_id="corr-1")


class TestSettlementWorker:
    """Event -> durable order, idempotently."""

    async def test_settles_event(self, event, order_repository, ledger, compensator, guard):
        worker = SettlementWorker(order_repository, ledger, compensator)

        assert await worker.handle(event) == SettlementOutcome.SETTLED

        order = await order_repository.get("order-1")
        assert order.reserved_token == "tok-1"
        assert order.user_id == "u1"
        assert await ledger.state("order-1") == LedgerState.SETTLED
        # The guard outlives settlement
        assert await guard.get(PRODUCT_ID, "u1") == "order-1"

    async def test_redelivery_is_skipped(self, event, order_repository, ledger, compensator):
        worker = SettlementWorker(order_repository, ledger, compensator)

        await worker.handle(event)
        assert await worker.handle(event) == SettlementOutcome.DUPLICATE
        assert len(await order_repository.list_for_user("u1")) == 1

    async def test_existing_row_counts_as_duplicate(self, event, order_repository, ledger, compensator):
        # Crash after the insert but before the ledger was marked
        await order_repository.insert("order-1", PRODUCT_ID, "u1", "tok-1")
        worker = SettlementWorker(order_repository, ledger, compensator)

        assert await worker.handle(event) == SettlementOutcome.DUPLICATE
        assert await ledger.state("order-1") == LedgerState.SETTLED

    async def test_transient_error_is_retried(self, event, ledger, compensator):
        orders = AsyncMock(spec=OrderRepository)
        orders.insert.side_effect = [store_down(), store_down(), True]
        worker = SettlementWorker(orders, ledger, compensator, max_retries=3, retry_backoff_ms=0)

        assert await worker.handle(event) == SettlementOutcome.SETTLED
        assert orders.insert.await_count == 3

    async def test_exhausted_retries_compensate(self, event, ledger, compensator, token_pool, guard):
        orders = AsyncMock(spec=OrderRepository)
        orders.insert.side_effect = store_down()
        worker = SettlementWorker(orders, ledger, compensator, max_retries=2, retry_backoff_ms=0)

        assert await worker.handle(event) == SettlementOutcome.FAILED

        assert orders.insert.await_count == 3
        assert await token_pool.remaining(PRODUCT_ID) == 1
        assert await guard.get(PRODUCT_ID, "u1") is None
        assert await ledger.state("order-1") == LedgerState.COMPENSATED

    async def test_structural_error_is_not_retried(self, event, ledger, compensator, token_pool):
        orders = AsyncMock(spec=OrderRepository)
        orders.insert.side_effect = ValueError("bad row")
        worker = SettlementWorker(orders, ledger, compensator, max_retries=3, retry_backoff_ms=0)

        assert await worker.handle(event) == SettlementOutcome.FAILED
        assert orders.insert.await_count == 1
        assert await token_pool.remaining(PRODUCT_ID) == 1

    async def test_failed_event_redelivered_is_not_compensated_twice(
        self, event, ledger, compensator, token_pool
    ):
        orders = AsyncMock(spec=OrderRepository)
        orders.insert.side_effect = store_down()
        worker = SettlementWorker(orders, ledger, compensator, max_retries=0, retry_backoff_ms=0)

        await worker.handle(event)
        assert await worker.handle(event) == SettlementOutcome.DUPLICATE
        assert await token_pool.remaining(PRODUCT_ID) == 1

    async def test_resumes_interrupted_compensation(
        self, event, order_repository, ledger, compensator, token_pool, guard
    ):
        await ledger.mark("order-1", LedgerState.COMPENSATING)
        worker = SettlementWorker(order_repository, ledger, compensator)

        assert await worker.handle(event) == SettlementOutcome.COMPENSATED
        assert await token_pool.remaining(PRODUCT_ID) == 1
        assert await guard.get(PRODUCT_ID, "u1") is None
        assert await order_repository.get("order-1") is None

    async def test_user_can_buy_again_after_compensation(
        self, event, ledger, compensator, token_pool, guard
    ):
        orders = AsyncMock(spec=OrderRepository)
        orders.insert.side_effect = store_down()
        worker = SettlementWorker(orders, ledger, compensator, max_retries=0, retry_backoff_ms=0)

        await worker.handle(event)

        assert (await guard.try_claim(PRODUCT_ID, "u1", "order-2")).claimed
        assert await token_pool.reserve(PRODUCT_ID) == "tok-1"

    async def test_replay_after_ledger_expiry_does_not_resell(
        self, event, order_repository, token_pool, guard
    ):
        now = [0.0]
        ledger = SettlementLedger(ttl_seconds=60, clock=lambda: now[0])
        compensator = Compensator(token_pool, guard, ledger)
        broken = AsyncMock(spec=OrderRepository)
        broken.insert.side_effect = store_down()
        failing = SettlementWorker(broken, ledger, compensator, max_retries=0, retry_backoff_ms=0)
        worker = SettlementWorker(order_repository, ledger, compensator)

        assert await failing.handle(event) == SettlementOutcome.FAILED

        # The returned token goes to the next buyer
        token = await token_pool.reserve(PRODUCT_ID)
        assert (await guard.try_claim(PRODUCT_ID, "u2", "order-2")).claimed
        resold = Reservation(product_id=PRODUCT_ID, user_id="u2", order_id="order-2", token=token)
        assert await worker.handle(resold.to_event()) == SettlementOutcome.SETTLED

        now[0] += 3600
        assert await worker.handle(event) == SettlementOutcome.DUPLICATE

        assert await order_repository.list_for_user("u1") == []
        assert [o.order_id for o in await order_repository.list_for_user("u2")] == ["order-2"]
        assert await ledger.state("order-1") == LedgerState.COMPENSATED
        assert await token_pool.remaining(PRODUCT_ID) == 0


class TestCompensator:
    async def test_release_id_is_forgotten_once_compensated(self, reservation, guard, ledger):
        pool = AsyncMock(spec=TokenPool)
        pool.release.return_value = True

        await Compensator(pool, guard, ledger).compensate(reservation, force=True)

        names = [name for name, _, _ in pool.mock_calls]
        assert names == ["release", "forget_release"]
        pool.forget_release.assert_awaited_once_with(PRODUCT_ID, "order-1")
        assert await ledger.state("order-1") == LedgerState.COMPENSATED

    async def test_release_after_compensation_keeps_pool_bounded(self, reservation, compensator, token_pool):
        await compensator.compensate(reservation, force=True)

        assert "order-1" not in token_pool._released[PRODUCT_ID]
        # The durable ledger entry stops a second release
        await compensator.compensate(reservation)
        assert await token_pool.remaining(PRODUCT_ID) == 1

    async def test_compensation_is_idempotent(self, reservation, compensator, token_pool, guard):
        assert await compensator.compensate(reservation, force=True)
        await compensator.compensate(reservation, force=True)

        assert await token_pool.remaining(PRODUCT_ID) == 1
        assert await guard.get(PRODUCT_ID, "u1") is None

    async def test_does_not_release_newer_claim(self, reservation, compensator, guard):
        await compensator.compensate(reservation, force=True)
        await guard.try_claim(PRODUCT_ID, "u1", "order-2")

        await compensator.compensate(reservation, force=True)
        assert await guard.get(PRODUCT_ID, "u1") == "order-2"

    async def test_request_path_yields_to_worker(self, reservation, compensator, ledger, token_pool):
        await ledger.claim_settlement("order-1")

        assert await compensator.compensate(reservation, source="request") is False
        assert await token_pool.remaining(PRODUCT_ID) == 0


class TestReservationEvent:
    async def test_partition_key(self, event):
        assert event.partition_key == f"reservation:{PRODUCT_ID}:u1"

    async def test_unknown_schema_version_rejected(self, event):
        payload = event.model_dump(mode="json")
        payload["schema_version"] = 2
        with pytest.raises(SchemaError):
            ReservationEvent.model_validate(payload)

    async def test_unknown_field_rejected(self, event):
        payload = event.model_dump(mode="json")
        payload["coupon"] = "FREE"
        with pytest.raises(SchemaError):
            ReservationEvent.model_validate(payload)

    async def test_missing_field_rejected(self, event):
        payload = event.model_dump(mode="json")
        del payload["reserved_token"]
        with pytest.raises(SchemaError):
            ReservationEvent.model_validate(payload)

    async def test_reservation_survives_wire(self, event, reservation):
        decoded = ReservationEvent.model_validate_json(event.model_dump_json())
        assert Reservation.from_event(decoded) == reservation

    async def test_correlation_id_is_optional(self, reservation):
        assert reservation.to_event().correlation_id is None


class TestInMemoryQueue:
    @pytest.fixture
    async def queue(self):
        queue = InMemorySettlementQueue(redelivery_backoff_ms=0)
        await queue.start()
        yield queue
        await queue.stop()

    async def test_delivers_published_events(self, queue, event):
        handler = AsyncMock(return_value=SettlementOutcome.SETTLED)

        assert await queue.publish(event) is True
        assert await queue.drain(handler) == [SettlementOutcome.SETTLED]
        assert handler.await_args.args[0] == event

    async def test_handler_error_requeues(self, queue, event):
        handler = AsyncMock(side_effect=[RuntimeError("db down"), SettlementOutcome.SETTLED])
        await queue.publish(event)

        assert await queue.drain(handler) == []
        assert queue.pending() == 1
        assert await queue.drain(handler) == [SettlementOutcome.SETTLED]

    async def test_failed_settlement_is_parked(self, queue, event):
        await queue.publish(event)
        await queue.drain(AsyncMock(return_value=SettlementOutcome.FAILED))

        assert queue.parked[0]["error_reason"] == "settlement_failed"
        assert queue.parked[0]["original_event"]["order_id"] == "order-1"

    async def test_invalid_payload_is_parked(self, queue):
        handler = AsyncMock()
        await queue._queue.put(json.dumps({"schema_version": 2}).encode("utf-8"))

        assert await queue.drain(handler) == []
        handler.assert_not_awaited()
        assert queue.parked[0]["error_reason"].startswith("invalid_schema")

    def test_backend_selection(self):
        assert isinstance(build_settlement_queue(Settings(queue_backend="memory")), InMemorySettlementQueue)
        with pytest.raises(ValueError):
            build_settlement_queue(Settings(queue_backend="carrier-pigeon"))


class TestSettlementPublisher:
    @pytest.fixture
    def publisher(self):
        publisher = SettlementPublisher(
            bootstrap_servers="localhost:29092",
            topic="order_queue",
            dead_letter_topic="dead-letter",
            service_name="flash-sale-service",
            max_retries=2,
            retry_backoff_ms=0
        )
        publisher._producer = AsyncMock()
        return publisher

    async def test_publish_keys_by_product_and_user(self, publisher, event):
        assert await publisher.publish(event) is True

        call = publisher._producer.send_and_wait.await_args
        assert call.args[0] == "order_queue"
        assert call.kwargs["key"] == event.partition_key
        assert call.kwargs["value"]["order_id"] == "order-1"
        assert ("correlation_id", b"corr-1") in call.kwargs["headers"]

    async def test_publish_reports_failure(self, publisher, event):
        publisher._producer.send_and_wait.side_effect = KafkaError()

        assert await publisher.publish(event) is False
        assert publisher._producer.send_and_wait.await_count == 3

    async def test_park_sends_to_dead_letter_topic(self, publisher, event):
        await publisher.park(event.model_dump(mode="json"), "settlement_failed")

        call = publisher._producer.send_and_wait.await_args
        assert call.args[0] == "dead-letter"
        assert call.kwargs["value"]["error_reason"] == "settlement_failed"
        assert call.kwargs["key"] == "dlq:order-1"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
