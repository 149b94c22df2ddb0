"""
Durable queue and processor tests.

Covers the queue state machine, the attempts bound, dead-letter immutability,
concurrent claim exclusivity and the end-to-end retry scenarios.
"""
import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from orderflow.database import SessionFactory
from orderflow.services.notifications import MockNotificationService
from orderflow.services.observability import AlertType, EventReporter
from orderflow.services.order_store import OrderStore
from orderflow.services.payment import MockPaymentService
from orderflow.services.queue import DurableQueue, QueueProcessor
from tests.conftest import IMMEDIATE_BACKOFF, NO_RETRY, FlakyRepository, no_sleep


class Clock:
    """Settable clock for orphan and backoff tests."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_queue(session_factory: SessionFactory, reporter: EventReporter, **kwargs: Any) -> DurableQueue:
    kwargs.setdefault("backoff", IMMEDIATE_BACKOFF)
    return DurableQueue(
        session_factory,
        reporter,
        db_retry=NO_RETRY,
        rng=random.Random(1),
        sleep=no_sleep,
        **kwargs,
    )


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_creates_pending_item(self, queue: DurableQueue, burger_payload: dict) -> None:
        item_id = await queue.enqueue(burger_payload, auth0_user={"sub": "auth0|1"}, correlation_id="corr-1")

        item = await queue.get_item(item_id)
        assert item.status == "pending"
        assert item.attempts == 0
        assert item.max_attempts == 3
        assert item.correlation_id == "corr-1"
        assert item.auth0_user == {"sub": "auth0|1"}
        assert item.next_attempt_at is not None
        assert item.order_data["restaurantId"] == "r1"

    @pytest.mark.asyncio
    async def test_enqueue_assigns_order_number_once(self, queue: DurableQueue, burger_payload: dict) -> None:
        generated = await queue.get_item(await queue.enqueue(burger_payload))
        provided = await queue.get_item(await queue.enqueue({**burger_payload, "orderNumber": "A-1"}))

        assert generated.order_data["orderNumber"].startswith("ORD-")
        assert provided.order_data["orderNumber"] == "A-1"
        assert "orderNumber" not in burger_payload

    @pytest.mark.asyncio
    async def test_enqueue_generates_correlation_id(self, queue: DurableQueue, burger_payload: dict) -> None:
        item = await queue.get_item(await queue.enqueue(burger_payload))
        assert item.correlation_id.startswith("corr-")


class TestStateMachine:

    @pytest.mark.asyncio
    async def test_claim_moves_items_to_processing_in_creation_order(
        self, session_factory: SessionFactory, reporter: EventReporter, burger_payload: dict
    ) -> None:
        clock = Clock()
        queue = make_queue(session_factory, reporter, clock=clock)
        ids = []
        for _ in range(3):
            ids.append(await queue.enqueue(burger_payload))
            clock.advance(1)

        claimed = await queue.claim_due(batch_size=2)

        assert [i.id for i in claimed] == ids[:2]
        assert all(i.status == "processing" for i in claimed)
        assert all(i.attempts == 0 for i in claimed)
        assert [i.id for i in await queue.claim_due(batch_size=10)] == ids[2:]

    @pytest.mark.asyncio
    async def test_backoff_defers_next_claim(
        self, session_factory: SessionFactory, reporter: EventReporter, burger_payload: dict
    ) -> None:
        from orderflow.services.retry import RetryConfig

        clock = Clock()
        queue = make_queue(
            session_factory,
            reporter,
            clock=clock,
            backoff=RetryConfig(initial_delay=5.0, max_delay=300.0, jitter=False),
        )
        item_id = await queue.enqueue(burger_payload)
        await queue.claim_due()

        assert await queue.mark_failed(item_id, ConnectionError("db down")) == "pending"
        item = await queue.get_item(item_id)
        assert item.attempts == 1
        assert item.error_message == "db down"

        assert await queue.claim_due() == []
        clock.advance(9)
        assert await queue.claim_due() == []
        clock.advance(2)
        assert [i.id for i in await queue.claim_due()] == [item_id]

    @pytest.mark.asyncio
    async def test_attempts_never_exceed_max(self, queue: DurableQueue, reporter: EventReporter, burger_payload: dict) -> None:
        item_id = await queue.enqueue(burger_payload)

        statuses = []
        for _ in range(5):
            if not await queue.claim_due():
                break
            statuses.append(await queue.mark_failed(item_id, TimeoutError("slow")))

        item = await queue.get_item(item_id)
        assert statuses == ["pending", "pending", "dead_letter"]
        assert item.status == "dead_letter"
        assert item.attempts == item.max_attempts == 3
        assert item.next_attempt_at is None
        assert len(reporter.active_alerts(AlertType.DEAD_LETTER)) == 1

    @pytest.mark.asyncio
    async def test_non_retryable_failure_dead_letters_immediately(
        self, queue: DurableQueue, burger_payload: dict
    ) -> None:
        item_id = await queue.enqueue(burger_payload)
        await queue.claim_due()

        assert await queue.mark_failed(item_id, ValueError("bad"), retryable=False) == "dead_letter"
        assert (await queue.get_item(item_id)).attempts == 1

    @pytest.mark.asyncio
    async def test_dead_letter_is_immutable(self, queue: DurableQueue, burger_payload: dict) -> None:
        item_id = await queue.enqueue(burger_payload)
        await queue.claim_due()
        await queue.mark_failed(item_id, ValueError("bad"), retryable=False)
        before = (await queue.get_item(item_id)).to_dict()

        assert await queue.claim_due() == []
        assert await queue.mark_completed(item_id) is False
        assert await queue.mark_failed(item_id, ConnectionError("again")) is None
        assert await queue.reclaim_orphans(timeout_seconds=0) == 0

        assert (await queue.get_item(item_id)).to_dict() == before

    @pytest.mark.asyncio
    async def test_completed_item_is_not_reprocessed(self, queue: DurableQueue, burger_payload: dict) -> None:
        item_id = await queue.enqueue(burger_payload)
        await queue.claim_due()

        assert await queue.mark_completed(item_id, {"orderTotal": 21.03})
        item = await queue.get_item(item_id)
        assert item.status == "completed"
        assert item.completed_at is not None
        assert item.order_data["processingResult"] == {"orderTotal": 21.03}

        assert await queue.claim_due() == []
        assert await queue.mark_failed(item_id, RuntimeError("late")) is None
        assert await queue.mark_completed(item_id) is False

    @pytest.mark.asyncio
    async def test_pending_item_cannot_be_completed(self, queue: DurableQueue, burger_payload: dict) -> None:
        item_id = await queue.enqueue(burger_payload)
        assert await queue.mark_completed(item_id) is False
        assert await queue.mark_completed(9999) is False


class TestOrphanReclaim:

    @pytest.mark.asyncio
    async def test_stale_processing_item_returns_to_pending(
        self, session_factory: SessionFactory, reporter: EventReporter, burger_payload: dict
    ) -> None:
        clock = Clock()
        queue = make_queue(session_factory, reporter, clock=clock)
        item_id = await queue.enqueue(burger_payload)
        await queue.claim_due()

        clock.advance(299)
        assert await queue.reclaim_orphans(timeout_seconds=300) == 0

        clock.advance(2)
        assert await queue.reclaim_orphans(timeout_seconds=300) == 1

        item = await queue.get_item(item_id)
        assert item.status == "pending"
        assert item.attempts == 1
        assert item.processing_started_at is None
        assert "reclaimed" in item.error_message

    @pytest.mark.asyncio
    async def test_exhausted_orphan_is_dead_lettered(
        self, session_factory: SessionFactory, reporter: EventReporter, burger_payload: dict
    ) -> None:
        clock = Clock()
        queue = make_queue(session_factory, reporter, clock=clock)
        item_id = await queue.enqueue(burger_payload)
        for _ in range(2):
            await queue.claim_due()
            await queue.mark_failed(item_id, ConnectionError("down"))
        await queue.claim_due()

        clock.advance(600)
        assert await queue.reclaim_orphans(timeout_seconds=300) == 1

        item = await queue.get_item(item_id)
        assert item.status == "dead_letter"
        assert item.attempts == 3
        assert len(reporter.active_alerts(AlertType.DEAD_LETTER)) == 1


class TestConcurrentClaims:

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_two_processors_never_claim_the_same_item(
        self, session_factory: SessionFactory, burger_payload: dict
    ) -> None:
        first = make_queue(session_factory, EventReporter())
        second = make_queue(session_factory, EventReporter())
        ids = {await first.enqueue(burger_payload) for _ in range(20)}

        batches = await asyncio.gather(
            first.claim_due(batch_size=8),
            second.claim_due(batch_size=8),
            first.claim_due(batch_size=8),
        )

        claimed = [item.id for batch in batches for item in batch]
        assert len(claimed) == len(set(claimed)) == 20
        assert set(claimed) == ids


class TestAdmin:

    @pytest.mark.asyncio
    async def test_replay_resets_dead_letter(self, queue: DurableQueue, burger_payload: dict) -> None:
        item_id = await queue.enqueue(burger_payload)
        await queue.claim_due()
        await queue.mark_failed(item_id, ValueError("bad"), retryable=False)

        assert await queue.replay(item_id)

        item = await queue.get_item(item_id)
        assert item.status == "pending"
        assert item.attempts == 0
        assert [i.id for i in await queue.claim_due()] == [item_id]

    @pytest.mark.asyncio
    async def test_replay_rejects_live_items(self, queue: DurableQueue, burger_payload: dict) -> None:
        item_id = await queue.enqueue(burger_payload)

        assert not await queue.replay(item_id)
        assert not await queue.replay(12345)

    @pytest.mark.asyncio
    async def test_stats_and_listing(self, queue: DurableQueue, burger_payload: dict) -> None:
        done = await queue.enqueue(burger_payload)
        dead = await queue.enqueue(burger_payload)
        await queue.enqueue(burger_payload)
        await queue.claim_due(batch_size=2)
        await queue.mark_completed(done)
        await queue.mark_failed(dead, ValueError("bad"), retryable=False)

        stats = await queue.stats()
        assert (stats.pending, stats.processing, stats.completed, stats.dead_letter) == (1, 0, 1, 1)
        assert stats.failed == 0
        assert stats.total == 3

        assert [i.id for i in await queue.list_items(status="dead_letter")] == [dead]
        assert len(await queue.list_items()) == 3
        assert len(await queue.list_items(limit=2)) == 2


class TestQueueProcessor:
    """End-to-end runs through store, payment link and notification."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transient_store_failures_then_success(
        self,
        queue: DurableQueue,
        processor: QueueProcessor,
        repository: FlakyRepository,
        store: OrderStore,
        burger_payload: dict,
    ) -> None:
        item_id = await queue.enqueue(burger_payload)
        repository.save_failures = 2

        batch = await processor.drain()

        item = await queue.get_item(item_id)
        assert item.status == "completed"
        assert item.attempts == 2
        assert (batch.completed, batch.retried) == (1, 2)

        order = (await store.get_order(item.order_data["orderNumber"])).order
        assert order.subtotal == 17.98
        assert order.order_total == 21.03
        assert order.payment_link_id.startswith("plink_mock_")
        assert item.order_data["processingResult"]["orderTotal"] == 21.03

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_persistent_store_failure_dead_letters(
        self,
        queue: DurableQueue,
        processor: QueueProcessor,
        repository: FlakyRepository,
        burger_payload: dict,
    ) -> None:
        item_id = await queue.enqueue(burger_payload)
        repository.save_failures = 3

        batch = await processor.drain()

        item = await queue.get_item(item_id)
        assert item.status == "dead_letter"
        assert item.attempts == 3
        assert batch.dead_lettered == 1
        assert [i.id for i in await queue.list_items(status="dead_letter")] == [item_id]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_payload_goes_straight_to_dead_letter(
        self, queue: DurableQueue, processor: QueueProcessor
    ) -> None:
        item_id = await queue.enqueue({"restaurantId": "r1", "items": []})

        await processor.drain()

        item = await queue.get_item(item_id)
        assert item.status == "dead_letter"
        assert item.attempts == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_outage_retries_then_dead_letters(
        self,
        queue: DurableQueue,
        processor: QueueProcessor,
        payment_service: MockPaymentService,
        reporter: EventReporter,
        burger_payload: dict,
    ) -> None:
        payment_service.failure_rate = 1.0
        item_id = await queue.enqueue(burger_payload)

        await processor.drain()

        item = await queue.get_item(item_id)
        assert item.status == "dead_letter"
        assert item.attempts == 3
        assert len(reporter.active_alerts(AlertType.PAYMENT_FAILURE)) == 3

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_window_order_is_notified_without_payment_link(
        self,
        queue: DurableQueue,
        processor: QueueProcessor,
        store: OrderStore,
        payment_service: MockPaymentService,
        notification_service: MockNotificationService,
        burger_payload: dict,
    ) -> None:
        item_id = await queue.enqueue({
            **burger_payload,
            "paymentMethod": "window",
            "customerEmail": "jane@example.com",
        })

        await processor.drain()

        item = await queue.get_item(item_id)
        order = (await store.get_order(item.order_data["orderNumber"])).order
        assert item.status == "completed"
        assert order.notification_sent is True
        assert order.payment_link_id is None
        assert payment_service.created_links == []
        assert {m["to"] for m in notification_service.sent} == {"jane@example.com", "kitchen@example.com"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reprocessing_reuses_stored_order_and_link(
        self,
        queue: DurableQueue,
        processor: QueueProcessor,
        store: OrderStore,
        payment_service: MockPaymentService,
        burger_payload: dict,
    ) -> None:
        payload = {**burger_payload, "orderNumber": "DUP-1"}
        await queue.enqueue(payload)
        await queue.enqueue(payload)

        await processor.drain()

        assert len(payment_service.created_links) == 1
        orders = await store.get_orders_by_restaurant("r1")
        assert [o.order_number for o in orders] == ["DUP-1"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recovered_order_is_replaced_by_payload(
        self,
        queue: DurableQueue,
        processor: QueueProcessor,
        store: OrderStore,
        burger_payload: dict,
    ) -> None:
        await store.get_order("REC-1", create_if_missing=True)
        await queue.enqueue({**burger_payload, "orderNumber": "REC-1"})

        await processor.drain()

        order = (await store.get_order("REC-1")).order
        assert order.status == "normal"
        assert order.subtotal == 17.98

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(
        self, queue: DurableQueue, processor: QueueProcessor, burger_payload: dict
    ) -> None:
        item_id = await queue.enqueue(burger_payload)
        stop = asyncio.Event()
        task = asyncio.create_task(processor.run_forever(stop))

        for _ in range(200):
            if (await queue.get_item(item_id)).status == "completed":
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert (await queue.get_item(item_id)).status == "completed"
