"""
Queue Processor

Polling worker that drains the durable queue through the order pipeline:

    parse payload -> price -> store -> payment link -> notify

Any exception raised by the pipeline is reported back to the queue as a
failed attempt; ``OrderValidationError`` is marked non-retryable and goes
straight to dead_letter. A degraded store write (order only in memory) also
counts as a failure, so the item is retried until the database has it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from orderflow.core.config import Settings
from orderflow.core.exceptions import OrderValidationError, TransientInfraError
from orderflow.models import QueueItem
from orderflow.schemas import NormalOrder, StoredOrder, parse_payload
from orderflow.services.notifications.dispatch import OrderNotifier
from orderflow.services.observability import EventReporter
from orderflow.services.order_store import OrderStore
from orderflow.services.payment.reconciler import PaymentReconciler
from orderflow.services.pricing import PriceCalculator
from orderflow.services.queue.durable_queue import DEAD_LETTER, DurableQueue

logger = logging.getLogger(__name__)

CATEGORY = "ORDER_PROCESSOR"

# Payment fields survive when a payload replaces a recovered or placeholder order
_CARRIED_PAYMENT_FIELDS = (
    "payment_status",
    "payment_link_id",
    "payment_link_url",
    "payment_link_created_at",
    "payment_link_expires_at",
    "payment_transaction_id",
    "payment_timestamp",
    "notification_sent",
)


@dataclass
class BatchResult:
    """Outcome counts for one ``run_once`` pass."""
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "errors": self.errors,
        }


class QueueProcessor:
    """
    Args:
        queue: Durable queue to drain
        store: Order store
        calculator: Price calculator for new orders
        reconciler: Payment-link reconciler
        notifier: Notifies pay-at-window orders (online orders are notified
            once their payment completes)
        reporter: Observability sink
        batch_size: Items claimed per pass
        poll_interval: Seconds between passes in ``run_forever``
        orphan_timeout: Seconds before a processing item is reclaimed
    """

    def __init__(
        self,
        queue: DurableQueue,
        store: OrderStore,
        calculator: PriceCalculator,
        reconciler: PaymentReconciler,
        reporter: EventReporter,
        notifier: Optional[OrderNotifier] = None,
        batch_size: int = 10,
        poll_interval: float = 5.0,
        orphan_timeout: float = 300.0,
    ):
        self.queue = queue
        self.store = store
        self.calculator = calculator
        self.reconciler = reconciler
        self.notifier = notifier
        self._reporter = reporter
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.orphan_timeout = orphan_timeout
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        queue: DurableQueue,
        store: OrderStore,
        reconciler: PaymentReconciler,
        reporter: EventReporter,
        notifier: Optional[OrderNotifier] = None,
    ) -> "QueueProcessor":
        return cls(
            queue,
            store,
            PriceCalculator.from_settings(settings),
            reconciler,
            reporter,
            notifier=notifier,
            batch_size=settings.queue_batch_size,
            poll_interval=settings.queue_poll_interval_seconds,
            orphan_timeout=settings.queue_orphan_timeout_seconds,
        )

    # =========================================================================
    # PIPELINE
    # =========================================================================

    def build_order(self, item: QueueItem, existing: Optional[StoredOrder] = None) -> StoredOrder:
        """
        Price a queue payload into a normal order.

        Raises:
            OrderValidationError: The payload cannot become an order
        """
        if existing is not None and existing.status == "normal":
            return existing

        payload = parse_payload(item.order_data)
        order_number = payload.order_number or item.order_data.get("orderNumber")
        if not order_number:
            raise OrderValidationError("Queue payload has no order number")

        breakdown, total = self.calculator.price_items(payload.items)
        carried = (
            {name: getattr(existing, name) for name in _CARRIED_PAYMENT_FIELDS}
            if existing is not None else {}
        )

        return NormalOrder(
            order_number=order_number,
            restaurant_id=payload.restaurant_id,
            restaurant_name=payload.restaurant_name,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            items=payload.items,
            subtotal=float(breakdown.subtotal),
            tax=float(breakdown.tax),
            processing_fee=float(breakdown.processing_fee),
            order_total=float(total),
            payment_method=payload.payment_method,
            estimated_time=payload.estimated_time,
            correlation_id=item.correlation_id,
            **carried,
        )

    async def process_order(self, item: QueueItem) -> dict[str, Any]:
        """
        Run one queue item through the pipeline.

        Returns:
            The processing result stored on the queue item

        Raises:
            OrderValidationError: Malformed payload (not retried)
            TransientInfraError: Storage degraded or provider unavailable
            PermanentProcessingError: Provider rejected the order
        """
        order_number = item.order_data.get("orderNumber")
        existing = None
        if order_number:
            lookup = await self.store.get_order(order_number, attempt_recovery=False)
            existing = lookup.order

        order = self.build_order(item, existing)

        stored = await self.store.store_order(order)
        if not stored.success:
            raise OrderValidationError(
                stored.error or "Order rejected by store",
                order_number=order.order_number,
                errors=stored.validation_errors,
            )
        if stored.degraded:
            raise TransientInfraError(
                f"Order #{order.order_number} could not be written to the database",
                order_number=order.order_number,
            )

        order = stored.order
        if order.payment_method == "online":
            order = await self.reconciler.generate_payment_link(order)
        elif self.notifier is not None:
            await self.notifier.notify_once(order)
            order = (await self.store.get_order(order.order_number, attempt_recovery=False)).order

        return {
            "orderNumber": order.order_number,
            "status": order.status,
            "subtotal": order.subtotal,
            "tax": order.tax,
            "processingFee": order.processing_fee,
            "orderTotal": order.order_total,
            "paymentMethod": order.payment_method,
            "paymentLinkId": order.payment_link_id,
            "paymentLinkUrl": order.payment_link_url,
            "notificationSent": order.notification_sent,
        }

    async def process_item(self, item: QueueItem) -> str:
        """
        Process one claimed item and record the outcome on the queue.

        Returns:
            The item's new status
        """
        self._reporter.info(
            CATEGORY,
            "Processing order from queue",
            order_id=item.order_data.get("orderNumber"),
            correlation_id=item.correlation_id,
            data={"queue_id": item.id, "attempts": item.attempts},
        )

        try:
            result = await self.process_order(item)
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            self._reporter.error(
                CATEGORY,
                f"Failed to process order: {e}",
                order_id=item.order_data.get("orderNumber"),
                correlation_id=item.correlation_id,
                data={
                    "queue_id": item.id,
                    "error_type": e.__class__.__name__,
                    "retryable": retryable,
                },
            )
            status = await self.queue.mark_failed(item.id, e, retryable=retryable)
            return status or item.status

        await self.queue.mark_completed(item.id, result)
        return "completed"

    # =========================================================================
    # LOOP
    # =========================================================================

    async def run_once(self) -> BatchResult:
        """Claim one batch and process every item in it."""
        batch = BatchResult()
        items = await self.queue.claim_due(self.batch_size)
        batch.claimed = len(items)

        for item in items:
            try:
                status = await self.process_item(item)
            except Exception:
                # Queue bookkeeping failed; the orphan sweep will reclaim the item
                logger.exception(f"Could not record outcome for queue item {item.id}")
                batch.errors += 1
                continue

            if status == "completed":
                batch.completed += 1
            elif status == DEAD_LETTER:
                batch.dead_lettered += 1
            else:
                batch.retried += 1

        if batch.claimed:
            logger.info(f"Queue batch processed: {batch.to_dict()}")
        return batch

    async def drain(self) -> BatchResult:
        """Run passes until no due item is left."""
        total = BatchResult()
        while True:
            batch = await self.run_once()
            if not batch.claimed:
                return total
            for field_name in ("claimed", "completed", "retried", "dead_lettered", "errors"):
                setattr(total, field_name, getattr(total, field_name) + getattr(batch, field_name))

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Poll the queue until ``stop_event`` is set.

        Each cycle sweeps orphaned items, then drains every due item.
        """
        if self._running:
            logger.warning("Queue processor already running")
            return

        stop_event = stop_event or asyncio.Event()
        self._running = True
        logger.info(f"Starting order processor (poll interval {self.poll_interval}s)")

        try:
            while not stop_event.is_set():
                try:
                    await self.queue.reclaim_orphans(self.orphan_timeout)
                    await self.drain()
                    await self.store.flush_pending()
                except Exception:
                    logger.exception("Error in order processor cycle")

                try:
                    await asyncio.wait_for(stop_event.wait(), self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Stopped order processor")
