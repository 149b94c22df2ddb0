"""
Durable Order Queue

Persisted job queue over the ``order_queue`` table.

State machine:
    pending -> processing -> completed
                          -> pending (retry, after backoff)
                          -> dead_letter (attempts exhausted or non-retryable)

Claiming is a single ``UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP
LOCKED LIMIT n) RETURNING`` statement, so concurrent processors never claim
the same row. Terminal rows (completed, dead_letter) are never touched by the
processor again; ``replay`` is the only way back from dead_letter.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, or_, select, update

from orderflow.core.config import Settings
from orderflow.database import SessionFactory
from orderflow.models import QueueItem, QueueStatus, utcnow
from orderflow.schemas import QueueStats, generate_order_number
from orderflow.services.observability import AlertType, EventReporter, create_correlation_id
from orderflow.services.retry import RetryConfig, compute_backoff, with_retry

logger = logging.getLogger(__name__)

CATEGORY = "ORDER_QUEUE"

PENDING = QueueStatus.PENDING.value
PROCESSING = QueueStatus.PROCESSING.value
COMPLETED = QueueStatus.COMPLETED.value
FAILED = QueueStatus.FAILED.value
DEAD_LETTER = QueueStatus.DEAD_LETTER.value

MAX_ERROR_LENGTH = 2000


class DurableQueue:
    """
    Queue operations against the relational store.

    Args:
        session_factory: Async session factory
        reporter: Observability sink
        max_attempts: Attempts allowed per item before dead-lettering
        backoff: Schedule for ``next_attempt_at`` after a failure
        db_retry: Retry policy for the queue's own database statements
        clock: Returns the current UTC time
        rng: Random source for backoff jitter
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        reporter: EventReporter,
        max_attempts: int = 3,
        backoff: Optional[RetryConfig] = None,
        db_retry: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self._session_factory = session_factory
        self._reporter = reporter
        self.max_attempts = max_attempts
        self._backoff = backoff or RetryConfig(initial_delay=5.0, max_delay=300.0)
        self._db_retry = db_retry or RetryConfig(max_retries=2, initial_delay=0.2, max_delay=2.0)
        self._clock = clock
        self._rng = rng
        self._sleep_kwargs = {"sleep": sleep} if sleep is not None else {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: SessionFactory,
        reporter: EventReporter,
    ) -> "DurableQueue":
        return cls(
            session_factory,
            reporter,
            max_attempts=settings.queue_max_attempts,
            backoff=RetryConfig(
                initial_delay=settings.queue_retry_initial_delay_seconds,
                max_delay=settings.queue_retry_max_delay_seconds,
                backoff_factor=settings.queue_retry_backoff_factor,
                jitter=settings.queue_retry_jitter,
            ),
            db_retry=RetryConfig(
                max_retries=settings.storage_max_retries,
                initial_delay=settings.storage_retry_delay_seconds,
                max_delay=settings.storage_retry_delay_seconds * 10,
            ),
        )

    async def _run(self, operation, name: str, correlation_id: Optional[str] = None):
        return await with_retry(
            operation,
            self._db_retry,
            name=name,
            category=CATEGORY,
            reporter=self._reporter,
            correlation_id=correlation_id,
            **self._sleep_kwargs,
        )

    # =========================================================================
    # PRODUCER
    # =========================================================================

    async def enqueue(
        self,
        order_data: dict[str, Any],
        auth0_user: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> int:
        """
        Add an order to the queue.

        An ``orderNumber`` is assigned when the payload has none, so every
        retry of this item stores the same order.

        Returns:
            The queue item id
        """
        correlation_id = correlation_id or create_correlation_id()
        data = dict(order_data)
        if not data.get("orderNumber"):
            data["orderNumber"] = generate_order_number()

        async def insert() -> int:
            now = self._clock()
            item = QueueItem(
                order_data=data,
                auth0_user=auth0_user,
                status=PENDING,
                attempts=0,
                max_attempts=self.max_attempts,
                correlation_id=correlation_id,
                created_at=now,
                updated_at=now,
                next_attempt_at=now,
            )
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(item)
                    await session.flush()
                    return item.id

        item_id = await self._run(insert, "enqueue", correlation_id)

        self._reporter.info(
            CATEGORY,
            "Order added to queue",
            order_id=data["orderNumber"],
            correlation_id=correlation_id,
            data={"queue_id": item_id},
        )
        return item_id

    # =========================================================================
    # CONSUMER
    # =========================================================================

    async def claim_due(self, batch_size: int = 10) -> list[QueueItem]:
        """
        Atomically move up to ``batch_size`` due items to ``processing``.

        Rows locked by another claimant are skipped rather than waited on.
        """
        async def claim() -> list[QueueItem]:
            now = self._clock()
            due = (
                select(QueueItem.id)
                .where(
                    QueueItem.status == PENDING,
                    or_(QueueItem.next_attempt_at.is_(None), QueueItem.next_attempt_at <= now),
                )
                .order_by(QueueItem.created_at, QueueItem.id)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            )
            stmt = (
                update(QueueItem)
                .where(QueueItem.id.in_(due), QueueItem.status == PENDING)
                .values(status=PROCESSING, processing_started_at=now, updated_at=now)
                .returning(QueueItem)
                .execution_options(synchronize_session=False)
            )
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return list(result.scalars().all())

        items = await self._run(claim, "claim_due")
        items.sort(key=lambda item: (item.created_at, item.id))

        if items:
            logger.debug(f"Claimed {len(items)} queue items: {[i.id for i in items]}")
        return items

    async def mark_completed(self, item_id: int, result: Optional[dict[str, Any]] = None) -> bool:
        """
        Finish a processing item. ``result`` is kept as ``processingResult``.

        Returns False if the item is not currently processing.
        """
        async def complete() -> Optional[QueueItem]:
            now = self._clock()
            async with self._session_factory() as session:
                async with session.begin():
                    item = await session.get(QueueItem, item_id, with_for_update=True)
                    if item is None or item.status != PROCESSING:
                        return None

                    item.status = COMPLETED
                    item.completed_at = now
                    item.updated_at = now
                    item.next_attempt_at = None
                    item.error_message = None
                    if result is not None:
                        item.order_data = {**item.order_data, "processingResult": result}
                    return item

        item = await self._run(complete, "mark_completed")
        if item is None:
            logger.warning(f"Queue item {item_id} is not processing, completion ignored")
            return False

        self._reporter.info(
            CATEGORY,
            "Order processed successfully",
            order_id=item.order_data.get("orderNumber"),
            correlation_id=item.correlation_id,
            data={"queue_id": item.id, "attempts": item.attempts},
        )
        return True

    async def mark_failed(
        self,
        item_id: int,
        error: Any,
        retryable: bool = True,
    ) -> Optional[str]:
        """
        Record a failed processing attempt.

        Returns:
            The new status (``pending`` or ``dead_letter``), or None if the
            item was not processing
        """
        message = (str(error) or error.__class__.__name__)[:MAX_ERROR_LENGTH]

        async def fail() -> Optional[QueueItem]:
            now = self._clock()
            async with self._session_factory() as session:
                async with session.begin():
                    item = await session.get(QueueItem, item_id, with_for_update=True)
                    if item is None or item.status != PROCESSING:
                        return None

                    item.attempts = item.attempts + 1
                    item.error_message = message
                    item.updated_at = now
                    item.processing_started_at = None

                    if not retryable or item.attempts >= item.max_attempts:
                        item.status = DEAD_LETTER
                        item.next_attempt_at = None
                    else:
                        delay = compute_backoff(item.attempts, self._backoff, self._rng)
                        item.status = PENDING
                        item.next_attempt_at = now + timedelta(seconds=delay)
                    return item

        item = await self._run(fail, "mark_failed")
        if item is None:
            logger.warning(f"Queue item {item_id} is not processing, failure ignored")
            return None

        order_number = item.order_data.get("orderNumber")
        if item.status == DEAD_LETTER:
            self._reporter.raise_alert(
                AlertType.DEAD_LETTER,
                f"Queue item {item.id} moved to dead letter",
                level=logging.ERROR,
                order_id=order_number,
                correlation_id=item.correlation_id,
                data={
                    "queue_id": item.id,
                    "attempts": item.attempts,
                    "max_attempts": item.max_attempts,
                    "retryable": retryable,
                    "error": message,
                },
            )
        else:
            self._reporter.warning(
                CATEGORY,
                "Order processing failed, scheduled for retry",
                order_id=order_number,
                correlation_id=item.correlation_id,
                data={
                    "queue_id": item.id,
                    "attempts": item.attempts,
                    "max_attempts": item.max_attempts,
                    "next_attempt_at": item.next_attempt_at.isoformat(),
                    "error": message,
                },
            )
        return item.status

    async def reclaim_orphans(self, timeout_seconds: float = 300) -> int:
        """
        Return items stuck in ``processing`` longer than the timeout.

        A reclaim counts as a failed attempt, so a crashing item still ends in
        dead_letter. Returns the number of items reclaimed.
        """
        async def reclaim() -> tuple[list[int], list[int]]:
            now = self._clock()
            cutoff = now - timedelta(seconds=timeout_seconds)
            expired = (
                QueueItem.status == PROCESSING,
                QueueItem.processing_started_at < cutoff,
            )
            error = f"Processing exceeded {timeout_seconds:g}s, reclaimed"

            async with self._session_factory() as session:
                async with session.begin():
                    dead = await session.execute(
                        update(QueueItem)
                        .where(*expired, QueueItem.attempts + 1 >= QueueItem.max_attempts)
                        .values(
                            status=DEAD_LETTER,
                            attempts=QueueItem.attempts + 1,
                            error_message=error,
                            next_attempt_at=None,
                            processing_started_at=None,
                            updated_at=now,
                        )
                        .returning(QueueItem.id)
                        .execution_options(synchronize_session=False)
                    )
                    dead_ids = list(dead.scalars())

                    retried = await session.execute(
                        update(QueueItem)
                        .where(*expired)
                        .values(
                            status=PENDING,
                            attempts=QueueItem.attempts + 1,
                            error_message=error,
                            next_attempt_at=now,
                            processing_started_at=None,
                            updated_at=now,
                        )
                        .returning(QueueItem.id)
                        .execution_options(synchronize_session=False)
                    )
                    return dead_ids, list(retried.scalars())

        dead_ids, retried_ids = await self._run(reclaim, "reclaim_orphans")

        for item_id in dead_ids:
            self._reporter.raise_alert(
                AlertType.DEAD_LETTER,
                f"Orphaned queue item {item_id} moved to dead letter",
                level=logging.ERROR,
                data={"queue_id": item_id},
            )
        if retried_ids:
            self._reporter.warning(
                CATEGORY,
                f"Reclaimed {len(retried_ids)} orphaned queue items",
                data={"queue_ids": retried_ids},
            )
        return len(dead_ids) + len(retried_ids)

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def replay(self, item_id: int) -> bool:
        """
        Manually send a failed or dead-lettered item back to ``pending``.

        Attempts restart from zero.
        """
        async def reset() -> Optional[QueueItem]:
            now = self._clock()
            async with self._session_factory() as session:
                async with session.begin():
                    item = await session.get(QueueItem, item_id, with_for_update=True)
                    if item is None or item.status not in (FAILED, DEAD_LETTER):
                        return None

                    item.status = PENDING
                    item.attempts = 0
                    item.next_attempt_at = now
                    item.processing_started_at = None
                    item.completed_at = None
                    item.updated_at = now
                    return item

        item = await self._run(reset, "replay")
        if item is None:
            logger.error(f"Queue item {item_id} not found or not in failed/dead letter status")
            return False

        self._reporter.info(
            CATEGORY,
            "Order queued for replay",
            order_id=item.order_data.get("orderNumber"),
            correlation_id=item.correlation_id,
            data={"queue_id": item.id, "last_error": item.error_message},
        )
        return True

    async def get_item(self, item_id: int) -> Optional[QueueItem]:
        async with self._session_factory() as session:
            return await session.get(QueueItem, item_id)

    async def list_items(
        self,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[QueueItem]:
        """Queue items, newest first, optionally filtered by status."""
        stmt = select(QueueItem).order_by(QueueItem.created_at.desc(), QueueItem.id.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(QueueItem.status == status)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def stats(self) -> QueueStats:
        """Queue depth by status."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status)
            )
            counts = {status: count for status, count in result.all()}

        stats = QueueStats(**{s.value: counts.get(s.value, 0) for s in QueueStatus})
        stats.total = sum(counts.values())
        return stats
