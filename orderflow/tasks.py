"""
Celery Tasks
Background tasks that drive the durable order queue.

Each worker process keeps one event loop and one wired pipeline, so the
database pool and the order cache survive between task runs.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Coroutine, Optional

from orderflow.celery_worker import celery_app
from orderflow.core.config import setup_logging
from orderflow.database import get_engine_and_sessionmaker, init_db
from orderflow.services.pipeline import Pipeline, get_pipeline

setup_logging()
logger = logging.getLogger(__name__)

_loop: Optional[asyncio.AbstractEventLoop] = None
_initialised = False


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a coroutine on this worker process's event loop."""
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


async def _pipeline() -> Pipeline:
    global _initialised
    if not _initialised:
        engine, _ = get_engine_and_sessionmaker()
        await init_db(engine)
        _initialised = True
    return get_pipeline()


@celery_app.task(bind=True)
def process_order_queue(self) -> dict:
    """
    Drain every due queue item through the pipeline.

    Item failures are recorded on the queue itself, so this task never
    retries through Celery.
    """
    task_id = self.request.id
    start_time = time.time()

    async def drain() -> dict:
        pipeline = await _pipeline()
        batch = await pipeline.processor.drain()
        return batch.to_dict()

    result = _run(drain())
    elapsed = round(time.time() - start_time, 3)

    if result["claimed"]:
        logger.info(f"📋 Task {task_id}: processed queue batch in {elapsed}s - {result}")

    result["task_id"] = task_id
    result["processing_time_seconds"] = elapsed
    return result


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def reclaim_orphaned_items(self) -> dict:
    """Return items stuck in ``processing`` to the queue."""
    async def reclaim() -> int:
        pipeline = await _pipeline()
        return await pipeline.queue.reclaim_orphans(pipeline.processor.orphan_timeout)

    reclaimed = _run(reclaim())
    if reclaimed:
        logger.warning(f"⚠️ Task {self.request.id}: reclaimed {reclaimed} orphaned queue items")
    return {"reclaimed": reclaimed}


@celery_app.task
def flush_pending_orders() -> dict:
    """Retry durable writes for orders held only in this worker's cache."""
    async def flush() -> tuple[int, int]:
        pipeline = await _pipeline()
        flushed = await pipeline.store.flush_pending()
        pipeline.store.save_snapshot()
        return flushed, len(pipeline.store.unflushed)

    flushed, remaining = _run(flush())
    if flushed:
        logger.info(f"✅ Flushed {flushed} orders to the database ({remaining} still pending)")
    return {"flushed": flushed, "remaining": remaining}


@celery_app.task
def replay_dead_letter(item_id: int) -> dict:
    """Send a failed or dead-lettered item back to pending."""
    async def replay() -> bool:
        pipeline = await _pipeline()
        return await pipeline.queue.replay(item_id)

    return {"queue_id": item_id, "replayed": _run(replay())}


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task.
    Used to verify Celery worker is running and can reach the queue.
    """
    async def stats() -> dict:
        pipeline = await _pipeline()
        return (await pipeline.queue.stats()).model_dump()

    return {
        "status": "healthy",
        "queue": _run(stats()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
