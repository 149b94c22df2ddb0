"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend.

The beat schedule drives the order queue: one task drains due items every
poll interval, another sweeps orphaned ``processing`` items.

    celery -A orderflow.celery_worker worker --beat --loglevel=info
"""

from celery import Celery

from orderflow.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'orderflow_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['orderflow.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=1,  # The queue itself arbitrates between workers

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    broker_connection_retry_on_startup=True,

    beat_schedule={
        'process-order-queue': {
            'task': 'orderflow.tasks.process_order_queue',
            'schedule': settings.queue_poll_interval_seconds,
        },
        'reclaim-orphaned-items': {
            'task': 'orderflow.tasks.reclaim_orphaned_items',
            'schedule': max(60.0, settings.queue_orphan_timeout_seconds / 5),
        },
        'flush-unflushed-orders': {
            'task': 'orderflow.tasks.flush_pending_orders',
            'schedule': 60.0,
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
