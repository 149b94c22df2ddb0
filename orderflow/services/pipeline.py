"""
Pipeline Wiring

Builds one fully wired set of pipeline components. The API process and the
Celery worker each call ``get_pipeline()`` once; tests call
``build_pipeline`` with their own session factory and mock providers.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from orderflow.core.config import Settings, get_settings
from orderflow.database import SessionFactory, get_engine_and_sessionmaker
from orderflow.services.notifications import (
    BaseNotificationService,
    OrderNotifier,
    get_notification_service,
)
from orderflow.services.observability import EventReporter
from orderflow.services.order_repository import OrderRepository
from orderflow.services.order_store import OrderStore
from orderflow.services.payment import BasePaymentService, get_payment_service
from orderflow.services.payment.reconciler import PaymentReconciler
from orderflow.services.queue import DurableQueue, QueueProcessor

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    session_factory: SessionFactory
    reporter: EventReporter
    store: OrderStore
    queue: DurableQueue
    reconciler: PaymentReconciler
    notifier: OrderNotifier
    processor: QueueProcessor


def build_pipeline(
    settings: Optional[Settings] = None,
    session_factory: Optional[SessionFactory] = None,
    payment_service: Optional[BasePaymentService] = None,
    notification_service: Optional[BaseNotificationService] = None,
    reporter: Optional[EventReporter] = None,
) -> Pipeline:
    """Wire every component from settings, overriding any collaborator given."""
    settings = settings or get_settings()
    if session_factory is None:
        _, session_factory = get_engine_and_sessionmaker()
    reporter = reporter or EventReporter()

    store = OrderStore.from_settings(settings, OrderRepository(session_factory), reporter)
    notifier = OrderNotifier(
        notification_service or get_notification_service(),
        store,
        reporter,
        timeout=settings.external_call_timeout_seconds,
    )
    reconciler = PaymentReconciler.from_settings(
        settings,
        store,
        payment_service or get_payment_service(),
        reporter,
        notifier=notifier,
    )
    queue = DurableQueue.from_settings(settings, session_factory, reporter)
    processor = QueueProcessor.from_settings(
        settings, queue, store, reconciler, reporter, notifier=notifier
    )

    return Pipeline(
        settings=settings,
        session_factory=session_factory,
        reporter=reporter,
        store=store,
        queue=queue,
        reconciler=reconciler,
        notifier=notifier,
        processor=processor,
    )


@lru_cache()
def get_pipeline() -> Pipeline:
    """Process-wide pipeline built from settings."""
    pipeline = build_pipeline()
    loaded = pipeline.store.load_snapshot()
    if loaded:
        logger.info(f"Restored {loaded} cached orders from snapshot")
    return pipeline
