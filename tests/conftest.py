"""
Pytest configuration and fixtures.

Every test gets its own SQLite database under ``tmp_path`` and mock providers
that never fail or sleep, so failures are only ever injected on purpose.
"""
import random
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from orderflow.core.config import Settings
from orderflow.database import SessionFactory, create_engine_and_sessionmaker, init_db
from orderflow.schemas import StoredOrder
from orderflow.services.notifications import MockNotificationService, OrderNotifier
from orderflow.services.observability import EventReporter
from orderflow.services.order_repository import OrderRepository
from orderflow.services.order_store import OrderStore
from orderflow.services.payment import MockPaymentService
from orderflow.services.payment.reconciler import PaymentReconciler
from orderflow.services.pricing import PriceCalculator
from orderflow.services.queue import DurableQueue, QueueProcessor
from orderflow.services.retry import RetryConfig


async def no_sleep(delay: float) -> None:
    """Stand-in for asyncio.sleep so retry tests run instantly."""


NO_RETRY = RetryConfig(max_retries=0, initial_delay=0, max_delay=0, jitter=False)
IMMEDIATE_BACKOFF = RetryConfig(initial_delay=0, max_delay=0, jitter=False)


class FlakyRepository(OrderRepository):
    """OrderRepository whose next ``save_failures`` saves raise ConnectionError."""

    def __init__(self, session_factory: SessionFactory, save_failures: int = 0):
        super().__init__(session_factory)
        self.save_failures = save_failures
        self.save_calls = 0
        self.down = False

    async def save(self, order: StoredOrder) -> StoredOrder:
        self.save_calls += 1
        if self.down or self.save_failures > 0:
            self.save_failures = max(0, self.save_failures - 1)
            raise ConnectionError("database unavailable")
        return await super().save(order)

    async def get(self, order_number: str) -> Optional[StoredOrder]:
        if self.down:
            raise ConnectionError("database unavailable")
        return await super().get(order_number)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        env_mode="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}",
        data_directory=str(tmp_path / "data"),
        storage_max_retries=0,
        storage_retry_delay_seconds=0,
        queue_retry_initial_delay_seconds=0,
        queue_retry_max_delay_seconds=0,
        queue_retry_jitter=False,
        restaurant_email="kitchen@example.com",
    )


@pytest_asyncio.fixture
async def engine_and_factory(test_settings: Settings) -> AsyncGenerator[tuple[AsyncEngine, SessionFactory], Any]:
    """Create an isolated database with all tables."""
    engine, session_factory = create_engine_and_sessionmaker(test_settings.database_url)
    await init_db(engine)
    yield engine, session_factory
    await engine.dispose()


@pytest.fixture
def session_factory(engine_and_factory: tuple[AsyncEngine, SessionFactory]) -> SessionFactory:
    return engine_and_factory[1]


@pytest.fixture
def reporter() -> EventReporter:
    return EventReporter()


@pytest.fixture
def calculator() -> PriceCalculator:
    return PriceCalculator()


@pytest.fixture
def repository(session_factory: SessionFactory) -> FlakyRepository:
    return FlakyRepository(session_factory)


@pytest.fixture
def store(
    repository: FlakyRepository,
    calculator: PriceCalculator,
    reporter: EventReporter,
    tmp_path: Any,
) -> OrderStore:
    return OrderStore(
        repository,
        calculator,
        reporter,
        retry_config=NO_RETRY,
        snapshot_path=tmp_path / "data" / "order_cache.json",
        lock_timeout=5,
        sleep=no_sleep,
    )


@pytest.fixture
def payment_service() -> MockPaymentService:
    return MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0)


@pytest.fixture
def notification_service() -> MockNotificationService:
    return MockNotificationService(
        failure_rate=0.0,
        min_latency=0,
        max_latency=0,
        restaurant_email="kitchen@example.com",
    )


@pytest.fixture
def notifier(
    notification_service: MockNotificationService,
    store: OrderStore,
    reporter: EventReporter,
) -> OrderNotifier:
    return OrderNotifier(notification_service, store, reporter, timeout=5)


@pytest.fixture
def reconciler(
    store: OrderStore,
    payment_service: MockPaymentService,
    reporter: EventReporter,
    notifier: OrderNotifier,
) -> PaymentReconciler:
    return PaymentReconciler(store, payment_service, reporter, notifier=notifier, call_timeout=5)


@pytest.fixture
def queue(session_factory: SessionFactory, reporter: EventReporter) -> DurableQueue:
    return DurableQueue(
        session_factory,
        reporter,
        max_attempts=3,
        backoff=IMMEDIATE_BACKOFF,
        db_retry=NO_RETRY,
        rng=random.Random(7),
        sleep=no_sleep,
    )


@pytest.fixture
def processor(
    queue: DurableQueue,
    store: OrderStore,
    calculator: PriceCalculator,
    reconciler: PaymentReconciler,
    reporter: EventReporter,
    notifier: OrderNotifier,
) -> QueueProcessor:
    return QueueProcessor(
        queue,
        store,
        calculator,
        reconciler,
        reporter,
        notifier=notifier,
        batch_size=10,
        poll_interval=0.01,
    )


@pytest.fixture
def burger_payload() -> dict[str, Any]:
    """The smallest payload producers send: two burgers at 8.99."""
    return {
        "items": [{"name": "Burger", "qty": 2, "price": 8.99}],
        "restaurantId": "r1",
    }
