"""
Hybrid Order Store

A process-local cache layered over the relational store.

- The cache is authoritative for reads inside this process and doubles as
  the degraded-mode fallback when the database is unreachable.
- Durable reads and writes go through ``with_retry``; a write that never
  lands leaves the order cached, tracked as unflushed and alerted on.
- Missing orders can be rebuilt from conversation context (``recovered``)
  or synthesized (``placeholder``). Both are priced by the same
  PriceCalculator as normal orders and stored, so re-fetching returns
  identical totals. When the database lookup itself failed they are
  returned but never kept, and the repository refuses to write them over
  a normal row.
- Editing items reprices the order.

The cache is never shared across instances: the database stays the only
cross-process source of truth.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from filelock import FileLock, Timeout
from pydantic import BaseModel, ValidationError

from orderflow.core.config import Settings
from orderflow.core.exceptions import OrderValidationError
from orderflow.schemas import (
    ConversationContext,
    OrderItem,
    PlaceholderOrder,
    RecoveredOrder,
    StoredOrder,
    order_field_alias,
    utcnow,
    validate_order,
)
from orderflow.services.observability import AlertType, EventReporter
from orderflow.services.order_repository import OrderRepository
from orderflow.services.pricing import PriceCalculator
from orderflow.services.retry import RetryConfig, with_graceful_degradation, with_retry

logger = logging.getLogger(__name__)

CATEGORY = "ORDER_STORAGE"

DEFAULT_LINE_PRICE = 5.00
PLACEHOLDER_ITEM = {"name": "Placeholder Item", "quantity": 1, "unitPrice": 10.00}
UNKNOWN_RESTAURANT_ID = "unknown"
UNKNOWN_RESTAURANT_NAME = "Unknown Restaurant"
UNKNOWN_CUSTOMER = "Unknown Customer"

PRICED_FIELDS = ("subtotal", "tax", "processing_fee", "order_total")


@dataclass
class StoreResult:
    """Outcome of ``store_order``."""
    success: bool
    order: Optional[StoredOrder] = None
    error: Optional[str] = None
    degraded: bool = False
    validation_errors: list[dict] = field(default_factory=list)


@dataclass
class OrderLookup:
    """
    Outcome of ``get_order``. ``success=False`` means not found.

    ``degraded`` is set when the durable lookup failed. A recovered or
    placeholder order returned then is neither cached nor saved.
    """
    success: bool
    order: Optional[StoredOrder] = None
    from_cache: bool = False
    recovered: bool = False
    degraded: bool = False
    error: Optional[str] = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalise_cart_lines(lines: list[dict[str, Any]]) -> list[OrderItem]:
    """
    Turn loosely shaped cart lines into order items.

    Missing or unusable prices default to 5.00 and quantities to 1.
    """
    items = []
    for line in lines:
        if not isinstance(line, dict):
            continue

        price = line.get("unitPrice", line.get("unit_price", line.get("price")))
        if not _is_number(price) or price < 0:
            price = DEFAULT_LINE_PRICE

        quantity = line.get("quantity", line.get("qty"))
        if not _is_number(quantity) or int(quantity) < 1:
            quantity = 1

        items.append(OrderItem(
            name=str(line.get("name") or "Unknown Item"),
            quantity=int(quantity),
            unit_price=float(price),
            special_instructions=line.get("specialInstructions") or None,
        ))
    return items


class OrderStore:
    """
    Injectable hybrid order store. Construct one per process (or per test).

    Args:
        repository: Durable order repository
        calculator: Price calculator used for recovery and placeholders
        reporter: Observability sink
        retry_config: Retry policy for every durable operation
        snapshot_path: Optional JSON snapshot of the cache
        lock_timeout: Seconds to wait for the snapshot file lock
        sleep: Awaitable sleep used between retries
    """

    def __init__(
        self,
        repository: OrderRepository,
        calculator: PriceCalculator,
        reporter: EventReporter,
        retry_config: Optional[RetryConfig] = None,
        snapshot_path: Optional[Union[str, Path]] = None,
        lock_timeout: float = 30,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._repository = repository
        self._calculator = calculator
        self._reporter = reporter
        self._retry_config = retry_config or RetryConfig(
            max_retries=2, initial_delay=0.5, max_delay=5.0
        )
        self._snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._lock_timeout = lock_timeout
        self._sleep = sleep

        self._cache: dict[str, StoredOrder] = {}
        self._by_payment_link: dict[str, str] = {}
        self._unflushed: set[str] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: OrderRepository,
        reporter: EventReporter,
    ) -> "OrderStore":
        return cls(
            repository=repository,
            calculator=PriceCalculator.from_settings(settings),
            reporter=reporter,
            retry_config=RetryConfig(
                max_retries=settings.storage_max_retries,
                initial_delay=settings.storage_retry_delay_seconds,
                max_delay=settings.storage_retry_delay_seconds * 10,
            ),
            snapshot_path=Path(settings.data_directory) / settings.snapshot_filename,
            lock_timeout=settings.snapshot_lock_timeout,
        )

    @property
    def unflushed(self) -> frozenset[str]:
        """Order numbers held only in the cache."""
        return frozenset(self._unflushed)

    async def _durable(
        self,
        operation: Callable[[], Awaitable[Any]],
        name: str,
        order_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Any:
        return await with_retry(
            operation,
            self._retry_config,
            name=name,
            category=CATEGORY,
            reporter=self._reporter,
            order_id=order_id,
            correlation_id=correlation_id,
            sleep=self._sleep,
        )

    def _cache_put(self, order: StoredOrder) -> None:
        previous = self._cache.get(order.order_number)
        if (
            previous is not None
            and previous.payment_link_id
            and previous.payment_link_id != order.payment_link_id
        ):
            self._by_payment_link.pop(previous.payment_link_id, None)

        self._cache[order.order_number] = order
        if order.payment_link_id:
            self._by_payment_link[order.payment_link_id] = order.order_number

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def store_order(self, order: Union[StoredOrder, BaseModel, dict[str, Any]]) -> StoreResult:
        """
        Validate and store an order.

        Invalid input is rejected before storage is touched. Valid input is
        cached unconditionally; if the durable write keeps failing the result
        is still ``success=True`` but ``degraded=True``.
        """
        try:
            validated = validate_order(order)
        except OrderValidationError as e:
            self._reporter.warning(
                CATEGORY,
                f"Rejected invalid order: {e.message}",
                order_id=e.order_number,
                data={"errors": e.errors},
            )
            return StoreResult(success=False, error=e.message, validation_errors=e.errors)

        order_number = validated.order_number
        self._cache_put(validated)

        async def durable_write() -> StoreResult:
            saved = await self._durable(
                lambda: self._repository.save(validated),
                "store_order",
                order_number,
                validated.correlation_id,
            )
            self._unflushed.discard(order_number)
            if saved is not validated:
                self._cache_put(saved)
            return StoreResult(success=True, order=saved)

        async def memory_only() -> StoreResult:
            self._unflushed.add(order_number)
            self._reporter.raise_alert(
                AlertType.DEGRADED_STORAGE,
                f"Order #{order_number} is held in memory only",
                order_id=order_number,
                correlation_id=validated.correlation_id,
            )
            return StoreResult(
                success=True,
                order=validated,
                degraded=True,
                error="Durable write failed, order kept in memory",
            )

        return await with_graceful_degradation(
            durable_write,
            memory_only,
            name="store_order",
            category=CATEGORY,
            reporter=self._reporter,
            order_id=order_number,
            correlation_id=validated.correlation_id,
        )

    async def update_order(self, order_number: str, updates: dict[str, Any]) -> bool:
        """
        Apply ``updates`` (camelCase or snake_case keys) to an order.

        Returns False when the order does not exist or the update would make
        it invalid. Durable failures are logged, never raised.
        """
        order_number = str(order_number)
        lookup = await self.get_order(order_number, attempt_recovery=False)
        if not lookup.success:
            self._reporter.warning(CATEGORY, "Cannot update missing order", order_id=order_number)
            return False

        data = lookup.order.model_dump()
        fields = set()
        for key, value in updates.items():
            name = order_field_alias(key)
            data[name] = value
            fields.add(name)

        try:
            updated = validate_order(data)
        except OrderValidationError as e:
            self._reporter.warning(
                CATEGORY,
                f"Rejected update: {e.message}",
                order_id=order_number,
                data={"errors": e.errors},
            )
            return False

        if "items" in fields or fields.intersection(PRICED_FIELDS):
            updated = self._reprice(updated, fields)
            if updated is None:
                return False

        self._cache_put(updated)

        try:
            saved = await self._durable(
                lambda: self._repository.save(updated),
                "update_order",
                order_number,
                updated.correlation_id,
            )
        except Exception as e:
            self._unflushed.add(order_number)
            self._reporter.error(
                CATEGORY,
                "Durable update failed, cache holds the latest version",
                order_id=order_number,
                data={"error": str(e)},
            )
        else:
            self._unflushed.discard(order_number)
            if saved is not updated:
                self._cache_put(saved)
        return True

    async def delete_order(self, order_number: str) -> bool:
        """Administrative delete from cache and durable store."""
        order_number = str(order_number)
        removed = self._cache.pop(order_number, None)
        self._unflushed.discard(order_number)
        if removed is not None and removed.payment_link_id:
            self._by_payment_link.pop(removed.payment_link_id, None)

        deleted = False
        try:
            deleted = await self._durable(
                lambda: self._repository.delete(order_number),
                "delete_order",
                order_number,
            )
        except Exception as e:
            self._reporter.error(
                CATEGORY,
                "Durable delete failed",
                order_id=order_number,
                data={"error": str(e)},
            )

        if removed is not None or deleted:
            self._reporter.info(CATEGORY, "Order deleted", order_id=order_number)
            return True
        return False

    async def flush_pending(self) -> int:
        """Retry durable writes for every unflushed order. Returns how many landed."""
        flushed = 0
        for order_number in sorted(self._unflushed):
            order = self._cache.get(order_number)
            if order is None:
                self._unflushed.discard(order_number)
                continue

            try:
                saved = await self._durable(
                    lambda: self._repository.save(order),
                    "flush_order",
                    order_number,
                    order.correlation_id,
                )
            except Exception as e:
                self._reporter.warning(
                    CATEGORY,
                    "Order still not flushed",
                    order_id=order_number,
                    data={"error": str(e)},
                )
                continue

            self._unflushed.discard(order_number)
            if saved is not order:
                self._cache_put(saved)
            flushed += 1

        if flushed:
            for alert in self._reporter.active_alerts(AlertType.DEGRADED_STORAGE):
                if alert.order_id not in self._unflushed:
                    self._reporter.resolve_alert(alert.id)
        return flushed

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def get_order(
        self,
        order_number: str,
        attempt_recovery: bool = True,
        create_if_missing: bool = False,
        context: Optional[Union[ConversationContext, dict[str, Any]]] = None,
    ) -> OrderLookup:
        """
        Cache, then durable store, then recovery, then placeholder.

        Never raises: an order that cannot be found or rebuilt comes back as
        ``OrderLookup(success=False)``.
        """
        order_number = str(order_number)

        cached = self._cache.get(order_number)
        if cached is not None:
            return OrderLookup(success=True, order=cached, from_cache=True)

        lookup_failed = False
        try:
            stored = await self._durable(
                lambda: self._repository.get(order_number),
                "get_order",
                order_number,
            )
        except Exception as e:
            stored = None
            lookup_failed = True
            self._reporter.error(
                CATEGORY,
                "Durable lookup failed",
                order_id=order_number,
                data={"error": str(e)},
            )

        if stored is not None:
            self._cache_put(stored)
            return OrderLookup(success=True, order=stored)

        ctx = self._parse_context(order_number, context)
        # The order may exist in the database, so nothing synthesized is kept
        persist = not lookup_failed

        if attempt_recovery and ctx is not None:
            recovered = await self._recover(order_number, ctx, persist)
            if recovered is not None:
                return OrderLookup(
                    success=True, order=recovered, recovered=True, degraded=lookup_failed
                )

        if create_if_missing:
            placeholder = await self._create_placeholder(
                order_number, ctx or ConversationContext(), persist
            )
            if placeholder is not None:
                return OrderLookup(
                    success=True, order=placeholder, recovered=True, degraded=lookup_failed
                )

        return OrderLookup(
            success=False,
            error=(
                f"Order #{order_number} unavailable, durable store unreachable"
                if lookup_failed
                else f"Order #{order_number} not found and recovery failed"
            ),
            degraded=lookup_failed,
        )

    async def get_orders_by_restaurant(self, restaurant_id: str) -> list[StoredOrder]:
        """Durable results merged with cached ones; the cached version wins."""
        restaurant_id = str(restaurant_id)
        merged: dict[str, StoredOrder] = {}

        try:
            durable = await self._durable(
                lambda: self._repository.list_by_restaurant(restaurant_id),
                "get_orders_by_restaurant",
            )
        except Exception as e:
            durable = []
            self._reporter.error(
                CATEGORY,
                f"Durable listing failed for restaurant {restaurant_id}, serving cache only",
                data={"error": str(e)},
            )

        for order in durable:
            merged[order.order_number] = order
        for order in self._cache.values():
            if order.restaurant_id == restaurant_id:
                merged[order.order_number] = order

        return sorted(merged.values(), key=lambda o: o.timestamp)

    async def get_order_by_payment_link_id(self, payment_link_id: str) -> Optional[StoredOrder]:
        order_number = self._by_payment_link.get(payment_link_id)
        if order_number is not None:
            lookup = await self.get_order(order_number, attempt_recovery=False)
            if lookup.success:
                return lookup.order

        try:
            order = await self._durable(
                lambda: self._repository.get_by_payment_link_id(payment_link_id),
                "get_order_by_payment_link_id",
            )
        except Exception as e:
            self._reporter.error(
                CATEGORY,
                f"Durable lookup by payment link {payment_link_id} failed",
                data={"error": str(e)},
            )
            return None

        if order is not None and order.order_number not in self._cache:
            self._cache_put(order)
        return order

    def register_payment_link(self, payment_link_id: str, order_number: str) -> None:
        self._by_payment_link[payment_link_id] = str(order_number)

    def pending_payment_count(self) -> int:
        return sum(1 for o in self._cache.values() if o.payment_status == "pending")

    def _reprice(self, order: StoredOrder, fields: set[str]) -> Optional[StoredOrder]:
        """
        Recompute the money fields from the items.

        Returns None when an edited money field disagrees with the items.
        """
        breakdown, total = self._calculator.price_items(order.items)
        priced = {
            "subtotal": float(breakdown.subtotal),
            "tax": float(breakdown.tax),
            "processing_fee": float(breakdown.processing_fee),
            "order_total": float(total),
        }

        mismatched = sorted(
            name for name in fields.intersection(PRICED_FIELDS)
            if round(getattr(order, name), 2) != priced[name]
        )
        if mismatched:
            names = ", ".join(mismatched)
            self._reporter.warning(
                CATEGORY,
                f"Rejected update: {names} disagree with the items",
                order_id=order.order_number,
                data={"expected": priced},
            )
            return None

        return order.model_copy(update=priced)

    # =========================================================================
    # RECOVERY
    # =========================================================================

    def _parse_context(self, order_number: str, context: Any) -> Optional[ConversationContext]:
        if context is None or isinstance(context, ConversationContext):
            return context
        try:
            return ConversationContext.model_validate(context)
        except ValidationError as e:
            self._reporter.warning(
                CATEGORY,
                "Ignoring malformed conversation context",
                order_id=order_number,
                data={"errors": e.errors(include_url=False, include_context=False)},
            )
            return None

    async def _keep(self, order: StoredOrder, persist: bool) -> Optional[StoredOrder]:
        if not persist:
            return order
        result = await self.store_order(order)
        return result.order if result.success else None

    async def _recover(
        self, order_number: str, ctx: ConversationContext, persist: bool = True
    ) -> Optional[StoredOrder]:
        lines = ctx.lines()
        if not (ctx.selected_restaurant_id and ctx.selected_restaurant_name and lines):
            self._reporter.debug(
                CATEGORY,
                "Insufficient conversation context to recover order",
                order_id=order_number,
            )
            return None

        items = normalise_cart_lines(lines)
        if not items:
            return None

        breakdown, total = self._calculator.price_items(items)
        order = RecoveredOrder(
            order_number=order_number,
            restaurant_id=ctx.selected_restaurant_id,
            restaurant_name=ctx.selected_restaurant_name,
            customer_name=ctx.customer_name or UNKNOWN_CUSTOMER,
            customer_email=ctx.customer_email,
            items=items,
            subtotal=float(breakdown.subtotal),
            tax=float(breakdown.tax),
            processing_fee=float(breakdown.processing_fee),
            order_total=float(total),
            payment_method=ctx.payment_method,
            recovered_at=utcnow(),
        )

        kept = await self._keep(order, persist)
        if kept is None:
            return None

        self._reporter.info(
            CATEGORY,
            f"Recovered order #{order_number} from conversation state",
            order_id=order_number,
            data={"items": len(items), "order_total": order.order_total, "saved": persist},
        )
        return kept

    async def _create_placeholder(
        self, order_number: str, ctx: ConversationContext, persist: bool = True
    ) -> Optional[StoredOrder]:
        items = normalise_cart_lines(ctx.lines()) or [OrderItem.model_validate(PLACEHOLDER_ITEM)]
        cart = ctx.cart or {}

        breakdown, total = self._calculator.price_items(items)
        order = PlaceholderOrder(
            order_number=order_number,
            restaurant_id=str(
                ctx.selected_restaurant_id or cart.get("restaurantId") or UNKNOWN_RESTAURANT_ID
            ),
            restaurant_name=(
                ctx.selected_restaurant_name or cart.get("restaurantName") or UNKNOWN_RESTAURANT_NAME
            ),
            customer_name=ctx.customer_name or UNKNOWN_CUSTOMER,
            customer_email=ctx.customer_email,
            items=items,
            subtotal=float(breakdown.subtotal),
            tax=float(breakdown.tax),
            processing_fee=float(breakdown.processing_fee),
            order_total=float(total),
            payment_method=ctx.payment_method,
        )

        kept = await self._keep(order, persist)
        if kept is None:
            return None

        self._reporter.warning(
            CATEGORY,
            f"Created placeholder for missing order #{order_number}",
            order_id=order_number,
            data={"items": len(items), "order_total": order.order_total, "saved": persist},
        )
        return kept

    # =========================================================================
    # DISK SNAPSHOT
    # =========================================================================

    def save_snapshot(self) -> int:
        """
        Write the cache to disk under a file lock.

        Returns:
            Number of orders written (0 when disabled or the lock timed out)
        """
        if self._snapshot_path is None:
            return 0

        path = self._snapshot_path
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "saved_at": utcnow().isoformat(),
            "orders": [o.model_dump(mode="json", by_alias=True) for o in self._cache.values()],
            "unflushed": sorted(self._unflushed),
        }

        try:
            with FileLock(f"{path}.lock", timeout=self._lock_timeout):
                tmp_path = path.with_suffix(path.suffix + ".tmp")
                tmp_path.write_text(json.dumps(payload), encoding="utf-8")
                os.replace(tmp_path, path)
        except Timeout:
            logger.error(f"Snapshot lock timeout ({self._lock_timeout}s) for {path}")
            return 0

        logger.info(f"Saved {len(payload['orders'])} cached orders to {path}")
        return len(payload["orders"])

    def load_snapshot(self) -> int:
        """
        Reload cached orders written by ``save_snapshot``.

        Orders already in the cache are kept. Returns the number loaded.
        """
        if self._snapshot_path is None or not self._snapshot_path.exists():
            return 0

        path = self._snapshot_path
        try:
            with FileLock(f"{path}.lock", timeout=self._lock_timeout):
                payload = json.loads(path.read_text(encoding="utf-8"))
        except Timeout:
            logger.error(f"Snapshot lock timeout ({self._lock_timeout}s) for {path}")
            return 0
        except json.JSONDecodeError:
            logger.exception(f"Corrupt order snapshot at {path}")
            return 0

        loaded = 0
        for data in payload.get("orders", []):
            try:
                order = validate_order(data)
            except OrderValidationError as e:
                logger.warning(f"Skipping invalid snapshot order: {e.message}")
                continue
            if order.order_number not in self._cache:
                self._cache_put(order)
                loaded += 1

        self._unflushed.update(n for n in payload.get("unflushed", []) if n in self._cache)
        logger.info(f"Loaded {loaded} orders from snapshot {path}")
        return loaded
