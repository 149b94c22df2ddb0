"""
Hybrid order store tests: write path, degradation, recovery and placeholders.
"""
from typing import Any

import pytest

from orderflow.schemas import NormalOrder, OrderItem
from orderflow.services.observability import AlertType, EventReporter
from orderflow.services.order_store import OrderStore, normalise_cart_lines
from orderflow.services.pricing import PriceCalculator
from tests.conftest import NO_RETRY, FlakyRepository, no_sleep


def make_order(order_number: str = "ORD-1", restaurant_id: str = "r1", **overrides: Any) -> NormalOrder:
    calc = PriceCalculator()
    items = overrides.pop("items", [OrderItem(name="Burger", quantity=2, unit_price=8.99)])
    breakdown, total = calc.price_items(items)
    return NormalOrder(
        order_number=order_number,
        restaurant_id=restaurant_id,
        restaurant_name="Burger Barn",
        customer_name="Jane Smith",
        items=items,
        subtotal=float(breakdown.subtotal),
        tax=float(breakdown.tax),
        processing_fee=float(breakdown.processing_fee),
        order_total=float(total),
        **overrides,
    )


def fresh_store(store: OrderStore, repository: FlakyRepository, reporter: EventReporter) -> OrderStore:
    """A second instance over the same database with an empty cache."""
    return OrderStore(repository, PriceCalculator(), reporter, retry_config=NO_RETRY, sleep=no_sleep)


class TestStoreOrder:

    @pytest.mark.asyncio
    async def test_store_and_read_back_from_database(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        result = await store.store_order(make_order())

        assert result.success and not result.degraded

        lookup = await fresh_store(store, repository, reporter).get_order("ORD-1")
        assert lookup.success
        assert not lookup.from_cache
        assert lookup.order.status == "normal"
        assert lookup.order.subtotal == 17.98
        assert lookup.order.order_total == 21.03
        assert lookup.order.items[0].quantity == 2

    @pytest.mark.asyncio
    async def test_second_read_is_served_from_cache(self, store: OrderStore) -> None:
        await store.store_order(make_order())

        lookup = await store.get_order("ORD-1")
        assert lookup.success and lookup.from_cache

    @pytest.mark.asyncio
    async def test_invalid_order_is_rejected_before_storage(
        self, store: OrderStore, repository: FlakyRepository
    ) -> None:
        result = await store.store_order({"orderNumber": "BAD", "items": []})

        assert not result.success
        assert result.validation_errors
        assert repository.save_calls == 0
        assert not (await store.get_order("BAD", attempt_recovery=False)).success

    @pytest.mark.asyncio
    async def test_camel_case_dict_is_accepted(self, store: OrderStore) -> None:
        order = make_order("ORD-CAMEL").model_dump(mode="json", by_alias=True)
        result = await store.store_order(order)

        assert result.success
        assert result.order.order_number == "ORD-CAMEL"

    @pytest.mark.asyncio
    async def test_database_outage_degrades_to_memory(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        repository.down = True

        result = await store.store_order(make_order())

        assert result.success
        assert result.degraded
        assert "ORD-1" in store.unflushed
        assert len(reporter.active_alerts(AlertType.DEGRADED_STORAGE)) == 1
        assert (await store.get_order("ORD-1")).success

    @pytest.mark.asyncio
    async def test_flush_pending_writes_cached_orders_and_resolves_alert(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        repository.down = True
        await store.store_order(make_order())
        repository.down = False

        assert await store.flush_pending() == 1
        assert store.unflushed == frozenset()
        assert reporter.active_alerts(AlertType.DEGRADED_STORAGE) == []
        assert (await fresh_store(store, repository, reporter).get_order("ORD-1")).success

    @pytest.mark.asyncio
    async def test_retries_before_degrading(
        self, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        from orderflow.services.retry import RetryConfig

        store = OrderStore(
            repository,
            PriceCalculator(),
            reporter,
            retry_config=RetryConfig(max_retries=2, initial_delay=0, jitter=False),
            sleep=no_sleep,
        )
        repository.save_failures = 2

        result = await store.store_order(make_order())

        assert result.success and not result.degraded
        assert repository.save_calls == 3


class TestUpdateAndDelete:

    @pytest.mark.asyncio
    async def test_update_accepts_camel_case_keys(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        await store.store_order(make_order())

        assert await store.update_order("ORD-1", {"paymentStatus": "completed", "notification_sent": True})

        lookup = await fresh_store(store, repository, reporter).get_order("ORD-1")
        assert lookup.order.payment_status == "completed"
        assert lookup.order.notification_sent is True

    @pytest.mark.asyncio
    async def test_update_missing_order_returns_false(self, store: OrderStore) -> None:
        assert not await store.update_order("NOPE", {"paymentStatus": "completed"})

    @pytest.mark.asyncio
    async def test_update_rejects_invalid_values(self, store: OrderStore) -> None:
        await store.store_order(make_order())

        assert not await store.update_order("ORD-1", {"paymentStatus": "refunded"})
        assert (await store.get_order("ORD-1")).order.payment_status == "pending"

    @pytest.mark.asyncio
    async def test_item_edit_reprices_order(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        await store.store_order(make_order())

        assert await store.update_order(
            "ORD-1", {"items": [{"name": "Burger", "quantity": 5, "unitPrice": 8.99}]}
        )

        for lookup in (
            await store.get_order("ORD-1"),
            await fresh_store(store, repository, reporter).get_order("ORD-1"),
        ):
            order = lookup.order
            assert order.items[0].quantity == 5
            assert order.subtotal == 44.95
            assert order.tax == 5.17
            assert order.processing_fee == 1.85
            assert order.order_total == 51.97

    @pytest.mark.asyncio
    async def test_money_edit_matching_items_is_accepted(self, store: OrderStore) -> None:
        await store.store_order(make_order())

        assert await store.update_order("ORD-1", {
            "items": [{"name": "Burger", "quantity": 5, "unitPrice": 8.99}],
            "subtotal": 44.95,
            "orderTotal": 51.97,
        })
        assert (await store.get_order("ORD-1")).order.order_total == 51.97

    @pytest.mark.asyncio
    async def test_money_edit_disagreeing_with_items_is_rejected(self, store: OrderStore) -> None:
        await store.store_order(make_order())

        assert not await store.update_order("ORD-1", {"orderTotal": 5.00})
        assert not await store.update_order("ORD-1", {
            "items": [{"name": "Burger", "quantity": 5, "unitPrice": 8.99}],
            "subtotal": 17.98,
        })

        order = (await store.get_order("ORD-1")).order
        assert order.items[0].quantity == 2
        assert order.order_total == 21.03

    @pytest.mark.asyncio
    async def test_delete_removes_from_cache_and_database(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        await store.store_order(make_order())

        assert await store.delete_order("ORD-1")
        assert not (await store.get_order("ORD-1", attempt_recovery=False)).success
        assert not (await fresh_store(store, repository, reporter).get_order("ORD-1")).success
        assert not await store.delete_order("ORD-1")


class TestListing:

    @pytest.mark.asyncio
    async def test_orders_by_restaurant_merges_cache_and_database(
        self, store: OrderStore, repository: FlakyRepository
    ) -> None:
        await store.store_order(make_order("A", "r1"))
        await store.store_order(make_order("B", "r2"))
        repository.down = True
        await store.store_order(make_order("C", "r1"))
        repository.down = False

        orders = await store.get_orders_by_restaurant("r1")

        assert [o.order_number for o in orders] == ["A", "C"]

    @pytest.mark.asyncio
    async def test_lookup_by_payment_link(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        await store.store_order(make_order(payment_link_id="plink_1", payment_link_url="https://pay/1"))

        assert (await store.get_order_by_payment_link_id("plink_1")).order_number == "ORD-1"

        other = fresh_store(store, repository, reporter)
        assert (await other.get_order_by_payment_link_id("plink_1")).order_number == "ORD-1"
        assert await other.get_order_by_payment_link_id("plink_missing") is None

    @pytest.mark.asyncio
    async def test_pending_payment_count(self, store: OrderStore) -> None:
        await store.store_order(make_order("A"))
        await store.store_order(make_order("B", payment_status="completed"))

        assert store.pending_payment_count() == 1


class TestRecovery:

    @pytest.mark.asyncio
    async def test_unknown_order_without_context_is_not_found(self, store: OrderStore) -> None:
        lookup = await store.get_order("X")

        assert not lookup.success
        assert lookup.order is None
        assert "not found" in lookup.error

    @pytest.mark.asyncio
    async def test_placeholder_for_empty_cart(self, store: OrderStore) -> None:
        lookup = await store.get_order("X", create_if_missing=True, context={"cartItems": []})

        assert lookup.success and lookup.recovered
        order = lookup.order
        assert order.status == "placeholder"
        assert len(order.items) == 1
        assert order.items[0].name == "Placeholder Item"
        assert order.subtotal == 10.00
        assert order.tax == 1.15
        assert order.processing_fee == 0.72
        assert order.order_total == 11.87

    @pytest.mark.asyncio
    async def test_recovery_from_conversation_context(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        context = {
            "selectedRestaurantId": 7,
            "selectedRestaurantName": "Golden Dragon",
            "cartItems": [
                {"name": "Dumplings", "quantity": 2, "price": 6.50},
                {"name": "Tea"},
            ],
            "customerName": "Sam Lee",
        }

        lookup = await store.get_order("R-1", context=context)

        assert lookup.success and lookup.recovered
        order = lookup.order
        assert order.status == "recovered"
        assert order.restaurant_id == "7"
        assert [i.unit_price for i in order.items] == [6.50, 5.00]
        assert [i.quantity for i in order.items] == [2, 1]
        assert order.subtotal == 18.00

        again = await fresh_store(store, repository, reporter).get_order("R-1", context=context)
        assert again.order.status == "recovered"
        assert again.order.order_total == order.order_total
        assert not again.recovered

    @pytest.mark.asyncio
    async def test_recovery_falls_back_to_cart_items(self, store: OrderStore) -> None:
        context = {
            "selectedRestaurantId": "r1",
            "selectedRestaurantName": "Burger Barn",
            "cart": {"items": [{"name": "Burger", "qty": 2, "price": 8.99}]},
        }

        lookup = await store.get_order("R-2", context=context)

        assert lookup.order.status == "recovered"
        assert lookup.order.order_total == 21.03

    @pytest.mark.asyncio
    async def test_incomplete_context_falls_through_to_placeholder(self, store: OrderStore) -> None:
        context = {"cartItems": [{"name": "Soup", "price": 4.0}]}

        assert not (await store.get_order("P-1", context=context)).success

        lookup = await store.get_order("P-1", create_if_missing=True, context=context)
        assert lookup.order.status == "placeholder"
        assert lookup.order.restaurant_id == "unknown"
        assert lookup.order.subtotal == 4.0

    @pytest.mark.asyncio
    async def test_database_outage_never_replaces_existing_order(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        await store.store_order(make_order())
        other = fresh_store(store, repository, reporter)
        repository.down = True

        lookup = await other.get_order("ORD-1", create_if_missing=True, context={"cartItems": []})

        assert lookup.success and lookup.degraded
        assert lookup.order.status == "placeholder"
        assert other.unflushed == frozenset()

        repository.down = False
        assert await other.flush_pending() == 0

        again = await other.get_order("ORD-1")
        assert not again.from_cache
        assert again.order.status == "normal"
        assert again.order.order_total == 21.03
        assert again.order.items[0].name == "Burger"

    @pytest.mark.asyncio
    async def test_outage_recovery_is_returned_but_not_kept(
        self, store: OrderStore, repository: FlakyRepository
    ) -> None:
        repository.down = True
        context = {
            "selectedRestaurantId": "r1",
            "selectedRestaurantName": "Burger Barn",
            "cartItems": [{"name": "Burger", "quantity": 2, "price": 8.99}],
        }

        lookup = await store.get_order("R-9", context=context)

        assert lookup.degraded and lookup.order.status == "recovered"
        assert lookup.order.order_total == 21.03
        assert repository.save_calls == 0

        repository.down = False
        assert not (await store.get_order("R-9", attempt_recovery=False)).success

    @pytest.mark.asyncio
    async def test_outage_without_fallback_is_reported_unavailable(
        self, store: OrderStore, repository: FlakyRepository
    ) -> None:
        repository.down = True

        lookup = await store.get_order("ORD-1")

        assert not lookup.success and lookup.degraded
        assert "unreachable" in lookup.error

    @pytest.mark.asyncio
    async def test_synthesized_order_never_overwrites_normal_row(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter
    ) -> None:
        await store.store_order(make_order())
        placeholder = (await store.get_order("P-9", create_if_missing=True)).order
        stale = placeholder.model_copy(update={"order_number": "ORD-1"})

        kept = await repository.save(stale)
        assert kept.status == "normal"

        other = fresh_store(store, repository, reporter)
        result = await other.store_order(stale)

        assert result.success and not result.degraded
        assert result.order.status == "normal"
        assert (await other.get_order("ORD-1")).order.order_total == 21.03

    @pytest.mark.asyncio
    async def test_recovery_is_idempotent(self, store: OrderStore) -> None:
        first = await store.get_order("P-2", create_if_missing=True)
        second = await store.get_order("P-2", create_if_missing=True)

        assert first.order == second.order
        assert second.from_cache

    @pytest.mark.asyncio
    async def test_variants_price_identically(self, store: OrderStore) -> None:
        lines = [{"name": "Burger", "quantity": 2, "unitPrice": 8.99}]
        await store.store_order(make_order("N-1"))
        recovered = (await store.get_order("R-3", context={
            "selectedRestaurantId": "r1",
            "selectedRestaurantName": "Burger Barn",
            "cartItems": lines,
        })).order
        placeholder = (await store.get_order(
            "P-3", create_if_missing=True, context={"cartItems": lines}
        )).order
        normal = (await store.get_order("N-1")).order

        totals = {(o.subtotal, o.tax, o.processing_fee, o.order_total) for o in (normal, recovered, placeholder)}
        assert totals == {(17.98, 2.07, 0.98, 21.03)}

    @pytest.mark.unit
    def test_normalise_cart_lines_defaults(self) -> None:
        items = normalise_cart_lines([
            {"name": "A", "quantity": 0, "price": -1},
            {"qty": 3, "unitPrice": 2.5},
            "not a line",
        ])

        assert [(i.name, i.quantity, i.unit_price) for i in items] == [
            ("A", 1, 5.00),
            ("Unknown Item", 3, 2.5),
        ]


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_snapshot_round_trip_keeps_unflushed(
        self, store: OrderStore, repository: FlakyRepository, reporter: EventReporter, tmp_path: Any
    ) -> None:
        await store.store_order(make_order("A"))
        repository.down = True
        await store.store_order(make_order("B"))

        assert store.save_snapshot() == 2

        restored = OrderStore(
            repository,
            PriceCalculator(),
            reporter,
            retry_config=NO_RETRY,
            snapshot_path=tmp_path / "data" / "order_cache.json",
            sleep=no_sleep,
        )
        assert restored.load_snapshot() == 2
        assert restored.unflushed == frozenset({"B"})

        repository.down = False
        assert await restored.flush_pending() == 1

    @pytest.mark.unit
    def test_missing_snapshot_loads_nothing(self, tmp_path: Any) -> None:
        store = OrderStore(
            FlakyRepository(None), PriceCalculator(), EventReporter(), snapshot_path=tmp_path / "absent.json"
        )
        assert store.load_snapshot() == 0
