"""
Price calculator tests.
"""
from decimal import Decimal

import pytest

from orderflow.core.config import Settings
from orderflow.schemas import OrderItem
from orderflow.services.pricing import PriceCalculator, round_cents, to_decimal


class TestPriceCalculator:
    """Money arithmetic shared by every order variant."""

    @pytest.mark.unit
    def test_breakdown_for_two_burgers(self) -> None:
        breakdown = PriceCalculator().compute_breakdown(17.98)

        assert breakdown.subtotal == Decimal("17.98")
        assert breakdown.tax == Decimal("2.07")
        assert breakdown.total == Decimal("20.05")
        assert breakdown.processing_fee == Decimal("0.98")
        assert breakdown.total_with_fees == Decimal("21.03")

    @pytest.mark.unit
    def test_placeholder_subtotal(self) -> None:
        breakdown = PriceCalculator().compute_breakdown(10)

        assert breakdown.tax == Decimal("1.15")
        assert breakdown.total == Decimal("11.15")
        assert breakdown.processing_fee == Decimal("0.72")
        assert breakdown.total_with_fees == Decimal("11.87")

    @pytest.mark.unit
    def test_zero_subtotal_still_charges_fixed_fee(self) -> None:
        breakdown = PriceCalculator().compute_breakdown(0)

        assert breakdown.tax == Decimal("0.00")
        assert breakdown.total == Decimal("0.00")
        assert breakdown.processing_fee == Decimal("0.40")
        assert breakdown.total_with_fees == Decimal("0.40")

    @pytest.mark.unit
    def test_identity_holds_for_many_subtotals(self) -> None:
        calc = PriceCalculator()
        for cents in range(0, 20000, 137):
            subtotal = Decimal(cents) / 100
            b = calc.compute_breakdown(subtotal)
            assert b.total == b.subtotal + b.tax
            assert b.total_with_fees == b.total + b.processing_fee
            for value in (b.subtotal, b.tax, b.processing_fee, b.total, b.total_with_fees):
                assert value == value.quantize(Decimal("0.01"))

    @pytest.mark.unit
    def test_recompute_is_deterministic(self) -> None:
        calc = PriceCalculator()
        assert calc.compute_breakdown(23.45) == calc.compute_breakdown("23.45")

    @pytest.mark.unit
    def test_half_up_rounding(self) -> None:
        assert round_cents("0.125") == Decimal("0.13")
        assert round_cents(2.675) == Decimal("2.68")

    @pytest.mark.unit
    def test_float_conversion_keeps_literal_value(self) -> None:
        assert to_decimal(8.99) == Decimal("8.99")

    @pytest.mark.unit
    def test_item_breakdown_multiplies_quantity(self) -> None:
        calc = PriceCalculator()
        assert calc.compute_item_breakdown(8.99, 2) == calc.compute_breakdown(17.98)

    @pytest.mark.unit
    def test_line_subtotal_accepts_models_and_dicts(self) -> None:
        calc = PriceCalculator()
        items = [
            OrderItem(name="Burger", quantity=2, unit_price=8.99),
            {"name": "Fries", "quantity": 1, "unitPrice": 3.50},
            {"name": "Soda", "quantity": 3, "price": 1.25},
        ]
        assert calc.line_subtotal(items) == Decimal("25.23")

    @pytest.mark.unit
    def test_order_total_follows_fee_policy(self) -> None:
        passing = PriceCalculator(pass_fees_to_customer=True)
        absorbing = PriceCalculator(pass_fees_to_customer=False)
        breakdown = passing.compute_breakdown(17.98)

        assert passing.order_total(breakdown) == Decimal("21.03")
        assert absorbing.order_total(breakdown) == Decimal("20.05")

    @pytest.mark.unit
    def test_from_settings(self) -> None:
        settings = Settings(
            tax_rate=0.1,
            processing_fee_percentage=0.0,
            processing_fee_fixed=0.0,
            pass_fees_to_customer=False,
        )
        breakdown, total = PriceCalculator.from_settings(settings).price_items(
            [{"name": "Pie", "quantity": 1, "unitPrice": 10}]
        )

        assert breakdown.tax == Decimal("1.00")
        assert breakdown.processing_fee == Decimal("0.00")
        assert total == Decimal("11.00")
