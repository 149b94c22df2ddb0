"""
Price Calculator

Deterministic money arithmetic shared by order creation, recovery and
placeholder synthesis. Every intermediate value is rounded to cents before it
feeds the next step, so recomputing a breakdown from the same subtotal always
reproduces the same numbers.

Formulas:
    tax             = round(subtotal * tax_rate, 2)
    subtotal_plus   = round(subtotal + tax, 2)
    processing_fee  = round(subtotal_plus * fee_pct + fee_fixed, 2)
    total           = subtotal_plus
    total_with_fees = round(subtotal_plus + processing_fee, 2)
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Union

from orderflow.core.config import Settings

Number = Union[int, float, str, Decimal]

CENT = Decimal("0.01")

DEFAULT_TAX_RATE = Decimal("0.115")
DEFAULT_FEE_PERCENTAGE = Decimal("0.029")
DEFAULT_FEE_FIXED = Decimal("0.40")


def to_decimal(value: Number) -> Decimal:
    """Convert without inheriting binary float noise (8.99 stays 8.99)."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def round_cents(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    """Complete price breakdown for one subtotal."""
    subtotal: Decimal
    tax: Decimal
    processing_fee: Decimal
    total: Decimal
    total_with_fees: Decimal

    def to_dict(self) -> dict[str, float]:
        """Convert to dictionary for JSON serialization."""
        return {
            "subtotal": float(self.subtotal),
            "tax": float(self.tax),
            "processingFee": float(self.processing_fee),
            "total": float(self.total),
            "totalWithFees": float(self.total_with_fees),
        }


class PriceCalculator:
    """
    Pure price calculator.

    Instances hold only constants, so one calculator can be shared freely.

    Example:
        >>> calc = PriceCalculator()
        >>> calc.compute_breakdown(17.98).total_with_fees
        Decimal('21.03')
    """

    def __init__(
        self,
        tax_rate: Number = DEFAULT_TAX_RATE,
        fee_percentage: Number = DEFAULT_FEE_PERCENTAGE,
        fee_fixed: Number = DEFAULT_FEE_FIXED,
        pass_fees_to_customer: bool = True,
    ):
        self.tax_rate = to_decimal(tax_rate)
        self.fee_percentage = to_decimal(fee_percentage)
        self.fee_fixed = to_decimal(fee_fixed)
        self.pass_fees_to_customer = pass_fees_to_customer

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceCalculator":
        return cls(
            tax_rate=settings.tax_rate,
            fee_percentage=settings.processing_fee_percentage,
            fee_fixed=settings.processing_fee_fixed,
            pass_fees_to_customer=settings.pass_fees_to_customer,
        )

    def compute_breakdown(self, subtotal: Number) -> PriceBreakdown:
        """
        Calculate the price breakdown for an order subtotal.

        Args:
            subtotal: Amount before tax and fees

        Returns:
            PriceBreakdown: Every field rounded to cents
        """
        rounded_subtotal = round_cents(subtotal)
        tax = round_cents(rounded_subtotal * self.tax_rate)
        subtotal_plus_tax = round_cents(rounded_subtotal + tax)
        processing_fee = round_cents(
            subtotal_plus_tax * self.fee_percentage + self.fee_fixed
        )
        total_with_fees = round_cents(subtotal_plus_tax + processing_fee)

        return PriceBreakdown(
            subtotal=rounded_subtotal,
            tax=tax,
            processing_fee=processing_fee,
            total=subtotal_plus_tax,
            total_with_fees=total_with_fees,
        )

    def compute_item_breakdown(self, unit_price: Number, quantity: int) -> PriceBreakdown:
        """Breakdown for a single line item."""
        return self.compute_breakdown(to_decimal(unit_price) * quantity)

    def line_subtotal(self, items: Iterable[Any]) -> Decimal:
        """
        Sum unit_price * quantity over line items, rounded to cents.

        Accepts objects with ``unit_price``/``quantity`` attributes or dicts
        keyed ``unitPrice``/``unit_price``/``price``.
        """
        subtotal = Decimal("0")
        for item in items:
            if isinstance(item, dict):
                price = item.get("unitPrice", item.get("unit_price", item.get("price", 0)))
                quantity = item.get("quantity", 0)
            else:
                price, quantity = item.unit_price, item.quantity
            subtotal += to_decimal(price) * int(quantity)
        return round_cents(subtotal)

    def order_total(self, breakdown: PriceBreakdown) -> Decimal:
        """The canonical orderTotal for a breakdown under the fee policy."""
        return breakdown.total_with_fees if self.pass_fees_to_customer else breakdown.total

    def price_items(self, items: Iterable[Any]) -> tuple[PriceBreakdown, Decimal]:
        """Breakdown and canonical total for a list of line items."""
        breakdown = self.compute_breakdown(self.line_subtotal(items))
        return breakdown, self.order_total(breakdown)
