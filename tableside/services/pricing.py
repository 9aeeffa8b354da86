"""
Pricing Calculator

Turns (product, quantity) pairs into line subtotals, order subtotal, service
fee, delivery fee and total.

Rounding policy: every money value is a Decimal quantized to cents with
ROUND_HALF_UP. Line subtotals are exact (price x quantity); only the service
fee can produce fractional cents and is rounded once, so
total == subtotal + delivery_fee + service_fee always holds exactly.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping, Optional, Sequence

from tableside.exceptions import NotFoundError, ValidationError
from tableside.services.catalog import ProductSnapshot

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce a number to a cent-precision Decimal."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineRequest:
    """A requested line before pricing."""
    product_id: str
    quantity: int
    note: Optional[str] = None


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    line_subtotal: Decimal
    note: Optional[str] = None


@dataclass(frozen=True)
class PriceBreakdown:
    lines: list[PricedLine] = field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    service_fee: Decimal = Decimal("0.00")
    delivery_fee: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")


class PricingCalculator:
    """
    Stateless price computation.

    Args:
        service_fee_rate: Fraction of the subtotal charged as service fee
    """

    def __init__(self, service_fee_rate: Decimal = Decimal("0.10")):
        self.service_fee_rate = Decimal(service_fee_rate)

    def service_fee(self, subtotal: Decimal) -> Decimal:
        return to_money(subtotal * self.service_fee_rate)

    def validate(self, lines: Sequence[LineRequest], delivery_fee: Decimal = Decimal("0")) -> None:
        """
        Reject requests that cannot be priced before any product is looked up.

        Raises:
            ValidationError: No lines, a quantity below 1, or a negative fee
        """
        if not lines:
            raise ValidationError("An order needs at least one line")
        for line in lines:
            if line.quantity < 1:
                raise ValidationError(
                    f"Quantity for product '{line.product_id}' must be at least 1"
                )
        if to_money(delivery_fee) < 0:
            raise ValidationError("Delivery fee cannot be negative")

    def price(
        self,
        lines: Sequence[LineRequest],
        products: Mapping[str, ProductSnapshot],
        delivery_fee: Decimal = Decimal("0"),
    ) -> PriceBreakdown:
        """
        Price a set of lines against a product snapshot lookup.

        Raises:
            ValidationError: See validate()
            NotFoundError: A line references a product missing from the lookup
        """
        self.validate(lines, delivery_fee)
        delivery_fee = to_money(delivery_fee)

        priced: list[PricedLine] = []
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                raise NotFoundError("Product", line.product_id)

            unit_price = to_money(product.unit_price)
            priced.append(
                PricedLine(
                    product_id=product.id,
                    product_name=product.name,
                    unit_price=unit_price,
                    quantity=line.quantity,
                    line_subtotal=unit_price * line.quantity,
                    note=line.note,
                )
            )

        subtotal = sum((p.line_subtotal for p in priced), Decimal("0.00"))
        service_fee = self.service_fee(subtotal)

        return PriceBreakdown(
            lines=priced,
            subtotal=subtotal,
            service_fee=service_fee,
            delivery_fee=delivery_fee,
            total=subtotal + delivery_fee + service_fee,
        )

