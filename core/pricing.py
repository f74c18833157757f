"""
Cart pricing with progressive volume discount.

Pure functions: no I/O, no logging. The resulting ``CartDiscount`` is sent
to the gateway as charge metadata and is never recomputed for an in-flight
transaction.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from core.exceptions import CheckoutValidationError

CENT = Decimal("0.01")

# (minimum quantity, discount percent), highest tier first
DISCOUNT_TIERS: Tuple[Tuple[int, int], ...] = ((10, 20), (5, 10), (2, 5))


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize a value to currency precision (2 places, half up)."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def progressive_discount_percentage(quantity: int) -> int:
    """Discount percent for a cart of ``quantity`` items."""
    for minimum, percentage in DISCOUNT_TIERS:
        if quantity >= minimum:
            return percentage
    return 0


class PricedItem(BaseModel):
    """One cart line as priced by the catalog."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    price: Decimal


class CartDiscount(BaseModel):
    """Price breakdown of a cart."""

    model_config = ConfigDict(frozen=True)

    quantity: int
    unit_price_average: Decimal
    percentage: int
    discount_amount: Decimal
    subtotal: Decimal
    total: Decimal

    def as_metadata(self) -> dict:
        """Serialize for the gateway charge metadata."""
        return {
            "quantity": self.quantity,
            "unit_price_average": str(self.unit_price_average),
            "discount_percentage": self.percentage,
            "discount_amount": str(self.discount_amount),
            "subtotal": str(self.subtotal),
            "total": str(self.total),
        }


def price_cart(
    items: Sequence[PricedItem] | Iterable[PricedItem],
    discount_eligible: bool = True,
    minimum_charge: Decimal | None = None,
) -> CartDiscount:
    """
    Compute subtotal, progressive discount and total for a cart.

    Args:
        items: Priced cart lines
        discount_eligible: False when any item opts out of the discount
        minimum_charge: Smallest total the gateway accepts

    Returns:
        CartDiscount: Price breakdown

    Raises:
        CheckoutValidationError: Empty cart, non-positive price, or total
            below ``minimum_charge``
    """
    items = list(items)
    if not items:
        raise CheckoutValidationError("Nenhuma foto selecionada")

    for item in items:
        if item.price <= 0:
            raise CheckoutValidationError(
                "Preço inválido para uma das fotos", item_id=item.item_id
            )

    quantity = len(items)
    subtotal = to_money(sum((item.price for item in items), Decimal("0")))
    percentage = progressive_discount_percentage(quantity) if discount_eligible else 0
    discount_amount = to_money(subtotal * percentage / Decimal(100))
    total = subtotal - discount_amount

    if minimum_charge is not None and total < minimum_charge:
        raise CheckoutValidationError(
            f"Valor mínimo para pagamento é R$ {to_money(minimum_charge)}".replace(".", ","),
            total=str(total),
        )

    return CartDiscount(
        quantity=quantity,
        unit_price_average=to_money(subtotal / quantity),
        percentage=percentage,
        discount_amount=discount_amount,
        subtotal=subtotal,
        total=total,
    )
