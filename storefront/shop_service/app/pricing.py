"""Checkout total calculation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from storefront.common import ServiceSettings

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class PricingError(ValueError):
    """Raised when checkout totals are requested for invalid inputs."""


class PricedLine(Protocol):
    @property
    def unit_price(self) -> Decimal: ...

    @property
    def quantity(self) -> int: ...


@dataclass(frozen=True, slots=True)
class PricedItem:
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True, slots=True)
class CheckoutTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    return int((amount * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal("100")).quantize(CENT)


def effective_price(price: Decimal, discount_price: Decimal | None) -> Decimal:
    """Discount price wins when it is set and positive."""

    if discount_price is not None and discount_price > 0:
        return discount_price
    return price


def compute_totals(
    lines: Iterable[PricedLine],
    *,
    tax_rate: Decimal,
    free_shipping_threshold: Decimal | None,
    shipping_cost: Decimal,
    discount: Decimal = ZERO,
) -> CheckoutTotals:
    """Turn priced lines into subtotal, tax, shipping, discount and total.

    Tax is rounded half-up to cents. Shipping is waived only when a threshold
    is configured and the subtotal reaches it. The total never goes below
    zero.
    """

    if tax_rate < 0:
        msg = "Tax rate must not be negative"
        raise PricingError(msg)
    if shipping_cost < 0:
        msg = "Shipping cost must not be negative"
        raise PricingError(msg)
    if discount < 0:
        msg = "Discount must not be negative"
        raise PricingError(msg)

    subtotal = Decimal("0")
    for line in lines:
        if line.quantity < 0:
            msg = "Line quantity must not be negative"
            raise PricingError(msg)
        if line.unit_price < 0:
            msg = "Unit price must not be negative"
            raise PricingError(msg)
        subtotal += line.unit_price * line.quantity

    subtotal = quantize(subtotal)
    tax = quantize(subtotal * tax_rate)
    if free_shipping_threshold is not None and subtotal >= free_shipping_threshold:
        shipping = ZERO
    else:
        shipping = quantize(shipping_cost)
    discount = quantize(discount)
    total = max(ZERO, subtotal + tax + shipping - discount)
    return CheckoutTotals(subtotal=subtotal, tax=tax, shipping=shipping, discount=discount, total=total)


@dataclass(frozen=True, slots=True)
class PricingPolicy:
    tax_rate: Decimal
    free_shipping_threshold: Decimal | None
    shipping_cost: Decimal

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> PricingPolicy:
        return cls(
            tax_rate=settings.tax_rate,
            free_shipping_threshold=settings.free_shipping_threshold,
            shipping_cost=settings.shipping_cost,
        )

    def compute(self, lines: Iterable[PricedLine], *, discount: Decimal = ZERO) -> CheckoutTotals:
        return compute_totals(
            lines,
            tax_rate=self.tax_rate,
            free_shipping_threshold=self.free_shipping_threshold,
            shipping_cost=self.shipping_cost,
            discount=discount,
        )
