"""Value types and the persistence contract used by the cart aggregate."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from .pricing import effective_price


class GatewayError(RuntimeError):
    """Raised when the relational store cannot complete a query."""


class DuplicateReferenceError(GatewayError):
    """Raised when an order already exists for a payment reference."""


class InsufficientStockError(ValueError):
    """Raised when a requested quantity exceeds the product's stock."""

    def __init__(self, product_id: int, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(f"Only {available} unit(s) of product {product_id} available, {requested} requested")


@dataclass(frozen=True, slots=True)
class ProductView:
    id: int
    name: str
    price: Decimal
    discount_price: Decimal | None = None
    stock: int = 0
    sizes: tuple[str, ...] = ()
    colors: tuple[str, ...] = ()
    active: bool = True
    sku: str | None = None
    brand: str | None = None
    description: str | None = None
    images: tuple[str, ...] = ()

    @property
    def effective_price(self) -> Decimal:
        return effective_price(self.price, self.discount_price)

    def snapshot(self) -> dict[str, Any]:
        """Return the JSON document frozen into order items."""

        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "brand": self.brand,
            "description": self.description,
            "images": list(self.images),
            "price": str(self.price),
            "discountPrice": str(self.discount_price) if self.discount_price is not None else None,
            "sizes": list(self.sizes),
            "colors": list(self.colors),
        }


@dataclass(frozen=True, slots=True)
class CartLine:
    id: int
    user_id: str
    product: ProductView
    quantity: int
    size: str | None = None
    color: str | None = None
    added_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def unit_price(self) -> Decimal:
        return self.product.effective_price

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def matches(self, product_id: int, size: str | None, color: str | None) -> bool:
        return (
            self.product.id == product_id
            and (self.size or None) == (size or None)
            and (self.color or None) == (color or None)
        )


class CartGateway(Protocol):
    """Store operations the cart aggregate relies on.

    Implementations raise :class:`GatewayError` for any I/O failure.
    ``add_cart_line`` must merge on the natural key (user, product, size,
    colour) atomically at the store level and raise
    :class:`InsufficientStockError` when the merged quantity would exceed the
    product's stock at write time.
    """

    async def get_product(self, product_id: int) -> ProductView | None: ...

    async def get_cart_lines(self, user_id: str) -> list[CartLine]: ...

    async def add_cart_line(
        self,
        *,
        user_id: str,
        product_id: int,
        size: str | None,
        color: str | None,
        quantity: int,
    ) -> CartLine: ...

    async def update_cart_line(self, *, user_id: str, line_id: int, quantity: int) -> CartLine | None: ...

    async def remove_cart_line(self, *, user_id: str, line_id: int) -> None: ...

    async def clear_cart(self, user_id: str) -> None: ...
