"""Cart aggregate: a user's cart lines with write-through persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .gateway import CartGateway, CartLine, GatewayError, InsufficientStockError, ProductView
from .metrics import SHOP_CART_GATEWAY_FAILURES_TOTAL
from .pricing import CheckoutTotals, PricingPolicy

logger = logging.getLogger(__name__)


class CartValidationError(ValueError):
    """Raised when a cart mutation is rejected before touching the store."""


class CartItemNotFoundError(CartValidationError):
    """Raised when a cart line id does not belong to the cart."""


@dataclass(frozen=True, slots=True)
class CartSnapshot:
    user_id: str | None
    items: tuple[CartLine, ...]
    item_count: int
    totals: CheckoutTotals

    @classmethod
    def from_lines(cls, user_id: str | None, lines: list[CartLine], pricing: PricingPolicy) -> CartSnapshot:
        return cls(
            user_id=user_id,
            items=tuple(lines),
            item_count=sum(line.quantity for line in lines),
            totals=pricing.compute(lines),
        )


def _check_option(name: str, value: str | None, allowed: tuple[str, ...]) -> None:
    if allowed and value not in allowed:
        msg = f"Invalid {name} {value!r}; choose one of: {', '.join(allowed)}"
        raise CartValidationError(msg)


class CartAggregate:
    """In-memory view over one user's persisted cart lines.

    Every mutation validates first, then writes through the gateway, then
    updates ``items`` from what the store returned. A gateway failure is
    logged and stored on ``error``; the operation returns ``None`` and
    ``items`` is left as it was.
    """

    def __init__(self, gateway: CartGateway, user_id: str, pricing: PricingPolicy) -> None:
        self.gateway = gateway
        self.user_id = user_id
        self.pricing = pricing
        self.items: list[CartLine] = []
        self.error: str | None = None

    def _record_failure(self, operation: str, message: str, exc: GatewayError) -> None:
        logger.warning("Cart %s failed for user %s: %s", operation, self.user_id, exc)
        SHOP_CART_GATEWAY_FAILURES_TOTAL.labels(operation=operation).inc()
        self.error = message

    def _find(self, line_id: int) -> CartLine | None:
        return next((line for line in self.items if line.id == line_id), None)

    def _store(self, line: CartLine) -> None:
        for index, existing in enumerate(self.items):
            if existing.id == line.id:
                self.items[index] = line
                return
        self.items.append(line)

    async def load(self) -> list[CartLine] | None:
        self.error = None
        try:
            lines = await self.gateway.get_cart_lines(self.user_id)
        except GatewayError as exc:
            self._record_failure("load", "We could not load your cart. Please try again.", exc)
            return None
        self.items = list(lines)
        return self.items

    async def add_item(
        self,
        product: ProductView,
        size: str | None = None,
        color: str | None = None,
        quantity: int = 1,
    ) -> CartLine | None:
        self.error = None
        if quantity <= 0:
            msg = "Quantity must be greater than zero"
            raise CartValidationError(msg)
        if not product.active:
            msg = f"Product {product.id} is not available"
            raise CartValidationError(msg)
        _check_option("size", size, product.sizes)
        _check_option("color", color, product.colors)

        existing = next((line for line in self.items if line.matches(product.id, size, color)), None)
        merged = quantity + (existing.quantity if existing else 0)
        if product.stock <= 0 or merged > product.stock:
            raise InsufficientStockError(product.id, merged, product.stock)

        try:
            line = await self.gateway.add_cart_line(
                user_id=self.user_id,
                product_id=product.id,
                size=size,
                color=color,
                quantity=quantity,
            )
        except GatewayError as exc:
            self._record_failure("add", "We could not add the item to your cart. Please try again.", exc)
            return None
        self._store(line)
        return line

    async def update_quantity(self, line_id: int, quantity: int) -> CartLine | None:
        if quantity <= 0:
            await self.remove_item(line_id)
            return None

        self.error = None
        line = self._find(line_id)
        if line is None:
            msg = f"Cart item {line_id} not found"
            raise CartItemNotFoundError(msg)

        try:
            product = await self.gateway.get_product(line.product.id)
        except GatewayError as exc:
            self._record_failure("update", "We could not update your cart. Please try again.", exc)
            return None
        if product is None:
            msg = f"Product {line.product.id} is no longer available"
            raise CartValidationError(msg)
        if quantity > product.stock:
            raise InsufficientStockError(product.id, quantity, product.stock)

        try:
            updated = await self.gateway.update_cart_line(user_id=self.user_id, line_id=line_id, quantity=quantity)
        except GatewayError as exc:
            self._record_failure("update", "We could not update your cart. Please try again.", exc)
            return None
        if updated is None:
            self.items = [entry for entry in self.items if entry.id != line_id]
            msg = f"Cart item {line_id} not found"
            raise CartItemNotFoundError(msg)
        self._store(updated)
        return updated

    async def remove_item(self, line_id: int) -> None:
        self.error = None
        try:
            await self.gateway.remove_cart_line(user_id=self.user_id, line_id=line_id)
        except GatewayError as exc:
            self._record_failure("remove", "We could not remove the item from your cart. Please try again.", exc)
            return None
        self.items = [line for line in self.items if line.id != line_id]
        return None

    async def clear(self) -> None:
        self.error = None
        try:
            await self.gateway.clear_cart(self.user_id)
        except GatewayError as exc:
            self._record_failure("clear", "We could not clear your cart. Please try again.", exc)
            return None
        self.items = []
        return None

    def get_item_count(self) -> int:
        return sum(line.quantity for line in self.items)

    def is_in_cart(self, product_id: int, size: str | None = None, color: str | None = None) -> bool:
        return any(line.matches(product_id, size, color) for line in self.items)

    def snapshot(self) -> CartSnapshot:
        return CartSnapshot.from_lines(self.user_id, self.items, self.pricing)

    async def merge_from(self, other_user_id: str) -> CartSnapshot | None:
        """Move another user's lines (typically a guest cart) into this cart.

        Merged quantities are capped at the available stock; lines with
        nothing left to add are dropped. The source cart is cleared.
        """

        self.error = None
        if other_user_id == self.user_id:
            return self.snapshot()
        try:
            source_lines = await self.gateway.get_cart_lines(other_user_id)
        except GatewayError as exc:
            self._record_failure("merge", "We could not merge your carts. Please try again.", exc)
            return None

        merged_lines: list[CartLine] = []
        for source in source_lines:
            existing = next(
                (line for line in self.items if line.matches(source.product.id, source.size, source.color)),
                None,
            )
            room = source.product.stock - (existing.quantity if existing else 0)
            quantity = min(source.quantity, room)
            if quantity <= 0:
                logger.info(
                    "Dropping product %s from merged cart of user %s: no stock left",
                    source.product.id,
                    self.user_id,
                )
                continue
            try:
                line = await self.gateway.add_cart_line(
                    user_id=self.user_id,
                    product_id=source.product.id,
                    size=source.size,
                    color=source.color,
                    quantity=quantity,
                )
            except InsufficientStockError:
                logger.info(
                    "Dropping product %s from merged cart of user %s: stock taken concurrently",
                    source.product.id,
                    self.user_id,
                )
                continue
            except GatewayError as exc:
                self._record_failure("merge", "We could not merge your carts. Please try again.", exc)
                return None
            merged_lines.append(line)

        try:
            await self.gateway.clear_cart(other_user_id)
        except GatewayError as exc:
            self._record_failure("merge", "We could not merge your carts. Please try again.", exc)
            return None

        for line in merged_lines:
            self._store(line)
        return self.snapshot()
