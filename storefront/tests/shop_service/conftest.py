from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from storefront.shop_service.app.gateway import CartLine, GatewayError, ProductView
from storefront.shop_service.app.pricing import PricingPolicy


class FakeCartGateway:
    """In-memory cart store; operations named in ``fail_on`` raise GatewayError."""

    def __init__(self) -> None:
        self.products: dict[int, ProductView] = {}
        self.lines: dict[int, CartLine] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self._next_id = 1

    def add_product(self, product: ProductView) -> ProductView:
        self.products[product.id] = product
        return product

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise GatewayError(f"{operation} unavailable")

    def _live(self, line: CartLine) -> CartLine:
        return replace(line, product=self.products[line.product.id])

    async def get_product(self, product_id: int) -> ProductView | None:
        self._enter("get_product")
        product = self.products.get(product_id)
        if product is None or not product.active:
            return None
        return product

    async def get_cart_lines(self, user_id: str) -> list[CartLine]:
        self._enter("get_cart_lines")
        return [self._live(line) for line in self.lines.values() if line.user_id == user_id]

    async def add_cart_line(
        self,
        *,
        user_id: str,
        product_id: int,
        size: str | None,
        color: str | None,
        quantity: int,
    ) -> CartLine:
        self._enter("add_cart_line")
        for line_id, line in self.lines.items():
            if line.user_id == user_id and line.matches(product_id, size, color):
                merged = replace(line, quantity=line.quantity + quantity)
                self.lines[line_id] = merged
                return self._live(merged)
        line = CartLine(
            id=self._next_id,
            user_id=user_id,
            product=self.products[product_id],
            quantity=quantity,
            size=size,
            color=color,
        )
        self.lines[line.id] = line
        self._next_id += 1
        return line

    async def update_cart_line(self, *, user_id: str, line_id: int, quantity: int) -> CartLine | None:
        self._enter("update_cart_line")
        line = self.lines.get(line_id)
        if line is None or line.user_id != user_id:
            return None
        updated = replace(line, quantity=quantity)
        self.lines[line_id] = updated
        return self._live(updated)

    async def remove_cart_line(self, *, user_id: str, line_id: int) -> None:
        self._enter("remove_cart_line")
        line = self.lines.get(line_id)
        if line is not None and line.user_id == user_id:
            del self.lines[line_id]

    async def clear_cart(self, user_id: str) -> None:
        self._enter("clear_cart")
        self.lines = {line_id: line for line_id, line in self.lines.items() if line.user_id != user_id}


@pytest.fixture
def gateway() -> FakeCartGateway:
    return FakeCartGateway()


@pytest.fixture
def pricing() -> PricingPolicy:
    return PricingPolicy(
        tax_rate=Decimal("0.16"),
        free_shipping_threshold=Decimal("1000.00"),
        shipping_cost=Decimal("150.00"),
    )


@pytest.fixture
def jacket(gateway: FakeCartGateway) -> ProductView:
    return gateway.add_product(
        ProductView(
            id=1,
            name="Chaqueta",
            price=Decimal("150.00"),
            stock=5,
            sizes=("S", "M", "L"),
            colors=("Negro", "Blanco"),
        )
    )


@pytest.fixture
def scarf(gateway: FakeCartGateway) -> ProductView:
    return gateway.add_product(
        ProductView(id=2, name="Bufanda", price=Decimal("40.00"), discount_price=Decimal("30.00"), stock=10)
    )
