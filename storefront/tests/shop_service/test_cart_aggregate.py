from dataclasses import replace
from decimal import Decimal

import pytest

from storefront.shop_service.app.cart import (
    CartAggregate,
    CartItemNotFoundError,
    CartValidationError,
    InsufficientStockError,
)
from storefront.shop_service.app.gateway import ProductView


@pytest.mark.asyncio
async def test_same_key_additions_merge_into_one_line(gateway, pricing, jacket) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)
    await cart.load()

    await cart.add_item(jacket, "M", "Negro", 1)
    line = await cart.add_item(jacket, "M", "Negro", 2)

    assert line is not None
    assert line.quantity == 3
    assert len(cart.items) == 1
    assert cart.get_item_count() == 3
    assert len(gateway.lines) == 1


@pytest.mark.asyncio
async def test_different_options_create_separate_lines(gateway, pricing, jacket) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)

    await cart.add_item(jacket, "M", "Negro")
    await cart.add_item(jacket, "L", "Negro")

    assert len(cart.items) == 2
    assert cart.is_in_cart(jacket.id, "M", "Negro")
    assert cart.is_in_cart(jacket.id, "L", "Negro")
    assert not cart.is_in_cart(jacket.id, "S", "Negro")


@pytest.mark.asyncio
async def test_update_to_zero_is_remove(gateway, pricing, jacket, scarf) -> None:
    removed = CartAggregate(gateway, "user-a", pricing)
    zeroed = CartAggregate(gateway, "user-b", pricing)
    for cart in (removed, zeroed):
        await cart.add_item(jacket, "M", "Negro", 2)
        await cart.add_item(scarf, quantity=1)

    await removed.remove_item(removed.items[0].id)
    assert await zeroed.update_quantity(zeroed.items[0].id, 0) is None

    assert [(line.product.id, line.quantity) for line in removed.items] == [
        (line.product.id, line.quantity) for line in zeroed.items
    ]
    assert removed.snapshot().totals == zeroed.snapshot().totals
    assert zeroed.error is None


@pytest.mark.asyncio
async def test_add_rejects_quantity_above_stock_without_writing(gateway, pricing, jacket) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)
    await cart.add_item(jacket, "M", "Negro", 4)

    with pytest.raises(InsufficientStockError) as excinfo:
        await cart.add_item(jacket, "M", "Negro", 2)

    assert excinfo.value.requested == 6
    assert excinfo.value.available == 5
    assert gateway.calls.count("add_cart_line") == 1
    assert cart.get_item_count() == 4


@pytest.mark.asyncio
async def test_add_rejects_out_of_stock_product(gateway, pricing) -> None:
    sold_out = gateway.add_product(ProductView(id=9, name="Agotado", price=Decimal("10.00"), stock=0))
    cart = CartAggregate(gateway, "user-1", pricing)

    with pytest.raises(InsufficientStockError):
        await cart.add_item(sold_out)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("size", "color", "quantity"),
    [
        ("XXL", "Negro", 1),
        ("M", "Rojo", 1),
        (None, "Negro", 1),
        ("M", "Negro", 0),
        ("M", "Negro", -2),
    ],
)
async def test_add_validates_options_and_quantity(gateway, pricing, jacket, size, color, quantity) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)

    with pytest.raises(CartValidationError):
        await cart.add_item(jacket, size, color, quantity)

    assert "add_cart_line" not in gateway.calls


@pytest.mark.asyncio
async def test_add_rejects_inactive_product(gateway, pricing, jacket) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)

    with pytest.raises(CartValidationError):
        await cart.add_item(replace(jacket, active=False), "M", "Negro")


@pytest.mark.asyncio
async def test_gateway_failure_leaves_state_unchanged(gateway, pricing, jacket, scarf) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)
    await cart.add_item(jacket, "M", "Negro", 1)
    before = list(cart.items)

    gateway.fail_on.add("add_cart_line")
    result = await cart.add_item(scarf, quantity=1)

    assert result is None
    assert cart.items == before
    assert cart.error is not None
    assert "try again" in cart.error

    gateway.fail_on.clear()
    assert await cart.add_item(scarf, quantity=1) is not None
    assert cart.error is None


@pytest.mark.asyncio
async def test_load_failure_keeps_previous_items(gateway, pricing, jacket) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)
    await cart.add_item(jacket, "S", "Blanco", 1)

    gateway.fail_on.add("get_cart_lines")
    assert await cart.load() is None

    assert len(cart.items) == 1
    assert cart.error is not None


@pytest.mark.asyncio
async def test_update_revalidates_live_stock(gateway, pricing, jacket) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)
    line = await cart.add_item(jacket, "M", "Negro", 1)
    assert line is not None

    gateway.add_product(replace(jacket, stock=2))

    with pytest.raises(InsufficientStockError):
        await cart.update_quantity(line.id, 3)
    updated = await cart.update_quantity(line.id, 2)

    assert updated is not None
    assert updated.quantity == 2
    assert cart.get_item_count() == 2


@pytest.mark.asyncio
async def test_update_unknown_line(gateway, pricing) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)

    with pytest.raises(CartItemNotFoundError):
        await cart.update_quantity(404, 1)


@pytest.mark.asyncio
async def test_remove_is_idempotent(gateway, pricing, scarf) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)
    line = await cart.add_item(scarf, quantity=2)
    assert line is not None

    await cart.remove_item(line.id)
    await cart.remove_item(line.id)

    assert cart.items == []
    assert cart.error is None


@pytest.mark.asyncio
async def test_clear_only_touches_own_cart(gateway, pricing, scarf) -> None:
    mine = CartAggregate(gateway, "user-1", pricing)
    theirs = CartAggregate(gateway, "user-2", pricing)
    await mine.add_item(scarf, quantity=1)
    await theirs.add_item(scarf, quantity=1)

    await mine.clear()
    await theirs.load()

    assert mine.items == []
    assert theirs.get_item_count() == 1


@pytest.mark.asyncio
async def test_snapshot_uses_effective_price(gateway, pricing, jacket, scarf) -> None:
    cart = CartAggregate(gateway, "user-1", pricing)
    await cart.add_item(jacket, "M", "Negro", 2)
    await cart.add_item(scarf, quantity=1)

    snapshot = cart.snapshot()

    assert snapshot.item_count == 3
    assert snapshot.totals.subtotal == Decimal("330.00")
    assert snapshot.totals.tax == Decimal("52.80")
    assert snapshot.totals.shipping == Decimal("150.00")
    assert snapshot.totals.total == Decimal("532.80")


@pytest.mark.asyncio
async def test_merge_from_guest_caps_at_stock_and_clears_source(gateway, pricing, jacket, scarf) -> None:
    guest = CartAggregate(gateway, "guest-1", pricing)
    await guest.add_item(jacket, "M", "Negro", 4)
    await guest.add_item(scarf, quantity=2)

    account = CartAggregate(gateway, "user-1", pricing)
    await account.add_item(jacket, "M", "Negro", 3)

    snapshot = await account.merge_from("guest-1")

    assert snapshot is not None
    quantities = {(line.product.id, line.size): line.quantity for line in account.items}
    assert quantities == {(jacket.id, "M"): 5, (scarf.id, None): 2}
    await guest.load()
    assert guest.items == []


@pytest.mark.asyncio
async def test_merge_failure_leaves_target_unchanged(gateway, pricing, scarf) -> None:
    guest = CartAggregate(gateway, "guest-1", pricing)
    await guest.add_item(scarf, quantity=2)
    account = CartAggregate(gateway, "user-1", pricing)

    gateway.fail_on.add("clear_cart")
    assert await account.merge_from("guest-1") is None

    assert account.items == []
    assert account.error is not None
