import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import create_schema, dispose_engines, get_session_factory, lifespan_session
from storefront.shop_service.app.cart import CartAggregate
from storefront.shop_service.app.gateway import GatewayError
from storefront.shop_service.app.models import Base, Order, Product
from storefront.shop_service.app.orders import CheckoutValidationError, OrderService, OrderTransitionError
from storefront.shop_service.app.payments import PaymentService, checkout_metadata
from storefront.shop_service.app.pricing import PricingPolicy
from storefront.shop_service.app.repository import StorefrontRepository
from storefront.shop_service.app.schemas import Address, PaymentMethodDescriptor

ADDRESS = Address.model_validate(
    {
        "fullName": "Ana Torres",
        "line1": "Av. Reforma 100",
        "city": "CDMX",
        "postalCode": "06600",
        "country": "MX",
    }
)
CARD = PaymentMethodDescriptor.model_validate({"type": "credit_card", "brand": "visa", "last4": "4242"})
PRICING = PricingPolicy(
    tax_rate=Decimal("0.16"),
    free_shipping_threshold=Decimal("1000.00"),
    shipping_cost=Decimal("150.00"),
)


def _run(coro):
    return asyncio.run(coro)


async def _prepare(tmp_path) -> tuple[async_sessionmaker[AsyncSession], int]:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"
    await create_schema(database_url, Base.metadata)
    session_factory = get_session_factory(database_url)
    jacket = Product(
        name="Chaqueta",
        sku="JKT-1",
        price_cents=15000,
        stock=5,
        sizes=["S", "M", "L"],
        colors=["Negro", "Blanco"],
    )
    async with lifespan_session(session_factory) as session:
        session.add(jacket)
    return session_factory, jacket.id


async def _fill_cart(repository: StorefrontRepository, user_id: str, product_id: int, quantity: int) -> CartAggregate:
    cart = CartAggregate(repository, user_id, PRICING)
    await cart.load()
    product = await repository.get_product(product_id)
    assert product is not None
    await cart.add_item(product, "M", "Negro", quantity)
    return cart


async def _place_order(session_factory, user_id: str, product_id: int, quantity: int = 1, **kwargs) -> int:
    async with lifespan_session(session_factory) as session:
        repository = StorefrontRepository(session)
        cart = await _fill_cart(repository, user_id, product_id, quantity)
        order = await OrderService(repository).create_order(
            cart.snapshot(),
            user_id=user_id,
            shipping_address=ADDRESS,
            billing_address=ADDRESS,
            payment_method=CARD,
            **kwargs,
        )
        return order.id


def test_order_items_freeze_prices_and_cart_is_cleared(tmp_path) -> None:
    async def body() -> None:
        session_factory, product_id = await _prepare(tmp_path)
        order_id = await _place_order(session_factory, "user-1", product_id, quantity=2)

        async with lifespan_session(session_factory) as session:
            await session.execute(update(Product).where(Product.id == product_id).values(price_cents=20000))

        async with lifespan_session(session_factory) as session:
            repository = StorefrontRepository(session)
            order = await repository.get_order(order_id, user_id="user-1")
            assert order is not None
            assert order.status == "pending"
            assert order.payment_status == "pending"
            assert (order.subtotal_cents, order.tax_cents, order.shipping_cents) == (30000, 4800, 15000)
            assert order.total_cents == 49800
            assert order.shipping_address["fullName"] == "Ana Torres"
            assert order.payment_method["last4"] == "4242"

            [item] = order.items
            assert item.product_id == product_id
            assert item.unit_price_cents == 15000
            assert item.total_price_cents == 30000
            assert (item.size, item.color) == ("M", "Negro")
            assert item.product_snapshot["name"] == "Chaqueta"
            assert item.product_snapshot["price"] == "150.00"
            assert [event.type for event in order.events] == ["created"]

            assert await repository.get_cart_lines("user-1") == []
            assert await repository.get_order(order_id, user_id="someone-else") is None

    _run(body())
    _run(dispose_engines())


def test_empty_cart_creates_no_order(tmp_path) -> None:
    async def body() -> None:
        session_factory, _ = await _prepare(tmp_path)
        async with lifespan_session(session_factory) as session:
            repository = StorefrontRepository(session)
            cart = CartAggregate(repository, "user-1", PRICING)
            await cart.load()

            with pytest.raises(CheckoutValidationError):
                await OrderService(repository).create_order(
                    cart.snapshot(),
                    user_id="user-1",
                    shipping_address=ADDRESS,
                    billing_address=ADDRESS,
                    payment_method=CARD,
                )

            orders, total = await repository.list_orders(
                user_id=None, status=None, search=None, date_from=None, date_to=None, limit=10, offset=0
            )
            assert orders == []
            assert total == 0

    _run(body())
    _run(dispose_engines())


def test_cart_clear_failure_keeps_order(tmp_path, monkeypatch) -> None:
    async def failing_clear(user_id: str) -> None:
        raise GatewayError("clear unavailable")

    async def body() -> None:
        session_factory, product_id = await _prepare(tmp_path)
        async with lifespan_session(session_factory) as session:
            repository = StorefrontRepository(session)
            cart = await _fill_cart(repository, "user-1", product_id, 1)
            monkeypatch.setattr(repository, "clear_cart", failing_clear)

            order = await OrderService(repository).create_order(
                cart.snapshot(),
                user_id="user-1",
                shipping_address=ADDRESS,
                billing_address=ADDRESS,
                payment_method=CARD,
            )
            order_id = order.id

        async with lifespan_session(session_factory) as session:
            repository = StorefrontRepository(session)
            assert await repository.get_order(order_id) is not None
            lines = await repository.get_cart_lines("user-1")
            assert [line.quantity for line in lines] == [1]

    _run(body())
    _run(dispose_engines())


def test_status_transitions(tmp_path) -> None:
    async def body() -> None:
        session_factory, product_id = await _prepare(tmp_path)
        order_id = await _place_order(session_factory, "user-1", product_id)

        async with lifespan_session(session_factory) as session:
            service = OrderService(StorefrontRepository(session))
            order = await service.get_order(order_id)
            assert order is not None

            with pytest.raises(OrderTransitionError):
                await service.update_status(order, status="shipped")

            order = await service.update_status(order, status="confirmed")
            order = await service.update_status(order, status="refunded")
            assert order.status == "refunded"
            assert order.payment_status == "refunded"

            with pytest.raises(OrderTransitionError) as excinfo:
                await service.update_status(order, status="cancelled")
            assert excinfo.value.current == "refunded"

        async with lifespan_session(session_factory) as session:
            order = await OrderService(StorefrontRepository(session)).get_order(order_id)
            assert order is not None
            assert [(event.type, event.payload) for event in order.events] == [
                ("created", "pending"),
                ("status_changed", "confirmed"),
                ("status_changed", "refunded"),
                ("payment_status_changed", "refunded"),
            ]

    _run(body())
    _run(dispose_engines())


def test_tracking_notes_listing_and_stats(tmp_path) -> None:
    async def body() -> None:
        session_factory, product_id = await _prepare(tmp_path)
        first = await _place_order(session_factory, "user-1", product_id, quantity=1)
        second = await _place_order(session_factory, "user-1", product_id, quantity=2, notes="Dejar en recepción")
        await _place_order(session_factory, "user-2", product_id, quantity=1)

        async with lifespan_session(session_factory) as session:
            service = OrderService(StorefrontRepository(session))
            order = await service.get_order(first)
            assert order is not None
            await service.set_tracking_number(order, tracking_number="TRK-123")
            await service.update_status(order, status="confirmed")
            other = await service.get_order(second)
            assert other is not None
            await service.update_notes(other, notes="Entregar por la tarde")

        async with lifespan_session(session_factory) as session:
            service = OrderService(StorefrontRepository(session))

            orders, total = await service.list_orders(user_id="user-1")
            assert total == 2
            assert {order.id for order in orders} == {first, second}

            by_tracking, _ = await service.list_orders(user_id="user-1", search="trk-1")
            assert [order.id for order in by_tracking] == [first]
            by_notes, _ = await service.list_orders(user_id="user-1", search="tarde")
            assert [order.id for order in by_notes] == [second]

            confirmed, confirmed_total = await service.list_orders(user_id="user-1", status="confirmed")
            assert [order.id for order in confirmed] == [first]
            assert confirmed_total == 1

            page, page_total = await service.list_orders(user_id="user-1", limit=1, offset=1)
            assert len(page) == 1
            assert page_total == 2

            count, total_cents = await service.order_stats("user-1")
            assert count == 1
            assert total_cents == 15000 + 2400 + 15000

    _run(body())
    _run(dispose_engines())


def test_confirmation_losing_the_insert_race_returns_the_first_order(tmp_path, monkeypatch) -> None:
    async def body() -> None:
        session_factory, product_id = await _prepare(tmp_path)
        async with lifespan_session(session_factory) as session:
            repository = StorefrontRepository(session)
            cart = await _fill_cart(repository, "user-1", product_id, 1)
            payment = await repository.create_payment(
                provider="stripe",
                reference="pi_race",
                user_id="user-1",
                amount_cents=32400,
                currency="USD",
                metadata=checkout_metadata(
                    user_id="user-1",
                    shipping_address=ADDRESS,
                    billing_address=ADDRESS,
                    payment_method=CARD,
                    lines=tuple(cart.items),
                ),
            )
            assert payment.status == "pending"

        def payment_service(repository: StorefrontRepository) -> PaymentService:
            return PaymentService(repository, pricing=PRICING, currency="USD", min_amount=Decimal("10.00"))

        async with lifespan_session(session_factory) as session:
            winner = await payment_service(StorefrontRepository(session)).confirm_payment("pi_race", provider="stripe")
            winner_id = winner.id

        async with lifespan_session(session_factory) as session:
            repository = StorefrontRepository(session)
            lookup = repository.get_order_by_payment_reference
            calls = 0

            async def stale_lookup(reference: str) -> Order | None:
                nonlocal calls
                calls += 1
                if calls == 1:
                    return None
                return await lookup(reference)

            monkeypatch.setattr(repository, "get_order_by_payment_reference", stale_lookup)
            loser = await payment_service(repository).confirm_payment("pi_race", provider="stripe")
            assert loser.id == winner_id
            assert calls >= 2

        async with lifespan_session(session_factory) as session:
            count = await session.scalar(select(func.count(Order.id)).where(Order.payment_id == "pi_race"))
            assert count == 1

    _run(body())
    _run(dispose_engines())
