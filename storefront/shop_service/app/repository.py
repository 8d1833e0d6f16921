"""Data access helpers for the shop service."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import contains_eager, selectinload

from .gateway import CartLine, DuplicateReferenceError, GatewayError, InsufficientStockError, ProductView
from .models import CartItem, Order, OrderEvent, OrderItem, Payment, PaymentEvent, Product
from .pricing import from_cents


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        msg = f"Failed to {action}"
        raise GatewayError(msg) from exc


def _to_product_view(product: Product) -> ProductView:
    return ProductView(
        id=product.id,
        name=product.name,
        price=from_cents(product.price_cents),
        discount_price=(
            from_cents(product.discount_price_cents) if product.discount_price_cents is not None else None
        ),
        stock=product.stock,
        sizes=tuple(product.sizes or ()),
        colors=tuple(product.colors or ()),
        active=product.active,
        sku=product.sku,
        brand=product.brand,
        description=product.description,
        images=tuple(product.images or ()),
    )


def _to_cart_line(item: CartItem) -> CartLine:
    return CartLine(
        id=item.id,
        user_id=item.user_id,
        product=_to_product_view(item.product),
        quantity=item.quantity,
        size=item.size or None,
        color=item.color or None,
        added_at=item.added_at,
        updated_at=item.updated_at,
    )


class StorefrontRepository:
    """Persistence helpers for carts, orders and payments.

    Implements the cart gateway contract; every SQLAlchemy failure is raised
    as :class:`GatewayError`.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Products

    async def get_product(self, product_id: int) -> ProductView | None:
        with _store_errors("load the product"):
            result = await self.session.execute(
                select(Product).where(Product.id == product_id, Product.active.is_(True))
            )
            product = result.scalar_one_or_none()
        return _to_product_view(product) if product is not None else None

    # Cart lines

    def _line_query(self) -> Select[tuple[CartItem]]:
        return (
            select(CartItem)
            .join(CartItem.product)
            .options(contains_eager(CartItem.product))
            .execution_options(populate_existing=True)
        )

    async def get_cart_lines(self, user_id: str) -> list[CartLine]:
        with _store_errors("load the cart"):
            result = await self.session.execute(
                self._line_query()
                .where(CartItem.user_id == user_id, Product.active.is_(True))
                .order_by(CartItem.added_at, CartItem.id)
            )
            items = list(result.scalars())
        return [_to_cart_line(item) for item in items]

    async def _load_line(self, line_id: int) -> CartLine:
        result = await self.session.execute(self._line_query().where(CartItem.id == line_id))
        return _to_cart_line(result.scalar_one())

    async def _increment_line(
        self, *, user_id: str, product_id: int, size: str, color: str, quantity: int
    ) -> int | None:
        key = (
            CartItem.user_id == user_id,
            CartItem.product_id == product_id,
            CartItem.size == size,
            CartItem.color == color,
        )
        stock = select(Product.stock).where(Product.id == CartItem.product_id).scalar_subquery()
        result = await self.session.execute(
            update(CartItem)
            .where(*key, CartItem.quantity + quantity <= stock)
            .values(quantity=CartItem.quantity + quantity, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        found = await self.session.execute(
            select(CartItem.id, CartItem.quantity, Product.stock).join(CartItem.product).where(*key)
        )
        row = found.one_or_none()
        if row is None:
            return None
        if result.rowcount == 0:
            raise InsufficientStockError(product_id, row.quantity + quantity, row.stock)
        return row.id

    async def add_cart_line(
        self,
        *,
        user_id: str,
        product_id: int,
        size: str | None,
        color: str | None,
        quantity: int,
    ) -> CartLine:
        key = {"user_id": user_id, "product_id": product_id, "size": size or "", "color": color or ""}
        with _store_errors("add the item to the cart"):
            line_id = await self._increment_line(**key, quantity=quantity)
            if line_id is None:
                product = await self.session.get(Product, product_id)
                if product is not None and quantity > product.stock:
                    raise InsufficientStockError(product_id, quantity, product.stock)
                item = CartItem(**key, quantity=quantity)
                try:
                    async with self.session.begin_nested():
                        self.session.add(item)
                except IntegrityError:
                    # A concurrent request inserted the same natural key first.
                    line_id = await self._increment_line(**key, quantity=quantity)
                    if line_id is None:
                        raise
                else:
                    line_id = item.id
            return await self._load_line(line_id)

    async def update_cart_line(self, *, user_id: str, line_id: int, quantity: int) -> CartLine | None:
        with _store_errors("update the cart item"):
            result = await self.session.execute(
                update(CartItem)
                .where(CartItem.id == line_id, CartItem.user_id == user_id)
                .values(quantity=quantity, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return await self._load_line(line_id)

    async def remove_cart_line(self, *, user_id: str, line_id: int) -> None:
        with _store_errors("remove the cart item"):
            await self.session.execute(
                delete(CartItem)
                .where(CartItem.id == line_id, CartItem.user_id == user_id)
                .execution_options(synchronize_session=False)
            )

    async def clear_cart(self, user_id: str) -> None:
        with _store_errors("clear the cart"):
            async with self.session.begin_nested():
                await self.session.execute(
                    delete(CartItem).where(CartItem.user_id == user_id).execution_options(synchronize_session=False)
                )

    # Orders

    async def create_order(
        self,
        *,
        user_id: str | None,
        status: str,
        payment_status: str,
        payment_id: str | None,
        currency: str,
        subtotal_cents: int,
        tax_cents: int,
        shipping_cents: int,
        discount_cents: int,
        total_cents: int,
        shipping_address: dict[str, Any],
        billing_address: dict[str, Any],
        payment_method: dict[str, Any],
        notes: str | None,
        items: list[dict[str, Any]],
    ) -> Order:
        order = Order(
            user_id=user_id,
            status=status,
            payment_status=payment_status,
            payment_id=payment_id,
            currency=currency,
            subtotal_cents=subtotal_cents,
            tax_cents=tax_cents,
            shipping_cents=shipping_cents,
            discount_cents=discount_cents,
            total_cents=total_cents,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            notes=notes,
            items=[OrderItem(**entry) for entry in items],
            events=[],
        )
        try:
            async with self.session.begin_nested():
                self.session.add(order)
        except IntegrityError as exc:
            if payment_id is not None and await self.get_order_by_payment_reference(payment_id) is not None:
                msg = f"An order already exists for payment {payment_id}"
                raise DuplicateReferenceError(msg) from exc
            msg = "Failed to write the order"
            raise GatewayError(msg) from exc
        except SQLAlchemyError as exc:
            msg = "Failed to write the order"
            raise GatewayError(msg) from exc

        with _store_errors("load the order"):
            await self.session.refresh(order, attribute_names=["created_at", "updated_at"])
        return order

    def _order_query(self) -> Select[tuple[Order]]:
        return select(Order).options(selectinload(Order.items), selectinload(Order.events))

    async def get_order(self, order_id: int, *, user_id: str | None = None) -> Order | None:
        query = self._order_query().where(Order.id == order_id)
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        with _store_errors("load the order"):
            result = await self.session.execute(query)
            return result.scalar_one_or_none()

    async def get_order_by_payment_reference(self, reference: str) -> Order | None:
        with _store_errors("load the order"):
            result = await self.session.execute(self._order_query().where(Order.payment_id == reference))
            return result.scalar_one_or_none()

    async def list_orders(
        self,
        *,
        user_id: str | None,
        status: str | None,
        search: str | None,
        date_from: datetime | None,
        date_to: datetime | None,
        limit: int,
        offset: int,
    ) -> tuple[list[Order], int]:
        filters = []
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if status is not None:
            filters.append(Order.status == status)
        if search:
            pattern = f"%{search}%"
            filters.append(or_(Order.tracking_number.ilike(pattern), Order.notes.ilike(pattern)))
        if date_from is not None:
            filters.append(Order.created_at >= date_from)
        if date_to is not None:
            filters.append(Order.created_at <= date_to)

        base = self._order_query()
        count: Select[tuple[int]] = select(func.count(Order.id))
        if filters:
            base = base.where(and_(*filters))
            count = count.where(and_(*filters))
        base = base.order_by(Order.created_at.desc(), Order.id.desc())

        with _store_errors("list orders"):
            total = (await self.session.execute(count)).scalar_one()
            result = await self.session.execute(base.offset(offset).limit(limit))
            orders = list(result.scalars().unique())
        return orders, total

    async def order_stats(self, *, user_id: str, statuses: tuple[str, ...]) -> tuple[int, int]:
        with _store_errors("compute order statistics"):
            result = await self.session.execute(
                select(func.count(Order.id), func.coalesce(func.sum(Order.total_cents), 0)).where(
                    Order.user_id == user_id, Order.status.in_(statuses)
                )
            )
            count, total_cents = result.one()
        return int(count), int(total_cents)

    async def update_order(self, order: Order, **fields: Any) -> Order:
        for name, value in fields.items():
            setattr(order, name, value)
        with _store_errors("update the order"):
            await self.session.flush()
            await self.session.refresh(order, attribute_names=["updated_at"])
        return order

    async def add_order_event(self, order: Order, *, event_type: str, payload: str) -> OrderEvent:
        entry = OrderEvent(order=order, type=event_type, payload=payload)
        self.session.add(entry)
        with _store_errors("record the order event"):
            await self.session.flush()
            await self.session.refresh(entry)
        return entry

    # Payments

    async def create_payment(
        self,
        *,
        provider: str,
        reference: str,
        user_id: str | None,
        amount_cents: int,
        currency: str,
        metadata: dict[str, Any],
        status: str = "pending",
    ) -> Payment:
        payment = Payment(
            provider=provider,
            provider_reference=reference,
            user_id=user_id,
            amount_cents=amount_cents,
            currency=currency,
            status=status,
            metadata_json=metadata,
            events=[],
        )
        self.session.add(payment)
        with _store_errors("record the payment"):
            await self.session.flush()
            await self.session.refresh(payment, attribute_names=["created_at", "updated_at"])
        return payment

    async def get_payment(self, reference: str) -> Payment | None:
        with _store_errors("load the payment"):
            result = await self.session.execute(
                select(Payment).options(selectinload(Payment.events)).where(Payment.provider_reference == reference)
            )
            return result.scalar_one_or_none()

    async def update_payment(self, payment: Payment, **fields: Any) -> Payment:
        for name, value in fields.items():
            setattr(payment, name, value)
        with _store_errors("update the payment"):
            await self.session.flush()
            await self.session.refresh(payment, attribute_names=["updated_at"])
        return payment

    async def add_payment_event(self, payment: Payment, *, event_type: str, payload: str) -> PaymentEvent:
        entry = PaymentEvent(payment=payment, type=event_type, payload=payload)
        self.session.add(entry)
        with _store_errors("record the payment event"):
            await self.session.flush()
            await self.session.refresh(entry)
        return entry
