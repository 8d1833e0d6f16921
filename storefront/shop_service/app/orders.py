"""Order snapshot writer and order lifecycle operations."""

from __future__ import annotations

import logging
from datetime import datetime

from storefront.common import get_tracer

from .cart import CartSnapshot
from .gateway import GatewayError
from .metrics import SHOP_CART_CLEAR_FAILURES_TOTAL, SHOP_ORDER_STATUS_CHANGED_TOTAL, SHOP_ORDERS_CREATED_TOTAL
from .models import Order
from .pricing import to_cents
from .repository import StorefrontRepository
from .schemas import Address, PaymentMethodDescriptor

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "mismatch")

# Orders counted as purchases in order statistics.
COMPLETED_STATUSES = ("confirmed", "processing", "shipped", "delivered")

_STATUS_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"processing", "cancelled", "refunded"},
    "processing": {"shipped"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
    "refunded": set(),
}


class CheckoutValidationError(ValueError):
    """Raised when an order cannot be created from the given checkout data."""


class OrderTransitionError(ValueError):
    """Raised for a status change the order lifecycle does not allow."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from {current} to {target}")


def _order_item_rows(cart: CartSnapshot) -> list[dict[str, object]]:
    rows = []
    for line in cart.items:
        unit_price_cents = to_cents(line.unit_price)
        rows.append(
            {
                "product_id": line.product.id,
                "product_snapshot": line.product.snapshot(),
                "quantity": line.quantity,
                "size": line.size,
                "color": line.color,
                "unit_price_cents": unit_price_cents,
                "total_price_cents": unit_price_cents * line.quantity,
            }
        )
    return rows


class OrderService:
    """Writes orders from carts and guards their lifecycle."""

    def __init__(self, repository: StorefrontRepository, *, currency: str = "USD") -> None:
        self.repository = repository
        self.currency = currency

    async def create_order(
        self,
        cart: CartSnapshot,
        *,
        user_id: str | None,
        shipping_address: Address,
        billing_address: Address,
        payment_method: PaymentMethodDescriptor,
        payment_reference: str | None = None,
        status: str = "pending",
        payment_status: str = "pending",
        notes: str | None = None,
    ) -> Order:
        """Persist an order with frozen product snapshots for every cart line.

        The order and its items are written together inside the caller's
        transaction. Clearing the user's cart afterwards is best effort.
        """

        if not cart.items:
            msg = "Cannot create an order from an empty cart"
            raise CheckoutValidationError(msg)
        if status not in ORDER_STATUSES:
            msg = f"Unknown order status {status!r}"
            raise CheckoutValidationError(msg)
        if payment_status not in PAYMENT_STATUSES:
            msg = f"Unknown payment status {payment_status!r}"
            raise CheckoutValidationError(msg)

        totals = cart.totals
        with get_tracer().start_as_current_span("shop.create_order") as span:
            span.set_attribute("shop.order.line_count", len(cart.items))
            order = await self.repository.create_order(
                user_id=user_id,
                status=status,
                payment_status=payment_status,
                payment_id=payment_reference,
                currency=self.currency,
                subtotal_cents=to_cents(totals.subtotal),
                tax_cents=to_cents(totals.tax),
                shipping_cents=to_cents(totals.shipping),
                discount_cents=to_cents(totals.discount),
                total_cents=to_cents(totals.total),
                shipping_address=shipping_address.model_dump(mode="json", by_alias=True),
                billing_address=billing_address.model_dump(mode="json", by_alias=True),
                payment_method=payment_method.model_dump(mode="json", by_alias=True),
                notes=notes,
                items=_order_item_rows(cart),
            )
            await self.repository.add_order_event(order, event_type="created", payload=order.status)
            span.set_attribute("shop.order.id", order.id)
        SHOP_ORDERS_CREATED_TOTAL.labels(status=order.status).inc()
        logger.info("Created order %s for user %s (total %s)", order.id, user_id, totals.total)

        if user_id is not None:
            try:
                await self.repository.clear_cart(user_id)
            except GatewayError as exc:
                SHOP_CART_CLEAR_FAILURES_TOTAL.inc()
                logger.warning("Order %s created but clearing the cart of user %s failed: %s", order.id, user_id, exc)
        return order

    async def update_status(self, order: Order, *, status: str) -> Order:
        current = order.status
        if status not in _STATUS_TRANSITIONS.get(current, set()):
            raise OrderTransitionError(current, status)

        fields: dict[str, object] = {"status": status}
        if status == "refunded":
            fields["payment_status"] = "refunded"
        updated = await self.repository.update_order(order, **fields)
        await self.repository.add_order_event(updated, event_type="status_changed", payload=status)
        if status == "refunded":
            await self.repository.add_order_event(updated, event_type="payment_status_changed", payload="refunded")
        SHOP_ORDER_STATUS_CHANGED_TOTAL.labels(status=status).inc()
        return updated

    async def update_payment_status(self, order: Order, *, payment_status: str) -> Order:
        if payment_status not in PAYMENT_STATUSES:
            msg = f"Unknown payment status {payment_status!r}"
            raise ValueError(msg)
        if order.payment_status == payment_status:
            return order
        updated = await self.repository.update_order(order, payment_status=payment_status)
        await self.repository.add_order_event(updated, event_type="payment_status_changed", payload=payment_status)
        return updated

    async def set_tracking_number(self, order: Order, *, tracking_number: str) -> Order:
        updated = await self.repository.update_order(order, tracking_number=tracking_number)
        await self.repository.add_order_event(updated, event_type="tracking_updated", payload=tracking_number)
        return updated

    async def update_notes(self, order: Order, *, notes: str | None) -> Order:
        updated = await self.repository.update_order(order, notes=notes)
        await self.repository.add_order_event(updated, event_type="notes_updated", payload=notes or "")
        return updated

    async def get_order(self, order_id: int, *, user_id: str | None = None) -> Order | None:
        return await self.repository.get_order(order_id, user_id=user_id)

    async def list_orders(
        self,
        *,
        user_id: str | None,
        status: str | None = None,
        search: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        return await self.repository.list_orders(
            user_id=user_id,
            status=status,
            search=search.strip() if search else None,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )

    async def order_stats(self, user_id: str) -> tuple[int, int]:
        """Return (order count, total spent in cents) over completed orders."""

        return await self.repository.order_stats(user_id=user_id, statuses=COMPLETED_STATUSES)
