"""Payment confirmation intake for Stripe and PayPal."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator

from storefront.common import get_tracer

from .cart import CartSnapshot
from .gateway import CartLine, DuplicateReferenceError, InsufficientStockError
from .metrics import SHOP_PAYMENT_CONFIRMATIONS_TOTAL, SHOP_WEBHOOK_EVENTS_TOTAL, normalise_provider
from .models import Order, Payment
from .orders import CheckoutValidationError, OrderService
from .pricing import PricingPolicy, to_cents
from .providers import PaymentProviderError, PayPalProvider, ProviderIntent, StripeProvider
from .repository import StorefrontRepository
from .schemas import Address, PaymentMethodDescriptor

logger = logging.getLogger(__name__)

_PAYPAL_CONFIRM_EVENTS = {"CHECKOUT.ORDER.COMPLETED", "PAYMENT.CAPTURE.COMPLETED"}
_PAYPAL_FAILURE_EVENTS = {"PAYMENT.CAPTURE.DENIED"}

ProviderT = TypeVar("ProviderT", StripeProvider, PayPalProvider)


class UnknownPaymentError(CheckoutValidationError):
    """Raised when a confirmation names a payment no checkout started."""


class MetadataItem(BaseModel):
    product_id: PositiveInt = Field(alias="productId")
    quantity: PositiveInt
    size: str | None = None
    color: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class CheckoutMetadata(BaseModel):
    """Checkout details recorded with the payment when the intent is created."""

    user_id: str | None = None
    shipping_address: Address
    billing_address: Address | None = None
    payment_method: PaymentMethodDescriptor
    items: list[MetadataItem] = Field(default_factory=list)
    notes: str | None = None

    @field_validator("shipping_address", "billing_address", "payment_method", "items", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else None
        return value

    @field_validator("user_id", "notes", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def checkout_metadata(
    *,
    user_id: str | None,
    shipping_address: Address,
    billing_address: Address,
    payment_method: PaymentMethodDescriptor,
    lines: tuple[CartLine, ...],
    notes: str | None = None,
) -> dict[str, Any]:
    """Return the checkout document stored with the payment record."""

    return {
        "user_id": user_id,
        "shipping_address": shipping_address.model_dump(mode="json", by_alias=True),
        "billing_address": billing_address.model_dump(mode="json", by_alias=True),
        "payment_method": payment_method.model_dump(mode="json", by_alias=True),
        "items": [
            {"productId": line.product.id, "quantity": line.quantity, "size": line.size, "color": line.color}
            for line in lines
        ],
        "notes": notes,
    }


def processor_metadata(*, user_id: str | None, lines: tuple[CartLine, ...]) -> dict[str, str]:
    """Short string metadata sent to the processor alongside the intent.

    Checkout details stay in the payment record; processors cap metadata
    values at a few hundred characters.
    """

    return {"user_id": user_id or "", "line_count": str(len(lines))}


def _paypal_order_reference(event_type: str, resource: dict[str, Any]) -> str | None:
    if event_type.startswith("CHECKOUT.ORDER."):
        return resource.get("id")
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return related.get("order_id")


@dataclass(frozen=True, slots=True)
class CheckoutIntent:
    provider: str
    intent: ProviderIntent
    amount: Decimal
    currency: str


class PaymentService:
    """Creates processor intents and turns confirmed payments into orders."""

    def __init__(
        self,
        repository: StorefrontRepository,
        *,
        pricing: PricingPolicy,
        currency: str,
        min_amount: Decimal,
        stripe: StripeProvider | None = None,
        paypal: PayPalProvider | None = None,
    ) -> None:
        self.repository = repository
        self.pricing = pricing
        self.currency = currency
        self.min_amount = min_amount
        self.stripe = stripe
        self.paypal = paypal
        self.orders = OrderService(repository, currency=currency)

    @staticmethod
    def _require(provider: ProviderT | None, name: str) -> ProviderT:
        if provider is None:
            msg = f"{name} is not configured"
            raise PaymentProviderError(msg)
        return provider

    async def _checkout_cart(self, user_id: str) -> CartSnapshot:
        lines = await self.repository.get_cart_lines(user_id)
        cart = CartSnapshot.from_lines(user_id, lines, self.pricing)
        if not cart.items:
            msg = "Cart is empty"
            raise CheckoutValidationError(msg)
        for line in cart.items:
            if line.quantity > line.product.stock:
                raise InsufficientStockError(line.product.id, line.quantity, line.product.stock)
        if cart.totals.total < self.min_amount:
            msg = f"Order total must be at least {self.min_amount} {self.currency}"
            raise CheckoutValidationError(msg)
        return cart

    async def _record_intent(
        self, provider: str, intent: ProviderIntent, *, user_id: str, amount: Decimal, metadata: dict[str, Any]
    ) -> Payment:
        payment = await self.repository.create_payment(
            provider=provider,
            reference=intent.reference,
            user_id=user_id,
            amount_cents=to_cents(amount),
            currency=self.currency,
            metadata=metadata,
        )
        await self.repository.add_payment_event(payment, event_type="created", payload=intent.status)
        return payment

    async def create_stripe_intent(
        self,
        *,
        user_id: str,
        shipping_address: Address,
        billing_address: Address,
        payment_method: PaymentMethodDescriptor,
        notes: str | None = None,
    ) -> CheckoutIntent:
        stripe = self._require(self.stripe, "Stripe")
        cart = await self._checkout_cart(user_id)
        amount = cart.totals.total
        intent = await stripe.create_payment_intent(
            amount_minor=to_cents(amount),
            currency=self.currency,
            metadata=processor_metadata(user_id=user_id, lines=cart.items),
        )
        metadata = checkout_metadata(
            user_id=user_id,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            lines=cart.items,
            notes=notes,
        )
        await self._record_intent(stripe.name, intent, user_id=user_id, amount=amount, metadata=metadata)
        return CheckoutIntent(provider=stripe.name, intent=intent, amount=amount, currency=self.currency)

    async def create_paypal_order(
        self,
        *,
        user_id: str,
        shipping_address: Address,
        billing_address: Address,
        payment_method: PaymentMethodDescriptor,
        notes: str | None = None,
    ) -> CheckoutIntent:
        paypal = self._require(self.paypal, "PayPal")
        cart = await self._checkout_cart(user_id)
        amount = cart.totals.total
        intent = await paypal.create_order(amount=amount, currency=self.currency)
        metadata = checkout_metadata(
            user_id=user_id,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            lines=cart.items,
            notes=notes,
        )
        await self._record_intent(paypal.name, intent, user_id=user_id, amount=amount, metadata=metadata)
        return CheckoutIntent(provider=paypal.name, intent=intent, amount=amount, currency=self.currency)

    async def capture_paypal_order(self, order_id: str) -> tuple[str, Order | None]:
        paypal = self._require(self.paypal, "PayPal")
        payment = await self.repository.get_payment(order_id)
        if payment is None or payment.provider != paypal.name:
            msg = f"No checkout was started for PayPal order {order_id}"
            raise UnknownPaymentError(msg)

        result = await paypal.capture_order(order_id)
        await self.repository.add_payment_event(payment, event_type="capture", payload=result.status)
        if result.status == "COMPLETED":
            return result.status, await self.confirm_payment(order_id, provider=paypal.name)
        await self.record_payment_failure(order_id, f"PayPal capture returned {result.status}", provider=paypal.name)
        return result.status, None

    async def _paid_cart(self, checkout: CheckoutMetadata) -> CartSnapshot:
        """Rebuild the lines recorded at intent time against live product data."""

        lines: list[CartLine] = []
        for position, item in enumerate(checkout.items, start=1):
            product = await self.repository.get_product(item.product_id)
            if product is None:
                msg = f"Product {item.product_id} is no longer available"
                raise CheckoutValidationError(msg)
            lines.append(
                CartLine(
                    id=position,
                    user_id=checkout.user_id or "",
                    product=product,
                    quantity=item.quantity,
                    size=item.size,
                    color=item.color,
                )
            )
        return CartSnapshot.from_lines(checkout.user_id, lines, self.pricing)

    async def confirm_payment(
        self, reference: str, metadata: dict[str, Any] | None = None, *, provider: str = "stripe"
    ) -> Order:
        """Create the order for a successful payment exactly once.

        Only payments recorded when their intent was created can be
        confirmed, and the order is built from the lines recorded then.
        ``metadata`` is what the processor reported; a ``user_id`` in it must
        match the recorded one. Repeated confirmations for the same
        reference return the order created by the first one. When the
        recomputed total differs from the amount paid the order is kept
        ``pending`` with payment status ``mismatch`` for review.
        """

        provider = normalise_provider(provider)
        existing = await self.repository.get_order_by_payment_reference(reference)
        if existing is not None:
            SHOP_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=provider, outcome="duplicate").inc()
            logger.info("Payment %s already confirmed as order %s", reference, existing.id)
            return existing

        payment = await self.repository.get_payment(reference)
        if payment is None or payment.provider != provider:
            SHOP_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=provider, outcome="unknown").inc()
            msg = f"No checkout was started for payment {reference}"
            raise UnknownPaymentError(msg)
        reported_user = (metadata or {}).get("user_id") or None
        if reported_user is not None and reported_user != payment.user_id:
            msg = f"Payment {reference} was reported for a different user"
            raise CheckoutValidationError(msg)
        try:
            checkout = CheckoutMetadata.model_validate(payment.metadata_json)
        except ValidationError as exc:
            msg = f"Payment {reference} is missing checkout details"
            raise CheckoutValidationError(msg) from exc

        with get_tracer().start_as_current_span("shop.confirm_payment") as span:
            span.set_attribute("shop.payment.provider", provider)
            cart = await self._paid_cart(checkout)
            matches = to_cents(cart.totals.total) == payment.amount_cents
            try:
                order = await self.orders.create_order(
                    cart,
                    user_id=checkout.user_id,
                    shipping_address=checkout.shipping_address,
                    billing_address=checkout.billing_address or checkout.shipping_address,
                    payment_method=checkout.payment_method,
                    payment_reference=reference,
                    status="confirmed" if matches else "pending",
                    payment_status="paid" if matches else "mismatch",
                    notes=checkout.notes,
                )
            except DuplicateReferenceError:
                winner = await self.repository.get_order_by_payment_reference(reference)
                if winner is None:
                    raise
                SHOP_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=provider, outcome="duplicate").inc()
                logger.info("Payment %s was confirmed concurrently as order %s", reference, winner.id)
                return winner

        outcome = "created"
        if not matches:
            outcome = "mismatch"
            logger.warning(
                "Payment %s captured %s cents but order %s totals %s cents",
                reference,
                payment.amount_cents,
                order.id,
                order.total_cents,
            )
            await self.repository.add_order_event(
                order,
                event_type="payment_mismatch",
                payload=f"paid {payment.amount_cents}, order total {order.total_cents}",
            )
        await self.repository.update_payment(payment, status="succeeded", order_id=order.id)
        await self.repository.add_payment_event(payment, event_type="succeeded", payload=str(order.id))
        SHOP_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=provider, outcome=outcome).inc()
        return order

    async def record_payment_failure(self, reference: str, reason: str, *, provider: str = "stripe") -> Payment | None:
        payment = await self.repository.get_payment(reference)
        if payment is not None:
            await self.repository.update_payment(payment, status="failed")
            await self.repository.add_payment_event(payment, event_type="failed", payload=reason)
        order = await self.repository.get_order_by_payment_reference(reference)
        if order is not None:
            await self.orders.update_payment_status(order, payment_status="failed")
        if payment is None and order is None:
            logger.warning("Received %s payment failure for unknown reference %s", provider, reference)
        else:
            logger.info("Payment %s failed: %s", reference, reason)
        return payment

    async def _confirm_from_webhook(self, reference: str, metadata: dict[str, Any], *, provider: str) -> str:
        try:
            await self.confirm_payment(reference, metadata, provider=provider)
        except UnknownPaymentError as exc:
            logger.warning("Ignoring %s confirmation: %s", provider, exc)
            return "ignored"
        return "processed"

    async def handle_stripe_event(self, event: dict[str, Any]) -> str:
        event_type = event.get("type", "")
        data_object = (event.get("data") or {}).get("object") or {}
        reference = data_object.get("id")

        if event_type == "payment_intent.succeeded" and reference:
            outcome = await self._confirm_from_webhook(reference, data_object.get("metadata") or {}, provider="stripe")
        elif event_type == "payment_intent.payment_failed" and reference:
            error = data_object.get("last_payment_error") or {}
            await self.record_payment_failure(reference, error.get("message") or "payment_failed", provider="stripe")
            outcome = "processed"
        else:
            logger.info("Ignoring Stripe event %s", event_type)
            outcome = "ignored"
        SHOP_WEBHOOK_EVENTS_TOTAL.labels(provider="stripe", outcome=outcome).inc()
        return outcome

    async def handle_paypal_event(self, event: dict[str, Any]) -> str:
        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        reference = _paypal_order_reference(event_type, resource)

        if event_type in _PAYPAL_CONFIRM_EVENTS and reference:
            outcome = await self._confirm_from_webhook(reference, {}, provider="paypal")
        elif event_type in _PAYPAL_FAILURE_EVENTS and reference:
            await self.record_payment_failure(reference, f"PayPal event {event_type}", provider="paypal")
            outcome = "processed"
        else:
            logger.info("Ignoring PayPal event %s", event_type)
            outcome = "ignored"
        SHOP_WEBHOOK_EVENTS_TOTAL.labels(provider="paypal", outcome=outcome).inc()
        return outcome
