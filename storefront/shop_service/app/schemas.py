"""Pydantic schemas for the shop service."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

OrderStatusLiteral = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentMethodType = Literal["credit_card", "debit_card", "paypal", "stripe", "mercadopago"]


def _strip_optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class Address(BaseModel):
    full_name: str = Field(min_length=1, max_length=255, alias="fullName")
    line1: str = Field(min_length=1, max_length=255)
    line2: str | None = Field(default=None, max_length=255)
    city: str = Field(min_length=1, max_length=128)
    state: str | None = Field(default=None, max_length=128)
    postal_code: str = Field(min_length=1, max_length=32, alias="postalCode")
    country: str = Field(min_length=2, max_length=64)
    phone: str | None = Field(default=None, max_length=32)
    email: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("full_name", "line1", "city", "postal_code", "country")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "value must be non-empty"
            raise ValueError(msg)
        return cleaned


class PaymentMethodDescriptor(BaseModel):
    type: PaymentMethodType
    brand: str | None = Field(default=None, max_length=32)
    last4: str | None = Field(default=None, pattern=r"^\d{4}$")
    expiry_month: int | None = Field(default=None, ge=1, le=12, alias="expiryMonth")
    expiry_year: int | None = Field(default=None, ge=2000, le=2100, alias="expiryYear")

    model_config = ConfigDict(populate_by_name=True)


# Carts


class CartItemCreate(BaseModel):
    product_id: PositiveInt = Field(alias="productId")
    size: str | None = Field(default=None, max_length=32)
    color: str | None = Field(default=None, max_length=64)
    quantity: int = Field(default=1)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("size", "color")
    @classmethod
    def _clean_option(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class CartItemUpdate(BaseModel):
    quantity: int


class CartProductResponse(BaseModel):
    id: PositiveInt
    name: str
    sku: str | None = None
    price: Decimal
    discount_price: Decimal | None = Field(default=None, alias="discountPrice")
    effective_price: Decimal = Field(alias="effectivePrice")
    stock: int
    images: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class CartLineResponse(BaseModel):
    id: PositiveInt
    product: CartProductResponse
    quantity: PositiveInt
    size: str | None = None
    color: str | None = None
    line_total: Decimal = Field(alias="lineTotal")
    added_at: datetime | None = Field(default=None, alias="addedAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class CartResponse(BaseModel):
    user_id: str = Field(alias="userId")
    currency: str
    items: list[CartLineResponse]
    item_count: int = Field(alias="itemCount")
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal

    model_config = ConfigDict(populate_by_name=True)


class CartCountResponse(BaseModel):
    item_count: int = Field(alias="itemCount")

    model_config = ConfigDict(populate_by_name=True)


class CartContainsResponse(BaseModel):
    in_cart: bool = Field(alias="inCart")

    model_config = ConfigDict(populate_by_name=True)


class CartMergeRequest(BaseModel):
    from_user_id: str = Field(min_length=1, max_length=64, alias="fromUserId")
    to_user_id: str = Field(min_length=1, max_length=64, alias="toUserId")

    model_config = ConfigDict(populate_by_name=True)


# Orders


class OrderItemResponse(BaseModel):
    id: PositiveInt
    product_id: int = Field(alias="productId")
    product_snapshot: dict[str, Any] = Field(alias="productSnapshot")
    quantity: PositiveInt
    size: str | None = None
    color: str | None = None
    unit_price: Decimal = Field(alias="unitPrice")
    total_price: Decimal = Field(alias="totalPrice")

    model_config = ConfigDict(populate_by_name=True)


class OrderResponse(BaseModel):
    id: PositiveInt
    user_id: str | None = Field(default=None, alias="userId")
    status: str
    payment_status: str = Field(alias="paymentStatus")
    payment_id: str | None = Field(default=None, alias="paymentId")
    currency: str
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    shipping_address: Address = Field(alias="shippingAddress")
    billing_address: Address = Field(alias="billingAddress")
    payment_method: PaymentMethodDescriptor = Field(alias="paymentMethod")
    tracking_number: str | None = Field(default=None, alias="trackingNumber")
    notes: str | None = None
    items: list[OrderItemResponse]
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int


class OrderStatsResponse(BaseModel):
    order_count: int = Field(alias="orderCount")
    total_spent: Decimal = Field(alias="totalSpent")

    model_config = ConfigDict(populate_by_name=True)


class OrderUpdateStatus(BaseModel):
    status: OrderStatusLiteral


class OrderTrackingUpdate(BaseModel):
    tracking_number: str = Field(min_length=1, max_length=128, alias="trackingNumber")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("tracking_number")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "value must be non-empty"
            raise ValueError(msg)
        return cleaned


class OrderNotesUpdate(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class OrderEventResponse(BaseModel):
    type: str
    payload: str
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# Payments


class CheckoutRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64, alias="userId")
    shipping_address: Address = Field(alias="shippingAddress")
    billing_address: Address | None = Field(default=None, alias="billingAddress")
    payment_method: PaymentMethodDescriptor = Field(alias="paymentMethod")
    notes: str | None = Field(default=None, max_length=2000)

    model_config = ConfigDict(populate_by_name=True)


class StripeIntentResponse(BaseModel):
    client_secret: str | None = Field(default=None, alias="clientSecret")
    payment_reference: str = Field(alias="paymentReference")
    amount: Decimal
    currency: str

    model_config = ConfigDict(populate_by_name=True)


class PayPalOrderResponse(BaseModel):
    id: str
    status: str
    links: list[dict[str, Any]] = Field(default_factory=list)


class PaymentCaptureResponse(BaseModel):
    status: str
    order: OrderResponse | None = None


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
