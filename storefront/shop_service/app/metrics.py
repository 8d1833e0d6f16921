"""Prometheus metrics for the shop service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter


SHOP_CART_GATEWAY_FAILURES_TOTAL: Final = Counter(
    "shop_cart_gateway_failures_total",
    "Number of cart operations that failed against the store.",
    labelnames=("operation",),
)

SHOP_CART_CLEAR_FAILURES_TOTAL: Final = Counter(
    "shop_cart_clear_failures_total",
    "Number of post-checkout cart clears that failed.",
)

SHOP_ORDERS_CREATED_TOTAL: Final = Counter(
    "shop_orders_created_total",
    "Number of orders written.",
    labelnames=("status",),
)

SHOP_ORDER_STATUS_CHANGED_TOTAL: Final = Counter(
    "shop_order_status_changed_total",
    "Number of order status transitions.",
    labelnames=("status",),
)

SHOP_PAYMENT_CONFIRMATIONS_TOTAL: Final = Counter(
    "shop_payment_confirmations_total",
    "Payment confirmations by provider and outcome.",
    labelnames=("provider", "outcome"),
)

SHOP_WEBHOOK_EVENTS_TOTAL: Final = Counter(
    "shop_webhook_events_total",
    "Webhook deliveries by provider and outcome.",
    labelnames=("provider", "outcome"),
)


def normalise_provider(value: str | None) -> str:
    if not value:
        return "unknown"
    return value.strip().lower() or "unknown"
