"""HTTP routes for order history and lifecycle."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..dependencies import get_order_service
from ..gateway import GatewayError
from ..models import Order
from ..orders import OrderService, OrderTransitionError
from ..pricing import from_cents
from ..schemas import (
    OrderEventResponse,
    OrderListResponse,
    OrderNotesUpdate,
    OrderResponse,
    OrderStatsResponse,
    OrderTrackingUpdate,
    OrderUpdateStatus,
)

router = APIRouter(prefix="/orders", tags=["orders"])


def serialize_order(order: Order) -> dict[str, object]:
    return {
        "id": order.id,
        "userId": order.user_id,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "paymentId": order.payment_id,
        "currency": order.currency,
        "subtotal": from_cents(order.subtotal_cents),
        "tax": from_cents(order.tax_cents),
        "shipping": from_cents(order.shipping_cents),
        "discount": from_cents(order.discount_cents),
        "total": from_cents(order.total_cents),
        "shippingAddress": order.shipping_address,
        "billingAddress": order.billing_address,
        "paymentMethod": order.payment_method,
        "trackingNumber": order.tracking_number,
        "notes": order.notes,
        "items": [
            {
                "id": item.id,
                "productId": item.product_id,
                "productSnapshot": item.product_snapshot,
                "quantity": item.quantity,
                "size": item.size,
                "color": item.color,
                "unitPrice": from_cents(item.unit_price_cents),
                "totalPrice": from_cents(item.total_price_cents),
            }
            for item in order.items
        ],
        "createdAt": order.created_at,
        "updatedAt": order.updated_at,
    }


async def _get_order_or_404(service: OrderService, order_id: int, user_id: str | None = None) -> Order:
    try:
        order = await service.get_order(order_id, user_id=user_id)
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


@router.get("", response_model=OrderListResponse)
async def list_orders(
    user_id: str = Query(..., min_length=1, max_length=64, alias="userId"),
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=128),
    date_from: datetime | None = Query(default=None, alias="dateFrom"),
    date_to: datetime | None = Query(default=None, alias="dateTo"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    try:
        orders, total = await service.list_orders(
            user_id=user_id,
            status=status_filter,
            search=search,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    items = [OrderResponse.model_validate(serialize_order(order)) for order in orders]
    return OrderListResponse(items=items, total=total)


@router.get("/stats", response_model=OrderStatsResponse)
async def order_stats(
    user_id: str = Query(..., min_length=1, max_length=64, alias="userId"),
    service: OrderService = Depends(get_order_service),
) -> OrderStatsResponse:
    try:
        count, total_cents = await service.order_stats(user_id)
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return OrderStatsResponse.model_validate({"orderCount": count, "totalSpent": from_cents(total_cents)})


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    user_id: str | None = Query(default=None, max_length=64, alias="userId"),
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await _get_order_or_404(service, order_id, user_id)
    return OrderResponse.model_validate(serialize_order(order))


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    payload: OrderUpdateStatus,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await _get_order_or_404(service, order_id)
    try:
        updated = await service.update_status(order, status=payload.status)
    except OrderTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return OrderResponse.model_validate(serialize_order(updated))


@router.patch("/{order_id}/tracking", response_model=OrderResponse)
async def update_tracking_number(
    order_id: int,
    payload: OrderTrackingUpdate,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await _get_order_or_404(service, order_id)
    try:
        updated = await service.set_tracking_number(order, tracking_number=payload.tracking_number)
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return OrderResponse.model_validate(serialize_order(updated))


@router.patch("/{order_id}/notes", response_model=OrderResponse)
async def update_notes(
    order_id: int,
    payload: OrderNotesUpdate,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await _get_order_or_404(service, order_id)
    try:
        updated = await service.update_notes(order, notes=payload.notes)
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return OrderResponse.model_validate(serialize_order(updated))


@router.get("/{order_id}/events", response_model=list[OrderEventResponse])
async def get_order_events(order_id: int, service: OrderService = Depends(get_order_service)):
    order = await _get_order_or_404(service, order_id)
    return [
        OrderEventResponse.model_validate(
            {"type": event.type, "payload": event.payload, "createdAt": event.created_at}
        )
        for event in order.events
    ]
