"""API routes for cart management."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response, status

from storefront.common import ServiceSettings

from ..cart import CartAggregate, CartItemNotFoundError, CartSnapshot, CartValidationError, InsufficientStockError
from ..dependencies import get_pricing_policy, get_repository, get_settings
from ..gateway import GatewayError
from ..pricing import PricingPolicy
from ..repository import StorefrontRepository
from ..schemas import (
    CartContainsResponse,
    CartCountResponse,
    CartItemCreate,
    CartItemUpdate,
    CartMergeRequest,
    CartResponse,
)

router = APIRouter(prefix="/carts", tags=["carts"])


def _serialize_cart(snapshot: CartSnapshot, currency: str) -> dict[str, object]:
    totals = snapshot.totals
    return {
        "userId": snapshot.user_id,
        "currency": currency,
        "items": [
            {
                "id": line.id,
                "product": {
                    "id": line.product.id,
                    "name": line.product.name,
                    "sku": line.product.sku,
                    "price": line.product.price,
                    "discountPrice": line.product.discount_price,
                    "effectivePrice": line.unit_price,
                    "stock": line.product.stock,
                    "images": list(line.product.images),
                },
                "quantity": line.quantity,
                "size": line.size,
                "color": line.color,
                "lineTotal": line.line_total,
                "addedAt": line.added_at,
                "updatedAt": line.updated_at,
            }
            for line in snapshot.items
        ],
        "itemCount": snapshot.item_count,
        "subtotal": totals.subtotal,
        "tax": totals.tax,
        "shipping": totals.shipping,
        "discount": totals.discount,
        "total": totals.total,
    }


def _raise_for_gateway(cart: CartAggregate) -> None:
    if cart.error is not None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=cart.error)


async def _load_cart(user_id: str, repository: StorefrontRepository, pricing: PricingPolicy) -> CartAggregate:
    cart = CartAggregate(repository, user_id, pricing)
    await cart.load()
    _raise_for_gateway(cart)
    return cart


@router.get("/{user_id}", response_model=CartResponse)
async def get_cart(
    user_id: str = Path(..., min_length=1, max_length=64),
    repository: StorefrontRepository = Depends(get_repository),
    pricing: PricingPolicy = Depends(get_pricing_policy),
    settings: ServiceSettings = Depends(get_settings),
) -> CartResponse:
    cart = await _load_cart(user_id, repository, pricing)
    return CartResponse.model_validate(_serialize_cart(cart.snapshot(), settings.currency))


@router.post("/merge", response_model=CartResponse)
async def merge_carts(
    payload: CartMergeRequest,
    repository: StorefrontRepository = Depends(get_repository),
    pricing: PricingPolicy = Depends(get_pricing_policy),
    settings: ServiceSettings = Depends(get_settings),
) -> CartResponse:
    cart = await _load_cart(payload.to_user_id, repository, pricing)
    snapshot = await cart.merge_from(payload.from_user_id)
    _raise_for_gateway(cart)
    return CartResponse.model_validate(_serialize_cart(snapshot or cart.snapshot(), settings.currency))


@router.post("/{user_id}/items", response_model=CartResponse, status_code=status.HTTP_201_CREATED)
async def add_item(
    payload: CartItemCreate,
    user_id: str = Path(..., min_length=1, max_length=64),
    repository: StorefrontRepository = Depends(get_repository),
    pricing: PricingPolicy = Depends(get_pricing_policy),
    settings: ServiceSettings = Depends(get_settings),
) -> CartResponse:
    cart = await _load_cart(user_id, repository, pricing)
    try:
        product = await repository.get_product(payload.product_id)
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    try:
        await cart.add_item(product, size=payload.size, color=payload.color, quantity=payload.quantity)
    except InsufficientStockError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except CartValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    _raise_for_gateway(cart)
    return CartResponse.model_validate(_serialize_cart(cart.snapshot(), settings.currency))


@router.patch("/{user_id}/items/{line_id}", response_model=CartResponse)
async def update_item(
    payload: CartItemUpdate,
    user_id: str = Path(..., min_length=1, max_length=64),
    line_id: int = Path(..., ge=1),
    repository: StorefrontRepository = Depends(get_repository),
    pricing: PricingPolicy = Depends(get_pricing_policy),
    settings: ServiceSettings = Depends(get_settings),
) -> CartResponse:
    cart = await _load_cart(user_id, repository, pricing)
    try:
        await cart.update_quantity(line_id, payload.quantity)
    except CartItemNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found") from exc
    except InsufficientStockError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except CartValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    _raise_for_gateway(cart)
    return CartResponse.model_validate(_serialize_cart(cart.snapshot(), settings.currency))


@router.delete("/{user_id}/items/{line_id}")
async def remove_item(
    user_id: str = Path(..., min_length=1, max_length=64),
    line_id: int = Path(..., ge=1),
    repository: StorefrontRepository = Depends(get_repository),
    pricing: PricingPolicy = Depends(get_pricing_policy),
) -> Response:
    cart = CartAggregate(repository, user_id, pricing)
    await cart.remove_item(line_id)
    _raise_for_gateway(cart)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{user_id}")
async def clear_cart(
    user_id: str = Path(..., min_length=1, max_length=64),
    repository: StorefrontRepository = Depends(get_repository),
    pricing: PricingPolicy = Depends(get_pricing_policy),
) -> Response:
    cart = CartAggregate(repository, user_id, pricing)
    await cart.clear()
    _raise_for_gateway(cart)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{user_id}/count", response_model=CartCountResponse)
async def get_item_count(
    user_id: str = Path(..., min_length=1, max_length=64),
    repository: StorefrontRepository = Depends(get_repository),
    pricing: PricingPolicy = Depends(get_pricing_policy),
) -> CartCountResponse:
    cart = await _load_cart(user_id, repository, pricing)
    return CartCountResponse.model_validate({"itemCount": cart.get_item_count()})


@router.get("/{user_id}/contains", response_model=CartContainsResponse)
async def contains_item(
    user_id: str = Path(..., min_length=1, max_length=64),
    product_id: int = Query(..., ge=1, alias="productId"),
    size: str | None = Query(default=None),
    color: str | None = Query(default=None),
    repository: StorefrontRepository = Depends(get_repository),
    pricing: PricingPolicy = Depends(get_pricing_policy),
) -> CartContainsResponse:
    cart = await _load_cart(user_id, repository, pricing)
    return CartContainsResponse.model_validate({"inCart": cart.is_in_cart(product_id, size, color)})
