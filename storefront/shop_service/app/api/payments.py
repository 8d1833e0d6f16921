"""HTTP routes for checkout payments."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Path, status

from ..cart import InsufficientStockError
from ..dependencies import get_payment_service
from ..gateway import GatewayError
from ..orders import CheckoutValidationError
from ..payments import PaymentService
from ..providers import PaymentProviderError
from ..schemas import (
    CheckoutRequest,
    OrderResponse,
    PaymentCaptureResponse,
    PayPalOrderResponse,
    StripeIntentResponse,
)
from .orders import serialize_order

router = APIRouter(prefix="/payments", tags=["payments"])


@contextmanager
def payment_errors() -> Iterator[None]:
    """Translate intake exceptions into HTTP errors."""

    try:
        yield
    except CheckoutValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except InsufficientStockError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PaymentProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/stripe/intents", response_model=StripeIntentResponse, status_code=status.HTTP_201_CREATED)
async def create_stripe_intent(
    payload: CheckoutRequest,
    service: PaymentService = Depends(get_payment_service),
) -> StripeIntentResponse:
    with payment_errors():
        result = await service.create_stripe_intent(
            user_id=payload.user_id,
            shipping_address=payload.shipping_address,
            billing_address=payload.billing_address or payload.shipping_address,
            payment_method=payload.payment_method,
            notes=payload.notes,
        )
    return StripeIntentResponse.model_validate(
        {
            "clientSecret": result.intent.client_secret,
            "paymentReference": result.intent.reference,
            "amount": result.amount,
            "currency": result.currency,
        }
    )


@router.post("/paypal/orders", response_model=PayPalOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_paypal_order(
    payload: CheckoutRequest,
    service: PaymentService = Depends(get_payment_service),
) -> PayPalOrderResponse:
    with payment_errors():
        result = await service.create_paypal_order(
            user_id=payload.user_id,
            shipping_address=payload.shipping_address,
            billing_address=payload.billing_address or payload.shipping_address,
            payment_method=payload.payment_method,
            notes=payload.notes,
        )
    return PayPalOrderResponse(id=result.intent.reference, status=result.intent.status, links=list(result.intent.links))


@router.post("/paypal/orders/{paypal_order_id}/capture", response_model=PaymentCaptureResponse)
async def capture_paypal_order(
    paypal_order_id: str = Path(..., min_length=1, max_length=128),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentCaptureResponse:
    with payment_errors():
        capture_status, order = await service.capture_paypal_order(paypal_order_id)
    return PaymentCaptureResponse(
        status=capture_status,
        order=OrderResponse.model_validate(serialize_order(order)) if order is not None else None,
    )
