"""Webhook intake for payment processors."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..dependencies import get_payment_service
from ..metrics import SHOP_WEBHOOK_EVENTS_TOTAL
from ..payments import PaymentService
from ..providers import WebhookSignatureError
from ..schemas import WebhookAck
from .payments import payment_errors

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _reject(provider: str, exc: WebhookSignatureError) -> HTTPException:
    logger.warning("Rejected %s webhook: %s", provider, exc)
    SHOP_WEBHOOK_EVENTS_TOTAL.labels(provider=provider, outcome="rejected").inc()
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> WebhookAck:
    body = await request.body()
    stripe = request.app.state.stripe_provider
    try:
        event = stripe.construct_event(body, request.headers.get("stripe-signature"))
    except WebhookSignatureError as exc:
        raise _reject("stripe", exc) from exc

    with payment_errors():
        outcome = await service.handle_stripe_event(event)
    return WebhookAck(outcome=outcome)


@router.post("/paypal", response_model=WebhookAck)
async def paypal_webhook(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> WebhookAck:
    body = await request.body()
    try:
        event = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body") from exc
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event payload")

    paypal = request.app.state.paypal_provider
    with payment_errors():
        try:
            await paypal.verify_webhook(request.headers, event)
        except WebhookSignatureError as exc:
            raise _reject("paypal", exc) from exc
        outcome = await service.handle_paypal_event(event)
    return WebhookAck(outcome=outcome)
