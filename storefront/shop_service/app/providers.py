"""Payment processor clients used by the payment intake."""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx
import stripe

logger = logging.getLogger(__name__)

# PayPal tokens are refreshed this many seconds before they expire.
_TOKEN_EXPIRY_MARGIN = 60.0


class PaymentProviderError(RuntimeError):
    """Raised when a payment processor call fails or answers unexpectedly."""


class WebhookSignatureError(ValueError):
    """Raised when a webhook delivery cannot be authenticated."""


@dataclass(frozen=True, slots=True)
class ProviderIntent:
    reference: str
    status: str
    client_secret: str | None = None
    links: tuple[dict[str, Any], ...] = field(default=())


async def _send(client: httpx.AsyncClient, provider: str, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
    try:
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPStatusError as exc:
        logger.warning("%s responded %s for %s %s", provider, exc.response.status_code, method, url)
        msg = f"{provider} request failed with status {exc.response.status_code}"
        raise PaymentProviderError(msg) from exc
    except httpx.HTTPError as exc:
        msg = f"{provider} is unreachable: {exc}"
        raise PaymentProviderError(msg) from exc
    except json.JSONDecodeError as exc:
        msg = f"{provider} returned a non-JSON response"
        raise PaymentProviderError(msg) from exc
    if not isinstance(payload, dict):
        msg = f"{provider} returned an unexpected response"
        raise PaymentProviderError(msg)
    return payload


class _StripeHTTPClient(stripe.HTTPClient):
    """Sends Stripe SDK requests through the service's shared httpx client."""

    name = "httpx"

    def __init__(self, client: httpx.AsyncClient) -> None:
        super().__init__()
        self._client = client

    def request(self, method: str, url: str, headers: Mapping[str, str] | None, post_data: Any = None) -> Any:
        msg = "Stripe requests must use the async client"
        raise NotImplementedError(msg)

    async def request_async(
        self, method: str, url: str, headers: Mapping[str, str] | None, post_data: Any = None
    ) -> tuple[bytes, int, httpx.Headers]:
        try:
            response = await self._client.request(method.upper(), url, headers=headers, content=post_data)
        except httpx.HTTPError as exc:
            msg = f"Stripe is unreachable: {exc}"
            raise stripe.APIConnectionError(msg) from exc
        return response.content, response.status_code, response.headers

    def close(self) -> None:
        return None

    async def close_async(self) -> None:
        return None


class StripeProvider:
    """Creates PaymentIntents and authenticates Stripe webhook deliveries."""

    name = "stripe"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        secret_key: str | None,
        webhook_secret: str | None,
        api_base: str = "https://api.stripe.com",
        tolerance_seconds: int = 300,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance_seconds
        self._stripe: stripe.StripeClient | None = None
        if secret_key:
            self._stripe = stripe.StripeClient(
                secret_key,
                http_client=_StripeHTTPClient(client),
                base_addresses={"api": api_base.rstrip("/")},
                max_network_retries=0,
            )

    async def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: str | None = None,
    ) -> ProviderIntent:
        if self._stripe is None:
            msg = "Stripe is not configured"
            raise PaymentProviderError(msg)

        try:
            intent = await self._stripe.payment_intents.create_async(
                params={
                    "amount": amount_minor,
                    "currency": currency.lower(),
                    "automatic_payment_methods": {"enabled": True},
                    "metadata": dict(metadata),
                },
                options={"idempotency_key": idempotency_key or str(uuid.uuid4())},
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe PaymentIntent creation failed: %s", exc)
            msg = f"Stripe request failed: {exc.user_message or exc}"
            raise PaymentProviderError(msg) from exc
        return ProviderIntent(
            reference=intent.id,
            status=getattr(intent, "status", None) or "unknown",
            client_secret=getattr(intent, "client_secret", None),
        )

    def construct_event(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """Verify the signature of a webhook body and decode it."""

        if not self._webhook_secret:
            msg = "Stripe webhook secret is not configured"
            raise WebhookSignatureError(msg)
        if not signature_header:
            msg = "Missing Stripe-Signature header"
            raise WebhookSignatureError(msg)

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature_header, self._webhook_secret, self._tolerance)
        except UnicodeDecodeError as exc:
            msg = "Stripe webhook body is not valid UTF-8"
            raise WebhookSignatureError(msg) from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc

        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            msg = "Stripe webhook body is not valid JSON"
            raise WebhookSignatureError(msg) from exc
        if not isinstance(event, dict):
            msg = "Stripe webhook body is not an event object"
            raise WebhookSignatureError(msg)
        return event


class PayPalProvider:
    """Orders v2 client with OAuth client-credentials authentication."""

    name = "paypal"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        client_id: str | None,
        client_secret: str | None,
        base_url: str = "https://api-m.sandbox.paypal.com",
        webhook_id: str | None = None,
    ) -> None:
        self._client = client
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._webhook_id = webhook_id
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if not self._client_id or not self._client_secret:
            msg = "PayPal is not configured"
            raise PaymentProviderError(msg)
        if self._token is not None and time.monotonic() < self._token_expires_at:
            return self._token

        payload = await _send(
            self._client,
            "PayPal",
            "POST",
            f"{self._base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
            headers={"Accept": "application/json"},
        )
        token = payload.get("access_token")
        if not token:
            msg = "PayPal did not return an access token"
            raise PaymentProviderError(msg)
        expires_in = float(payload.get("expires_in", 0))
        self._token = token
        self._token_expires_at = time.monotonic() + max(0.0, expires_in - _TOKEN_EXPIRY_MARGIN)
        return token

    async def _headers(self) -> dict[str, str]:
        token = await self._access_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "PayPal-Request-Id": str(uuid.uuid4()),
        }

    async def create_order(self, *, amount: Decimal, currency: str, reference_id: str | None = None) -> ProviderIntent:
        purchase_unit: dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": f"{amount:.2f}"},
        }
        if reference_id:
            purchase_unit["reference_id"] = reference_id
        payload = await _send(
            self._client,
            "PayPal",
            "POST",
            f"{self._base_url}/v2/checkout/orders",
            json={"intent": "CAPTURE", "purchase_units": [purchase_unit]},
            headers=await self._headers(),
        )
        if "id" not in payload:
            msg = "PayPal returned an order without an id"
            raise PaymentProviderError(msg)
        return ProviderIntent(
            reference=payload["id"],
            status=payload.get("status", "UNKNOWN"),
            links=tuple(payload.get("links", [])),
        )

    async def capture_order(self, order_id: str) -> ProviderIntent:
        payload = await _send(
            self._client,
            "PayPal",
            "POST",
            f"{self._base_url}/v2/checkout/orders/{order_id}/capture",
            json={},
            headers=await self._headers(),
        )
        return ProviderIntent(
            reference=payload.get("id", order_id),
            status=payload.get("status", "UNKNOWN"),
            links=tuple(payload.get("links", [])),
        )

    async def verify_webhook(self, headers: Mapping[str, str], event: Mapping[str, Any]) -> None:
        """Authenticate a webhook delivery through PayPal's verification API."""

        if not self._webhook_id:
            msg = "PayPal webhook id is not configured"
            raise WebhookSignatureError(msg)

        body = {
            "auth_algo": headers.get("paypal-auth-algo"),
            "cert_url": headers.get("paypal-cert-url"),
            "transmission_id": headers.get("paypal-transmission-id"),
            "transmission_sig": headers.get("paypal-transmission-sig"),
            "transmission_time": headers.get("paypal-transmission-time"),
            "webhook_id": self._webhook_id,
            "webhook_event": dict(event),
        }
        if not all(body[key] for key in ("auth_algo", "cert_url", "transmission_id", "transmission_sig")):
            msg = "PayPal transmission headers are missing"
            raise WebhookSignatureError(msg)

        payload = await _send(
            self._client,
            "PayPal",
            "POST",
            f"{self._base_url}/v1/notifications/verify-webhook-signature",
            json=body,
            headers=await self._headers(),
        )
        if payload.get("verification_status") != "SUCCESS":
            msg = "PayPal webhook signature verification failed"
            raise WebhookSignatureError(msg)
