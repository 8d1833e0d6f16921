import asyncio
import hashlib
import hmac
import json
import time
from contextlib import asynccontextmanager
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from storefront.common import ServiceSettings, dispose_engines
from storefront.shop_service.app.main import create_app
from storefront.shop_service.app.models import Product
from storefront.shop_service.app.repository import StorefrontRepository

SHIPPING_ADDRESS = {
    "fullName": "Ana Torres",
    "line1": "Av. Reforma 100",
    "city": "CDMX",
    "postalCode": "06600",
    "country": "MX",
}
CHECKOUT = {
    "userId": "user-1",
    "shippingAddress": SHIPPING_ADDRESS,
    "paymentMethod": {"type": "credit_card", "brand": "visa", "last4": "4242"},
}


def _run(coro):
    return asyncio.run(coro)


class ProcessorStub:
    """Records processor requests and answers from canned responses."""

    def __init__(self, responses: dict[str, httpx.Response]) -> None:
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.get(request.url.path)
        if response is None:
            return httpx.Response(404, json={"error": "not found"})
        return response

    def last(self, path: str) -> httpx.Request:
        return [request for request in self.requests if request.url.path == path][-1]


def _signed_delivery(reference: str, user_id: str = "user-1") -> tuple[bytes, dict[str, str]]:
    payload = json.dumps(
        {
            "id": f"evt_{reference}",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": reference, "metadata": {"user_id": user_id}}},
        }
    ).encode()
    timestamp = int(time.time())
    digest = hmac.new(b"whsec_test", f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


def _prepare_app(tmp_path, stub: ProcessorStub, **overrides) -> FastAPI:
    db_file = tmp_path / "shop.db"
    options = {
        "app_name": "Shop Service Test",
        "enable_metrics": False,
        "enable_tracing": False,
        "database_url": f"sqlite+aiosqlite:///{db_file}",
        "stripe_secret_key": "sk_test",
        "stripe_webhook_secret": "whsec_test",
        "paypal_client_id": "paypal-client",
        "paypal_client_secret": "paypal-secret",
    }
    options.update(overrides)
    return create_app(ServiceSettings(**options), http_transport=httpx.MockTransport(stub))


async def _seed_product(app: FastAPI, price_cents: int = 15000) -> int:
    product = Product(name="Chaqueta", sku="JKT-1", price_cents=price_cents, stock=5)
    async with app.state.session_factory() as session:
        session.add(product)
        await session.commit()
    return product.id


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield


def test_stripe_intent_then_confirm_creates_single_order(tmp_path) -> None:
    stub = ProcessorStub(
        {
            "/v1/payment_intents": httpx.Response(
                200,
                json={"id": "pi_123", "status": "requires_payment_method", "client_secret": "pi_123_secret_abc"},
            )
        }
    )
    app = _prepare_app(tmp_path, stub)

    async def body() -> None:
        async with lifespan(app):
            product_id = await _seed_product(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post("/carts/user-1/items", json={"productId": product_id, "quantity": 1})

                intent = await client.post("/payments/stripe/intents", json=CHECKOUT)
                assert intent.status_code == 201
                assert intent.json() == {
                    "clientSecret": "pi_123_secret_abc",
                    "paymentReference": "pi_123",
                    "amount": "324.00",
                    "currency": "USD",
                }

                sent = stub.last("/v1/payment_intents")
                assert sent.headers["Authorization"] == "Bearer sk_test"
                assert sent.headers["Idempotency-Key"]
                form = {key: values[0] for key, values in parse_qs(sent.content.decode()).items()}
                assert form["amount"] == "32400"
                assert form["currency"] == "usd"
                assert form["metadata[user_id]"] == "user-1"
                assert form["metadata[line_count]"] == "1"
                assert "metadata[items]" not in form

                payload, headers = _signed_delivery("pi_123")
                delivered = await client.post("/webhooks/stripe", content=payload, headers=headers)
                assert delivered.json()["outcome"] == "processed"
                repeated = await client.post("/webhooks/stripe", content=payload, headers=headers)
                assert repeated.status_code == 200

                listing = (await client.get("/orders", params={"userId": "user-1"})).json()
                assert listing["total"] == 1
                [order] = listing["items"]
                assert order["status"] == "confirmed"
                assert order["paymentStatus"] == "paid"
                assert order["paymentId"] == "pi_123"
                assert order["total"] == "324.00"
                assert order["billingAddress"]["fullName"] == "Ana Torres"

                cart = await client.get("/carts/user-1")
                assert cart.json()["items"] == []

            async with app.state.session_factory() as session:
                payment = await StorefrontRepository(session).get_payment("pi_123")
                assert payment is not None
                assert payment.status == "succeeded"
                assert payment.order_id == order["id"]
                assert [event.type for event in payment.events] == ["created", "succeeded"]

    _run(body())
    _run(dispose_engines())


def test_checkout_rejections(tmp_path) -> None:
    stub = ProcessorStub({"/v1/payment_intents": httpx.Response(500, json={"error": {"message": "boom"}})})
    app = _prepare_app(tmp_path, stub)

    async def body() -> None:
        async with lifespan(app):
            product_id = await _seed_product(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                empty = await client.post("/payments/stripe/intents", json=CHECKOUT)
                assert empty.status_code == 400
                assert stub.requests == []

                await client.post("/carts/user-1/items", json={"productId": product_id, "quantity": 1})
                failed = await client.post("/payments/stripe/intents", json=CHECKOUT)
                assert failed.status_code == 502

                unknown = await client.post("/payments/paypal/orders/PAYPAL-UNKNOWN/capture")
                assert unknown.status_code == 400
                assert not [request for request in stub.requests if request.url.path.endswith("/capture")]

    _run(body())
    _run(dispose_engines())


def test_total_below_minimum_is_rejected(tmp_path) -> None:
    stub = ProcessorStub({})
    app = _prepare_app(
        tmp_path,
        stub,
        tax_rate=Decimal("0"),
        shipping_cost=Decimal("0"),
        free_shipping_threshold=None,
    )

    async def body() -> None:
        async with lifespan(app):
            product_id = await _seed_product(app, price_cents=20)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post("/carts/user-1/items", json={"productId": product_id, "quantity": 1})
                response = await client.post("/payments/stripe/intents", json=CHECKOUT)
                assert response.status_code == 400
                assert "at least" in response.json()["detail"]
                assert stub.requests == []

    _run(body())
    _run(dispose_engines())


def test_paypal_order_and_capture(tmp_path) -> None:
    stub = ProcessorStub(
        {
            "/v1/oauth2/token": httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400}),
            "/v2/checkout/orders": httpx.Response(
                201,
                json={
                    "id": "PAYPAL-1",
                    "status": "CREATED",
                    "links": [{"rel": "approve", "href": "https://paypal.test/approve"}],
                },
            ),
            "/v2/checkout/orders/PAYPAL-1/capture": httpx.Response(201, json={"id": "PAYPAL-1", "status": "COMPLETED"}),
        }
    )
    app = _prepare_app(tmp_path, stub)

    async def body() -> None:
        async with lifespan(app):
            product_id = await _seed_product(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post("/carts/user-1/items", json={"productId": product_id, "quantity": 2})

                created = await client.post(
                    "/payments/paypal/orders",
                    json={**CHECKOUT, "paymentMethod": {"type": "paypal"}},
                )
                assert created.status_code == 201
                assert created.json()["id"] == "PAYPAL-1"
                assert created.json()["links"][0]["rel"] == "approve"

                order_request = json.loads(stub.last("/v2/checkout/orders").content)
                assert order_request["intent"] == "CAPTURE"
                assert order_request["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "498.00"}
                assert stub.last("/v2/checkout/orders").headers["Authorization"] == "Bearer A21-token"

                captured = await client.post("/payments/paypal/orders/PAYPAL-1/capture")
                assert captured.status_code == 200
                result = captured.json()
                assert result["status"] == "COMPLETED"
                assert result["order"]["paymentId"] == "PAYPAL-1"
                assert result["order"]["paymentMethod"]["type"] == "paypal"
                assert result["order"]["total"] == "498.00"

                token_requests = [request for request in stub.requests if request.url.path == "/v1/oauth2/token"]
                assert len(token_requests) == 1

    _run(body())
    _run(dispose_engines())


def test_paypal_capture_not_completed_records_failure(tmp_path) -> None:
    stub = ProcessorStub(
        {
            "/v1/oauth2/token": httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400}),
            "/v2/checkout/orders": httpx.Response(201, json={"id": "PAYPAL-2", "status": "CREATED"}),
            "/v2/checkout/orders/PAYPAL-2/capture": httpx.Response(
                200, json={"id": "PAYPAL-2", "status": "PAYER_ACTION_REQUIRED"}
            ),
        }
    )
    app = _prepare_app(tmp_path, stub)

    async def body() -> None:
        async with lifespan(app):
            product_id = await _seed_product(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post("/carts/user-1/items", json={"productId": product_id, "quantity": 1})
                await client.post("/payments/paypal/orders", json={**CHECKOUT, "paymentMethod": {"type": "paypal"}})

                captured = await client.post("/payments/paypal/orders/PAYPAL-2/capture")
                assert captured.status_code == 200
                assert captured.json() == {"status": "PAYER_ACTION_REQUIRED", "order": None}

                cart = await client.get("/carts/user-1")
                assert cart.json()["itemCount"] == 1

            async with app.state.session_factory() as session:
                payment = await StorefrontRepository(session).get_payment("PAYPAL-2")
                assert payment is not None
                assert payment.status == "failed"
                assert [event.type for event in payment.events] == ["created", "capture", "failed"]

    _run(body())
    _run(dispose_engines())


def test_orders_cannot_be_confirmed_from_client_input(tmp_path) -> None:
    app = _prepare_app(tmp_path, ProcessorStub({}))

    async def body() -> None:
        async with lifespan(app):
            product_id = await _seed_product(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post("/carts/victim/items", json={"productId": product_id, "quantity": 1})
                forged = await client.post(
                    "/payments/confirm",
                    json={
                        "reference": "pi_forged",
                        "metadata": {
                            "user_id": "victim",
                            "shipping_address": json.dumps(SHIPPING_ADDRESS),
                            "payment_method": {"type": "stripe"},
                            "items": [{"productId": product_id, "quantity": 1}],
                        },
                    },
                )
                assert forged.status_code == 404

                payload, headers = _signed_delivery("pi_forged", user_id="victim")
                delivered = await client.post("/webhooks/stripe", content=payload, headers=headers)
                assert delivered.json()["outcome"] == "ignored"

                orders = await client.get("/orders", params={"userId": "victim"})
                assert orders.json()["total"] == 0
                cart = await client.get("/carts/victim")
                assert cart.json()["itemCount"] == 1

    _run(body())
    _run(dispose_engines())
