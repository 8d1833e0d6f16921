#!/usr/bin/env python3
"""Replay one signed Stripe webhook many times against a running shop service.

The script seeds a cart for a synthetic user, starts a Stripe checkout for it
and then delivers the same ``payment_intent.succeeded`` event ``--count``
times (optionally in parallel) to ``/webhooks/stripe``. Afterwards it lists
the user's orders and reports how many carry the payment reference; a healthy
service reports exactly one and counts the remaining deliveries in
``shop_payment_confirmations_total{outcome="duplicate"}``.

The service must run with Stripe test keys; the webhook secret given here has
to match its ``SERVICE_STRIPE_WEBHOOK_SECRET``.
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import hmac
import json
import os
import time
import uuid

import httpx
from prometheus_client.parser import text_string_to_metric_families

CONFIRMATION_METRIC = "shop_payment_confirmations_total"

_ADDRESS = {
    "fullName": "Chaos Shopper",
    "line1": "1 Replay Street",
    "city": "Springfield",
    "postalCode": "00001",
    "country": "US",
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a signed Stripe webhook and check confirmation stays idempotent")
    parser.add_argument(
        "--base-url",
        default=os.getenv("SHOP_BASE_URL", "http://127.0.0.1:8000"),
        help="Base URL for the shop service (default: %(default)s or SHOP_BASE_URL)",
    )
    parser.add_argument(
        "--webhook-secret",
        default=os.getenv("SERVICE_STRIPE_WEBHOOK_SECRET"),
        help="Stripe webhook signing secret configured on the service (default: SERVICE_STRIPE_WEBHOOK_SECRET)",
    )
    parser.add_argument(
        "--product-id",
        type=int,
        default=int(os.getenv("SHOP_CHAOS_PRODUCT_ID", "1")),
        help="Active product with stock used to seed the cart (default: %(default)s or SHOP_CHAOS_PRODUCT_ID)",
    )
    parser.add_argument("--user-id", default=None, help="User id for the checkout (default: a random chaos-* id)")
    parser.add_argument("--count", type=int, default=5, help="Identical deliveries to send (default: %(default)s)")
    parser.add_argument("--parallel", action="store_true", help="Send all deliveries concurrently")
    parser.add_argument(
        "--metrics-path",
        default=os.getenv("SHOP_METRICS_PATH", "/metrics"),
        help="Path to Prometheus metrics endpoint (default: %(default)s or SHOP_METRICS_PATH)",
    )
    parser.add_argument("--request-timeout", type=float, default=10.0, help="HTTP timeout in seconds")
    parser.add_argument("--skip-metrics", action="store_true", help="Do not compare confirmation counters")
    return parser.parse_args()


def confirmations(text: str, outcome: str) -> float:
    """Return the Stripe confirmation counter for ``outcome`` from an exposition."""

    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            if (
                sample.name == CONFIRMATION_METRIC
                and sample.labels.get("provider") == "stripe"
                and sample.labels.get("outcome") == outcome
            ):
                return sample.value
    return 0.0


async def scrape(client: httpx.AsyncClient, path: str) -> str:
    response = await client.get(path)
    response.raise_for_status()
    return response.text


def signed_event(reference: str, user_id: str, secret: str) -> tuple[bytes, dict[str, str]]:
    event = {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": reference, "object": "payment_intent", "metadata": {"user_id": user_id}}},
    }
    body = json.dumps(event, separators=(",", ":")).encode()
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    headers = {"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={digest}"}
    return body, headers


async def start_checkout(client: httpx.AsyncClient, user_id: str, product_id: int) -> str:
    seed = await client.post(f"/carts/{user_id}/items", json={"productId": product_id, "quantity": 1})
    if seed.status_code != 201:
        raise RuntimeError(f"Failed to seed cart: status={seed.status_code} body={seed.text}")
    intent = await client.post(
        "/payments/stripe/intents",
        json={"userId": user_id, "shippingAddress": _ADDRESS, "paymentMethod": {"type": "stripe"}},
    )
    if intent.status_code != 201:
        raise RuntimeError(f"Failed to start checkout: status={intent.status_code} body={intent.text}")
    return intent.json()["paymentReference"]


async def run(args: argparse.Namespace) -> dict[str, object]:
    if not args.webhook_secret:
        raise RuntimeError("A Stripe webhook secret is required (--webhook-secret or SERVICE_STRIPE_WEBHOOK_SECRET)")

    user_id = args.user_id or f"chaos-{uuid.uuid4().hex[:8]}"
    async with httpx.AsyncClient(base_url=args.base_url, timeout=httpx.Timeout(args.request_timeout)) as client:
        reference = await start_checkout(client, user_id, args.product_id)
        body, headers = signed_event(reference, user_id, args.webhook_secret)

        before = None if args.skip_metrics else await scrape(client, args.metrics_path)

        async def deliver() -> int:
            response = await client.post("/webhooks/stripe", content=body, headers=headers)
            return response.status_code

        start = time.monotonic()
        if args.parallel:
            statuses = list(await asyncio.gather(*(deliver() for _ in range(args.count))))
        else:
            statuses = [await deliver() for _ in range(args.count)]
        duration = time.monotonic() - start

        listing = await client.get("/orders", params={"userId": user_id})
        listing.raise_for_status()
        matching = [order for order in listing.json()["items"] if order.get("paymentId") == reference]

        duplicate_delta: float | None = None
        if before is not None:
            after = await scrape(client, args.metrics_path)
            duplicate_delta = confirmations(after, "duplicate") - confirmations(before, "duplicate")

    return {
        "reference": reference,
        "userId": user_id,
        "deliveries": args.count,
        "parallel": args.parallel,
        "statusCodes": statuses,
        "durationSeconds": round(duration, 2),
        "ordersForReference": len(matching),
        "idempotent": len(matching) == 1,
        "duplicateMetricDelta": duplicate_delta,
    }


async def main_async() -> int:
    args = parse_args()
    try:
        report = await run(args)
    except (httpx.HTTPError, RuntimeError) as exc:
        print(json.dumps({"status": "error", "message": str(exc)}, indent=2, sort_keys=True))
        return 1
    payload = {"status": "ok" if report["idempotent"] else "violation", **report}
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0 if report["idempotent"] else 2


def main() -> None:
    raise SystemExit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
