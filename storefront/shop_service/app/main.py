from contextlib import asynccontextmanager

from fastapi import FastAPI
from httpx import AsyncBaseTransport, AsyncClient

from storefront.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    configure_logging,
    create_schema,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
)

from .api.carts import router as carts_router
from .api.health import router as health_router
from .api.orders import router as orders_router
from .api.payments import router as payments_router
from .api.webhooks import router as webhooks_router
from .models import Base
from .providers import PayPalProvider, StripeProvider

SERVICE_NAME = "Shop Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./shop_service.db"


def create_app(
    settings: ServiceSettings | None = None,
    *,
    http_transport: AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the Shop Service FastAPI application.

    ``http_transport`` replaces the network transport of the processor
    client; tests pass an ``httpx.MockTransport``.
    """

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client = AsyncClient(timeout=resolved_settings.payment_timeout_seconds, transport=http_transport)
        app.state.session_factory = session_factory
        app.state.stripe_provider = StripeProvider(
            client=http_client,
            secret_key=resolved_settings.stripe_secret_key,
            webhook_secret=resolved_settings.stripe_webhook_secret,
            api_base=resolved_settings.stripe_api_base,
            tolerance_seconds=resolved_settings.stripe_webhook_tolerance_seconds,
        )
        app.state.paypal_provider = PayPalProvider(
            client=http_client,
            client_id=resolved_settings.paypal_client_id,
            client_secret=resolved_settings.paypal_client_secret,
            base_url=resolved_settings.paypal_base_url,
            webhook_id=resolved_settings.paypal_webhook_id,
        )
        try:
            await create_schema(database_url, Base.metadata)
            yield
        finally:
            app.state.stripe_provider = None
            app.state.paypal_provider = None
            await http_client.aclose()
            await dispose_engines()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(carts_router)
    app.include_router(orders_router)
    app.include_router(payments_router)
    app.include_router(webhooks_router)
    return app


app = create_app()
