from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "storefront-service"


class ServiceSettings(BaseSettings):
    """Settings shared by the storefront FastAPI services."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)

    # Checkout pricing
    currency: str = Field(default="USD", min_length=3, max_length=3)
    tax_rate: Decimal = Field(default=Decimal("0.16"), ge=Decimal("0"), le=Decimal("1"))
    free_shipping_threshold: Decimal | None = Field(default=Decimal("1000.00"), ge=Decimal("0"))
    shipping_cost: Decimal = Field(default=Decimal("150.00"), ge=Decimal("0"))
    min_payment_amount: Decimal = Field(default=Decimal("0.50"), gt=Decimal("0"))

    # Payment processors
    payment_timeout_seconds: float = Field(default=10.0, gt=0.0)
    stripe_secret_key: str | None = Field(default=None)
    stripe_webhook_secret: str | None = Field(default=None)
    stripe_api_base: str = Field(default="https://api.stripe.com")
    stripe_webhook_tolerance_seconds: int = Field(default=300, ge=0)
    paypal_client_id: str | None = Field(default=None)
    paypal_client_secret: str | None = Field(default=None)
    paypal_base_url: str = Field(default="https://api-m.sandbox.paypal.com")
    paypal_webhook_id: str | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
