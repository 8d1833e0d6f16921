"""Dependency helpers for the shop service."""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import ServiceSettings, lifespan_session

from .orders import OrderService
from .payments import PaymentService
from .pricing import PricingPolicy
from .repository import StorefrontRepository


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an AsyncSession for the current request."""

    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> StorefrontRepository:
    """Return a repository bound to the current session."""

    return StorefrontRepository(session)


def get_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_pricing_policy(settings: ServiceSettings = Depends(get_settings)) -> PricingPolicy:
    return PricingPolicy.from_settings(settings)


def get_order_service(
    repository: StorefrontRepository = Depends(get_repository),
    settings: ServiceSettings = Depends(get_settings),
) -> OrderService:
    return OrderService(repository, currency=settings.currency)


def get_payment_service(
    request: Request,
    repository: StorefrontRepository = Depends(get_repository),
    settings: ServiceSettings = Depends(get_settings),
    pricing: PricingPolicy = Depends(get_pricing_policy),
) -> PaymentService:
    return PaymentService(
        repository,
        pricing=pricing,
        currency=settings.currency,
        min_amount=settings.min_payment_amount,
        stripe=request.app.state.stripe_provider,
        paypal=request.app.state.paypal_provider,
    )
