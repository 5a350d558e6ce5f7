from __future__ import annotations

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flightpay.acquirers.base import load_acquirer_credentials
from flightpay.acquirers.registry import build_registry
from flightpay.core.config import Settings
from flightpay.payments.locks import ReferenceLocks
from flightpay.payments.service import PaymentService
from flightpay.payments.status_mapping import StatusMapper


def build_payment_service(
    settings: Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    redis_client: Redis | None = None,
) -> PaymentService:
    return PaymentService(
        registry=build_registry(settings, http_client),
        credentials=load_acquirer_credentials(settings),
        session_factory=session_factory,
        status_mapper=StatusMapper(),
        locks=ReferenceLocks(redis_client, ttl_seconds=settings.lock_ttl_seconds),
        expiry_minutes=settings.payment_expiry_minutes,
        default_acquirer=settings.default_acquirer,
        app_url=settings.app_url,
    )
