from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flightpay.api.routes import health, payments, status_mappings
from flightpay.core.config import get_settings
from flightpay.core.errors import AcquirerError, PaymentServiceError
from flightpay.core.logging import bind_payment_context, clear_payment_context, configure_logging, get_logger
from flightpay.db.session import create_engine_from_settings, create_session_factory, init_models
from flightpay.payments.factory import build_payment_service
from flightpay.payments.service import PaymentService


configure_logging(json_logs=get_settings().environment != "development")
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    if getattr(application.state, "payment_service", None) is not None:
        yield
        return

    settings = get_settings()
    engine = create_engine_from_settings(settings)
    await init_models(engine)
    session_factory = create_session_factory(engine)
    redis_client = Redis.from_url(settings.redis_url) if settings.use_redis_locks else None

    async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as http_client:
        application.state.session_factory = session_factory
        application.state.payment_service = build_payment_service(
            settings,
            session_factory=session_factory,
            http_client=http_client,
            redis_client=redis_client,
        )
        logger.info("application.startup", environment=settings.environment)
        try:
            yield
        finally:
            logger.info("application.shutdown")
            await application.state.payment_service.aclose()
            if redis_client is not None:
                await redis_client.aclose()
            await engine.dispose()


async def bind_request_context(request: Request, call_next):
    clear_payment_context()
    bind_payment_context(method=request.method, path=request.url.path)
    try:
        return await call_next(request)
    finally:
        clear_payment_context()


async def payment_error_handler(request: Request, exc: PaymentServiceError) -> JSONResponse:
    if isinstance(exc, AcquirerError):
        logger.warning(
            "api.acquirer_error",
            path=request.url.path,
            code=exc.code,
            acquirer=exc.acquirer,
            gateway_code=exc.gateway_code,
            retryable=exc.retryable,
        )
    else:
        logger.info("api.payment_error", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_application(
    service: PaymentService | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    if service is not None:
        application.state.payment_service = service
        application.state.session_factory = session_factory

    application.include_router(health.router)
    application.include_router(payments.router)
    application.include_router(status_mappings.router)
    application.add_exception_handler(PaymentServiceError, payment_error_handler)
    application.middleware("http")(bind_request_context)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return application


app = create_application()
