from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.router import router as v1_router
from app.auth.providers import create_auth_provider
from app.billing.service import SubscriptionService
from app.core.logging import configure_logging, get_logger
from app.core.settings import get_settings
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.request_id import RequestIDMiddleware

configure_logging()
settings = get_settings()
logger = get_logger("api.lifespan")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.subscription_service = SubscriptionService.create(settings)
    app.state.auth_provider = create_auth_provider(settings)
    logger.info(
        "api.startup",
        extra={
            "component": "api",
            "billing_store": settings.BILLING_STORE,
            "auth_provider": type(app.state.auth_provider).__name__,
        },
    )
    try:
        yield
    finally:
        await app.state.subscription_service.aclose()
        await app.state.auth_provider.aclose()
        logger.info("api.shutdown", extra={"component": "api"})


app = FastAPI(title="ReflectAI Billing API", version=settings.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(
    RateLimitMiddleware,
    max_requests_per_minute=settings.API_RATE_LIMIT_PER_MINUTE,
    enabled=settings.API_RATE_LIMIT_ENABLED,
)
app.add_middleware(RequestIDMiddleware)

app.include_router(v1_router, prefix="/api/v1")


@app.get("/healthz")
def root_healthz() -> dict[str, str]:
    return {"status": "ok"}
