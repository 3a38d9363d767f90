"""
SubHook - recurring billing subscriptions reconciled with gateway webhooks
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

from subhook.core.config import settings
from subhook.core.exceptions import GatewayNotConfiguredError
from subhook.core.logging_config import setup_logging
from subhook.core.redis import close_redis_client
from subhook.api.v1.api import api_router
from subhook.services.payment_gateway import GatewayRegistry

# Configure logging before anything else
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events.
    Builds the gateway registry on startup; closes clients on shutdown.
    """
    logger.info(
        "%s v%s starting: env=%s debug=%s",
        settings.APP_NAME,
        settings.APP_VERSION,
        settings.ENVIRONMENT,
        settings.DEBUG,
    )
    registry = GatewayRegistry.from_settings(settings)
    try:
        registry.validate()
    except GatewayNotConfiguredError as exc:
        if settings.ENVIRONMENT == "production":
            raise
        logger.warning("gateway_registry_incomplete: %s", exc.detail)
    app.state.gateway_registry = registry

    yield

    await registry.aclose()
    await close_redis_client()
    logger.info("%s shutting down...", settings.APP_NAME)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Subscription billing with idempotent payment gateway webhooks",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not settings.DEBUG:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.ALLOWED_HOSTS,
    )

app.include_router(api_router, prefix="/api/v1")


@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "subhook.main:app",
        host="0.0.0.0",
        port=settings.UVICORN_PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
