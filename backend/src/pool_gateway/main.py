"""FastAPI application entry-point.

Assembles routers, middleware, exception handlers, and lifecycle hooks.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from pool_gateway.adapters.inbound.rest.routers import (
    chat_router,
    health_router,
    providers_router,
    usage_router,
)
from pool_gateway.config import Settings
from pool_gateway.dependencies import GatewayContainer, get_cached_settings
from pool_gateway.domain.enums import ProviderType
from pool_gateway.ports.outbound import PoolStore, UpstreamClient
from pool_gateway.shared.errors import register_exception_handlers
from pool_gateway.shared.middleware import (
    LoggingMiddleware,
    MetricsMiddleware,
    RequestIdMiddleware,
)
from pool_gateway.shared.observability import configure_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifecycle — build the pool, run schedulers, flush on exit."""
    settings: Settings = app.state.settings
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.is_production,
    )
    logger.info(
        "application_starting",
        env=settings.app_env.value,
        backend=settings.effective_pool_backend.value,
        default_provider=settings.model_provider,
    )

    container = await GatewayContainer.build(
        settings,
        upstreams=app.state.upstream_overrides,
        store=app.state.store_override,
    )
    app.state.container = container
    container.start()
    try:
        yield
    finally:
        await container.aclose()
        logger.info("application_shutdown")


def create_app(
    settings: Settings | None = None,
    *,
    upstreams: Mapping[ProviderType, UpstreamClient] | None = None,
    store: PoolStore | None = None,
) -> FastAPI:
    """Application factory — creates a fully configured FastAPI instance.

    ``upstreams`` and ``store`` replace the adapters built from settings.
    """
    settings = settings or get_cached_settings()

    app = FastAPI(
        title="Kiro Pool Gateway",
        description=(
            "OpenAI- and Claude-compatible chat API backed by a pool of upstream "
            "accounts with health checks, token refresh and usage tracking."
        ),
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Store settings in app state for lifecycle access
    app.state.settings = settings
    app.state.upstream_overrides = upstreams
    app.state.store_override = store

    # ── Middleware (order matters: last added = outermost) ────
    cors_origins = settings.cors_origins
    allow_all_origins = "*" in cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if allow_all_origins else cors_origins,
        allow_origin_regex=".*" if allow_all_origins else None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.prometheus_enabled:
        app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Exception handlers ───────────────────────────────────
    register_exception_handlers(app)

    # ── Routers ──────────────────────────────────────────────
    app.include_router(health_router)
    app.include_router(providers_router)
    app.include_router(usage_router)
    app.include_router(chat_router)

    return app


def run() -> None:
    """Console entry-point: serve with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_cached_settings()
    uvicorn.run(
        "pool_gateway.main:app",
        host=settings.app_host,
        port=settings.app_port,
        log_config=None,
    )


# Uvicorn entry-point
app = create_app()
