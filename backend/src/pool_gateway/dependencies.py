"""Dependency injection container — wires adapters to ports.

``GatewayContainer`` is built once per application in the lifespan hook and
kept on ``app.state``.  FastAPI's ``Depends()`` factories below read it from
the request so route handlers never touch module globals.
"""

from __future__ import annotations

import secrets
from collections.abc import Mapping
from functools import lru_cache

import structlog
from fastapi import Depends, Request

from pool_gateway.adapters.outbound.kiro import KiroClient
from pool_gateway.adapters.outbound.openai_custom import OpenAICustomClient
from pool_gateway.adapters.outbound.persistence.database import create_engine
from pool_gateway.adapters.outbound.persistence.pool_file import JsonPoolStore, fallback_instances
from pool_gateway.adapters.outbound.persistence.repositories import SqlitePoolStore
from pool_gateway.application.commands import (
    ChatHandler,
    RefreshUsageHandler,
    ReloadPoolHandler,
    ResetCountersHandler,
    RunHealthCheckHandler,
    SetInstanceEnabledHandler,
)
from pool_gateway.application.queries import (
    GetHealthHistoryHandler,
    GetPoolStatsHandler,
    GetUsageHandler,
    ListInstancesHandler,
    ListModelsHandler,
)
from pool_gateway.config import Settings, get_settings
from pool_gateway.domain.enums import PoolBackend, ProviderType
from pool_gateway.domain.exceptions import AuthenticationError, UnsupportedProviderType
from pool_gateway.ports.outbound import PoolStore, UpstreamClient
from pool_gateway.shared.observability.prompt_log import PromptLogger
from pool_gateway.shared.providers.dispatcher import RequestDispatcher
from pool_gateway.shared.providers.health import HealthStateMachine
from pool_gateway.shared.providers.pool import CredentialPoolManager
from pool_gateway.shared.providers.scheduler import HealthCheckScheduler, TokenRefreshScheduler
from pool_gateway.shared.providers.types import ProviderInstance, UsageReport

logger = structlog.get_logger(__name__)


# ── Settings ─────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_cached_settings() -> Settings:
    return get_settings()


# ── Adapter factories ────────────────────────────────────────
def build_upstreams(settings: Settings) -> dict[ProviderType, UpstreamClient]:
    return {
        ProviderType.CLAUDE_KIRO_OAUTH: KiroClient(
            timeout=settings.request_timeout_seconds,
            default_region=settings.kiro_region,
        ),
        ProviderType.OPENAI_CUSTOM: OpenAICustomClient(timeout=settings.request_timeout_seconds),
    }


def build_store(settings: Settings) -> PoolStore:
    def fallback() -> list[ProviderInstance]:
        return fallback_instances(settings)

    if settings.effective_pool_backend == PoolBackend.SQLITE:
        return SqlitePoolStore(
            create_engine(settings),
            pool_file=settings.provider_pools_file_path,
            fallback=fallback,
        )
    return JsonPoolStore(settings.provider_pools_file_path, fallback=fallback)


# ═══════════════════════════════════════════════════════════════
#  Container
# ═══════════════════════════════════════════════════════════════
class GatewayContainer:
    """Owns the pool, its collaborators and the background schedulers."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: PoolStore,
        pool: CredentialPoolManager,
        upstreams: Mapping[ProviderType, UpstreamClient],
        dispatcher: RequestDispatcher,
        health_scheduler: HealthCheckScheduler,
        refresh_scheduler: TokenRefreshScheduler | None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.pool = pool
        self.upstreams = upstreams
        self.dispatcher = dispatcher
        self.health_scheduler = health_scheduler
        self.refresh_scheduler = refresh_scheduler

    @classmethod
    async def build(
        cls,
        settings: Settings,
        *,
        upstreams: Mapping[ProviderType, UpstreamClient] | None = None,
        store: PoolStore | None = None,
    ) -> GatewayContainer:
        upstreams = upstreams if upstreams is not None else build_upstreams(settings)
        store = store if store is not None else build_store(settings)

        async def usage_query(inst: ProviderInstance) -> UsageReport:
            upstream = upstreams.get(inst.provider_type)
            if upstream is None:
                raise UnsupportedProviderType(inst.provider_type.value)
            return await upstream.fetch_usage(inst)

        instances = await store.load()
        pool = CredentialPoolManager(
            instances,
            health=HealthStateMachine(settings.max_error_count),
            usage_query=usage_query,
            usage_ttl_seconds=settings.usage_cache_ttl,
            usage_concurrency=settings.usage_query_concurrency,
            store=store,
            save_debounce_seconds=settings.pool_save_debounce_seconds,
        )
        dispatcher = RequestDispatcher(
            pool,
            upstreams,
            max_retries=settings.request_max_retries,
            base_delay_ms=settings.request_base_delay,
            timeout_seconds=settings.request_timeout_seconds,
            system_prompt_path=settings.system_prompt_file_path,
            system_prompt_mode=settings.system_prompt_mode,
            capture_system_prompt_path=settings.fetch_system_prompt_file,
            prompt_logger=PromptLogger(
                settings.prompt_log_mode, base_name=settings.prompt_log_base_name
            ),
        )
        health_scheduler = HealthCheckScheduler(
            pool,
            upstreams,
            interval_seconds=settings.health_check_interval_minutes * 60,
            concurrency=settings.health_check_concurrency,
            probe_timeout_seconds=settings.health_check_timeout_seconds,
            store=store,
            grace_seconds=settings.shutdown_grace_seconds,
        )
        refresh_scheduler = None
        if settings.cron_refresh_token:
            refresh_scheduler = TokenRefreshScheduler(
                pool,
                upstreams,
                near_minutes=settings.cron_near_minutes,
                concurrency=settings.health_check_concurrency,
                grace_seconds=settings.shutdown_grace_seconds,
            )

        logger.info(
            "container_built",
            backend=settings.effective_pool_backend.value,
            instances=len(instances),
            provider_types=[pt.value for pt in pool.provider_types()],
        )
        return cls(
            settings,
            store=store,
            pool=pool,
            upstreams=upstreams,
            dispatcher=dispatcher,
            health_scheduler=health_scheduler,
            refresh_scheduler=refresh_scheduler,
        )

    def start(self) -> None:
        self.health_scheduler.start()
        if self.refresh_scheduler is not None:
            self.refresh_scheduler.start()

    async def aclose(self) -> None:
        await self.health_scheduler.stop()
        if self.refresh_scheduler is not None:
            await self.refresh_scheduler.stop()
        await self.pool.aclose()
        for upstream in self.upstreams.values():
            await upstream.close()
        await self.store.close()


# ── Request-scoped accessors ─────────────────────────────────
def get_container(request: Request) -> GatewayContainer:
    return request.app.state.container  # type: ignore[no-any-return]


def get_pool(container: GatewayContainer = Depends(get_container)) -> CredentialPoolManager:
    return container.pool


# ── Auth dependency ──────────────────────────────────────────
def _presented_key(request: Request) -> str | None:
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return (
        request.headers.get("x-api-key")
        or request.headers.get("x-goog-api-key")
        or request.query_params.get("key")
    )


async def require_api_key(
    request: Request, container: GatewayContainer = Depends(get_container)
) -> None:
    """Accept the client key as Bearer token, x-api-key, x-goog-api-key or ?key=."""
    presented = _presented_key(request)
    expected = container.settings.required_api_key
    if not presented or not secrets.compare_digest(presented.encode(), expected.encode()):
        raise AuthenticationError()


# ── Use-case handler factories ───────────────────────────────
def get_chat_handler(container: GatewayContainer = Depends(get_container)) -> ChatHandler:
    return ChatHandler(container.dispatcher, default_provider=container.settings.model_provider)


def get_set_enabled_handler(
    pool: CredentialPoolManager = Depends(get_pool),
) -> SetInstanceEnabledHandler:
    return SetInstanceEnabledHandler(pool)


def get_reset_counters_handler(
    pool: CredentialPoolManager = Depends(get_pool),
) -> ResetCountersHandler:
    return ResetCountersHandler(pool)


def get_refresh_usage_handler(
    pool: CredentialPoolManager = Depends(get_pool),
) -> RefreshUsageHandler:
    return RefreshUsageHandler(pool)


def get_reload_handler(pool: CredentialPoolManager = Depends(get_pool)) -> ReloadPoolHandler:
    return ReloadPoolHandler(pool)


def get_health_check_handler(
    container: GatewayContainer = Depends(get_container),
) -> RunHealthCheckHandler:
    return RunHealthCheckHandler(container.health_scheduler)


def get_pool_stats_handler(pool: CredentialPoolManager = Depends(get_pool)) -> GetPoolStatsHandler:
    return GetPoolStatsHandler(pool)


def get_instances_handler(
    pool: CredentialPoolManager = Depends(get_pool),
) -> ListInstancesHandler:
    return ListInstancesHandler(pool)


def get_health_history_handler(
    container: GatewayContainer = Depends(get_container),
) -> GetHealthHistoryHandler:
    return GetHealthHistoryHandler(container.pool, container.store)


def get_usage_handler(pool: CredentialPoolManager = Depends(get_pool)) -> GetUsageHandler:
    return GetUsageHandler(pool)


def get_models_handler(
    container: GatewayContainer = Depends(get_container),
) -> ListModelsHandler:
    return ListModelsHandler(container.upstreams)
