"""Chat, Models, Providers, Usage, Health — REST routers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

import orjson
import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import ORJSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from pool_gateway.application.commands import (
    ChatCommand,
    ChatHandler,
    RefreshUsageCommand,
    RefreshUsageHandler,
    ReloadPoolCommand,
    ReloadPoolHandler,
    ResetCountersCommand,
    ResetCountersHandler,
    RunHealthCheckCommand,
    RunHealthCheckHandler,
    SetInstanceEnabledCommand,
    SetInstanceEnabledHandler,
)
from pool_gateway.application.dtos import (
    HealthCheckResponse,
    HealthResponse,
    InstanceActionResponse,
    ModelInfo,
    ModelListResponse,
    PoolOverviewResponse,
    PoolStatsResponse,
    ReloadResponse,
)
from pool_gateway.application.queries import (
    GetHealthHistoryHandler,
    GetHealthHistoryQuery,
    GetPoolStatsHandler,
    GetPoolStatsQuery,
    GetUsageHandler,
    GetUsageQuery,
    ListInstancesHandler,
    ListInstancesQuery,
    ListModelsHandler,
    ListModelsQuery,
)
from pool_gateway.dependencies import (
    GatewayContainer,
    get_chat_handler,
    get_container,
    get_health_check_handler,
    get_health_history_handler,
    get_instances_handler,
    get_models_handler,
    get_pool_stats_handler,
    get_refresh_usage_handler,
    get_reload_handler,
    get_reset_counters_handler,
    get_set_enabled_handler,
    get_usage_handler,
    require_api_key,
)
from pool_gateway.domain.enums import Dialect
from pool_gateway.domain.exceptions import InvalidRequest

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PROVIDER_HEADER = "model-provider"
DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499
SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


class ClientDisconnected(Exception):
    """The client went away before the response was ready."""


async def _read_body(request: Request) -> dict[str, Any]:
    try:
        body = orjson.loads(await request.body())
    except orjson.JSONDecodeError as exc:
        raise InvalidRequest(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def _unless_disconnected(request: Request, work: Awaitable[T]) -> T:
    """Run ``work`` but cancel it as soon as the client disconnects."""
    task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
    if not task.done():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise ClientDisconnected()
    return task.result()


async def _chat(
    request: Request,
    handler: ChatHandler,
    dialect: Dialect,
    provider_type: str | None,
) -> Response:
    body = await _read_body(request)
    cmd = ChatCommand(
        dialect=dialect,
        body=body,
        provider_type=provider_type or request.headers.get(PROVIDER_HEADER),
        request_id=getattr(request.state, "request_id", None),
    )
    try:
        if handler.wants_stream(cmd):
            stream = await _unless_disconnected(request, handler.handle_stream(cmd))
            return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)
        result = await _unless_disconnected(request, handler.handle(cmd))
    except ClientDisconnected:
        logger.info("client_disconnected", path=request.url.path)
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    return ORJSONResponse(result.response)


async def _models(handler: ListModelsHandler, provider_type: str) -> ModelListResponse:
    model_ids = await handler.handle(ListModelsQuery(provider_type=provider_type))
    return ModelListResponse(data=[ModelInfo(id=m, owned_by=provider_type) for m in model_ids])


# ═══════════════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════════════
chat_router = APIRouter(tags=["Chat"], dependencies=[Depends(require_api_key)])


@chat_router.post("/v1/messages")
async def claude_messages(
    request: Request, handler: ChatHandler = Depends(get_chat_handler)
) -> Response:
    return await _chat(request, handler, Dialect.CLAUDE, None)


@chat_router.post("/{provider_type}/v1/messages")
async def claude_messages_for_provider(
    provider_type: str, request: Request, handler: ChatHandler = Depends(get_chat_handler)
) -> Response:
    return await _chat(request, handler, Dialect.CLAUDE, provider_type)


@chat_router.post("/v1/chat/completions")
async def openai_chat_completions(
    request: Request, handler: ChatHandler = Depends(get_chat_handler)
) -> Response:
    return await _chat(request, handler, Dialect.OPENAI, None)


@chat_router.post("/{provider_type}/v1/chat/completions")
async def openai_chat_completions_for_provider(
    provider_type: str, request: Request, handler: ChatHandler = Depends(get_chat_handler)
) -> Response:
    return await _chat(request, handler, Dialect.OPENAI, provider_type)


@chat_router.get("/v1/models", response_model=ModelListResponse)
async def list_models(
    request: Request,
    handler: ListModelsHandler = Depends(get_models_handler),
    container: GatewayContainer = Depends(get_container),
) -> ModelListResponse:
    provider_type = request.headers.get(PROVIDER_HEADER) or container.settings.model_provider
    return await _models(handler, provider_type)


@chat_router.get("/{provider_type}/v1/models", response_model=ModelListResponse)
async def list_models_for_provider(
    provider_type: str, handler: ListModelsHandler = Depends(get_models_handler)
) -> ModelListResponse:
    return await _models(handler, provider_type)


# ═══════════════════════════════════════════════════════════════
#  Providers (pool administration)
# ═══════════════════════════════════════════════════════════════
providers_router = APIRouter(
    prefix="/api/providers", tags=["Providers"], dependencies=[Depends(require_api_key)]
)


@providers_router.get("", response_model=PoolOverviewResponse)
async def pool_overview(
    handler: GetPoolStatsHandler = Depends(get_pool_stats_handler),
) -> PoolOverviewResponse:
    overall, per_type = await handler.handle(GetPoolStatsQuery())
    return PoolOverviewResponse(
        overall=PoolStatsResponse(**overall.to_dict()),
        providers={pt: PoolStatsResponse(**stats.to_dict()) for pt, stats in per_type.items()},
    )


@providers_router.post("/reload", response_model=ReloadResponse)
async def reload_pool(handler: ReloadPoolHandler = Depends(get_reload_handler)) -> ReloadResponse:
    total = await handler.handle(ReloadPoolCommand())
    return ReloadResponse(total=total)


@providers_router.post("/health-check", response_model=HealthCheckResponse)
async def run_health_check(
    handler: RunHealthCheckHandler = Depends(get_health_check_handler),
) -> HealthCheckResponse:
    summary = await handler.handle(RunHealthCheckCommand())
    return HealthCheckResponse(**summary)


@providers_router.get("/{provider_type}")
async def list_instances(
    provider_type: str, handler: ListInstancesHandler = Depends(get_instances_handler)
) -> list[dict[str, Any]]:
    instances = await handler.handle(ListInstancesQuery(provider_type=provider_type))
    return [inst.to_dict() for inst in instances]


@providers_router.post("/{provider_type}/{instance_id}/enable", response_model=InstanceActionResponse)
async def enable_instance(
    provider_type: str,
    instance_id: str,
    handler: SetInstanceEnabledHandler = Depends(get_set_enabled_handler),
) -> InstanceActionResponse:
    inst = await handler.handle(SetInstanceEnabledCommand(provider_type, instance_id, enabled=True))
    return InstanceActionResponse(status="enabled", instance=inst.to_dict())


@providers_router.post(
    "/{provider_type}/{instance_id}/disable", response_model=InstanceActionResponse
)
async def disable_instance(
    provider_type: str,
    instance_id: str,
    handler: SetInstanceEnabledHandler = Depends(get_set_enabled_handler),
) -> InstanceActionResponse:
    inst = await handler.handle(SetInstanceEnabledCommand(provider_type, instance_id, enabled=False))
    return InstanceActionResponse(status="disabled", instance=inst.to_dict())


@providers_router.post("/{provider_type}/{instance_id}/reset", response_model=InstanceActionResponse)
async def reset_instance(
    provider_type: str,
    instance_id: str,
    handler: ResetCountersHandler = Depends(get_reset_counters_handler),
) -> InstanceActionResponse:
    inst = await handler.handle(ResetCountersCommand(provider_type, instance_id))
    return InstanceActionResponse(status="reset", instance=inst.to_dict())


@providers_router.post("/{provider_type}/{instance_id}/refresh")
async def refresh_instance_usage(
    provider_type: str,
    instance_id: str,
    handler: RefreshUsageHandler = Depends(get_refresh_usage_handler),
) -> dict[str, Any]:
    snapshot = await handler.handle(RefreshUsageCommand(instance_id, provider_type=provider_type))
    return snapshot.to_dict()


@providers_router.get("/{provider_type}/{instance_id}/health-history")
async def instance_health_history(
    provider_type: str,
    instance_id: str,
    limit: int = Query(20, ge=1, le=500),
    handler: GetHealthHistoryHandler = Depends(get_health_history_handler),
) -> list[dict[str, Any]]:
    return await handler.handle(GetHealthHistoryQuery(provider_type, instance_id, limit=limit))


# ═══════════════════════════════════════════════════════════════
#  Usage
# ═══════════════════════════════════════════════════════════════
usage_router = APIRouter(
    prefix="/api/usage", tags=["Usage"], dependencies=[Depends(require_api_key)]
)


@usage_router.get("")
async def usage_all(
    refresh: bool = False,
    provider_type: str | None = Query(None, alias="providerType"),
    handler: GetUsageHandler = Depends(get_usage_handler),
) -> dict[str, Any]:
    return await handler.handle(GetUsageQuery(provider_type=provider_type, refresh=refresh))


@usage_router.get("/{instance_id}")
async def usage_one(
    instance_id: str,
    refresh: bool = False,
    handler: GetUsageHandler = Depends(get_usage_handler),
) -> dict[str, Any]:
    return await handler.handle(GetUsageQuery(instance_id=instance_id, refresh=refresh))


# ═══════════════════════════════════════════════════════════════
#  Health
# ═══════════════════════════════════════════════════════════════
health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check(container: GatewayContainer = Depends(get_container)) -> Response:
    """Liveness plus a per-pool summary; 503 when some pool has nothing healthy."""
    pools: dict[str, dict[str, int]] = {}
    for provider_type in container.pool.provider_types():
        stats = container.pool.stats(provider_type)
        pools[provider_type.value] = {
            "total": stats.total,
            "healthy": stats.healthy,
            "banned": stats.banned,
            "disabled": stats.disabled,
        }
    degraded = not pools or any(p["healthy"] == 0 for p in pools.values())
    body = HealthResponse(
        status="degraded" if degraded else "ok",
        environment=container.settings.app_env.value,
        pools=pools,
    )
    return ORJSONResponse(content=body.model_dump(), status_code=503 if degraded else 200)


@health_router.get("/metrics")
async def prometheus_metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
