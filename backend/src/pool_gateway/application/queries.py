"""Query handlers — read-side use cases.

Query handlers are intentionally simple: they read pool state or the usage
cache and return plain data.  The only side effect allowed is a usage fetch
that fills the cache.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from pool_gateway.application.commands import owned_instance
from pool_gateway.domain.enums import ProviderType
from pool_gateway.domain.exceptions import GatewayError
from pool_gateway.ports.outbound import PoolStore, UpstreamClient
from pool_gateway.shared.providers.pool import CredentialPoolManager
from pool_gateway.shared.providers.types import PoolStats, ProviderInstance

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════
#  Pool stats
# ═══════════════════════════════════════════════════════════════
@dataclass
class GetPoolStatsQuery:
    provider_type: str | None = None


class GetPoolStatsHandler:
    def __init__(self, pool: CredentialPoolManager) -> None:
        self._pool = pool

    async def handle(self, query: GetPoolStatsQuery) -> tuple[PoolStats, dict[str, PoolStats]]:
        """Overall stats plus one entry per provider type."""
        if query.provider_type:
            types = [ProviderType.parse(query.provider_type)]
        else:
            types = self._pool.provider_types()
        per_type = {pt.value: self._pool.stats(pt) for pt in types}
        return self._pool.stats(), per_type


# ═══════════════════════════════════════════════════════════════
#  Instances
# ═══════════════════════════════════════════════════════════════
@dataclass
class ListInstancesQuery:
    provider_type: str


class ListInstancesHandler:
    def __init__(self, pool: CredentialPoolManager) -> None:
        self._pool = pool

    async def handle(self, query: ListInstancesQuery) -> list[ProviderInstance]:
        return self._pool.list_instances(ProviderType.parse(query.provider_type))


@dataclass
class GetHealthHistoryQuery:
    provider_type: str
    instance_id: str
    limit: int = 20


class GetHealthHistoryHandler:
    def __init__(self, pool: CredentialPoolManager, store: PoolStore) -> None:
        self._pool = pool
        self._store = store

    async def handle(self, query: GetHealthHistoryQuery) -> list[dict[str, Any]]:
        owned_instance(self._pool, query.provider_type, query.instance_id)
        return await self._store.health_history(query.instance_id, limit=query.limit)


# ═══════════════════════════════════════════════════════════════
#  Usage
# ═══════════════════════════════════════════════════════════════
@dataclass
class GetUsageQuery:
    instance_id: str | None = None
    provider_type: str | None = None
    refresh: bool = False


class GetUsageHandler:
    def __init__(self, pool: CredentialPoolManager) -> None:
        self._pool = pool

    async def handle(self, query: GetUsageQuery) -> dict[str, Any]:
        if query.instance_id is not None:
            snapshot = await self._pool.get_usage(query.instance_id, force_refresh=query.refresh)
            return snapshot.to_dict()

        provider_type = ProviderType.parse(query.provider_type) if query.provider_type else None
        results = await self._pool.get_usage_all(provider_type, force_refresh=query.refresh)
        usage: dict[str, Any] = {}
        for instance_id, result in results.items():
            if isinstance(result, GatewayError):
                usage[instance_id] = {"error": {"code": result.code, "message": result.message}}
            else:
                usage[instance_id] = result.to_dict()
        logger.debug("usage_listed", total=len(usage), refresh=query.refresh)
        return usage


# ═══════════════════════════════════════════════════════════════
#  Models
# ═══════════════════════════════════════════════════════════════
@dataclass
class ListModelsQuery:
    provider_type: str


class ListModelsHandler:
    def __init__(self, upstreams: Mapping[ProviderType, UpstreamClient]) -> None:
        self._upstreams = upstreams

    async def handle(self, query: ListModelsQuery) -> list[str]:
        upstream = self._upstreams.get(ProviderType.parse(query.provider_type))
        return upstream.list_models() if upstream is not None else []
