"""Command handlers — write-side use cases.

Each handler encapsulates a single operation that drives the pool or the
dispatcher.  Handlers depend only on the pool core and port interfaces,
never on concrete adapters.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import structlog

from pool_gateway.domain.enums import Dialect, ProviderType
from pool_gateway.domain.exceptions import InstanceNotFound
from pool_gateway.shared.providers.dispatcher import ChatRequest, ChatResult, RequestDispatcher
from pool_gateway.shared.providers.pool import CredentialPoolManager
from pool_gateway.shared.providers.scheduler import HealthCheckScheduler
from pool_gateway.shared.providers.types import ProviderInstance, UsageSnapshot
from pool_gateway.shared.strategies import get_strategy

logger = structlog.get_logger(__name__)


def owned_instance(
    pool: CredentialPoolManager, provider_type: str, instance_id: str
) -> ProviderInstance:
    """Look up ``instance_id`` and require it to belong to ``provider_type``."""
    expected = ProviderType.parse(provider_type)
    inst = pool.instance(instance_id)
    if inst.provider_type != expected:
        raise InstanceNotFound(instance_id)
    return inst


# ═══════════════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════════════
@dataclass
class ChatCommand:
    """An inbound chat body in the client's dialect."""

    dialect: Dialect
    body: dict[str, Any]
    provider_type: str | None = None
    request_id: str | None = None


class ChatHandler:
    """Resolves the target pool and hands the call to the dispatcher."""

    def __init__(self, dispatcher: RequestDispatcher, *, default_provider: str) -> None:
        self._dispatcher = dispatcher
        self._default_provider = default_provider

    def resolve_provider_type(self, name: str | None) -> ProviderType:
        return ProviderType.parse(name or self._default_provider)

    @staticmethod
    def wants_stream(cmd: ChatCommand) -> bool:
        return get_strategy(cmd.dialect).extract_model_and_stream_info(cmd.body).stream

    def _request(self, cmd: ChatCommand) -> ChatRequest:
        provider_type = self.resolve_provider_type(cmd.provider_type)
        if cmd.request_id:
            return ChatRequest(provider_type, cmd.dialect, cmd.body, request_id=cmd.request_id)
        return ChatRequest(provider_type, cmd.dialect, cmd.body)

    async def handle(self, cmd: ChatCommand) -> ChatResult:
        return await self._dispatcher.dispatch(self._request(cmd))

    async def handle_stream(self, cmd: ChatCommand) -> AsyncIterator[bytes]:
        """Errors before the first upstream event are raised here, not from the stream."""
        return await self._dispatcher.dispatch_stream(self._request(cmd))


# ═══════════════════════════════════════════════════════════════
#  Instance administration
# ═══════════════════════════════════════════════════════════════
@dataclass
class SetInstanceEnabledCommand:
    provider_type: str
    instance_id: str
    enabled: bool


class SetInstanceEnabledHandler:
    def __init__(self, pool: CredentialPoolManager) -> None:
        self._pool = pool

    async def handle(self, cmd: SetInstanceEnabledCommand) -> ProviderInstance:
        owned_instance(self._pool, cmd.provider_type, cmd.instance_id)
        if cmd.enabled:
            return self._pool.enable(cmd.instance_id)
        return self._pool.disable(cmd.instance_id)


@dataclass
class ResetCountersCommand:
    provider_type: str
    instance_id: str


class ResetCountersHandler:
    def __init__(self, pool: CredentialPoolManager) -> None:
        self._pool = pool

    async def handle(self, cmd: ResetCountersCommand) -> ProviderInstance:
        owned_instance(self._pool, cmd.provider_type, cmd.instance_id)
        return self._pool.reset_counters(cmd.instance_id)


@dataclass
class RefreshUsageCommand:
    """Force a usage fetch for one instance; errors are surfaced, not masked."""

    instance_id: str
    provider_type: str | None = None


class RefreshUsageHandler:
    def __init__(self, pool: CredentialPoolManager) -> None:
        self._pool = pool

    async def handle(self, cmd: RefreshUsageCommand) -> UsageSnapshot:
        if cmd.provider_type:
            owned_instance(self._pool, cmd.provider_type, cmd.instance_id)
        logger.info("usage_refresh_requested", instance_id=cmd.instance_id)
        return await self._pool.refresh_one(cmd.instance_id)


# ═══════════════════════════════════════════════════════════════
#  Pool-wide operations
# ═══════════════════════════════════════════════════════════════
@dataclass
class ReloadPoolCommand:
    pass


class ReloadPoolHandler:
    def __init__(self, pool: CredentialPoolManager) -> None:
        self._pool = pool

    async def handle(self, cmd: ReloadPoolCommand) -> int:
        total = await self._pool.reload()
        logger.info("pool_reloaded", total=total)
        return total


@dataclass
class RunHealthCheckCommand:
    pass


class RunHealthCheckHandler:
    def __init__(self, scheduler: HealthCheckScheduler) -> None:
        self._scheduler = scheduler

    async def handle(self, cmd: RunHealthCheckCommand) -> dict[str, int]:
        return await self._scheduler.run_cycle()
