"""Unit tests for application command handlers."""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest

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
from pool_gateway.domain.enums import Dialect, HealthStatus, ProviderType
from pool_gateway.domain.exceptions import (
    InstanceNotFound,
    UnsupportedProviderType,
    UsageNotSupported,
)
from pool_gateway.shared.providers.dispatcher import ChatResult
from pool_gateway.shared.providers.health import HealthStateMachine
from pool_gateway.shared.providers.pool import CredentialPoolManager


@pytest.fixture
def mock_dispatcher():
    dispatcher = Mock()
    dispatcher.dispatch = AsyncMock(
        return_value=ChatResult(response={"id": "msg_1"}, instance_id="kiro-a", attempts=1)
    )
    dispatcher.dispatch_stream = AsyncMock(return_value=Mock(name="stream"))
    return dispatcher


@pytest.fixture
def mock_scheduler():
    scheduler = Mock()
    scheduler.run_cycle = AsyncMock(return_value={"probed": 3, "healthy": 3, "banned": 0, "skipped": 0})
    return scheduler


@pytest.fixture
def chat_handler(mock_dispatcher) -> ChatHandler:
    return ChatHandler(mock_dispatcher, default_provider="claude-kiro-oauth")


# ═══════════════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════════════
@pytest.mark.asyncio
async def test_chat_uses_default_provider(chat_handler, mock_dispatcher):
    body = {"model": "claude-sonnet-4-5", "messages": []}
    result = await chat_handler.handle(ChatCommand(Dialect.CLAUDE, body, request_id="req-1"))

    assert result.instance_id == "kiro-a"
    request = mock_dispatcher.dispatch.await_args.args[0]
    assert request.provider_type == ProviderType.CLAUDE_KIRO_OAUTH
    assert request.dialect == Dialect.CLAUDE
    assert request.body is body
    assert request.request_id == "req-1"


@pytest.mark.asyncio
async def test_chat_explicit_provider(chat_handler, mock_dispatcher):
    cmd = ChatCommand(Dialect.OPENAI, {"model": "gpt-4o"}, provider_type="OpenAI-Custom")
    await chat_handler.handle(cmd)
    request = mock_dispatcher.dispatch.await_args.args[0]
    assert request.provider_type == ProviderType.OPENAI_CUSTOM
    assert request.request_id


@pytest.mark.asyncio
async def test_chat_unknown_provider(chat_handler, mock_dispatcher):
    with pytest.raises(UnsupportedProviderType):
        await chat_handler.handle(ChatCommand(Dialect.CLAUDE, {"model": "m"}, provider_type="gemini"))
    mock_dispatcher.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_chat_stream_returns_dispatcher_stream(chat_handler, mock_dispatcher):
    stream = await chat_handler.handle_stream(ChatCommand(Dialect.CLAUDE, {"model": "m", "stream": True}))
    assert stream is mock_dispatcher.dispatch_stream.return_value


def test_wants_stream():
    assert ChatHandler.wants_stream(ChatCommand(Dialect.OPENAI, {"model": "m", "stream": True}))
    assert not ChatHandler.wants_stream(ChatCommand(Dialect.OPENAI, {"model": "m"}))


# ═══════════════════════════════════════════════════════════════
#  Instance administration
# ═══════════════════════════════════════════════════════════════
@pytest.mark.asyncio
async def test_disable_then_enable(pool):
    handler = SetInstanceEnabledHandler(pool)

    inst = await handler.handle(SetInstanceEnabledCommand("claude-kiro-oauth", "kiro-a", enabled=False))
    assert inst.disabled is True
    assert not inst.is_selectable

    inst = await handler.handle(SetInstanceEnabledCommand("claude-kiro-oauth", "kiro-a", enabled=True))
    assert inst.disabled is False


@pytest.mark.asyncio
async def test_instance_must_belong_to_provider_type(pool):
    handler = SetInstanceEnabledHandler(pool)
    with pytest.raises(InstanceNotFound):
        await handler.handle(SetInstanceEnabledCommand("openai-custom", "kiro-a", enabled=False))
    assert pool.instance("kiro-a").disabled is False


@pytest.mark.asyncio
async def test_unknown_instance(pool):
    with pytest.raises(InstanceNotFound):
        await ResetCountersHandler(pool).handle(ResetCountersCommand("claude-kiro-oauth", "nope"))


@pytest.mark.asyncio
async def test_reset_counters(pool):
    inst = pool.instance("kiro-b")
    inst.health = HealthStatus.BANNED
    inst.error_count = 5
    inst.usage_count = 9

    result = await ResetCountersHandler(pool).handle(ResetCountersCommand("claude-kiro-oauth", "kiro-b"))

    assert result.error_count == 0
    assert result.usage_count == 0
    assert result.health == HealthStatus.BANNED


# ═══════════════════════════════════════════════════════════════
#  Usage and pool-wide operations
# ═══════════════════════════════════════════════════════════════
@pytest.mark.asyncio
async def test_refresh_usage_forces_fetch(pool, kiro_upstream):
    handler = RefreshUsageHandler(pool)
    await handler.handle(RefreshUsageCommand("kiro-a"))
    snapshot = await handler.handle(RefreshUsageCommand("kiro-a", provider_type="claude-kiro-oauth"))

    assert kiro_upstream.usage_calls == ["kiro-a", "kiro-a"]
    assert snapshot.quota.used == 10
    assert pool.instance("kiro-a").quota is not None


@pytest.mark.asyncio
async def test_refresh_usage_surfaces_errors(pool, kiro_upstream):
    kiro_upstream.usage_reports["kiro-a"] = UsageNotSupported("claude-kiro-oauth")
    with pytest.raises(UsageNotSupported):
        await RefreshUsageHandler(pool).handle(RefreshUsageCommand("kiro-a"))


@pytest.mark.asyncio
async def test_reload_pool(memory_store):
    pool = CredentialPoolManager([], health=HealthStateMachine(3), store=memory_store)
    total = await ReloadPoolHandler(pool).handle(ReloadPoolCommand())
    assert total == 3
    assert memory_store.loads == 1
    assert {inst.id for inst in pool.list_instances()} == {"kiro-a", "kiro-b", "oa-1"}


@pytest.mark.asyncio
async def test_run_health_check(mock_scheduler):
    summary = await RunHealthCheckHandler(mock_scheduler).handle(RunHealthCheckCommand())
    assert summary["probed"] == 3
    mock_scheduler.run_cycle.assert_awaited_once()
