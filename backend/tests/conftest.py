"""Shared test fixtures: instance factories, a scripted upstream and an in-memory store."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

import pytest

from pool_gateway.domain.enums import Dialect, ProviderType
from pool_gateway.domain.exceptions import RefreshFailed
from pool_gateway.ports.outbound import PoolStore, UpstreamClient
from pool_gateway.shared.providers.health import HealthStateMachine
from pool_gateway.shared.providers.pool import CredentialPoolManager
from pool_gateway.shared.providers.types import (
    CredentialKind,
    CredentialRef,
    ProviderInstance,
    QuotaInfo,
    UsageReport,
)

MakeInstance = Callable[..., ProviderInstance]


# ═══════════════════════════════════════════════════════════════
#  Fakes
# ═══════════════════════════════════════════════════════════════
def claude_message(model: str, text: str = "hello") -> dict[str, Any]:
    return {
        "id": "msg_test",
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": 3, "output_tokens": 1},
    }


def openai_completion(model: str, text: str = "hello") -> dict[str, Any]:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1,
        "model": model,
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
    }


def claude_stream_events(model: str, text: str = "hello") -> list[dict[str, Any]]:
    return [
        {
            "type": "message_start",
            "message": {"id": "msg_test", "type": "message", "role": "assistant", "model": model,
                        "content": [], "usage": {"input_tokens": 0, "output_tokens": 0}},
        },
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 1}},
        {"type": "message_stop"},
    ]


def openai_stream_chunks(model: str, text: str = "hello") -> list[dict[str, Any]]:
    base = {"id": "chatcmpl-test", "object": "chat.completion.chunk", "created": 1, "model": model}
    return [
        {**base, "choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}, "finish_reason": None}]},
        {**base, "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}]},
        {**base, "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
    ]


class FakeUpstream(UpstreamClient):
    """Scripted upstream.  Per-instance scripts fall back to a canned success.

    A script value that is an exception is raised instead of returned;
    ``chat_replies`` entries are lists consumed one call at a time.
    """

    def __init__(self, dialect: Dialect, *, models: tuple[str, ...] = ()) -> None:
        self.dialect = dialect
        self.models = models
        self.chat_replies: dict[str, list[dict[str, Any] | Exception]] = {}
        self.stream_scripts: dict[str, list[dict[str, Any] | Exception]] = {}
        self.probe_failures: dict[str, Exception] = {}
        self.usage_reports: dict[str, UsageReport | Exception] = {}
        self.expiries: dict[str, datetime | None] = {}
        self.refreshed_expiry: datetime | None = None
        self.refresh_failures: set[str] = set()
        self.refresh_errors: dict[str, Exception] = {}

        self.chat_calls: list[tuple[str, dict[str, Any]]] = []
        self.stream_calls: list[str] = []
        self.closed_streams: list[str] = []
        self.probed: list[str] = []
        self.usage_calls: list[str] = []
        self.refresh_calls: list[tuple[str, bool]] = []
        self.closed = False

    def _reply(self, body: dict[str, Any]) -> dict[str, Any]:
        model = body.get("model") or "test-model"
        if self.dialect == Dialect.CLAUDE:
            return claude_message(model)
        return openai_completion(model)

    def _events(self, body: dict[str, Any]) -> list[dict[str, Any]]:
        model = body.get("model") or "test-model"
        if self.dialect == Dialect.CLAUDE:
            return claude_stream_events(model)
        return openai_stream_chunks(model)

    async def chat(self, instance: ProviderInstance, body: dict[str, Any]) -> dict[str, Any]:
        self.chat_calls.append((instance.id, body))
        script = self.chat_replies.get(instance.id)
        if script:
            reply = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(reply, Exception):
                raise reply
            return reply
        return self._reply(body)

    async def chat_stream(
        self, instance: ProviderInstance, body: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        self.stream_calls.append(instance.id)
        script = self.stream_scripts.get(instance.id) or self._events(body)
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed_streams.append(instance.id)

    async def probe(self, instance: ProviderInstance) -> None:
        self.probed.append(instance.id)
        failure = self.probe_failures.get(instance.id)
        if failure is not None:
            raise failure

    async def fetch_usage(self, instance: ProviderInstance) -> UsageReport:
        self.usage_calls.append(instance.id)
        report = self.usage_reports.get(instance.id)
        if isinstance(report, Exception):
            raise report
        if report is None:
            return UsageReport(quota=QuotaInfo.from_totals(10, 100, unit="INVOCATIONS"))
        return report

    async def refresh_token(self, instance: ProviderInstance, *, force: bool = False) -> datetime | None:
        self.refresh_calls.append((instance.id, force))
        if instance.id in self.refresh_failures:
            raise RefreshFailed(instance.id, "refresh rejected")
        if instance.id in self.refresh_errors:
            raise self.refresh_errors[instance.id]
        return self.refreshed_expiry

    async def token_expires_at(self, instance: ProviderInstance) -> datetime | None:
        return self.expiries.get(instance.id)

    def list_models(self) -> list[str]:
        return list(self.models)

    async def close(self) -> None:
        self.closed = True


class MemoryPoolStore(PoolStore):
    """Keeps pool definitions in memory and records every save and probe."""

    def __init__(self, factory: Callable[[], list[ProviderInstance]]) -> None:
        self.factory = factory
        self.loads = 0
        self.saves: list[list[str]] = []
        self.probes: list[dict[str, Any]] = []
        self.closed = False

    async def load(self) -> list[ProviderInstance]:
        self.loads += 1
        return self.factory()

    async def save(self, instances: list[ProviderInstance]) -> None:
        self.saves.append([inst.id for inst in instances])

    async def record_probe(
        self, instance: ProviderInstance, *, success: bool, error: str | None
    ) -> None:
        self.probes.append({"instanceId": instance.id, "healthy": success, "errorMessage": error})

    async def health_history(self, instance_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        matching = [p for p in self.probes if p["instanceId"] == instance_id]
        return list(reversed(matching))[:limit]

    async def close(self) -> None:
        self.closed = True


# ═══════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════
@pytest.fixture
def make_instance() -> MakeInstance:
    def _make(
        instance_id: str,
        provider_type: ProviderType = ProviderType.CLAUDE_KIRO_OAUTH,
        **fields: Any,
    ) -> ProviderInstance:
        if provider_type == ProviderType.OPENAI_CUSTOM:
            ref = CredentialRef(CredentialKind.API_KEY, f"sk-{instance_id}")
        else:
            ref = CredentialRef(CredentialKind.FILE, f"/creds/{instance_id}.json")
        return ProviderInstance(
            id=instance_id, provider_type=provider_type, credential_ref=ref, **fields
        )

    return _make


@pytest.fixture
def kiro_upstream() -> FakeUpstream:
    return FakeUpstream(Dialect.CLAUDE, models=("claude-sonnet-4-5", "claude-haiku-4-5"))


@pytest.fixture
def openai_upstream() -> FakeUpstream:
    return FakeUpstream(Dialect.OPENAI, models=("gpt-4o",))


@pytest.fixture
def upstreams(
    kiro_upstream: FakeUpstream, openai_upstream: FakeUpstream
) -> dict[ProviderType, UpstreamClient]:
    return {
        ProviderType.CLAUDE_KIRO_OAUTH: kiro_upstream,
        ProviderType.OPENAI_CUSTOM: openai_upstream,
    }


@pytest.fixture
def kiro_instances(make_instance: MakeInstance) -> list[ProviderInstance]:
    return [make_instance("kiro-a"), make_instance("kiro-b"), make_instance("kiro-c")]


@pytest.fixture
def pool(
    kiro_instances: list[ProviderInstance], upstreams: dict[ProviderType, UpstreamClient]
) -> CredentialPoolManager:
    async def usage_query(inst: ProviderInstance) -> UsageReport:
        return await upstreams[inst.provider_type].fetch_usage(inst)

    return CredentialPoolManager(
        kiro_instances,
        health=HealthStateMachine(max_error_count=3),
        usage_query=usage_query,
        usage_ttl_seconds=300,
    )


@pytest.fixture
def memory_store(make_instance: MakeInstance) -> MemoryPoolStore:
    def _definitions() -> list[ProviderInstance]:
        return [
            make_instance("kiro-a"),
            make_instance("kiro-b"),
            make_instance("oa-1", ProviderType.OPENAI_CUSTOM),
        ]

    return MemoryPoolStore(_definitions)
