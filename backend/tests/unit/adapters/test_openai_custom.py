"""Tests for the OpenAI-compatible upstream adapter."""

from __future__ import annotations

import httpx
import orjson
import pytest
import respx

from pool_gateway.adapters.outbound.openai_custom import OpenAICustomClient
from pool_gateway.domain.enums import ProviderType
from pool_gateway.domain.exceptions import (
    ProbeFailed,
    UpstreamRateLimited,
    UpstreamRejected,
    UpstreamServerError,
    UpstreamTimeout,
    UsageNotSupported,
)
from pool_gateway.shared.providers.types import CredentialKind, CredentialRef, ProviderInstance

BASE = "https://llm.internal.example/v1"
BODY = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]}


def _sse(*events: dict | str) -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else orjson.dumps(event).decode()
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


@pytest.fixture
def instance() -> ProviderInstance:
    return ProviderInstance(
        id="oa-1",
        provider_type=ProviderType.OPENAI_CUSTOM,
        credential_ref=CredentialRef(CredentialKind.API_KEY, "sk-test"),
        options={"base_url": f"{BASE}/"},
    )


@pytest.fixture
def mock_http():
    with respx.mock(assert_all_called=False) as router:
        yield router


@pytest.fixture
async def client():
    upstream = OpenAICustomClient(timeout=5.0)
    yield upstream
    await upstream.close()


class TestChat:
    @pytest.mark.asyncio
    async def test_chat_posts_to_base_url(self, client, instance, mock_http) -> None:
        route = mock_http.post(f"{BASE}/chat/completions").mock(
            return_value=httpx.Response(200, json={"id": "chatcmpl-1", "choices": []})
        )
        result = await client.chat(instance, {**BODY, "stream": True})

        assert result["id"] == "chatcmpl-1"
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert orjson.loads(request.content)["stream"] is False

    @pytest.mark.asyncio
    async def test_default_base_url(self, mock_http) -> None:
        upstream = OpenAICustomClient(default_base_url="https://fallback.example/v1")
        instance = ProviderInstance(
            id="oa-2",
            provider_type=ProviderType.OPENAI_CUSTOM,
            credential_ref=CredentialRef(CredentialKind.API_KEY, "sk-2"),
        )
        route = mock_http.post("https://fallback.example/v1/chat/completions").mock(
            return_value=httpx.Response(200, json={"choices": []})
        )
        await upstream.chat(instance, BODY)
        await upstream.close()
        assert route.call_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "error_type"),
        [(429, UpstreamRateLimited), (502, UpstreamServerError), (404, UpstreamRejected)],
    )
    async def test_http_errors_are_classified(
        self, client, instance, mock_http, status, error_type
    ) -> None:
        mock_http.post(f"{BASE}/chat/completions").mock(
            return_value=httpx.Response(status, json={"error": {"message": "model overloaded"}})
        )
        with pytest.raises(error_type, match="model overloaded"):
            await client.chat(instance, BODY)

    @pytest.mark.asyncio
    async def test_timeout(self, client, instance, mock_http) -> None:
        mock_http.post(f"{BASE}/chat/completions").mock(side_effect=httpx.ReadTimeout)
        with pytest.raises(UpstreamTimeout):
            await client.chat(instance, BODY)

    @pytest.mark.asyncio
    async def test_non_api_key_credential_is_fatal(self, client, mock_http) -> None:
        instance = ProviderInstance(
            id="oa-bad",
            provider_type=ProviderType.OPENAI_CUSTOM,
            credential_ref=CredentialRef(CredentialKind.FILE, "/creds/oa.json"),
        )
        with pytest.raises(UpstreamRejected) as excinfo:
            await client.chat(instance, BODY)
        assert excinfo.value.http_status == 401


class TestChatStream:
    @pytest.mark.asyncio
    async def test_parses_sse_until_done(self, client, instance, mock_http) -> None:
        route = mock_http.post(f"{BASE}/chat/completions").mock(
            return_value=httpx.Response(
                200,
                content=_sse(
                    {"choices": [{"delta": {"content": "a"}}]},
                    {"choices": [{"delta": {"content": "b"}}]},
                    "[DONE]",
                    {"choices": [{"delta": {"content": "after done"}}]},
                ),
            )
        )
        events = [e async for e in client.chat_stream(instance, BODY)]

        assert [e["choices"][0]["delta"]["content"] for e in events] == ["a", "b"]
        sent = orjson.loads(route.calls[0].request.content)
        assert sent["stream"] is True
        assert sent["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_skips_comments_and_bad_lines(self, client, instance, mock_http) -> None:
        content = b": keep-alive\n\ndata: {not json}\n\n" + _sse({"choices": []}, "[DONE]")
        mock_http.post(f"{BASE}/chat/completions").mock(return_value=httpx.Response(200, content=content))
        events = [e async for e in client.chat_stream(instance, BODY)]
        assert events == [{"choices": []}]

    @pytest.mark.asyncio
    async def test_error_event_mid_stream(self, client, instance, mock_http) -> None:
        mock_http.post(f"{BASE}/chat/completions").mock(
            return_value=httpx.Response(
                200,
                content=_sse({"choices": [{"delta": {"content": "a"}}]}, {"error": {"message": "boom"}}),
            )
        )
        received = []
        with pytest.raises(UpstreamServerError, match="boom"):
            async for event in client.chat_stream(instance, BODY):
                received.append(event)
        assert len(received) == 1


class TestProbeAndUsage:
    @pytest.mark.asyncio
    async def test_probe_lists_models(self, client, instance, mock_http) -> None:
        route = mock_http.get(f"{BASE}/models").mock(return_value=httpx.Response(200, json={"data": []}))
        await client.probe(instance)
        assert route.calls[0].request.headers["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_probe_failure(self, client, instance, mock_http) -> None:
        mock_http.get(f"{BASE}/models").mock(
            return_value=httpx.Response(401, json={"error": {"message": "invalid key"}})
        )
        with pytest.raises(ProbeFailed, match="invalid key"):
            await client.probe(instance)

    @pytest.mark.asyncio
    async def test_probe_connection_error(self, client, instance, mock_http) -> None:
        mock_http.get(f"{BASE}/models").mock(side_effect=httpx.ConnectError)
        with pytest.raises(ProbeFailed, match="ConnectError"):
            await client.probe(instance)

    @pytest.mark.asyncio
    async def test_usage_and_tokens(self, client, instance) -> None:
        with pytest.raises(UsageNotSupported):
            await client.fetch_usage(instance)
        assert await client.refresh_token(instance, force=True) is None
        assert await client.token_expires_at(instance) is None
