"""OpenAI-compatible upstream adapter for ``openai-custom`` instances.

Each instance carries a static API key and an optional base URL
(``options["base_url"]``).  Keys never expire, so token refresh is a no-op.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import httpx
import orjson
import structlog

from pool_gateway.domain.enums import ProviderType
from pool_gateway.domain.exceptions import (
    GatewayError,
    ProbeFailed,
    UpstreamRejected,
    UpstreamServerError,
    UpstreamTimeout,
    UsageNotSupported,
    classify_status,
)
from pool_gateway.ports.outbound import UpstreamClient
from pool_gateway.shared.providers.types import CredentialKind, ProviderInstance, UsageReport

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAICustomClient(UpstreamClient):
    def __init__(
        self,
        *,
        timeout: float = 120.0,
        default_base_url: str = DEFAULT_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._default_base_url = default_base_url

    def _base_url(self, instance: ProviderInstance) -> str:
        return str(instance.options.get("base_url") or self._default_base_url).rstrip("/")

    @staticmethod
    def _headers(instance: ProviderInstance) -> dict[str, str]:
        if instance.credential_ref.kind != CredentialKind.API_KEY:
            raise UpstreamRejected(
                "openai-custom instances need an API key", instance_id=instance.id, http_status=401
            )
        return {
            "Authorization": f"Bearer {instance.credential_ref.value}",
            "Content-Type": "application/json",
        }

    async def _post(
        self, instance: ProviderInstance, body: dict[str, Any], *, stream: bool = False
    ) -> httpx.Response:
        request = self._client.build_request(
            "POST",
            f"{self._base_url(instance)}/chat/completions",
            headers=self._headers(instance),
            json=body,
        )
        try:
            response = await self._client.send(request, stream=stream)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"{type(exc).__name__}", instance_id=instance.id) from exc
        except httpx.HTTPError as exc:
            raise UpstreamServerError(f"{type(exc).__name__}: {exc}", instance_id=instance.id) from exc

        if response.status_code >= 400:
            if stream:
                await response.aread()
                await response.aclose()
            raise classify_status(response.status_code, _error_text(response), instance_id=instance.id)
        return response

    # ── Chat ─────────────────────────────────────────────────
    async def chat(self, instance: ProviderInstance, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._post(instance, {**body, "stream": False})
        return response.json()  # type: ignore[no-any-return]

    async def chat_stream(
        self, instance: ProviderInstance, body: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        payload = {**body, "stream": True, "stream_options": {"include_usage": True}}
        response = await self._post(instance, payload, stream=True)
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                if not data:
                    continue
                try:
                    event = orjson.loads(data)
                except orjson.JSONDecodeError:
                    logger.warning("openai_stream_line_unparseable", instance_id=instance.id)
                    continue
                if isinstance(event, dict) and "error" in event:
                    raise UpstreamServerError(
                        f"Upstream stream error: {event['error']}", instance_id=instance.id
                    )
                yield event
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"{type(exc).__name__}", instance_id=instance.id) from exc
        except httpx.HTTPError as exc:
            raise UpstreamServerError(f"{type(exc).__name__}: {exc}", instance_id=instance.id) from exc
        finally:
            await response.aclose()

    # ── Health, tokens and usage ─────────────────────────────
    async def probe(self, instance: ProviderInstance) -> None:
        try:
            request = self._client.build_request(
                "GET", f"{self._base_url(instance)}/models", headers=self._headers(instance)
            )
            response = await self._client.send(request)
        except httpx.TimeoutException as exc:
            raise ProbeFailed(instance.id, type(exc).__name__) from exc
        except httpx.HTTPError as exc:
            raise ProbeFailed(instance.id, f"{type(exc).__name__}: {exc}") from exc
        except GatewayError as exc:
            raise ProbeFailed(instance.id, exc.message) from exc
        if response.status_code >= 400:
            raise ProbeFailed(instance.id, _error_text(response))

    async def fetch_usage(self, instance: ProviderInstance) -> UsageReport:
        raise UsageNotSupported(ProviderType.OPENAI_CUSTOM.value)

    async def refresh_token(self, instance: ProviderInstance, *, force: bool = False) -> datetime | None:
        return None

    async def token_expires_at(self, instance: ProviderInstance) -> datetime | None:
        return None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:300]}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return f"HTTP {response.status_code}: {error['message']}"
    return f"HTTP {response.status_code}: {str(data)[:300]}"


__all__ = ["OpenAICustomClient"]
