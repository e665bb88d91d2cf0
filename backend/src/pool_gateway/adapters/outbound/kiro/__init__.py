"""Kiro (CodeWhisperer) upstream adapter for ``claude-kiro-oauth`` instances.

Speaks Claude Messages on the pool side and the CodeWhisperer
``generateAssistantResponse`` API on the wire.  Responses arrive as an AWS
binary event stream and are re-emitted as Claude stream events.

Tokens are refreshed lazily before a call when they expire within five
minutes, on demand by the refresh scheduler, and once after a 403.
Refreshes for one instance are serialised by a per-instance lock.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
import orjson
import structlog

from pool_gateway.adapters.outbound.kiro.credentials import (
    DEFAULT_REGION,
    CredentialError,
    KiroCredentials,
    load_credentials,
    save_credentials,
)
from pool_gateway.adapters.outbound.kiro.eventstream import EventMessage, EventStreamDecoder
from pool_gateway.adapters.outbound.kiro.request import (
    CHECK_MODEL,
    DEFAULT_MODEL,
    KIRO_MODELS,
    ORIGIN_AI_EDITOR,
    build_request,
)
from pool_gateway.adapters.outbound.kiro.usage import format_usage
from pool_gateway.domain.exceptions import (
    GatewayError,
    ProbeFailed,
    RefreshFailed,
    UpstreamRejected,
    UpstreamServerError,
    UpstreamTimeout,
    classify_status,
)
from pool_gateway.ports.outbound import UpstreamClient
from pool_gateway.shared.providers.types import ProviderInstance, UsageReport, utcnow

logger = structlog.get_logger(__name__)

REFRESH_URL = "https://prod.{region}.auth.desktop.kiro.dev/refreshToken"
REFRESH_IDC_URL = "https://oidc.{region}.amazonaws.com/token"
BASE_URL = "https://codewhisperer.{region}.amazonaws.com/generateAssistantResponse"
USAGE_LIMITS_URL = "https://q.{region}.amazonaws.com/getUsageLimits"
KIRO_VERSION = "0.7.45"
EXPIRE_WINDOW = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


@dataclass(frozen=True)
class _Call:
    method: str
    url: str
    json: dict[str, Any] | None = None
    params: dict[str, str] | None = None


# ═══════════════════════════════════════════════════════════════
#  Event assembly
# ═══════════════════════════════════════════════════════════════
class KiroResponseAssembler:
    """Turns decoded Kiro events into Claude stream events and a final message."""

    def __init__(self, model: str) -> None:
        self.model = model
        self._message_id = f"msg_{uuid.uuid4().hex[:24]}"
        self._index = -1
        self._open: str | None = None
        self._blocks: list[dict[str, Any]] = []
        self._tool_inputs: dict[int, list[str]] = {}
        self._tool_index: dict[str, int] = {}
        self._output_chars = 0

    def start(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "message_start",
                "message": {
                    "id": self._message_id,
                    "type": "message",
                    "role": "assistant",
                    "model": self.model,
                    "content": [],
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": 0, "output_tokens": 0},
                },
            }
        ]

    def _close(self) -> list[dict[str, Any]]:
        if self._open is None:
            return []
        self._open = None
        return [{"type": "content_block_stop", "index": self._index}]

    def _begin(self, block: dict[str, Any]) -> list[dict[str, Any]]:
        events = self._close()
        self._index += 1
        self._open = block["type"]
        self._blocks.append(dict(block))
        events.append({"type": "content_block_start", "index": self._index, "content_block": block})
        return events

    def feed(self, message: EventMessage) -> list[dict[str, Any]]:
        if message.message_type in ("exception", "error"):
            detail = message.payload.decode("utf-8", errors="replace")
            raise UpstreamServerError(f"Upstream stream error ({message.event_type}): {detail[:300]}")

        try:
            data = message.json()
        except orjson.JSONDecodeError:
            logger.warning("kiro_event_unparseable", event_type=message.event_type)
            return []

        if message.event_type == "assistantResponseEvent":
            return self._on_text(data.get("content") or "")
        if message.event_type == "toolUseEvent":
            return self._on_tool_use(data)
        return []

    def _on_text(self, text: str) -> list[dict[str, Any]]:
        if not text:
            return []
        events = [] if self._open == "text" else self._begin({"type": "text", "text": ""})
        self._blocks[self._index]["text"] += text
        self._output_chars += len(text)
        events.append(
            {
                "type": "content_block_delta",
                "index": self._index,
                "delta": {"type": "text_delta", "text": text},
            }
        )
        return events

    def _on_tool_use(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        tool_use_id = data.get("toolUseId") or ""
        events: list[dict[str, Any]] = []
        if tool_use_id not in self._tool_index:
            events.extend(
                self._begin(
                    {"type": "tool_use", "id": tool_use_id, "name": data.get("name", ""), "input": {}}
                )
            )
            self._tool_index[tool_use_id] = self._index
            self._tool_inputs[self._index] = []

        index = self._tool_index[tool_use_id]
        fragment = data.get("input")
        if isinstance(fragment, dict):
            fragment = orjson.dumps(fragment).decode()
        if fragment:
            self._tool_inputs[index].append(fragment)
            self._output_chars += len(fragment)
            events.append(
                {
                    "type": "content_block_delta",
                    "index": index,
                    "delta": {"type": "input_json_delta", "partial_json": fragment},
                }
            )
        if data.get("stop") and self._open == "tool_use" and index == self._index:
            events.extend(self._close())
        return events

    @property
    def stop_reason(self) -> str:
        return "tool_use" if self._tool_index else "end_turn"

    @property
    def output_tokens(self) -> int:
        return max(1, self._output_chars // 4) if self._output_chars else 0

    def finish(self) -> list[dict[str, Any]]:
        events = self._close()
        events.append(
            {
                "type": "message_delta",
                "delta": {"stop_reason": self.stop_reason, "stop_sequence": None},
                "usage": {"output_tokens": self.output_tokens},
            }
        )
        events.append({"type": "message_stop"})
        return events

    def message(self) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        for index, block in enumerate(self._blocks):
            if block["type"] == "tool_use":
                raw = "".join(self._tool_inputs.get(index, []))
                try:
                    parsed = orjson.loads(raw) if raw else {}
                except orjson.JSONDecodeError:
                    parsed = {"raw": raw}
                block = {**block, "input": parsed}
            content.append(block)
        return {
            "id": self._message_id,
            "type": "message",
            "role": "assistant",
            "model": self.model,
            "content": content,
            "stop_reason": self.stop_reason,
            "stop_sequence": None,
            "usage": {"input_tokens": 0, "output_tokens": self.output_tokens},
        }


# ═══════════════════════════════════════════════════════════════
#  Client
# ═══════════════════════════════════════════════════════════════
class KiroClient(UpstreamClient):
    """Upstream client for every ``claude-kiro-oauth`` instance in the pool."""

    def __init__(
        self,
        *,
        timeout: float = 120.0,
        default_region: str = DEFAULT_REGION,
        expire_window: timedelta = EXPIRE_WINDOW,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._default_region = default_region
        self._expire_window = expire_window
        self._creds: dict[str, KiroCredentials] = {}
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    def list_models(self) -> list[str]:
        return list(KIRO_MODELS)

    # ── Credentials ──────────────────────────────────────────
    async def _credentials(self, instance: ProviderInstance) -> KiroCredentials:
        creds = self._creds.get(instance.id)
        if creds is None:
            creds = await load_credentials(instance.credential_ref, default_region=self._default_region)
            self._creds[instance.id] = creds
        return creds

    async def token_expires_at(self, instance: ProviderInstance) -> datetime | None:
        return (await self._credentials(instance)).expires_at

    async def refresh_token(self, instance: ProviderInstance, *, force: bool = False) -> datetime | None:
        return await self._refresh(instance, force=force)

    async def _refresh(
        self, instance: ProviderInstance, *, force: bool, stale_token: str | None = None
    ) -> datetime | None:
        lock = self._refresh_locks.setdefault(instance.id, asyncio.Lock())
        async with lock:
            try:
                creds = await self._credentials(instance)
            except CredentialError as exc:
                raise RefreshFailed(instance.id, exc.message) from exc

            if stale_token is not None and creds.access_token != stale_token:
                # Another caller refreshed while we waited for the lock
                return creds.expires_at
            if not force and not creds.expires_within(self._expire_window):
                return creds.expires_at
            if not creds.refresh_token:
                raise RefreshFailed(instance.id, "no refresh token available")

            if creds.is_social:
                url = REFRESH_URL.format(region=creds.region)
                payload: dict[str, Any] = {"refreshToken": creds.refresh_token}
            else:
                url = REFRESH_IDC_URL.format(region=creds.region)
                payload = {
                    "refreshToken": creds.refresh_token,
                    "clientId": creds.client_id,
                    "clientSecret": creds.client_secret,
                    "grantType": "refresh_token",
                }

            try:
                response = await self._client.post(url, json=payload)
            except httpx.HTTPError as exc:
                raise RefreshFailed(instance.id, f"{type(exc).__name__}: {exc}") from exc
            if response.status_code != 200:
                raise RefreshFailed(instance.id, f"HTTP {response.status_code}: {response.text[:200]}")

            try:
                data = response.json()
            except ValueError as exc:
                raise RefreshFailed(instance.id, f"refresh response is not JSON: {response.text[:200]}") from exc
            if not isinstance(data, dict):
                raise RefreshFailed(instance.id, "refresh response is not an object")
            access_token = data.get("accessToken")
            if not access_token:
                raise RefreshFailed(instance.id, "refresh response has no accessToken")

            try:
                if data.get("expiresIn") is not None:
                    expires_at = utcnow() + timedelta(seconds=float(data["expiresIn"]))
                elif data.get("expiresAt"):
                    expires_at = KiroCredentials.from_dict({"expiresAt": data["expiresAt"]}).expires_at or (
                        utcnow() + DEFAULT_TOKEN_LIFETIME
                    )
                else:
                    expires_at = utcnow() + DEFAULT_TOKEN_LIFETIME
            except (ValueError, TypeError, OverflowError) as exc:
                raise RefreshFailed(instance.id, f"invalid token expiry: {exc}") from exc

            updated = creds.refreshed(
                access_token=access_token,
                refresh_token=data.get("refreshToken"),
                profile_arn=data.get("profileArn"),
                expires_at=expires_at,
            )
            self._creds[instance.id] = updated
            try:
                await save_credentials(instance.credential_ref, updated)
            except OSError as exc:
                logger.warning("kiro_credentials_not_saved", instance_id=instance.id, error=str(exc))

            logger.info(
                "kiro_token_refreshed",
                instance_id=instance.id,
                auth_method=creds.auth_method,
                expires_at=expires_at.isoformat(),
            )
            return expires_at

    async def _ensure_token(self, instance: ProviderInstance) -> KiroCredentials:
        try:
            creds = await self._credentials(instance)
        except CredentialError as exc:
            raise UpstreamRejected(exc.message, instance_id=instance.id, http_status=401) from exc

        if creds.refresh_token and creds.expires_within(self._expire_window):
            try:
                await self._refresh(instance, force=False)
            except RefreshFailed as exc:
                # Try the current token; the upstream decides whether it still works
                logger.warning("kiro_lazy_refresh_failed", instance_id=instance.id, error=exc.message)
            creds = self._creds[instance.id]

        if not creds.access_token:
            raise UpstreamRejected("no access token available", instance_id=instance.id, http_status=401)
        return creds

    # ── Transport ────────────────────────────────────────────
    @staticmethod
    def _headers(creds: KiroCredentials) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {creds.access_token}",
            "amz-sdk-invocation-id": str(uuid.uuid4()),
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"KiroIDE-{KIRO_VERSION}",
        }

    async def _send(
        self,
        instance: ProviderInstance,
        build: Callable[[KiroCredentials], _Call],
        *,
        stream: bool = False,
    ) -> httpx.Response:
        """Send a call, retrying once with a fresh token after a 403."""
        creds = await self._ensure_token(instance)
        retried = False
        while True:
            call = build(creds)
            request = self._client.build_request(
                call.method, call.url, json=call.json, params=call.params, headers=self._headers(creds)
            )
            try:
                response = await self._client.send(request, stream=stream)
            except httpx.TimeoutException as exc:
                raise UpstreamTimeout(f"{type(exc).__name__}", instance_id=instance.id) from exc
            except httpx.HTTPError as exc:
                raise UpstreamServerError(f"{type(exc).__name__}: {exc}", instance_id=instance.id) from exc

            if response.status_code < 400:
                return response

            if stream:
                await response.aread()
                await response.aclose()

            if response.status_code == 403 and not retried:
                retried = True
                logger.info("kiro_403_refreshing_token", instance_id=instance.id)
                try:
                    await self._refresh(instance, force=True, stale_token=creds.access_token)
                except RefreshFailed as exc:
                    logger.warning("kiro_403_refresh_failed", instance_id=instance.id, error=exc.message)
                else:
                    creds = self._creds[instance.id]
                    continue

            raise classify_status(
                response.status_code, _error_text(response), instance_id=instance.id
            )

    def _generate_call(self, body: dict[str, Any]) -> Callable[[KiroCredentials], _Call]:
        def _build(creds: KiroCredentials) -> _Call:
            payload = build_request(body, profile_arn=creds.profile_arn if creds.is_social else None)
            return _Call("POST", BASE_URL.format(region=creds.region), json=payload)

        return _build

    # ── Chat ─────────────────────────────────────────────────
    async def chat(self, instance: ProviderInstance, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._send(instance, self._generate_call(body))
        assembler = KiroResponseAssembler(body.get("model") or DEFAULT_MODEL)
        decoder = EventStreamDecoder()
        for message in decoder.feed(response.content):
            assembler.feed(message)
        assembler.finish()
        return assembler.message()

    async def chat_stream(
        self, instance: ProviderInstance, body: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        response = await self._send(instance, self._generate_call(body), stream=True)
        assembler = KiroResponseAssembler(body.get("model") or DEFAULT_MODEL)
        decoder = EventStreamDecoder()
        try:
            for event in assembler.start():
                yield event
            async for chunk in response.aiter_bytes():
                for message in decoder.feed(chunk):
                    for event in assembler.feed(message):
                        yield event
            for event in assembler.finish():
                yield event
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"{type(exc).__name__}", instance_id=instance.id) from exc
        except httpx.HTTPError as exc:
            raise UpstreamServerError(f"{type(exc).__name__}: {exc}", instance_id=instance.id) from exc
        finally:
            await response.aclose()

    # ── Health and usage ─────────────────────────────────────
    async def probe(self, instance: ProviderInstance) -> None:
        body = {
            "model": instance.check_model_name or CHECK_MODEL,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "Hi"}],
        }
        try:
            await self.chat(instance, body)
        except GatewayError as exc:
            raise ProbeFailed(instance.id, exc.message) from exc

    async def fetch_usage(self, instance: ProviderInstance) -> UsageReport:
        def _build(creds: KiroCredentials) -> _Call:
            params = {
                "isEmailRequired": "true",
                "origin": ORIGIN_AI_EDITOR,
                "resourceType": "AGENTIC_REQUEST",
            }
            if creds.is_social and creds.profile_arn:
                params["profileArn"] = creds.profile_arn
            return _Call("GET", USAGE_LIMITS_URL.format(region=creds.region), params=params)

        response = await self._send(instance, _build)
        try:
            return format_usage(response.json())
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            raise UpstreamServerError(
                f"Malformed usage response: {type(exc).__name__}: {exc}", instance_id=instance.id
            ) from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:300]}"
    if isinstance(data, dict):
        message = data.get("message") or data.get("Message") or data.get("error")
        if message:
            return f"HTTP {response.status_code}: {message}"
    return f"HTTP {response.status_code}: {str(data)[:300]}"


__all__ = ["KiroClient", "KiroResponseAssembler"]
