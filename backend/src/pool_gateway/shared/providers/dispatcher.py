"""Retrying request dispatcher.

Drives one chat call end to end: system-prompt handling and dialect
translation through the client's protocol strategy, instance selection from
the pool, the upstream call, outcome reporting, and exponential backoff
between attempts on retryable failures.

Each attempt uses a different instance.  Selection returning
``NotAvailable`` ends the call with ``PoolExhausted`` at once.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from pool_gateway.domain.enums import Dialect, ErrorClass, ProviderType, SystemPromptMode
from pool_gateway.domain.exceptions import (
    GatewayError,
    PoolExhausted,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamRejected,
    UpstreamServerError,
    UpstreamTimeout,
)
from pool_gateway.ports.outbound import UpstreamClient
from pool_gateway.shared.observability.metrics import (
    DISPATCH_ATTEMPTS,
    DISPATCH_LATENCY,
    POOL_EXHAUSTED_TOTAL,
)
from pool_gateway.shared.observability.prompt_log import PromptLogger
from pool_gateway.shared.providers.pool import CredentialPoolManager
from pool_gateway.shared.providers.types import DispatchOutcome, NotAvailable, ProviderInstance
from pool_gateway.shared.strategies import ProtocolStrategy, get_strategy
from pool_gateway.shared.strategies.convert import (
    StreamConverter,
    convert_request,
    convert_response,
    stream_converter,
)

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

FATAL_CREDENTIAL_STATUSES = frozenset({401, 402, 403})


@dataclass(frozen=True)
class ChatRequest:
    """An inbound chat call, still in the client's dialect."""

    provider_type: ProviderType
    dialect: Dialect
    body: dict[str, Any]
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class ChatResult:
    """Translated response plus which instance served it."""

    response: dict[str, Any]
    instance_id: str
    attempts: int


@dataclass
class _Prepared:
    request: ChatRequest
    strategy: ProtocolStrategy
    model: str
    native_body: dict[str, Any]

    @property
    def native_dialect(self) -> Dialect:
        return self.request.provider_type.native_dialect


def error_class_for(exc: UpstreamError) -> ErrorClass:
    if isinstance(exc, UpstreamTimeout):
        return ErrorClass.TIMEOUT
    if isinstance(exc, UpstreamRateLimited):
        return ErrorClass.RATE_LIMITED
    if isinstance(exc, UpstreamServerError):
        return ErrorClass.SERVER_ERROR
    if isinstance(exc, UpstreamRejected) and exc.http_status in FATAL_CREDENTIAL_STATUSES:
        return ErrorClass.FATAL_CREDENTIAL
    return ErrorClass.SERVER_ERROR if exc.retryable else ErrorClass.REJECTED


def classify_error(exc: UpstreamError) -> DispatchOutcome:
    """Map an upstream failure onto the outcome reported to the pool."""
    return DispatchOutcome.failed(error_class_for(exc), http_status=exc.http_status, message=exc.message)


class RequestDispatcher:
    """Retry engine between the HTTP layer and the upstream clients."""

    def __init__(
        self,
        pool: CredentialPoolManager,
        upstreams: Mapping[ProviderType, UpstreamClient],
        *,
        max_retries: int = 8,
        base_delay_ms: int = 3000,
        timeout_seconds: float = 120.0,
        system_prompt_path: str | None = None,
        system_prompt_mode: SystemPromptMode = SystemPromptMode.OVERWRITE,
        capture_system_prompt_path: str | None = None,
        prompt_logger: PromptLogger | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._pool = pool
        self._upstreams = upstreams
        self._max_retries = max_retries
        self._base_delay_ms = base_delay_ms
        self._timeout = timeout_seconds
        self._system_prompt_path = system_prompt_path
        self._system_prompt_mode = system_prompt_mode
        self._capture_path = capture_system_prompt_path
        self._prompt_logger = prompt_logger or PromptLogger()
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_retries + 1

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""
        return self._base_delay_ms * (2 ** (attempt - 1)) / 1000.0

    # ── Preparation ──────────────────────────────────────────
    async def _prepare(self, request: ChatRequest) -> _Prepared:
        strategy = get_strategy(request.dialect)
        info = strategy.extract_model_and_stream_info(request.body)
        body = request.body

        if self._capture_path:
            await strategy.manage_system_prompt(body, path=self._capture_path)
        if self._system_prompt_path:
            body = await strategy.apply_system_prompt_from_file(
                body, path=self._system_prompt_path, mode=self._system_prompt_mode
            )

        if self._prompt_logger.enabled:
            await self._prompt_logger.log_prompt(
                strategy.extract_prompt_text(body), request_id=request.request_id, model=info.model
            )

        native = convert_request(
            body, source=request.dialect, target=request.provider_type.native_dialect
        )
        return _Prepared(request=request, strategy=strategy, model=info.model, native_body=native)

    def _upstream(self, provider_type: ProviderType) -> UpstreamClient:
        upstream = self._upstreams.get(provider_type)
        if upstream is None:
            raise GatewayError(f"No upstream client registered for {provider_type.value!r}")
        return upstream

    def _select(
        self, prepared: _Prepared, tried: set[str], last_error: UpstreamError | None
    ) -> ProviderInstance:
        provider_type = prepared.request.provider_type
        chosen = self._pool.select(provider_type, frozenset(tried), model=prepared.model)
        if isinstance(chosen, NotAvailable):
            POOL_EXHAUSTED_TOTAL.labels(provider_type=provider_type.value).inc()
            logger.warning(
                "pool_exhausted",
                provider_type=provider_type.value,
                tried=len(tried),
                reason=chosen.reason,
                request_id=prepared.request.request_id,
            )
            raise PoolExhausted(provider_type.value, last_error)
        tried.add(chosen.id)
        return chosen

    def _record_failure(self, instance: ProviderInstance, exc: UpstreamError) -> None:
        error_class = error_class_for(exc)
        DISPATCH_ATTEMPTS.labels(provider_type=instance.provider_type.value, outcome=error_class.value).inc()
        self._pool.report_outcome(
            instance.id, DispatchOutcome.failed(error_class, http_status=exc.http_status, message=exc.message)
        )

    def _record_success(self, instance: ProviderInstance) -> None:
        DISPATCH_ATTEMPTS.labels(provider_type=instance.provider_type.value, outcome="success").inc()
        self._pool.report_outcome(instance.id, DispatchOutcome.ok())

    async def _backoff(self, attempt: int, log: Any) -> None:
        if attempt >= self.max_attempts:
            return
        delay = self.backoff_seconds(attempt)
        log.info("dispatch_backoff", delay_s=delay)
        await self._sleep(delay)

    # ── Non-streaming ────────────────────────────────────────
    async def dispatch(self, request: ChatRequest) -> ChatResult:
        """Run a non-streaming call.

        Raises:
            PoolExhausted: no eligible instance remained; carries the last
                upstream error, if any.
            UpstreamError: a non-retryable failure from the last instance tried.
        """
        prepared = await self._prepare(request)
        upstream = self._upstream(request.provider_type)
        tried: set[str] = set()
        last_error: UpstreamError | None = None

        for attempt in range(1, self.max_attempts + 1):
            instance = self._select(prepared, tried, last_error)
            log = logger.bind(
                request_id=request.request_id,
                provider_type=request.provider_type.value,
                instance_id=instance.id,
                attempt=attempt,
            )

            start = time.monotonic()
            try:
                native = await asyncio.wait_for(
                    upstream.chat(instance, prepared.native_body), timeout=self._timeout
                )
            except asyncio.TimeoutError:
                last_error = UpstreamTimeout(
                    f"Timeout after {self._timeout}s", instance_id=instance.id
                )
            except UpstreamError as exc:
                last_error = exc
            else:
                latency = time.monotonic() - start
                DISPATCH_LATENCY.labels(
                    provider_type=request.provider_type.value, stream="false"
                ).observe(latency)
                self._record_success(instance)
                log.info("dispatch_succeeded", latency_ms=round(latency * 1000, 1))

                response = convert_response(
                    native,
                    source=prepared.native_dialect,
                    target=request.dialect,
                    model=prepared.model,
                )
                if self._prompt_logger.enabled:
                    await self._prompt_logger.log_response(
                        prepared.strategy.extract_response_text(response),
                        request_id=request.request_id,
                        model=prepared.model,
                    )
                return ChatResult(response=response, instance_id=instance.id, attempts=attempt)

            self._record_failure(instance, last_error)
            log.warning(
                "dispatch_attempt_failed",
                error=last_error.message,
                http_status=last_error.http_status,
                retryable=last_error.retryable,
            )
            if not last_error.retryable:
                raise last_error
            await self._backoff(attempt, log)

        POOL_EXHAUSTED_TOTAL.labels(provider_type=request.provider_type.value).inc()
        raise PoolExhausted(request.provider_type.value, last_error)

    # ── Streaming ────────────────────────────────────────────
    async def dispatch_stream(self, request: ChatRequest) -> AsyncIterator[bytes]:
        """Open a streaming call and return the client-dialect SSE byte stream.

        Attempts are retried until an upstream yields its first event.  From
        then on the call is bound to that instance: a later failure ends the
        returned stream with an error event in the client's dialect.  Errors
        before the first event are raised from this coroutine, so the caller
        can still answer with a plain HTTP error.
        """
        prepared = await self._prepare(request)
        upstream = self._upstream(request.provider_type)
        tried: set[str] = set()
        last_error: UpstreamError | None = None

        for attempt in range(1, self.max_attempts + 1):
            instance = self._select(prepared, tried, last_error)
            log = logger.bind(
                request_id=request.request_id,
                provider_type=request.provider_type.value,
                instance_id=instance.id,
                attempt=attempt,
                stream=True,
            )

            events = upstream.chat_stream(instance, prepared.native_body).__aiter__()
            start = time.monotonic()
            try:
                first = await asyncio.wait_for(events.__anext__(), timeout=self._timeout)
            except StopAsyncIteration:
                # Upstream closed without sending anything
                return self._relay(prepared, instance, events, None, log)
            except asyncio.TimeoutError:
                last_error = UpstreamTimeout(
                    f"No stream data after {self._timeout}s", instance_id=instance.id
                )
            except UpstreamError as exc:
                last_error = exc
            else:
                DISPATCH_LATENCY.labels(
                    provider_type=request.provider_type.value, stream="true"
                ).observe(time.monotonic() - start)
                log.info("dispatch_stream_opened")
                return self._relay(prepared, instance, events, first, log)

            await _aclose(events)
            self._record_failure(instance, last_error)
            log.warning(
                "dispatch_attempt_failed",
                error=last_error.message,
                http_status=last_error.http_status,
                retryable=last_error.retryable,
            )
            if not last_error.retryable:
                raise last_error
            await self._backoff(attempt, log)

        POOL_EXHAUSTED_TOTAL.labels(provider_type=request.provider_type.value).inc()
        raise PoolExhausted(request.provider_type.value, last_error)

    async def _relay(
        self,
        prepared: _Prepared,
        instance: ProviderInstance,
        events: AsyncIterator[dict[str, Any]],
        first: dict[str, Any] | None,
        log: Any,
    ) -> AsyncIterator[bytes]:
        strategy = prepared.strategy
        converter: StreamConverter = stream_converter(
            source=prepared.native_dialect, target=prepared.request.dialect, model=prepared.model
        )
        collected: list[str] = []

        def _render(native_event: dict[str, Any]) -> list[bytes]:
            out = []
            for event in converter.feed(native_event):
                if self._prompt_logger.enabled:
                    collected.append(strategy.extract_response_text(event))
                out.append(strategy.format_sse(event))
            return out

        try:
            if first is not None:
                for chunk in _render(first):
                    yield chunk
            while True:
                try:
                    native_event = await asyncio.wait_for(events.__anext__(), timeout=self._timeout)
                except StopAsyncIteration:
                    break
                for chunk in _render(native_event):
                    yield chunk
        except (asyncio.TimeoutError, UpstreamError) as exc:
            error = (
                exc
                if isinstance(exc, UpstreamError)
                else UpstreamTimeout(f"Stream stalled for {self._timeout}s", instance_id=instance.id)
            )
            # Tokens already reached the client; never retry on another instance
            self._record_failure(instance, error)
            log.warning("dispatch_stream_failed", error=error.message, http_status=error.http_status)
            yield strategy.stream_error_event(error.status_code, error.message)
            return
        finally:
            # Also runs on client disconnect, cancelling the upstream call
            await _aclose(events)

        for event in converter.finish():
            if self._prompt_logger.enabled:
                collected.append(strategy.extract_response_text(event))
            yield strategy.format_sse(event)
        yield strategy.stream_terminator()

        self._record_success(instance)
        log.info("dispatch_stream_completed")
        if self._prompt_logger.enabled:
            await self._prompt_logger.log_response(
                "".join(collected), request_id=prepared.request.request_id, model=prepared.model
            )


async def _aclose(events: AsyncIterator[Any]) -> None:
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
        await aclose()
