"""Global exception handlers — map gateway errors to HTTP responses.

Chat endpoints answer in the client's own dialect so SDKs can parse the
error; management endpoints use the plain ``{"code", "message"}`` shape.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

from pool_gateway.domain.enums import Dialect
from pool_gateway.domain.exceptions import (
    AuthenticationError,
    GatewayError,
    PoolExhausted,
    UpstreamError,
)
from pool_gateway.shared.strategies import get_strategy

logger = structlog.get_logger(__name__)

CLAUDE_PATH_SUFFIX = "/v1/messages"
OPENAI_PATH_SUFFIXES = ("/v1/chat/completions", "/v1/models")


def dialect_for_path(path: str) -> Dialect | None:
    """Dialect of a chat endpoint, or None for the gateway's own endpoints."""
    path = path.rstrip("/")
    if path.endswith(CLAUDE_PATH_SUFFIX):
        return Dialect.CLAUDE
    if path.endswith(OPENAI_PATH_SUFFIXES):
        return Dialect.OPENAI
    return None


def error_response(request: Request, status_code: int, code: str, message: str) -> ORJSONResponse:
    dialect = dialect_for_path(request.url.path)
    if dialect is None:
        content = {"code": code, "message": message}
    else:
        content = get_strategy(dialect).error_body(status_code, message)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return ORJSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all gateway→HTTP exception mappings."""

    @app.exception_handler(AuthenticationError)
    async def handle_authn(request: Request, exc: AuthenticationError) -> ORJSONResponse:
        logger.info("authentication_failed", path=request.url.path)
        return error_response(request, 401, exc.code, exc.message)

    @app.exception_handler(PoolExhausted)
    async def handle_exhausted(request: Request, exc: PoolExhausted) -> ORJSONResponse:
        # Surface the last upstream status when every attempt was rate limited
        status_code = exc.status_code
        if isinstance(exc.last_error, UpstreamError) and exc.last_error.status_code == 429:
            status_code = 429
        return error_response(request, status_code, exc.code, exc.message)

    @app.exception_handler(UpstreamError)
    async def handle_upstream(request: Request, exc: UpstreamError) -> ORJSONResponse:
        logger.warning(
            "upstream_error_http",
            code=exc.code,
            instance_id=exc.instance_id,
            http_status=exc.http_status,
        )
        return error_response(request, exc.status_code, exc.code, exc.message)

    @app.exception_handler(GatewayError)
    async def handle_gateway(request: Request, exc: GatewayError) -> ORJSONResponse:
        if exc.status_code >= 500:
            logger.error("gateway_error_http", code=exc.code, message=exc.message)
        return error_response(request, exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_validation(request: Request, exc: RequestValidationError) -> ORJSONResponse:
        return error_response(request, 422, "VALIDATION_ERROR", str(exc.errors()))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("unhandled_exception", error=str(exc))
        return error_response(request, 500, "INTERNAL_ERROR", "An unexpected error occurred")
