"""Domain-specific exception hierarchy.

All exceptions inherit from ``GatewayError`` so callers can catch the entire
family in one clause while still discriminating on subclass.  Upstream errors
carry the id of the instance that produced them, never its credential.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Pool ─────────────────────────────────────────────────────
class PoolExhausted(GatewayError):
    """No eligible instance of the requested provider type remains."""

    status_code = 503

    def __init__(self, provider_type: str, last_error: UpstreamError | None = None) -> None:
        self.provider_type = provider_type
        self.last_error = last_error
        message = f"No healthy instance available for {provider_type!r}"
        if last_error is not None:
            message = f"{message} (last error: {last_error.message})"
        super().__init__(message, code="POOL_EXHAUSTED")


class InstanceNotFound(GatewayError):
    status_code = 404

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id!r} not found", code="INSTANCE_NOT_FOUND")


class InvalidHealthTransition(GatewayError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot transition instance health from {current!r} to {target!r}",
            code="INVALID_HEALTH_TRANSITION",
        )


class UnsupportedProviderType(GatewayError):
    status_code = 400

    def __init__(self, provider_type: str) -> None:
        super().__init__(
            f"Unsupported provider type {provider_type!r}", code="UNSUPPORTED_PROVIDER_TYPE"
        )


# ── Upstream ─────────────────────────────────────────────────
class UpstreamError(GatewayError):
    """Base for failures reported by, or while talking to, an upstream."""

    def __init__(
        self,
        message: str,
        *,
        instance_id: str | None = None,
        http_status: int | None = None,
        code: str = "UPSTREAM_ERROR",
    ) -> None:
        self.instance_id = instance_id
        self.http_status = http_status
        if instance_id:
            message = f"[{instance_id}] {message}"
        super().__init__(message, code=code)


class UpstreamTimeout(UpstreamError):
    status_code = 504
    retryable = True

    def __init__(
        self,
        message: str = "Upstream request timed out",
        *,
        instance_id: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            message, instance_id=instance_id, http_status=http_status, code="UPSTREAM_TIMEOUT"
        )


class UpstreamRateLimited(UpstreamError):
    status_code = 429
    retryable = True

    def __init__(
        self,
        message: str = "Upstream rate limit reached",
        *,
        instance_id: str | None = None,
        http_status: int | None = 429,
    ) -> None:
        super().__init__(
            message, instance_id=instance_id, http_status=http_status, code="UPSTREAM_RATE_LIMITED"
        )


class UpstreamServerError(UpstreamError):
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str = "Upstream server error",
        *,
        instance_id: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            message, instance_id=instance_id, http_status=http_status, code="UPSTREAM_SERVER_ERROR"
        )


class UpstreamRejected(UpstreamError):
    """4xx other than rate limiting; never retried."""

    def __init__(
        self,
        message: str = "Upstream rejected the request",
        *,
        instance_id: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            message, instance_id=instance_id, http_status=http_status, code="UPSTREAM_REJECTED"
        )
        self.status_code = http_status or 400


# ── Background work (recovered locally, never surfaced to chat callers) ──
class RefreshFailed(GatewayError):
    def __init__(self, instance_id: str, reason: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"[{instance_id}] token refresh failed: {reason}", code="REFRESH_FAILED")


class ProbeFailed(GatewayError):
    def __init__(self, instance_id: str, reason: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"[{instance_id}] health probe failed: {reason}", code="PROBE_FAILED")


class CacheMiss(GatewayError):
    """No usage snapshot was ever fetched for the instance."""

    status_code = 503

    def __init__(self, instance_id: str, reason: str | None = None) -> None:
        self.instance_id = instance_id
        message = f"No usage snapshot available for {instance_id!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, code="CACHE_MISS")


class UsageNotSupported(GatewayError):
    status_code = 501

    def __init__(self, provider_type: str) -> None:
        super().__init__(
            f"Usage queries are not supported for {provider_type!r}", code="USAGE_NOT_SUPPORTED"
        )


# ── Inbound ──────────────────────────────────────────────────
class InvalidRequest(GatewayError):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_REQUEST")


class AuthenticationError(GatewayError):
    status_code = 401

    def __init__(self, message: str = "Invalid or missing API key") -> None:
        super().__init__(message, code="AUTHENTICATION_ERROR")


def classify_status(
    http_status: int, message: str, *, instance_id: str | None = None
) -> UpstreamError:
    """Map an upstream HTTP status onto the error taxonomy."""
    if http_status == 429:
        return UpstreamRateLimited(message, instance_id=instance_id)
    if http_status >= 500:
        return UpstreamServerError(message, instance_id=instance_id, http_status=http_status)
    return UpstreamRejected(message, instance_id=instance_id, http_status=http_status)
