"""Domain enumerations for the credential pool gateway."""

from __future__ import annotations

import enum

from pool_gateway.domain.exceptions import UnsupportedProviderType


class Dialect(str, enum.Enum):
    """Wire format of a chat API."""

    CLAUDE = "claude"
    OPENAI = "openai"


class ProviderType(str, enum.Enum):
    """Upstream family an instance belongs to; the pool key."""

    CLAUDE_KIRO_OAUTH = "claude-kiro-oauth"
    OPENAI_CUSTOM = "openai-custom"

    @property
    def native_dialect(self) -> Dialect:
        return _NATIVE_DIALECTS[self]

    @classmethod
    def parse(cls, value: str) -> ProviderType:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise UnsupportedProviderType(value) from None


_NATIVE_DIALECTS: dict[ProviderType, Dialect] = {
    ProviderType.CLAUDE_KIRO_OAUTH: Dialect.CLAUDE,
    ProviderType.OPENAI_CUSTOM: Dialect.OPENAI,
}


class HealthStatus(str, enum.Enum):
    """Health state machine for a single instance.

    ``CHECKING`` only exists while a probe is in flight.  Only ``HEALTHY``
    instances are eligible for selection.
    """

    HEALTHY = "healthy"
    CHECKING = "checking"
    BANNED = "banned"

    # ── Allowed transitions ──
    def can_transition_to(self, target: HealthStatus) -> bool:
        return target in _HEALTH_TRANSITIONS.get(self, set())


_HEALTH_TRANSITIONS: dict[HealthStatus, set[HealthStatus]] = {
    HealthStatus.HEALTHY: {HealthStatus.CHECKING, HealthStatus.BANNED},
    HealthStatus.CHECKING: {HealthStatus.HEALTHY, HealthStatus.BANNED},
    HealthStatus.BANNED: {HealthStatus.CHECKING},
}


class ErrorClass(str, enum.Enum):
    """How a failed upstream attempt is classified."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    REJECTED = "rejected"
    FATAL_CREDENTIAL = "fatal_credential"

    @property
    def retryable(self) -> bool:
        return self in (ErrorClass.TIMEOUT, ErrorClass.RATE_LIMITED, ErrorClass.SERVER_ERROR)


class SystemPromptMode(str, enum.Enum):
    OVERWRITE = "overwrite"
    APPEND = "append"


class PromptLogMode(str, enum.Enum):
    NONE = "none"
    CONSOLE = "console"
    FILE = "file"


class PoolBackend(str, enum.Enum):
    MEMORY = "memory"
    SQLITE = "sqlite"
