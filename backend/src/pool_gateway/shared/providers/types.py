"""Core types for the credential pool."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pool_gateway.domain.enums import ErrorClass, HealthStatus, ProviderType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialKind(str, enum.Enum):
    FILE = "file"
    INLINE = "inline"
    API_KEY = "api_key"


@dataclass(frozen=True)
class CredentialRef:
    """Where an instance's secret lives.  Never rendered in logs or repr."""

    kind: CredentialKind
    value: str = field(repr=False)

    def describe(self) -> str:
        if self.kind == CredentialKind.FILE:
            return self.value
        return f"<{self.kind.value}>"


@dataclass
class QuotaInfo:
    """Last-known quota for one instance.

    Attributes:
        used:          Units consumed in the current period.
        total:         Period limit (sum over all usage buckets).
        remaining:     ``total - used``, floored at 0.
        percent_used:  0-100, rounded to two decimals.
        unit:          Resource unit reported upstream (e.g. "INVOCATIONS").
        breakdown:     Per-bucket detail as reported by the upstream.
        next_reset_at: When the period resets, if known.
    """

    used: float = 0.0
    total: float = 0.0
    remaining: float = 0.0
    percent_used: float = 0.0
    unit: str = ""
    breakdown: list[dict[str, Any]] = field(default_factory=list)
    next_reset_at: datetime | None = None

    @classmethod
    def from_totals(
        cls,
        used: float,
        total: float,
        *,
        unit: str = "",
        breakdown: list[dict[str, Any]] | None = None,
        next_reset_at: datetime | None = None,
    ) -> QuotaInfo:
        remaining = max(total - used, 0.0)
        percent = round(used / total * 100, 2) if total > 0 else 0.0
        return cls(
            used=used,
            total=total,
            remaining=remaining,
            percent_used=percent,
            unit=unit,
            breakdown=breakdown or [],
            next_reset_at=next_reset_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "total": self.total,
            "remaining": self.remaining,
            "percentUsed": self.percent_used,
            "unit": self.unit,
            "breakdown": self.breakdown,
            "nextResetAt": self.next_reset_at.isoformat() if self.next_reset_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuotaInfo:
        reset = data.get("nextResetAt")
        return cls(
            used=float(data.get("used", 0)),
            total=float(data.get("total", 0)),
            remaining=float(data.get("remaining", 0)),
            percent_used=float(data.get("percentUsed", 0)),
            unit=str(data.get("unit", "")),
            breakdown=list(data.get("breakdown") or []),
            next_reset_at=datetime.fromisoformat(reset) if reset else None,
        )


@dataclass(frozen=True)
class UsageReport:
    """What an upstream usage query returns."""

    quota: QuotaInfo
    email: str | None = None
    subscription: str | None = None


@dataclass(frozen=True)
class UsageSnapshot:
    """Cache entry: a usage report plus the wall-clock time it was fetched."""

    instance_id: str
    report: UsageReport
    fetched_at: float

    @property
    def quota(self) -> QuotaInfo:
        return self.report.quota

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "quota": self.report.quota.to_dict(),
            "email": self.report.email,
            "subscription": self.report.subscription,
            "fetchedAt": datetime.fromtimestamp(self.fetched_at, timezone.utc).isoformat(),
        }


@dataclass
class ProviderInstance:
    """One upstream account.

    Health and counters are mutated only through the pool manager and the
    health state machine while holding ``lock``.
    """

    id: str
    provider_type: ProviderType
    credential_ref: CredentialRef
    health: HealthStatus = HealthStatus.HEALTHY
    disabled: bool = False
    usage_count: int = 0
    error_count: int = 0
    email: str | None = None
    subscription: str | None = None
    quota: QuotaInfo | None = None
    quota_fetched_at: float | None = None
    check_model_name: str | None = None
    not_supported_models: frozenset[str] = frozenset()
    options: dict[str, Any] = field(default_factory=dict)
    last_used_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error_message: str | None = None
    last_probe_at: datetime | None = None
    token_expires_at: datetime | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_selectable(self) -> bool:
        return self.health == HealthStatus.HEALTHY and not self.disabled

    def supports(self, model: str | None) -> bool:
        return model is None or model not in self.not_supported_models

    def to_dict(self) -> dict[str, Any]:
        """Display form; the credential itself is never included."""
        return {
            "id": self.id,
            "providerType": self.provider_type.value,
            "credentialRef": self.credential_ref.describe(),
            "health": self.health.value,
            "disabled": self.disabled,
            "usageCount": self.usage_count,
            "errorCount": self.error_count,
            "email": self.email,
            "subscription": self.subscription,
            "quota": self.quota.to_dict() if self.quota else None,
            "checkModelName": self.check_model_name,
            "notSupportedModels": sorted(self.not_supported_models),
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
            "lastErrorAt": self.last_error_at.isoformat() if self.last_error_at else None,
            "lastErrorMessage": self.last_error_message,
            "lastProbeAt": self.last_probe_at.isoformat() if self.last_probe_at else None,
            "tokenExpiresAt": self.token_expires_at.isoformat() if self.token_expires_at else None,
        }


@dataclass(frozen=True)
class NotAvailable:
    """Returned by selection when no eligible instance exists."""

    provider_type: ProviderType
    reason: str = "no eligible instance"


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of one dispatch attempt against one instance; not persisted."""

    success: bool
    http_status: int | None = None
    error_class: ErrorClass | None = None
    message: str | None = None

    @classmethod
    def ok(cls, http_status: int = 200) -> DispatchOutcome:
        return cls(success=True, http_status=http_status)

    @classmethod
    def failed(
        cls, error_class: ErrorClass, *, http_status: int | None = None, message: str | None = None
    ) -> DispatchOutcome:
        return cls(success=False, http_status=http_status, error_class=error_class, message=message)


@dataclass
class PoolStats:
    """Read-only aggregate snapshot of one provider type (or all, when ``None``)."""

    provider_type: str | None
    total: int = 0
    healthy: int = 0
    checking: int = 0
    banned: int = 0
    disabled: int = 0
    total_usage_count: int = 0
    total_error_count: int = 0
    cache_hit_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "providerType": self.provider_type,
            "total": self.total,
            "healthy": self.healthy,
            "checking": self.checking,
            "banned": self.banned,
            "disabled": self.disabled,
            "totalUsageCount": self.total_usage_count,
            "totalErrorCount": self.total_error_count,
            "cacheHitRate": self.cache_hit_rate,
        }
