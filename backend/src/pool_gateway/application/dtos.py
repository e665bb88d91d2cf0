"""Data Transfer Objects — Pydantic models for the management API.

Chat endpoints pass protocol bodies through as plain dicts; only the
gateway's own endpoints have a fixed response schema.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════
#  Common
# ═══════════════════════════════════════════════════════════════
class ErrorResponse(BaseModel):
    code: str
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "development"
    pools: dict[str, dict[str, int]] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
#  Pool
# ═══════════════════════════════════════════════════════════════
class PoolStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_type: str | None = Field(None, alias="providerType")
    total: int = 0
    healthy: int = 0
    checking: int = 0
    banned: int = 0
    disabled: int = 0
    total_usage_count: int = Field(0, alias="totalUsageCount")
    total_error_count: int = Field(0, alias="totalErrorCount")
    cache_hit_rate: float = Field(0.0, alias="cacheHitRate")


class PoolOverviewResponse(BaseModel):
    overall: PoolStatsResponse
    providers: dict[str, PoolStatsResponse] = Field(default_factory=dict)


class InstanceActionResponse(BaseModel):
    status: str
    instance: dict[str, Any]


class ReloadResponse(BaseModel):
    status: str = "reloaded"
    total: int


class HealthCheckResponse(BaseModel):
    probed: int = 0
    healthy: int = 0
    banned: int = 0
    skipped: int = 0


# ═══════════════════════════════════════════════════════════════
#  Models
# ═══════════════════════════════════════════════════════════════
class ModelInfo(BaseModel):
    id: str
    object: str = "model"
    created: int = 0
    owned_by: str


class ModelListResponse(BaseModel):
    object: str = "list"
    data: list[ModelInfo] = Field(default_factory=list)
