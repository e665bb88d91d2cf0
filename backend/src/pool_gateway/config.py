"""Kiro Pool Gateway — Application Configuration."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pool_gateway.domain.enums import PoolBackend, PromptLogMode, SystemPromptMode

_DEFAULT_API_KEY = "123456"


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file.

    Read-only for the lifetime of a pool; changing any pool-related value
    requires re-creating the pool.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_name: str = "kiro-pool-gateway"
    app_env: Environment = Environment.DEVELOPMENT
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8045
    log_level: str = "INFO"

    # ── Security ─────────────────────────────────────────────
    required_api_key: str = _DEFAULT_API_KEY
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # ── Routing ──────────────────────────────────────────────
    model_provider: str = "claude-kiro-oauth"

    # ── Dispatch / retry ─────────────────────────────────────
    request_max_retries: int = 8
    request_base_delay: int = 3000  # milliseconds
    request_timeout_seconds: float = 120.0
    max_error_count: int = 5

    # ── Background schedulers ────────────────────────────────
    cron_near_minutes: int = 15
    cron_refresh_token: bool = True
    health_check_interval_minutes: float = 10.0
    health_check_timeout_seconds: float = 30.0
    health_check_concurrency: int = 5
    shutdown_grace_seconds: float = 10.0

    # ── Usage cache ──────────────────────────────────────────
    usage_query_concurrency: int = 10
    usage_cache_ttl: int = 300  # seconds

    # ── Pool storage ─────────────────────────────────────────
    pool_backend: PoolBackend = PoolBackend.MEMORY
    use_sqlite_pool: bool = False
    provider_pools_file_path: str = "configs/provider_pools.json"
    sqlite_db_path: str = "data/provider_pool.db"
    pool_save_debounce_seconds: float = 1.0

    # Single-credential fallback when no pool file exists
    kiro_oauth_creds_file_path: str = ""
    kiro_oauth_creds_base64: str = ""
    kiro_region: str = "us-east-1"

    # ── Prompts ──────────────────────────────────────────────
    system_prompt_file_path: str = "configs/input_system_prompt.txt"
    system_prompt_mode: SystemPromptMode = SystemPromptMode.OVERWRITE
    fetch_system_prompt_file: str = "configs/fetch_system_prompt.txt"
    prompt_log_mode: PromptLogMode = PromptLogMode.NONE
    prompt_log_base_name: str = "prompt_log"

    # ── Observability ────────────────────────────────────────
    prometheus_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def effective_pool_backend(self) -> PoolBackend:
        return PoolBackend.SQLITE if self.use_sqlite_pool else self.pool_backend

    @property
    def sqlite_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.sqlite_db_path}"

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("request_max_retries", "request_base_delay", "cron_near_minutes")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator(
        "max_error_count", "health_check_concurrency", "usage_query_concurrency"
    )
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def _guard_production_secrets(self) -> Settings:
        """Prevent production from running with the default client key."""
        if self.app_env == Environment.PRODUCTION:
            if self.required_api_key in (_DEFAULT_API_KEY, ""):
                raise ValueError(
                    "required_api_key must be set to a secure value in production"
                )
        return self


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
