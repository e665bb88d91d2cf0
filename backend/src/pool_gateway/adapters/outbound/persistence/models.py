"""SQLAlchemy ORM models for the sqlite pool backend.

These are *infrastructure* models — they map to database tables but are
separate from ``ProviderInstance``.  Converters in ``repositories`` translate
between the two layers.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


class ProviderModel(Base):
    __tablename__ = "providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    provider_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    # Static pool-file entry (credential reference, checkModelName, ...) as JSON
    config: Mapped[str] = mapped_column(Text, nullable=False)
    health: Mapped[str] = mapped_column(String(10), nullable=False, default="healthy")
    is_healthy: Mapped[bool] = mapped_column(Boolean, default=True)
    is_disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    last_used: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_health_check_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_health_check_model: Mapped[str | None] = mapped_column(String(80), nullable=True)
    cached_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cached_subscription: Mapped[str | None] = mapped_column(String(120), nullable=True)
    quota: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    not_supported_models: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("ix_providers_type_health", "provider_type", "is_healthy"),)


class HealthCheckHistoryModel(Base):
    __tablename__ = "health_check_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_uuid: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_type: Mapped[str] = mapped_column(String(40), nullable=False)
    is_healthy: Mapped[bool] = mapped_column(Boolean, nullable=False)
    check_model: Mapped[str | None] = mapped_column(String(80), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    check_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (Index("ix_health_history_provider", "provider_uuid", "check_time"),)
