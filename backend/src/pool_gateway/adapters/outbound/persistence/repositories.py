"""Sqlite pool store using SQLAlchemy.

Implements the ``PoolStore`` port, translating between ``ProviderInstance``
and ``ProviderModel`` rows.  The pool JSON file stays the place operators
edit: it is imported on every load, and rows that already exist keep their
runtime state (counters, health, timestamps).
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import orjson
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from pool_gateway.domain.enums import HealthStatus, ProviderType
from pool_gateway.domain.exceptions import GatewayError
from pool_gateway.ports.outbound import PoolStore
from pool_gateway.shared.providers.types import CredentialKind, ProviderInstance

from .database import create_session_factory, init_schema, session_scope
from .models import HealthCheckHistoryModel, ProviderModel
from .pool_file import (
    KIRO_CREDS_BASE64_KEY,
    KIRO_CREDS_FILE_KEY,
    OPENAI_API_KEY_KEY,
    OPENAI_BASE_URL_KEY,
    entry_to_instance,
    format_time,
    parse_document,
    read_pool_file,
    static_config,
    write_pool_file,
)

logger = structlog.get_logger(__name__)

_CREDENTIAL_KEYS: dict[CredentialKind, str] = {
    CredentialKind.FILE: KIRO_CREDS_FILE_KEY,
    CredentialKind.INLINE: KIRO_CREDS_BASE64_KEY,
    CredentialKind.API_KEY: OPENAI_API_KEY_KEY,
}


# ── Converters ───────────────────────────────────────────────
def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


def _instance_config(inst: ProviderInstance) -> dict[str, Any]:
    config: dict[str, Any] = {
        "uuid": inst.id,
        _CREDENTIAL_KEYS[inst.credential_ref.kind]: inst.credential_ref.value,
    }
    if inst.options.get("base_url"):
        config[OPENAI_BASE_URL_KEY] = inst.options["base_url"]
    if inst.check_model_name:
        config["checkModelName"] = inst.check_model_name
    if inst.not_supported_models:
        config["notSupportedModels"] = sorted(inst.not_supported_models)
    return config


def _runtime_values(inst: ProviderInstance) -> dict[str, Any]:
    with inst.lock:
        return {
            "health": inst.health.value,
            "is_healthy": inst.health == HealthStatus.HEALTHY,
            "is_disabled": inst.disabled,
            "usage_count": inst.usage_count,
            "error_count": inst.error_count,
            "last_used": inst.last_used_at,
            "last_error_time": inst.last_error_at,
            "last_error_message": inst.last_error_message,
            "last_health_check_time": inst.last_probe_at,
            "cached_email": inst.email,
            "cached_subscription": inst.subscription,
            "quota": _dumps(inst.quota.to_dict()) if inst.quota else None,
            "token_expires_at": inst.token_expires_at,
        }


def _entry_to_model(provider_type: ProviderType, entry: dict[str, Any]) -> ProviderModel:
    inst = entry_to_instance(provider_type, entry)
    return ProviderModel(
        uuid=inst.id,
        provider_type=provider_type.value,
        config=_dumps(static_config(entry)),
        not_supported_models=_dumps(sorted(inst.not_supported_models)),
        **_runtime_values(inst),
    )


def _model_to_entry(m: ProviderModel) -> dict[str, Any]:
    """Row in pool-file form: static config plus runtime keys."""
    entry: dict[str, Any] = orjson.loads(m.config)
    entry.update(
        {
            "uuid": m.uuid,
            "isDisabled": m.is_disabled,
            "health": m.health,
            "isHealthy": m.is_healthy,
            "usageCount": m.usage_count,
            "errorCount": m.error_count,
            "lastUsed": format_time(m.last_used),
            "lastErrorTime": format_time(m.last_error_time),
            "lastErrorMessage": m.last_error_message,
            "lastHealthCheckTime": format_time(m.last_health_check_time),
            "lastHealthCheckModel": m.last_health_check_model,
            "cachedEmail": m.cached_email,
            "cachedSubscription": m.cached_subscription,
            "quota": orjson.loads(m.quota) if m.quota else None,
            "tokenExpiresAt": format_time(m.token_expires_at),
        }
    )
    if m.not_supported_models:
        entry["notSupportedModels"] = orjson.loads(m.not_supported_models)
    return entry


# ═══════════════════════════════════════════════════════════════
#  Sqlite Pool Store
# ═══════════════════════════════════════════════════════════════
class SqlitePoolStore(PoolStore):
    def __init__(
        self,
        engine: AsyncEngine,
        *,
        pool_file: str | Path | None = None,
        fallback: Callable[[], list[ProviderInstance]] | None = None,
    ) -> None:
        self._engine = engine
        self._factory = create_session_factory(engine)
        self._pool_file = Path(pool_file) if pool_file else None
        self._fallback = fallback
        self._schema_ready = False

    async def _ensure_schema(self) -> None:
        if not self._schema_ready:
            await init_schema(self._engine)
            self._schema_ready = True

    async def import_json(self, path: str | Path) -> int:
        """Upsert pool-file entries.  Existing rows keep their runtime state."""
        await self._ensure_schema()
        path = Path(path)
        document = await read_pool_file(path)
        missing_uuid = any(
            isinstance(entry, dict) and "uuid" not in entry
            for entries in document.values()
            for entry in entries or []
        )
        pairs = parse_document(document)

        async with session_scope(self._factory) as session:
            result = await session.execute(select(ProviderModel))
            existing = {m.uuid: m for m in result.scalars()}
            for provider_type, entry in pairs:
                model = existing.get(entry["uuid"])
                if model is None:
                    session.add(_entry_to_model(provider_type, entry))
                    continue
                model.provider_type = provider_type.value
                model.config = _dumps(static_config(entry))
                model.not_supported_models = _dumps(sorted(entry.get("notSupportedModels") or []))

        # Generated uuids go back into the file so the next import matches the same rows
        if missing_uuid:
            await write_pool_file(path, document)
        logger.info("pool_file_imported", path=str(path), total=len(pairs))
        return len(pairs)

    async def export_json(self, path: str | Path) -> int:
        document = await self.export_document()
        await write_pool_file(Path(path), document)
        return sum(len(entries) for entries in document.values())

    async def export_document(self) -> dict[str, list[dict[str, Any]]]:
        await self._ensure_schema()
        async with session_scope(self._factory) as session:
            result = await session.execute(select(ProviderModel).order_by(ProviderModel.id))
            document: dict[str, list[dict[str, Any]]] = {}
            for m in result.scalars():
                document.setdefault(m.provider_type, []).append(_model_to_entry(m))
        return document

    async def load(self) -> list[ProviderInstance]:
        await self._ensure_schema()
        if self._pool_file is not None and self._pool_file.exists():
            await self.import_json(self._pool_file)

        instances: list[ProviderInstance] = []
        for type_name, entries in (await self.export_document()).items():
            try:
                provider_type = ProviderType.parse(type_name)
            except GatewayError:
                logger.warning("pool_type_skipped", provider_type=type_name)
                continue
            for entry in entries:
                try:
                    instances.append(entry_to_instance(provider_type, entry))
                except (GatewayError, ValueError) as exc:
                    logger.warning("pool_row_skipped", instance_id=entry.get("uuid"), error=str(exc))

        if not instances and self._fallback is not None:
            instances = self._fallback()
            logger.info("pool_loaded", source="settings", total=len(instances))
        else:
            logger.info("pool_loaded", source="sqlite", total=len(instances))
        return instances

    async def save(self, instances: list[ProviderInstance]) -> None:
        await self._ensure_schema()
        by_id = {inst.id: inst for inst in instances}
        async with session_scope(self._factory) as session:
            result = await session.execute(
                select(ProviderModel).where(ProviderModel.uuid.in_(list(by_id)))
            )
            rows = {m.uuid: m for m in result.scalars()}
            for inst in instances:
                values = _runtime_values(inst)
                model = rows.get(inst.id)
                if model is None:
                    session.add(
                        ProviderModel(
                            uuid=inst.id,
                            provider_type=inst.provider_type.value,
                            config=_dumps(_instance_config(inst)),
                            not_supported_models=_dumps(sorted(inst.not_supported_models)),
                            **values,
                        )
                    )
                    continue
                for column, value in values.items():
                    setattr(model, column, value)

    async def record_probe(
        self, instance: ProviderInstance, *, success: bool, error: str | None
    ) -> None:
        await self._ensure_schema()
        async with session_scope(self._factory) as session:
            session.add(
                HealthCheckHistoryModel(
                    provider_uuid=instance.id,
                    provider_type=instance.provider_type.value,
                    is_healthy=success,
                    check_model=instance.check_model_name,
                    error_message=error,
                )
            )
            result = await session.execute(
                select(ProviderModel).where(ProviderModel.uuid == instance.id)
            )
            model = result.scalar_one_or_none()
            if model is not None:
                model.last_health_check_model = instance.check_model_name

    async def health_history(self, instance_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        await self._ensure_schema()
        stmt = (
            select(HealthCheckHistoryModel)
            .where(HealthCheckHistoryModel.provider_uuid == instance_id)
            .order_by(HealthCheckHistoryModel.check_time.desc(), HealthCheckHistoryModel.id.desc())
            .limit(limit)
        )
        async with session_scope(self._factory) as session:
            result = await session.execute(stmt)
            return [
                {
                    "instanceId": r.provider_uuid,
                    "providerType": r.provider_type,
                    "healthy": r.is_healthy,
                    "checkModel": r.check_model,
                    "errorMessage": r.error_message,
                    "checkedAt": format_time(r.check_time),
                }
                for r in result.scalars()
            ]

    async def close(self) -> None:
        await self._engine.dispose()
