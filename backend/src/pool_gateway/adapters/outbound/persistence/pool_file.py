"""Pool definition file (``provider_pools.json``) and the memory-backend store.

The file maps a provider type to a list of entries::

    {
      "claude-kiro-oauth": [
        {"uuid": "...", "KIRO_OAUTH_CREDS_FILE_PATH": "creds/a.json",
         "checkModelName": "claude-haiku-4-5", "notSupportedModels": [],
         "isDisabled": false, "usageCount": 12, "errorCount": 0, ...}
      ],
      "openai-custom": [{"OPENAI_API_KEY": "sk-...", "OPENAI_BASE_URL": "..."}]
    }

Static keys are whatever the operator wrote; runtime keys (counters, health,
timestamps, cached quota) are written back by the gateway so they survive a
restart.  Keys the gateway does not know are preserved untouched.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import orjson
import structlog

from pool_gateway.config import Settings
from pool_gateway.domain.enums import HealthStatus, ProviderType
from pool_gateway.domain.exceptions import GatewayError
from pool_gateway.ports.outbound import PoolStore
from pool_gateway.shared.providers.types import (
    CredentialKind,
    CredentialRef,
    ProviderInstance,
    QuotaInfo,
)

logger = structlog.get_logger(__name__)

KIRO_CREDS_FILE_KEY = "KIRO_OAUTH_CREDS_FILE_PATH"
KIRO_CREDS_BASE64_KEY = "KIRO_OAUTH_CREDS_BASE64"
OPENAI_API_KEY_KEY = "OPENAI_API_KEY"
OPENAI_BASE_URL_KEY = "OPENAI_BASE_URL"
FALLBACK_INSTANCE_ID = "kiro-default"

RUNTIME_KEYS: frozenset[str] = frozenset(
    {
        "health",
        "isHealthy",
        "usageCount",
        "errorCount",
        "lastUsed",
        "lastErrorTime",
        "lastErrorMessage",
        "lastHealthCheckTime",
        "lastHealthCheckModel",
        "cachedEmail",
        "cachedSubscription",
        "quota",
        "tokenExpiresAt",
    }
)


class PoolDefinitionError(GatewayError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="POOL_DEFINITION_ERROR")


# ── Field codecs ─────────────────────────────────────────────
def parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def credential_ref_of(entry: dict[str, Any]) -> CredentialRef:
    if entry.get(KIRO_CREDS_FILE_KEY):
        return CredentialRef(CredentialKind.FILE, str(entry[KIRO_CREDS_FILE_KEY]))
    if entry.get(KIRO_CREDS_BASE64_KEY):
        return CredentialRef(CredentialKind.INLINE, str(entry[KIRO_CREDS_BASE64_KEY]))
    if entry.get(OPENAI_API_KEY_KEY):
        return CredentialRef(CredentialKind.API_KEY, str(entry[OPENAI_API_KEY_KEY]))
    raise PoolDefinitionError(
        f"Entry {entry.get('uuid')!r} names no credential "
        f"({KIRO_CREDS_FILE_KEY}, {KIRO_CREDS_BASE64_KEY} or {OPENAI_API_KEY_KEY})"
    )


def _health_of(entry: dict[str, Any]) -> HealthStatus:
    raw = entry.get("health")
    if raw:
        health = HealthStatus(raw)
    else:
        health = HealthStatus.HEALTHY if entry.get("isHealthy", True) else HealthStatus.BANNED
    # An interrupted probe is re-run before the instance serves traffic again
    return HealthStatus.BANNED if health == HealthStatus.CHECKING else health


def static_config(entry: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in entry.items() if k not in RUNTIME_KEYS}


def entry_to_instance(provider_type: ProviderType, entry: dict[str, Any]) -> ProviderInstance:
    """Build an instance from one pool entry.  ``entry`` must already carry a uuid."""
    options: dict[str, Any] = {}
    if entry.get(OPENAI_BASE_URL_KEY):
        options["base_url"] = entry[OPENAI_BASE_URL_KEY]
    quota = entry.get("quota")
    return ProviderInstance(
        id=str(entry["uuid"]),
        provider_type=provider_type,
        credential_ref=credential_ref_of(entry),
        health=_health_of(entry),
        disabled=bool(entry.get("isDisabled", False)),
        usage_count=int(entry.get("usageCount") or 0),
        error_count=int(entry.get("errorCount") or 0),
        email=entry.get("cachedEmail"),
        subscription=entry.get("cachedSubscription"),
        quota=QuotaInfo.from_dict(quota) if isinstance(quota, dict) else None,
        check_model_name=entry.get("checkModelName") or None,
        not_supported_models=frozenset(entry.get("notSupportedModels") or ()),
        options=options,
        last_used_at=parse_time(entry.get("lastUsed")),
        last_error_at=parse_time(entry.get("lastErrorTime")),
        last_error_message=entry.get("lastErrorMessage"),
        last_probe_at=parse_time(entry.get("lastHealthCheckTime")),
        token_expires_at=parse_time(entry.get("tokenExpiresAt")),
    )


def runtime_fields(instance: ProviderInstance) -> dict[str, Any]:
    """Runtime state in pool-file form; read under the instance lock."""
    with instance.lock:
        return {
            "isDisabled": instance.disabled,
            "health": instance.health.value,
            "isHealthy": instance.health == HealthStatus.HEALTHY,
            "usageCount": instance.usage_count,
            "errorCount": instance.error_count,
            "lastUsed": format_time(instance.last_used_at),
            "lastErrorTime": format_time(instance.last_error_at),
            "lastErrorMessage": instance.last_error_message,
            "lastHealthCheckTime": format_time(instance.last_probe_at),
            "cachedEmail": instance.email,
            "cachedSubscription": instance.subscription,
            "quota": instance.quota.to_dict() if instance.quota else None,
            "tokenExpiresAt": format_time(instance.token_expires_at),
        }


def parse_document(
    document: dict[str, Any],
) -> list[tuple[ProviderType, dict[str, Any]]]:
    """Validated ``(provider_type, entry)`` pairs; entries without a uuid get one.

    Unknown provider types and entries without a credential are skipped with
    a warning so one bad entry does not take the pool down.
    """
    if not isinstance(document, dict):
        raise PoolDefinitionError("Pool file must be a JSON object keyed by provider type")

    pairs: list[tuple[ProviderType, dict[str, Any]]] = []
    seen: set[str] = set()
    for type_name, entries in document.items():
        try:
            provider_type = ProviderType.parse(type_name)
        except GatewayError:
            logger.warning("pool_type_skipped", provider_type=type_name)
            continue
        for entry in entries or []:
            if not isinstance(entry, dict):
                logger.warning("pool_entry_skipped", provider_type=type_name, reason="not an object")
                continue
            entry.setdefault("uuid", str(uuid.uuid4()))
            try:
                credential_ref_of(entry)
            except PoolDefinitionError as exc:
                logger.warning("pool_entry_skipped", provider_type=type_name, reason=exc.message)
                continue
            if entry["uuid"] in seen:
                logger.warning("pool_entry_skipped", instance_id=entry["uuid"], reason="duplicate uuid")
                continue
            seen.add(entry["uuid"])
            pairs.append((provider_type, entry))
    return pairs


# ── File IO ──────────────────────────────────────────────────
def _read_document(path: Path) -> dict[str, Any]:
    try:
        return orjson.loads(path.read_bytes())  # type: ignore[no-any-return]
    except orjson.JSONDecodeError as exc:
        raise PoolDefinitionError(f"Pool file {path} is not valid JSON: {exc}") from exc


def _write_document(path: Path, document: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(orjson.dumps(document, option=orjson.OPT_INDENT_2))
    os.replace(tmp, path)


async def read_pool_file(path: Path) -> dict[str, Any]:
    return await asyncio.to_thread(_read_document, path)


async def write_pool_file(path: Path, document: dict[str, Any]) -> None:
    await asyncio.to_thread(_write_document, path, document)


def fallback_instances(settings: Settings) -> list[ProviderInstance]:
    """A single Kiro instance from ``KIRO_OAUTH_CREDS_*`` when no pool file exists."""
    if settings.kiro_oauth_creds_file_path:
        ref = CredentialRef(CredentialKind.FILE, settings.kiro_oauth_creds_file_path)
    elif settings.kiro_oauth_creds_base64:
        ref = CredentialRef(CredentialKind.INLINE, settings.kiro_oauth_creds_base64)
    else:
        return []
    return [
        ProviderInstance(
            id=FALLBACK_INSTANCE_ID,
            provider_type=ProviderType.CLAUDE_KIRO_OAUTH,
            credential_ref=ref,
        )
    ]


# ═══════════════════════════════════════════════════════════════
#  Memory backend store
# ═══════════════════════════════════════════════════════════════
class JsonPoolStore(PoolStore):
    """Reads the pool file and writes runtime state back into it.

    Instances built from the settings fallback have no file to write to, so
    saving them is a no-op.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fallback: Callable[[], list[ProviderInstance]] | None = None,
    ) -> None:
        self._path = Path(path)
        self._fallback = fallback
        self._document: dict[str, list[dict[str, Any]]] = {}
        self._from_file = False
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> list[ProviderInstance]:
        if not self._path.exists():
            self._document = {}
            self._from_file = False
            instances = self._fallback() if self._fallback else []
            logger.info("pool_loaded", source="settings", total=len(instances))
            return instances

        raw = await read_pool_file(self._path)
        pairs = parse_document(raw)
        document: dict[str, list[dict[str, Any]]] = {}
        for provider_type, entry in pairs:
            document.setdefault(provider_type.value, []).append(entry)
        self._document = document
        self._from_file = True

        instances = [entry_to_instance(pt, entry) for pt, entry in pairs]
        logger.info("pool_loaded", source=str(self._path), total=len(instances))
        return instances

    async def save(self, instances: list[ProviderInstance]) -> None:
        if not self._from_file:
            return
        by_id = {inst.id: inst for inst in instances}
        async with self._write_lock:
            for entries in self._document.values():
                for entry in entries:
                    inst = by_id.get(entry["uuid"])
                    if inst is not None:
                        entry.update(runtime_fields(inst))
            await write_pool_file(self._path, self._document)
        logger.debug("pool_saved", path=str(self._path), total=len(instances))
