"""Tests for the pool file codec and both pool stores."""

from __future__ import annotations

from datetime import datetime, timezone

import orjson
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from pool_gateway.adapters.outbound.persistence.pool_file import (
    FALLBACK_INSTANCE_ID,
    JsonPoolStore,
    PoolDefinitionError,
    entry_to_instance,
    fallback_instances,
    parse_document,
    runtime_fields,
)
from pool_gateway.adapters.outbound.persistence.repositories import SqlitePoolStore
from pool_gateway.config import get_settings
from pool_gateway.domain.enums import HealthStatus, ProviderType
from pool_gateway.shared.providers.types import CredentialKind, QuotaInfo


def _pool_document() -> dict:
    return {
        "claude-kiro-oauth": [
            {
                "uuid": "kiro-a",
                "KIRO_OAUTH_CREDS_FILE_PATH": "creds/a.json",
                "checkModelName": "claude-haiku-4-5",
                "notSupportedModels": ["claude-opus-4-5"],
                "operatorNote": "primary account",
            },
            {"KIRO_OAUTH_CREDS_BASE64": "e30="},
        ],
        "openai-custom": [
            {
                "uuid": "oa-1",
                "OPENAI_API_KEY": "sk-1",
                "OPENAI_BASE_URL": "https://llm.example/v1",
                "isDisabled": True,
            }
        ],
    }


def _write(path, document) -> None:
    path.write_bytes(orjson.dumps(document))


# ═══════════════════════════════════════════════════════════════
#  Pool file codec
# ═══════════════════════════════════════════════════════════════
class TestPoolDocument:
    def test_parse_assigns_uuids_and_skips_bad_entries(self) -> None:
        document = _pool_document()
        document["gemini-cli-oauth"] = [{"uuid": "g-1"}]
        document["claude-kiro-oauth"].append({"uuid": "no-creds"})
        document["claude-kiro-oauth"].append({"uuid": "kiro-a", "KIRO_OAUTH_CREDS_FILE_PATH": "dup"})

        pairs = parse_document(document)

        ids = [entry["uuid"] for _, entry in pairs]
        assert len(ids) == 3
        assert ids[0] == "kiro-a"
        assert ids[2] == "oa-1"
        assert document["claude-kiro-oauth"][1]["uuid"] == ids[1]
        assert [pt for pt, _ in pairs] == [
            ProviderType.CLAUDE_KIRO_OAUTH,
            ProviderType.CLAUDE_KIRO_OAUTH,
            ProviderType.OPENAI_CUSTOM,
        ]

    def test_document_must_be_an_object(self) -> None:
        with pytest.raises(PoolDefinitionError):
            parse_document([])  # type: ignore[arg-type]

    def test_entry_to_instance(self) -> None:
        entry = {
            "uuid": "oa-1",
            "OPENAI_API_KEY": "sk-1",
            "OPENAI_BASE_URL": "https://llm.example/v1",
            "notSupportedModels": ["gpt-3.5"],
            "usageCount": 7,
            "errorCount": 2,
            "lastUsed": "2025-06-01T10:00:00Z",
            "quota": QuotaInfo.from_totals(5, 10).to_dict(),
        }
        inst = entry_to_instance(ProviderType.OPENAI_CUSTOM, entry)

        assert inst.credential_ref.kind == CredentialKind.API_KEY
        assert inst.options == {"base_url": "https://llm.example/v1"}
        assert inst.not_supported_models == frozenset({"gpt-3.5"})
        assert (inst.usage_count, inst.error_count) == (7, 2)
        assert inst.last_used_at == datetime(2025, 6, 1, 10, tzinfo=timezone.utc)
        assert inst.quota is not None and inst.quota.percent_used == 50.0

    @pytest.mark.parametrize(
        ("fields", "expected"),
        [
            ({}, HealthStatus.HEALTHY),
            ({"isHealthy": False}, HealthStatus.BANNED),
            ({"health": "banned"}, HealthStatus.BANNED),
            ({"health": "checking"}, HealthStatus.BANNED),
        ],
    )
    def test_stored_health(self, fields, expected) -> None:
        entry = {"uuid": "k", "KIRO_OAUTH_CREDS_FILE_PATH": "c.json", **fields}
        assert entry_to_instance(ProviderType.CLAUDE_KIRO_OAUTH, entry).health == expected

    def test_runtime_fields(self, make_instance) -> None:
        inst = make_instance("kiro-a", error_count=3, health=HealthStatus.BANNED)
        fields = runtime_fields(inst)
        assert fields["health"] == "banned"
        assert fields["isHealthy"] is False
        assert fields["errorCount"] == 3
        assert fields["lastUsed"] is None

    def test_fallback_instances(self) -> None:
        settings = get_settings(kiro_oauth_creds_file_path="creds/kiro.json")
        (inst,) = fallback_instances(settings)
        assert inst.id == FALLBACK_INSTANCE_ID
        assert inst.credential_ref.kind == CredentialKind.FILE

        inline = fallback_instances(get_settings(kiro_oauth_creds_base64="e30="))
        assert inline[0].credential_ref.kind == CredentialKind.INLINE
        assert fallback_instances(get_settings()) == []


# ═══════════════════════════════════════════════════════════════
#  JSON store
# ═══════════════════════════════════════════════════════════════
class TestJsonPoolStore:
    @pytest.mark.asyncio
    async def test_load_and_save_round_trip(self, tmp_path) -> None:
        path = tmp_path / "provider_pools.json"
        _write(path, _pool_document())
        store = JsonPoolStore(path)

        instances = await store.load()
        assert len(instances) == 3
        by_id = {inst.id: inst for inst in instances}
        assert by_id["oa-1"].disabled is True
        assert by_id["kiro-a"].check_model_name == "claude-haiku-4-5"

        by_id["kiro-a"].usage_count = 12
        by_id["kiro-a"].health = HealthStatus.BANNED
        await store.save(instances)

        saved = orjson.loads(path.read_bytes())
        entry = saved["claude-kiro-oauth"][0]
        assert entry["usageCount"] == 12
        assert entry["health"] == "banned"
        assert entry["isHealthy"] is False
        assert entry["operatorNote"] == "primary account"
        assert entry["KIRO_OAUTH_CREDS_FILE_PATH"] == "creds/a.json"
        assert "uuid" in saved["claude-kiro-oauth"][1]

        reloaded = {inst.id: inst for inst in await JsonPoolStore(path).load()}
        assert reloaded["kiro-a"].usage_count == 12
        assert reloaded["kiro-a"].health == HealthStatus.BANNED

    @pytest.mark.asyncio
    async def test_missing_file_uses_fallback_and_never_writes(self, tmp_path, make_instance) -> None:
        path = tmp_path / "absent.json"
        store = JsonPoolStore(path, fallback=lambda: [make_instance("kiro-default")])

        instances = await store.load()
        assert [inst.id for inst in instances] == ["kiro-default"]

        await store.save(instances)
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_invalid_json(self, tmp_path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(PoolDefinitionError, match="not valid JSON"):
            await JsonPoolStore(path).load()


# ═══════════════════════════════════════════════════════════════
#  Sqlite store
# ═══════════════════════════════════════════════════════════════
@pytest.fixture
async def sqlite_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pool.db'}")
    path = tmp_path / "provider_pools.json"
    _write(path, _pool_document())
    store = SqlitePoolStore(engine, pool_file=path)
    yield store
    await store.close()


class TestSqlitePoolStore:
    @pytest.mark.asyncio
    async def test_import_writes_generated_uuids_back(self, sqlite_store, tmp_path) -> None:
        instances = await sqlite_store.load()

        assert len(instances) == 3
        saved = orjson.loads((tmp_path / "provider_pools.json").read_bytes())
        generated = saved["claude-kiro-oauth"][1]["uuid"]
        assert generated in {inst.id for inst in instances}

        # A second import matches the same rows instead of adding new ones
        assert len(await sqlite_store.load()) == 3

    @pytest.mark.asyncio
    async def test_runtime_state_survives_reimport(self, sqlite_store) -> None:
        instances = await sqlite_store.load()
        kiro_a = next(inst for inst in instances if inst.id == "kiro-a")
        kiro_a.usage_count = 41
        kiro_a.error_count = 2
        kiro_a.email = "dev@example.com"
        kiro_a.quota = QuotaInfo.from_totals(20, 100, unit="INVOCATIONS")
        await sqlite_store.save(instances)

        reloaded = {inst.id: inst for inst in await sqlite_store.load()}
        again = reloaded["kiro-a"]
        assert (again.usage_count, again.error_count) == (41, 2)
        assert again.email == "dev@example.com"
        assert again.quota is not None and again.quota.used == 20
        assert again.check_model_name == "claude-haiku-4-5"
        assert again.not_supported_models == frozenset({"claude-opus-4-5"})
        assert reloaded["oa-1"].options == {"base_url": "https://llm.example/v1"}

    @pytest.mark.asyncio
    async def test_save_inserts_unknown_instances(self, tmp_path, make_instance) -> None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'solo.db'}")
        store = SqlitePoolStore(engine)
        try:
            await store.save([make_instance("kiro-x", usage_count=3, check_model_name="m")])
            (inst,) = await store.load()
            assert inst.id == "kiro-x"
            assert inst.usage_count == 3
            assert inst.credential_ref.value == "/creds/kiro-x.json"
            assert inst.check_model_name == "m"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_probe_history_newest_first(self, sqlite_store) -> None:
        instances = {inst.id: inst for inst in await sqlite_store.load()}
        kiro_a = instances["kiro-a"]
        await sqlite_store.record_probe(kiro_a, success=False, error="HTTP 401")
        await sqlite_store.record_probe(kiro_a, success=True, error=None)

        history = await sqlite_store.health_history("kiro-a")
        assert [h["healthy"] for h in history] == [True, False]
        assert history[1]["errorMessage"] == "HTTP 401"
        assert history[0]["checkModel"] == "claude-haiku-4-5"
        assert await sqlite_store.health_history("kiro-a", limit=1) == history[:1]
        assert await sqlite_store.health_history("nobody") == []

    @pytest.mark.asyncio
    async def test_empty_database_falls_back_to_settings(self, tmp_path, make_instance) -> None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        store = SqlitePoolStore(
            engine,
            pool_file=tmp_path / "absent.json",
            fallback=lambda: [make_instance("kiro-default")],
        )
        try:
            assert [inst.id for inst in await store.load()] == ["kiro-default"]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_export_document(self, sqlite_store, tmp_path) -> None:
        await sqlite_store.load()
        count = await sqlite_store.export_json(tmp_path / "export.json")
        exported = orjson.loads((tmp_path / "export.json").read_bytes())
        assert count == 3
        assert exported["openai-custom"][0]["OPENAI_API_KEY"] == "sk-1"
        assert exported["openai-custom"][0]["isDisabled"] is True
