"""Tests for the health-check and token-refresh schedulers."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from pool_gateway.domain.enums import HealthStatus
from pool_gateway.domain.exceptions import ProbeFailed
from pool_gateway.shared.providers.health import HealthStateMachine
from pool_gateway.shared.providers.pool import CredentialPoolManager
from pool_gateway.shared.providers.scheduler import (
    HealthCheckScheduler,
    PeriodicTask,
    TokenRefreshScheduler,
)
from pool_gateway.shared.providers.types import utcnow


@pytest.fixture
def health_scheduler(pool, upstreams, memory_store) -> HealthCheckScheduler:
    return HealthCheckScheduler(pool, upstreams, interval_seconds=3600, store=memory_store)


@pytest.fixture
def refresh_scheduler(pool, upstreams) -> TokenRefreshScheduler:
    return TokenRefreshScheduler(pool, upstreams, near_minutes=15)


# ═══════════════════════════════════════════════════════════════
#  Health checks
# ═══════════════════════════════════════════════════════════════
class TestHealthCheckScheduler:
    @pytest.mark.asyncio
    async def test_cycle_probes_every_enabled_instance(
        self, health_scheduler, pool, kiro_upstream, memory_store
    ) -> None:
        kiro_upstream.probe_failures["kiro-b"] = ProbeFailed("kiro-b", "HTTP 401")
        pool.disable("kiro-c")

        summary = await health_scheduler.run_cycle()

        assert summary == {"probed": 2, "healthy": 1, "banned": 1, "skipped": 0}
        assert sorted(kiro_upstream.probed) == ["kiro-a", "kiro-b"]
        assert pool.instance("kiro-a").health == HealthStatus.HEALTHY
        assert pool.instance("kiro-b").health == HealthStatus.BANNED
        assert "HTTP 401" in pool.instance("kiro-b").last_error_message
        assert {p["instanceId"]: p["healthy"] for p in memory_store.probes} == {
            "kiro-a": True,
            "kiro-b": False,
        }

    @pytest.mark.asyncio
    async def test_instance_already_checking_is_skipped(self, health_scheduler, pool) -> None:
        pool.instance("kiro-a").health = HealthStatus.CHECKING
        summary = await health_scheduler.run_cycle()
        assert summary["skipped"] == 1
        assert summary["probed"] == 2
        assert pool.instance("kiro-a").health == HealthStatus.CHECKING

    @pytest.mark.asyncio
    async def test_banned_instance_recovers_on_next_cycle(self, health_scheduler, pool) -> None:
        inst = pool.instance("kiro-a")
        inst.health = HealthStatus.BANNED
        inst.error_count = 6
        await health_scheduler.run_cycle()
        assert inst.health == HealthStatus.HEALTHY
        assert inst.error_count == 0

    @pytest.mark.asyncio
    async def test_crashing_probe_still_leaves_checking(
        self, health_scheduler, pool, kiro_upstream
    ) -> None:
        kiro_upstream.probe_failures["kiro-a"] = RuntimeError("socket exploded")
        status = await health_scheduler.probe_one(pool.instance("kiro-a"))
        assert status == HealthStatus.BANNED
        assert pool.instance("kiro-a").last_error_message == "RuntimeError: socket exploded"

    @pytest.mark.asyncio
    async def test_history_write_failure_does_not_abort_cycle(
        self, health_scheduler, pool, memory_store, monkeypatch
    ) -> None:
        async def broken_record(instance, *, success, error) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(memory_store, "record_probe", broken_record)

        summary = await health_scheduler.run_cycle()

        assert summary == {"probed": 3, "healthy": 3, "banned": 0, "skipped": 0}
        assert all(inst.health == HealthStatus.HEALTHY for inst in pool.list_instances())

    @pytest.mark.asyncio
    async def test_missing_upstream_bans(self, pool, memory_store) -> None:
        scheduler = HealthCheckScheduler(pool, {}, store=memory_store)
        status = await scheduler.probe_one(pool.instance("kiro-a"))
        assert status == HealthStatus.BANNED

    @pytest.mark.asyncio
    async def test_start_runs_an_immediate_cycle(self, health_scheduler, kiro_upstream) -> None:
        health_scheduler.start()
        assert health_scheduler.running
        for _ in range(50):
            if len(kiro_upstream.probed) == 3:
                break
            await asyncio.sleep(0.01)
        await health_scheduler.stop()
        assert sorted(kiro_upstream.probed) == ["kiro-a", "kiro-b", "kiro-c"]
        assert not health_scheduler.running

    @pytest.mark.asyncio
    async def test_stop_cancels_a_cycle_past_the_grace_period(self) -> None:
        started = asyncio.Event()
        cancelled = asyncio.Event()

        class HangingTask(PeriodicTask):
            name = "hanging_task"

            async def run_cycle(self) -> None:
                started.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    cancelled.set()
                    raise

        task = HangingTask(interval_seconds=3600, grace_seconds=0.05)
        task.start()
        await asyncio.wait_for(started.wait(), timeout=1.0)

        await task.stop()

        assert cancelled.is_set()
        assert not task.running


# ═══════════════════════════════════════════════════════════════
#  Token refresh
# ═══════════════════════════════════════════════════════════════
class TestTokenRefreshScheduler:
    @pytest.mark.asyncio
    async def test_refreshes_tokens_near_expiry(self, refresh_scheduler, pool, kiro_upstream) -> None:
        now = utcnow()
        new_expiry = now + timedelta(hours=1)
        kiro_upstream.expiries = {
            "kiro-a": now + timedelta(minutes=5),
            "kiro-b": now + timedelta(hours=2),
            "kiro-c": None,
        }
        kiro_upstream.refreshed_expiry = new_expiry

        summary = await refresh_scheduler.run_cycle()

        assert summary == {"due": 1, "refreshed": 1, "failed": 0}
        assert kiro_upstream.refresh_calls == [("kiro-a", True)]
        assert pool.instance("kiro-a").token_expires_at == new_expiry

    @pytest.mark.asyncio
    async def test_failed_refresh_leaves_health_alone(
        self, refresh_scheduler, pool, kiro_upstream
    ) -> None:
        kiro_upstream.expiries = {"kiro-a": utcnow() - timedelta(minutes=1)}
        kiro_upstream.refresh_failures = {"kiro-a"}

        summary = await refresh_scheduler.run_cycle()

        assert summary == {"due": 1, "refreshed": 0, "failed": 1}
        inst = pool.instance("kiro-a")
        assert inst.health == HealthStatus.HEALTHY
        assert inst.token_expires_at is None

    @pytest.mark.asyncio
    async def test_unexpected_refresh_error_does_not_stop_others(
        self, refresh_scheduler, pool, kiro_upstream
    ) -> None:
        now = utcnow()
        new_expiry = now + timedelta(hours=1)
        kiro_upstream.expiries = {
            "kiro-a": now + timedelta(minutes=1),
            "kiro-b": now + timedelta(minutes=2),
        }
        kiro_upstream.refresh_errors = {"kiro-a": ValueError("Expecting value")}
        kiro_upstream.refreshed_expiry = new_expiry

        summary = await refresh_scheduler.run_cycle()

        assert summary == {"due": 2, "refreshed": 1, "failed": 1}
        assert sorted(kiro_upstream.refresh_calls) == [("kiro-a", True), ("kiro-b", True)]
        assert pool.instance("kiro-a").token_expires_at is None
        assert pool.instance("kiro-a").health == HealthStatus.HEALTHY
        assert pool.instance("kiro-b").token_expires_at == new_expiry

    @pytest.mark.asyncio
    async def test_disabled_instances_are_not_refreshed(
        self, refresh_scheduler, pool, kiro_upstream
    ) -> None:
        kiro_upstream.expiries = {"kiro-a": utcnow()}
        pool.disable("kiro-a")
        summary = await refresh_scheduler.run_cycle()
        assert summary["due"] == 0
        assert kiro_upstream.refresh_calls == []

    @pytest.mark.asyncio
    async def test_pool_without_kiro_instances(self, make_instance, upstreams) -> None:
        pool = CredentialPoolManager([], health=HealthStateMachine(3))
        scheduler = TokenRefreshScheduler(pool, upstreams)
        assert await scheduler.run_cycle() == {"due": 0, "refreshed": 0, "failed": 0}
