"""Tests for the stale-while-revalidate usage cache."""

from __future__ import annotations

import asyncio

import pytest

from pool_gateway.domain.exceptions import CacheMiss, UpstreamServerError, UsageNotSupported
from pool_gateway.shared.providers.types import QuotaInfo, UsageReport
from pool_gateway.shared.providers.usage_cache import UsageCache


class Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class ScriptedFetcher:
    """Returns increasing ``used`` values; raises while ``failing`` is set."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failing: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def __call__(self, instance_id: str) -> UsageReport:
        self.calls.append(instance_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.failing is not None:
            raise self.failing
        return UsageReport(quota=QuotaInfo.from_totals(len(self.calls), 100), email=f"{instance_id}@x")


async def _drain(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def fetcher() -> ScriptedFetcher:
    return ScriptedFetcher()


@pytest.fixture
def cache(fetcher: ScriptedFetcher, clock: Clock) -> UsageCache:
    return UsageCache(fetcher, ttl_seconds=60, concurrency=4, clock=clock)


class TestLookup:
    @pytest.mark.asyncio
    async def test_miss_fetches_then_hit_serves_cached(self, cache, fetcher) -> None:
        first = await cache.get("a")
        second = await cache.get("a")
        assert fetcher.calls == ["a"]
        assert second is first
        assert first.quota.used == 1
        assert first.fetched_at == 1_000.0

    @pytest.mark.asyncio
    async def test_stale_snapshot_served_while_refreshing(self, cache, fetcher, clock) -> None:
        await cache.get("a")
        clock.now += 61

        stale = await cache.get("a")
        assert stale.quota.used == 1

        await _drain()
        assert fetcher.calls == ["a", "a"]
        refreshed = cache.peek("a")
        assert refreshed is not None
        assert refreshed.quota.used == 2
        assert refreshed.fetched_at == clock.now

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_fresh_snapshot(self, cache, fetcher) -> None:
        await cache.get("a")
        forced = await cache.get("a", force_refresh=True)
        assert forced.quota.used == 2
        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, cache, fetcher) -> None:
        fetcher.gate = asyncio.Event()
        pending = [asyncio.ensure_future(cache.get("a")) for _ in range(5)]
        await _drain()
        fetcher.gate.set()
        results = await asyncio.gather(*pending)
        assert fetcher.calls == ["a"]
        assert len({id(r) for r in results}) == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_without_snapshot_is_cache_miss(self, cache, fetcher) -> None:
        fetcher.failing = UpstreamServerError("down")
        with pytest.raises(CacheMiss) as excinfo:
            await cache.get("a")
        assert "down" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_failure_serves_last_snapshot(self, cache, fetcher, clock) -> None:
        original = await cache.get("a")
        clock.now += 5
        fetcher.failing = UpstreamServerError("down")
        result = await cache.get("a", force_refresh=True)
        assert result is original
        assert result.fetched_at == 1_000.0

    @pytest.mark.asyncio
    async def test_refresh_one_surfaces_errors(self, cache, fetcher) -> None:
        await cache.get("a")
        fetcher.failing = UsageNotSupported("openai-custom")
        with pytest.raises(UsageNotSupported):
            await cache.refresh_one("a")

    @pytest.mark.asyncio
    async def test_background_failure_keeps_snapshot(self, cache, fetcher, clock) -> None:
        original = await cache.get("a")
        clock.now += 120
        fetcher.failing = UpstreamServerError("down")
        assert await cache.get("a") is original
        await _drain()
        assert cache.peek("a") is original
        assert cache.stats()["fetchErrors"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_serves_last_snapshot(self, cache, fetcher) -> None:
        original = await cache.get("a")
        fetcher.failing = ValueError("Expecting value: line 1 column 1 (char 0)")
        assert await cache.get("a", force_refresh=True) is original
        assert cache.stats()["fetchErrors"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_without_snapshot_is_cache_miss(self, cache, fetcher) -> None:
        fetcher.failing = ValueError("Expecting value")
        with pytest.raises(CacheMiss) as excinfo:
            await cache.get("a")
        assert "ValueError" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_refresh_one_wraps_unexpected_errors(self, cache, fetcher) -> None:
        fetcher.failing = KeyError("usageBreakdownList")
        with pytest.raises(UpstreamServerError):
            await cache.refresh_one("a")


class TestBulkAndStats:
    @pytest.mark.asyncio
    async def test_get_many_reports_per_id(self, cache, fetcher) -> None:
        await cache.get("a")
        fetcher.failing = UpstreamServerError("down")
        results = await cache.get_many(["a", "b"])
        assert results["a"].quota.used == 1
        assert isinstance(results["b"], CacheMiss)

    @pytest.mark.asyncio
    async def test_hit_rate_and_invalidate(self, cache) -> None:
        await cache.get("a")
        await cache.get("a")
        await cache.get("a")
        assert cache.hit_rate == pytest.approx(2 / 3, abs=1e-4)
        cache.invalidate("a")
        assert cache.peek("a") is None
        stats = cache.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["size"] == 0

    @pytest.mark.asyncio
    async def test_aclose_cancels_inflight(self, cache, fetcher) -> None:
        fetcher.gate = asyncio.Event()
        pending = asyncio.ensure_future(cache.get("a"))
        await _drain()
        await cache.aclose()
        with pytest.raises(asyncio.CancelledError):
            await pending
