"""Time-bounded cache of per-instance usage snapshots.

Lookup rules:

- fresh snapshot (younger than the TTL)  → returned, no upstream call
- stale snapshot                         → returned immediately, refresh
                                           started in the background
- no snapshot, or ``force_refresh``      → caller awaits a fetch; on failure
                                           the last snapshot (if any) is
                                           returned with its original
                                           ``fetched_at``

Concurrent fetches for one id collapse into one upstream call, and at most
``concurrency`` fetches run pool-wide.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable

import structlog

from pool_gateway.domain.exceptions import CacheMiss, GatewayError, UpstreamServerError
from pool_gateway.shared.observability.metrics import USAGE_CACHE_REQUESTS, USAGE_FETCHES_TOTAL
from pool_gateway.shared.providers.types import UsageReport, UsageSnapshot

logger = structlog.get_logger(__name__)

UsageFetcher = Callable[[str], Awaitable[UsageReport]]


class UsageCache:
    """Stale-while-revalidate usage cache with per-id single-flight."""

    def __init__(
        self,
        fetch: UsageFetcher,
        *,
        ttl_seconds: float = 300.0,
        concurrency: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetch_fn = fetch
        self._ttl = ttl_seconds
        self._clock = clock
        self._semaphore = asyncio.Semaphore(concurrency)

        self._snapshots: dict[str, UsageSnapshot] = {}
        self._inflight: dict[str, asyncio.Task[UsageSnapshot]] = {}
        self._background: set[asyncio.Task[None]] = set()

        self._hits = 0
        self._misses = 0
        self._fetches = 0
        self._fetch_errors = 0

    # ── Lookup ───────────────────────────────────────────────
    async def get(self, instance_id: str, *, force_refresh: bool = False) -> UsageSnapshot:
        """Return a snapshot for the instance.

        Raises:
            CacheMiss: the fetch failed and no snapshot was ever stored.
        """
        snapshot = self._snapshots.get(instance_id)

        if snapshot is not None and not force_refresh:
            self._hits += 1
            if snapshot.age(self._clock()) < self._ttl:
                USAGE_CACHE_REQUESTS.labels(result="hit").inc()
            else:
                USAGE_CACHE_REQUESTS.labels(result="stale").inc()
                self._revalidate(instance_id)
            return snapshot

        self._misses += 1
        USAGE_CACHE_REQUESTS.labels(result="miss").inc()
        try:
            return await self._single_flight(instance_id)
        except GatewayError as exc:
            last = self._snapshots.get(instance_id)
            if last is not None:
                logger.warning(
                    "usage_fetch_failed_serving_last_snapshot",
                    instance_id=instance_id,
                    error=exc.message,
                    snapshot_age_s=round(last.age(self._clock()), 1),
                )
                return last
            raise CacheMiss(instance_id, exc.message) from exc

    async def refresh_one(self, instance_id: str) -> UsageSnapshot:
        """Force a fetch for one instance and surface any upstream error."""
        self._misses += 1
        USAGE_CACHE_REQUESTS.labels(result="miss").inc()
        return await self._single_flight(instance_id)

    async def get_many(
        self, instance_ids: Iterable[str], *, force_refresh: bool = False
    ) -> dict[str, UsageSnapshot | GatewayError]:
        """Look up several instances; per-id failures are returned, not raised."""
        ids = list(instance_ids)
        results = await asyncio.gather(
            *(self.get(i, force_refresh=force_refresh) for i in ids),
            return_exceptions=True,
        )
        out: dict[str, UsageSnapshot | GatewayError] = {}
        for instance_id, result in zip(ids, results):
            if isinstance(result, BaseException) and not isinstance(result, GatewayError):
                raise result
            out[instance_id] = result
        return out

    def peek(self, instance_id: str) -> UsageSnapshot | None:
        return self._snapshots.get(instance_id)

    def invalidate(self, instance_id: str | None = None) -> None:
        if instance_id is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(instance_id, None)

    # ── Stats ────────────────────────────────────────────────
    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return round(self._hits / total, 4) if total else 0.0

    def stats(self) -> dict[str, float | int]:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "fetches": self._fetches,
            "fetchErrors": self._fetch_errors,
            "hitRate": self.hit_rate,
            "size": len(self._snapshots),
            "inFlight": len(self._inflight),
        }

    # ── Fetching ─────────────────────────────────────────────
    def _single_flight(self, instance_id: str) -> Awaitable[UsageSnapshot]:
        task = self._inflight.get(instance_id)
        if task is None:
            task = asyncio.ensure_future(self._fetch(instance_id))
            self._inflight[instance_id] = task
            task.add_done_callback(lambda t: self._forget(instance_id, t))
        # One caller's cancellation must not cancel the shared fetch
        return asyncio.shield(task)

    def _forget(self, instance_id: str, task: asyncio.Task[UsageSnapshot]) -> None:
        if self._inflight.get(instance_id) is task:
            del self._inflight[instance_id]
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers still receive it
            task.exception()

    async def _fetch(self, instance_id: str) -> UsageSnapshot:
        async with self._semaphore:
            self._fetches += 1
            try:
                report = await self._fetch_fn(instance_id)
            except GatewayError:
                self._fetch_errors += 1
                USAGE_FETCHES_TOTAL.labels(result="error").inc()
                raise
            except Exception as exc:
                # Malformed upstream payloads count as fetch failures too
                self._fetch_errors += 1
                USAGE_FETCHES_TOTAL.labels(result="error").inc()
                raise UpstreamServerError(
                    f"Usage fetch failed: {type(exc).__name__}: {exc}", instance_id=instance_id
                ) from exc
        USAGE_FETCHES_TOTAL.labels(result="ok").inc()
        snapshot = UsageSnapshot(instance_id=instance_id, report=report, fetched_at=self._clock())
        self._snapshots[instance_id] = snapshot
        return snapshot

    def _revalidate(self, instance_id: str) -> None:
        if instance_id in self._inflight:
            return

        async def _run() -> None:
            try:
                await self._single_flight(instance_id)
            except GatewayError as exc:
                logger.warning("usage_background_refresh_failed", instance_id=instance_id, error=exc.message)

        task = asyncio.ensure_future(_run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def aclose(self) -> None:
        """Cancel background refreshes and in-flight fetches."""
        pending = [*self._background, *self._inflight.values()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
