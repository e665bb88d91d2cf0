"""Background schedulers: periodic health probes and OAuth token refresh.

Both run as asyncio tasks owned by the application lifespan, independent of
request handling.  ``stop`` lets an in-flight cycle finish within the grace
period and cancels it otherwise.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import structlog

from pool_gateway.domain.enums import HealthStatus, ProviderType
from pool_gateway.domain.exceptions import GatewayError, RefreshFailed
from pool_gateway.ports.outbound import PoolStore, UpstreamClient
from pool_gateway.shared.observability.metrics import HEALTH_PROBES_TOTAL, TOKEN_REFRESH_TOTAL
from pool_gateway.shared.providers.pool import CredentialPoolManager
from pool_gateway.shared.providers.types import ProviderInstance, utcnow

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """Runs ``run_cycle`` every ``interval_seconds`` until stopped."""

    name = "periodic_task"

    def __init__(
        self,
        *,
        interval_seconds: float,
        run_immediately: bool = True,
        grace_seconds: float = 10.0,
    ) -> None:
        self._interval = interval_seconds
        self._run_immediately = run_immediately
        self._grace = grace_seconds
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._stop_event.clear()
            self._task = asyncio.create_task(self._loop(), name=self.name)
            logger.info(f"{self.name}_started", interval_s=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        done, _ = await asyncio.wait({self._task}, timeout=self._grace)
        if not done:
            logger.warning(f"{self.name}_grace_period_expired", grace_s=self._grace)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info(f"{self.name}_stopped")

    async def _loop(self) -> None:
        if self._run_immediately:
            await self._run_safely()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self._run_safely()

    async def _run_safely(self) -> None:
        try:
            await self.run_cycle()
        except Exception:
            # The loop must outlive any single bad cycle
            logger.exception(f"{self.name}_cycle_failed")

    async def run_cycle(self) -> Any:
        raise NotImplementedError


# ═══════════════════════════════════════════════════════════════
#  Health checks
# ═══════════════════════════════════════════════════════════════
class HealthCheckScheduler(PeriodicTask):
    """Probes every enabled instance at start-up and on a fixed interval.

    Banned instances are retried on the next cycle; there is no separate
    cool-down timer.
    """

    name = "health_check_scheduler"

    def __init__(
        self,
        pool: CredentialPoolManager,
        upstreams: Mapping[ProviderType, UpstreamClient],
        *,
        interval_seconds: float = 600.0,
        concurrency: int = 5,
        probe_timeout_seconds: float = 30.0,
        store: PoolStore | None = None,
        grace_seconds: float = 10.0,
    ) -> None:
        super().__init__(interval_seconds=interval_seconds, grace_seconds=grace_seconds)
        self._pool = pool
        self._upstreams = upstreams
        self._concurrency = concurrency
        self._probe_timeout = probe_timeout_seconds
        self._store = store

    async def run_cycle(self) -> dict[str, int]:
        instances = [inst for inst in self._pool.list_instances() if not inst.disabled]
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(inst: ProviderInstance) -> HealthStatus | None:
            async with semaphore:
                return await self.probe_one(inst)

        results = await asyncio.gather(*(_bounded(inst) for inst in instances))
        summary = {
            "probed": sum(1 for r in results if r is not None),
            "healthy": sum(1 for r in results if r == HealthStatus.HEALTHY),
            "banned": sum(1 for r in results if r == HealthStatus.BANNED),
            "skipped": sum(1 for r in results if r is None),
        }
        logger.info("health_check_cycle_completed", **summary)
        return summary

    async def probe_one(self, instance: ProviderInstance) -> HealthStatus | None:
        """Probe a single instance.  Returns None when it was skipped."""
        if not self._pool.health.begin_probe(instance):
            return None

        upstream = self._upstreams.get(instance.provider_type)
        error: str | None = None
        result = "ok"
        try:
            if upstream is None:
                raise GatewayError(f"no upstream client for {instance.provider_type.value}")
            await asyncio.wait_for(upstream.probe(instance), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            error = f"probe timed out after {self._probe_timeout}s"
            result = "timeout"
        except GatewayError as exc:
            error = exc.message
            result = "failed"
        except Exception as exc:
            # Any probe crash must still leave CHECKING
            logger.exception("health_probe_crashed", instance_id=instance.id)
            error = f"{type(exc).__name__}: {exc}"
            result = "failed"

        HEALTH_PROBES_TOTAL.labels(provider_type=instance.provider_type.value, result=result).inc()
        status = self._pool.health.complete_probe(instance, success=error is None, error=error)
        if self._store is not None:
            try:
                await self._store.record_probe(instance, success=error is None, error=error)
            except Exception:
                # Probe history is best effort
                logger.exception("health_probe_record_failed", instance_id=instance.id)
        return status


# ═══════════════════════════════════════════════════════════════
#  Token refresh
# ═══════════════════════════════════════════════════════════════
class TokenRefreshScheduler(PeriodicTask):
    """Refreshes OAuth tokens expiring within ``near_minutes``.

    A failed refresh leaves the current token in place and never changes
    health; an unusable token surfaces through the next health probe.
    """

    name = "token_refresh_scheduler"

    def __init__(
        self,
        pool: CredentialPoolManager,
        upstreams: Mapping[ProviderType, UpstreamClient],
        *,
        near_minutes: int = 15,
        concurrency: int = 5,
        grace_seconds: float = 10.0,
    ) -> None:
        super().__init__(
            interval_seconds=max(near_minutes, 1) * 60.0,
            grace_seconds=grace_seconds,
        )
        self._pool = pool
        self._upstreams = upstreams
        self._near = timedelta(minutes=near_minutes)
        self._concurrency = concurrency

    async def run_cycle(self) -> dict[str, int]:
        semaphore = asyncio.Semaphore(self._concurrency)
        candidates: list[ProviderInstance] = []
        deadline = utcnow() + self._near

        for inst in self._pool.list_instances():
            upstream = self._upstreams.get(inst.provider_type)
            if inst.disabled or upstream is None:
                continue
            try:
                expires_at = await upstream.token_expires_at(inst)
            except GatewayError as exc:
                logger.warning("token_expiry_unreadable", instance_id=inst.id, error=exc.message)
                continue
            except Exception:
                logger.exception("token_expiry_unreadable", instance_id=inst.id)
                continue
            if expires_at is not None and expires_at <= deadline:
                candidates.append(inst)

        async def _bounded(inst: ProviderInstance) -> bool:
            async with semaphore:
                return await self.refresh_one(inst)

        results = await asyncio.gather(*(_bounded(inst) for inst in candidates))
        summary = {
            "due": len(candidates),
            "refreshed": sum(1 for ok in results if ok),
            "failed": sum(1 for ok in results if not ok),
        }
        logger.info("token_refresh_cycle_completed", **summary)
        return summary

    async def refresh_one(self, instance: ProviderInstance) -> bool:
        upstream = self._upstreams[instance.provider_type]
        try:
            expires_at = await upstream.refresh_token(instance, force=True)
        except RefreshFailed as exc:
            TOKEN_REFRESH_TOTAL.labels(provider_type=instance.provider_type.value, result="failed").inc()
            logger.warning("token_refresh_failed", instance_id=instance.id, error=exc.message)
            return False
        except Exception:
            TOKEN_REFRESH_TOTAL.labels(provider_type=instance.provider_type.value, result="failed").inc()
            logger.exception("token_refresh_crashed", instance_id=instance.id)
            return False

        self._pool.set_token_expiry(instance.id, expires_at)
        TOKEN_REFRESH_TOTAL.labels(provider_type=instance.provider_type.value, result="ok").inc()
        logger.info(
            "token_refreshed",
            instance_id=instance.id,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return True
