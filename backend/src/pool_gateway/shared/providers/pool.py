"""Credential pool manager.

Owns every ``ProviderInstance`` and is the only way callers reach them.
Membership is static per load; ``replace`` swaps the whole pool.

Locking:
    - ``_membership_lock`` guards the id/type indexes only, and is held just
      long enough to copy a member tuple.
    - each instance's own ``lock`` guards its health and counters.
    - ``stats`` reads fields without any instance lock (snapshot semantics).
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime

import structlog

from pool_gateway.domain.enums import HealthStatus, ProviderType
from pool_gateway.domain.exceptions import GatewayError, InstanceNotFound
from pool_gateway.ports.outbound import PoolStore
from pool_gateway.shared.observability.metrics import INSTANCES_BANNED_TOTAL, POOL_INSTANCES
from pool_gateway.shared.providers.health import HealthStateMachine
from pool_gateway.shared.providers.types import (
    DispatchOutcome,
    NotAvailable,
    PoolStats,
    ProviderInstance,
    UsageReport,
    UsageSnapshot,
    utcnow,
)
from pool_gateway.shared.providers.usage_cache import UsageCache

logger = structlog.get_logger(__name__)

UsageQuery = Callable[[ProviderInstance], Awaitable[UsageReport]]


def _selection_key(instance: ProviderInstance) -> tuple[int, int, str]:
    return (instance.usage_count, instance.error_count, instance.id)


class CredentialPoolManager:
    """Selection, outcome reporting, administration and usage for one pool."""

    def __init__(
        self,
        instances: Iterable[ProviderInstance],
        *,
        health: HealthStateMachine,
        usage_query: UsageQuery | None = None,
        usage_ttl_seconds: float = 300.0,
        usage_concurrency: int = 10,
        store: PoolStore | None = None,
        save_debounce_seconds: float = 1.0,
    ) -> None:
        self._health = health
        self._usage_query = usage_query
        self._store = store
        self._save_debounce = save_debounce_seconds
        self._save_task: asyncio.Task[None] | None = None

        self._membership_lock = threading.Lock()
        self._by_id: dict[str, ProviderInstance] = {}
        self._by_type: dict[ProviderType, tuple[ProviderInstance, ...]] = {}
        self._install(instances)

        self._usage = UsageCache(
            self._fetch_usage,
            ttl_seconds=usage_ttl_seconds,
            concurrency=usage_concurrency,
        )

    # ── Membership ───────────────────────────────────────────
    def _install(self, instances: Iterable[ProviderInstance]) -> None:
        by_id: dict[str, ProviderInstance] = {}
        grouped: dict[ProviderType, list[ProviderInstance]] = {}
        for inst in instances:
            if inst.id in by_id:
                raise ValueError(f"Duplicate instance id {inst.id!r}")
            by_id[inst.id] = inst
            grouped.setdefault(inst.provider_type, []).append(inst)

        with self._membership_lock:
            self._by_id = by_id
            self._by_type = {pt: tuple(members) for pt, members in grouped.items()}

    def replace(self, instances: Iterable[ProviderInstance]) -> None:
        """Swap in a freshly loaded pool; cached usage is dropped with it."""
        self._install(instances)
        self._usage.invalidate()
        logger.info("pool_replaced", total=len(self._by_id))

    def _members(self, provider_type: ProviderType | None = None) -> tuple[ProviderInstance, ...]:
        with self._membership_lock:
            if provider_type is None:
                return tuple(self._by_id.values())
            return self._by_type.get(provider_type, ())

    def instance(self, instance_id: str) -> ProviderInstance:
        with self._membership_lock:
            inst = self._by_id.get(instance_id)
        if inst is None:
            raise InstanceNotFound(instance_id)
        return inst

    def list_instances(self, provider_type: ProviderType | None = None) -> list[ProviderInstance]:
        return list(self._members(provider_type))

    def provider_types(self) -> list[ProviderType]:
        with self._membership_lock:
            return list(self._by_type)

    @property
    def health(self) -> HealthStateMachine:
        return self._health

    @property
    def usage(self) -> UsageCache:
        return self._usage

    # ── Selection ────────────────────────────────────────────
    def select(
        self,
        provider_type: ProviderType,
        excluding: frozenset[str] | set[str] = frozenset(),
        *,
        model: str | None = None,
    ) -> ProviderInstance | NotAvailable:
        """Pick the least-used healthy, enabled instance of ``provider_type``.

        Ties break on lower ``error_count``, then on id.  Selecting counts as
        a use.  Returns ``NotAvailable`` when nothing is eligible.
        """
        candidates = sorted(
            (
                inst
                for inst in self._members(provider_type)
                if inst.is_selectable and inst.id not in excluding and inst.supports(model)
            ),
            key=_selection_key,
        )
        for inst in candidates:
            with inst.lock:
                # Re-check: a concurrent report or probe may have changed it
                if not inst.is_selectable:
                    continue
                inst.usage_count += 1
                inst.last_used_at = utcnow()
            self._schedule_save()
            return inst

        return NotAvailable(
            provider_type,
            reason="all eligible instances excluded" if excluding else "no eligible instance",
        )

    # ── Outcome reporting ────────────────────────────────────
    def report_outcome(self, instance_id: str, outcome: DispatchOutcome) -> None:
        inst = self.instance(instance_id)
        banned = self._health.record_outcome(inst, outcome)
        if banned:
            INSTANCES_BANNED_TOTAL.labels(provider_type=inst.provider_type.value).inc()
            logger.info("instance_queued_for_reprobe", instance_id=inst.id)
        if not outcome.success:
            self._schedule_save()

    # ── Statistics ───────────────────────────────────────────
    def stats(self, provider_type: ProviderType | None = None) -> PoolStats:
        """Aggregate counts.  Never blocks a concurrent select or report."""
        stats = PoolStats(provider_type=provider_type.value if provider_type else None)
        for inst in self._members(provider_type):
            stats.total += 1
            health = inst.health
            if health == HealthStatus.HEALTHY:
                stats.healthy += 1
            elif health == HealthStatus.CHECKING:
                stats.checking += 1
            else:
                stats.banned += 1
            if inst.disabled:
                stats.disabled += 1
            stats.total_usage_count += inst.usage_count
            stats.total_error_count += inst.error_count
        stats.cache_hit_rate = self._usage.hit_rate

        if provider_type is not None:
            for state in ("healthy", "checking", "banned", "disabled"):
                POOL_INSTANCES.labels(provider_type=provider_type.value, state=state).set(
                    getattr(stats, state)
                )
        return stats

    # ── Administration ───────────────────────────────────────
    def enable(self, instance_id: str) -> ProviderInstance:
        return self._set_disabled(instance_id, False)

    def disable(self, instance_id: str) -> ProviderInstance:
        return self._set_disabled(instance_id, True)

    def _set_disabled(self, instance_id: str, disabled: bool) -> ProviderInstance:
        inst = self.instance(instance_id)
        with inst.lock:
            inst.disabled = disabled
        logger.info("instance_disabled" if disabled else "instance_enabled", instance_id=instance_id)
        self._schedule_save()
        return inst

    def reset_counters(self, instance_id: str) -> ProviderInstance:
        """Zero usage and error counters.  Health is left to the probe."""
        inst = self.instance(instance_id)
        with inst.lock:
            inst.usage_count = 0
            inst.error_count = 0
        logger.info("instance_counters_reset", instance_id=instance_id)
        self._schedule_save()
        return inst

    def set_token_expiry(self, instance_id: str, expires_at: datetime | None) -> None:
        inst = self.instance(instance_id)
        with inst.lock:
            inst.token_expires_at = expires_at
        self._schedule_save()

    # ── Usage ────────────────────────────────────────────────
    async def get_usage(self, instance_id: str, *, force_refresh: bool = False) -> UsageSnapshot:
        self.instance(instance_id)
        return await self._usage.get(instance_id, force_refresh=force_refresh)

    async def refresh_one(self, instance_id: str) -> UsageSnapshot:
        self.instance(instance_id)
        return await self._usage.refresh_one(instance_id)

    async def get_usage_all(
        self, provider_type: ProviderType | None = None, *, force_refresh: bool = False
    ) -> dict[str, UsageSnapshot | GatewayError]:
        ids = [inst.id for inst in self._members(provider_type)]
        return await self._usage.get_many(ids, force_refresh=force_refresh)

    async def _fetch_usage(self, instance_id: str) -> UsageReport:
        if self._usage_query is None:
            raise RuntimeError("Pool was built without a usage query")
        inst = self.instance(instance_id)
        report = await self._usage_query(inst)
        with inst.lock:
            inst.quota = report.quota
            if report.email:
                inst.email = report.email
            if report.subscription:
                inst.subscription = report.subscription
        self._schedule_save()
        return report

    # ── Persistence ──────────────────────────────────────────
    def _schedule_save(self) -> None:
        if self._store is None:
            return
        if self._save_task is not None and not self._save_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Sync caller outside the event loop; the next async mutation saves
            return
        self._save_task = loop.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self._save_debounce)
        try:
            await self.flush()
        except Exception:
            logger.exception("pool_save_failed")

    async def reload(self) -> int:
        """Replace the whole pool from the store.

        A pending debounced save is dropped rather than flushed, so edits
        made to the store since the last load are not overwritten.
        """
        if self._store is None:
            raise RuntimeError("Pool was built without a store")
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
            await asyncio.gather(self._save_task, return_exceptions=True)
        instances = await self._store.load()
        self.replace(instances)
        return len(instances)

    async def flush(self) -> None:
        if self._store is not None:
            await self._store.save(self.list_instances())

    async def aclose(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
            await asyncio.gather(self._save_task, return_exceptions=True)
        await self.flush()
        await self._usage.aclose()
