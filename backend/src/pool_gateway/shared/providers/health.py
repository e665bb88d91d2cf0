"""Health state machine for pool instances.

    HEALTHY ──probe──▶ CHECKING ──ok──▶ HEALTHY   (error_count := 0)
                                └─fail─▶ BANNED
    BANNED  ──probe──▶ CHECKING ──...
    HEALTHY ──error_count >= max / fatal credential error──▶ BANNED

While an instance is CHECKING its health field belongs to the probe; live
traffic outcomes only touch counters until the probe completes.
"""

from __future__ import annotations

import structlog

from pool_gateway.domain.enums import ErrorClass, HealthStatus
from pool_gateway.domain.exceptions import InvalidHealthTransition
from pool_gateway.shared.providers.types import DispatchOutcome, ProviderInstance, utcnow

logger = structlog.get_logger(__name__)


class HealthStateMachine:
    """Applies probe results and dispatch outcomes to instances.

    Every method takes the instance lock; callers must not hold it.
    """

    def __init__(self, max_error_count: int) -> None:
        self._max_error_count = max_error_count

    @property
    def max_error_count(self) -> int:
        return self._max_error_count

    # ── Probes ───────────────────────────────────────────────
    def begin_probe(self, instance: ProviderInstance) -> bool:
        """Move the instance into CHECKING.  False if it must not be probed now."""
        with instance.lock:
            if instance.disabled or instance.health == HealthStatus.CHECKING:
                return False
            self._transition(instance, HealthStatus.CHECKING)
            return True

    def complete_probe(
        self, instance: ProviderInstance, *, success: bool, error: str | None = None
    ) -> HealthStatus:
        now = utcnow()
        with instance.lock:
            instance.last_probe_at = now
            if success:
                self._transition(instance, HealthStatus.HEALTHY)
                instance.error_count = 0
                instance.last_error_message = None
            else:
                self._transition(instance, HealthStatus.BANNED)
                instance.last_error_at = now
                instance.last_error_message = error
            status = instance.health

        logger.info(
            "health_probe_completed",
            instance_id=instance.id,
            provider_type=instance.provider_type.value,
            health=status.value,
            error=error,
        )
        return status

    # ── Live traffic ─────────────────────────────────────────
    def record_outcome(self, instance: ProviderInstance, outcome: DispatchOutcome) -> bool:
        """Apply a dispatch outcome.  Returns True when this call banned the instance.

        A success never resets ``error_count``; only a passing probe does.
        """
        if outcome.success:
            return False

        with instance.lock:
            instance.error_count += 1
            instance.last_error_at = utcnow()
            instance.last_error_message = outcome.message
            should_ban = (
                outcome.error_class == ErrorClass.FATAL_CREDENTIAL
                or instance.error_count >= self._max_error_count
            )
            banned = should_ban and instance.health == HealthStatus.HEALTHY
            if banned:
                self._transition(instance, HealthStatus.BANNED)
            error_count = instance.error_count

        if banned:
            logger.warning(
                "instance_banned",
                instance_id=instance.id,
                provider_type=instance.provider_type.value,
                error_count=error_count,
                error_class=outcome.error_class.value if outcome.error_class else None,
            )
        return banned

    # ── Internals ────────────────────────────────────────────
    @staticmethod
    def _transition(instance: ProviderInstance, target: HealthStatus) -> None:
        if not instance.health.can_transition_to(target):
            raise InvalidHealthTransition(instance.health.value, target.value)
        instance.health = target
