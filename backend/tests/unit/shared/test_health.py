"""Tests for the instance health state machine."""

from __future__ import annotations

import pytest

from pool_gateway.domain.enums import ErrorClass, HealthStatus
from pool_gateway.domain.exceptions import InvalidHealthTransition
from pool_gateway.shared.providers.health import HealthStateMachine
from pool_gateway.shared.providers.types import DispatchOutcome


def _failure(error_class: ErrorClass = ErrorClass.SERVER_ERROR) -> DispatchOutcome:
    return DispatchOutcome.failed(error_class, http_status=500, message="boom")


class TestHealthTransitions:
    def test_allowed_transitions(self) -> None:
        assert HealthStatus.HEALTHY.can_transition_to(HealthStatus.CHECKING)
        assert HealthStatus.HEALTHY.can_transition_to(HealthStatus.BANNED)
        assert HealthStatus.CHECKING.can_transition_to(HealthStatus.HEALTHY)
        assert HealthStatus.CHECKING.can_transition_to(HealthStatus.BANNED)
        assert HealthStatus.BANNED.can_transition_to(HealthStatus.CHECKING)

    def test_banned_cannot_skip_the_probe(self) -> None:
        assert not HealthStatus.BANNED.can_transition_to(HealthStatus.HEALTHY)
        assert not HealthStatus.HEALTHY.can_transition_to(HealthStatus.HEALTHY)


class TestProbes:
    def test_begin_probe_moves_to_checking(self, make_instance) -> None:
        machine = HealthStateMachine(3)
        inst = make_instance("a")
        assert machine.begin_probe(inst) is True
        assert inst.health == HealthStatus.CHECKING

    def test_begin_probe_refuses_checking_and_disabled(self, make_instance) -> None:
        machine = HealthStateMachine(3)
        checking = make_instance("a", health=HealthStatus.CHECKING)
        disabled = make_instance("b", disabled=True)
        assert machine.begin_probe(checking) is False
        assert machine.begin_probe(disabled) is False
        assert disabled.health == HealthStatus.HEALTHY

    def test_passing_probe_restores_and_clears_errors(self, make_instance) -> None:
        machine = HealthStateMachine(3)
        inst = make_instance("a", health=HealthStatus.BANNED, error_count=7)
        inst.last_error_message = "old"
        machine.begin_probe(inst)
        status = machine.complete_probe(inst, success=True)
        assert status == HealthStatus.HEALTHY
        assert inst.error_count == 0
        assert inst.last_error_message is None
        assert inst.last_probe_at is not None

    def test_failing_probe_bans(self, make_instance) -> None:
        machine = HealthStateMachine(3)
        inst = make_instance("a")
        machine.begin_probe(inst)
        status = machine.complete_probe(inst, success=False, error="HTTP 401")
        assert status == HealthStatus.BANNED
        assert inst.last_error_message == "HTTP 401"
        assert inst.last_error_at is not None

    def test_completing_without_begin_is_rejected(self, make_instance) -> None:
        machine = HealthStateMachine(3)
        inst = make_instance("a")
        with pytest.raises(InvalidHealthTransition):
            machine.complete_probe(inst, success=True)


class TestRecordOutcome:
    def test_success_does_not_reset_error_count(self, make_instance) -> None:
        machine = HealthStateMachine(3)
        inst = make_instance("a", error_count=2)
        assert machine.record_outcome(inst, DispatchOutcome.ok()) is False
        assert inst.error_count == 2
        assert inst.health == HealthStatus.HEALTHY

    def test_bans_when_error_count_reaches_max(self, make_instance) -> None:
        machine = HealthStateMachine(3)
        inst = make_instance("a")
        assert machine.record_outcome(inst, _failure()) is False
        assert machine.record_outcome(inst, _failure()) is False
        assert machine.record_outcome(inst, _failure()) is True
        assert inst.health == HealthStatus.BANNED
        assert inst.error_count == 3
        assert inst.last_error_message == "boom"

    def test_fatal_credential_error_bans_at_once(self, make_instance) -> None:
        machine = HealthStateMachine(5)
        inst = make_instance("a")
        assert machine.record_outcome(inst, _failure(ErrorClass.FATAL_CREDENTIAL)) is True
        assert inst.health == HealthStatus.BANNED
        assert inst.error_count == 1

    def test_checking_instance_only_counts(self, make_instance) -> None:
        machine = HealthStateMachine(1)
        inst = make_instance("a", health=HealthStatus.CHECKING)
        assert machine.record_outcome(inst, _failure(ErrorClass.FATAL_CREDENTIAL)) is False
        assert inst.health == HealthStatus.CHECKING
        assert inst.error_count == 1

    def test_banned_instance_is_not_banned_twice(self, make_instance) -> None:
        machine = HealthStateMachine(1)
        inst = make_instance("a", health=HealthStatus.BANNED, error_count=4)
        assert machine.record_outcome(inst, _failure()) is False
        assert inst.error_count == 5
