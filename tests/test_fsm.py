"""
tests/test_fsm.py — pytest unit tests for core.fsm.SafetyStateMachine.

No external dependencies beyond the project source.
"""

from __future__ import annotations

import threading

import pytest

from core.constants import SystemState
from core.fsm import InvalidTransitionError, SafetyStateMachine, state_for_risk
from safety.validator import AnalysisResult


# ──────────────────────────────────────────────────────────────
# Transition map mirror (must stay in sync with core/fsm.py)
# ──────────────────────────────────────────────────────────────

VALID_TRANSITIONS: dict[SystemState, list[SystemState]] = {
    SystemState.IDLE: [
        SystemState.SAFE,
        SystemState.ELEVATED,
        SystemState.CRITICAL,
        SystemState.LOCKDOWN,
    ],
    SystemState.SAFE: [SystemState.ELEVATED, SystemState.CRITICAL, SystemState.LOCKDOWN],
    SystemState.ELEVATED: [SystemState.SAFE, SystemState.CRITICAL, SystemState.LOCKDOWN],
    SystemState.CRITICAL: [SystemState.SAFE, SystemState.ELEVATED, SystemState.LOCKDOWN],
    SystemState.LOCKDOWN: [],
}


def _result(risk: float) -> AnalysisResult:
    return AnalysisResult(
        risk_level=risk,
        confidence=0.9,
        spoken_response="ok",
        recommendations=(),
        should_alert_emergency=False,
    )


def _force_state(fsm: SafetyStateMachine, target: SystemState) -> None:
    """Drive ``fsm`` into ``target`` through the public API."""
    if fsm.is_locked_down:
        fsm.reset()
    if target is SystemState.IDLE:
        assert fsm.current_state is SystemState.IDLE, "IDLE is only the initial state"
        return
    fsm.transition(target, reason="_force_state")


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture()
def fsm() -> SafetyStateMachine:
    """Fresh machine in IDLE."""
    return SafetyStateMachine()


@pytest.fixture()
def fsm_with_callbacks() -> tuple[SafetyStateMachine, list[tuple]]:
    """Machine that records every external callback invocation."""
    log: list[tuple[SystemState, SystemState, str]] = []

    def _cb(from_: SystemState, to_: SystemState, reason: str) -> None:
        log.append((from_, to_, reason))

    return SafetyStateMachine(on_transition=_cb), log


# ──────────────────────────────────────────────────────────────
# Test 1: Risk mapping
# ──────────────────────────────────────────────────────────────

class TestRiskMapping:

    @pytest.mark.parametrize("risk, expected", [
        (0, SystemState.SAFE),
        (3, SystemState.SAFE),
        (3.99, SystemState.SAFE),
        (4, SystemState.ELEVATED),
        (6, SystemState.ELEVATED),
        (6.9, SystemState.ELEVATED),
        (7, SystemState.CRITICAL),
        (10, SystemState.CRITICAL),
    ])
    def test_state_for_risk(self, risk: float, expected: SystemState) -> None:
        assert state_for_risk(risk) is expected

    @pytest.mark.parametrize("start", [
        SystemState.IDLE, SystemState.SAFE, SystemState.ELEVATED, SystemState.CRITICAL,
    ])
    @pytest.mark.parametrize("risk", [0, 2, 4, 5, 7, 9])
    def test_apply_result_from_any_non_lockdown_state(
        self, fsm: SafetyStateMachine, start: SystemState, risk: int,
    ) -> None:
        _force_state(fsm, start)
        assert fsm.apply_result(_result(risk)) is state_for_risk(risk)
        assert fsm.current_state is state_for_risk(risk)

    def test_risk_never_enters_lockdown(self, fsm: SafetyStateMachine) -> None:
        fsm.apply_result(_result(10))
        assert fsm.current_state is SystemState.CRITICAL

    def test_result_ignored_in_lockdown(self, fsm: SafetyStateMachine) -> None:
        fsm.enter_lockdown("manual")
        assert fsm.apply_result(_result(0)) is SystemState.LOCKDOWN
        assert fsm.current_state is SystemState.LOCKDOWN


# ──────────────────────────────────────────────────────────────
# Test 2: Transitions
# ──────────────────────────────────────────────────────────────

class TestTransitions:

    def test_initial_state_is_idle(self, fsm: SafetyStateMachine) -> None:
        assert fsm.current_state is SystemState.IDLE

    def test_every_valid_edge(self) -> None:
        tested = 0
        for from_state, targets in VALID_TRANSITIONS.items():
            for to_state in targets:
                fsm = SafetyStateMachine()
                _force_state(fsm, from_state)
                assert fsm.transition(to_state, reason="test_valid") is True
                assert fsm.current_state is to_state
                tested += 1
        assert tested == sum(len(v) for v in VALID_TRANSITIONS.values())

    def test_self_transition_is_noop(
        self, fsm_with_callbacks: tuple[SafetyStateMachine, list]
    ) -> None:
        fsm, log = fsm_with_callbacks
        assert fsm.transition(SystemState.ELEVATED, "first") is True
        assert fsm.transition(SystemState.ELEVATED, "again") is False
        assert len(log) == 1
        assert len(fsm.get_history()) == 1

    @pytest.mark.parametrize("target", [
        SystemState.SAFE, SystemState.ELEVATED, SystemState.CRITICAL, SystemState.IDLE,
    ])
    def test_lockdown_is_sticky(self, fsm: SafetyStateMachine, target: SystemState) -> None:
        fsm.enter_lockdown("manual")
        with pytest.raises(InvalidTransitionError) as exc_info:
            fsm.transition(target, reason="escape")
        assert exc_info.value.from_state is SystemState.LOCKDOWN
        assert fsm.current_state is SystemState.LOCKDOWN

    def test_cannot_return_to_idle(self, fsm: SafetyStateMachine) -> None:
        fsm.transition(SystemState.SAFE)
        with pytest.raises(InvalidTransitionError) as exc_info:
            fsm.transition(SystemState.IDLE)
        assert "SAFE" in str(exc_info.value)
        assert "IDLE" in str(exc_info.value)

    def test_enter_lockdown_twice(self, fsm_with_callbacks) -> None:
        fsm, log = fsm_with_callbacks
        assert fsm.enter_lockdown("first") is True
        assert fsm.enter_lockdown("second") is False
        assert [entry[1] for entry in log] == [SystemState.LOCKDOWN]

    def test_external_callback_arguments(self, fsm_with_callbacks) -> None:
        fsm, log = fsm_with_callbacks
        fsm.transition(SystemState.CRITICAL, reason="risk_level=8")
        assert log == [(SystemState.IDLE, SystemState.CRITICAL, "risk_level=8")]

    def test_raising_callback_does_not_break_transition(self) -> None:
        def _boom(*_args) -> None:
            raise RuntimeError("subscriber failed")

        fsm = SafetyStateMachine(on_transition=_boom)
        assert fsm.transition(SystemState.ELEVATED) is True
        assert fsm.current_state is SystemState.ELEVATED

    def test_can_transition(self, fsm: SafetyStateMachine) -> None:
        assert fsm.can_transition(SystemState.LOCKDOWN) is True
        fsm.enter_lockdown()
        assert fsm.can_transition(SystemState.SAFE) is False


# ──────────────────────────────────────────────────────────────
# Test 3: reset()
# ──────────────────────────────────────────────────────────────

class TestReset:

    @pytest.mark.parametrize("state", [
        SystemState.IDLE, SystemState.ELEVATED, SystemState.CRITICAL, SystemState.LOCKDOWN,
    ])
    def test_reset_to_safe_from_every_state(
        self, fsm: SafetyStateMachine, state: SystemState,
    ) -> None:
        _force_state(fsm, state)
        assert fsm.reset() is True
        assert fsm.current_state is SystemState.SAFE

    def test_reset_when_safe_is_noop(self, fsm: SafetyStateMachine) -> None:
        fsm.transition(SystemState.SAFE)
        assert fsm.reset() is False

    def test_reset_records_in_history(self, fsm: SafetyStateMachine) -> None:
        fsm.enter_lockdown("manual")
        fsm.reset()
        last = fsm.get_history()[-1]
        assert last["from"] == "LOCKDOWN"
        assert last["to"] == "SAFE"
        assert last["reason"] == "RESET"

    def test_lockdown_can_be_reentered_after_reset(self, fsm: SafetyStateMachine) -> None:
        fsm.enter_lockdown()
        fsm.reset()
        assert fsm.enter_lockdown() is True


# ──────────────────────────────────────────────────────────────
# Test 4: History and thread safety
# ──────────────────────────────────────────────────────────────

class TestHistory:

    def test_history_is_capped(self, fsm: SafetyStateMachine) -> None:
        for i in range(60):
            fsm.transition(SystemState.ELEVATED if i % 2 == 0 else SystemState.SAFE)
        assert len(fsm.get_history()) == 50

    def test_repr_mentions_state(self, fsm: SafetyStateMachine) -> None:
        fsm.transition(SystemState.CRITICAL)
        assert "CRITICAL" in repr(fsm)

    def test_concurrent_lockdown_has_one_winner(self, fsm: SafetyStateMachine) -> None:
        wins: list[bool] = []
        lock = threading.Lock()
        barrier = threading.Barrier(5)

        def _trigger() -> None:
            barrier.wait()
            entered = fsm.enter_lockdown("race")
            with lock:
                wins.append(entered)

        threads = [threading.Thread(target=_trigger) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=2.0)

        assert wins.count(True) == 1
        assert fsm.current_state is SystemState.LOCKDOWN
