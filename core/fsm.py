"""
core/fsm.py — Safety state machine for Sentinel Guardian.

Maps validated risk scores onto the fixed set of system states with an
explicit transition map, per-state enter/exit callbacks, transition history
(last 50), and structured logging. LOCKDOWN is sticky: only :meth:`reset`
leaves it.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Callable

from core.constants import C, SystemState
from core.logger import get_logger

if TYPE_CHECKING:
    from safety.validator import AnalysisResult

_log = get_logger()


# ──────────────────────────────────────────────────────────────
# Custom exception
# ──────────────────────────────────────────────────────────────

class InvalidTransitionError(RuntimeError):
    """
    Raised when a requested transition is not in the valid transition map.

    Args:
        from_state: Current state at the time of the illegal attempt.
        to_state: Requested (invalid) target state.
        reason: Caller-supplied reason string.
    """

    def __init__(
        self,
        from_state: SystemState,
        to_state: SystemState,
        reason: str = "",
    ) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(
            f"Invalid transition {from_state.value} → {to_state.value}"
            + (f" (reason: {reason})" if reason else "")
        )


# ──────────────────────────────────────────────────────────────
# Valid transition map (single source of truth)
# ──────────────────────────────────────────────────────────────

_VALID_TRANSITIONS: dict[SystemState, list[SystemState]] = {
    SystemState.IDLE: [
        SystemState.SAFE,
        SystemState.ELEVATED,
        SystemState.CRITICAL,
        SystemState.LOCKDOWN,
    ],
    SystemState.SAFE: [
        SystemState.ELEVATED,
        SystemState.CRITICAL,
        SystemState.LOCKDOWN,
    ],
    SystemState.ELEVATED: [
        SystemState.SAFE,
        SystemState.CRITICAL,
        SystemState.LOCKDOWN,
    ],
    SystemState.CRITICAL: [
        SystemState.SAFE,
        SystemState.ELEVATED,
        SystemState.LOCKDOWN,
    ],
    SystemState.LOCKDOWN: [],  # Only via reset()
}

# Maximum number of transition records kept in history
_MAX_HISTORY = 50


def state_for_risk(risk_level: float) -> SystemState:
    """
    Map a risk score onto the state it calls for.

    LOCKDOWN is never returned: it needs an explicit emergency confirmation.

    Args:
        risk_level: Validated score in ``[0, 10]``.

    Returns:
        CRITICAL for ``>= 7``, ELEVATED for ``>= 4``, otherwise SAFE.
    """
    if risk_level >= C.CRITICAL_RISK:
        return SystemState.CRITICAL
    if risk_level >= C.ELEVATED_RISK:
        return SystemState.ELEVATED
    return SystemState.SAFE


# ──────────────────────────────────────────────────────────────
# State machine
# ──────────────────────────────────────────────────────────────

class SafetyStateMachine:
    """
    Finite state machine owning the single current :class:`SystemState`.

    Self-transitions are no-ops: they return ``False`` and fire no callbacks,
    so side effects attached to a state run exactly once per entry.

    Args:
        on_transition: Optional callback invoked after every successful
            transition with signature ``(from_state, to_state, reason)``.
    """

    def __init__(
        self,
        on_transition: Callable[[SystemState, SystemState, str], None] | None = None,
    ) -> None:
        self._state: SystemState = SystemState.IDLE
        self._lock = threading.Lock()
        self._history: list[dict] = []
        self._external_callback = on_transition

        _log.info("fsm", "init", {"state": SystemState.IDLE.value})

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def current_state(self) -> SystemState:
        """Return the current state."""
        with self._lock:
            return self._state

    @property
    def is_locked_down(self) -> bool:
        return self.current_state is SystemState.LOCKDOWN

    def transition(self, new_state: SystemState, reason: str = "") -> bool:
        """
        Attempt a validated state transition.

        Args:
            new_state: Target state.
            reason: Human-readable reason (for logs/history).

        Returns:
            True if the state changed, False for a self-transition.

        Raises:
            InvalidTransitionError: If the transition is not in the valid map.
        """
        with self._lock:
            from_state = self._state
            if new_state is from_state:
                return False

            if new_state not in _VALID_TRANSITIONS.get(from_state, []):
                raise InvalidTransitionError(from_state, new_state, reason)

            self._fire_on_exit(from_state)
            self._state = new_state
            self._record(from_state, new_state, reason)

        self._after_change(from_state, new_state, reason)
        return True

    def apply_result(self, result: "AnalysisResult") -> SystemState:
        """
        Feed a validated analysis result into the machine.

        While in LOCKDOWN the result is ignored; otherwise the state moves to
        :func:`state_for_risk` of the result's risk level.

        Args:
            result: A result that already passed the response validator.

        Returns:
            The state after the result was applied.
        """
        if self.is_locked_down:
            _log.info("fsm", "result_ignored_in_lockdown", {
                "risk_level": result.risk_level,
            })
            return SystemState.LOCKDOWN

        target = state_for_risk(result.risk_level)
        self.transition(target, reason=f"risk_level={result.risk_level}")
        return self.current_state

    def enter_lockdown(self, reason: str = "") -> bool:
        """
        Move to LOCKDOWN from any state.

        Returns:
            True on first entry, False if already in LOCKDOWN.
        """
        return self.transition(SystemState.LOCKDOWN, reason)

    def reset(self, reason: str = "RESET") -> bool:
        """
        Force the machine back to SAFE, bypassing the transition map.

        This is the only way out of LOCKDOWN.

        Returns:
            True if the state changed, False if already SAFE.
        """
        with self._lock:
            from_state = self._state
            if from_state is SystemState.SAFE:
                return False
            self._fire_on_exit(from_state)
            self._state = SystemState.SAFE
            self._record(from_state, SystemState.SAFE, reason)

        _log.warn("fsm", "reset", {"from": from_state.value})
        self._after_change(from_state, SystemState.SAFE, reason)
        return True

    def get_history(self) -> list[dict]:
        """
        Return a copy of the last (up to 50) transition records.

        Each record has keys ``from``, ``to``, ``reason`` and ``timestamp``.
        """
        with self._lock:
            return list(self._history)

    def can_transition(self, target: SystemState) -> bool:
        """Approximate check whether ``target`` is reachable from the current state."""
        return target in _VALID_TRANSITIONS.get(self._state, [])

    # ──────────────────────────────────────────
    # on_enter / on_exit callbacks, override in subclass
    # ──────────────────────────────────────────

    def _on_enter_elevated(self) -> None:
        _log.info("fsm", "enter_elevated", {})

    def _on_enter_critical(self) -> None:
        _log.warn("fsm", "enter_critical", {})

    def _on_enter_lockdown(self) -> None:
        _log.critical("fsm", "enter_lockdown", {})

    def _on_exit_lockdown(self) -> None:
        _log.warn("fsm", "exit_lockdown", {})

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _record(self, from_state: SystemState, to_state: SystemState, reason: str) -> None:
        """Append a history record. Called with ``self._lock`` held."""
        self._history.append({
            "from": from_state.value,
            "to": to_state.value,
            "reason": reason,
            "timestamp": time.time(),
        })
        if len(self._history) > _MAX_HISTORY:
            self._history.pop(0)

    def _after_change(self, from_state: SystemState, to_state: SystemState, reason: str) -> None:
        _log.info("fsm", "transition", {
            "from": from_state.value,
            "to": to_state.value,
            "reason": reason,
        })
        self._fire_on_enter(to_state)

        if self._external_callback is not None:
            try:
                self._external_callback(from_state, to_state, reason)
            except Exception as exc:  # noqa: BLE001
                _log.warn("fsm", "external_callback_failed", {"error": str(exc)})

    def _fire_on_enter(self, state: SystemState) -> None:
        method = getattr(self, f"_on_enter_{state.value.lower()}", None)
        if callable(method):
            try:
                method()
            except Exception as exc:  # noqa: BLE001
                _log.warn("fsm", "on_enter_failed", {"state": state.value, "error": str(exc)})

    def _fire_on_exit(self, state: SystemState) -> None:
        """
        Dispatch to the on_exit callback for ``state``.

        NOTE: Called while ``self._lock`` is held — callbacks must not
        call :meth:`transition` or :attr:`current_state`.
        """
        method = getattr(self, f"_on_exit_{state.value.lower()}", None)
        if callable(method):
            try:
                method()
            except Exception as exc:  # noqa: BLE001
                _log.warn("fsm", "on_exit_failed", {"state": state.value, "error": str(exc)})

    def __repr__(self) -> str:
        with self._lock:
            state_str = self._state.value
            if self._history:
                last_rec = self._history[-1]
                last = f"{last_rec['from']}→{last_rec['to']}"
            else:
                last = "none"
        return f"SafetyStateMachine(state={state_str}, last={last})"
