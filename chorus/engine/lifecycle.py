"""Agent process lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError (a ValueError) rather than silently
proceeding.

State Diagram:

    IDLE ──> SPAWNING ──> RUNNING ──┬──> SUCCEEDED ──┐
                │                   ├──> FAILED    ──┼──> IDLE
                │                   └──> KILLED    ──┘
                ├──> FAILED  (spawn error)
                └──> KILLED  (stopped before start)
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import ProcessState

VALID_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.IDLE: {
        ProcessState.SPAWNING,
    },
    ProcessState.SPAWNING: {
        ProcessState.RUNNING,
        ProcessState.FAILED,
        ProcessState.KILLED,
    },
    ProcessState.RUNNING: {
        ProcessState.SUCCEEDED,
        ProcessState.FAILED,
        ProcessState.KILLED,
    },
    ProcessState.SUCCEEDED: {ProcessState.IDLE},
    ProcessState.FAILED: {ProcessState.IDLE},
    ProcessState.KILLED: {ProcessState.IDLE},
}

TERMINAL_STATES = frozenset({
    ProcessState.SUCCEEDED,
    ProcessState.FAILED,
    ProcessState.KILLED,
})

LIVE_STATES = frozenset({ProcessState.SPAWNING, ProcessState.RUNNING})


def validate_transition(current: ProcessState, target: ProcessState) -> None:
    """Validate a state transition. Raises InvalidTransitionError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise InvalidTransitionError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
