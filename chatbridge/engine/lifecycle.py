"""Live invocation state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    STARTING ──> THINKING <──> TOOL
        │           │           │
        └───────────┴───────────┴──> COMPLETE | ERROR | ABORTED

    COMPLETE, ERROR and ABORTED are terminal.
"""
from __future__ import annotations

from .models import QueryStatus

TERMINAL_STATES = frozenset({
    QueryStatus.COMPLETE,
    QueryStatus.ERROR,
    QueryStatus.ABORTED,
})

VALID_TRANSITIONS: dict[QueryStatus, set[QueryStatus]] = {
    QueryStatus.STARTING: {
        QueryStatus.THINKING,
        QueryStatus.TOOL,
        *TERMINAL_STATES,
    },
    QueryStatus.THINKING: {
        QueryStatus.TOOL,
        *TERMINAL_STATES,
    },
    QueryStatus.TOOL: {
        QueryStatus.THINKING,
        *TERMINAL_STATES,
    },
    QueryStatus.COMPLETE: set(),
    QueryStatus.ERROR: set(),
    QueryStatus.ABORTED: set(),
}


def validate_transition(current: QueryStatus, target: QueryStatus) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def is_terminal(status: QueryStatus) -> bool:
    return status in TERMINAL_STATES
