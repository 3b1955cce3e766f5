"""
Lifecycle states of a volume session.

A session starts ``pending``, becomes ``running`` once its scheduler is
armed, and ends in one of the terminal states. Terminal sessions are never
resurrected.
"""

from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    """Possible states of a session row."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    EMERGENCY_STOPPED = "emergency_stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.PENDING, SessionStatus.RUNNING, SessionStatus.PAUSED)


TERMINAL_STATUSES = frozenset({
    SessionStatus.STOPPED,
    SessionStatus.COMPLETED,
    SessionStatus.EMERGENCY_STOPPED,
    SessionStatus.ERROR,
})

# transiciones permitidas; los estados terminales no tienen salida
ALLOWED_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.ERROR},
    SessionStatus.RUNNING: {SessionStatus.PAUSED} | TERMINAL_STATUSES,
    SessionStatus.PAUSED: {SessionStatus.RUNNING} | TERMINAL_STATUSES,
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())
