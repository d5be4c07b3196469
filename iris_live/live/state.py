"""Connection state machine for Iris Live sessions."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Iterable


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset(
        {SessionState.CONNECTED, SessionState.DISCONNECTED, SessionState.ERROR}
    ),
    SessionState.CONNECTED: frozenset({SessionState.DISCONNECTED, SessionState.ERROR}),
    SessionState.ERROR: frozenset({SessionState.CONNECTING, SessionState.DISCONNECTED}),
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: SessionState, target: SessionState) -> None:
        super().__init__(f"Cannot move session from {current.value} to {target.value}")
        self.current = current
        self.target = target


@dataclass
class ConnectionStateMachine:
    """Tracks the lifecycle of one Live API connection.

    Not thread-safe on its own; the session controller holds its lock
    around every call.  ``history`` keeps the most recent transitions for
    diagnostics.
    """

    state: SessionState = SessionState.DISCONNECTED
    attempts: int = 0
    last_reason: str | None = None
    history: Deque[str] = field(default_factory=lambda: deque(maxlen=8))

    def can_transition(self, target: SessionState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.state]

    def transition(self, target: SessionState, reason: str | None = None) -> SessionState:
        if not self.can_transition(target):
            raise InvalidTransition(self.state, target)
        previous = self.state
        self.state = target
        if target is SessionState.CONNECTING:
            self.attempts += 1
        if reason is not None:
            self.last_reason = reason
        self.history.append(f"{previous.value}->{target.value}")
        return previous

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.CONNECTED)

    def recent_transitions(self) -> Iterable[str]:
        return tuple(self.history)
