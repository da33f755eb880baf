# src/mcsocks/session.py
"""
Per-connection session state for mcsocks.

A Session belongs to the task handling one accepted client socket and is
never shared with other sessions.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .network import TargetAddress
from .robustness import ForwarderError

logger = logging.getLogger(__name__)

# Session states
SESSION_STATE_ACCEPTED = "ACCEPTED"
SESSION_STATE_RESOLVING = "RESOLVING"
SESSION_STATE_CONNECTING = "CONNECTING"
SESSION_STATE_RELAYING = "RELAYING"
SESSION_STATE_CLOSED = "CLOSED"
SESSION_STATE_FAILED = "FAILED"

TRANSITIONS = {
    SESSION_STATE_ACCEPTED: {SESSION_STATE_RESOLVING},
    SESSION_STATE_RESOLVING: {SESSION_STATE_CONNECTING, SESSION_STATE_FAILED},
    SESSION_STATE_CONNECTING: {SESSION_STATE_RELAYING, SESSION_STATE_FAILED},
    SESSION_STATE_RELAYING: {SESSION_STATE_CLOSED},
    SESSION_STATE_CLOSED: set(),
    SESSION_STATE_FAILED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class Session:
    client_addr: Any
    state: str = SESSION_STATE_ACCEPTED
    target: Optional[TargetAddress] = None
    error: Optional[ForwarderError] = None
    created_at: float = field(default_factory=time.time)
    bytes_up: int = 0
    bytes_down: int = 0

    def transition(self, new_state: str) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state} -> {new_state} is not allowed")
        logger.debug(f"Session {self.client_addr}: {self.state} -> {new_state}")
        self.state = new_state

    def fail(self, error: ForwarderError) -> None:
        """Record a resolve/connect failure and move to FAILED."""
        self.error = error
        self.transition(SESSION_STATE_FAILED)

    @property
    def duration(self) -> float:
        return time.time() - self.created_at

    def context(self) -> dict[str, Any]:
        ctx: dict[str, Any] = {"client": str(self.client_addr), "state": self.state}
        if self.target is not None:
            ctx["target"] = str(self.target)
        if self.error is not None:
            ctx["error_type"] = self.error.kind
        return ctx
