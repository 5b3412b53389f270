"""
Session state machine for the WebSocket proxy.

A session moves through INIT -> NEGOTIATING -> CONNECTING_UPSTREAM -> OPEN ->
CLOSING -> CLOSED. CLOSING is reachable from every live state, and CLOSED is
terminal. The allowed transitions are listed in TRANSITIONS; anything else is
a programming error.
"""

import time
import uuid
from enum import Enum
from typing import Dict, FrozenSet, Optional


class SessionState(str, Enum):
    INIT = "init"
    NEGOTIATING = "negotiating"
    CONNECTING_UPSTREAM = "connecting_upstream"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.INIT: frozenset({SessionState.NEGOTIATING, SessionState.CLOSING}),
    SessionState.NEGOTIATING: frozenset(
        {SessionState.CONNECTING_UPSTREAM, SessionState.CLOSING}
    ),
    SessionState.CONNECTING_UPSTREAM: frozenset(
        {SessionState.OPEN, SessionState.CLOSING}
    ),
    SessionState.OPEN: frozenset({SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class SessionInfo:
    """
    Bookkeeping for one proxied conversation.

    Holds the current state together with the identifiers used for logging and
    the timestamps used by the idle watchdog.
    """

    def __init__(
        self,
        project: Optional[str] = None,
        agent_id: str = "",
        model: str = "",
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex[:9]
        self.project = project
        self.agent_id = agent_id
        self.model = model
        self.state = SessionState.INIT
        self.started_at = time.monotonic()
        self.last_activity = self.started_at
        self.reached_open = False

    def transition(self, new_state: SessionState) -> None:
        """
        Move to `new_state`.

        Raises:
            RuntimeError: If the transition is not listed in TRANSITIONS
        """
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal session transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        if new_state is SessionState.OPEN:
            self.reached_open = True

    def touch(self) -> None:
        """Record activity in either direction."""
        self.last_activity = time.monotonic()

    def idle_for(self) -> float:
        return time.monotonic() - self.last_activity

    def duration(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def is_closing(self) -> bool:
        return self.state in (SessionState.CLOSING, SessionState.CLOSED)
