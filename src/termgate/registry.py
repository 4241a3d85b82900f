"""Session registry and admission control."""

import logging
from enum import Enum, auto
from typing import Any, Optional

logger = logging.getLogger(__name__)


class AdmissionState(Enum):
    """Slot held by an Admission."""

    PENDING = auto()  # Reserved, session not yet active
    ACTIVE = auto()  # Counted as a live session
    RELEASED = auto()  # Slot given back


class Admission:
    """One reserved session slot.

    Created by AdmissionGate.try_reserve(). The holder calls activate() when
    its session becomes active and release() when it ends, whichever state
    it reached. Both calls are idempotent.
    """

    def __init__(self, gate: "AdmissionGate"):
        self._gate = gate
        self._state = AdmissionState.PENDING

    @property
    def state(self) -> AdmissionState:
        return self._state

    def activate(self) -> None:
        """Move this slot from pending to active."""
        if self._state is not AdmissionState.PENDING:
            return
        self._state = AdmissionState.ACTIVE
        self._gate._pending -= 1
        self._gate._active += 1

    def release(self) -> None:
        """Give the slot back."""
        if self._state is AdmissionState.PENDING:
            self._gate._pending -= 1
        elif self._state is AdmissionState.ACTIVE:
            self._gate._active -= 1
        else:
            return
        self._state = AdmissionState.RELEASED
        logger.debug(
            f"Admission released (active={self._gate.active}, "
            f"pending={self._gate.pending})"
        )


class AdmissionGate:
    """Counts live sessions against an optional ceiling.

    Connections in flight (reserved but not yet active) count against the
    ceiling too, so a burst of simultaneous connects cannot overshoot it.
    Counters are only touched from the event loop thread.
    """

    def __init__(self, max_sessions: Optional[int] = None):
        """Initialize gate.

        Args:
            max_sessions: Ceiling on active plus pending sessions, None for
                no limit.
        """
        self.max_sessions = max_sessions
        self._active = 0
        self._pending = 0

    @property
    def active(self) -> int:
        """Sessions that reached the active state and have not ended."""
        return self._active

    @property
    def pending(self) -> int:
        """Reserved slots whose session is not active yet."""
        return self._pending

    @property
    def at_capacity(self) -> bool:
        if self.max_sessions is None:
            return False
        return self._active + self._pending >= self.max_sessions

    def try_reserve(self) -> Optional[Admission]:
        """Reserve a slot for a new session.

        Returns:
            Admission if there is room, None if at capacity.
        """
        if self.at_capacity:
            return None
        self._pending += 1
        return Admission(self)


class SessionRegistry:
    """Registry of live sessions.

    Stores SessionActor objects and provides access by session_id.
    This is a simple state container - business logic belongs elsewhere.
    """

    def __init__(self):
        """Initialize empty registry."""
        self._sessions: dict[str, Any] = {}

    def add(self, session: Any) -> None:
        """Add or replace a session in the registry.

        Args:
            session: Session to add. Must have session_id attribute.
        """
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[Any]:
        """Get session by ID, or None."""
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Any]:
        """Remove and return session by ID, or None if absent."""
        return self._sessions.pop(session_id, None)

    def list_all(self) -> list[Any]:
        """Get list of all sessions."""
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
