"""Session state machine and lock-protected transitions."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging

from .exceptions import StateTransitionError

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Finite state machine for one interactive conversation."""

    IDLE = "IDLE"
    AWAITING_INPUT = "AWAITING_INPUT"
    REQUEST_IN_FLIGHT = "REQUEST_IN_FLIGHT"
    RENDERING = "RENDERING"
    FAILED = "FAILED"


# Any state may also return to IDLE when the session ends.
ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.AWAITING_INPUT}),
    SessionState.AWAITING_INPUT: frozenset({SessionState.REQUEST_IN_FLIGHT}),
    SessionState.REQUEST_IN_FLIGHT: frozenset(
        {SessionState.RENDERING, SessionState.FAILED, SessionState.AWAITING_INPUT}
    ),
    SessionState.RENDERING: frozenset(
        {SessionState.AWAITING_INPUT, SessionState.FAILED}
    ),
    SessionState.FAILED: frozenset({SessionState.AWAITING_INPUT}),
}


def is_allowed(current: SessionState, new_state: SessionState) -> bool:
    """Return whether ``current -> new_state`` is a legal move."""
    if new_state is SessionState.IDLE or new_state is current:
        return True
    return new_state in ALLOWED_TRANSITIONS[current]


class StateManager:
    """Apply session state transitions under an async lock.

    Moves outside :data:`ALLOWED_TRANSITIONS` raise
    :class:`~rtwo.exceptions.StateTransitionError` and leave the state as it was.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        """Current state without taking the lock (for display and signal handlers)."""
        return self._state

    def _apply(self, new_state: SessionState) -> None:
        current = self._state
        if not is_allowed(current, new_state):
            LOGGER.warning(
                "state.transition.rejected",
                extra={
                    "event": "state.transition.rejected",
                    "from_state": current.value,
                    "to_state": new_state.value,
                },
            )
            raise StateTransitionError(
                f"Cannot move session from {current.value} to {new_state.value}."
            )
        self._state = new_state
        if new_state is not current:
            LOGGER.debug(
                "state.transition",
                extra={
                    "event": "state.transition",
                    "from_state": current.value,
                    "to_state": new_state.value,
                },
            )

    async def transition_to(self, new_state: SessionState) -> SessionState:
        """Move to ``new_state`` and return it."""
        async with self._lock:
            self._apply(new_state)
            return self._state

    async def transition_if(
        self,
        expected_states: SessionState | tuple[SessionState, ...],
        new_state: SessionState,
    ) -> bool:
        """Move only when the current state is one of ``expected_states``."""
        if isinstance(expected_states, SessionState):
            expected_states = (expected_states,)
        async with self._lock:
            if self._state not in expected_states:
                return False
            self._apply(new_state)
            return True
