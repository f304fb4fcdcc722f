"""Per-conversation operation state machine and lock-protected transitions."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)


class ConversationState(str, Enum):
    """Lifecycle of the single active operation of a conversation."""

    IDLE = "IDLE"
    SENDING = "SENDING"
    STREAMING = "STREAMING"
    CANCELLING = "CANCELLING"
    TERMINAL = "TERMINAL"


class StateManager:
    """Manage state transitions with async lock semantics."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._state = ConversationState.IDLE

    @property
    def state(self) -> ConversationState:
        """Current state without taking the lock (for synchronous readers)."""
        return self._state

    async def get_state(self) -> ConversationState:
        async with self._lock:
            return self._state

    async def transition_to(self, new_state: ConversationState) -> ConversationState:
        """Transition to a new state and return it."""
        async with self._lock:
            self._log(self._state, new_state)
            self._state = new_state
            return self._state

    async def transition_if(
        self,
        expected_state: ConversationState,
        new_state: ConversationState,
    ) -> bool:
        """Transition only when current state matches expected state."""
        async with self._lock:
            if self._state != expected_state:
                return False
            self._log(self._state, new_state)
            self._state = new_state
            return True

    async def can_send_message(self) -> bool:
        """Return True when a new send may start."""
        async with self._lock:
            return self._state in {ConversationState.IDLE, ConversationState.TERMINAL}

    @staticmethod
    def _log(old: ConversationState, new: ConversationState) -> None:
        if old is new:
            return
        LOGGER.debug(
            "state.transition",
            extra={"event": "state.transition", "from_state": old.value, "to_state": new.value},
        )
