"""
Conversational turn state machine.

IDLE -> LISTENING -> THINKING -> SPEAKING -> LISTENING ...

Transitions are a fixed table. A trigger with no entry for the current state
is a no-op, so no event sequence can reach an undefined state. SPEAKING is
left only through RESPONSE_DONE / RESPONSE_ABORTED (or a disconnect), never
because remote audio stopped.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


class TurnTrigger(str, Enum):
    CONNECTED = "connected"
    BUFFER_COMMITTED = "buffer_committed"
    ASSISTANT_OUTPUT = "assistant_output"  # remote audio or first assistant transcript
    RESPONSE_DONE = "response_done"
    RESPONSE_ABORTED = "response_aborted"  # failed or cancelled
    DISCONNECTED = "disconnected"


_TRANSITIONS: Dict[Tuple[TurnState, TurnTrigger], TurnState] = {
    (TurnState.IDLE, TurnTrigger.CONNECTED): TurnState.LISTENING,
    (TurnState.LISTENING, TurnTrigger.BUFFER_COMMITTED): TurnState.THINKING,
    (TurnState.THINKING, TurnTrigger.ASSISTANT_OUTPUT): TurnState.SPEAKING,
    (TurnState.THINKING, TurnTrigger.RESPONSE_DONE): TurnState.LISTENING,
    (TurnState.SPEAKING, TurnTrigger.RESPONSE_DONE): TurnState.LISTENING,
    (TurnState.THINKING, TurnTrigger.RESPONSE_ABORTED): TurnState.LISTENING,
    (TurnState.SPEAKING, TurnTrigger.RESPONSE_ABORTED): TurnState.LISTENING,
    (TurnState.LISTENING, TurnTrigger.DISCONNECTED): TurnState.IDLE,
    (TurnState.THINKING, TurnTrigger.DISCONNECTED): TurnState.IDLE,
    (TurnState.SPEAKING, TurnTrigger.DISCONNECTED): TurnState.IDLE,
}


def next_state(state: TurnState, trigger: TurnTrigger) -> Optional[TurnState]:
    """Target state for (state, trigger), or None if the trigger does not apply."""
    return _TRANSITIONS.get((state, trigger))


class TurnStateMachine:
    """
    Holds the current TurnState and applies triggers.

    Only the session's event consumer calls `fire`; external code reads the
    state through session snapshots.
    """

    def __init__(self):
        self._state = TurnState.IDLE
        self._turn_seq = 0

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def turn_seq(self) -> int:
        """Number of turns opened so far (LISTENING -> THINKING transitions)."""
        return self._turn_seq

    @property
    def response_in_flight(self) -> bool:
        return self._state in (TurnState.THINKING, TurnState.SPEAKING)

    def fire(self, trigger: TurnTrigger) -> Optional[Tuple[TurnState, TurnState]]:
        """
        Apply a trigger.

        Returns (old, new) when a transition happened, None otherwise.
        """
        target = next_state(self._state, trigger)
        if target is None:
            return None
        old = self._state
        self._state = target
        if trigger is TurnTrigger.BUFFER_COMMITTED:
            self._turn_seq += 1
        return old, target
