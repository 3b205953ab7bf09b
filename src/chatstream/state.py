"""Single-flight turn state machine with lock-protected transitions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum


class TurnState(str, Enum):
    """Lifecycle of the one turn that may be in flight."""

    IDLE = "IDLE"
    RESOLVING = "RESOLVING"
    SENDING = "SENDING"
    STREAMING = "STREAMING"


@dataclass(frozen=True)
class ActiveTurn:
    """Identity of the in-flight turn, captured at entry."""

    turn_id: int
    session_id: str


class TurnTracker:
    """Admit at most one turn at a time, across all sessions."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._state = TurnState.IDLE
        self._active: ActiveTurn | None = None
        self._counter = 0

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def active(self) -> ActiveTurn | None:
        return self._active

    async def get_state(self) -> TurnState:
        """Return the current state under lock."""
        async with self._lock:
            return self._state

    async def is_busy(self) -> bool:
        async with self._lock:
            return self._state != TurnState.IDLE

    async def try_begin(self, session_id: str) -> ActiveTurn | None:
        """Enter RESOLVING for ``session_id``; return None if a turn is already running."""
        async with self._lock:
            if self._state != TurnState.IDLE:
                return None
            self._counter += 1
            self._active = ActiveTurn(turn_id=self._counter, session_id=session_id)
            self._state = TurnState.RESOLVING
            return self._active

    async def advance(
        self, turn: ActiveTurn, expected: TurnState, new_state: TurnState
    ) -> bool:
        """Move ``turn`` from ``expected`` to ``new_state``; False if it does not match."""
        async with self._lock:
            if self._active != turn or self._state != expected:
                return False
            self._state = new_state
            return True

    async def finish(self, turn: ActiveTurn) -> None:
        """Release the single-flight slot held by ``turn``."""
        async with self._lock:
            if self._active != turn:
                return
            self._active = None
            self._state = TurnState.IDLE
