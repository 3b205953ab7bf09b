"""Session collection state with pure, replace-semantics transitions.

Every transition takes a ``SessionState`` and returns a new one; nothing is
mutated in place. ``SessionStore`` holds the latest state and notifies
subscribers (for example the persistence effect) after each change.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict

from .models import DEFAULT_SESSION_TITLE, Message, Role, Session, derive_title, new_id, now_ms

LOGGER = logging.getLogger(__name__)

Listener = Callable[["SessionState"], None]


class SessionState(BaseModel):
    """Snapshot of the whole collection.

    ``in_flight`` lists placeholder IDs that may still be patched. It is
    runtime-only and never persisted.
    """

    model_config = ConfigDict(frozen=True)

    sessions: tuple[Session, ...] = ()
    current_id: str | None = None
    in_flight: frozenset[str] = frozenset()

    def get(self, session_id: str | None) -> Session | None:
        if session_id is None:
            return None
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    @property
    def current(self) -> Session | None:
        return self.get(self.current_id)


def _replace_session(state: SessionState, updated: Session) -> tuple[Session, ...]:
    return tuple(updated if s.id == updated.id else s for s in state.sessions)


def create_session(
    state: SessionState, session_id: str | None = None, now: int | None = None
) -> SessionState:
    """Prepend a fresh empty session and make it current."""
    session = Session(
        id=session_id or new_id(),
        title=DEFAULT_SESSION_TITLE,
        updated_at=now if now is not None else now_ms(),
    )
    return state.model_copy(
        update={"sessions": (session, *state.sessions), "current_id": session.id}
    )


def ensure_session(state: SessionState) -> SessionState:
    """Guarantee a current session exists, creating one if needed."""
    if not state.sessions:
        return create_session(state)
    if state.current is None:
        return state.model_copy(update={"current_id": state.sessions[0].id})
    return state


def select_session(state: SessionState, session_id: str) -> SessionState:
    """Make ``session_id`` current; unknown IDs leave the state unchanged."""
    if state.get(session_id) is None:
        return state
    return state.model_copy(update={"current_id": session_id})


def delete_session(state: SessionState, session_id: str) -> SessionState:
    """Remove a session, moving or recreating the current one as needed."""
    remaining = tuple(s for s in state.sessions if s.id != session_id)
    if len(remaining) == len(state.sessions):
        return state
    updated = state.model_copy(update={"sessions": remaining})
    if state.current_id != session_id:
        return updated
    if remaining:
        return updated.model_copy(update={"current_id": remaining[0].id})
    return create_session(updated.model_copy(update={"current_id": None}))


def append_messages(
    state: SessionState,
    session_id: str,
    messages: Iterable[Message],
    in_flight: Iterable[str] = (),
    title_source: str | None = None,
) -> SessionState:
    """Append ``messages`` atomically to one session.

    An empty session is named from ``title_source`` (the raw prompt) when
    given, otherwise from the first user message appended. IDs in
    ``in_flight`` are registered as patchable placeholders. No-op when the
    session is gone.
    """
    session = state.get(session_id)
    new_messages = tuple(messages)
    if session is None or not new_messages:
        return state

    title = session.title
    if not session.messages:
        if title_source is not None:
            title = derive_title(title_source)
        else:
            first_user = next((m for m in new_messages if m.role == Role.USER), None)
            if first_user is not None:
                title = derive_title(first_user.text)

    updated = session.model_copy(
        update={
            "title": title,
            "messages": session.messages + new_messages,
            "updated_at": now_ms(),
        }
    )
    return state.model_copy(
        update={
            "sessions": _replace_session(state, updated),
            "in_flight": state.in_flight | frozenset(in_flight),
        }
    )


def update_message(
    state: SessionState, session_id: str, message_id: str, patch: dict[str, Any]
) -> SessionState:
    """Merge ``patch`` into one message.

    No-op if the session or message no longer exists, or if the message is a
    settled model response.
    """
    session = state.get(session_id)
    if session is None:
        return state
    target = session.find_message(message_id)
    if target is None:
        return state
    if target.role == Role.MODEL and message_id not in state.in_flight:
        LOGGER.debug(
            "session.update.settled",
            extra={"event": "session.update.settled", "message_id": message_id},
        )
        return state

    updated_message = target.patched(patch)
    updated = session.model_copy(
        update={
            "messages": tuple(
                updated_message if m.id == message_id else m for m in session.messages
            )
        }
    )
    return state.model_copy(update={"sessions": _replace_session(state, updated)})


def settle_message(state: SessionState, message_id: str) -> SessionState:
    """Freeze a placeholder once its turn has finished."""
    if message_id not in state.in_flight:
        return state
    return state.model_copy(update={"in_flight": state.in_flight - {message_id}})


class SessionStore:
    """Holds the authoritative ``SessionState`` and broadcasts changes."""

    def __init__(self, state: SessionState | None = None) -> None:
        self._state = state or SessionState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def sessions(self) -> tuple[Session, ...]:
        return self._state.sessions

    @property
    def current(self) -> Session | None:
        return self._state.current

    def get(self, session_id: str | None) -> Session | None:
        return self._state.get(session_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def replace(self, state: SessionState) -> SessionState:
        """Install a new state and notify listeners when it differs."""
        if state is self._state:
            return state
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:  # noqa: BLE001 - effects must not break mutations.
                LOGGER.error(
                    "session.listener.failed",
                    extra={"event": "session.listener.failed", "error": str(exc)},
                )
        return state

    def create_session(self) -> Session:
        state = self.replace(create_session(self._state))
        session = state.current
        assert session is not None
        return session

    def ensure_session(self) -> Session:
        state = self.replace(ensure_session(self._state))
        session = state.current
        assert session is not None
        return session

    def select_session(self, session_id: str) -> bool:
        state = self.replace(select_session(self._state, session_id))
        return state.current_id == session_id

    def delete_session(self, session_id: str) -> None:
        self.replace(delete_session(self._state, session_id))

    def append_messages(
        self,
        session_id: str,
        messages: Iterable[Message],
        in_flight: Iterable[str] = (),
        title_source: str | None = None,
    ) -> None:
        self.replace(
            append_messages(self._state, session_id, messages, in_flight, title_source)
        )

    def update_message(
        self, session_id: str, message_id: str, patch: dict[str, Any]
    ) -> None:
        self.replace(update_message(self._state, session_id, message_id, patch))

    def settle_message(self, message_id: str) -> None:
        self.replace(settle_message(self._state, message_id))
