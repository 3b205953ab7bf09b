"""One user turn, from attachment persistence to a settled model message.

States: IDLE -> RESOLVING -> SENDING -> STREAMING -> IDLE. Failures while
RESOLVING abort the turn before anything is appended. Once the user message
and its placeholder are in the session, every outcome lands on that
placeholder. STREAMING starts with the first decoded update, since a chat
response body is only requested once the decoder pulls its first line.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
import logging

import structlog

from .attachments import AttachmentStore, StoredAttachment
from .client import HistoryEntry, ModelClient, ModelOptions, ModelRequest
from .decoder import StreamDecoder, StreamUpdate
from .exceptions import (
    ChatStreamError,
    EmptyTurnError,
    StorageFailureError,
    UnknownSessionError,
)
from .models import Message, Role, Session
from .session_store import SessionStore
from .state import ActiveTurn, TurnState, TurnTracker

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-3-pro-preview"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"
NO_RESPONSE_TEXT = "(No response from model.)"


@dataclass(frozen=True)
class TurnRequest:
    """Everything the user submitted for one turn."""

    text: str = ""
    attachments: Sequence[str] = field(default_factory=tuple)
    image_mode: bool = False
    web_search: bool = False
    model: str | None = None
    session_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.attachments

    def validate(self) -> None:
        if self.is_empty:
            raise EmptyTurnError("Nothing to send: no text and no attachments.")

    def fallback_text(self) -> str:
        """Text shown for the user message when the prompt itself is blank."""
        if self.image_mode:
            return "Generate image"
        if self.attachments:
            return "Sent an image"
        return "Sent content"


class TurnOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class TurnResult:
    session_id: str
    user_message_id: str
    placeholder_id: str
    outcome: TurnOutcome
    error: str | None = None


def build_history(session: Session | None) -> list[HistoryEntry]:
    """Prior turns sent as model context; error and blank messages are left out."""
    if session is None:
        return []
    return [
        HistoryEntry(role=message.role.value, text=message.text)
        for message in session.messages
        if not message.is_error and message.text.strip()
    ]


def error_text(reason: str) -> str:
    reason = reason.strip().rstrip(".") or "Request failed"
    return f"Error: {reason}. Please try again."


class SendPipeline:
    """Run turns against a session store, an attachment store and a model client."""

    def __init__(
        self,
        store: SessionStore,
        attachments: AttachmentStore,
        client: ModelClient,
        decoder: StreamDecoder | None = None,
        tracker: TurnTracker | None = None,
        model: str = DEFAULT_MODEL,
        image_model: str = DEFAULT_IMAGE_MODEL,
    ) -> None:
        self.store = store
        self.attachments = attachments
        self.client = client
        self.decoder = decoder or StreamDecoder(attachments)
        self.tracker = tracker or TurnTracker()
        self.model = model
        self.image_model = image_model

    def effective_model(self, request: TurnRequest) -> str:
        if request.image_mode:
            return self.image_model
        return (request.model or "").strip() or self.model

    def _target_session(self, request: TurnRequest) -> str:
        if request.session_id is not None:
            if self.store.get(request.session_id) is None:
                raise UnknownSessionError(f"Session {request.session_id!r} does not exist.")
            return request.session_id
        return self.store.ensure_session().id

    @staticmethod
    def _reject(reason: str) -> None:
        LOGGER.info(
            "pipeline.turn.rejected",
            extra={"event": "pipeline.turn.rejected", "reason": reason},
        )

    async def send(self, request: TurnRequest) -> TurnResult | None:
        """Run one turn. Returns None when the turn is rejected at entry.

        Raises ``StorageFailureError`` if input attachments cannot be stored;
        the session is left untouched in that case.
        """
        try:
            request.validate()
        except EmptyTurnError:
            self._reject("empty")
            return None
        if await self.tracker.is_busy():
            self._reject("busy")
            return None

        session_id = self._target_session(request)
        turn = await self.tracker.try_begin(session_id)
        if turn is None:
            self._reject("busy")
            return None

        LOGGER.info(
            "pipeline.turn.start",
            extra={
                "event": "pipeline.turn.start",
                "turn_id": turn.turn_id,
                "session_id": session_id,
                "image_mode": request.image_mode,
                "attachments": len(request.attachments),
            },
        )
        with structlog.contextvars.bound_contextvars(
            turn_id=turn.turn_id, session_id=session_id
        ):
            try:
                return await self._run(turn, request)
            finally:
                await self.tracker.finish(turn)

    async def _run(self, turn: ActiveTurn, request: TurnRequest) -> TurnResult:
        history = build_history(self.store.get(turn.session_id))

        try:
            stored = await self.attachments.persist_many(list(request.attachments))
        except StorageFailureError:
            LOGGER.warning(
                "pipeline.turn.aborted",
                extra={"event": "pipeline.turn.aborted", "turn_id": turn.turn_id},
            )
            raise

        await self.tracker.advance(turn, TurnState.RESOLVING, TurnState.SENDING)
        user_message = Message(
            role=Role.USER,
            text=request.text if request.text.strip() else request.fallback_text(),
            images=tuple(stored) or None,
        )
        placeholder = Message(role=Role.MODEL, text="")
        self.store.append_messages(
            turn.session_id,
            [user_message, placeholder],
            in_flight=[placeholder.id],
            title_source=request.text,
        )

        error: str | None = None
        try:
            emitted = await self._stream(turn, request, history, stored, placeholder.id)
        except asyncio.CancelledError:
            self._fail(turn, placeholder.id, "Request cancelled")
            raise
        except ChatStreamError as exc:
            error = str(exc) or exc.__class__.__name__
        except Exception as exc:  # noqa: BLE001 - any failure must end on the placeholder.
            LOGGER.exception(
                "pipeline.turn.unexpected",
                extra={"event": "pipeline.turn.unexpected", "turn_id": turn.turn_id},
            )
            error = str(exc) or exc.__class__.__name__
        else:
            if not emitted:
                self.store.update_message(
                    turn.session_id, placeholder.id, {"text": NO_RESPONSE_TEXT}
                )

        if error is not None:
            self._fail(turn, placeholder.id, error)
        else:
            self.store.settle_message(placeholder.id)

        outcome = TurnOutcome.FAILED if error is not None else TurnOutcome.COMPLETED
        LOGGER.info(
            "pipeline.turn.settled",
            extra={
                "event": "pipeline.turn.settled",
                "turn_id": turn.turn_id,
                "outcome": outcome.value,
            },
        )
        return TurnResult(
            session_id=turn.session_id,
            user_message_id=user_message.id,
            placeholder_id=placeholder.id,
            outcome=outcome,
            error=error,
        )

    async def _stream(
        self,
        turn: ActiveTurn,
        request: TurnRequest,
        history: list[HistoryEntry],
        stored: list[StoredAttachment],
        placeholder_id: str,
    ) -> bool:
        payloads = [
            payload
            for payload in await self.attachments.resolve_many(list(stored))
            if payload is not None
        ]
        model_request = ModelRequest(
            history=history,
            message=request.text,
            attachments=payloads,
            model=self.effective_model(request),
            options=ModelOptions(
                image_mode=request.image_mode, web_search=request.web_search
            ),
        )
        response = await self.client.send(model_request)

        emitted = False

        async def apply(update: StreamUpdate) -> None:
            nonlocal emitted
            if not emitted:
                await self.tracker.advance(turn, TurnState.SENDING, TurnState.STREAMING)
            emitted = True
            self.store.update_message(
                turn.session_id,
                placeholder_id,
                {
                    "text": update.text,
                    "grounding_sources": update.grounding,
                    "generated_image": update.image_ref,
                },
            )

        await self.decoder.decode(response, apply)
        return emitted

    def _fail(self, turn: ActiveTurn, placeholder_id: str, reason: str) -> None:
        LOGGER.warning(
            "pipeline.turn.failed",
            extra={
                "event": "pipeline.turn.failed",
                "turn_id": turn.turn_id,
                "error": reason,
            },
        )
        self.store.update_message(
            turn.session_id,
            placeholder_id,
            {"text": error_text(reason), "is_error": True},
        )
        self.store.settle_message(placeholder_id)
