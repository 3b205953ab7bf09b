"""Durable session storage and the save effect subscribed to the store."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
import json
import logging
import math
import os
from pathlib import Path
import time
from typing import Any

from pydantic import ValidationError

from .attachments import RawAttachment, StoredAttachment
from .exceptions import PersistenceError
from .models import Message, Session
from .session_store import SessionState

LOGGER = logging.getLogger(__name__)


def _enforce_permissions(path: Path, mode: int = 0o600) -> None:
    """Set POSIX permissions on a file or directory; silently ignores failures."""
    if os.name != "posix":
        return
    try:
        path.chmod(mode)
    except OSError:
        pass


def _strip_raw_attachments(message: Message) -> Message:
    """Drop attachment payloads that were never moved into the attachment store."""
    if message.is_resolved:
        return message
    LOGGER.warning(
        "persistence.raw_attachment_dropped",
        extra={"event": "persistence.raw_attachment_dropped", "message_id": message.id},
    )
    images = None
    if message.images:
        kept = tuple(ref for ref in message.images if isinstance(ref, StoredAttachment))
        images = kept or None
    generated = message.generated_image
    if isinstance(generated, RawAttachment):
        generated = None
    return message.model_copy(update={"images": images, "generated_image": generated})


def serialize_sessions(sessions: tuple[Session, ...]) -> list[dict[str, Any]]:
    """Return the wire form of ``sessions`` with only resolved references."""
    rows: list[dict[str, Any]] = []
    for session in sessions:
        clean = session.model_copy(
            update={"messages": tuple(_strip_raw_attachments(m) for m in session.messages)}
        )
        rows.append(clean.model_dump(mode="json", by_alias=True, exclude_none=True))
    return rows


def deserialize_sessions(payload: Any) -> tuple[Session, ...]:
    """Rebuild sessions from their wire form, skipping unusable rows."""
    if not isinstance(payload, list):
        raise PersistenceError("Session payload must be a JSON list.")
    sessions: list[Session] = []
    seen: set[str] = set()
    for index, row in enumerate(payload):
        try:
            session = Session.model_validate(row)
        except ValidationError as exc:
            LOGGER.warning(
                "persistence.session.skipped",
                extra={
                    "event": "persistence.session.skipped",
                    "index": index,
                    "reason": str(exc),
                },
            )
            continue
        if session.id in seen:
            continue
        seen.add(session.id)
        sessions.append(session)
    return tuple(sessions)


class SessionPersistence:
    """Keep the whole session collection in one JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> SessionState:
        """Return the stored collection, or an empty state if none is usable."""
        if not self.path.exists():
            return SessionState()
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            sessions = deserialize_sessions(payload)
        except (OSError, ValueError, PersistenceError) as exc:
            LOGGER.error(
                "persistence.load.failed",
                extra={
                    "event": "persistence.load.failed",
                    "path": str(self.path),
                    "reason": str(exc),
                },
            )
            return SessionState()
        current_id = sessions[0].id if sessions else None
        return SessionState(sessions=sessions, current_id=current_id)

    def save(self, state: SessionState) -> bool:
        """Write the collection atomically. Returns False when there was nothing to save."""
        if not state.sessions:
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _enforce_permissions(self.path.parent, 0o700)
        body = json.dumps(
            serialize_sessions(state.sessions), ensure_ascii=False, separators=(",", ":")
        )
        scratch = self.path.with_name(f"{self.path.name}.tmp")
        scratch.write_text(body, encoding="utf-8")
        _enforce_permissions(scratch)
        os.replace(scratch, self.path)
        return True


class SessionSaver:
    """Store listener that writes state to disk, at most once per interval.

    Write failures are logged and kept in ``last_error``; they never reach
    the code that mutated the store.
    """

    def __init__(
        self,
        persistence: SessionPersistence,
        min_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.persistence = persistence
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self._clock = clock
        self._pending: SessionState | None = None
        self._last_write = -math.inf
        self.last_error: Exception | None = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def __call__(self, state: SessionState) -> None:
        self._pending = state
        if self._clock() - self._last_write >= self.min_interval_seconds:
            self.flush()

    def flush(self) -> bool:
        """Write the latest pending state now. Returns False if the write failed."""
        state = self._pending
        if state is None:
            return True
        try:
            self.persistence.save(state)
        except OSError as exc:
            self.last_error = exc
            LOGGER.error(
                "persistence.save.failed",
                extra={
                    "event": "persistence.save.failed",
                    "path": str(self.persistence.path),
                    "reason": str(exc),
                },
            )
            return False
        self._pending = None
        self._last_write = self._clock()
        self.last_error = None
        return True


def export_markdown(session: Session, directory: str | Path) -> Path:
    """Write a session transcript to markdown and return its path."""
    target_dir = Path(directory).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{datetime.now(UTC).strftime('%Y%m%d-%H%M%S')}-{session.id[:8]}.md"
    target = target_dir / filename

    lines = [f"# {session.title}", ""]
    for message in session.messages:
        heading = message.role.value.capitalize()
        if message.is_error:
            heading += " (error)"
        lines.append(f"## {heading}")
        lines.append("")
        lines.append(message.text.strip())
        lines.append("")
        refs = [ref.token for ref in message.attachment_refs() if isinstance(ref, StoredAttachment)]
        if refs:
            lines.append("Attachments: " + ", ".join(refs))
            lines.append("")
        for source in message.grounding_sources or ():
            lines.append(f"- [{source.title or source.uri}]({source.uri})")
        if message.grounding_sources:
            lines.append("")
    target.write_text("\n".join(lines).strip() + "\n", encoding="utf-8")
    _enforce_permissions(target)
    return target
