"""Content-addressable attachment store for large image payloads.

Messages never carry image bytes once persisted; they carry an opaque
reference (``img_<ms>_<suffix>``) that resolves through this store. A raw
payload (usually a ``data:`` URI) is only ever seen transiently, before the
send pipeline persists it.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
import secrets
import string
import time
from typing import Protocol

from .exceptions import AttachmentNotFoundError, StorageFailureError

LOGGER = logging.getLogger(__name__)

ATTACHMENT_ID_PREFIX = "img_"
ATTACHMENT_ID_PATTERN = re.compile(r"^img_\d+_[0-9a-z]+$")
DATA_URI_PATTERN = re.compile(r"^data:([\w.+-]+/[\w.+-]+);base64,", re.IGNORECASE)

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
_MAX_ID_ATTEMPTS = 3


@dataclass(frozen=True)
class RawAttachment:
    """A self-contained payload that has not been persisted yet."""

    data: str

    @property
    def token(self) -> str:
        return self.data


@dataclass(frozen=True)
class StoredAttachment:
    """A reference into the attachment store."""

    id: str

    @property
    def token(self) -> str:
        return self.id


AttachmentRef = RawAttachment | StoredAttachment


def parse_ref(value: str | AttachmentRef) -> AttachmentRef:
    """Turn a wire token into its tagged variant; parsed refs pass through."""
    if isinstance(value, (RawAttachment, StoredAttachment)):
        return value
    if not isinstance(value, str):
        raise TypeError(f"Attachment reference must be a string, got {type(value)!r}.")
    if value.startswith(ATTACHMENT_ID_PREFIX):
        return StoredAttachment(value)
    return RawAttachment(value)


def new_attachment_id() -> str:
    """Return a fresh ID: millisecond timestamp plus a random base36 suffix."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(9))
    return f"{ATTACHMENT_ID_PREFIX}{int(time.time() * 1000)}_{suffix}"


def encode_data_uri(payload: bytes, mime_type: str = "image/png") -> str:
    """Encode raw bytes as a base64 ``data:`` URI."""
    encoded = base64.b64encode(payload).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    """Split a base64 ``data:`` URI into its MIME type and decoded bytes.

    Payloads without a ``data:`` header are treated as bare base64 PNG data.
    """
    match = DATA_URI_PATTERN.match(uri)
    if match is None:
        return "image/png", base64.b64decode(uri)
    return match.group(1).lower(), base64.b64decode(uri[match.end() :])


class AttachmentBackend(Protocol):
    """Key-value persistence for attachment payloads."""

    def add(self, attachment_id: str, payload: str) -> None:
        """Write a new entry; raise ``FileExistsError`` if the ID is taken."""

    def get(self, attachment_id: str) -> str | None:
        """Return the payload or ``None`` when absent."""


class MemoryAttachmentBackend:
    """Process-local backend used for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, attachment_id: str, payload: str) -> None:
        if attachment_id in self._entries:
            raise FileExistsError(attachment_id)
        self._entries[attachment_id] = payload

    def get(self, attachment_id: str) -> str | None:
        return self._entries.get(attachment_id)


class FileAttachmentBackend:
    """Store each attachment as its own file under a private directory."""

    def __init__(self, directory: str | Path, max_total_bytes: int | None = None) -> None:
        self.directory = Path(directory).expanduser()
        self.max_total_bytes = max_total_bytes or None
        self._used_bytes: int | None = None

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        if os.name == "posix":
            try:
                self.directory.chmod(0o700)
            except OSError:
                pass

    def _path_for(self, attachment_id: str) -> Path | None:
        if not ATTACHMENT_ID_PATTERN.match(attachment_id):
            return None
        return self.directory / f"{attachment_id}.b64"

    def used_bytes(self) -> int:
        """Return the bytes currently held on disk by this backend."""
        if self._used_bytes is None:
            total = 0
            if self.directory.exists():
                for entry in self.directory.glob("img_*.b64"):
                    try:
                        total += entry.stat().st_size
                    except OSError:
                        continue
            self._used_bytes = total
        return self._used_bytes

    def add(self, attachment_id: str, payload: str) -> None:
        target = self._path_for(attachment_id)
        if target is None:
            raise StorageFailureError(f"Invalid attachment id {attachment_id!r}.")
        encoded = payload.encode("utf-8")
        if self.max_total_bytes is not None:
            if self.used_bytes() + len(encoded) > self.max_total_bytes:
                raise StorageFailureError(
                    f"Attachment quota exceeded ({self.max_total_bytes} bytes)."
                )
        try:
            self._ensure_directory()
        except OSError as exc:
            raise StorageFailureError(f"Unable to prepare attachment directory: {exc}") from exc
        # Exclusive create: an existing file means an ID clash, not an update.
        handle = target.open("xb")
        try:
            with handle:
                handle.write(encoded)
        except OSError:
            # A half-written payload would still count against the quota.
            target.unlink(missing_ok=True)
            raise
        if os.name == "posix":
            try:
                target.chmod(0o600)
            except OSError:
                pass
        if self._used_bytes is not None:
            self._used_bytes += len(encoded)

    def get(self, attachment_id: str) -> str | None:
        target = self._path_for(attachment_id)
        if target is None:
            return None
        try:
            return target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None


class AttachmentStore:
    """Persist raw payloads under fresh IDs and resolve IDs back to payloads."""

    def __init__(self, backend: AttachmentBackend | None = None) -> None:
        self.backend: AttachmentBackend = (
            backend if backend is not None else MemoryAttachmentBackend()
        )

    async def persist(self, ref: str | AttachmentRef) -> StoredAttachment:
        """Store a raw payload and return its reference.

        Already-stored references are returned unchanged without a write.
        Raises ``StorageFailureError`` when the backend rejects the write.
        """
        parsed = parse_ref(ref)
        if isinstance(parsed, StoredAttachment):
            return parsed

        for _ in range(_MAX_ID_ATTEMPTS):
            attachment_id = new_attachment_id()
            try:
                self.backend.add(attachment_id, parsed.data)
            except FileExistsError:
                continue
            except StorageFailureError as exc:
                LOGGER.warning(
                    "attachment.persist.failed",
                    extra={"event": "attachment.persist.failed", "reason": str(exc)},
                )
                raise
            except OSError as exc:
                LOGGER.warning(
                    "attachment.persist.failed",
                    extra={"event": "attachment.persist.failed", "reason": str(exc)},
                )
                raise StorageFailureError(f"Unable to store attachment: {exc}") from exc
            LOGGER.debug(
                "attachment.persisted",
                extra={
                    "event": "attachment.persisted",
                    "attachment_id": attachment_id,
                    "size": len(parsed.data),
                },
            )
            return StoredAttachment(attachment_id)
        raise StorageFailureError("Unable to allocate a unique attachment id.")

    async def persist_many(
        self, refs: list[str | AttachmentRef]
    ) -> list[StoredAttachment]:
        """Persist refs in order; the first failure aborts the batch."""
        return [await self.persist(ref) for ref in refs]

    async def resolve(self, ref: str | AttachmentRef) -> str | None:
        """Return the payload for ``ref``.

        Raw payloads pass through. A stored reference whose entry is gone
        yields ``None`` so callers can render a "not found" state.
        """
        parsed = parse_ref(ref)
        if isinstance(parsed, RawAttachment):
            return parsed.data
        payload = self.backend.get(parsed.id)
        if payload is None:
            LOGGER.warning(
                "attachment.missing",
                extra={"event": "attachment.missing", "attachment_id": parsed.id},
            )
        return payload

    async def resolve_many(
        self, refs: list[str | AttachmentRef]
    ) -> list[str | None]:
        return [await self.resolve(ref) for ref in refs]

    async def require(self, ref: str | AttachmentRef) -> str:
        """Like ``resolve`` but raise ``AttachmentNotFoundError`` on a broken ref."""
        payload = await self.resolve(ref)
        if payload is None:
            raise AttachmentNotFoundError(f"Attachment {parse_ref(ref).token!r} not found.")
        return payload
