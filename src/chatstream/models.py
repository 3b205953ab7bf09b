"""Immutable session and message models.

Python code works with snake_case fields; the durable JSON form uses the
camelCase names (``updatedAt``, ``generatedImage``...) through aliases.
Attachment fields hold tagged ``AttachmentRef`` values in memory and plain
string tokens on the wire.
"""

from __future__ import annotations

from enum import Enum
import time
from typing import Annotated, Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, PlainValidator
from pydantic.alias_generators import to_camel

from .attachments import AttachmentRef, StoredAttachment, parse_ref

DEFAULT_SESSION_TITLE = "New chat"
TITLE_MAX_CHARS = 30


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid4().hex


AttachmentField = Annotated[
    AttachmentRef,
    PlainValidator(parse_ref),
    PlainSerializer(lambda ref: ref.token, return_type=str),
]


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    MODEL = "model"


class _Frozen(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class GroundingSource(_Frozen):
    """A citation attached to a model response."""

    title: str = ""
    uri: str


class Message(_Frozen):
    """One chat message; model messages are patched while their turn streams."""

    id: str = Field(default_factory=new_id)
    role: Role
    text: str = ""
    images: tuple[AttachmentField, ...] | None = None
    generated_image: AttachmentField | None = None
    timestamp: int = Field(default_factory=now_ms)
    grounding_sources: tuple[GroundingSource, ...] | None = None
    is_error: bool = False

    def patched(self, patch: dict[str, Any]) -> Message:
        """Return a copy with ``patch`` applied; attachment fields are re-parsed."""
        update = dict(patch)
        if update.get("images") is not None:
            update["images"] = tuple(parse_ref(ref) for ref in update["images"])
        if update.get("generated_image") is not None:
            update["generated_image"] = parse_ref(update["generated_image"])
        if update.get("grounding_sources") is not None:
            update["grounding_sources"] = tuple(
                source
                if isinstance(source, GroundingSource)
                else GroundingSource.model_validate(source)
                for source in update["grounding_sources"]
            )
        return self.model_copy(update=update)

    def attachment_refs(self) -> list[AttachmentRef]:
        refs: list[AttachmentRef] = list(self.images or ())
        if self.generated_image is not None:
            refs.append(self.generated_image)
        return refs

    @property
    def is_resolved(self) -> bool:
        """True when every attachment is a stored reference."""
        return all(isinstance(ref, StoredAttachment) for ref in self.attachment_refs())


class Session(_Frozen):
    """An ordered conversation."""

    id: str = Field(default_factory=new_id)
    title: str = DEFAULT_SESSION_TITLE
    updated_at: int = Field(default_factory=now_ms)
    messages: tuple[Message, ...] = ()

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


def derive_title(text: str) -> str:
    """Title for a session whose first user message is ``text``."""
    return text.strip()[:TITLE_MAX_CHARS] or DEFAULT_SESSION_TITLE
