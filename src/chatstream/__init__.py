"""Streaming session engine for a multimodal chat backend."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .attachments import AttachmentStore, RawAttachment, StoredAttachment
    from .config import load_config
    from .decoder import StreamDecoder, StreamUpdate
    from .engine import ChatEngine
    from .exceptions import (
        ChatStreamError,
        RequestFailureError,
        StorageFailureError,
        TurnValidationError,
    )
    from .models import GroundingSource, Message, Role, Session
    from .pipeline import SendPipeline, TurnRequest, TurnResult
    from .session_store import SessionState, SessionStore

_EXPORTS: dict[str, str] = {
    "AttachmentStore": "attachments",
    "RawAttachment": "attachments",
    "StoredAttachment": "attachments",
    "load_config": "config",
    "StreamDecoder": "decoder",
    "StreamUpdate": "decoder",
    "ChatEngine": "engine",
    "ChatStreamError": "exceptions",
    "RequestFailureError": "exceptions",
    "StorageFailureError": "exceptions",
    "TurnValidationError": "exceptions",
    "GroundingSource": "models",
    "Message": "models",
    "Role": "models",
    "Session": "models",
    "SendPipeline": "pipeline",
    "TurnRequest": "pipeline",
    "TurnResult": "pipeline",
    "SessionState": "session_store",
    "SessionStore": "session_store",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import public symbols so ``import chatstream`` stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(f".{module_name}", __name__), name)
