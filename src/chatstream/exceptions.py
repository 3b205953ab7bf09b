"""Domain exception hierarchy for the chatstream engine."""

from __future__ import annotations


class ChatStreamError(RuntimeError):
    """Base class for all domain-level chat errors."""


class TurnValidationError(ChatStreamError):
    """Raised when a turn is rejected before any state change."""


class EmptyTurnError(TurnValidationError):
    """Raised when a turn has neither text nor attachments."""


class UnknownSessionError(TurnValidationError):
    """Raised when a turn targets a session that does not exist."""


class StorageFailureError(ChatStreamError):
    """Raised when the attachment store rejects a write."""


class RequestFailureError(ChatStreamError):
    """Raised when the model backend cannot be reached or answers non-2xx."""


class FragmentDecodeError(ChatStreamError):
    """Raised for a single malformed stream fragment; never escapes the decoder."""


class AttachmentNotFoundError(ChatStreamError):
    """Raised by strict attachment lookups when a stored reference is gone."""


class PersistenceError(ChatStreamError):
    """Raised when session persistence cannot decode or encode a payload."""


class ConfigValidationError(ChatStreamError):
    """Raised when configuration cannot be validated safely."""
