"""Domain exception hierarchy for the rtwo client."""

from __future__ import annotations

from enum import Enum


class RtwoError(RuntimeError):
    """Base class for all domain-level errors."""


class TransportErrorKind(str, Enum):
    """Failure categories surfaced by the Ollama transport."""

    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"


class TransportError(RtwoError):
    """Raised when a request to the Ollama server cannot complete."""

    def __init__(self, kind: TransportErrorKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail


class StoreError(RtwoError):
    """Raised when the conversation store cannot serve a request."""


class NotFoundError(StoreError):
    """Raised when a conversation id is not present in the store."""


class StoreCorruptError(StoreError):
    """Raised when a stored conversation cannot be decoded into valid turns."""


class StoreWriteError(StoreError):
    """Raised when a conversation cannot be written or deleted."""


class InputError(RtwoError):
    """Raised for invalid user input such as an out-of-range selection."""


class SessionBusyError(RtwoError):
    """Raised when a prompt is submitted while another exchange is in flight."""


class StateTransitionError(RtwoError):
    """Raised when the session is asked to make an illegal state change."""


class ConfigValidationError(RtwoError):
    """Raised when configuration cannot be validated safely."""
