"""Exception hierarchy for chat clients and the conversation state manager.

Backend clients raise AIClientError subclasses; the state manager adds
its own usage errors. The manager never swallows a backend error.
"""
from __future__ import annotations

from typing import Any


class ChatClientError(Exception):
    """Base exception for all chat client errors."""


class InitializationError(ChatClientError):
    """Backend initialization failed."""
    def __init__(self, reason: str, status: int | None = None):
        self.reason = reason
        self.status = status
        super().__init__(f"Initialization failed: {reason}")


class NoActiveConversationError(ChatClientError):
    """A message was sent before any conversation was selected."""
    def __init__(self) -> None:
        super().__init__("No active conversation")


class AIClientError(ChatClientError):
    """Error reported by (or on the way to) a backend service.

    ``status`` follows HTTP semantics; 0 means the request never got
    an HTTP response.
    """
    def __init__(
        self,
        status: int,
        status_text: str,
        message: str,
        data: Any = None,
    ):
        self.status = status
        self.status_text = status_text
        self.message = message
        self.data = data
        super().__init__(message)


class ValidationError(AIClientError):
    """Request rejected as invalid (422-equivalent)."""
    def __init__(self, validation_errors: list[dict[str, Any]]):
        self.validation_errors = validation_errors
        details = "; ".join(
            str(err.get("msg", "")) for err in validation_errors if err
        )
        message = "Request validation failed"
        if details:
            message = f"{message}: {details}"
        super().__init__(422, "Validation Error", message, validation_errors)

    @classmethod
    def from_message(
        cls, msg: str, loc: list[str | int] | None = None,
    ) -> ValidationError:
        return cls([{
            "loc": loc or ["unknown"],
            "msg": msg,
            "type": "value_error",
        }])


class ServerError(AIClientError):
    """Backend reported an internal failure (5xx-equivalent)."""
    def __init__(self, message: str, status: int = 500, data: Any = None):
        super().__init__(status, "Server Error", message, data)


class TransportError(AIClientError):
    """Network or connection failure before a usable response arrived."""
    def __init__(self, message: str, data: Any = None):
        super().__init__(0, "Network Error", message, data)


class RequestCancelledError(TransportError):
    """The caller's cancellation signal aborted the request."""
    def __init__(self) -> None:
        super().__init__("Request aborted by caller")


class StreamDecodeError(AIClientError):
    """A response stream could not be decoded into events."""
    def __init__(self, reason: str, raw: str | None = None):
        self.reason = reason
        self.raw = raw
        super().__init__(0, "Stream Decode Error", f"Malformed stream: {reason}", raw)


def error_from_status(status: int, message: str, data: Any = None) -> AIClientError:
    """Map an HTTP-like status code onto the error taxonomy."""
    if status == 422:
        if isinstance(data, list) and all(isinstance(d, dict) for d in data):
            return ValidationError(data)
        return ValidationError.from_message(message)
    if status >= 500:
        return ServerError(message, status=status, data=data)
    return AIClientError(status, "Client Error", message, data)
