"""Event types decoded from backend response streams.

Every backend's wire format is translated into this one vocabulary:
start, token, tool_call, turn_complete, end, error.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .errors import StreamDecodeError

logger = logging.getLogger(__name__)


@dataclass
class StreamEvent:
    """Base decoded stream event."""
    event_type: str = ""


@dataclass
class StartEvent(StreamEvent):
    event_type: str = "start"
    conversation_id: str = ""


@dataclass
class TokenEvent(StreamEvent):
    event_type: str = "token"
    id: int = 0
    role: str = "inference"
    token: str = ""


@dataclass
class ToolCallEvent(StreamEvent):
    event_type: str = "tool_call"
    id: int = 0
    role: str = "tool_execution"
    token: Any = ""


@dataclass
class TurnCompleteEvent(StreamEvent):
    event_type: str = "turn_complete"
    id: int = 0
    token: str = ""


@dataclass
class EndEvent(StreamEvent):
    event_type: str = "end"
    referenced_documents: list[dict[str, Any]] = field(default_factory=list)
    input_tokens: int | None = None
    output_tokens: int | None = None
    truncated: Any = None
    available_quotas: dict[str, Any] = field(default_factory=dict)
    custom_metadata: dict[str, Any] | None = None


@dataclass
class ErrorEvent(StreamEvent):
    event_type: str = "error"
    error: str = "Unknown streaming error"
    status: int = 500


TERMINAL_EVENTS = ("turn_complete", "end")

_EVENT_MAP: dict[str, type[StreamEvent]] = {
    "start": StartEvent,
    "token": TokenEvent,
    "tool_call": ToolCallEvent,
    "turn_complete": TurnCompleteEvent,
    "end": EndEvent,
    "error": ErrorEvent,
}


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a typed event to the ``{"event": kind, "data": {...}}`` wire shape."""
    data: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        if f == "event_type":
            continue
        val = getattr(event, f)
        if val is not None:
            data[f] = val
    return {"event": event.event_type, "data": data}


def _sequence_id(kind: str, value: Any) -> int:
    """Coerce a token sequence number; numeric strings are accepted."""
    if isinstance(value, bool):
        raise StreamDecodeError(f"{kind} event id must be an integer", repr(value))
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
    raise StreamDecodeError(f"{kind} event id must be an integer", repr(value))


def dict_to_event(
    kind: str,
    data: dict[str, Any] | None,
    *,
    ignore_unknown: bool = False,
) -> StreamEvent | None:
    """Build a typed event from its kind and payload.

    Unknown kinds raise StreamDecodeError, or return None when
    *ignore_unknown* is set.
    """
    cls = _EVENT_MAP.get(kind)
    if cls is None:
        if ignore_unknown:
            logger.debug("Skipping stream event of unknown kind %r", kind)
            return None
        raise StreamDecodeError(f"unknown event kind {kind!r}")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise StreamDecodeError(f"{kind} event payload is not an object", repr(data))
    # Filter payload keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {
        k: v for k, v in data.items()
        if k in valid_fields and k != "event_type" and v is not None
    }
    if "id" in filtered:
        filtered["id"] = _sequence_id(kind, filtered["id"])
    try:
        return cls(**filtered)
    except TypeError as exc:
        raise StreamDecodeError(f"bad {kind} payload: {exc}", repr(data)) from exc
