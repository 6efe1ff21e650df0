"""Stream decoding and folding.

Decoders turn raw response bytes into a lazy sequence of StreamEvent
objects; the fold reduces that sequence into one message. Neither
depends on the transport that produced the bytes.

    bytes ──► iter_sse_events / iter_ndjson_events ──► StreamEvent ...
                                                          │
                                 StreamFold.apply(event) ◄┘
"""
from __future__ import annotations

import abc
import codecs
import json
import logging
import uuid
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from aichat.shared.models import MessageResponse

from .errors import AIClientError, StreamDecodeError, error_from_status
from .stream_events import (
    EndEvent,
    ErrorEvent,
    StartEvent,
    StreamEvent,
    TokenEvent,
    ToolCallEvent,
    TurnCompleteEvent,
    dict_to_event,
)

logger = logging.getLogger(__name__)

# Called with every decoded event, in arrival order.
AfterChunk = Callable[[StreamEvent], None]


# ── Reducer ────────────────────────────────────────────────────────


def fold_content(content: str, event: StreamEvent) -> str:
    """Return the message content after applying one event."""
    if isinstance(event, TokenEvent):
        if event.role == "tool_execution":
            return content
        return content + (event.token or "")
    if isinstance(event, TurnCompleteEvent) and event.token:
        return event.token
    return content


def stream_error(event: ErrorEvent) -> AIClientError:
    """Map a decoded error event onto the error taxonomy."""
    return error_from_status(
        event.status,
        f"Streaming error: {event.error} (status: {event.status})",
        data={"error": event.error, "status": event.status},
    )


@dataclass
class StreamFold:
    """Accumulated state of one streamed turn."""

    content: str = ""
    conversation_id: str | None = None
    message_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    started: bool = False
    completed: bool = False
    ended: bool = False
    last_token_id: int = -1

    def apply(self, event: StreamEvent) -> bool:
        """Fold *event* in. Returns False when the event was ignored.

        Raises the mapped AIClientError for an error event.
        """
        if isinstance(event, ErrorEvent):
            raise stream_error(event)
        if self.ended:
            logger.debug("Ignoring %s event after end of stream", event.event_type)
            return False

        if isinstance(event, StartEvent):
            self.started = True
            if event.conversation_id:
                self.conversation_id = event.conversation_id
            self.attributes["start_event"] = {"conversation_id": event.conversation_id}
        elif isinstance(event, TokenEvent):
            if self.completed:
                logger.debug("Ignoring token %d after turn_complete", event.id)
                return False
            if event.id <= self.last_token_id:
                logger.warning(
                    "Out-of-order token id %d (last %d); folding in arrival order",
                    event.id, self.last_token_id,
                )
            self.last_token_id = max(self.last_token_id, event.id)
        elif isinstance(event, ToolCallEvent):
            self.attributes.setdefault("tool_calls", []).append({
                "id": event.id,
                "role": event.role,
                "token": event.token,
            })
        elif isinstance(event, TurnCompleteEvent):
            self.completed = True
        elif isinstance(event, EndEvent):
            self.ended = True
            self.attributes.update(
                referenced_documents=event.referenced_documents,
                input_tokens=event.input_tokens,
                output_tokens=event.output_tokens,
                truncated=event.truncated,
                available_quotas=event.available_quotas,
            )
            if event.custom_metadata is not None:
                self.attributes["custom_metadata"] = event.custom_metadata
                message_id = event.custom_metadata.get("message_id")
                if message_id:
                    self.message_id = str(message_id)

        self.content = fold_content(self.content, event)
        return True

    def to_response(self, conversation_id: str) -> MessageResponse:
        return MessageResponse(
            message_id=self.message_id or str(uuid.uuid4()),
            answer=self.content,
            conversation_id=self.conversation_id or conversation_id,
            additional_attributes=dict(self.attributes),
        )


# ── Handlers ───────────────────────────────────────────────────────


class StreamingHandler(abc.ABC):
    """Consumes one decoded event sequence and produces the final reply."""

    @abc.abstractmethod
    async def process(
        self,
        events: AsyncIterator[StreamEvent],
        *,
        conversation_id: str,
        after_chunk: AfterChunk | None = None,
    ) -> MessageResponse:
        """Drain *events*, calling *after_chunk* for each one.

        Must raise on a decoded error event.
        """


class DefaultStreamingHandler(StreamingHandler):
    """Folds the stream with StreamFold and stops at the end event."""

    async def process(
        self,
        events: AsyncIterator[StreamEvent],
        *,
        conversation_id: str,
        after_chunk: AfterChunk | None = None,
    ) -> MessageResponse:
        fold = StreamFold()
        async for event in events:
            fold.apply(event)
            if after_chunk is not None:
                after_chunk(event)
            if fold.ended:
                break
        if not fold.ended:
            logger.debug(
                "Stream for conversation %s closed without an end event",
                conversation_id,
            )
        return fold.to_response(conversation_id)


# ── Decoders ───────────────────────────────────────────────────────


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Split a byte stream into text lines, tolerating split UTF-8 sequences."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer.rstrip("\r")


def _sse_payload_to_event(
    event_name: str | None,
    payload: Any,
    raw: str,
    ignore_unknown: bool,
) -> StreamEvent | None:
    if isinstance(payload, dict) and isinstance(payload.get("event"), str):
        return dict_to_event(
            payload["event"], payload.get("data"), ignore_unknown=ignore_unknown,
        )
    if event_name:
        return dict_to_event(event_name, payload, ignore_unknown=ignore_unknown)
    raise StreamDecodeError("data field names no event kind", raw)


def _dispatch_sse(
    event_name: str | None,
    data_lines: list[str],
    ignore_unknown: bool,
) -> StreamEvent | None:
    raw = "\n".join(data_lines)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StreamDecodeError("invalid JSON in data field", raw) from exc
    return _sse_payload_to_event(event_name, payload, raw, ignore_unknown)


async def iter_sse_events(
    chunks: AsyncIterable[bytes],
    *,
    ignore_unknown: bool = False,
) -> AsyncIterator[StreamEvent]:
    """Decode Server-Sent Events into typed stream events.

    Fields accumulate until a blank line (or the end of the stream)
    closes the event; its ``data:`` lines are then joined with newlines
    and parsed as one JSON document.
    """
    event_name: str | None = None
    data_lines: list[str] = []
    async for line in iter_lines(chunks):
        if not line:
            if data_lines:
                event = _dispatch_sse(event_name, data_lines, ignore_unknown)
                if event is not None:
                    yield event
            event_name = None
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip() or None
        elif name == "data":
            data_lines.append(value)
        # id: and retry: fields carry nothing we use
    if data_lines:
        event = _dispatch_sse(event_name, data_lines, ignore_unknown)
        if event is not None:
            yield event


def _detail_message(detail: Any) -> str:
    fallback = "Something went wrong. Please try again later."
    if isinstance(detail, str):
        return detail.strip() or fallback
    if isinstance(detail, dict):
        message = detail.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
        return json.dumps(detail)
    if isinstance(detail, list) and detail:
        first = detail[0]
        if isinstance(first, dict) and first.get("msg"):
            return str(first["msg"])
    return fallback


def _as_referenced_documents(sources: Any) -> list[dict[str, Any]]:
    docs = []
    for source in sources or []:
        if isinstance(source, dict):
            docs.append({
                "doc_url": source.get("link") or "",
                "doc_title": source.get("title") or "",
            })
    return docs


async def iter_ndjson_events(
    chunks: AsyncIterable[bytes],
    *,
    conversation_id: str,
) -> AsyncIterator[StreamEvent]:
    """Translate newline-delimited JSON message chunks into stream events.

    Each chunk carries an answer delta; the last one sets
    ``end_of_stream``. A ``{status_code, detail}`` line is an error.
    """
    started = False
    seq = 0
    answer = ""
    last: dict[str, Any] = {}
    async for line in iter_lines(chunks):
        line = line.strip()
        if not line:
            continue
        json_start = line.find("{")
        if json_start > 0:
            line = line[json_start:]
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError as exc:
            raise StreamDecodeError("invalid JSON line", line) from exc
        if not isinstance(chunk, dict):
            raise StreamDecodeError("JSON line is not an object", line)

        if chunk.get("status_code") and chunk.get("detail") is not None:
            yield ErrorEvent(
                error=_detail_message(chunk["detail"]),
                status=int(chunk["status_code"]),
            )
            return

        if not started:
            started = True
            yield StartEvent(
                conversation_id=chunk.get("conversation_id") or conversation_id,
            )
        delta = chunk.get("answer") or ""
        if delta:
            yield TokenEvent(id=seq, role="inference", token=delta)
            seq += 1
            answer += delta
        last = chunk
        if chunk.get("end_of_stream"):
            break

    if not started:
        return
    yield TurnCompleteEvent(id=seq, token=answer)
    yield EndEvent(
        referenced_documents=_as_referenced_documents(last.get("sources")),
        custom_metadata={
            "message_id": last.get("message_id"),
            "sources": last.get("sources") or [],
            "tool_call_metadata": last.get("tool_call_metadata"),
            "output_guard_result": last.get("output_guard_result"),
        },
    )
