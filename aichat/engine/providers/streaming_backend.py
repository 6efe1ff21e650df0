"""SSE streaming assistant backend.

Conversations are created server-side on the first message, so new
conversations start pending and are confirmed by the ``start`` event
of the first reply.
"""
from __future__ import annotations

import logging
from typing import Any

import aiohttp

from aichat.shared.models import (
    TEMP_CONVERSATION_ID,
    Conversation,
    InitResult,
    Message,
    MessageResponse,
    MessageRole,
)

from ..errors import AIClientError, StreamDecodeError
from ..streaming import DefaultStreamingHandler, StreamingHandler, iter_sse_events
from .base import SendOptions
from .http import HttpBackend, parse_timestamp

logger = logging.getLogger(__name__)

_CHAT_PATH = "/api/v1/ai/streaming_chat/"

_BOT_ROLES = {"bot", "assistant", "ai", "inference"}


class StreamingBackend(HttpBackend):
    """Backend whose only reply format is a Server-Sent Events stream.

    Non-streaming calls drain the stream internally and return the
    folded reply.
    """

    temporary_conversation_id = TEMP_CONVERSATION_ID

    def __init__(
        self,
        base_url: str,
        *,
        request_payload: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self._request_payload = dict(request_payload or {})
        self._handler = DefaultStreamingHandler()

    @property
    def name(self) -> str:
        return "streaming"

    def get_default_streaming_handler(self) -> StreamingHandler:
        return self._handler

    async def init(self) -> InitResult:
        return InitResult()

    async def create_new_conversation(self) -> Conversation:
        return Conversation.pending(self.temporary_conversation_id)

    def _check_stream_response(self, resp: aiohttp.ClientResponse) -> None:
        content_type = resp.headers.get("Content-Type", "")
        if "text/event-stream" not in content_type:
            raise StreamDecodeError(
                f"expected text/event-stream but got {content_type or 'no content type'}",
            )

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        options: SendOptions | None = None,
    ) -> MessageResponse:
        options = options or SendOptions()
        body: dict[str, Any] = {
            "media_type": "application/json",
            **self._request_payload,
            **(options.request_payload or {}),
            "query": content,
        }
        if conversation_id and not self.is_temporary_id(conversation_id):
            body["conversation_id"] = conversation_id

        events = self._stream_events(
            _CHAT_PATH,
            lambda chunks: iter_sse_events(
                chunks, ignore_unknown=self._ignore_unknown_events,
            ),
            json_body=body,
            headers=options.headers,
            signal=options.signal,
        )
        if options.stream:
            return await self._consume_stream(events, conversation_id, options)
        return await self._consume_stream(
            events, conversation_id, SendOptions(handler=self._handler),
        )

    async def get_conversation_history(self, conversation_id: str) -> list[Message]:
        if self.is_temporary_id(conversation_id):
            return []
        try:
            payload = await self._request(
                "GET", f"/api/v1/ai/conversations/{conversation_id}/",
            )
        except AIClientError as exc:
            if exc.status == 404:
                logger.debug("%s: no history for %s", self.name, conversation_id)
                return []
            raise

        entries = payload.get("messages") if isinstance(payload, dict) else payload
        messages: list[Message] = []
        for entry in entries or []:
            role = str(entry.get("role", "")).lower()
            kwargs: dict[str, Any] = {
                "role": MessageRole.BOT if role in _BOT_ROLES else MessageRole.USER,
                "answer": entry.get("content") or entry.get("message") or "",
                "date": parse_timestamp(entry.get("created_at")),
            }
            if entry.get("id"):
                kwargs["id"] = str(entry["id"])
            messages.append(Message(**kwargs))
        return messages

    async def health_check(self) -> Any:
        return await self._request("GET", "/api/v1/health/")

    async def get_service_status(self) -> Any:
        return await self._request("GET", "/api/v1/health/status/chatbot/")
