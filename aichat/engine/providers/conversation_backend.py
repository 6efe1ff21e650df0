"""Conversation-oriented assistant backend.

The server issues conversation ids up front, keeps per-user history and
answers either with one JSON message or with newline-delimited JSON
chunks when streaming.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from aichat.shared.models import (
    Conversation,
    InitLimitation,
    InitResult,
    Message,
    MessageResponse,
    MessageRole,
)

from ..errors import AIClientError, InitializationError
from ..streaming import DefaultStreamingHandler, StreamingHandler, iter_ndjson_events
from .base import SendOptions
from .http import HttpBackend, parse_timestamp, response_object

logger = logging.getLogger(__name__)

_API = "/api/ask/v1"


def _message_attributes(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "sources": payload.get("sources") or [],
        "tool_call_metadata": payload.get("tool_call_metadata"),
        "output_guard_result": payload.get("output_guard_result"),
    }


class ConversationBackend(HttpBackend):
    """Backend for assistants with server-side conversations and history.

    ``check_quota`` makes init() consult the conversation quota endpoint
    and report an InitLimitation once the quota is used up.
    """

    def __init__(self, base_url: str, *, check_quota: bool = False, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self._check_quota = check_quota
        self._handler = DefaultStreamingHandler()

    @property
    def name(self) -> str:
        return "conversation"

    def get_default_streaming_handler(self) -> StreamingHandler:
        return self._handler

    async def init(self) -> InitResult:
        try:
            items = await self._request("GET", f"{_API}/user/current/history")
        except AIClientError as exc:
            raise InitializationError(exc.message, status=exc.status) from exc

        conversations: list[Conversation] = []
        initial_id: str | None = None
        for item in items or []:
            conversation_id = item.get("conversation_id")
            if not conversation_id:
                continue
            conversations.append(Conversation.confirmed(
                conversation_id,
                title=item.get("title") or "New conversation",
                created_at=parse_timestamp(item.get("created_at")),
            ))
            if item.get("is_latest") and initial_id is None:
                initial_id = conversation_id

        limitation = await self._quota_limitation() if self._check_quota else None
        logger.info(
            "%s: init found %d conversation(s), initial=%s",
            self.name, len(conversations), initial_id,
        )
        return InitResult(
            conversations=conversations,
            initial_conversation_id=initial_id,
            limitation=limitation,
        )

    async def _quota_limitation(self) -> InitLimitation | None:
        try:
            status = await self._request("GET", f"{_API}/quota/conversations")
        except AIClientError as exc:
            logger.warning("%s: quota check failed: %s", self.name, exc)
            return None
        quota = (status or {}).get("quota") or {}
        if not (status or {}).get("enabled") or not quota:
            return None
        used, limit = quota.get("used", 0), quota.get("limit", 0)
        if limit and used >= limit:
            return InitLimitation(
                reason="quota-breached",
                detail=f"Conversation quota used up ({used}/{limit})",
            )
        return None

    async def create_new_conversation(self) -> Conversation:
        payload = response_object(
            await self._request("POST", f"{_API}/conversation"),
            f"{self.name}: create conversation",
            required=("conversation_id",),
        )
        conversation_id = payload["conversation_id"]
        logger.info("%s: created conversation %s", self.name, conversation_id)
        return Conversation.confirmed(conversation_id)

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        options: SendOptions | None = None,
    ) -> MessageResponse:
        options = options or SendOptions()
        path = f"{_API}/conversation/{conversation_id}/message"
        body = {
            **(options.request_payload or {}),
            "input": content,
            "received_at": datetime.now(timezone.utc).isoformat(),
            "stream": options.stream,
        }

        if options.stream:
            events = self._stream_events(
                path,
                lambda chunks: iter_ndjson_events(chunks, conversation_id=conversation_id),
                json_body=body,
                headers=options.headers,
                signal=options.signal,
            )
            return await self._consume_stream(events, conversation_id, options)

        payload = response_object(
            await self._request(
                "POST", path, json_body=body, headers=options.headers, signal=options.signal,
            ),
            f"{self.name}: send message",
        )
        return MessageResponse(
            message_id=payload.get("message_id") or "",
            answer=payload.get("answer") or "",
            conversation_id=payload.get("conversation_id") or conversation_id,
            date=parse_timestamp(payload.get("received_at")),
            additional_attributes=_message_attributes(payload),
        )

    async def get_conversation_history(self, conversation_id: str) -> list[Message]:
        payload = await self._request("GET", f"{_API}/conversation/{conversation_id}/history")
        if isinstance(payload, dict):
            entries = payload.get("messages") or []
        else:
            entries = payload or []

        messages: list[Message] = []
        for entry in entries:
            message_id = entry.get("message_id") or ""
            date = parse_timestamp(entry.get("received_at"))
            messages.append(Message(
                role=MessageRole.USER,
                answer=entry.get("input") or "",
                id=message_id,
                date=date,
            ))
            messages.append(Message(
                role=MessageRole.BOT,
                answer=entry.get("answer") or "",
                id=message_id,
                date=date,
                additional_attributes=_message_attributes(entry),
            ))
        return messages

    async def health_check(self) -> Any:
        return await self._request("GET", f"{_API}/health")

    async def get_service_status(self) -> Any:
        return await self._request("GET", f"{_API}/status")
