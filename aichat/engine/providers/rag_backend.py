"""RAG inference backend.

Every question is answered independently; the server keeps no
conversations or history, so one fixed pseudo-conversation is used.
"""
from __future__ import annotations

import logging
from typing import Any

from aichat.shared.models import (
    Conversation,
    InitResult,
    Message,
    MessageResponse,
)

from .base import SendOptions
from .http import HttpBackend

logger = logging.getLogger(__name__)

RAG_CONVERSATION_ID = "rag-conversation"


class RagBackend(HttpBackend):
    """Single-shot backend posting questions to ``/infer``.

    ``request_payload`` may carry ``context`` (forwarded as-is) and
    ``skip_rag``. Responses are never streamed.
    """

    def __init__(
        self,
        base_url: str,
        *,
        conversation_id: str = RAG_CONVERSATION_ID,
        title: str = "RAG chat",
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self._conversation_id = conversation_id
        self._title = title

    @property
    def name(self) -> str:
        return "rag"

    async def init(self) -> InitResult:
        return InitResult()

    async def create_new_conversation(self) -> Conversation:
        return Conversation.confirmed(self._conversation_id, title=self._title)

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        options: SendOptions | None = None,
    ) -> MessageResponse:
        options = options or SendOptions()
        if options.stream:
            logger.debug("%s: streaming not supported, sending one-shot", self.name)
        payload = options.request_payload or {}
        query: dict[str, Any] = {
            "question": content,
            "skip_rag": bool(payload.get("skip_rag", False)),
        }
        if payload.get("context") is not None:
            query["context"] = payload["context"]

        response = await self._request(
            "POST", "/infer",
            json_body=query,
            headers=options.headers,
            signal=options.signal,
        )
        data = (response or {}).get("data") or {}
        return MessageResponse(
            message_id=data.get("request_id") or "",
            answer=data.get("text") or "",
            conversation_id=conversation_id,
            additional_attributes={
                "skip_rag": query["skip_rag"],
                "has_context": "context" in query,
                "original_question": content,
            },
        )

    async def get_conversation_history(self, conversation_id: str) -> list[Message]:
        return []

    async def health_check(self) -> Any:
        return await self._request("GET", "/health")

    async def get_service_status(self) -> Any:
        return await self._request("GET", "/metrics", as_text=True)
