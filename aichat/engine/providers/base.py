"""Abstract base for chat backend clients.

Each backend wraps a different vendor API (conversation-oriented
assistants, RAG single-shot services, SSE token streams). The state
manager only ever talks to this interface; backends never hold or
mutate manager state.
"""
from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from aichat.shared.models import (
    Conversation,
    InitResult,
    Message,
    MessageResponse,
)

from ..streaming import AfterChunk, StreamingHandler

logger = logging.getLogger(__name__)


@dataclass
class SendOptions:
    """Per-call options for BackendClient.send_message()."""
    stream: bool = False
    request_payload: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    # Set the event to abort the request.
    signal: asyncio.Event | None = None
    after_chunk: AfterChunk | None = None
    # Overrides the backend's default streaming handler for this call.
    handler: StreamingHandler | None = None


class BackendClient(abc.ABC):
    """Abstract backend interface.

    Implementations:
    - ConversationBackend: server-issued conversation ids, history
    - RagBackend: one fixed pseudo-conversation, no history
    - StreamingBackend: SSE tokens, ids issued after the first message
    """

    # Sentinel id handed out before the server confirms a conversation.
    # None for backends that allocate ids up front.
    temporary_conversation_id: str | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'conversation', 'rag')."""

    @abc.abstractmethod
    async def init(self) -> InitResult:
        """Return the existing conversations and the initial one, if any."""

    @abc.abstractmethod
    async def send_message(
        self,
        conversation_id: str,
        content: str,
        options: SendOptions | None = None,
    ) -> MessageResponse:
        """Send one user message and return the bot reply.

        With ``options.stream`` the reply is decoded into stream events
        which are handed to ``options.handler`` (or the default handler);
        ``options.after_chunk`` sees every event in arrival order.
        """

    @abc.abstractmethod
    async def get_conversation_history(self, conversation_id: str) -> list[Message]:
        """Return the stored messages of a conversation, oldest first."""

    @abc.abstractmethod
    async def create_new_conversation(self) -> Conversation:
        """Create a conversation, or a pending one for lazily-identified backends."""

    @abc.abstractmethod
    async def health_check(self) -> Any:
        """Opaque health payload."""

    async def get_service_status(self) -> Any:
        """Opaque status payload. Defaults to the health check."""
        return await self.health_check()

    def get_default_streaming_handler(self) -> StreamingHandler | None:
        """Handler used when streaming is requested without one.

        Default: None (backend cannot stream).
        """
        return None

    def is_temporary_id(self, conversation_id: str | None) -> bool:
        return (
            self.temporary_conversation_id is not None
            and conversation_id == self.temporary_conversation_id
        )

    async def shutdown(self) -> None:
        """Clean up resources (e.g. close HTTP sessions).

        Default no-op.
        """
        return None
