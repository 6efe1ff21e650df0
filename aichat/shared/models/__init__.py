"""Data models shared by the engine and the adapters."""
from .conversation import (
    TEMP_CONVERSATION_ID,
    Confirmed,
    Conversation,
    ConversationIdentity,
    InitLimitation,
    InitResult,
    Message,
    MessageResponse,
    MessageRole,
    Pending,
)

__all__ = [
    "TEMP_CONVERSATION_ID",
    "Confirmed",
    "Conversation",
    "ConversationIdentity",
    "InitLimitation",
    "InitResult",
    "Message",
    "MessageResponse",
    "MessageRole",
    "Pending",
]
