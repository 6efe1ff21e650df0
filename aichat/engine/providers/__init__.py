"""Backend client abstraction and the HTTP backends."""
from .base import BackendClient, SendOptions
from .registry import BackendRegistry, build_backend_registry
from .http import HttpBackend
from .conversation_backend import ConversationBackend
from .rag_backend import RAG_CONVERSATION_ID, RagBackend
from .streaming_backend import StreamingBackend

__all__ = [
    "BackendClient",
    "SendOptions",
    "BackendRegistry",
    "build_backend_registry",
    "HttpBackend",
    "ConversationBackend",
    "RAG_CONVERSATION_ID",
    "RagBackend",
    "StreamingBackend",
]
