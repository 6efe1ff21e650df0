"""Chat engine: backend clients, stream decoding and configuration."""
from .config import ClientConfig
from .errors import (
    AIClientError,
    ChatClientError,
    InitializationError,
    NoActiveConversationError,
    RequestCancelledError,
    ServerError,
    StreamDecodeError,
    TransportError,
    ValidationError,
)
from .stream_events import (
    EndEvent,
    ErrorEvent,
    StartEvent,
    StreamEvent,
    TokenEvent,
    ToolCallEvent,
    TurnCompleteEvent,
)
from .streaming import DefaultStreamingHandler, StreamFold, StreamingHandler

__all__ = [
    # Config
    "ClientConfig",
    # YAML config (lazy import)
    "ChatConfig",
    "load_yaml_config",
    # Streaming
    "DefaultStreamingHandler",
    "StreamFold",
    "StreamingHandler",
    "StreamEvent",
    "StartEvent",
    "TokenEvent",
    "ToolCallEvent",
    "TurnCompleteEvent",
    "EndEvent",
    "ErrorEvent",
    # Backends (lazy import)
    "BackendClient",
    "BackendRegistry",
    "SendOptions",
    # Errors
    "AIClientError",
    "ChatClientError",
    "InitializationError",
    "NoActiveConversationError",
    "RequestCancelledError",
    "ServerError",
    "StreamDecodeError",
    "TransportError",
    "ValidationError",
]


def __getattr__(name: str):
    if name == "ChatConfig":
        from .yaml_config import ChatConfig
        return ChatConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "BackendClient":
        from .providers.base import BackendClient
        return BackendClient
    if name == "BackendRegistry":
        from .providers.registry import BackendRegistry
        return BackendRegistry
    if name == "SendOptions":
        from .providers.base import SendOptions
        return SendOptions
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
