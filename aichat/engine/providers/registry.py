"""Backend registry: maps configured backend names to client instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .base import BackendClient

if TYPE_CHECKING:
    from ..config import ClientConfig
    from ..yaml_config import BackendConfig

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Registry of configured backend clients.

    Maps names from the ``backends:`` config section (e.g. 'assistant',
    'rag') to BackendClient instances.
    """

    def __init__(self) -> None:
        self._backends: dict[str, BackendClient] = {}

    def register(self, name: str, backend: BackendClient) -> None:
        """Register a backend by name."""
        self._backends[name] = backend
        logger.info("Backend registered: %s (type=%s)", name, backend.name)

    def get(self, name: str) -> BackendClient | None:
        """Get a backend by name, or None if not registered."""
        return self._backends.get(name)

    def get_or_raise(self, name: str) -> BackendClient:
        """Get a backend by name, raising KeyError if not found."""
        backend = self._backends.get(name)
        if backend is None:
            available = ", ".join(self._backends.keys())
            raise KeyError(
                f"Backend '{name}' not found. "
                f"Available: {available or 'none'}"
            )
        return backend

    def list_names(self) -> list[str]:
        """Return all registered backend names."""
        return list(self._backends.keys())

    async def shutdown_all(self) -> None:
        """Shut down all registered backends."""
        for name, backend in self._backends.items():
            try:
                await backend.shutdown()
            except Exception as exc:
                logger.error(
                    "Error shutting down backend '%s': %s",
                    name, exc,
                )

    @property
    def count(self) -> int:
        return len(self._backends)


def build_backend_registry(
    backend_configs: dict[str, BackendConfig] | None = None,
    client_config: ClientConfig | None = None,
) -> BackendRegistry:
    """Build a BackendRegistry from YAML-sourced backend configs.

    Unknown backend types are logged and skipped.
    """
    from ..config import ClientConfig
    from .conversation_backend import ConversationBackend
    from .rag_backend import RagBackend
    from .streaming_backend import StreamingBackend

    client_config = client_config or ClientConfig()
    registry = BackendRegistry()

    for name, cfg in (backend_configs or {}).items():
        common = dict(
            headers=cfg.headers,
            token_env=cfg.token_env,
            timeout_seconds=client_config.request_timeout_seconds,
            ignore_unknown_events=client_config.ignore_unknown_stream_events,
        )
        if not cfg.base_url:
            logger.warning("Backend '%s' has no base_url, skipping", name)
            continue

        if cfg.type == "conversation":
            backend: BackendClient = ConversationBackend(
                cfg.base_url, check_quota=cfg.check_quota, **common,
            )
        elif cfg.type == "rag":
            if cfg.conversation_id:
                backend = RagBackend(
                    cfg.base_url, conversation_id=cfg.conversation_id, **common,
                )
            else:
                backend = RagBackend(cfg.base_url, **common)
        elif cfg.type == "streaming":
            backend = StreamingBackend(
                cfg.base_url, request_payload=cfg.request_payload, **common,
            )
        else:
            logger.warning(
                "Unknown backend type '%s' for '%s', skipping",
                cfg.type, name,
            )
            continue
        registry.register(name, backend)

    if registry.count == 0:
        logger.error("No backends configured! Nothing to chat with.")
    return registry
