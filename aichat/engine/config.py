"""Client configuration loaded from environment variables.

All settings have sensible defaults. Override via AICHAT_* env vars,
or through the ``client:`` section of a YAML config file.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes"}


@dataclass
class ClientConfig:
    """Settings shared by the backend clients and the state manager."""

    # Registry name of the backend used when none is requested.
    default_backend: str = "conversation"

    # Total timeout for a single HTTP request, streams included.
    # Set to 0 (or a negative value) to disable timeout.
    request_timeout_seconds: float = 60.0

    # Whether send_message streams when the caller does not say.
    stream_by_default: bool = False

    # Skip stream events of unknown kind instead of failing the turn.
    ignore_unknown_stream_events: bool = False

    # Queue bound for EventBus consumers.
    event_queue_size: int = 1000

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load configuration from AICHAT_* environment variables."""
        aichat_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AICHAT_")
        }
        if aichat_vars:
            logger.info(
                "ClientConfig.from_env: AICHAT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(aichat_vars.items())),
            )
        else:
            logger.debug("ClientConfig.from_env: no AICHAT_* env vars set, using defaults")

        config = cls(
            default_backend=os.getenv(
                "AICHAT_DEFAULT_BACKEND", cls.default_backend
            ),
            request_timeout_seconds=float(os.getenv(
                "AICHAT_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            stream_by_default=(
                os.getenv("AICHAT_STREAM", "").lower() in _TRUTHY
            ),
            ignore_unknown_stream_events=(
                os.getenv("AICHAT_IGNORE_UNKNOWN_EVENTS", "").lower()
                in _TRUTHY
            ),
            event_queue_size=int(os.getenv(
                "AICHAT_EVENT_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            log_level=os.getenv("AICHAT_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "ClientConfig.from_env: backend=%s timeout=%s stream=%s log_level=%s",
            config.default_backend, config.request_timeout_seconds,
            config.stream_by_default, config.log_level,
        )
        return config
