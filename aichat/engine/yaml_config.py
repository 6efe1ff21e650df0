"""YAML configuration loader.

Example YAML:
    client:
      default_backend: assistant
      request_timeout_seconds: 30
      ignore_unknown_stream_events: false
      log_level: INFO

    backends:
      assistant:
        type: conversation
        base_url: https://assistant.example.com
        token_env: ASSISTANT_TOKEN
        check_quota: true
      rag:
        type: rag
        base_url: http://localhost:8000
        conversation_id: rag-conversation
      stream:
        type: streaming
        base_url: https://stream.example.com
        headers:
          X-Team: "${TEAM_NAME}"
        request_payload:
          media_type: application/json

    defaults:
      backend: assistant
      stream: true
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import ClientConfig

logger = logging.getLogger(__name__)


@dataclass
class BackendConfig:
    """Configuration for a single backend."""
    type: str  # "conversation", "rag" or "streaming"
    base_url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    token_env: str | None = None
    conversation_id: str | None = None  # rag only
    request_payload: dict[str, Any] = field(default_factory=dict)  # streaming only
    check_quota: bool = False  # conversation only


@dataclass
class DefaultsConfig:
    """Default settings from YAML."""
    backend: str | None = None
    stream: bool | None = None


@dataclass
class ChatConfig:
    """Complete parsed YAML configuration."""
    client: ClientConfig
    backends: dict[str, BackendConfig]
    defaults: DefaultsConfig


def _expand_env(value: Any) -> Any:
    """Expand ``${VAR}`` references; unset variables are left as written."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def _parse_backend(name: str, cfg: dict[str, Any] | None) -> BackendConfig:
    cfg = cfg or {}
    headers = {
        str(k): str(_expand_env(v))
        for k, v in (cfg.get("headers") or {}).items()
    }
    return BackendConfig(
        type=cfg.get("type", name),
        base_url=str(_expand_env(cfg.get("base_url", ""))),
        headers=headers,
        token_env=cfg.get("token_env"),
        conversation_id=cfg.get("conversation_id"),
        request_payload=dict(cfg.get("request_payload") or {}),
        check_quota=bool(cfg.get("check_quota", False)),
    )


def load_yaml_config(path: str | Path) -> ChatConfig:
    """Load and parse a YAML config file."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    # ── Client config ──────────────────────────────────────────
    client_raw = raw.get("client", {}) or {}
    # AICHAT_* env values are the base; the client: section overrides them.
    base = ClientConfig.from_env()
    client = ClientConfig(
        default_backend=client_raw.get(
            "default_backend", base.default_backend
        ),
        request_timeout_seconds=float(client_raw.get(
            "request_timeout_seconds", base.request_timeout_seconds
        )),
        stream_by_default=bool(client_raw.get(
            "stream_by_default", base.stream_by_default
        )),
        ignore_unknown_stream_events=bool(client_raw.get(
            "ignore_unknown_stream_events",
            base.ignore_unknown_stream_events,
        )),
        event_queue_size=int(client_raw.get(
            "event_queue_size", base.event_queue_size
        )),
        log_level=client_raw.get("log_level", base.log_level),
    )

    # ── Backends ───────────────────────────────────────────────
    backends: dict[str, BackendConfig] = {}
    for name, cfg in (raw.get("backends", {}) or {}).items():
        backends[name] = _parse_backend(name, cfg)

    # ── Defaults ───────────────────────────────────────────────
    defaults_raw = raw.get("defaults", {}) or {}
    defaults = DefaultsConfig(
        backend=defaults_raw.get("backend"),
        stream=defaults_raw.get("stream"),
    )
    if defaults.backend:
        client.default_backend = defaults.backend
    if defaults.stream is not None:
        client.stream_by_default = bool(defaults.stream)

    if client.default_backend not in backends and backends:
        logger.warning(
            "Default backend '%s' is not configured (have: %s)",
            client.default_backend, ", ".join(backends),
        )

    logger.info(
        "Loaded config: %d backend(s), default=%s, stream=%s",
        len(backends), client.default_backend, client.stream_by_default,
    )
    return ChatConfig(client=client, backends=backends, defaults=defaults)
