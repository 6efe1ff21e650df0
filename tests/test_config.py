"""Tests for ClientConfig and the YAML loader."""
from __future__ import annotations

import os
from unittest.mock import patch

import pytest
import yaml

from aichat.engine.config import ClientConfig
from aichat.engine.yaml_config import load_yaml_config


def test_client_config_defaults():
    config = ClientConfig()
    assert config.default_backend == "conversation"
    assert config.request_timeout_seconds == 60.0
    assert config.stream_by_default is False
    assert config.ignore_unknown_stream_events is False


def test_client_config_from_env():
    env = {
        "AICHAT_DEFAULT_BACKEND": "rag",
        "AICHAT_REQUEST_TIMEOUT": "12.5",
        "AICHAT_STREAM": "true",
        "AICHAT_IGNORE_UNKNOWN_EVENTS": "1",
        "AICHAT_EVENT_QUEUE_SIZE": "10",
        "AICHAT_LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env, clear=False):
        config = ClientConfig.from_env()
    assert config.default_backend == "rag"
    assert config.request_timeout_seconds == 12.5
    assert config.stream_by_default is True
    assert config.ignore_unknown_stream_events is True
    assert config.event_queue_size == 10
    assert config.log_level == "DEBUG"


def test_client_config_from_env_without_overrides():
    cleaned = {k: v for k, v in os.environ.items() if not k.startswith("AICHAT_")}
    with patch.dict(os.environ, cleaned, clear=True):
        config = ClientConfig.from_env()
    assert config == ClientConfig()


def test_load_yaml_config_full(tmp_path):
    path = tmp_path / "chat.yaml"
    path.write_text(
        "client:\n"
        "  request_timeout_seconds: 5\n"
        "  ignore_unknown_stream_events: true\n"
        "backends:\n"
        "  assistant:\n"
        "    type: conversation\n"
        "    base_url: https://assistant.example.com\n"
        "    token_env: ASSISTANT_TOKEN\n"
        "    check_quota: true\n"
        "  stream:\n"
        "    type: streaming\n"
        "    base_url: https://stream.example.com\n"
        "    headers:\n"
        "      X-Team: \"${AICHAT_TEST_TEAM}\"\n"
        "    request_payload:\n"
        "      media_type: text/plain\n"
        "defaults:\n"
        "  backend: stream\n"
        "  stream: true\n",
        encoding="utf-8",
    )
    with patch.dict(os.environ, {"AICHAT_TEST_TEAM": "platform"}):
        config = load_yaml_config(path)

    assert config.client.request_timeout_seconds == 5.0
    assert config.client.ignore_unknown_stream_events is True
    assert config.client.default_backend == "stream"
    assert config.client.stream_by_default is True
    assistant = config.backends["assistant"]
    assert assistant.type == "conversation"
    assert assistant.token_env == "ASSISTANT_TOKEN"
    assert assistant.check_quota is True
    stream = config.backends["stream"]
    assert stream.headers == {"X-Team": "platform"}
    assert stream.request_payload == {"media_type": "text/plain"}


def test_load_yaml_config_backend_type_defaults_to_name(tmp_path):
    path = tmp_path / "chat.yaml"
    path.write_text("backends:\n  rag:\n    base_url: http://localhost:8000\n")
    config = load_yaml_config(path)
    assert config.backends["rag"].type == "rag"
    assert config.defaults.backend is None


def test_load_yaml_config_applies_env_under_client_section(tmp_path):
    path = tmp_path / "chat.yaml"
    path.write_text(yaml.safe_dump({
        "client": {"request_timeout_seconds": 5},
        "backends": {"rag": {"base_url": "http://localhost:8000"}},
    }))
    env = {
        "AICHAT_IGNORE_UNKNOWN_EVENTS": "true",
        "AICHAT_REQUEST_TIMEOUT": "30",
        "AICHAT_EVENT_QUEUE_SIZE": "25",
    }
    with patch.dict(os.environ, env):
        config = load_yaml_config(path)

    assert config.client.ignore_unknown_stream_events is True
    assert config.client.event_queue_size == 25
    # The file wins over the environment.
    assert config.client.request_timeout_seconds == 5.0


def test_load_yaml_config_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    config = load_yaml_config(path)
    assert config.backends == {}
    assert config.client == ClientConfig()


def test_load_yaml_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")


def test_load_yaml_config_parse_error(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("backends: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path)
