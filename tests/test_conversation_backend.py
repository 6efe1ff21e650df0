"""Tests for ConversationBackend and the shared HTTP transport."""
from __future__ import annotations

import asyncio
import json
import os
from unittest.mock import patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from aichat.adapters import ConversationStateManager
from aichat.engine.errors import (
    AIClientError,
    InitializationError,
    RequestCancelledError,
    ServerError,
    TransportError,
    ValidationError,
)
from aichat.engine.providers import ConversationBackend, SendOptions
from aichat.shared.models import MessageRole

_API = "/api/ask/v1"


def _build_app(
    *, quota_used: int = 0, history_status: int = 200,
) -> tuple[web.Application, dict]:
    app = web.Application()
    state: dict = {"requests": [], "release": asyncio.Event()}

    async def user_history(request):
        state["requests"].append(("history", {
            "authorization": request.headers.get("Authorization"),
            "x-client": request.headers.get("X-Client"),
        }))
        if history_status != 200:
            return web.json_response({"detail": "denied"}, status=history_status)
        return web.json_response([
            {"conversation_id": "c1", "title": "First",
             "created_at": "2024-05-01T10:00:00Z", "is_latest": False},
            {"conversation_id": "c2", "title": "Second",
             "created_at": "2024-05-02T10:00:00Z", "is_latest": True},
        ])

    async def quota(request):
        return web.json_response({"enabled": True, "quota": {"limit": 5, "used": quota_used}})

    async def create(request):
        return web.json_response({"conversation_id": "new-1", "quota": None})

    async def message(request):
        body = await request.json()
        conversation_id = request.match_info["id"]
        state["requests"].append(("message", body))
        text = body["input"]
        if text == "invalid":
            return web.json_response(
                {"detail": [{"loc": ["body", "input"], "msg": "too short", "type": "value_error"}]},
                status=422,
            )
        if text == "crash":
            return web.json_response({"detail": "exploded"}, status=500)
        if text == "slow":
            await state["release"].wait()
        if body.get("stream"):
            resp = web.StreamResponse(headers={"Content-Type": "application/x-ndjson"})
            await resp.prepare(request)
            for chunk in (
                {"conversation_id": conversation_id, "message_id": "m1", "answer": "Hello"},
                {"conversation_id": conversation_id, "message_id": "m1", "answer": " there"},
                {"conversation_id": conversation_id, "message_id": "m1", "answer": "",
                 "sources": [{"link": "https://kb/1", "title": "KB 1"}], "end_of_stream": True},
            ):
                await resp.write(json.dumps(chunk).encode() + b"\n")
            await resp.write_eof()
            return resp
        return web.json_response({
            "conversation_id": conversation_id,
            "message_id": "m1",
            "answer": f"You said: {text}",
            "received_at": "2024-05-03T10:00:00Z",
            "sources": [{"link": "https://kb/1", "title": "KB 1"}],
        })

    async def conversation_history(request):
        conversation_id = request.match_info["id"]
        return web.json_response({
            "conversation_id": conversation_id,
            "messages": [{
                "message_id": "h1",
                "input": "old question",
                "answer": "old answer",
                "received_at": "2024-05-02T10:00:00Z",
                "sources": [],
            }],
        })

    async def health(request):
        return web.json_response({"status": "healthy"})

    async def status(request):
        return web.json_response({"ifd_services": {"ok": True}})

    app.router.add_get(f"{_API}/user/current/history", user_history)
    app.router.add_get(f"{_API}/quota/conversations", quota)
    app.router.add_post(f"{_API}/conversation", create)
    app.router.add_post(f"{_API}/conversation/{{id}}/message", message)
    app.router.add_get(f"{_API}/conversation/{{id}}/history", conversation_history)
    app.router.add_get(f"{_API}/health", health)
    app.router.add_get(f"{_API}/status", status)
    return app, state


def _base_url(server: TestServer) -> str:
    return str(server.make_url("/"))


@pytest.mark.asyncio
async def test_init_lists_conversations_and_latest():
    async with TestServer(_build_app()[0]) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            result = await backend.init()
        finally:
            await backend.shutdown()

    assert [c.id for c in result.conversations] == ["c1", "c2"]
    assert result.conversations[0].title == "First"
    assert result.conversations[1].created_at.year == 2024
    assert result.initial_conversation_id == "c2"
    assert result.limitation is None


@pytest.mark.asyncio
async def test_init_reports_quota_limitation():
    async with TestServer(_build_app(quota_used=5)[0]) as server:
        backend = ConversationBackend(_base_url(server), check_quota=True)
        try:
            result = await backend.init()
        finally:
            await backend.shutdown()

    assert result.limitation is not None
    assert result.limitation.reason == "quota-breached"


@pytest.mark.asyncio
async def test_init_failure_raises_initialization_error():
    async with TestServer(_build_app(history_status=403)[0]) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            with pytest.raises(InitializationError) as exc_info:
                await backend.init()
        finally:
            await backend.shutdown()

    assert exc_info.value.status == 403
    assert "denied" in str(exc_info.value)


@pytest.mark.asyncio
async def test_send_message_and_history():
    app, state = _build_app()
    async with TestServer(app) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            created = await backend.create_new_conversation()
            response = await backend.send_message(created.id, "ping")
            history = await backend.get_conversation_history("c1")
            health = await backend.health_check()
            status = await backend.get_service_status()
        finally:
            await backend.shutdown()

    assert created.id == "new-1"
    assert response.answer == "You said: ping"
    assert response.message_id == "m1"
    assert response.conversation_id == "new-1"
    assert response.additional_attributes["sources"][0]["title"] == "KB 1"
    sent = state["requests"][-1][1]
    assert sent["input"] == "ping"
    assert sent["stream"] is False
    assert "received_at" in sent

    assert [(m.role, m.answer) for m in history] == [
        (MessageRole.USER, "old question"),
        (MessageRole.BOT, "old answer"),
    ]
    assert health == {"status": "healthy"}
    assert status == {"ifd_services": {"ok": True}}


@pytest.mark.asyncio
async def test_streaming_send_uses_ndjson_chunks():
    seen: list[str] = []
    async with TestServer(_build_app()[0]) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            response = await backend.send_message(
                "c1", "stream me",
                SendOptions(stream=True, after_chunk=lambda e: seen.append(e.event_type)),
            )
        finally:
            await backend.shutdown()

    assert response.answer == "Hello there"
    assert response.message_id == "m1"
    assert response.additional_attributes["referenced_documents"] == [
        {"doc_url": "https://kb/1", "doc_title": "KB 1"},
    ]
    assert seen == ["start", "token", "token", "turn_complete", "end"]


@pytest.mark.asyncio
async def test_validation_and_server_errors_are_mapped():
    async with TestServer(_build_app()[0]) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            with pytest.raises(ValidationError) as validation:
                await backend.send_message("c1", "invalid")
            with pytest.raises(ServerError) as server_error:
                await backend.send_message("c1", "crash")
            with pytest.raises(AIClientError) as not_found:
                await backend._request("GET", "/nowhere")
        finally:
            await backend.shutdown()

    assert validation.value.validation_errors[0]["msg"] == "too short"
    assert server_error.value.status == 500
    assert server_error.value.message == "exploded"
    assert not_found.value.status == 404


@pytest.mark.asyncio
async def test_empty_response_bodies_raise_transport_error():
    app = web.Application()

    async def empty(request):
        return web.Response(status=200)

    app.router.add_post(f"{_API}/conversation", empty)
    app.router.add_post(f"{_API}/conversation/{{id}}/message", empty)

    async with TestServer(app) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            with pytest.raises(TransportError) as create_error:
                await backend.create_new_conversation()
            response = await backend.send_message("c1", "ping")
        finally:
            await backend.shutdown()

    assert "conversation_id" in create_error.value.message
    assert response.answer == ""
    assert response.conversation_id == "c1"


@pytest.mark.asyncio
async def test_non_object_reply_raises_transport_error():
    app = web.Application()

    async def listing(request):
        return web.json_response(["not", "an", "object"])

    app.router.add_post(f"{_API}/conversation/{{id}}/message", listing)

    async with TestServer(app) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            with pytest.raises(TransportError):
                await backend.send_message("c1", "ping")
        finally:
            await backend.shutdown()


@pytest.mark.asyncio
async def test_bearer_token_and_custom_headers_are_sent():
    app, state = _build_app()
    async with TestServer(app) as server:
        backend = ConversationBackend(
            _base_url(server),
            headers={"X-Client": "aichat"},
            token_env="AICHAT_TEST_TOKEN",
        )
        try:
            with patch.dict(os.environ, {"AICHAT_TEST_TOKEN": "s3cret"}):
                await backend.init()
        finally:
            await backend.shutdown()

    headers = state["requests"][0][1]
    assert headers["authorization"] == "Bearer s3cret"
    assert headers["x-client"] == "aichat"


@pytest.mark.asyncio
async def test_unreachable_server_raises_transport_error():
    server = TestServer(web.Application())
    await server.start_server()
    url = _base_url(server)
    await server.close()

    backend = ConversationBackend(url)
    try:
        with pytest.raises(TransportError) as exc_info:
            await backend.health_check()
    finally:
        await backend.shutdown()
    assert exc_info.value.status == 0


@pytest.mark.asyncio
async def test_signal_set_before_send_aborts_without_request():
    app, state = _build_app()
    signal = asyncio.Event()
    signal.set()
    async with TestServer(app) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            with pytest.raises(RequestCancelledError):
                await backend.send_message("c1", "ping", SendOptions(signal=signal))
        finally:
            await backend.shutdown()

    assert state["requests"] == []


@pytest.mark.asyncio
async def test_signal_aborts_inflight_request():
    app, state = _build_app()
    signal = asyncio.Event()
    async with TestServer(app) as server:
        backend = ConversationBackend(_base_url(server))
        try:
            asyncio.get_running_loop().call_later(0.05, signal.set)
            with pytest.raises(RequestCancelledError):
                await backend.send_message("c1", "slow", SendOptions(signal=signal))
        finally:
            state["release"].set()
            await backend.shutdown()


@pytest.mark.asyncio
async def test_manager_round_trip_over_http():
    async with TestServer(_build_app()[0]) as server:
        backend = ConversationBackend(_base_url(server))
        manager = ConversationStateManager(backend)
        try:
            await manager.init()
            assert manager.get_active_conversation_id() == "c2"
            await manager.send_message("hi", SendOptions(stream=True))
        finally:
            await manager.shutdown()

    messages = manager.get_active_conversation_messages()
    assert [m.answer for m in messages] == [
        "old question", "old answer", "hi", "Hello there",
    ]
