"""Tests for RagBackend."""
from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from aichat.adapters import ConversationStateManager
from aichat.engine.errors import ServerError, ValidationError
from aichat.engine.providers import RAG_CONVERSATION_ID, RagBackend, SendOptions


def _build_app() -> tuple[web.Application, list[dict]]:
    app = web.Application()
    questions: list[dict] = []

    async def infer(request):
        body = await request.json()
        questions.append(body)
        if body["question"] == "fail":
            return web.json_response({"detail": "model offline"}, status=503)
        return web.json_response({
            "data": {"text": f"Answer to {body['question']}", "request_id": f"req-{len(questions)}"},
        })

    async def health(request):
        return web.json_response({"status": "ok"})

    async def metrics(request):
        return web.Response(text="requests_total 3\n")

    app.router.add_post("/infer", infer)
    app.router.add_get("/health", health)
    app.router.add_get("/metrics", metrics)
    return app, questions


@pytest.mark.asyncio
async def test_rag_has_no_server_side_conversations():
    backend = RagBackend("http://unused")

    result = await backend.init()
    conversation = await backend.create_new_conversation()
    history = await backend.get_conversation_history(conversation.id)

    assert result.conversations == []
    assert result.initial_conversation_id is None
    assert conversation.id == RAG_CONVERSATION_ID
    assert not conversation.is_pending
    assert history == []
    assert backend.get_default_streaming_handler() is None


@pytest.mark.asyncio
async def test_rag_send_posts_question_with_context():
    app, questions = _build_app()
    async with TestServer(app) as server:
        backend = RagBackend(str(server.make_url("/")), conversation_id="kb")
        try:
            response = await backend.send_message(
                "kb", "how do I reboot?",
                SendOptions(request_payload={"context": {"systeminfo": {"os": "linux"}}}),
            )
            health = await backend.health_check()
            metrics = await backend.get_service_status()
        finally:
            await backend.shutdown()

    assert questions == [{
        "question": "how do I reboot?",
        "skip_rag": False,
        "context": {"systeminfo": {"os": "linux"}},
    }]
    assert response.answer == "Answer to how do I reboot?"
    assert response.message_id == "req-1"
    assert response.conversation_id == "kb"
    assert response.additional_attributes["has_context"] is True
    assert health == {"status": "ok"}
    assert "requests_total" in metrics


@pytest.mark.asyncio
async def test_rag_server_error_propagates_through_manager():
    app, _ = _build_app()
    async with TestServer(app) as server:
        manager = ConversationStateManager(RagBackend(str(server.make_url("/"))))
        try:
            await manager.init()
            await manager.create_new_conversation()
            with pytest.raises(ServerError) as exc_info:
                await manager.send_message("fail")
            await manager.send_message("recover")
        finally:
            await manager.shutdown()

    assert exc_info.value.status == 503
    assert [m.answer for m in manager.get_active_conversation_messages()] == [
        "fail", "", "recover", "Answer to recover",
    ]


@pytest.mark.asyncio
async def test_manager_refuses_to_stream_over_rag():
    app, questions = _build_app()
    async with TestServer(app) as server:
        manager = ConversationStateManager(RagBackend(str(server.make_url("/"))))
        try:
            await manager.create_new_conversation()
            with pytest.raises(ValidationError):
                await manager.send_message("hi", SendOptions(stream=True))
        finally:
            await manager.shutdown()

    assert questions == []
