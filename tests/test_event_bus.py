"""Tests for EventBus."""
from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from aichat.adapters import ConversationStateManager, EventBus, Events


def _manager() -> ConversationStateManager:
    client = MagicMock()
    client.is_temporary_id.return_value = False
    return ConversationStateManager(client)


@pytest.mark.asyncio
async def test_bus_queues_manager_notifications():
    manager = _manager()
    bus = EventBus(manager, events=[Events.CONVERSATIONS, Events.ACTIVE_CONVERSATION])

    manager._notify(Events.CONVERSATIONS)
    manager._notify(Events.MESSAGE)
    manager._notify(Events.ACTIVE_CONVERSATION)

    received = []
    async for event in bus.consume():
        received.append(event)
        if len(received) == 2:
            bus.close()
    assert received == [Events.CONVERSATIONS, Events.ACTIVE_CONVERSATION]


@pytest.mark.asyncio
async def test_close_unsubscribes_from_manager():
    manager = _manager()
    bus = EventBus(manager)
    bus.close()

    manager._notify(Events.MESSAGE)

    assert bus.pending() == 0


@pytest.mark.asyncio
async def test_full_queue_drops_and_logs(caplog):
    manager = _manager()
    bus = EventBus(manager, events=[Events.MESSAGE], maxsize=1)

    manager._notify(Events.MESSAGE)
    manager._notify(Events.MESSAGE)

    assert bus.pending() == 1
    assert "queue full" in caplog.text
    bus.reset()
    assert bus.pending() == 0


@pytest.mark.asyncio
async def test_consume_waits_for_late_events():
    manager = _manager()
    bus = EventBus(manager, events=[Events.IN_PROGRESS])

    async def first_event():
        async for event in bus.consume():
            bus.close()
            return event

    task = asyncio.create_task(first_event())
    await asyncio.sleep(0.01)
    manager._notify(Events.IN_PROGRESS)
    assert await asyncio.wait_for(task, timeout=2) == Events.IN_PROGRESS
