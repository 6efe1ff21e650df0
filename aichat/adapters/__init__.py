"""Adapters package - state management between backends and UI bindings.

Contains the conversation state manager, its notification events and
the async event bus that UI loops consume.
"""
from __future__ import annotations

__all__ = [
    "ConversationStateManager",
    "ManagerState",
    "EventBus",
    "EventNotifier",
    "Events",
]

from aichat.adapters.events import EventNotifier, Events
from aichat.adapters.state_manager import ConversationStateManager, ManagerState
from aichat.adapters.event_bus import EventBus
