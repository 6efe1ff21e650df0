"""State manager notifications.

Events carry no payload: a subscriber is told *what* changed and reads
the new state back from the manager.
"""
from __future__ import annotations

from collections.abc import Callable
from enum import Enum
import logging

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class Events(str, Enum):
    MESSAGE = "message"
    ACTIVE_CONVERSATION = "active-conversation"
    IN_PROGRESS = "in-progress"
    CONVERSATIONS = "conversations"
    INITIALIZING_MESSAGES = "initializing-messages"
    INIT_LIMITATION = "init-limitation"
    STREAM_CHUNK = "stream-chunk"


class EventNotifier:
    """Synchronous subscription registry.

    Callbacks fire in subscription order inside the emitting call. The
    subscriber list is copied before each pass, so (un)subscribing from
    a callback only affects later emissions. A failing callback is
    logged and the remaining callbacks still run.
    """

    def __init__(self) -> None:
        self._subscribers: dict[Events, list[Callback]] = {e: [] for e in Events}

    def subscribe(self, event: Events, callback: Callback) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers[Events(event)].append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(event, callback)

        return unsubscribe

    def unsubscribe(self, event: Events, callback: Callback) -> None:
        subscribers = self._subscribers[Events(event)]
        if callback in subscribers:
            subscribers.remove(callback)

    def notify(self, event: Events) -> None:
        for callback in list(self._subscribers[event]):
            try:
                callback()
            except Exception:
                logger.exception("Subscriber for %s event failed", event.value)

    def subscriber_count(self, event: Events) -> int:
        return len(self._subscribers[Events(event)])

    def clear(self) -> None:
        for subscribers in self._subscribers.values():
            subscribers.clear()
