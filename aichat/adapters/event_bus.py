"""Async event bus bridging state manager notifications to async consumers.

Manager notifications are synchronous callbacks. The EventBus queues
them so an async UI loop can ``async for`` over them and re-read the
manager state after each one.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from typing import TYPE_CHECKING

from .events import Events

if TYPE_CHECKING:
    from .state_manager import ConversationStateManager

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue fed by manager subscriptions."""

    def __init__(
        self,
        manager: ConversationStateManager,
        events: Iterable[Events] | None = None,
        maxsize: int = 1000,
    ) -> None:
        self._queue: asyncio.Queue[Events] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._unsubscribers: list[Callable[[], None]] = [
            manager.subscribe(event, self._make_callback(event))
            for event in (events if events is not None else Events)
        ]

    def _make_callback(self, event: Events) -> Callable[[], None]:
        def _callback() -> None:
            if self._closed:
                return
            try:
                self._queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.error(
                    "EventBus queue full, dropping: %s (queue size: %d)",
                    event.value,
                    self._queue.qsize(),
                )
        return _callback

    def pending(self) -> int:
        return self._queue.qsize()

    async def consume(self) -> AsyncIterator[Events]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(
                    self._queue.get(), timeout=0.5
                )
                yield event
            except asyncio.TimeoutError:
                continue

    def close(self) -> None:
        """Unsubscribe from the manager and stop the consumer loop."""
        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def reset(self) -> None:
        """Drain any queued events."""
        while not self._queue.empty():
            self._queue.get_nowait()
