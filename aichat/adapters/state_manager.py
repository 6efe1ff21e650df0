"""Conversation state manager.

Owns the in-memory view of one backend's conversations: the
conversation map, the active conversation pointer, and the
``initializing``/``message_in_progress`` activity flags. UI bindings
issue commands (init, select, create, send), subscribe to payload-free
notifications and read the state back through the query methods.

Backend clients never see this state. The manager hands them a
conversation id and folds what they return (a full reply or a lazy
stream of events) into the placeholder bot message of the current turn.

Turn layout, per send_message() call:

    user message ──► IN_PROGRESS ──► bot placeholder ──► backend I/O
                                                            │
          MESSAGE ◄── IN_PROGRESS ◄── fill / promote ◄──────┘

The user message and the bot placeholder are appended with no await in
between, so overlapping sends on one conversation keep their turns
paired; every turn folds into its own placeholder object.
"""
from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
import logging

from aichat.engine.errors import (
    InitializationError,
    NoActiveConversationError,
    ValidationError,
)
from aichat.engine.providers.base import BackendClient, SendOptions
from aichat.engine.stream_events import StreamEvent
from aichat.engine.streaming import StreamFold
from aichat.shared.models import (
    Conversation,
    InitLimitation,
    Message,
    MessageResponse,
    MessageRole,
)

from .events import Callback, EventNotifier, Events

logger = logging.getLogger(__name__)

LOCKED_CONVERSATION_ANSWER = "This conversation is locked and cannot accept new messages."


@dataclass
class ManagerState:
    """Point-in-time snapshot returned by get_state()."""
    conversations: dict[str, Conversation]
    active_conversation_id: str | None
    initializing: bool
    initialized: bool
    message_in_progress: bool
    init_limitation: InitLimitation | None


class ConversationStateManager:
    """Backend-agnostic conversation state with change notifications.

    All methods must be called from the event loop that runs the
    backend client. Notifications are delivered synchronously, in
    subscription order, from inside the call that caused them.
    """

    def __init__(
        self,
        client: BackendClient,
        *,
        stream_by_default: bool = False,
    ) -> None:
        self._client = client
        self._stream_by_default = stream_by_default
        self._conversations: dict[str, Conversation] = {}
        self._active_id: str | None = None
        self._initializing = 0
        self._in_progress = 0
        self._initialized = False
        self._init_task: asyncio.Future[None] | None = None
        self._init_limitation: InitLimitation | None = None
        self._hydrated: set[str] = set()
        self._stream_chunks: dict[str, StreamFold] = {}
        self._notifier = EventNotifier()

    # ── Subscriptions ──────────────────────────────────────────

    def subscribe(self, event: Events, callback: Callback):
        """Subscribe to *event*. Returns a function that unsubscribes."""
        return self._notifier.subscribe(event, callback)

    def unsubscribe(self, event: Events, callback: Callback) -> None:
        self._notifier.unsubscribe(event, callback)

    def _notify(self, event: Events) -> None:
        self._notifier.notify(event)

    # ── Activity flags ─────────────────────────────────────────

    def _begin_initializing(self) -> None:
        self._initializing += 1
        self._notify(Events.INITIALIZING_MESSAGES)

    def _end_initializing(self) -> None:
        self._initializing = max(0, self._initializing - 1)
        self._notify(Events.INITIALIZING_MESSAGES)

    def _begin_message(self) -> None:
        self._in_progress += 1
        self._notify(Events.IN_PROGRESS)

    def _end_message(self) -> None:
        self._in_progress = max(0, self._in_progress - 1)
        self._notify(Events.IN_PROGRESS)

    # ── Initialization ─────────────────────────────────────────

    async def init(self) -> None:
        """Load the backend's conversations and activate its initial one.

        Idempotent once successful. Concurrent callers share one
        backend init; after a failure the next call retries.
        """
        if self._initialized:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._run_init())
        await asyncio.shield(self._init_task)

    async def _run_init(self) -> None:
        self._begin_initializing()
        try:
            try:
                result = await self._client.init()
            except InitializationError:
                raise
            except Exception as exc:
                raise InitializationError(
                    str(exc) or type(exc).__name__,
                    status=getattr(exc, "status", None),
                ) from exc

            for conversation in result.conversations:
                self._conversations.setdefault(conversation.id, conversation)
            self._notify(Events.CONVERSATIONS)

            if result.limitation is not None:
                self._init_limitation = result.limitation
                logger.warning(
                    "Backend %s initialized with limitation: %s",
                    self._client.name, result.limitation.reason,
                )
                self._notify(Events.INIT_LIMITATION)

            if result.initial_conversation_id:
                await self.set_active_conversation_id(result.initial_conversation_id)
            # Set last: concurrent init() callers wait on the task until here.
            self._initialized = True
            logger.info(
                "State manager initialized: backend=%s conversations=%d initial=%s",
                self._client.name, len(result.conversations),
                result.initial_conversation_id,
            )
        except BaseException:
            self._init_task = None
            raise
        finally:
            self._end_initializing()

    def is_initialized(self) -> bool:
        return self._initialized

    def get_init_limitation(self) -> InitLimitation | None:
        return self._init_limitation

    # ── Conversation selection ─────────────────────────────────

    async def set_active_conversation_id(self, conversation_id: str) -> None:
        """Point the manager at *conversation_id*, loading its history.

        Unknown ids get an empty conversation record first so the switch
        is visible before the history arrives.
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            if self._client.is_temporary_id(conversation_id):
                conversation = Conversation.pending(conversation_id)
            else:
                conversation = Conversation.confirmed(conversation_id)
            self._conversations[conversation_id] = conversation
            self._notify(Events.CONVERSATIONS)

        self._active_id = conversation_id
        self._notify(Events.ACTIVE_CONVERSATION)

        if not conversation.is_pending and conversation.id not in self._hydrated:
            await self._hydrate(conversation)

    async def _hydrate(self, conversation: Conversation) -> None:
        conversation_id = conversation.id
        self._hydrated.add(conversation_id)
        self._begin_initializing()
        try:
            history = await self._client.get_conversation_history(conversation_id)
        except Exception:
            # Left unhydrated so the next activation tries again.
            self._hydrated.discard(conversation_id)
            logger.exception("Failed to load history for conversation %s", conversation_id)
        else:
            seen = {(m.id, m.role) for m in conversation.messages}
            fetched = [m for m in history or [] if (m.id, m.role) not in seen]
            conversation.messages[:0] = fetched
            logger.debug(
                "Hydrated conversation %s with %d message(s)",
                conversation_id, len(fetched),
            )
        finally:
            self._end_initializing()
        self._notify(Events.MESSAGE)

    # ── Conversation creation ──────────────────────────────────

    async def create_new_conversation(self) -> Conversation:
        """Create (or reuse) a conversation and make it active.

        A pending conversation that has not exchanged a message yet is
        reused instead of adding another one.
        """
        conversation = await self._client.create_new_conversation()
        if conversation.is_pending:
            pending = next(
                (c for c in self._conversations.values() if c.is_pending), None,
            )
            if pending is not None:
                conversation = pending

        existing = self._conversations.get(conversation.id)
        if existing is not None:
            conversation = existing
        else:
            self._conversations[conversation.id] = conversation
            if not conversation.is_pending:
                # Freshly created server-side: nothing to load.
                self._hydrated.add(conversation.id)
            logger.info(
                "Created conversation %s (pending=%s)",
                conversation.id, conversation.is_pending,
            )
        self._notify(Events.CONVERSATIONS)
        await self.set_active_conversation_id(conversation.id)
        return conversation

    # ── Sending ────────────────────────────────────────────────

    async def send_message(
        self,
        content: str,
        options: SendOptions | None = None,
    ) -> MessageResponse | None:
        """Send one turn on the active conversation.

        Returns None (and changes nothing) for blank content, and None
        for a locked conversation. Backend errors propagate after the
        flags are restored; the turn's bot message is then left empty.
        """
        if not content or not content.strip():
            logger.debug("Ignoring blank message")
            return None
        if self._active_id is None:
            raise NoActiveConversationError()
        conversation = self._conversations[self._active_id]
        if options is None:
            options = SendOptions(stream=self._stream_by_default)

        conversation.messages.append(Message(role=MessageRole.USER, answer=content))
        self._begin_message()
        bot_message = Message(role=MessageRole.BOT)
        conversation.messages.append(bot_message)

        try:
            if conversation.locked:
                logger.info("Conversation %s is locked; not sending", conversation.id)
                bot_message.answer = LOCKED_CONVERSATION_ANSWER
                return None
            if options.stream:
                return await self._send_streaming(conversation, bot_message, content, options)
            return await self._send_once(conversation, bot_message, content, options)
        finally:
            self._end_message()
            self._notify(Events.MESSAGE)

    async def _send_once(
        self,
        conversation: Conversation,
        bot_message: Message,
        content: str,
        options: SendOptions,
    ) -> MessageResponse:
        response = await self._client.send_message(conversation.id, content, options)
        if response is None:
            return response
        self._fill_bot_message(bot_message, response)
        self._maybe_promote(conversation, response.conversation_id)
        return response

    async def _send_streaming(
        self,
        conversation: Conversation,
        bot_message: Message,
        content: str,
        options: SendOptions,
    ) -> MessageResponse:
        handler = options.handler or self._client.get_default_streaming_handler()
        if handler is None:
            raise ValidationError.from_message(
                "Streaming mode requires a streaming handler to be configured",
                loc=["options", "stream"],
            )

        fold = StreamFold()
        caller_after_chunk = options.after_chunk
        self._stream_chunks.pop(conversation.id, None)

        def after_chunk(event: StreamEvent) -> None:
            applied = fold.apply(event)
            if caller_after_chunk is not None:
                caller_after_chunk(event)
            if not applied:
                return
            bot_message.answer = fold.content
            bot_message.additional_attributes = dict(fold.attributes)
            self._stream_chunks[conversation.id] = fold
            self._notify(Events.MESSAGE)
            self._notify(Events.STREAM_CHUNK)

        call_options = dataclasses.replace(
            options, handler=handler, after_chunk=after_chunk,
        )
        try:
            response = await self._client.send_message(conversation.id, content, call_options)
        except BaseException:
            # A failed turn keeps an empty reply, partial tokens included.
            bot_message.answer = ""
            raise
        if response is None:
            return response
        self._fill_bot_message(bot_message, response)
        confirmed_id = response.conversation_id
        if not confirmed_id or self._is_placeholder_id(conversation, confirmed_id):
            confirmed_id = fold.conversation_id
        self._maybe_promote(conversation, confirmed_id)
        return response

    @staticmethod
    def _fill_bot_message(bot_message: Message, response: MessageResponse) -> None:
        bot_message.answer = response.answer
        bot_message.date = response.date
        if response.message_id:
            bot_message.id = response.message_id
        bot_message.additional_attributes = {
            **bot_message.additional_attributes,
            **response.additional_attributes,
        }

    # ── Promotion ──────────────────────────────────────────────

    def _is_placeholder_id(self, conversation: Conversation, candidate: str) -> bool:
        return candidate == conversation.id or self._client.is_temporary_id(candidate)

    def _maybe_promote(self, conversation: Conversation, confirmed_id: str | None) -> None:
        """Rekey a pending conversation under its backend-confirmed id."""
        if not conversation.is_pending:
            return
        if not confirmed_id or self._is_placeholder_id(conversation, confirmed_id):
            return

        old_id = conversation.id
        conversation.promote(confirmed_id)
        if self._conversations.get(old_id) is conversation:
            del self._conversations[old_id]
        if confirmed_id in self._conversations:
            logger.warning("Promoted conversation %s replaces an existing record", confirmed_id)
        self._conversations[confirmed_id] = conversation
        self._hydrated.add(confirmed_id)
        if old_id in self._stream_chunks:
            self._stream_chunks[confirmed_id] = self._stream_chunks.pop(old_id)
        logger.info("Conversation %s promoted to %s", old_id, confirmed_id)

        self._notify(Events.CONVERSATIONS)
        if self._active_id == old_id:
            self._active_id = confirmed_id
            self._notify(Events.ACTIVE_CONVERSATION)

    # ── Queries ────────────────────────────────────────────────

    def get_client(self) -> BackendClient:
        return self._client

    def get_conversations(self) -> list[Conversation]:
        return list(self._conversations.values())

    def get_active_conversation_id(self) -> str | None:
        return self._active_id

    def get_active_conversation(self) -> Conversation | None:
        if self._active_id is None:
            return None
        return self._conversations.get(self._active_id)

    def get_active_conversation_messages(self) -> list[Message]:
        conversation = self.get_active_conversation()
        if conversation is None:
            return []
        return list(conversation.messages)

    def get_active_conversation_stream_chunk(self) -> StreamFold | None:
        """Latest fold of the active conversation's current or last stream."""
        if self._active_id is None:
            return None
        return self._stream_chunks.get(self._active_id)

    def is_initializing(self) -> bool:
        return self._initializing > 0

    def get_message_in_progress(self) -> bool:
        return self._in_progress > 0

    def get_state(self) -> ManagerState:
        return ManagerState(
            conversations=dict(self._conversations),
            active_conversation_id=self._active_id,
            initializing=self.is_initializing(),
            initialized=self._initialized,
            message_in_progress=self.get_message_in_progress(),
            init_limitation=self._init_limitation,
        )

    async def shutdown(self) -> None:
        """Release the backend client's transport resources."""
        await self._client.shutdown()
