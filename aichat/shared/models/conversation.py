"""Conversation and message models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union
import uuid

# Placeholder id for a conversation the backend has not confirmed yet.
TEMP_CONVERSATION_ID = "__temp_conversation__"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())


class MessageRole(Enum):
    USER = "user"
    BOT = "bot"


@dataclass(frozen=True)
class Confirmed:
    """A conversation id issued (or accepted) by the backend."""
    id: str


@dataclass(frozen=True)
class Pending:
    """A conversation waiting for its first exchange to get a real id."""
    sentinel: str = TEMP_CONVERSATION_ID

    @property
    def id(self) -> str:
        return self.sentinel


ConversationIdentity = Union[Confirmed, Pending]


@dataclass
class Message:
    role: MessageRole
    answer: str = ""
    id: str = field(default_factory=_gen_id)
    date: datetime = field(default_factory=_utcnow)
    additional_attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class Conversation:
    """An ordered sequence of messages with a stable identity.

    Message order is insertion order; it is never re-sorted by date.
    """

    identity: ConversationIdentity
    title: str = "New conversation"
    locked: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    messages: list[Message] = field(default_factory=list)

    @classmethod
    def confirmed(cls, conversation_id: str, **kwargs: Any) -> Conversation:
        return cls(identity=Confirmed(conversation_id), **kwargs)

    @classmethod
    def pending(
        cls, sentinel: str = TEMP_CONVERSATION_ID, **kwargs: Any,
    ) -> Conversation:
        return cls(identity=Pending(sentinel), **kwargs)

    @property
    def id(self) -> str:
        return self.identity.id

    @property
    def is_pending(self) -> bool:
        return isinstance(self.identity, Pending)

    def promote(self, conversation_id: str) -> None:
        """Replace a pending identity with a backend-confirmed one."""
        self.identity = Confirmed(conversation_id)


@dataclass
class MessageResponse:
    """A completed bot reply as reported by a backend client."""
    message_id: str
    answer: str
    conversation_id: str
    date: datetime = field(default_factory=_utcnow)
    additional_attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class InitLimitation:
    """Backend is usable but restricted (e.g. quota exhausted)."""
    reason: str
    detail: str | None = None


@dataclass
class InitResult:
    conversations: list[Conversation] = field(default_factory=list)
    initial_conversation_id: str | None = None
    limitation: InitLimitation | None = None
