"""Conversation history shared between turns."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

DEFAULT_CONTEXT_COUNT = 10


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """One message of a conversation.

    ``model_used``, ``was_cloud`` and ``success`` are only set on assistant
    replies.
    """

    role: MessageRole
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    model_used: str | None = None
    was_cloud: bool | None = None
    success: bool | None = None


class Conversation:
    """Ordered, thread-safe list of messages."""

    def __init__(self, context_count: int = DEFAULT_CONTEXT_COUNT) -> None:
        self.context_count = context_count
        self._messages: list[Message] = []
        self._lock = threading.Lock()

    @property
    def messages(self) -> list[Message]:
        with self._lock:
            return list(self._messages)

    def add_message(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)

    def add_user_message(self, content: str) -> Message:
        message = Message(role=MessageRole.USER, content=content)
        self.add_message(message)
        return message

    def add_assistant_message(
        self,
        content: str,
        model_used: str | None = None,
        was_cloud: bool | None = None,
        success: bool | None = None,
    ) -> Message:
        message = Message(
            role=MessageRole.ASSISTANT,
            content=content,
            model_used=model_used,
            was_cloud=was_cloud,
            success=success,
        )
        self.add_message(message)
        return message

    def recent_messages(self) -> list[Message]:
        """The last ``context_count`` messages, oldest first."""
        with self._lock:
            return list(self._messages[-self.context_count :])

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
