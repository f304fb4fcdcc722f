"""Ordered message storage with identifier remapping for in-flight turns."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .models import ConversationDetail, Message


class MessageStore:
    """Hold the visible messages of one conversation in display order.

    Messages are addressed by id. Streaming updates append to ``content`` or
    ``thinking``; a provisional id can be remapped once to the canonical id the
    backend assigns.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def snapshot(self) -> list[Message]:
        """Return copies so callers cannot mutate stored state."""
        return [message.copy() for message in self._messages]

    def clear(self) -> None:
        self._messages = []

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return -1

    def get(self, message_id: str) -> Message | None:
        index = self.index_of(message_id)
        return self._messages[index] if index >= 0 else None

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def remove(self, message_id: str) -> bool:
        index = self.index_of(message_id)
        if index < 0:
            return False
        del self._messages[index]
        return True

    def remap_id(self, old_id: str, new_id: str) -> bool:
        """Move a message to its canonical id; no-op when ``old_id`` is unknown."""
        message = self.get(old_id)
        if message is None:
            return False
        message.id = new_id
        return True

    def update(self, message_id: str, **changes: Any) -> bool:
        message = self.get(message_id)
        if message is None:
            return False
        for key, value in changes.items():
            setattr(message, key, value)
        return True

    def append_content(self, message_id: str, text: str) -> bool:
        message = self.get(message_id)
        if message is None:
            return False
        message.content += text
        message.loading = False
        message.status_text = None
        return True

    def append_thinking(self, message_id: str, text: str) -> bool:
        message = self.get(message_id)
        if message is None:
            return False
        message.thinking += text
        message.loading = False
        return True

    def replace_from_detail(self, detail: ConversationDetail) -> None:
        """Replace history from a backend conversation record."""
        self._messages = [
            Message(
                id=f"{detail.conversation_id}-{int(item.timestamp)}-{index}",
                role=item.role,
                content=item.content,
                timestamp=int(item.timestamp),
            )
            for index, item in enumerate(detail.messages)
        ]
