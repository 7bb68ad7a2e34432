"""
Chat message and chat session records.

Responsibilities:
- Hold the mutable message a turn is writing into
- Enforce append-only content while a turn is open
- Single audio reference field (last write wins)

Non-responsibilities:
- No persistence
- No publishing (see context.store)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Literal
from uuid import uuid4

from observability.logger import log_event


Role = Literal["user", "assistant"]


def _new_id() -> str:
    return uuid4().hex[:21]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass
class ChatMessage:
    """
    One message of a conversation.

    content only grows while a turn is open; use append().
    audio_url may be set once, later, by an upload follow-up.
    """

    role: Role
    content: str = ""
    id: str = field(default_factory=_new_id)
    date_ms: int = field(default_factory=_now_ms)
    audio_url: str | None = None
    streaming: bool = False
    is_error: bool = False

    def append(self, text: str) -> None:
        """Append text to content. Empty text is ignored."""
        if text:
            self.content += text

    def attach_audio_url(self, url: str) -> None:
        """Set the audio reference (last write wins)."""
        if self.audio_url is not None and self.audio_url != url:
            log_event({
                "event_type": "audio_url_overwritten",
                "message_id": self.id,
            })
        self.audio_url = url


def create_message(role: Role, content: str = "", *, streaming: bool = False) -> ChatMessage:
    """Build a new message with a fresh id."""
    return ChatMessage(role=role, content=content, streaming=streaming)


@dataclass
class ChatSession:
    """A conversation: ordered messages plus bookkeeping."""

    id: str = field(default_factory=_new_id)
    topic: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    last_update_ms: int = field(default_factory=_now_ms)

    def add_messages(self, *messages: ChatMessage) -> None:
        self.messages = self.messages + list(messages)

    def find_message(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def serialize(self) -> list[dict[str, str]]:
        """
        Role/content view used to build chat requests.

        [{"role": "user", "content": "..."}, ...]
        """
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages
            if not m.is_error
        ]
