"""
In-memory conversation store.

Responsibilities:
- Own the known chat sessions
- Apply mutations through update_target_session() and notify listeners

Non-responsibilities:
- No durable persistence (a listener may provide it)
- No knowledge of turns, streams or cancellation
"""

from __future__ import annotations

import time
from typing import Callable

from context.messages import ChatSession
from observability.logger import log_exception


Mutator = Callable[[ChatSession], None]
Listener = Callable[[ChatSession], None]


class ConversationStore:
    """
    Mutable store of chat sessions.

    Every mutation the streaming core wants to publish goes through
    update_target_session(); listeners (UI push, persistence) are
    notified after the mutator ran.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ChatSession] = {}
        self._listeners: list[Listener] = []
        self._revision = 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def new_session(self, topic: str = "") -> ChatSession:
        session = ChatSession(topic=topic)
        self._sessions[session.id] = session
        return session

    def get_or_create(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = ChatSession(id=session_id)
            self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> ChatSession | None:
        return self._sessions.get(session_id)

    @property
    def revision(self) -> int:
        """Number of published mutations."""
        return self._revision

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def update_target_session(self, session: ChatSession, mutator: Mutator) -> None:
        """
        Apply `mutator` to the stored instance of `session` and notify.

        The target is looked up by id, so a turn keeps writing into its
        own conversation even if another one became current meanwhile.
        """
        target = self._sessions.get(session.id)
        if target is None:
            target = session
            self._sessions[session.id] = session

        mutator(target)
        target.last_update_ms = time.time_ns() // 1_000_000
        self._revision += 1

        for listener in list(self._listeners):
            try:
                listener(target)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_exception("store_listener_failed", exc, session_id=target.id)

    def publish(self, session: ChatSession) -> None:
        """Publish in-place changes to messages already in the session."""
        self.update_target_session(session, _touch)


def _touch(session: ChatSession) -> None:
    # Rebinding the list marks the session as changed for listeners that
    # compare identities
    session.messages = list(session.messages)
