"""
Text chat turns.

Responsibilities:
- Append the user message and a streaming assistant placeholder
- Register one cancellation handle per (conversation, assistant message)
- Stream adapter output into the assistant message
- Remove the registry entry on every terminal path

Non-responsibilities:
- No vendor request shape (see adapters.llm)
- No realtime audio (see session.realtime_session)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import httpx

from adapters.llm.base import ChatOptions, LLMAdapter
from config import ModelConfig
from context.messages import ChatMessage, ChatSession, create_message
from context.store import ConversationStore
from observability.logger import log_event
from orchestrator.cancellation import CancellationHandle, CancellationKey, CancellationRegistry
from orchestrator.enums.abort import AbortReason
from orchestrator.errors import ContentBlockedError, TransportError


@dataclass(frozen=True)
class PendingChat:
    """An opened, registered text turn that has not run yet."""
    session: ChatSession
    user: ChatMessage
    bot: ChatMessage
    key: CancellationKey
    handle: CancellationHandle
    history: list[dict[str, str]]


class ChatController:
    """Drives text chat turns through an LLMAdapter."""

    def __init__(
        self,
        store: ConversationStore,
        registry: CancellationRegistry,
        adapter: LLMAdapter,
        model_config: ModelConfig | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._adapter = adapter
        self._model_config = model_config or ModelConfig()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def open_turn(self, session: ChatSession, text: str) -> PendingChat:
        """Add both messages to the session and register the handle."""
        history = session.serialize() + [{"role": "user", "content": text}]

        user = create_message("user", text)
        bot = create_message("assistant", streaming=True)
        self._store.update_target_session(
            session,
            lambda target: target.add_messages(user, bot),
        )

        handle = CancellationHandle()
        key = self._registry.add(self._registry.key(session.id, bot.id), handle)
        return PendingChat(
            session=session,
            user=user,
            bot=bot,
            key=key,
            handle=handle,
            history=history,
        )

    async def run_turn(
        self,
        pending: PendingChat,
        *,
        on_update: Callable[[str], None] | None = None,
    ) -> ChatMessage:
        """Run an opened turn to a terminal state. Never raises for request failures."""
        session, bot = pending.session, pending.bot
        streamed = False

        def _on_update(delta: str) -> None:
            nonlocal streamed
            streamed = True
            bot.append(delta)
            self._store.publish(session)
            if on_update is not None:
                on_update(delta)

        def _on_finish(text: str, response: httpx.Response) -> None:
            if not streamed:
                bot.append(text)
            log_event({
                "event_type": "chat_finished",
                "conversation_id": session.id,
                "message_id": bot.id,
                "status_code": response.status_code,
                "chars": len(bot.content),
            })

        def _on_error(exc: Exception) -> None:
            cancelled = (
                isinstance(exc, TransportError) and exc.reason is AbortReason.CANCELLED
            )
            if not cancelled:
                bot.is_error = True
                bot.append(("\n\n" if bot.content else "") + str(exc))
            log_event({
                "event_type": "chat_failed",
                "decision": "cancelled" if cancelled else "error",
                "conversation_id": session.id,
                "message_id": bot.id,
                "error_type": type(exc).__name__,
                "blocked": isinstance(exc, ContentBlockedError),
            })
            self._store.publish(session)

        options = ChatOptions(
            messages=pending.history,
            config=self._model_config,
            on_update=_on_update,
            on_finish=_on_finish,
            on_error=_on_error,
            log_fields={"conversation_id": session.id, "message_id": bot.id},
        )

        try:
            await self._adapter.chat(options, pending.handle)
        finally:
            bot.streaming = False
            self._registry.remove(pending.key, pending.handle)
            self._store.publish(session)

        return bot

    async def send_message(
        self,
        session: ChatSession,
        text: str,
        *,
        on_update: Callable[[str], None] | None = None,
    ) -> ChatMessage:
        """Open and run one turn. Returns the assistant message."""
        return await self.run_turn(self.open_turn(session, text), on_update=on_update)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def stop(self, conversation_id: str, message_id: str) -> None:
        self._registry.cancel(self._registry.key(conversation_id, message_id))

    def stop_all(self) -> None:
        self._registry.cancel_all()

    def has_pending(self) -> bool:
        return self._registry.has_pending()
