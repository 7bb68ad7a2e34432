"""
Realtime turn multiplexer.

Fuses the sub-streams of one realtime turn into ChatMessage mutations:

    RealtimeResponse
      -> ResponseItem (assistant message)
           -> TextContent   text chunks            -> message.append
           -> AudioContent  transcript chunks      -> message.append
                            audio chunks           -> playback + buffer
      -> after the item: upload played audio       -> message.audio_url

    InputAudioItem
      -> transcription                             -> user message
      -> captured slice upload                     -> message.audio_url

Responsibilities:
- Create and publish each assistant message before any content is read
- Keep per-sequence order; transcript and audio interleave freely
- Only mark an audio content done when BOTH of its sequences drained
- Attach audio references asynchronously with a separate publish

Non-responsibilities:
- NO network or transport (lazy sequences are fed by adapters)
- NO lifecycle decisions (see session.realtime_session)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from audio.pcm import encode_wav
from context.messages import ChatMessage, ChatSession, create_message
from context.store import ConversationStore
from observability.logger import log_event, log_exception
from orchestrator.enums.turn import TurnPhase
from orchestrator.turns import (
    AudioContent,
    InputAudioItem,
    RealtimeResponse,
    ResponseItem,
    TextContent,
)

if TYPE_CHECKING:
    from adapters.audio.base import AudioHandler
    from adapters.upload.base import BlobUploader


class TurnMultiplexer:
    """
    Drives one session's realtime turns into the conversation store.

    One instance per realtime session. Turns are handled one at a time by
    the session's response listener.
    """

    def __init__(
        self,
        store: ConversationStore,
        session: ChatSession,
        uploader: BlobUploader | None = None,
        audio: AudioHandler | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._uploader = uploader
        self.audio = audio

        self._attachments: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Assistant turns
    # ------------------------------------------------------------------

    async def handle_response(self, response: RealtimeResponse) -> list[ChatMessage]:
        """
        Consume a whole response. Returns the assistant messages created.

        A failure in any nested sequence propagates after the content it
        belongs to has been drained as far as possible.
        """
        phase = TurnPhase.OPEN
        self._log_phase(response, None, phase)
        messages: list[ChatMessage] = []

        try:
            async for item in response:
                if item.type != "message" or item.role != "assistant":
                    log_event({
                        "event_type": "response_item_skipped",
                        "response_id": response.response_id,
                        "item_id": item.item_id,
                        "item_type": item.type,
                        "role": item.role,
                    })
                    continue

                message, item_phase = await self._handle_item(item)
                messages.append(message)

                if item_phase is TurnPhase.MIXED and phase is not TurnPhase.MIXED:
                    self._log_phase(response, phase, item_phase)
                    phase = item_phase
                elif item_phase is TurnPhase.TEXT_ONLY and phase is TurnPhase.OPEN:
                    self._log_phase(response, phase, item_phase)
                    phase = item_phase
        finally:
            self._log_phase(response, phase, TurnPhase.CLOSED)

        return messages

    async def _handle_item(self, item: ResponseItem) -> tuple[ChatMessage, TurnPhase]:
        message = create_message("assistant", streaming=True)

        # Visible before any content arrives
        self._store.update_target_session(
            self._session,
            lambda session: session.add_messages(message),
        )

        phase = TurnPhase.OPEN
        played: list[bytes] = []
        playback_started = False

        try:
            async for content in item:
                if isinstance(content, TextContent):
                    if phase is TurnPhase.OPEN:
                        phase = TurnPhase.TEXT_ONLY
                    async for text in content.text_chunks():
                        message.append(text)
                        self._store.publish(self._session)

                elif isinstance(content, AudioContent):
                    phase = TurnPhase.MIXED
                    if not playback_started and self.audio is not None:
                        self.audio.start_streaming_playback()
                    playback_started = True
                    await self._consume_audio(message, content, played)

                else:
                    raise TypeError(f"unknown content type: {type(content).__name__}")

                self._store.publish(self._session)
        finally:
            message.streaming = False

        if played:
            self._schedule_attachment(message, self._played_blob(played))

        self._store.publish(self._session)
        return message, phase

    async def _consume_audio(
        self,
        message: ChatMessage,
        content: AudioContent,
        played: list[bytes],
    ) -> None:
        """Drain transcript and audio concurrently; re-raise the first failure."""

        async def _transcript() -> None:
            async for text in content.transcript_chunks():
                message.append(text)
                self._store.publish(self._session)

        async def _audio() -> None:
            async for chunk in content.audio_chunks():
                if not chunk:
                    continue
                played.append(chunk)
                if self.audio is not None:
                    self.audio.play_chunk(chunk)

        results = await asyncio.gather(_transcript(), _audio(), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def _played_blob(self, played: list[bytes]) -> bytes | None:
        if self.audio is not None:
            return self.audio.save_play_file()
        return encode_wav(b"".join(played))

    # ------------------------------------------------------------------
    # User input audio
    # ------------------------------------------------------------------

    async def handle_input_audio(self, item: InputAudioItem) -> ChatMessage | None:
        """
        Turn committed user speech into a user message.

        Returns None when no transcription was produced. Streaming
        playback is always stopped afterwards.
        """
        try:
            await item.wait_for_completion()
            if not item.transcription:
                log_event({
                    "event_type": "input_audio_untranscribed",
                    "item_id": item.item_id,
                    "session_id": self._session.id,
                })
                return None

            message = create_message("user")
            message.append(item.transcription)
            self._store.update_target_session(
                self._session,
                lambda session: session.add_messages(message),
            )

            if self.audio is not None:
                blob = self.audio.save_record_file(item.audio_start_ms, item.audio_end_ms)
                self._schedule_attachment(message, blob)

            return message
        finally:
            if self.audio is not None:
                self.audio.stop_streaming_playback()

    # ------------------------------------------------------------------
    # Audio references
    # ------------------------------------------------------------------

    def _schedule_attachment(self, message: ChatMessage, blob: bytes | None) -> None:
        uploader = self._uploader
        if not blob or uploader is None:
            return
        task = asyncio.create_task(self._attach(uploader, message, blob))
        self._attachments.add(task)
        task.add_done_callback(self._attachments.discard)

    async def _attach(self, uploader: BlobUploader, message: ChatMessage, blob: bytes) -> None:
        try:
            url = await uploader.upload(blob)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception(
                "audio_upload_failed",
                exc,
                message_id=message.id,
                session_id=self._session.id,
            )
            return

        message.attach_audio_url(url)
        self._store.publish(self._session)
        log_event({
            "event_type": "audio_attached",
            "message_id": message.id,
            "session_id": self._session.id,
            "bytes": len(blob),
        })

    @property
    def pending_attachments(self) -> int:
        return len(self._attachments)

    async def drain_attachments(self) -> None:
        """Wait for every scheduled upload to finish."""
        while self._attachments:
            await asyncio.gather(*list(self._attachments), return_exceptions=True)

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def _log_phase(
        self,
        response: RealtimeResponse,
        from_phase: TurnPhase | None,
        to_phase: TurnPhase,
    ) -> None:
        log_event({
            "event_type": "turn_phase",
            "decision": "state_changed",
            "session_id": self._session.id,
            "response_id": response.response_id,
            "from_phase": from_phase.value if from_phase else None,
            "to_phase": to_phase.value,
        })
