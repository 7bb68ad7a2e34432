"""
Realtime voice session.

Owns the lifecycle of one realtime client:

    IDLE -> CONNECTING -> CONNECTED <-> RECORDING -> DISCONNECTING -> IDLE

Responsibilities:
- Gate every operation on the lifecycle (orchestrator.lifecycle)
- Own the client, the audio collaborator and the response listener
- Feed listener events into the TurnMultiplexer
- Expose a human-readable `status` line

Non-responsibilities:
- No event demultiplexing (see adapters.realtime)
- No message mutation (see orchestrator.multiplexer)
- No reconnect or retry
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Callable

from adapters.audio.base import AudioHandler
from adapters.audio.buffered import BufferedAudioHandler
from adapters.realtime.base import RealtimeClient
from adapters.realtime.openai_realtime import OpenAIRealtimeClient
from adapters.upload.base import BlobUploader
from config import RealtimeConfig
from context.messages import ChatMessage, ChatSession
from context.store import ConversationStore
from observability.logger import log_event, log_exception
from orchestrator.enums.state import SessionState
from orchestrator.errors import LifecycleError
from orchestrator.lifecycle import LifecycleAction, is_allowed, transition
from orchestrator.multiplexer import TurnMultiplexer
from orchestrator.turns import InputAudioItem, RealtimeResponse
from spec import REALTIME_AUDIO_MODALITIES, REALTIME_TEXT_MODALITIES


ClientFactory = Callable[[RealtimeConfig], RealtimeClient]
AudioFactory = Callable[[], AudioHandler]


class RealtimeSession:
    """Lifecycle driver for one realtime conversation."""

    def __init__(
        self,
        store: ConversationStore,
        session: ChatSession,
        config: RealtimeConfig,
        *,
        client_factory: ClientFactory | None = None,
        audio_factory: AudioFactory = BufferedAudioHandler,
        uploader: BlobUploader | None = None,
        instructions: str = "",
    ) -> None:
        self.session = session
        self.config = config
        self.instructions = instructions

        self.state = SessionState.IDLE
        self.status = ""
        self.messages: list[ChatMessage] = []

        self._client_factory = client_factory or self._default_client
        self._audio_factory = audio_factory
        self._client: RealtimeClient | None = None
        self._audio: AudioHandler | None = None
        self._listener: asyncio.Task[None] | None = None
        self._mux = TurnMultiplexer(store, session, uploader)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def client(self) -> RealtimeClient | None:
        return self._client

    @property
    def audio(self) -> AudioHandler | None:
        return self._audio

    @property
    def multiplexer(self) -> TurnMultiplexer:
        return self._mux

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def handle_connect(self) -> None:
        """Connect when idle, disconnect when connected. Ignored while connecting."""
        if self.state is SessionState.CONNECTING:
            return
        if self.state is SessionState.IDLE:
            await self.connect()
        else:
            await self.disconnect()

    async def connect(self) -> None:
        """
        Open and configure a client.

        Failures are reported through `status`; the partial client is
        closed and the session returns to IDLE.
        """
        if self.state is SessionState.CONNECTING:
            self._log("connect_ignored", reason="already_connecting")
            return
        self._require(LifecycleAction.CONNECT)
        self._apply(LifecycleAction.CONNECT)
        self.status = "Connecting..."

        try:
            client = self._client_factory(self.config)
            self._client = client
            await client.connect()
            await client.configure(**self._session_options())
            self._listener = asyncio.create_task(self._listen(client))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception("realtime_connect_failed", exc, session_id=self.session.id)
            await self._discard_client()
            self._apply(LifecycleAction.CONNECT_FAILED)
            self.status = f"Connection failed: {exc}"
            return

        self._apply(LifecycleAction.CONNECT_SUCCEEDED)
        self.status = ""

    async def disconnect(self) -> None:
        """
        Close the client and return to IDLE.

        A failing close is reported through `status`; the session still
        ends up IDLE. Ignored when not connected.
        """
        if not is_allowed(self.state, LifecycleAction.DISCONNECT):
            self._log("disconnect_ignored", reason="not_connected")
            return

        was_recording = self.state is SessionState.RECORDING
        self._apply(LifecycleAction.DISCONNECT)
        if was_recording and self._audio is not None:
            self._audio.stop_recording()

        client = self._client
        # Cleared first so the listener treats the shutdown as expected
        self._client = None
        try:
            if client is not None:
                await client.close()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception("realtime_disconnect_failed", exc, session_id=self.session.id)
            self.status = f"Disconnect failed: {exc}"
        finally:
            await self._stop_listener()
            self._apply(LifecycleAction.DISCONNECT_COMPLETED)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def toggle_recording(self) -> None:
        if self.state is SessionState.RECORDING:
            await self.stop_recording()
        else:
            await self.start_recording()

    async def start_recording(self) -> None:
        """
        Start capturing and forwarding audio.

        Raises LifecycleError unless CONNECTED. Device failures are
        reported through `status` and leave the session CONNECTED.
        """
        self._require(LifecycleAction.START_RECORDING)
        self.status = "Starting recording..."

        try:
            if self._audio is None:
                audio = self._audio_factory()
                await audio.initialize()
                self._audio = audio
                self._mux.audio = audio
            await self._audio.start_recording(self._forward_chunk)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception("recording_start_failed", exc, session_id=self.session.id)
            self.status = f"Failed to start recording: {exc}"
            return

        self._apply(LifecycleAction.START_RECORDING)
        self.status = "Recording..."

    async def stop_recording(self) -> None:
        """
        Stop capturing. Raises LifecycleError unless RECORDING.

        Without server VAD the buffered input is committed, turned into a
        user message, and a response is requested.
        """
        self._require(LifecycleAction.STOP_RECORDING)
        self.status = "Stopping recording..."

        if self._audio is not None:
            self._audio.stop_recording()
        self._apply(LifecycleAction.STOP_RECORDING)

        client = self._client
        try:
            if not self.config.use_vad and client is not None:
                item = await client.commit_audio()
                message = await self._mux.handle_input_audio(item)
                if message is not None:
                    self.messages.append(message)
                await client.generate_response()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception("recording_stop_failed", exc, session_id=self.session.id)
            self.status = f"Failed to stop recording: {exc}"
            return

        self.status = ""

    async def _forward_chunk(self, chunk: bytes) -> None:
        # Captured audio only reaches the service while RECORDING
        client = self._client
        if self.state is not SessionState.RECORDING or client is None:
            return
        await client.send_audio(chunk)

    # ------------------------------------------------------------------
    # Configuration / teardown
    # ------------------------------------------------------------------

    async def update_config(
        self,
        *,
        voice: str | None = None,
        temperature: float | None = None,
    ) -> None:
        """Change voice/temperature; pushed to the client only while connected."""
        changes: dict[str, Any] = {}
        if voice is not None:
            changes["voice"] = voice
        if temperature is not None:
            changes["temperature"] = temperature
        if not changes:
            return

        self.config = replace(self.config, **changes)
        client = self._client
        if client is not None and self.state in (SessionState.CONNECTED, SessionState.RECORDING):
            await client.configure(**changes)

    async def close(self) -> None:
        """Stop recording, release audio, disconnect, flush pending uploads."""
        if self.state is SessionState.RECORDING:
            await self.stop_recording()
        if self._audio is not None:
            audio, self._audio = self._audio, None
            self._mux.audio = None
            await audio.close()
        await self.disconnect()
        await self._mux.drain_attachments()

    # ------------------------------------------------------------------
    # Response listener
    # ------------------------------------------------------------------

    async def _listen(self, client: RealtimeClient) -> None:
        try:
            async for event in client.events():
                if isinstance(event, RealtimeResponse):
                    self.messages.extend(await self._mux.handle_response(event))
                elif isinstance(event, InputAudioItem):
                    message = await self._mux.handle_input_audio(event)
                    if message is not None:
                        self.messages.append(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            if self._client is client:
                log_exception("response_iteration_failed", exc, session_id=self.session.id)
                self.status = f"Response iteration error: {exc}"

    async def _stop_listener(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None:
            return
        if not listener.done():
            listener.cancel()
        await asyncio.gather(listener, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _session_options(self) -> dict[str, Any]:
        config = self.config
        return {
            "instructions": self.instructions,
            "voice": config.voice,
            "temperature": config.temperature,
            "input_transcription_model": config.input_transcription_model,
            "turn_detection": {"type": "server_vad"} if config.use_vad else None,
            "modalities": (
                REALTIME_AUDIO_MODALITIES
                if config.modality == "audio"
                else REALTIME_TEXT_MODALITIES
            ),
        }

    async def _discard_client(self) -> None:
        client, self._client = self._client, None
        await self._stop_listener()
        if client is None:
            return
        try:
            await client.close()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception("realtime_discard_failed", exc, session_id=self.session.id)

    def _default_client(self, config: RealtimeConfig) -> RealtimeClient:
        return OpenAIRealtimeClient(config, session_id=self.session.id)

    def _require(self, action: LifecycleAction) -> None:
        if not is_allowed(self.state, action):
            raise LifecycleError(self.state, action)

    def _apply(self, action: LifecycleAction) -> None:
        result = transition(self.state, action)
        log_event({
            "event_type": "session_lifecycle",
            "decision": result.decision,
            "session_id": self.session.id,
            "action": action.value,
            "from_state": self.state.value,
            "to_state": result.state.value,
        })
        self.state = result.state

    def _log(self, decision: str, **fields: Any) -> None:
        log_event({
            "event_type": "session_lifecycle",
            "decision": decision,
            "session_id": self.session.id,
            "state": self.state.value,
            **fields,
        })
