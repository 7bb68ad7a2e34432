"""
OpenAI / Azure OpenAI realtime client.

Wraps the `openai` SDK realtime connection and demultiplexes its flat
server event stream into nested lazy sequences:

    response.created                    -> RealtimeResponse
    response.output_item.added          -> ResponseItem
    response.content_part.added         -> TextContent | AudioContent
    response.(output_)text.delta        -> text chunk
    response.(output_)audio_transcript.delta -> transcript chunk
    response.(output_)audio.delta       -> audio chunk (base64)
    *.done                              -> close the matching sequence

    input_audio_buffer.speech_started/stopped -> input offsets
    input_audio_buffer.committed        -> InputAudioItem
    conversation.item.input_audio_transcription.completed/failed
                                        -> InputAudioItem.complete()

A receive task owns the connection and dispatches synchronously into
unbounded sequences, so consumers never stall the socket.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from openai import AsyncAzureOpenAI, AsyncOpenAI

from adapters.realtime.base import RealtimeClient, RealtimeEvent
from config import RealtimeConfig
from observability.logger import log_event, log_exception
from orchestrator.errors import ProtocolError, TransportError
from orchestrator.turns import (
    AudioContent,
    ChunkStream,
    Content,
    InputAudioItem,
    RealtimeResponse,
    ResponseItem,
    TextContent,
)


ConnectFn = Callable[[RealtimeConfig], Awaitable[Any]]


# Beta and GA event names
_TEXT_DELTA = ("response.text.delta", "response.output_text.delta")
_TRANSCRIPT_DELTA = (
    "response.audio_transcript.delta",
    "response.output_audio_transcript.delta",
)
_AUDIO_DELTA = ("response.audio.delta", "response.output_audio.delta")
_AUDIO_PART_TYPES = ("audio", "output_audio")


# ---------------------------------------------------------------------
# Demux bookkeeping
# ---------------------------------------------------------------------

@dataclass
class _PartStreams:
    text: ChunkStream[str] | None = None
    transcript: ChunkStream[str] | None = None
    audio: ChunkStream[bytes] | None = None

    def close(self) -> None:
        for stream in (self.text, self.transcript, self.audio):
            if stream is not None:
                stream.close()

    def fail(self, exc: BaseException) -> None:
        for stream in (self.text, self.transcript, self.audio):
            if stream is not None:
                stream.fail(exc)


@dataclass
class _ItemStreams:
    response_id: str
    contents: ChunkStream[Content]
    parts: dict[int, _PartStreams] = field(default_factory=dict)


@dataclass
class _Speech:
    audio_start_ms: int | None = None
    audio_end_ms: int | None = None


async def open_sdk_connection(config: RealtimeConfig) -> Any:
    """Open a realtime connection through the openai SDK."""
    if config.is_azure:
        client: AsyncOpenAI = AsyncAzureOpenAI(
            api_key=config.api_key,
            azure_endpoint=config.azure_endpoint or "",
            azure_deployment=config.azure_deployment,
            api_version=config.azure_api_version,
        )
        model = config.azure_deployment or config.model
    else:
        client = AsyncOpenAI(api_key=config.api_key)
        model = config.model

    manager = client.beta.realtime.connect(model=model)
    return await manager.enter()


def _as_dict(event: Any) -> dict[str, Any]:
    if isinstance(event, dict):
        return event
    if hasattr(event, "model_dump"):
        return event.model_dump()
    raise TypeError(f"unsupported realtime event: {type(event).__name__}")


# ---------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------

class OpenAIRealtimeClient(RealtimeClient):
    """
    Concrete realtime client.

    Design notes:
    - One instance per connection; not reusable after close().
    - `connect_fn` opens the underlying connection; the default goes
      through the SDK (OpenAI or Azure, per config). The connection must
      support `await send(dict)`, `async for event in connection` and
      `await close()`.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        *,
        connect_fn: ConnectFn = open_sdk_connection,
        session_id: str = "",
    ) -> None:
        self._config = config
        self._connect_fn = connect_fn
        self._session_id = session_id

        self._connection: Any = None
        self._receiver: asyncio.Task[None] | None = None
        self._closed = False

        self._events: ChunkStream[RealtimeEvent] = ChunkStream("realtime_events")
        self._responses: dict[str, ChunkStream[ResponseItem]] = {}
        self._items: dict[str, _ItemStreams] = {}
        self._inputs: dict[str, InputAudioItem] = {}
        self._speech: dict[str, _Speech] = {}
        self._pending_commit: asyncio.Future[InputAudioItem] | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._connection is not None:
            return
        self._connection = await self._connect_fn(self._config)
        self._receiver = asyncio.create_task(self._receive_loop())
        log_event({
            "event_type": "realtime_connected",
            "session_id": self._session_id,
            "provider": self._config.provider,
            "model": self._config.model,
        })

    async def configure(self, **options: Any) -> None:
        session: dict[str, Any] = {}
        for key in ("instructions", "voice", "temperature"):
            if key in options:
                session[key] = options[key]
        if "modalities" in options:
            session["modalities"] = list(options["modalities"])
        if options.get("input_transcription_model"):
            session["input_audio_transcription"] = {
                "model": options["input_transcription_model"],
            }
        if "turn_detection" in options:
            session["turn_detection"] = options["turn_detection"]

        if not session:
            return
        await self._send({"type": "session.update", "session": session})
        log_event({
            "event_type": "realtime_configured",
            "session_id": self._session_id,
            "keys": sorted(session),
        })

    def events(self) -> AsyncIterator[RealtimeEvent]:
        return self._events

    async def send_audio(self, chunk: bytes) -> None:
        if not chunk:
            return
        await self._send({
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(chunk).decode("ascii"),
        })

    async def commit_audio(self) -> InputAudioItem:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[InputAudioItem] = loop.create_future()
        self._pending_commit = future
        await self._send({"type": "input_audio_buffer.commit"})
        try:
            return await future
        finally:
            if self._pending_commit is future:
                self._pending_commit = None

    async def generate_response(self) -> None:
        await self._send({"type": "response.create"})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        receiver = self._receiver
        if receiver is not None and not receiver.done():
            receiver.cancel()
            await asyncio.gather(receiver, return_exceptions=True)

        connection = self._connection
        self._connection = None
        try:
            if connection is not None:
                await connection.close()
        finally:
            self._end_open(TransportError("realtime connection closed"))
            self._speech.clear()
            self._events.close()
            log_event({
                "event_type": "realtime_closed",
                "session_id": self._session_id,
            })

    # ------------------------------------------------------------------
    # Receive side
    # ------------------------------------------------------------------

    async def _send(self, event: dict[str, Any]) -> None:
        if self._connection is None:
            raise TransportError("realtime client is not connected")
        await self._connection.send(event)

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._connection:
                self._dispatch(_as_dict(raw))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception("realtime_receive_failed", exc, session_id=self._session_id)
            failure = TransportError(f"realtime receive failed: {exc}")
            self._end_open(failure)
            self._events.fail(failure)
            return

        # Server closed the connection
        log_event({"event_type": "realtime_remote_closed", "session_id": self._session_id})
        self._end_open(TransportError("realtime connection closed by server"))
        self._events.close()

    def _dispatch(self, event: dict[str, Any]) -> None:
        # pylint: disable=too-many-branches
        event_type = event.get("type", "")

        if event_type == "response.created":
            self._on_response_created(event)

        elif event_type == "response.output_item.added":
            self._on_item_added(event)

        elif event_type == "response.content_part.added":
            self._on_part_added(event)

        elif event_type in _TEXT_DELTA:
            part = self._part(event)
            if part is not None and part.text is not None:
                part.text.feed(event.get("delta", ""))

        elif event_type in _TRANSCRIPT_DELTA:
            part = self._part(event)
            if part is not None and part.transcript is not None:
                part.transcript.feed(event.get("delta", ""))

        elif event_type in _AUDIO_DELTA:
            part = self._part(event)
            if part is not None and part.audio is not None:
                chunk = self._decode_audio(event)
                if chunk is not None:
                    part.audio.feed(chunk)

        elif event_type == "response.content_part.done":
            part = self._part(event)
            if part is not None:
                part.close()

        elif event_type == "response.output_item.done":
            item_id = (event.get("item") or {}).get("id", "")
            self._close_item(item_id)

        elif event_type == "response.done":
            self._on_response_done(event)

        elif event_type == "input_audio_buffer.speech_started":
            self._drop_abandoned_speech()
            speech = self._speech.setdefault(event.get("item_id", ""), _Speech())
            speech.audio_start_ms = event.get("audio_start_ms")

        elif event_type == "input_audio_buffer.speech_stopped":
            speech = self._speech.setdefault(event.get("item_id", ""), _Speech())
            speech.audio_end_ms = event.get("audio_end_ms")

        elif event_type == "input_audio_buffer.committed":
            self._on_committed(event)

        elif event_type == "input_audio_buffer.cleared":
            self._speech.clear()

        elif event_type == "conversation.item.input_audio_transcription.completed":
            self._complete_input(event.get("item_id", ""), event.get("transcript", ""))

        elif event_type == "conversation.item.input_audio_transcription.failed":
            self._complete_input(event.get("item_id", ""), None)

        elif event_type == "error":
            self._on_error(event)

    def _on_response_created(self, event: dict[str, Any]) -> None:
        response_id = (event.get("response") or {}).get("id", "")
        items: ChunkStream[ResponseItem] = ChunkStream(f"response:{response_id}")
        self._responses[response_id] = items
        self._events.feed(RealtimeResponse(response_id=response_id, items=items))

    def _on_item_added(self, event: dict[str, Any]) -> None:
        response_id = event.get("response_id", "")
        item = event.get("item") or {}
        items = self._responses.get(response_id)
        if items is None:
            log_event({
                "event_type": "realtime_orphan_item",
                "response_id": response_id,
                "item_id": item.get("id"),
            })
            return

        contents: ChunkStream[Content] = ChunkStream(f"item:{item.get('id', '')}")
        self._items[item.get("id", "")] = _ItemStreams(response_id=response_id, contents=contents)
        items.feed(ResponseItem(
            item_id=item.get("id", ""),
            role=item.get("role") or "",
            contents=contents,
            type=item.get("type", "message"),
        ))

    def _on_part_added(self, event: dict[str, Any]) -> None:
        item = self._items.get(event.get("item_id", ""))
        if item is None:
            return
        index = event.get("content_index", 0)
        part_type = (event.get("part") or {}).get("type", "text")

        part = _PartStreams()
        if part_type in _AUDIO_PART_TYPES:
            part.transcript = ChunkStream("transcript")
            part.audio = ChunkStream("audio")
            content: Content = AudioContent(
                content_index=index,
                transcript=part.transcript,
                audio=part.audio,
            )
        else:
            part.text = ChunkStream("text")
            content = TextContent(content_index=index, chunks=part.text)

        item.parts[index] = part
        item.contents.feed(content)

    def _part(self, event: dict[str, Any]) -> _PartStreams | None:
        item = self._items.get(event.get("item_id", ""))
        if item is None:
            return None
        return item.parts.get(event.get("content_index", 0))

    def _close_item(self, item_id: str) -> None:
        item = self._items.pop(item_id, None)
        if item is None:
            return
        for part in item.parts.values():
            part.close()
        item.contents.close()

    def _on_response_done(self, event: dict[str, Any]) -> None:
        response = event.get("response") or {}
        response_id = response.get("id", "")
        for item_id in [i for i, s in self._items.items() if s.response_id == response_id]:
            self._close_item(item_id)
        items = self._responses.pop(response_id, None)
        if items is not None:
            items.close()
        log_event({
            "event_type": "realtime_response_done",
            "session_id": self._session_id,
            "response_id": response_id,
            "status": response.get("status"),
        })

    def _decode_audio(self, event: dict[str, Any]) -> bytes | None:
        try:
            return base64.b64decode(event.get("delta", ""), validate=True)
        except binascii.Error as exc:
            log_event({
                "event_type": "realtime_audio_delta_skipped",
                "session_id": self._session_id,
                "item_id": event.get("item_id"),
                "message": str(exc),
            })
            return None

    def _drop_abandoned_speech(self) -> None:
        # A start that never stopped will not be committed any more
        for item_id in [i for i, s in self._speech.items() if s.audio_end_ms is None]:
            del self._speech[item_id]

    def _on_committed(self, event: dict[str, Any]) -> None:
        item_id = event.get("item_id", "")
        speech = self._speech.pop(item_id, _Speech())
        item = InputAudioItem(
            item_id,
            audio_start_ms=speech.audio_start_ms,
            audio_end_ms=speech.audio_end_ms,
        )
        self._inputs[item_id] = item

        pending = self._pending_commit
        if pending is not None and not pending.done():
            # Manual commit: handed back to the committer, not the listener
            pending.set_result(item)
        else:
            self._events.feed(item)

    def _complete_input(self, item_id: str, transcription: str | None) -> None:
        item = self._inputs.pop(item_id, None)
        if item is None:
            log_event({
                "event_type": "realtime_orphan_transcription",
                "item_id": item_id,
            })
            return
        item.complete(transcription)

    def _on_error(self, event: dict[str, Any]) -> None:
        error = event.get("error") or {}
        message = error.get("message", "") if isinstance(error, dict) else str(error)
        log_event({
            "event_type": "realtime_server_error",
            "session_id": self._session_id,
            "message": message,
        })
        pending = self._pending_commit
        if pending is not None and not pending.done():
            pending.set_exception(ProtocolError(f"commit failed: {message}"))

    def _end_open(self, exc: BaseException) -> None:
        """Fail every open nested sequence and pending wait."""
        for item in self._items.values():
            for part in item.parts.values():
                part.fail(exc)
            item.contents.fail(exc)
        self._items.clear()
        for items in self._responses.values():
            items.fail(exc)
        self._responses.clear()
        for item in self._inputs.values():
            item.complete(None)
        self._inputs.clear()
        pending = self._pending_commit
        if pending is not None and not pending.done():
            pending.set_exception(exc)
