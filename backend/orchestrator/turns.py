"""
Turn data model for realtime responses.

A RealtimeResponse is a lazy sequence of ResponseItems; each item is a
lazy sequence of content, and content is one of:

    TextContent   one lazy sequence of text chunks
    AudioContent  two independent lazy sequences: transcript text and
                  playable audio bytes

InputAudioItem is separate from responses: it represents a committed
piece of user speech whose transcription completes later.

Lazy sequences are any async iterators. ChunkStream is the queue-backed
implementation adapters feed while the multiplexer consumes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Generic, Iterable, TypeVar, Union


T = TypeVar("T")


# ---------------------------------------------------------------------
# Lazy sequences
# ---------------------------------------------------------------------

class _End:
    """Queue sentinel: producer closed the stream."""


@dataclass(frozen=True)
class _Failure:
    """Queue sentinel: producer failed the stream."""
    exc: BaseException


class ChunkStream(Generic[T]):
    """
    Single-consumer async sequence fed by a producer.

    Producer side: feed(item) ... then close() or fail(exc).
    Consumer side: `async for item in stream`.

    Items are delivered in feed order. Feeding after close is ignored.
    The queue is unbounded: the producer never waits on the consumer.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @classmethod
    def of(cls, items: Iterable[T], name: str = "") -> ChunkStream[T]:
        """A stream that is already fully produced (tests, replays)."""
        stream: ChunkStream[T] = cls(name)
        for item in items:
            stream.feed(item)
        stream.close()
        return stream

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, item: T) -> None:
        if self._closed:
            return
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_End())

    def fail(self, exc: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_Failure(exc))

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def __aiter__(self) -> ChunkStream[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if isinstance(item, _End):
            # Keep the stream exhausted for any later pull
            self._queue.put_nowait(item)
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._queue.put_nowait(_End())
            raise item.exc
        return item  # type: ignore[return-value]


# ---------------------------------------------------------------------
# Content variants
# ---------------------------------------------------------------------

@dataclass
class TextContent:
    """Text-only content: one lazy sequence of text chunks."""
    content_index: int
    chunks: AsyncIterator[str]

    def text_chunks(self) -> AsyncIterator[str]:
        return self.chunks


@dataclass
class AudioContent:
    """
    Audio content: transcript and audio advance independently.

    Both sequences must be drained for the content to be complete.
    """
    content_index: int
    transcript: AsyncIterator[str]
    audio: AsyncIterator[bytes]

    def transcript_chunks(self) -> AsyncIterator[str]:
        return self.transcript

    def audio_chunks(self) -> AsyncIterator[bytes]:
        return self.audio


Content = Union[TextContent, AudioContent]


# ---------------------------------------------------------------------
# Items and responses
# ---------------------------------------------------------------------

@dataclass
class ResponseItem:
    """One output item of a response (a message for a given role)."""
    item_id: str
    role: str
    contents: AsyncIterator[Content]
    type: str = "message"

    def __aiter__(self) -> AsyncIterator[Content]:
        return self.contents


@dataclass
class RealtimeResponse:
    """One assistant response cycle: a lazy sequence of items."""
    response_id: str
    items: AsyncIterator[ResponseItem]

    def __aiter__(self) -> AsyncIterator[ResponseItem]:
        return self.items


class InputAudioItem:
    """
    Committed user speech.

    The transcription arrives after the commit; callers wait for it with
    wait_for_completion(). audio_start_ms/audio_end_ms locate the speech
    inside the capture buffer.
    """

    def __init__(
        self,
        item_id: str,
        *,
        audio_start_ms: int | None = None,
        audio_end_ms: int | None = None,
    ) -> None:
        self.item_id = item_id
        self.audio_start_ms = audio_start_ms
        self.audio_end_ms = audio_end_ms
        self.transcription: str | None = None
        self._done = asyncio.Event()

    @property
    def is_complete(self) -> bool:
        return self._done.is_set()

    def complete(self, transcription: str | None) -> None:
        """Record the final transcription (None when it failed)."""
        if self._done.is_set():
            return
        self.transcription = transcription
        self._done.set()

    async def wait_for_completion(self) -> None:
        await self._done.wait()
