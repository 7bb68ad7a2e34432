"""
Audio capture/playback contract.

Device mechanics (microphones, speakers, browsers) live behind this
interface; the streaming core only hands chunks in and asks for saved
blobs back.

Rules:
- This file contains NO logic.
- Audio is PCM16 mono at spec.REALTIME_SAMPLE_RATE_HZ.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable


ChunkCallback = Callable[[bytes], Awaitable[None]]


class AudioHandler(ABC):
    """
    Abstract audio collaborator for one realtime session.

    Capture side:
    - start_recording(on_chunk) delivers captured chunks to on_chunk
    - save_record_file(start_ms, end_ms) returns the captured slice

    Playback side:
    - start_streaming_playback() / play_chunk() / stop_streaming_playback()
    - save_play_file() returns what was played since playback started
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Acquire devices. Must be called before start_recording()."""
        raise NotImplementedError

    @abstractmethod
    async def start_recording(self, on_chunk: ChunkCallback) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop_recording(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def start_streaming_playback(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def play_chunk(self, chunk: bytes) -> None:
        """Queue one chunk for playback. Must not block."""
        raise NotImplementedError

    @abstractmethod
    def stop_streaming_playback(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def save_record_file(self, start_ms: int | None, end_ms: int | None) -> bytes | None:
        """WAV blob of the captured audio in [start_ms, end_ms), or None."""
        raise NotImplementedError

    @abstractmethod
    def save_play_file(self) -> bytes | None:
        """WAV blob of the audio played in the current playback, or None."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release devices. Idempotent."""
        raise NotImplementedError
