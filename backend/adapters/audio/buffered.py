"""
Device-free AudioHandler.

Captured audio is pushed in with feed_microphone() (a websocket, a file
replay, a test); played audio is kept in memory and optionally forwarded
to a sink. Both sides export WAV blobs.

Timeline:
- The record buffer spans the whole session; audio_start_ms/audio_end_ms
  reported by the realtime service are offsets into it.
- The play buffer is reset by every start_streaming_playback().
"""

from __future__ import annotations

from typing import Callable

from adapters.audio.base import AudioHandler, ChunkCallback
from audio.pcm import encode_wav, slice_pcm_ms
from observability.logger import log_event
from spec import REALTIME_SAMPLE_RATE_HZ


PlaybackSink = Callable[[bytes], None]


class BufferedAudioHandler(AudioHandler):
    """In-memory PCM16 capture/playback buffers."""

    def __init__(
        self,
        *,
        sink: PlaybackSink | None = None,
        sample_rate_hz: int = REALTIME_SAMPLE_RATE_HZ,
    ) -> None:
        self._sink = sink
        self._sample_rate_hz = sample_rate_hz

        self._initialized = False
        self._closed = False

        self._on_chunk: ChunkCallback | None = None
        self._record = bytearray()

        self._playing = False
        self._play = bytearray()
        self.dropped_play_chunks = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._closed:
            raise RuntimeError("audio handler is closed")
        self._initialized = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_chunk = None
        self._playing = False
        log_event({
            "event_type": "audio_handler_closed",
            "recorded_bytes": len(self._record),
            "dropped_play_chunks": self.dropped_play_chunks,
        })

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    @property
    def recording(self) -> bool:
        return self._on_chunk is not None

    async def start_recording(self, on_chunk: ChunkCallback) -> None:
        if not self._initialized or self._closed:
            raise RuntimeError("audio handler not initialized")
        self._on_chunk = on_chunk

    def stop_recording(self) -> None:
        self._on_chunk = None

    async def feed_microphone(self, chunk: bytes) -> None:
        """Capture one chunk. Ignored while not recording."""
        on_chunk = self._on_chunk
        if on_chunk is None or not chunk:
            return
        self._record.extend(chunk)
        await on_chunk(chunk)

    def save_record_file(self, start_ms: int | None, end_ms: int | None) -> bytes | None:
        pcm = slice_pcm_ms(bytes(self._record), start_ms, end_ms)
        if not pcm:
            return None
        return encode_wav(pcm, sample_rate_hz=self._sample_rate_hz)

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    @property
    def playing(self) -> bool:
        return self._playing

    def start_streaming_playback(self) -> None:
        self._playing = True
        self._play = bytearray()

    def play_chunk(self, chunk: bytes) -> None:
        if not self._playing:
            # Playback was interrupted; late chunks are discarded
            self.dropped_play_chunks += 1
            return
        self._play.extend(chunk)
        if self._sink is not None:
            self._sink(chunk)

    def stop_streaming_playback(self) -> None:
        self._playing = False

    def save_play_file(self) -> bytes | None:
        if not self._play:
            return None
        return encode_wav(bytes(self._play), sample_rate_hz=self._sample_rate_hz)
