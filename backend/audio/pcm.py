"""PCM16 helpers: sample conversion, millisecond slicing, WAV export."""

from __future__ import annotations

import io

import numpy as np
import soundfile as sf

from spec import (
    REALTIME_BYTES_PER_MS,
    REALTIME_CHANNELS,
    REALTIME_SAMPLE_RATE_HZ,
    REALTIME_SAMPLE_WIDTH_BYTES,
)


def _whole_samples(pcm_bytes: bytes) -> bytes:
    # Truncated trailing sample is dropped
    extra = len(pcm_bytes) % REALTIME_SAMPLE_WIDTH_BYTES
    return pcm_bytes[: len(pcm_bytes) - extra] if extra else pcm_bytes


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian mono bytes to float32 in [-1.0, 1.0).

    No resampling. No channel mixing.
    """
    audio_i16 = np.frombuffer(_whole_samples(pcm_bytes), dtype="<i2")
    return audio_i16.astype(np.float32) / 32768.0


def slice_pcm_ms(
    pcm_bytes: bytes,
    start_ms: int | None,
    end_ms: int | None,
    *,
    bytes_per_ms: int = REALTIME_BYTES_PER_MS,
) -> bytes:
    """
    Cut [start_ms, end_ms) out of a PCM16 buffer.

    None means "from the beginning" / "to the end". Offsets are clamped
    to the buffer and aligned to whole samples.
    """
    start = 0 if start_ms is None else max(0, start_ms) * bytes_per_ms
    end = len(pcm_bytes) if end_ms is None else max(0, end_ms) * bytes_per_ms
    start -= start % REALTIME_SAMPLE_WIDTH_BYTES
    end = min(end, len(pcm_bytes))
    if end <= start:
        return b""
    return _whole_samples(pcm_bytes[start:end])


def encode_wav(
    pcm_bytes: bytes,
    *,
    sample_rate_hz: int = REALTIME_SAMPLE_RATE_HZ,
) -> bytes:
    """Wrap PCM16 mono bytes into a WAV container."""
    samples = np.frombuffer(_whole_samples(pcm_bytes), dtype="<i2")
    if REALTIME_CHANNELS > 1:
        samples = samples.reshape(-1, REALTIME_CHANNELS)

    buffer = io.BytesIO()
    sf.write(buffer, samples, sample_rate_hz, format="WAV", subtype="PCM_16")
    return buffer.getvalue()
