"""
SPEC-AS-CONSTANTS
-----------------
Single source of truth for behavioral constants of the streaming core.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- Deployment-specific values (keys, models, URLs) live in config.py.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Request deadlines
# =============================================================================

# Default deadline for a generation request to produce response headers.
REQUEST_TIMEOUT_MS: Final[int] = 60_000

# =============================================================================
# Realtime audio format (PCM16 mono @ 24kHz, as exchanged with realtime APIs)
# =============================================================================

REALTIME_SAMPLE_RATE_HZ: Final[int] = 24_000
REALTIME_CHANNELS: Final[int] = 1
REALTIME_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)

REALTIME_BYTES_PER_MS: Final[int] = (
    REALTIME_SAMPLE_RATE_HZ * REALTIME_SAMPLE_WIDTH_BYTES * REALTIME_CHANNELS
) // 1000

# =============================================================================
# Realtime session defaults
# =============================================================================

REALTIME_DEFAULT_MODEL: Final[str] = "gpt-4o-realtime-preview"
REALTIME_DEFAULT_VOICE: Final[str] = "alloy"
REALTIME_DEFAULT_TEMPERATURE: Final[float] = 0.9
REALTIME_INPUT_TRANSCRIPTION_MODEL: Final[str] = "whisper-1"
REALTIME_AZURE_API_VERSION: Final[str] = "2024-10-01-preview"

REALTIME_AUDIO_MODALITIES: Final[Tuple[str, ...]] = ("text", "audio")
REALTIME_TEXT_MODALITIES: Final[Tuple[str, ...]] = ("text",)

# =============================================================================
# Gemini chat endpoint
# =============================================================================

GEMINI_BASE_URL: Final[str] = "https://generativelanguage.googleapis.com"
GEMINI_CHAT_PATH_TEMPLATE: Final[str] = "v1beta/models/{model}:generateContent"
GEMINI_STREAM_PATH_TEMPLATE: Final[str] = "v1beta/models/{model}:streamGenerateContent"
GEMINI_API_KEY_HEADER: Final[str] = "x-goog-api-key"

# =============================================================================
# Chat defaults
# =============================================================================

CHAT_DEFAULT_MODEL: Final[str] = "gemini-1.5-flash"
CHAT_DEFAULT_TEMPERATURE: Final[float] = 0.5
CHAT_DEFAULT_TOP_P: Final[float] = 1.0
CHAT_DEFAULT_MAX_TOKENS: Final[int] = 4000

# =============================================================================
# Observability
# =============================================================================

LOG_PREVIEW_CHARS: Final[int] = 100
