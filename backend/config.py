"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide typed, immutable config objects

Non-responsibilities:
- No orchestration logic
- No protocol constants (see spec.py)
- No runtime mutation (callers derive new values with dataclasses.replace)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from spec import (
    CHAT_DEFAULT_MAX_TOKENS,
    CHAT_DEFAULT_MODEL,
    CHAT_DEFAULT_TEMPERATURE,
    CHAT_DEFAULT_TOP_P,
    GEMINI_BASE_URL,
    REALTIME_AZURE_API_VERSION,
    REALTIME_DEFAULT_MODEL,
    REALTIME_DEFAULT_TEMPERATURE,
    REALTIME_DEFAULT_VOICE,
    REALTIME_INPUT_TRANSCRIPTION_MODEL,
    REQUEST_TIMEOUT_MS,
)


@dataclass(frozen=True)
class ModelConfig:
    """Per-request generation parameters for the chat endpoint."""

    model: str = CHAT_DEFAULT_MODEL
    temperature: float = CHAT_DEFAULT_TEMPERATURE
    top_p: float = CHAT_DEFAULT_TOP_P
    max_tokens: int = CHAT_DEFAULT_MAX_TOKENS
    stream: bool = True


@dataclass(frozen=True)
class RealtimeConfig:
    """
    Realtime (speech-to-speech) session parameters.

    voice and temperature may be changed while a session is open;
    the session pushes them to the client once connected.
    """

    provider: str = "OpenAI"  # "OpenAI" | "Azure"
    api_key: str | None = None
    model: str = REALTIME_DEFAULT_MODEL
    voice: str = REALTIME_DEFAULT_VOICE
    temperature: float = REALTIME_DEFAULT_TEMPERATURE

    azure_endpoint: str | None = None
    azure_deployment: str | None = None
    azure_api_version: str = REALTIME_AZURE_API_VERSION

    modality: str = "audio"  # "audio" | "text"
    use_vad: bool = True
    input_transcription_model: str = REALTIME_INPUT_TRANSCRIPTION_MODEL

    @property
    def is_azure(self) -> bool:
        """True when the Azure deployment flavour is selected."""
        return self.provider.lower() == "azure"


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup and passed downward to the
    server, chat controller and realtime sessions.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"
    enable_json_logs: bool = True

    # ------------------------------------------------------------------
    # Chat (text generation)
    # ------------------------------------------------------------------

    request_timeout_ms: int = REQUEST_TIMEOUT_MS
    google_api_key: str | None = None
    google_base_url: str | None = None
    chat: ModelConfig = field(default_factory=ModelConfig)

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)

    # ------------------------------------------------------------------
    # Audio persistence
    # ------------------------------------------------------------------

    upload_url: str | None = None

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Missing optional values fall back to spec.py defaults.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",

            request_timeout_ms=int(
                os.environ.get("REQUEST_TIMEOUT_MS", str(REQUEST_TIMEOUT_MS))
            ),
            google_api_key=os.environ.get("GOOGLE_API_KEY"),
            google_base_url=os.environ.get("GOOGLE_URL") or GEMINI_BASE_URL,
            chat=ModelConfig(
                model=os.environ.get("CHAT_MODEL", CHAT_DEFAULT_MODEL),
                temperature=float(
                    os.environ.get("CHAT_TEMPERATURE", str(CHAT_DEFAULT_TEMPERATURE))
                ),
                top_p=float(os.environ.get("CHAT_TOP_P", str(CHAT_DEFAULT_TOP_P))),
                max_tokens=int(
                    os.environ.get("CHAT_MAX_TOKENS", str(CHAT_DEFAULT_MAX_TOKENS))
                ),
                stream=os.environ.get("CHAT_STREAM", "1") == "1",
            ),

            realtime=RealtimeConfig(
                provider=os.environ.get("REALTIME_PROVIDER", "OpenAI"),
                api_key=os.environ.get("REALTIME_API_KEY") or os.environ.get("OPENAI_API_KEY"),
                model=os.environ.get("REALTIME_MODEL", REALTIME_DEFAULT_MODEL),
                voice=os.environ.get("REALTIME_VOICE", REALTIME_DEFAULT_VOICE),
                temperature=float(
                    os.environ.get(
                        "REALTIME_TEMPERATURE", str(REALTIME_DEFAULT_TEMPERATURE)
                    )
                ),
                azure_endpoint=os.environ.get("AZURE_REALTIME_ENDPOINT"),
                azure_deployment=os.environ.get("AZURE_REALTIME_DEPLOYMENT"),
                modality=os.environ.get("REALTIME_MODALITY", "audio"),
                use_vad=os.environ.get("REALTIME_USE_VAD", "1") == "1",
            ),

            upload_url=os.environ.get("UPLOAD_URL"),
        )
