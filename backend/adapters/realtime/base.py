"""
Realtime (speech-to-speech) client contract.

The client owns the vendor connection and turns its flat server events
into the lazy-sequence turn model of orchestrator.turns:

    events() -> RealtimeResponse | InputAudioItem, in arrival order

Rules:
- This file contains NO logic.
- events() has a single consumer (the session's response listener).
- Reading events must never wait on the consumer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Union

from orchestrator.turns import InputAudioItem, RealtimeResponse


RealtimeEvent = Union[RealtimeResponse, InputAudioItem]


class RealtimeClient(ABC):
    """Abstract realtime client bound to one session."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Raises on failure."""
        raise NotImplementedError

    @abstractmethod
    async def configure(self, **options: Any) -> None:
        """
        Update session options.

        Recognized keys: instructions, voice, temperature, modalities,
        input_transcription_model, turn_detection. Absent keys are left
        unchanged on the service side.
        """
        raise NotImplementedError

    @abstractmethod
    def events(self) -> AsyncIterator[RealtimeEvent]:
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, chunk: bytes) -> None:
        """Append captured PCM16 audio to the service input buffer."""
        raise NotImplementedError

    @abstractmethod
    async def commit_audio(self) -> InputAudioItem:
        """Commit the input buffer; resolves with the committed item."""
        raise NotImplementedError

    @abstractmethod
    async def generate_response(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Open sequences end. Idempotent."""
        raise NotImplementedError
