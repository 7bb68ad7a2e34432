"""Gemini chat adapter"""
from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import httpx

from adapters.llm.base import ChatOptions, LLMAdapter
from config import ModelConfig
from observability.logger import log_event
from orchestrator.cancellation import CancellationHandle
from orchestrator.errors import ContentBlockedError
from orchestrator.turns import ChunkStream
from spec import (
    GEMINI_API_KEY_HEADER,
    GEMINI_BASE_URL,
    GEMINI_CHAT_PATH_TEMPLATE,
    GEMINI_STREAM_PATH_TEMPLATE,
)
from streaming.reader import ChunkedResponseReader, ReaderCallbacks, RequestDescriptor


# ---------------------------------------------------------------------
# Request shaping (pure)
# ---------------------------------------------------------------------

def build_path(base_url: str | None, path: str, should_stream: bool = False) -> str:
    """
    Join a base URL and an endpoint path.

    - Empty base falls back to the public endpoint
    - One trailing slash is trimmed
    - A scheme-less base gets https://
    - Streaming requests get alt=sse
    """
    base = base_url or GEMINI_BASE_URL
    if base.endswith("/"):
        base = base[:-1]
    if not base.startswith("http"):
        base = "https://" + base

    chat_path = "/".join([base, path])
    if should_stream:
        chat_path += "&alt=sse" if "?" in chat_path else "?alt=sse"
    return chat_path


def prepare_messages(messages: list[dict[str, str]]) -> list[dict[str, Any]]:
    """
    Role/content dicts -> Gemini `contents`.

    assistant -> model, system -> user; consecutive turns with the same
    role are merged into one turn with several parts.
    """
    contents: list[dict[str, Any]] = []
    for message in messages:
        role = message["role"].replace("assistant", "model").replace("system", "user")
        part = {"text": message.get("content", "")}
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].append(part)
        else:
            contents.append({"role": role, "parts": [part]})
    return contents


def build_payload(messages: list[dict[str, str]], config: ModelConfig) -> dict[str, Any]:
    return {
        "contents": prepare_messages(messages),
        "generationConfig": {
            "temperature": config.temperature,
            "maxOutputTokens": config.max_tokens,
            "topP": config.top_p,
        },
    }


# ---------------------------------------------------------------------
# Response parsing (pure)
# ---------------------------------------------------------------------

def _first_text(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    try:
        text = body["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    return text if isinstance(text, str) else None


def extract_message(body: Any) -> str:
    """
    Final text of a non-streamed reply.

    Accepts the object form, the list-of-objects form, and falls back to
    error.message; "" when nothing matches.
    """
    text = _first_text(body)
    if text:
        return text
    if isinstance(body, list) and body:
        text = _first_text(body[0])
        if text:
            return text
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return ""


def detect_block(body: Any) -> str | None:
    """promptFeedback.blockReason, if the prompt was blocked."""
    if isinstance(body, list) and body:
        body = body[0]
    if not isinstance(body, dict):
        return None
    feedback = body.get("promptFeedback")
    if isinstance(feedback, dict):
        reason = feedback.get("blockReason")
        if isinstance(reason, str) and reason:
            return reason
    return None


class SseTextExtractor:
    """
    Incremental `data:` frame parser for alt=sse replies.

    feed(raw) returns the text carried by every frame completed so far.
    Raw input that never contained a frame is reported by `saw_frames`
    so callers can fall back to the raw body.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.saw_frames = False
        self.block_reason: str | None = None

    def feed(self, raw: str) -> list[str]:
        self._buffer += raw.replace("\r\n", "\n")
        texts: list[str] = []
        while "\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split("\n\n", 1)
            text = self._parse_frame(frame)
            if text:
                texts.append(text)
        return texts

    def flush(self) -> list[str]:
        frame, self._buffer = self._buffer, ""
        text = self._parse_frame(frame)
        return [text] if text else []

    def _parse_frame(self, frame: str) -> str | None:
        data_lines = [
            line[len("data:"):].strip()
            for line in frame.split("\n")
            if line.startswith("data:")
        ]
        if not data_lines:
            return None
        self.saw_frames = True

        data = "\n".join(data_lines)
        if data == "[DONE]":
            return None
        try:
            body = json.loads(data)
        except ValueError:
            log_event({"event_type": "sse_frame_unparseable", "len": len(data)})
            return None

        if self.block_reason is None:
            self.block_reason = detect_block(body)
        return _first_text(body)


# ---------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------

class GeminiChatAdapter(LLMAdapter):
    """
    Concrete Gemini chat adapter.

    Design notes:
    - All I/O goes through the shared ChunkedResponseReader.
    - Streamed replies are SSE; updates carry the extracted text only.
    - The adapter does NOT:
        - Register or remove cancellation handles
        - Retry
        - Touch the conversation store
    """

    def __init__(
        self,
        reader: ChunkedResponseReader,
        *,
        api_key: str | None,
        base_url: str | None = None,
        model_config: ModelConfig | None = None,
    ) -> None:
        self._reader = reader
        self._api_key = api_key
        self._base_url = base_url
        self._model_config = model_config or ModelConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def path(self, model: str, should_stream: bool) -> str:
        template = GEMINI_STREAM_PATH_TEMPLATE if should_stream else GEMINI_CHAT_PATH_TEMPLATE
        return build_path(self._base_url, template.format(model=model), should_stream)

    async def chat(self, options: ChatOptions, signal: CancellationHandle) -> None:
        streaming = options.config.stream
        request = RequestDescriptor(
            url=self.path(options.config.model, streaming),
            payload=build_payload(options.messages, options.config),
            signal=signal,
            headers=self._headers(),
            log_fields={"model": options.config.model, **options.log_fields},
        )

        if streaming:
            callbacks = self._stream_callbacks(options)
        else:
            callbacks = ReaderCallbacks(
                on_finish=options.on_finish,
                on_error=options.on_error,
                extract_message=extract_message,
                detect_block=detect_block,
            )

        await self._reader.fetch(request, streaming=streaming, callbacks=callbacks)

    async def generate_stream(self, text: str) -> AsyncIterator[str]:
        """
        Stream the reply to one user prompt.

        Raises the reported error (TransportError, ProtocolError, ...)
        instead of calling back. Leaving the loop early aborts the request.
        """
        stream: ChunkStream[str] = ChunkStream("gemini")
        signal = CancellationHandle()
        options = ChatOptions(
            messages=[{"role": "user", "content": text}],
            config=ModelConfig(
                model=self._model_config.model,
                temperature=self._model_config.temperature,
                top_p=self._model_config.top_p,
                max_tokens=self._model_config.max_tokens,
                stream=True,
            ),
            on_update=stream.feed,
            on_finish=lambda _text, _response: stream.close(),
            on_error=stream.fail,
        )

        async def _run() -> None:
            try:
                await self.chat(options, signal)
            finally:
                stream.close()

        task = asyncio.create_task(_run())
        try:
            async for delta in stream:
                yield delta
        finally:
            if not task.done():
                signal.abort()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers[GEMINI_API_KEY_HEADER] = self._api_key
        return headers

    @staticmethod
    def _stream_callbacks(options: ChatOptions) -> ReaderCallbacks:
        """Wrap caller callbacks so they see SSE text instead of raw frames."""
        extractor = SseTextExtractor()
        texts: list[str] = []
        block_reported = False

        def _emit(pieces: list[str]) -> None:
            for piece in pieces:
                texts.append(piece)
                if options.on_update is not None:
                    options.on_update(piece)

        def _check_block() -> None:
            nonlocal block_reported
            if extractor.block_reason and not block_reported:
                block_reported = True
                if options.on_error is not None:
                    options.on_error(ContentBlockedError(extractor.block_reason))

        def _on_update(raw: str) -> None:
            _emit(extractor.feed(raw))
            _check_block()

        def _on_finish(raw: str, response: httpx.Response) -> None:
            _emit(extractor.flush())
            _check_block()
            if extractor.saw_frames:
                options.on_finish("".join(texts), response)
            else:
                # Not SSE after all (proxy without alt=sse support)
                if options.on_update is not None:
                    options.on_update(raw)
                options.on_finish(raw, response)

        return ReaderCallbacks(
            on_finish=_on_finish,
            on_update=_on_update,
            on_error=options.on_error,
        )
