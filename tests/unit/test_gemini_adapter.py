# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
from typing import Any, AsyncIterator

import httpx
import pytest

from adapters.llm.base import ChatOptions
from adapters.llm.gemini import (
    GeminiChatAdapter,
    SseTextExtractor,
    build_path,
    detect_block,
    extract_message,
    prepare_messages,
)
from config import ModelConfig
from observability import logger
from orchestrator.cancellation import CancellationHandle
from orchestrator.errors import ContentBlockedError, ProtocolError
from streaming.reader import ChunkedResponseReader


@pytest.fixture(autouse=True)
def _quiet_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logger, "_print", lambda line: None)


def sse(*texts: str) -> bytes:
    frames = [
        "data: " + json.dumps({"candidates": [{"content": {"parts": [{"text": t}]}}]})
        for t in texts
    ]
    return ("\r\n\r\n".join(frames) + "\r\n\r\n").encode("utf-8")


def chunked(*parts: bytes) -> AsyncIterator[bytes]:
    async def gen() -> AsyncIterator[bytes]:
        for part in parts:
            yield part
    return gen()


# ---------------------------------------------------------------------
# Path building
# ---------------------------------------------------------------------

def test_build_path_defaults_trims_and_adds_scheme():
    assert build_path(None, "v1beta/models/m:generateContent") == (
        "https://generativelanguage.googleapis.com/v1beta/models/m:generateContent"
    )
    assert build_path("proxy.local/", "p") == "https://proxy.local/p"
    assert build_path("http://proxy.local", "p") == "http://proxy.local/p"


def test_build_path_appends_alt_sse_for_streaming():
    assert build_path("https://h", "p", should_stream=True) == "https://h/p?alt=sse"
    assert build_path("https://h", "p?x=1", should_stream=True) == "https://h/p?x=1&alt=sse"


# ---------------------------------------------------------------------
# Message preparation
# ---------------------------------------------------------------------

def test_prepare_messages_maps_roles_and_merges_consecutive_turns():
    contents = prepare_messages([
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "assistant", "content": "again"},
        {"role": "user", "content": "bye"},
    ])

    assert contents == [
        {"role": "user", "parts": [{"text": "be brief"}, {"text": "hi"}]},
        {"role": "model", "parts": [{"text": "hello"}, {"text": "again"}]},
        {"role": "user", "parts": [{"text": "bye"}]},
    ]


# ---------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------

def test_extract_message_shapes():
    reply = {"candidates": [{"content": {"parts": [{"text": "yo"}]}}]}

    assert extract_message(reply) == "yo"
    assert extract_message([reply]) == "yo"
    assert extract_message({"error": {"message": "quota"}}) == "quota"
    assert extract_message({}) == ""
    assert extract_message(None) == ""


def test_detect_block():
    assert detect_block({"promptFeedback": {"blockReason": "SAFETY"}}) == "SAFETY"
    assert detect_block([{"promptFeedback": {"blockReason": "OTHER"}}]) == "OTHER"
    assert detect_block({"candidates": []}) is None


def test_sse_extractor_handles_frames_split_across_reads():
    extractor = SseTextExtractor()
    raw = sse("Hel", "lo").decode("utf-8")

    out = extractor.feed(raw[:15]) + extractor.feed(raw[15:]) + extractor.flush()

    assert out == ["Hel", "lo"]
    assert extractor.saw_frames


# ---------------------------------------------------------------------
# Adapter over the reader
# ---------------------------------------------------------------------

class Recorder:
    def __init__(self) -> None:
        self.updates: list[str] = []
        self.finished: list[str] = []
        self.errors: list[Exception] = []

    def options(self, stream: bool) -> ChatOptions:
        return ChatOptions(
            messages=[{"role": "user", "content": "hi"}],
            config=ModelConfig(model="gemini-test", stream=stream),
            on_update=self.updates.append,
            on_finish=lambda text, _response: self.finished.append(text),
            on_error=self.errors.append,
        )


def run_chat(handler: Any, *, stream: bool, recorder: Recorder) -> None:
    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = GeminiChatAdapter(
                ChunkedResponseReader(client),
                api_key="k",
                base_url="https://gemini.test",
            )
            await adapter.chat(recorder.options(stream), CancellationHandle())

    asyncio.run(scenario())


def test_streaming_chat_reports_extracted_text():
    recorder = Recorder()
    seen: list[httpx.Request] = []
    body = sse("Hel", "lo")

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=chunked(body[:20], body[20:]))

    run_chat(handler, stream=True, recorder=recorder)

    assert "".join(recorder.updates) == "Hello"
    assert recorder.finished == ["Hello"]
    assert recorder.errors == []

    request = seen[0]
    assert request.url.path == "/v1beta/models/gemini-test:streamGenerateContent"
    assert request.url.params["alt"] == "sse"
    assert request.headers["x-goog-api-key"] == "k"
    payload = json.loads(request.content)
    assert payload["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
    assert payload["generationConfig"]["maxOutputTokens"] == 4000


def test_non_streaming_chat_block_then_finish():
    recorder = Recorder()

    run_chat(
        lambda request: httpx.Response(200, json={
            "promptFeedback": {"blockReason": "SAFETY"},
            "candidates": [],
        }),
        stream=False,
        recorder=recorder,
    )

    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], ContentBlockedError)
    assert recorder.finished == [""]


def test_generate_stream_yields_deltas():
    body = sse("a", "b", "c")

    async def scenario() -> list[str]:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, content=chunked(body))
        )
        async with httpx.AsyncClient(transport=transport) as client:
            adapter = GeminiChatAdapter(ChunkedResponseReader(client), api_key="k")
            return [delta async for delta in adapter.generate_stream("hi")]

    assert asyncio.run(scenario()) == ["a", "b", "c"]


def test_generate_stream_raises_on_error():
    async def scenario() -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(403, json={"error": {"message": "denied"}})
        )
        async with httpx.AsyncClient(transport=transport) as client:
            adapter = GeminiChatAdapter(ChunkedResponseReader(client), api_key="k")
            async for _ in adapter.generate_stream("hi"):
                pass

    with pytest.raises(ProtocolError, match="denied"):
        asyncio.run(scenario())
