# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import base64
from typing import Any

import pytest

from adapters.realtime.openai_realtime import OpenAIRealtimeClient
from config import RealtimeConfig
from context.store import ConversationStore
from observability import logger
from orchestrator.errors import TransportError
from orchestrator.multiplexer import TurnMultiplexer
from orchestrator.turns import AudioContent, InputAudioItem, RealtimeResponse, TextContent


@pytest.fixture(autouse=True)
def _quiet_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logger, "_print", lambda line: None)


_END = object()


class FakeConnection:
    """Server side of a realtime socket: push() events, inspect sent."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    def push(self, *events: Any) -> None:
        for event in events:
            self._incoming.put_nowait(event)

    async def send(self, event: dict[str, Any]) -> None:
        self.sent.append(event)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_END)

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> Any:
        event = await self._incoming.get()
        if event is _END:
            raise StopAsyncIteration
        if isinstance(event, Exception):
            raise event
        return event


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def audio_turn(rid: str = "r1", iid: str = "i1", *, ga: bool = False) -> list[dict[str, Any]]:
    transcript = "response.output_audio_transcript.delta" if ga else "response.audio_transcript.delta"
    audio = "response.output_audio.delta" if ga else "response.audio.delta"
    return [
        {"type": "response.created", "response": {"id": rid}},
        {"type": "response.output_item.added", "response_id": rid,
         "item": {"id": iid, "type": "message", "role": "assistant"}},
        {"type": "response.content_part.added", "item_id": iid, "content_index": 0,
         "part": {"type": "audio"}},
        {"type": transcript, "item_id": iid, "content_index": 0, "delta": "Hi"},
        {"type": audio, "item_id": iid, "content_index": 0, "delta": b64(b"\x01\x00")},
        {"type": transcript, "item_id": iid, "content_index": 0, "delta": " you"},
        {"type": audio, "item_id": iid, "content_index": 0, "delta": b64(b"\x02\x00")},
        {"type": "response.content_part.done", "item_id": iid, "content_index": 0},
        {"type": "response.output_item.done", "item": {"id": iid}},
        {"type": "response.done", "response": {"id": rid, "status": "completed"}},
    ]


def make_client(connection: FakeConnection) -> OpenAIRealtimeClient:
    async def connect_fn(_config: RealtimeConfig) -> FakeConnection:
        return connection
    return OpenAIRealtimeClient(RealtimeConfig(api_key="k"), connect_fn=connect_fn)


# ---------------------------------------------------------------------
# Demux
# ---------------------------------------------------------------------

@pytest.mark.parametrize("ga", [False, True])
def test_audio_response_demuxes_into_nested_sequences(ga: bool):
    async def scenario() -> tuple[list[str], list[bytes]]:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        connection.push(*audio_turn(ga=ga))

        events = client.events()
        response = await events.__anext__()
        assert isinstance(response, RealtimeResponse)

        transcript: list[str] = []
        audio: list[bytes] = []
        async for item in response:
            assert item.role == "assistant"
            async for content in item:
                assert isinstance(content, AudioContent)
                transcript += [t async for t in content.transcript_chunks()]
                audio += [a async for a in content.audio_chunks()]

        await client.close()
        return transcript, audio

    transcript, audio = asyncio.run(scenario())

    assert transcript == ["Hi", " you"]
    assert audio == [b"\x01\x00", b"\x02\x00"]


def test_text_response_end_to_end_through_multiplexer():
    async def scenario() -> str:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        connection.push(
            {"type": "response.created", "response": {"id": "r1"}},
            {"type": "response.output_item.added", "response_id": "r1",
             "item": {"id": "i1", "type": "message", "role": "assistant"}},
            {"type": "response.content_part.added", "item_id": "i1", "content_index": 0,
             "part": {"type": "text"}},
            {"type": "response.text.delta", "item_id": "i1", "content_index": 0, "delta": "ok"},
            {"type": "response.output_text.delta", "item_id": "i1", "content_index": 0, "delta": "!"},
            {"type": "response.done", "response": {"id": "r1"}},
        )

        store = ConversationStore()
        mux = TurnMultiplexer(store, store.new_session())
        response = await client.events().__anext__()
        messages = await mux.handle_response(response)
        await client.close()
        return messages[0].content

    assert asyncio.run(scenario()) == "ok!"


def test_vad_commit_yields_input_item_with_offsets():
    async def scenario() -> InputAudioItem:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        connection.push(
            {"type": "input_audio_buffer.speech_started", "item_id": "u1", "audio_start_ms": 120},
            {"type": "input_audio_buffer.speech_stopped", "item_id": "u1", "audio_end_ms": 980},
            {"type": "input_audio_buffer.committed", "item_id": "u1"},
            {"type": "conversation.item.input_audio_transcription.completed",
             "item_id": "u1", "transcript": "hello"},
        )

        item = await client.events().__anext__()
        assert isinstance(item, InputAudioItem)
        await item.wait_for_completion()
        await client.close()
        return item

    item = asyncio.run(scenario())

    assert (item.audio_start_ms, item.audio_end_ms) == (120, 980)
    assert item.transcription == "hello"


def test_manual_commit_resolves_with_item_and_is_not_queued():
    async def scenario() -> tuple[InputAudioItem, list[dict[str, Any]]]:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()

        commit = asyncio.create_task(client.commit_audio())
        await asyncio.sleep(0)
        connection.push({"type": "input_audio_buffer.committed", "item_id": "u9"})
        item = await commit

        await client.close()
        leftovers = [e async for e in client.events()]
        assert leftovers == []
        return item, connection.sent

    item, sent = asyncio.run(scenario())

    assert item.item_id == "u9"
    assert sent[-1] == {"type": "input_audio_buffer.commit"}


def test_send_audio_and_configure_wire_format():
    async def scenario() -> list[dict[str, Any]]:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        await client.configure(voice="alloy", turn_detection=None, modalities=("text",))
        await client.send_audio(b"\x01\x02")
        await client.generate_response()
        await client.close()
        return connection.sent

    sent = asyncio.run(scenario())

    assert sent[0] == {
        "type": "session.update",
        "session": {"voice": "alloy", "modalities": ["text"], "turn_detection": None},
    }
    assert sent[1] == {"type": "input_audio_buffer.append", "audio": b64(b"\x01\x02")}
    assert sent[2] == {"type": "response.create"}


def test_receive_failure_fails_open_sequences_and_events():
    async def scenario() -> None:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        connection.push(
            {"type": "response.created", "response": {"id": "r1"}},
            RuntimeError("socket reset"),
        )
        response = await client.events().__anext__()
        with pytest.raises(TransportError):
            async for _ in response:
                pass
        with pytest.raises(TransportError):
            await client.events().__anext__()
        await client.close()

    asyncio.run(scenario())


def test_send_before_connect_raises():
    client = OpenAIRealtimeClient(RealtimeConfig(api_key="k"))

    with pytest.raises(TransportError):
        asyncio.run(client.send_audio(b"\x00\x00"))


def test_text_part_type_routes_to_text_content():
    async def scenario() -> Any:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        connection.push(
            {"type": "response.created", "response": {"id": "r1"}},
            {"type": "response.output_item.added", "response_id": "r1",
             "item": {"id": "i1", "type": "message", "role": "assistant"}},
            {"type": "response.content_part.added", "item_id": "i1", "content_index": 0,
             "part": {"type": "text"}},
        )
        response = await client.events().__anext__()
        item = await response.__aiter__().__anext__()
        content = await item.__aiter__().__anext__()
        await client.close()
        return content

    assert isinstance(asyncio.run(scenario()), TextContent)


def test_malformed_audio_delta_is_skipped_and_stream_continues():
    async def scenario() -> list[bytes]:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        turn = audio_turn()
        # Replace the first audio delta with something that is not base64
        turn[4] = {**turn[4], "delta": "not*base64!"}
        connection.push(*turn)

        response = await client.events().__anext__()
        audio: list[bytes] = []
        async for item in response:
            async for content in item:
                assert isinstance(content, AudioContent)
                audio += [a async for a in content.audio_chunks()]
                _ = [t async for t in content.transcript_chunks()]
        await client.close()
        return audio

    assert asyncio.run(scenario()) == [b"\x02\x00"]


def test_abandoned_speech_start_does_not_leak_into_later_commit():
    async def scenario() -> InputAudioItem:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        connection.push(
            # Never stopped or committed
            {"type": "input_audio_buffer.speech_started", "item_id": "u1", "audio_start_ms": 10},
            {"type": "input_audio_buffer.speech_started", "item_id": "u2", "audio_start_ms": 400},
            {"type": "input_audio_buffer.speech_stopped", "item_id": "u2", "audio_end_ms": 900},
            {"type": "input_audio_buffer.committed", "item_id": "u1"},
        )
        item = await client.events().__anext__()
        await client.close()
        return item

    item = asyncio.run(scenario())

    assert item.item_id == "u1"
    assert (item.audio_start_ms, item.audio_end_ms) == (None, None)


def test_cleared_buffer_forgets_speech_offsets():
    async def scenario() -> InputAudioItem:
        connection = FakeConnection()
        client = make_client(connection)
        await client.connect()
        connection.push(
            {"type": "input_audio_buffer.speech_started", "item_id": "u1", "audio_start_ms": 10},
            {"type": "input_audio_buffer.speech_stopped", "item_id": "u1", "audio_end_ms": 200},
            {"type": "input_audio_buffer.cleared"},
            {"type": "input_audio_buffer.committed", "item_id": "u1"},
        )
        item = await client.events().__anext__()
        await client.close()
        return item

    item = asyncio.run(scenario())

    assert (item.audio_start_ms, item.audio_end_ms) == (None, None)
