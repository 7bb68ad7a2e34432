# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from dataclasses import replace
from typing import Any, AsyncIterator

import pytest

from adapters.audio.buffered import BufferedAudioHandler
from adapters.realtime.base import RealtimeClient, RealtimeEvent
from config import RealtimeConfig
from context.store import ConversationStore
from observability import logger
from orchestrator.enums.state import SessionState
from orchestrator.errors import LifecycleError
from orchestrator.turns import (
    ChunkStream,
    InputAudioItem,
    RealtimeResponse,
    ResponseItem,
    TextContent,
)
from session.realtime_session import RealtimeSession


@pytest.fixture(autouse=True)
def _quiet_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logger, "_print", lambda line: None)


class FakeClient(RealtimeClient):
    def __init__(self, *, fail_connect: bool = False, fail_close: bool = False) -> None:
        self.fail_connect = fail_connect
        self.fail_close = fail_close
        self.configured: list[dict[str, Any]] = []
        self.sent_audio: list[bytes] = []
        self.committed = 0
        self.responses_requested = 0
        self.closed = False
        self.stream: ChunkStream[RealtimeEvent] = ChunkStream()

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionError("no route")

    async def configure(self, **options: Any) -> None:
        self.configured.append(options)

    def events(self) -> AsyncIterator[RealtimeEvent]:
        return self.stream

    async def send_audio(self, chunk: bytes) -> None:
        self.sent_audio.append(chunk)

    async def commit_audio(self) -> InputAudioItem:
        self.committed += 1
        item = InputAudioItem("in_manual", audio_start_ms=0, audio_end_ms=5)
        item.complete("typed by voice")
        return item

    async def generate_response(self) -> None:
        self.responses_requested += 1

    async def close(self) -> None:
        self.closed = True
        self.stream.close()
        if self.fail_close:
            raise RuntimeError("close exploded")


def make_session(client: FakeClient, **config: Any) -> RealtimeSession:
    store = ConversationStore()
    return RealtimeSession(
        store,
        store.new_session(),
        replace(RealtimeConfig(api_key="k"), **config),
        client_factory=lambda _config: client,
    )


# ---------------------------------------------------------------------
# Connect / disconnect
# ---------------------------------------------------------------------

def test_connect_configures_client_and_reaches_connected():
    client = FakeClient()
    rt = make_session(client, voice="verse", use_vad=True)

    async def scenario() -> None:
        await rt.connect()
        assert rt.state is SessionState.CONNECTED
        await rt.disconnect()

    asyncio.run(scenario())

    options = client.configured[0]
    assert options["voice"] == "verse"
    assert options["turn_detection"] == {"type": "server_vad"}
    assert options["input_transcription_model"] == "whisper-1"
    assert tuple(options["modalities"]) == ("text", "audio")
    assert rt.state is SessionState.IDLE
    assert client.closed


def test_failed_connect_returns_to_idle_without_client():
    client = FakeClient(fail_connect=True)
    rt = make_session(client)

    asyncio.run(rt.connect())

    assert rt.state is SessionState.IDLE
    assert rt.client is None
    assert client.closed
    assert rt.status == "Connection failed: no route"


def test_failed_disconnect_still_ends_idle():
    client = FakeClient(fail_close=True)
    rt = make_session(client)

    async def scenario() -> None:
        await rt.connect()
        await rt.disconnect()

    asyncio.run(scenario())

    assert rt.state is SessionState.IDLE
    assert rt.client is None
    assert rt.status == "Disconnect failed: close exploded"


def test_handle_connect_toggles():
    client = FakeClient()
    rt = make_session(client)

    async def scenario() -> list[SessionState]:
        states = []
        await rt.handle_connect()
        states.append(rt.state)
        await rt.handle_connect()
        states.append(rt.state)
        return states

    assert asyncio.run(scenario()) == [SessionState.CONNECTED, SessionState.IDLE]


def test_disconnect_when_idle_is_ignored():
    rt = make_session(FakeClient())

    asyncio.run(rt.disconnect())

    assert rt.state is SessionState.IDLE


# ---------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------

def test_start_recording_while_idle_raises_without_mutation():
    rt = make_session(FakeClient())

    with pytest.raises(LifecycleError):
        asyncio.run(rt.start_recording())

    assert rt.state is SessionState.IDLE
    assert rt.audio is None
    assert rt.status == ""


def test_audio_forwarded_only_while_recording():
    client = FakeClient()
    rt = make_session(client)

    async def scenario() -> None:
        await rt.connect()
        await rt.start_recording()
        assert rt.state is SessionState.RECORDING
        assert rt.status == "Recording..."

        audio = rt.audio
        assert isinstance(audio, BufferedAudioHandler)
        await audio.feed_microphone(b"\x01\x00")
        await rt.stop_recording()
        await audio.feed_microphone(b"\x02\x00")
        await rt.close()

    asyncio.run(scenario())

    assert client.sent_audio == [b"\x01\x00"]
    assert client.committed == 0
    assert rt.state is SessionState.IDLE


def test_stop_recording_without_vad_commits_and_requests_response():
    client = FakeClient()
    rt = make_session(client, use_vad=False)

    async def scenario() -> None:
        await rt.connect()
        await rt.toggle_recording()
        await rt.toggle_recording()
        assert rt.state is SessionState.CONNECTED
        await rt.close()

    asyncio.run(scenario())

    assert client.configured[0]["turn_detection"] is None
    assert client.committed == 1
    assert client.responses_requested == 1
    assert [m.content for m in rt.messages] == ["typed by voice"]
    assert rt.session.messages[0].role == "user"


# ---------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------

def test_listener_feeds_responses_into_messages():
    client = FakeClient()
    rt = make_session(client)

    async def scenario() -> None:
        await rt.connect()
        text = TextContent(content_index=0, chunks=ChunkStream.of(["pong"]))
        item = ResponseItem(item_id="i1", role="assistant", contents=ChunkStream.of([text]))
        client.stream.feed(RealtimeResponse(response_id="r1", items=ChunkStream.of([item])))
        while not rt.messages:
            await asyncio.sleep(0.01)
        await rt.close()

    asyncio.run(scenario())

    assert [m.content for m in rt.messages] == ["pong"]


def test_listener_failure_sets_status_while_connected():
    client = FakeClient()
    rt = make_session(client)

    async def scenario() -> None:
        await rt.connect()
        client.stream.fail(RuntimeError("stream broke"))
        while not rt.status:
            await asyncio.sleep(0.01)
        await rt.close()

    asyncio.run(scenario())

    assert rt.state is SessionState.IDLE
    assert "Response iteration error: stream broke" == rt.status


def test_update_config_pushes_only_when_connected():
    client = FakeClient()
    rt = make_session(client)

    async def scenario() -> None:
        await rt.update_config(voice="sage")
        await rt.connect()
        await rt.update_config(temperature=0.6)
        await rt.close()

    asyncio.run(scenario())

    assert rt.config.voice == "sage"
    assert rt.config.temperature == 0.6
    # Initial configure + one live update
    assert client.configured[0]["voice"] == "sage"
    assert client.configured[1] == {"temperature": 0.6}
