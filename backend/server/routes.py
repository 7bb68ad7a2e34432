"""
Route registration for the conversation streaming API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Pull dependencies from app.state
- Bridge reader callbacks / realtime sessions to the wire

Endpoints:
    GET  /health
    GET  /api/chat/pending
    POST /api/chat/cancel-all
    GET  /api/chat/{conversation_id}/messages
    POST /api/chat/{conversation_id}                      (text/plain stream)
    POST /api/chat/{conversation_id}/{message_id}/cancel
    WS   /ws/realtime/{conversation_id}
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from adapters.audio.buffered import BufferedAudioHandler
from context.messages import ChatMessage
from context.store import ConversationStore
from observability.logger import log_event
from orchestrator.errors import LifecycleError
from orchestrator.turns import ChunkStream
from session.chat_controller import ChatController, PendingChat
from session.realtime_session import RealtimeSession


class ChatRequest(BaseModel):
    """Body of POST /api/chat/{conversation_id}."""
    message: str


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Text chat
    # ------------------------------------------------------------------

    @app.get("/api/chat/pending")
    async def chat_pending() -> dict[str, bool]: # pyright: ignore[reportUnusedFunction]
        controller: ChatController = app.state.chat_controller
        return {"pending": controller.has_pending()}

    @app.post("/api/chat/cancel-all")
    async def chat_cancel_all() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        controller: ChatController = app.state.chat_controller
        controller.stop_all()
        return {"status": "ok"}

    @app.get("/api/chat/{conversation_id}/messages")
    async def chat_messages(conversation_id: str) -> list[dict[str, Any]]: # pyright: ignore[reportUnusedFunction]
        store: ConversationStore = app.state.store
        session = store.get(conversation_id)
        if session is None:
            return []
        return [_message_view(m) for m in session.messages]

    @app.post("/api/chat/{conversation_id}")
    async def chat_send(conversation_id: str, request: ChatRequest) -> StreamingResponse: # pyright: ignore[reportUnusedFunction]
        store: ConversationStore = app.state.store
        controller: ChatController = app.state.chat_controller

        session = store.get_or_create(conversation_id)
        pending = controller.open_turn(session, request.message)

        return StreamingResponse(
            _stream_turn(controller, pending),
            media_type="text/plain; charset=utf-8",
            headers={"X-Message-Id": pending.bot.id},
        )

    @app.post("/api/chat/{conversation_id}/{message_id}/cancel")
    async def chat_cancel(conversation_id: str, message_id: str) -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        controller: ChatController = app.state.chat_controller
        controller.stop(conversation_id, message_id)
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Realtime voice
    # ------------------------------------------------------------------

    @app.websocket("/ws/realtime/{conversation_id}")
    async def realtime_endpoint(ws: WebSocket, conversation_id: str) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        store: ConversationStore = app.state.store
        session = store.get_or_create(conversation_id)
        outbound: asyncio.Queue[str | bytes] = asyncio.Queue()

        realtime = RealtimeSession(
            store,
            session,
            app.state.config.realtime,
            client_factory=app.state.realtime_client_factory,
            audio_factory=lambda: BufferedAudioHandler(sink=outbound.put_nowait),
            uploader=app.state.uploader,
        )

        # message id -> last view pushed to the client
        pushed: dict[str, dict[str, Any]] = {}

        def _on_change(target: Any) -> None:
            if target.id != session.id:
                return
            # Late publishes (audio_url attachments) may touch any message
            for message in target.messages:
                view = _message_view(message)
                if pushed.get(message.id) == view:
                    continue
                pushed[message.id] = view
                outbound.put_nowait(json.dumps({"type": "message", "message": view}))

        unsubscribe = store.subscribe(_on_change)
        sender = asyncio.create_task(_send_outbound(ws, outbound))

        try:
            while True:
                msg = await ws.receive()

                if msg["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect()

                if msg.get("bytes") is not None:
                    audio = realtime.audio
                    if isinstance(audio, BufferedAudioHandler):
                        await audio.feed_microphone(msg["bytes"])

                elif msg.get("text") is not None:
                    await _handle_control(realtime, json.loads(msg["text"]))
                    outbound.put_nowait(json.dumps(_status_view(realtime)))

        except WebSocketDisconnect:
            log_event({
                "event_type": "realtime_ws_closed",
                "session_id": session.id,
                "reason": "client_disconnect",
            })

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "session_id": session.id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            unsubscribe()
            await realtime.close()
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

async def _stream_turn(controller: ChatController, pending: PendingChat) -> AsyncIterator[str]:
    """Yield deltas while the turn runs, then whatever was not streamed."""
    deltas: ChunkStream[str] = ChunkStream("chat")
    task = asyncio.create_task(controller.run_turn(pending, on_update=deltas.feed))
    task.add_done_callback(lambda _task: deltas.close())

    sent = 0
    try:
        async for delta in deltas:
            sent += len(delta)
            yield delta

        bot = await task
        # Non-streamed text and error notes never went through on_update
        tail = bot.content[sent:]
        if tail:
            yield tail
    finally:
        if not task.done():
            # Client went away mid-stream
            pending.handle.abort()
            await asyncio.gather(task, return_exceptions=True)


async def _handle_control(realtime: RealtimeSession, command: dict[str, Any]) -> None:
    command_type = command.get("type")
    try:
        if command_type == "connect":
            await realtime.handle_connect()
        elif command_type == "disconnect":
            await realtime.disconnect()
        elif command_type == "toggle_recording":
            await realtime.toggle_recording()
        elif command_type == "update_config":
            await realtime.update_config(
                voice=command.get("voice"),
                temperature=command.get("temperature"),
            )
        else:
            realtime.status = f"Unknown command: {command_type}"
    except LifecycleError as exc:
        realtime.status = str(exc)


async def _send_outbound(ws: WebSocket, outbound: asyncio.Queue[str | bytes]) -> None:
    while True:
        item = await outbound.get()
        if isinstance(item, bytes):
            await ws.send_bytes(item)
        else:
            await ws.send_text(item)


def _message_view(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "audio_url": message.audio_url,
        "streaming": message.streaming,
        "is_error": message.is_error,
        "date_ms": message.date_ms,
    }


def _status_view(realtime: RealtimeSession) -> dict[str, Any]:
    return {
        "type": "status",
        "state": realtime.state.value,
        "status": realtime.status,
    }
