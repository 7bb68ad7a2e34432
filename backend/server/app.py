"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (HTTP client, registry, store, chat controller)
- Register routes
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adapters.llm.gemini import GeminiChatAdapter
from adapters.upload.http_uploader import HttpBlobUploader
from config import AppConfig
from context.store import ConversationStore
from observability.logger import set_enabled
from orchestrator.cancellation import CancellationRegistry
from session.chat_controller import ChatController
from session.realtime_session import ClientFactory
from streaming.reader import ChunkedResponseReader

from server.routes import register_routes


def create_app(
    config: AppConfig | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    realtime_client_factory: ClientFactory | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with different configurations (inject config / http_client)
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    set_enabled(config.enable_json_logs)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        app.state.chat_controller.stop_all()
        if owns_client:
            await client.aclose()

    app = FastAPI(title="Conversation Streaming API", lifespan=lifespan)

    app.state.config = config
    app.state.http_client = client

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One registry and store per process
    app.state.registry = CancellationRegistry()
    app.state.store = ConversationStore()

    reader = ChunkedResponseReader(client, timeout_ms=config.request_timeout_ms)
    app.state.chat_controller = ChatController(
        app.state.store,
        app.state.registry,
        GeminiChatAdapter(
            reader,
            api_key=config.google_api_key,
            base_url=config.google_base_url,
            model_config=config.chat,
        ),
        config.chat,
    )

    app.state.uploader = (
        HttpBlobUploader(client, config.upload_url) if config.upload_url else None
    )
    app.state.realtime_client_factory = realtime_client_factory

    # Routes
    register_routes(app)

    return app
