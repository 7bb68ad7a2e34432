"""
Chat LLM adapter contract.

Purpose:
- Define the interface for text chat completions over a remote endpoint.
- Keep cancellation and registry bookkeeping OUT of the adapter: the
  caller owns the CancellationHandle and passes it in.

Rules:
- This file contains NO logic.
- No retries.
- No knowledge of UI, stores or realtime sessions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping

import httpx

from config import ModelConfig
from orchestrator.cancellation import CancellationHandle


@dataclass
class ChatOptions:
    """
    One chat request.

    messages:
        Role/content dicts, oldest first. Roles: user | assistant | system.
    on_update(delta):
        Incremental text, streaming only.
    on_finish(text, response):
        Final text, at most once.
    on_error(exc):
        Failure, at most once (a content block notice may precede on_finish).
    """
    messages: list[dict[str, str]]
    config: ModelConfig
    on_finish: Callable[[str, httpx.Response], None]
    on_update: Callable[[str], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    log_fields: Mapping[str, Any] = field(default_factory=dict)


class LLMAdapter(ABC):
    """
    Abstract base class for chat adapters.

    The adapter is a *dumb pipe*:
    messages -> vendor request -> callbacks.

    Caller responsibilities (NOT here):
    - Creating and registering the cancellation handle
    - Deciding what to do with text
    - Marking messages as failed
    """

    @abstractmethod
    async def chat(self, options: ChatOptions, signal: CancellationHandle) -> None:
        """
        Run one chat request to completion.

        Contract:
        - Must report through options callbacks only; never raises for
          request failures.
        - Must stop promptly once `signal` is aborted.
        """
        raise NotImplementedError

    @abstractmethod
    def generate_stream(self, text: str) -> AsyncIterator[str]:
        """
        Single-prompt streaming variant.

        Yields text deltas; raises on failure instead of reporting through
        callbacks. Closing the iterator aborts the request.
        """
        raise NotImplementedError
