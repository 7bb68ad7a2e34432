"""
Chunked response reader.

Turns one request to a remote generation endpoint into callbacks:
- on_update(delta)       zero or more times (streaming only)
- on_finish(text, resp)  at most once
- on_error(exc)          at most once, never together with on_finish
                         (ContentBlockedError is the one exception: it is a
                         notice and on_finish may still follow)

Responsibilities:
- Arm a deadline that aborts the request handle if no response arrives
- Disarm it as soon as response headers are in
- Decode streamed bytes incrementally (multi-byte characters may be split
  across chunks)
- Turn non-success responses into ProtocolError with a best-effort message

Non-responsibilities:
- NO retries
- NO request-body shape, auth or vendor knowledge (see adapters/)
- NO registry bookkeeping (callers add/remove their handle)
"""

from __future__ import annotations

import asyncio
import codecs
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

import httpx

from observability.logger import log_event, log_exception
from observability.metrics import timed
from orchestrator.cancellation import CancellationHandle
from orchestrator.enums.abort import AbortReason
from orchestrator.errors import (
    ContentBlockedError,
    DecodeError,
    OrchestrationError,
    ProtocolError,
    TransportError,
)
from spec import LOG_PREVIEW_CHARS, REQUEST_TIMEOUT_MS


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------

FinishFn = Callable[[str, httpx.Response], None]
UpdateFn = Callable[[str], None]
ErrorFn = Callable[[Exception], None]
Extractor = Callable[[Any], str]
OptionalExtractor = Callable[[Any], Optional[str]]


@dataclass(frozen=True)
class RequestDescriptor:
    """
    Everything needed to issue one request.

    payload:
        dict/list (serialized as JSON), or pre-serialized str/bytes.
    signal:
        Handle that aborts the request (manual cancel or deadline).
    log_fields:
        Correlation ids copied into every log event for this request.
    """
    url: str
    payload: Any
    signal: CancellationHandle
    headers: Mapping[str, str] = field(default_factory=dict)
    method: str = "POST"
    log_fields: Mapping[str, Any] = field(default_factory=dict)

    def body(self) -> bytes | str:
        if isinstance(self.payload, (bytes, str)):
            return self.payload
        return json.dumps(self.payload)


@dataclass
class ReaderCallbacks:
    """
    Caller hooks.

    extract_message: body -> final text (non-streaming only; default is
                     the raw response text)
    extract_error:   body -> error message for non-success responses
    detect_block:    body -> block reason, or None when not blocked
    """
    on_finish: FinishFn
    on_update: UpdateFn | None = None
    on_error: ErrorFn | None = None
    extract_message: Extractor | None = None
    extract_error: OptionalExtractor | None = None
    detect_block: OptionalExtractor | None = None


class _Outcome:
    """
    Settlement guard: the first terminal report wins, the rest are no-ops.
    """

    def __init__(self, callbacks: ReaderCallbacks) -> None:
        self.callbacks = callbacks
        self.settled = False

    def update(self, delta: str) -> None:
        if not self.settled and self.callbacks.on_update is not None:
            self.callbacks.on_update(delta)

    def notice(self, exc: Exception) -> None:
        """Report through on_error without settling."""
        if not self.settled and self.callbacks.on_error is not None:
            self.callbacks.on_error(exc)

    def finish(self, text: str, response: httpx.Response) -> None:
        if self.settled:
            return
        self.settled = True
        self.callbacks.on_finish(text, response)

    def error(self, exc: Exception) -> None:
        if self.settled:
            return
        self.settled = True
        if self.callbacks.on_error is not None:
            self.callbacks.on_error(exc)


# ---------------------------------------------------------------------
# Error message contract
# ---------------------------------------------------------------------

def structured_error_message(body: Any, status_code: int) -> str:
    """
    Best-effort error message for a non-success response.

    Accepted shapes:
        {"error": "<message>"}
        {"error": {"message": "<message>"}}
    Anything else becomes a generic "API Error: HTTP <status>".
    """
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, str) and error:
            return f"API Error: {error}"
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message:
                return f"API Error: {message}"

    message = f"API Error: HTTP {status_code}"
    if isinstance(body, str) and body.strip():
        message += f": {body.strip()[:LOG_PREVIEW_CHARS]}"
    return message


def _parse_body(response: httpx.Response) -> Any:
    """JSON body when it parses, else the text body."""
    try:
        return response.json()
    except ValueError:
        try:
            return response.text
        except UnicodeDecodeError:
            return None


def _as_reported(exc: Exception) -> Exception:
    """Map a raw failure onto the error taxonomy."""
    if isinstance(exc, OrchestrationError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return TransportError(f"request timed out: {exc}", reason=AbortReason.TIMEOUT)
    if isinstance(exc, httpx.HTTPError):
        return TransportError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, UnicodeDecodeError):
        return DecodeError(f"malformed chunk: {exc}")
    return exc


# ---------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------

class ChunkedResponseReader:
    """
    Issues requests through a shared httpx.AsyncClient and reports the
    outcome through ReaderCallbacks.

    fetch() never raises for request failures; the only exception that
    escapes is cancellation of the calling task itself.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_ms: int = REQUEST_TIMEOUT_MS,
    ) -> None:
        self._client = client
        self._timeout_s = timeout_ms / 1000.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch(
        self,
        request: RequestDescriptor,
        *,
        streaming: bool,
        callbacks: ReaderCallbacks,
    ) -> None:
        """Perform the request and drive the callbacks to a terminal state."""
        outcome = _Outcome(callbacks)
        signal = request.signal

        if signal.aborted:
            outcome.error(
                TransportError("request aborted before start", reason=signal.reason)
            )
            return

        log_event({
            "event_type": "request_started",
            "url": _loggable_url(request.url),
            "streaming": streaming,
            **request.log_fields,
        })

        loop = asyncio.get_running_loop()
        deadline = loop.call_later(self._timeout_s, signal.abort, AbortReason.TIMEOUT)

        work = asyncio.create_task(self._run(request, streaming, outcome, deadline))
        signal.bind(work)

        try:
            await work
        except asyncio.CancelledError:
            if not (work.cancelled() and signal.aborted):
                # The caller itself is being cancelled
                raise
            reason = signal.reason
            log_event({
                "event_type": "request_aborted",
                "reason": reason.value if reason else None,
                **request.log_fields,
            })
            outcome.error(
                TransportError(
                    f"request aborted ({reason.value if reason else 'unknown'})",
                    reason=reason,
                )
            )
        finally:
            deadline.cancel()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _run(
        self,
        request: RequestDescriptor,
        streaming: bool,
        outcome: _Outcome,
        deadline: asyncio.TimerHandle,
    ) -> None:
        http_request = self._client.build_request(
            request.method,
            request.url,
            content=request.body(),
            headers=dict(request.headers),
        )

        try:
            with timed("request_headers_latency", streaming=streaming, **request.log_fields):
                response = await self._client.send(http_request, stream=True)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            deadline.cancel()
            log_exception("request_failed", exc, **request.log_fields)
            outcome.error(_as_reported(exc))
            return

        # Deadline only bounds the wait for the response itself
        deadline.cancel()

        try:
            if streaming:
                await self._read_stream(response, outcome)
            else:
                await self._read_whole(response, outcome)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_exception(
                "response_read_failed",
                exc,
                status_code=response.status_code,
                **request.log_fields,
            )
            outcome.error(_as_reported(exc))
        finally:
            await response.aclose()

        log_event({
            "event_type": "request_settled",
            "status_code": response.status_code,
            "settled": outcome.settled,
            **request.log_fields,
        })

    async def _read_whole(self, response: httpx.Response, outcome: _Outcome) -> None:
        """Single request/response cycle."""
        callbacks = outcome.callbacks
        await response.aread()
        body = _parse_body(response)

        if not response.is_success:
            raise ProtocolError(
                self._error_message(body, response.status_code, callbacks),
                status_code=response.status_code,
            )

        if callbacks.detect_block is not None:
            block_reason = callbacks.detect_block(body)
            if block_reason:
                outcome.notice(ContentBlockedError(block_reason))

        if callbacks.extract_message is not None:
            message = callbacks.extract_message(body)
        else:
            message = response.text

        outcome.finish(message, response)

    async def _read_stream(self, response: httpx.Response, outcome: _Outcome) -> None:
        """Pull chunks until the body is exhausted."""
        callbacks = outcome.callbacks

        if not response.is_success:
            await response.aread()
            raise ProtocolError(
                self._error_message(_parse_body(response), response.status_code, callbacks),
                status_code=response.status_code,
            )

        # Decoder state is carried across reads so split characters survive
        decoder = codecs.getincrementaldecoder("utf-8")()
        parts: list[str] = []

        async for raw in response.aiter_bytes():
            if not raw:
                continue
            text = decoder.decode(raw)
            if not text:
                continue
            parts.append(text)
            outcome.update(text)

        tail = decoder.decode(b"", final=True)
        if tail:
            parts.append(tail)
            outcome.update(tail)

        full_text = "".join(parts)
        if full_text:
            outcome.finish(full_text, response)
        else:
            log_event({
                "event_type": "stream_empty",
                "status_code": response.status_code,
            })

    @staticmethod
    def _error_message(body: Any, status_code: int, callbacks: ReaderCallbacks) -> str:
        if callbacks.extract_error is not None:
            message = callbacks.extract_error(body)
            if message:
                return message
        return structured_error_message(body, status_code)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _loggable_url(url: str) -> str:
    """Strip the query string (may carry keys)."""
    return url.split("?", 1)[0]
