"""
Cancellation registry for in-flight generation requests.

Responsibilities:
- Map (conversation_id, message_id) -> CancellationHandle
- Abort one request, or every request on teardown
- Report whether anything is still outstanding

Non-responsibilities:
- NO retry logic
- NO knowledge of what the request was doing
- NO removal on abort (the owner of the request calls remove() when its
  stream reaches a terminal state)

No operation here raises. Absent keys are treated as already settled.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from observability.logger import log_event, log_exception
from orchestrator.enums.abort import AbortReason


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------

AbortCallback = Callable[[AbortReason], None]


@dataclass(frozen=True)
class CancellationKey:
    """Lookup key for one in-flight message generation."""
    conversation_id: str
    message_id: str

    def __str__(self) -> str:
        return f"{self.conversation_id},{self.message_id}"


class CancellationHandle:
    """
    Abortable token for one in-flight operation.

    Tasks bound to the handle are cancelled when it is aborted, so a
    pending read terminates at its next suspension point instead of
    hanging. The first abort wins; later calls are no-ops and keep the
    original reason.
    """

    def __init__(self) -> None:
        self._reason: AbortReason | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._callbacks: list[AbortCallback] = []

    # ------------------------------------------------------------------
    # Signal metadata
    # ------------------------------------------------------------------

    @property
    def aborted(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> AbortReason | None:
        return self._reason

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def bind(self, task: asyncio.Task[Any]) -> None:
        """Cancel `task` when this handle is aborted."""
        if self.aborted:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def add_abort_callback(self, callback: AbortCallback) -> None:
        """Run `callback(reason)` on abort (immediately if already aborted)."""
        if self._reason is not None:
            callback(self._reason)
            return
        self._callbacks.append(callback)

    # ------------------------------------------------------------------
    # Abort
    # ------------------------------------------------------------------

    def abort(self, reason: AbortReason = AbortReason.CANCELLED) -> bool:
        """
        Signal abort.

        Returns:
            True if this call aborted the handle, False if it was
            already aborted.
        """
        if self._reason is not None:
            return False
        self._reason = reason

        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        self._tasks.clear()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_exception("ABORT_CALLBACK_FAILED", exc, reason=reason.value)

        return True


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

class CancellationRegistry:
    """
    Owns the mapping from CancellationKey to the current handle.

    Exactly one handle per key: add() replaces silently. The caller
    is responsible for having aborted the previous handle if that was
    intended.

    Single-threaded cooperative scheduling only; entries are replaced or
    deleted atomically, so no lock is needed.
    """

    def __init__(self) -> None:
        self._handles: dict[CancellationKey, CancellationHandle] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @staticmethod
    def key(conversation_id: str, message_id: str) -> CancellationKey:
        return CancellationKey(conversation_id=conversation_id, message_id=message_id)

    def add(self, key: CancellationKey, handle: CancellationHandle) -> CancellationKey:
        """Store (or replace) the handle for `key`."""
        previous = self._handles.get(key)
        self._handles[key] = handle
        if previous is not None and previous is not handle:
            log_event({
                "event_type": "cancellation_handle_replaced",
                "conversation_id": key.conversation_id,
                "message_id": key.message_id,
                "previous_aborted": previous.aborted,
            })
        return key

    def get(self, key: CancellationKey) -> CancellationHandle | None:
        return self._handles.get(key)

    def cancel(self, key: CancellationKey) -> None:
        """Abort the handle for `key`, if any."""
        handle = self._handles.get(key)
        if handle is None:
            return
        if handle.abort(AbortReason.CANCELLED):
            log_event({
                "event_type": "request_cancelled",
                "conversation_id": key.conversation_id,
                "message_id": key.message_id,
            })

    def cancel_all(self) -> None:
        """
        Abort every registered handle.

        Used on global teardown. Entries stay until their owners remove
        them.
        """
        handles = list(self._handles.values())
        for handle in handles:
            handle.abort(AbortReason.CANCELLED)
        if handles:
            log_event({
                "event_type": "requests_cancelled_all",
                "count": len(handles),
            })

    def remove(
        self,
        key: CancellationKey,
        handle: CancellationHandle | None = None,
    ) -> None:
        """
        Forget `key` once its stream reached a terminal state.

        If `handle` is given, the entry is only removed while it still
        points at that handle, so a finishing stream cannot drop the
        handle that replaced it.
        """
        if handle is not None and self._handles.get(key) is not handle:
            return
        self._handles.pop(key, None)

    def has_pending(self) -> bool:
        return bool(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, key: object) -> bool:
        return key in self._handles
