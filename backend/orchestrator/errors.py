"""
Error taxonomy for the streaming core.

Propagation:
- TransportError, ProtocolError, DecodeError: caught at the reader
  boundary and surfaced through on_error, never raised past it.
- ContentBlockedError: surfaced through on_error; on_finish may still fire.
- LifecycleError: raised by guarded session methods before any state
  mutation happens.

No error in this module triggers an automatic retry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from orchestrator.enums.abort import AbortReason
    from orchestrator.enums.state import SessionState
    from orchestrator.lifecycle import LifecycleAction


class OrchestrationError(Exception):
    """Base class for streaming core errors."""


class TransportError(OrchestrationError):
    """
    The request did not complete.

    reason is set when the request was aborted through its handle, so
    callers can tell user cancellation from a deadline abort.
    """

    def __init__(self, message: str, *, reason: AbortReason | None = None) -> None:
        super().__init__(message)
        self.reason = reason

    @property
    def aborted(self) -> bool:
        """True when the failure came from an abort signal."""
        return self.reason is not None


class ProtocolError(OrchestrationError):
    """Non-success status with a (possibly malformed) structured error body."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ContentBlockedError(OrchestrationError):
    """Success status, but the provider blocked the content."""

    def __init__(self, block_reason: str) -> None:
        super().__init__(f"Message is being blocked for reason: {block_reason}")
        self.block_reason = block_reason


class DecodeError(OrchestrationError):
    """A chunk could not be decoded to text."""


class LifecycleError(OrchestrationError):
    """An operation was invoked in a session state that does not allow it."""

    def __init__(self, state: SessionState, action: LifecycleAction) -> None:
        super().__init__(f"{action.value} not allowed in state {state.value}")
        self.state = state
        self.action = action
