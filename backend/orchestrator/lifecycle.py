"""
Pure session lifecycle transitions.

(state, action) -> Transition(state, accepted, decision)

Rules:
- Pure: no side effects, no IO, no clocks.
- Total: every (state, action) pair is either accepted or rejected with
  the state left unchanged.
- Linear except for the CONNECTED <-> RECORDING toggle.

    IDLE -> CONNECTING -> CONNECTED <-> RECORDING
                 |            |             |
                 v            v             v
               IDLE      DISCONNECTING -> IDLE
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from orchestrator.enums.state import SessionState


class LifecycleAction(str, Enum):
    """Inputs to the lifecycle state machine."""

    CONNECT = "CONNECT"
    CONNECT_SUCCEEDED = "CONNECT_SUCCEEDED"
    CONNECT_FAILED = "CONNECT_FAILED"
    DISCONNECT = "DISCONNECT"
    DISCONNECT_COMPLETED = "DISCONNECT_COMPLETED"
    START_RECORDING = "START_RECORDING"
    STOP_RECORDING = "STOP_RECORDING"


@dataclass(frozen=True)
class Transition:
    """
    Result of applying one action.

    decision is a short log label: "state_changed" or "rejected".
    """
    state: SessionState
    accepted: bool
    decision: str


# (from_state, action) -> to_state
_TABLE: dict[tuple[SessionState, LifecycleAction], SessionState] = {
    (SessionState.IDLE, LifecycleAction.CONNECT): SessionState.CONNECTING,
    (SessionState.CONNECTING, LifecycleAction.CONNECT_SUCCEEDED): SessionState.CONNECTED,
    (SessionState.CONNECTING, LifecycleAction.CONNECT_FAILED): SessionState.IDLE,
    (SessionState.CONNECTED, LifecycleAction.DISCONNECT): SessionState.DISCONNECTING,
    (SessionState.RECORDING, LifecycleAction.DISCONNECT): SessionState.DISCONNECTING,
    (SessionState.DISCONNECTING, LifecycleAction.DISCONNECT_COMPLETED): SessionState.IDLE,
    (SessionState.CONNECTED, LifecycleAction.START_RECORDING): SessionState.RECORDING,
    (SessionState.RECORDING, LifecycleAction.STOP_RECORDING): SessionState.CONNECTED,
}


def transition(state: SessionState, action: LifecycleAction) -> Transition:
    """Apply `action` to `state`. Rejected actions keep `state`."""
    next_state = _TABLE.get((state, action))
    if next_state is None:
        return Transition(state=state, accepted=False, decision="rejected")
    return Transition(state=next_state, accepted=True, decision="state_changed")


def is_allowed(state: SessionState, action: LifecycleAction) -> bool:
    return (state, action) in _TABLE
