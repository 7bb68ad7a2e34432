"""
Realtime session lifecycle states.

Rules:
- This enum defines ONLY the connection/recording lifecycle.
- No behavior, no helper methods, no side effects.
- Transitions are defined exclusively in orchestrator.lifecycle.
"""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    """
    Lifecycle of one realtime client instance.

    Linear except for the CONNECTED <-> RECORDING toggle.
    """

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECORDING = "RECORDING"
    DISCONNECTING = "DISCONNECTING"
