"""
Turn phase enumeration.

A turn starts OPEN, becomes TEXT_ONLY or MIXED once its first content
item is seen, and ends CLOSED when every nested sequence is drained.
"""

from __future__ import annotations

from enum import Enum


class TurnPhase(str, Enum):
    """Observable phase of one assistant response turn."""

    OPEN = "OPEN"
    TEXT_ONLY = "TEXT_ONLY"
    MIXED = "MIXED"
    CLOSED = "CLOSED"
