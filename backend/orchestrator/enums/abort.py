"""
Abort reasons carried by cancellation handles.
"""

from __future__ import annotations

from enum import Enum


class AbortReason(str, Enum):
    """
    Why an in-flight request was aborted.

    CANCELLED: explicit cancel through the registry (user stop, teardown)
    TIMEOUT:   the request deadline fired before a response arrived
    """

    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
