"""
Timing helpers for observability.

- Durations use monotonic time
- One metric = one METRIC_TIMER log event
- Prefer the `timed()` context manager so timers cannot leak
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event


# timer_id -> (metric_name, start_time_ns)
_active_timers: dict[str, tuple[str, int]] = {}


def start_timer(name: str) -> str:
    """
    Start a monotonic timer and return its opaque id.

    Callers MUST call stop_timer() (or use timed()).
    """
    timer_id = f"timer_{uuid.uuid4().hex[:12]}"
    _active_timers[timer_id] = (name, time.monotonic_ns())
    return timer_id


def stop_timer(timer_id: str, **fields: Any) -> int | None:
    """
    Stop a timer and emit a METRIC_TIMER event.

    Extra keyword fields (conversation_id, message_id, ...) are copied
    into the event.

    Returns:
        duration_ms if the timer existed, else None
    """
    entry = _active_timers.pop(timer_id, None)
    if entry is None:
        return None

    name, start_ns = entry
    duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000

    log_event({
        "event_type": "METRIC_TIMER",
        "metric": name,
        "value_ms": duration_ms,
        **fields,
    })

    return duration_ms


def active_timer_count() -> int:
    """Number of timers started but not yet stopped."""
    return len(_active_timers)


@contextmanager
def timed(name: str, **fields: Any) -> Iterator[None]:
    """
    Measure the duration of a block.

    The metric is emitted exactly once, also when the block raises.

        with timed("request_headers_latency", message_id=mid):
            response = await client.send(request)
    """
    timer_id = start_timer(name)
    try:
        yield
    finally:
        stop_timer(timer_id, **fields)
