"""
Latency metrics for gateway round trips and conversational turns.

- Durations use monotonic time (immune to clock changes)
- One metric = one METRIC_TIMER log event, no aggregation
- Prefer `timed()` for synchronous blocks; turns that resolve through
  futures use start_timer()/stop_timer() directly
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

    Callers MUST eventually call stop_timer() with the id, or the entry
    leaks until process exit.
    """
    timer_id = f"timer_{uuid.uuid4().hex[:12]}"
    _active_timers[timer_id] = (name, time.monotonic_ns())
    return timer_id


def stop_timer(
    timer_id: str,
    *,
    session_id: str | None = None,
    outcome: str | None = None,
    details: dict[str, Any] | None = None,
) -> int | None:
    """
    Stop a timer and emit its metric.

    Returns duration_ms if the timer existed, else None (already stopped).
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
        "session_id": session_id,
        "outcome": outcome,
        "details": details or {},
    })

    return duration_ms


def active_timer_count() -> int:
    return len(_active_timers)


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[None]:
    """
    Measure a block; the metric is emitted exactly once even on error.

        with timed("gateway_handshake"):
            await client.connect()
    """
    timer_id = start_timer(name)
    outcome = "ok"
    try:
        yield
    except BaseException:
        outcome = "error"
        raise
    finally:
        stop_timer(timer_id, session_id=session_id, outcome=outcome, details=details)
