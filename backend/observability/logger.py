"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- No side effects beyond logging

Every record carries an `event_type` discriminant; `ts_ms` is filled in
when the caller did not supply one.
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Mapping, Callable


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

# Human-readable "EVENT_TYPE key=value" lines when False
_json_lines: bool = True


def configure(*, json_lines: bool) -> None:
    """Select JSONL (default) or key=value output. Called once at startup."""
    global _json_lines  # pylint: disable=global-statement
    _json_lines = json_lines


def now_ms() -> int:
    """Wall-clock milliseconds for log correlation."""
    return time.time_ns() // 1_000_000


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single event record to stdout.

    The caller supplies `event_type` and any context fields
    (session_id, run_id, ...). `ts_ms` defaults to now.

    This function never raises.
    """
    record: dict[str, Any] = {"ts_ms": now_ms(), **event}

    if not _json_lines:
        _print(_format_plain(record))
        return

    try:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Logging must never crash the bridge
        fallback: dict[str, Any] = {
            "ts_ms": record.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)


def _format_plain(record: Mapping[str, Any]) -> str:
    head = str(record.get("event_type", "EVENT"))
    rest = " ".join(
        f"{k}={v!r}" for k, v in record.items() if k not in ("event_type", "ts_ms")
    )
    return f"{head} {rest}".rstrip()
