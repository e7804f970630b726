"""
Sliding-window notification deduplicator.

Responsibilities:
- First notification from a source is flushed immediately (count 1)
- Repeats inside the window are counted; only the latest body is kept
- Every repeat restarts the window for that source
- When a window closes with repeats pending, flush once with the count

Non-responsibilities:
- No formatting, no display access (the flush callback decides)
- No persistence: close() forgets everything without flushing

A burst of n notifications therefore produces exactly two flushes:
count 1 immediately, then count n-1 after the last one settles.
"""

from __future__ import annotations

import asyncio
import inspect
from asyncio import Task
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from constants import NOTIFICATION_DEDUP_WINDOW_MS
from observability.logger import log_event


# (source_key, body, count)
FlushFn = Callable[[str, str, int], Awaitable[None] | None]


@dataclass(eq=False)
class DedupEntry:
    source_key: str
    count: int = 0
    last_body: str = ""
    window_timer: Task[None] | None = field(default=None, repr=False)


class NotificationDeduplicator:
    """One per session. Keyed by source (the notifying app)."""

    def __init__(
        self,
        flush: FlushFn,
        *,
        window_ms: int = NOTIFICATION_DEDUP_WINDOW_MS,
        session_id: str | None = None,
    ) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        self._flush = flush
        self._window_ms = window_ms
        self._session_id = session_id
        self._entries: dict[str, DedupEntry] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def add(self, source_key: str, body: str) -> None:
        if self._closed:
            return

        entry = self._entries.get(source_key)
        if entry is None:
            entry = DedupEntry(source_key=source_key, last_body=body)
            self._entries[source_key] = entry
            self._restart_window(entry)
            await self._emit(source_key, body, 1)
            return

        entry.count += 1
        entry.last_body = body
        self._restart_window(entry)
        log_event({
            "event_type": "NOTIFICATION_COALESCED",
            "session_id": self._session_id,
            "source_key": source_key,
            "pending_count": entry.count,
        })

    def close(self) -> None:
        """Cancel every window timer. Pending counts are dropped."""
        self._closed = True
        for entry in self._entries.values():
            if entry.window_timer is not None:
                entry.window_timer.cancel()
        self._entries.clear()

    def pending(self, source_key: str) -> int:
        entry = self._entries.get(source_key)
        return entry.count if entry else 0

    def snapshot(self) -> dict[str, Any]:
        return {
            key: {"pending": entry.count, "last_body": entry.last_body[:40]}
            for key, entry in self._entries.items()
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _restart_window(self, entry: DedupEntry) -> None:
        if entry.window_timer is not None:
            entry.window_timer.cancel()
        entry.window_timer = asyncio.create_task(self._window_task(entry))

    async def _window_task(self, entry: DedupEntry) -> None:
        try:
            await asyncio.sleep(self._window_ms / 1000.0)
        except asyncio.CancelledError:
            return

        if self._entries.get(entry.source_key) is not entry:
            return
        del self._entries[entry.source_key]

        if entry.count > 0:
            await self._emit(entry.source_key, entry.last_body, entry.count)

    async def _emit(self, source_key: str, body: str, count: int) -> None:
        log_event({
            "event_type": "NOTIFICATION_FLUSH",
            "session_id": self._session_id,
            "source_key": source_key,
            "count": count,
        })
        try:
            result = self._flush(source_key, body, count)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "NOTIFICATION_FLUSH_FAILED",
                "session_id": self._session_id,
                "source_key": source_key,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
