"""
Trailing-debounce batcher for speech fragments (copilot mode).

Responsibilities:
- Accumulate final transcript fragments; every push restarts the debounce
- On debounce fire, join the buffer and submit exactly one turn
- Never send while a previous batch is in flight; the flush is deferred
  and retried once that send completes
- Safety timer: a batch in flight for too long is abandoned, outstanding
  turns are cancelled and the buffer drains immediately

Non-responsibilities:
- No knowledge of the gateway beyond the injected callables
- No rendering (replies go to on_reply after classification)

Invariant: the buffer is cleared only by being sent or by cancel().
"""

from __future__ import annotations

import asyncio
from asyncio import Task
from typing import Any, Awaitable, Callable

from constants import COPILOT_DEBOUNCE_MS, COPILOT_SAFETY_MS
from gateway.replies import ReplyKind, classify_reply
from observability.logger import log_event


SubmitFn = Callable[[str], Awaitable[str]]
ReplyFn = Callable[[str], Awaitable[None]]
CancelAllFn = Callable[[], int]


class InputBatcher:
    def __init__(
        self,
        *,
        submit: SubmitFn,
        on_reply: ReplyFn,
        cancel_all: CancelAllFn,
        debounce_ms: int = COPILOT_DEBOUNCE_MS,
        safety_ms: int = COPILOT_SAFETY_MS,
        session_id: str | None = None,
    ) -> None:
        self._submit = submit
        self._on_reply = on_reply
        self._cancel_all = cancel_all
        self._debounce_ms = debounce_ms
        self._safety_ms = safety_ms
        self._session_id = session_id

        self._buffer: list[str] = []
        self._in_flight = False
        self._flush_deferred = False
        self._batch_seq = 0

        self._debounce_timer: Task[None] | None = None
        self._safety_timer: Task[None] | None = None
        self._send_task: Task[None] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def buffered(self) -> tuple[str, ...]:
        return tuple(self._buffer)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def has_pending_timers(self) -> bool:
        return any(
            t is not None and not t.done()
            for t in (self._debounce_timer, self._safety_timer)
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "buffered": len(self._buffer),
            "in_flight": self._in_flight,
            "flush_deferred": self._flush_deferred,
            "debounce_pending": _pending(self._debounce_timer),
            "safety_pending": _pending(self._safety_timer),
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, fragment: str) -> None:
        text = fragment.strip()
        if not text:
            return
        self._buffer.append(text)
        self._restart_debounce()

    def flush(self) -> bool:
        """
        Send the buffer as one turn.

        Returns True if a send was started. While a batch is in flight the
        flush is deferred instead and the buffer is left untouched.
        """
        self._cancel(self._debounce_timer)
        self._debounce_timer = None

        if not self._buffer:
            return False

        if self._in_flight:
            self._flush_deferred = True
            log_event({
                "event_type": "BATCH_FLUSH_DEFERRED",
                "session_id": self._session_id,
                "buffered": len(self._buffer),
            })
            return False

        message = " ".join(self._buffer)
        count = len(self._buffer)
        self._buffer.clear()
        self._flush_deferred = False

        self._batch_seq += 1
        seq = self._batch_seq
        self._in_flight = True
        self._cancel(self._safety_timer)
        self._safety_timer = asyncio.create_task(self._safety_task(seq))
        self._send_task = asyncio.create_task(self._send(seq, message))

        log_event({
            "event_type": "BATCH_SENT",
            "session_id": self._session_id,
            "batch": seq,
            "fragments": count,
            "chars": len(message),
        })
        return True

    def cancel(self) -> None:
        """Operator cancel: drop buffered fragments and stop timers."""
        dropped = len(self._buffer)
        self._buffer.clear()
        self._flush_deferred = False
        self._cancel(self._debounce_timer)
        self._cancel(self._safety_timer)
        self._debounce_timer = None
        self._safety_timer = None
        log_event({
            "event_type": "BATCH_CANCELLED",
            "session_id": self._session_id,
            "dropped": dropped,
        })

    async def close(self) -> None:
        """Session teardown: cancel() plus the in-flight send."""
        self.cancel()
        task = self._send_task
        self._send_task = None
        self._in_flight = False
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _restart_debounce(self) -> None:
        self._cancel(self._debounce_timer)
        self._debounce_timer = asyncio.create_task(self._debounce_task())

    async def _debounce_task(self) -> None:
        try:
            await asyncio.sleep(self._debounce_ms / 1000.0)
        except asyncio.CancelledError:
            return
        self._debounce_timer = None
        self.flush()

    async def _send(self, seq: int, message: str) -> None:
        reply = ""
        try:
            reply = await self._submit(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "BATCH_SUBMIT_FAILED",
                "session_id": self._session_id,
                "batch": seq,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        if seq != self._batch_seq or not self._in_flight:
            log_event({
                "event_type": "BATCH_REPLY_STALE",
                "session_id": self._session_id,
                "batch": seq,
            })
            return

        self._in_flight = False
        self._cancel(self._safety_timer)
        self._safety_timer = None

        kind = classify_reply(reply)
        log_event({
            "event_type": "BATCH_REPLY",
            "session_id": self._session_id,
            "batch": seq,
            "reply_kind": kind.value,
        })
        if kind is ReplyKind.CONTENT:
            try:
                await self._on_reply(reply)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "BATCH_REPLY_HANDLER_FAILED",
                    "session_id": self._session_id,
                    "batch": seq,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })

        if self._flush_deferred and not self._in_flight:
            self.flush()

    async def _safety_task(self, seq: int) -> None:
        try:
            await asyncio.sleep(self._safety_ms / 1000.0)
        except asyncio.CancelledError:
            return

        if seq != self._batch_seq or not self._in_flight:
            return

        self._safety_timer = None
        self._in_flight = False
        cancelled = self._cancel_all()
        log_event({
            "event_type": "BATCH_SAFETY_TIMEOUT",
            "session_id": self._session_id,
            "batch": seq,
            "turns_cancelled": cancelled,
            "buffered": len(self._buffer),
        })
        self.flush()

    @staticmethod
    def _cancel(task: Task[None] | None) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()


def _pending(task: Task[None] | None) -> bool:
    return task is not None and not task.done()
