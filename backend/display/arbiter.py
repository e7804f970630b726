"""
Display arbiter: the single owner of one device's display.

Responsibilities:
- Serialize display jobs: exactly one renders at a time
- Apply priority: interactive jobs flush the queue and preempt, direct
  jobs preempt, passive jobs queue while busy
- Paginate long replies and dwell on each page
- Two-step bitmap teardown (black frame, short delay, clear)
- Start the next queued job as soon as the current one completes

Non-responsibilities:
- No reply filtering, no gateway access
- No knowledge of how the surface reaches the device

Each job's dwell/teardown runs in one asyncio task. Superseding a job
cancels that task, so a stale timer can never clear a newer screen.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

from constants import (
    BITMAP_BLACK_FRAME_MS,
    BITMAP_DURATION_MS,
    NOTIFICATION_DURATION_MS,
    PAGE_CHUNK_CHARS,
    PAGE_DWELL_MS,
    PAGE_MIN_CHUNK_CHARS,
    REPLY_TRAILING_GRACE_MS,
    STATUS_DURATION_MS,
    THINKING_BODY,
    WAITING_BODY,
    WELCOME_DURATION_MS,
)
from display.bitmaps import black_frame_b64
from display.errors import DisplayUnavailable
from display.jobs import (
    BitmapJob,
    CardJob,
    DisplayJob,
    Priority,
    StatusJob,
    TextJob,
    make_text_job,
)
from display.surface import DisplaySurface
from observability.logger import log_event, now_ms


class ArbiterPhase(str, Enum):
    IDLE = "IDLE"
    BUSY = "BUSY"


@dataclass(frozen=True)
class ArbiterState:
    """
    IDLE, or BUSY until `until_ms` (wall clock).

    until_ms is None while BUSY on a hold job (thinking / waiting).
    """
    phase: ArbiterPhase
    until_ms: int | None = None


_IDLE = ArbiterState(phase=ArbiterPhase.IDLE)


class DisplayArbiter:
    """
    One arbiter per device session.

    Show operations are coroutines. The first frame of an immediately
    started job is rendered before the call returns, so rendering failures
    surface to the caller as DisplayUnavailable.
    """

    def __init__(
        self,
        surface: DisplaySurface,
        *,
        session_id: str | None = None,
        card_title: str = "Hex",
        page_dwell_ms: int = PAGE_DWELL_MS,
        reply_trailing_ms: int = REPLY_TRAILING_GRACE_MS,
        black_frame_ms: int = BITMAP_BLACK_FRAME_MS,
        page_chunk_chars: int = PAGE_CHUNK_CHARS,
        page_min_chunk_chars: int = PAGE_MIN_CHUNK_CHARS,
    ) -> None:
        self._surface = surface
        self._session_id = session_id
        self._card_title = card_title
        self._page_dwell_ms = page_dwell_ms
        self._reply_trailing_ms = reply_trailing_ms
        self._black_frame_ms = black_frame_ms
        self._page_chunk_chars = page_chunk_chars
        self._page_min_chunk_chars = page_min_chunk_chars

        self._state: ArbiterState = _IDLE
        self._current: DisplayJob | None = None
        self._job_task: asyncio.Task[None] | None = None
        self._queue: deque[DisplayJob] = deque()
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ArbiterState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state.phase is ArbiterPhase.BUSY

    @property
    def current_job(self) -> DisplayJob | None:
        return self._current

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self._state.phase.value,
            "until_ms": self._state.until_ms,
            "current": self._current.job_kind.value if self._current else None,
            "queued": [job.job_kind.value for job in self._queue],
        }

    # ------------------------------------------------------------------
    # Typed show operations
    # ------------------------------------------------------------------

    async def show_welcome(self, text: str, duration_ms: int = WELCOME_DURATION_MS) -> None:
        await self._submit(StatusJob(body=text, duration_ms=duration_ms), Priority.DIRECT)

    async def show_status(self, text: str, duration_ms: int = STATUS_DURATION_MS) -> None:
        await self._submit(StatusJob(body=text, duration_ms=duration_ms), Priority.DIRECT)

    async def show_thinking(self, user_text: str) -> None:
        await self._submit(
            CardJob(title=user_text, body=THINKING_BODY, duration_ms=None),
            Priority.INTERACTIVE,
        )

    async def show_waiting(self) -> None:
        await self._submit(StatusJob(body=WAITING_BODY, duration_ms=None), Priority.INTERACTIVE)

    async def show_reply(self, answer: str) -> None:
        job = make_text_job(
            answer,
            per_page_ms=self._page_dwell_ms,
            trailing_ms=self._reply_trailing_ms,
            chunk_chars=self._page_chunk_chars,
            min_chunk_chars=self._page_min_chunk_chars,
        )
        await self._submit(job, Priority.INTERACTIVE)

    async def show_notification(
        self,
        text: str,
        duration_ms: int = NOTIFICATION_DURATION_MS,
        *,
        title: str | None = None,
    ) -> bool:
        """Returns True if rendered now, False if queued behind the current job."""
        job = CardJob(title=title or self._card_title, body=text, duration_ms=duration_ms)
        return await self._submit(job, Priority.PASSIVE)

    async def show_bitmap(self, payload: str, duration_ms: int = BITMAP_DURATION_MS) -> bool:
        """Notification-class: queued while busy. Returns True if rendered now."""
        job = BitmapJob(payload=payload, duration_ms=duration_ms, black_frame_ms=self._black_frame_ms)
        return await self._submit(job, Priority.PASSIVE)

    async def set_dashboard(self, text: str) -> None:
        """Cosmetic; failures are logged and swallowed."""
        try:
            await self._surface.write_dashboard(text)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "DASHBOARD_WRITE_FAILED",
                "session_id": self._session_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

    async def dismiss(self) -> None:
        """
        End a hold job (thinking / waiting) that no reply will replace.

        Clears the screen and moves on to the next queued job. No-op for
        timed jobs, which end on their own.
        """
        job = self._current
        if job is None or job.busy_ms is not None:
            return
        self._cancel_job_task()
        await self._safe_clear()
        await self._advance()

    async def shutdown(self) -> None:
        """Drop queued jobs and cancel the running job timer."""
        self._closed = True
        self._queue.clear()
        task = self._job_task
        self._cancel_job_task()
        self._current = None
        self._state = _IDLE
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _submit(self, job: DisplayJob, priority: Priority) -> bool:
        if self._closed:
            return False

        if priority is Priority.PASSIVE and self.is_busy:
            self._queue.append(job)
            log_event({
                "event_type": "DISPLAY_JOB_QUEUED",
                "session_id": self._session_id,
                "job_kind": job.job_kind.value,
                "queue_depth": len(self._queue),
            })
            return False

        if priority is Priority.INTERACTIVE and self._queue:
            log_event({
                "event_type": "DISPLAY_QUEUE_FLUSHED",
                "session_id": self._session_id,
                "dropped": len(self._queue),
            })
            self._queue.clear()

        if self._current is not None:
            log_event({
                "event_type": "DISPLAY_JOB_PREEMPTED",
                "session_id": self._session_id,
                "preempted": self._current.job_kind.value,
                "by": job.job_kind.value,
            })
        self._cancel_job_task()

        await self._start(job, primary=True)
        return True

    async def _start(self, job: DisplayJob, *, primary: bool) -> None:
        busy_ms = job.busy_ms
        self._current = job
        self._state = ArbiterState(
            phase=ArbiterPhase.BUSY,
            until_ms=None if busy_ms is None else now_ms() + busy_ms,
        )

        try:
            await self._render_first(job)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "DISPLAY_RENDER_FAILED",
                "session_id": self._session_id,
                "job_kind": job.job_kind.value,
                "primary": primary,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            if primary:
                if self._current is job:
                    # the display is free again: queued jobs go next, in order
                    await self._advance()
                raise DisplayUnavailable(f"render {job.job_kind.value}", exc) from exc
            if self._current is job:
                await self._advance()
            return

        if self._current is not job:
            # superseded while the first frame was in flight
            return

        log_event({
            "event_type": "DISPLAY_JOB_STARTED",
            "session_id": self._session_id,
            "job_kind": job.job_kind.value,
            "busy_ms": busy_ms,
        })

        if busy_ms is not None:
            self._job_task = asyncio.create_task(self._run_job(job))

    async def _advance(self) -> None:
        """Go idle, then start the next queued job if there is one."""
        self._current = None
        self._state = _IDLE
        if self._closed or not self._queue:
            return
        await self._start(self._queue.popleft(), primary=False)

    def _cancel_job_task(self) -> None:
        task = self._job_task
        self._job_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    async def _render_first(self, job: DisplayJob) -> None:
        if isinstance(job, TextJob):
            await self._surface.show_text(job.pages[0])
        elif isinstance(job, StatusJob):
            await self._surface.show_text(job.body)
        elif isinstance(job, CardJob):
            await self._surface.show_card(job.title, job.body)
        elif isinstance(job, BitmapJob):
            await self._surface.show_bitmap(job.payload)
        else:
            raise TypeError(f"unknown display job: {type(job).__name__}")

    async def _run_job(self, job: DisplayJob) -> None:
        """Dwell, tear down, hand over. Cancelled when superseded."""
        try:
            if isinstance(job, TextJob):
                for page in job.pages[1:]:
                    await asyncio.sleep(job.per_page_ms / 1000.0)
                    await self._surface.show_text(page)
                await asyncio.sleep((job.per_page_ms + job.trailing_ms) / 1000.0)
                await self._surface.clear()

            elif isinstance(job, BitmapJob):
                await asyncio.sleep(job.duration_ms / 1000.0)
                await self._surface.show_bitmap(black_frame_b64())
                await asyncio.sleep(job.black_frame_ms / 1000.0)
                await self._surface.clear()

            else:
                busy_ms = job.busy_ms or 0
                await asyncio.sleep(busy_ms / 1000.0)
                await self._surface.clear()

        except asyncio.CancelledError:
            return
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "DISPLAY_JOB_FAILED",
                "session_id": self._session_id,
                "job_kind": job.job_kind.value,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        if self._current is not job:
            return

        self._job_task = None
        log_event({
            "event_type": "DISPLAY_JOB_DONE",
            "session_id": self._session_id,
            "job_kind": job.job_kind.value,
            "queue_depth": len(self._queue),
        })
        await self._advance()

    async def _safe_clear(self) -> None:
        try:
            await self._surface.clear()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "DISPLAY_CLEAR_FAILED",
                "session_id": self._session_id,
                "exception": type(exc).__name__,
            })
