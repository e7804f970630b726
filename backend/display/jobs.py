"""
Display job definitions.

Rules:
- Jobs are immutable value objects; the arbiter owns them once submitted.
- `duration_ms is None` means "hold until superseded or dismissed".
- job_kind is an explicit discriminant, never inferred from type identity.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from display.pagination import paginate


class JobKind(str, Enum):
    TEXT = "TEXT"
    STATUS = "STATUS"
    CARD = "CARD"
    BITMAP = "BITMAP"


class Priority(str, Enum):
    """
    INTERACTIVE: direct user speech; flush the queue and preempt.
    DIRECT:      user-driven status; preempt but keep queued jobs.
    PASSIVE:     notifications; render if idle, otherwise queue.
    """

    INTERACTIVE = "INTERACTIVE"
    DIRECT = "DIRECT"
    PASSIVE = "PASSIVE"


class DisplayJob:
    """Base job type."""

    job_kind: JobKind

    @property
    def busy_ms(self) -> int | None:
        """How long the display stays committed to this job."""
        raise NotImplementedError


@dataclass(frozen=True)
class TextJob(DisplayJob):
    """Paginated text; every page dwells per_page_ms, then a trailing grace."""
    body: str
    pages: tuple[str, ...]
    per_page_ms: int
    trailing_ms: int
    job_kind: JobKind = JobKind.TEXT

    @property
    def total_duration_ms(self) -> int:
        return len(self.pages) * self.per_page_ms + self.trailing_ms

    @property
    def busy_ms(self) -> int | None:
        return self.total_duration_ms


@dataclass(frozen=True)
class StatusJob(DisplayJob):
    """Single text screen."""
    body: str
    duration_ms: int | None
    job_kind: JobKind = JobKind.STATUS

    @property
    def busy_ms(self) -> int | None:
        return self.duration_ms


@dataclass(frozen=True)
class CardJob(DisplayJob):
    """Title + body card (notifications, thinking indicator)."""
    title: str
    body: str
    duration_ms: int | None
    job_kind: JobKind = JobKind.CARD

    @property
    def busy_ms(self) -> int | None:
        return self.duration_ms


@dataclass(frozen=True)
class BitmapJob(DisplayJob):
    """
    Base64 bitmap. Teardown is two-step: black frame, short delay, clear.
    The black frame time counts toward the busy window.
    """
    payload: str
    duration_ms: int
    black_frame_ms: int
    job_kind: JobKind = JobKind.BITMAP

    @property
    def busy_ms(self) -> int | None:
        return self.duration_ms + self.black_frame_ms


def make_text_job(
    body: str,
    *,
    per_page_ms: int,
    trailing_ms: int,
    chunk_chars: int,
    min_chunk_chars: int,
) -> TextJob:
    return TextJob(
        body=body,
        pages=tuple(paginate(body, chunk_chars=chunk_chars, min_chunk_chars=min_chunk_chars)),
        per_page_ms=per_page_ms,
        trailing_ms=trailing_ms,
    )
