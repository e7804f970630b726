"""
Run correlation for conversational turns.

A turn is submitted with chat.send, but its answer arrives later as
asynchronous events keyed by a run id the backend picks. This module
owns the bookkeeping that ties the two together.

Per-turn state machine:

    UNMATCHED --lifecycle:start--> MATCHED --chat:final---------> RESOLVED
        |                             |----lifecycle:end + grace-> RESOLVED
        |----------- cancel_all / hard timeout / discard -------> RESOLVED

Rules:
- lifecycle:start pops the OLDEST unmatched turn (strict FIFO); the
  backend starts runs in submission order.
- chat:final and lifecycle:end look up the matched map by run id.
- A turn sits in exactly one of {unmatched queue, matched map} until it
  is resolved, and is resolved exactly once (first wins).
- Events for unknown or already-resolved runs are no-ops.
- Every timer a turn owns is cancelled when it resolves.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from constants import (
    TURN_END_GRACE_MS,
    TURN_HARD_TIMEOUT_MS,
    TURN_SOFT_TIMEOUT_MS,
)
from observability.logger import log_event


SoftTimeoutFn = Callable[[], Awaitable[None] | None]


class TurnPhase(str, Enum):
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    RESOLVED = "RESOLVED"


class TurnOutcome(str, Enum):
    """Why a turn left the tracker. Logged, and reported to metrics."""

    FINAL = "final"
    ENDED_WITHOUT_FINAL = "ended_without_final"
    HARD_TIMEOUT = "hard_timeout"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"


@dataclass(eq=False)
class PendingTurn:
    """
    One outstanding turn.

    `future` resolves with the reply text ("" when there is nothing to
    show). Identity semantics: two turns are never equal.
    """

    turn_id: int
    future: asyncio.Future[str]
    on_soft_timeout: SoftTimeoutFn | None = None
    phase: TurnPhase = TurnPhase.UNMATCHED
    run_id: str | None = None
    outcome: TurnOutcome | None = None
    timers: dict[str, asyncio.Task[None]] = field(default_factory=dict)


class TurnTracker:
    """
    FIFO run matcher with soft/hard/grace timers.

    Must be used from inside a running event loop.
    """

    def __init__(
        self,
        *,
        hard_timeout_reply: str,
        soft_timeout_ms: int = TURN_SOFT_TIMEOUT_MS,
        hard_timeout_ms: int = TURN_HARD_TIMEOUT_MS,
        end_grace_ms: int = TURN_END_GRACE_MS,
    ) -> None:
        self._hard_timeout_reply = hard_timeout_reply
        self._soft_timeout_ms = soft_timeout_ms
        self._hard_timeout_ms = hard_timeout_ms
        self._end_grace_ms = end_grace_ms

        self._unmatched: deque[PendingTurn] = deque()
        self._matched: dict[str, PendingTurn] = {}
        self._next_turn_id = 0

    # ------------------------------------------------------------------
    # Submission side
    # ------------------------------------------------------------------

    def open_turn(self, *, on_soft_timeout: SoftTimeoutFn | None = None) -> PendingTurn:
        """Queue a new turn behind every still-unmatched one and arm its timers."""
        self._next_turn_id += 1
        turn = PendingTurn(
            turn_id=self._next_turn_id,
            future=asyncio.get_running_loop().create_future(),
            on_soft_timeout=on_soft_timeout,
        )
        self._unmatched.append(turn)

        turn.timers["soft"] = asyncio.create_task(self._soft_timeout_task(turn))
        turn.timers["hard"] = asyncio.create_task(self._hard_timeout_task(turn))

        log_event({
            "event_type": "TURN_OPENED",
            "turn_id": turn.turn_id,
            "unmatched": len(self._unmatched),
        })
        return turn

    def discard(self, turn: PendingTurn) -> bool:
        """Drop a turn whose chat.send never made it (or whose caller went away)."""
        return self._resolve(turn, "", TurnOutcome.DISCARDED)

    def cancel_all(self) -> int:
        """
        Resolve every outstanding turn with "" and clear both structures.

        Returns the number of turns cancelled.
        """
        outstanding = list(self._unmatched) + list(self._matched.values())
        cancelled = 0
        for turn in outstanding:
            if self._resolve(turn, "", TurnOutcome.CANCELLED):
                cancelled += 1

        log_event({
            "event_type": "TURNS_CANCELLED",
            "count": cancelled,
        })
        return cancelled

    # ------------------------------------------------------------------
    # Event side
    # ------------------------------------------------------------------

    def on_run_start(self, run_id: str) -> PendingTurn | None:
        """Bind the oldest unmatched turn to `run_id`."""
        if run_id in self._matched:
            log_event({
                "event_type": "RUN_START_DUPLICATE",
                "run_id": run_id,
            })
            return None

        if not self._unmatched:
            # A run we did not start (another client on the same session)
            log_event({
                "event_type": "RUN_START_UNCLAIMED",
                "run_id": run_id,
            })
            return None

        turn = self._unmatched.popleft()
        turn.phase = TurnPhase.MATCHED
        turn.run_id = run_id
        self._matched[run_id] = turn

        log_event({
            "event_type": "RUN_MATCHED",
            "run_id": run_id,
            "turn_id": turn.turn_id,
        })
        return turn

    def on_final(self, run_id: str, text: str) -> bool:
        """
        Resolve the turn bound to `run_id` with `text`.

        Empty finals are ignored; lifecycle:end plus the grace window
        settles those turns instead.
        """
        turn = self._matched.get(run_id)
        if turn is None:
            log_event({
                "event_type": "RUN_FINAL_UNKNOWN",
                "run_id": run_id,
            })
            return False
        if not text:
            return False
        return self._resolve(turn, text, TurnOutcome.FINAL)

    def on_run_end(self, run_id: str) -> bool:
        """
        Start the grace window for a run that ended.

        A final arriving inside the window still wins; otherwise the turn
        resolves with "" ("no reply due").
        """
        turn = self._matched.get(run_id)
        if turn is None or "grace" in turn.timers:
            return False

        turn.timers["grace"] = asyncio.create_task(self._grace_task(turn))
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def unmatched_count(self) -> int:
        return len(self._unmatched)

    @property
    def matched_run_ids(self) -> tuple[str, ...]:
        return tuple(self._matched)

    def snapshot(self) -> dict[str, Any]:
        return {
            "unmatched": len(self._unmatched),
            "matched": list(self._matched),
            "timers": sum(len(t.timers) for t in self._all_turns()),
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _all_turns(self) -> list[PendingTurn]:
        return list(self._unmatched) + list(self._matched.values())

    def _resolve(self, turn: PendingTurn, text: str, outcome: TurnOutcome) -> bool:
        if turn.phase is TurnPhase.RESOLVED:
            return False

        if turn.phase is TurnPhase.UNMATCHED:
            try:
                self._unmatched.remove(turn)
            except ValueError:
                pass
        elif turn.run_id is not None:
            self._matched.pop(turn.run_id, None)

        turn.phase = TurnPhase.RESOLVED
        turn.outcome = outcome
        _cancel_timers(turn)

        if not turn.future.done():
            turn.future.set_result(text)

        log_event({
            "event_type": "TURN_RESOLVED",
            "turn_id": turn.turn_id,
            "run_id": turn.run_id,
            "outcome": outcome.value,
            "chars": len(text),
        })
        return True

    async def _soft_timeout_task(self, turn: PendingTurn) -> None:
        try:
            await asyncio.sleep(self._soft_timeout_ms / 1000.0)
        except asyncio.CancelledError:
            return

        turn.timers.pop("soft", None)
        if turn.phase is TurnPhase.RESOLVED:
            return

        log_event({
            "event_type": "TURN_SOFT_TIMEOUT",
            "turn_id": turn.turn_id,
            "run_id": turn.run_id,
        })
        if turn.on_soft_timeout is None:
            return

        try:
            result = turn.on_soft_timeout()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "TURN_SOFT_TIMEOUT_CALLBACK_FAILED",
                "turn_id": turn.turn_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

    async def _hard_timeout_task(self, turn: PendingTurn) -> None:
        try:
            await asyncio.sleep(self._hard_timeout_ms / 1000.0)
        except asyncio.CancelledError:
            return

        turn.timers.pop("hard", None)
        self._resolve(turn, self._hard_timeout_reply, TurnOutcome.HARD_TIMEOUT)

    async def _grace_task(self, turn: PendingTurn) -> None:
        try:
            await asyncio.sleep(self._end_grace_ms / 1000.0)
        except asyncio.CancelledError:
            return

        turn.timers.pop("grace", None)
        self._resolve(turn, "", TurnOutcome.ENDED_WITHOUT_FINAL)


def _cancel_timers(turn: PendingTurn) -> None:
    # A timer resolving its own turn must not cancel itself mid-step
    current = asyncio.current_task()
    for task in turn.timers.values():
        if task is not current and not task.done():
            task.cancel()
    turn.timers.clear()
