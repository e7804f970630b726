# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest

from gateway.turns import TurnOutcome, TurnPhase, TurnTracker


def _tracker(**kwargs) -> TurnTracker:
    defaults = {
        "hard_timeout_reply": "too long",
        "soft_timeout_ms": 10_000,
        "hard_timeout_ms": 10_000,
        "end_grace_ms": 10_000,
    }
    defaults.update(kwargs)
    return TurnTracker(**defaults)


@pytest.mark.asyncio
async def test_run_start_matches_oldest_unmatched_turn():
    tracker = _tracker()
    first = tracker.open_turn()
    second = tracker.open_turn()

    tracker.on_run_start("R1")
    tracker.on_run_start("R2")

    assert first.run_id == "R1"
    assert second.run_id == "R2"
    assert first.phase is TurnPhase.MATCHED
    assert tracker.unmatched_count == 0
    assert tracker.matched_run_ids == ("R1", "R2")

    tracker.cancel_all()


@pytest.mark.asyncio
async def test_finals_resolve_by_run_id_in_any_order():
    tracker = _tracker()
    first = tracker.open_turn()
    second = tracker.open_turn()
    tracker.on_run_start("R1")
    tracker.on_run_start("R2")

    assert tracker.on_final("R2", "B")
    assert tracker.on_final("R1", "A")

    assert await first.future == "A"
    assert await second.future == "B"
    assert first.outcome is TurnOutcome.FINAL
    assert tracker.snapshot() == {"unmatched": 0, "matched": [], "timers": 0}


@pytest.mark.asyncio
async def test_final_for_unknown_run_is_noop():
    tracker = _tracker()
    turn = tracker.open_turn()

    assert tracker.on_final("nope", "stray") is False
    assert not turn.future.done()
    assert tracker.unmatched_count == 1

    tracker.cancel_all()


@pytest.mark.asyncio
async def test_unclaimed_and_duplicate_starts_are_ignored():
    tracker = _tracker()

    assert tracker.on_run_start("R0") is None

    turn = tracker.open_turn()
    tracker.on_run_start("R1")
    assert tracker.on_run_start("R1") is None
    assert turn.run_id == "R1"

    tracker.cancel_all()


@pytest.mark.asyncio
async def test_end_without_final_resolves_empty_after_grace():
    tracker = _tracker(end_grace_ms=10)
    turn = tracker.open_turn()
    tracker.on_run_start("R1")

    tracker.on_run_end("R1")

    assert await asyncio.wait_for(turn.future, 1.0) == ""
    assert turn.outcome is TurnOutcome.ENDED_WITHOUT_FINAL


@pytest.mark.asyncio
async def test_final_inside_grace_window_wins():
    tracker = _tracker(end_grace_ms=50)
    turn = tracker.open_turn()
    tracker.on_run_start("R1")

    tracker.on_run_end("R1")
    tracker.on_final("R1", "late but here")

    assert await turn.future == "late but here"
    assert turn.outcome is TurnOutcome.FINAL
    assert turn.timers == {}


@pytest.mark.asyncio
async def test_empty_final_is_ignored_until_end():
    tracker = _tracker(end_grace_ms=10)
    turn = tracker.open_turn()
    tracker.on_run_start("R1")

    assert tracker.on_final("R1", "") is False
    assert not turn.future.done()

    tracker.on_run_end("R1")
    assert await asyncio.wait_for(turn.future, 1.0) == ""


@pytest.mark.asyncio
async def test_soft_timeout_notifies_once_without_resolving():
    calls: list[int] = []
    tracker = _tracker(soft_timeout_ms=10)
    turn = tracker.open_turn(on_soft_timeout=lambda: calls.append(1))

    await asyncio.sleep(0.05)

    assert calls == [1]
    assert not turn.future.done()

    tracker.cancel_all()


@pytest.mark.asyncio
async def test_async_soft_timeout_callback_is_awaited():
    called = asyncio.Event()

    async def on_soft() -> None:
        called.set()

    tracker = _tracker(soft_timeout_ms=10)
    tracker.open_turn(on_soft_timeout=on_soft)

    await asyncio.wait_for(called.wait(), 1.0)
    tracker.cancel_all()


@pytest.mark.asyncio
async def test_hard_timeout_resolves_with_fallback_and_evicts():
    tracker = _tracker(hard_timeout_ms=10)
    turn = tracker.open_turn()
    tracker.on_run_start("R1")

    assert await asyncio.wait_for(turn.future, 1.0) == "too long"
    assert turn.outcome is TurnOutcome.HARD_TIMEOUT
    assert tracker.matched_run_ids == ()

    # a late final for the evicted run changes nothing
    assert tracker.on_final("R1", "finally") is False


@pytest.mark.asyncio
async def test_cancel_all_resolves_both_structures_and_clears_timers():
    tracker = _tracker()
    matched = tracker.open_turn()
    unmatched = tracker.open_turn()
    tracker.on_run_start("R1")
    tracker.on_run_end("R1")

    assert tracker.cancel_all() == 2

    assert await matched.future == ""
    assert await unmatched.future == ""
    assert matched.outcome is TurnOutcome.CANCELLED
    assert tracker.snapshot() == {"unmatched": 0, "matched": [], "timers": 0}
    assert tracker.cancel_all() == 0


@pytest.mark.asyncio
async def test_resolution_is_first_wins():
    tracker = _tracker()
    turn = tracker.open_turn()
    tracker.on_run_start("R1")

    tracker.on_final("R1", "first")
    tracker.cancel_all()
    tracker.discard(turn)

    assert await turn.future == "first"
    assert turn.outcome is TurnOutcome.FINAL
