# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from typing import Any, Callable

import pytest

from constants import COPILOT_PROMPT_PREFIX, DISPLAY_PROMPT_PREFIX
from display.arbiter import DisplayArbiter
from gateway.errors import NotConnected
from session.bridge_session import BridgeSession
from session.voice_commands import VoiceCommand, normalize, parse_voice_command


class FakeSurface:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []

    async def show_text(self, body: str) -> None:
        self.calls.append(("text", body))

    async def show_card(self, title: str, body: str) -> None:
        self.calls.append(("card", title, body))

    async def show_bitmap(self, base64_image: str) -> None:
        self.calls.append(("bitmap", base64_image))

    async def clear(self) -> None:
        self.calls.append(("clear",))

    async def write_dashboard(self, text: str) -> None:
        self.calls.append(("dashboard", text))

    def dashboards(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "dashboard"]


class FakeGateway:
    def __init__(self, reply: str = "It is five o'clock.", connected: bool = True) -> None:
        self.is_connected = connected
        self.reply = reply
        self.turns: list[tuple[str, str]] = []
        self.raw: list[str] = []
        self.raw_error: Exception | None = None
        self.cancel_all_calls = 0

    async def submit_turn(self, message: str, *, prefix: str = "", on_soft_timeout=None) -> str:
        self.turns.append((prefix, message))
        return self.reply

    async def send_raw(self, message: str) -> Any:
        if self.raw_error is not None:
            raise self.raw_error
        self.raw.append(message)
        return {}

    def cancel_all(self) -> int:
        self.cancel_all_calls += 1
        return 0


def _session(gateway: FakeGateway, surface: FakeSurface, **kwargs: Any) -> BridgeSession:
    arbiter = DisplayArbiter(surface, session_id="sess_t", page_dwell_ms=20, reply_trailing_ms=10)
    return BridgeSession(
        session_id="sess_t",
        user_id="user@example.com",
        gateway=gateway,
        surface=surface,
        arbiter=arbiter,
        **kwargs,
    )


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.002)
    await asyncio.wait_for(_poll(), timeout)


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("connected,welcome", [(True, "Hex connected."), (False, "Hex offline.")])
async def test_start_shows_welcome_and_ready_dashboard(connected, welcome):
    surface = FakeSurface()
    session = _session(FakeGateway(connected=connected), surface)

    await session.start()

    assert surface.calls[0] == ("text", welcome)
    assert surface.dashboards() == ["Hex: Ready"]
    await session.close()


# ------------------------------------------------------------------
# Transcripts
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transcripts_ignored_while_mic_off_or_not_final():
    gateway = FakeGateway()
    session = _session(gateway, FakeSurface())

    await session.on_transcription("hello", is_final=True)
    session.listening = True
    await session.on_transcription("hel", is_final=False)
    await session.on_transcription("   ", is_final=True)

    assert gateway.turns == []
    await session.close()


@pytest.mark.asyncio
async def test_normal_turn_shows_thinking_then_reply():
    gateway = FakeGateway(reply="It is five o'clock.")
    surface = FakeSurface()
    session = _session(gateway, surface)
    session.listening = True

    await session.on_transcription("  what time is it ", is_final=True)

    assert gateway.turns == [(DISPLAY_PROMPT_PREFIX, "what time is it")]
    assert ("card", "what time is it", "Thinking...") in surface.calls
    assert surface.calls[-1] == ("text", "It is five o'clock.")
    await session.close()


@pytest.mark.asyncio
async def test_no_reply_dismisses_thinking_card():
    gateway = FakeGateway(reply="NO_REPLY")
    surface = FakeSurface()
    session = _session(gateway, surface)
    session.listening = True

    await session.on_transcription("hm", is_final=True)

    assert surface.calls[-1] == ("clear",)
    assert not session.arbiter.is_busy
    await session.close()


@pytest.mark.asyncio
async def test_new_session_command_sends_slash_new():
    gateway = FakeGateway()
    surface = FakeSurface()
    session = _session(gateway, surface)
    session.listening = True

    await session.on_transcription("Okay, new session please", is_final=True)

    assert gateway.raw == ["/new"]
    assert gateway.turns == []
    texts = [c[1] for c in surface.calls if c[0] == "text"]
    assert texts == ["New session...", "Session reset."]
    await session.close()


@pytest.mark.asyncio
async def test_new_session_command_survives_gateway_failure():
    gateway = FakeGateway()
    gateway.raw_error = NotConnected("gateway is RECONNECT_SCHEDULED")
    surface = FakeSurface()
    session = _session(gateway, surface)
    session.listening = True

    await session.on_transcription("neue Session", is_final=True)

    assert surface.calls[-1] == ("text", "Session reset.")
    await session.close()


@pytest.mark.asyncio
async def test_copilot_phrase_toggles_mode_and_dashboard():
    gateway = FakeGateway()
    surface = FakeSurface()
    session = _session(gateway, surface)
    session.listening = True

    await session.on_transcription("Co-pilot on!", is_final=True)

    assert session.copilot is True
    assert ("text", "Copilot ON") in surface.calls
    assert surface.dashboards()[-1] == "Hex: Copilot"

    await session.on_transcription("copilot off", is_final=True)

    assert session.copilot is False
    assert surface.dashboards()[-1] == "Hex: Listening..."
    await session.close()


@pytest.mark.asyncio
async def test_copilot_mode_batches_with_copilot_prefix():
    gateway = FakeGateway(reply="Mention the Q3 numbers.")
    surface = FakeSurface()
    session = _session(gateway, surface, debounce_ms=20)
    session.listening = True
    session.copilot = True

    await session.on_transcription("so about the budget", is_final=True)
    await session.on_transcription("for next quarter", is_final=True)

    await _until(lambda: ("text", "Mention the Q3 numbers.") in surface.calls)
    assert gateway.turns == [(COPILOT_PROMPT_PREFIX, "so about the budget for next quarter")]
    await session.close()


# ------------------------------------------------------------------
# Gestures and flags
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_head_up_hold_toggles_listening():
    surface = FakeSurface()
    session = _session(FakeGateway(), surface, head_hold_ms=20)

    await session.on_head_position("up")
    await _until(lambda: surface.dashboards()[-1:] == ["Hex: Listening..."])

    assert session.listening is True
    assert ("text", "Listening...") in surface.calls
    await session.close()


@pytest.mark.asyncio
async def test_head_down_cancels_hold():
    session = _session(FakeGateway(), FakeSurface(), head_hold_ms=20)

    await session.on_head_position("up")
    await session.on_head_position("down")
    await asyncio.sleep(0.05)

    assert session.listening is False
    assert session.snapshot()["head_hold_pending"] is False
    await session.close()


@pytest.mark.asyncio
async def test_set_listening_is_idempotent():
    surface = FakeSurface()
    session = _session(FakeGateway(), surface)

    assert await session.set_listening(True) is True
    assert await session.set_listening(True) is False
    assert await session.set_listening(False) is True

    assert [c[1] for c in surface.calls if c[0] == "text"] == ["Listening...", "Mic off."]
    await session.close()


# ------------------------------------------------------------------
# Notifications
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_phone_notifications_are_formatted_and_deduplicated():
    surface = FakeSurface()
    session = _session(FakeGateway(), surface, dedup_window_ms=30)

    await session.on_phone_notification("WhatsApp", "Alice", "lunch?")
    await session.on_phone_notification("WhatsApp", "Alice", "12:30?")
    await session.on_phone_notification("WhatsApp", "Alice", "or 13:00")

    assert surface.calls == [("card", "Hex", "WhatsApp\nAlice: lunch?")]

    # the coalesced card waits behind the first one
    await _until(lambda: session.arbiter.queue_depth == 1)
    assert session.dedup.snapshot() == {}
    await session.close()


@pytest.mark.asyncio
async def test_coalesced_notification_shows_count():
    surface = FakeSurface()
    session = _session(
        FakeGateway(), surface, dedup_window_ms=30, notification_duration_ms=10
    )

    await session.on_phone_notification("Mail", "A", "1")
    await session.on_phone_notification("Mail", "B", "2")
    await session.on_phone_notification("Mail", None, "3")

    await _until(lambda: ("card", "Hex", "Mail (2)\n3") in surface.calls)
    await session.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_stops_timers():
    session = _session(FakeGateway(), FakeSurface(), head_hold_ms=1_000)
    await session.on_head_position("up")

    await session.close()
    await session.close()

    assert session.snapshot()["head_hold_pending"] is False


# ------------------------------------------------------------------
# Voice command parsing
# ------------------------------------------------------------------

@pytest.mark.parametrize(
    "text,command",
    [
        ("New session", VoiceCommand.NEW_SESSION),
        ("ok neue session bitte", VoiceCommand.NEW_SESSION),
        ("Copilot mode.", VoiceCommand.TOGGLE_COPILOT),
        ("copilot-modus", VoiceCommand.TOGGLE_COPILOT),
        ("COPILOT OFF!", VoiceCommand.TOGGLE_COPILOT),
        ("turn the copilot on please", VoiceCommand.NONE),
        ("what's the weather", VoiceCommand.NONE),
    ],
)
def test_parse_voice_command(text, command):
    assert parse_voice_command(text) is command


def test_normalize_strips_hyphens_and_punctuation():
    assert normalize("Co-Pilot, on!") == "copilot on"
