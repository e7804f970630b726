"""
Bridge session: per-device orchestration.

Responsibilities:
- Own the per-session mode flags (listening, copilot)
- Route final transcripts: voice commands first, then either one turn per
  utterance (normal mode) or through the InputBatcher (copilot mode)
- Route phone notifications through the deduplicator
- Head-up hold gesture toggles listening
- Keep the dashboard line in sync with the mode flags

Non-responsibilities:
- No wire protocol (GatewayClient)
- No render scheduling (DisplayArbiter)
- No socket handling (DeviceGateway)
"""

from __future__ import annotations

import asyncio
import time
from asyncio import Task
from typing import Any, Awaitable, Coroutine, Protocol

from constants import (
    COPILOT_DEBOUNCE_MS,
    COPILOT_PROMPT_PREFIX,
    COPILOT_SAFETY_MS,
    DISPLAY_PROMPT_PREFIX,
    HEAD_HOLD_MS,
    MIC_STATUS_DURATION_MS,
    NEW_SESSION_COMMAND,
    NOTIFICATION_DEDUP_WINDOW_MS,
    NOTIFICATION_DURATION_MS,
    STATUS_DURATION_MS,
)
from display.arbiter import DisplayArbiter
from display.errors import DisplayUnavailable
from display.surface import DisplaySurface
from gateway.errors import GatewayError
from gateway.replies import ReplyKind, classify_reply
from gateway.turns import SoftTimeoutFn
from inputs.batcher import InputBatcher
from inputs.dedup import NotificationDeduplicator
from inputs.notifications import clip_card, format_body, format_card, source_key
from observability.logger import log_event
from session.voice_commands import VoiceCommand, parse_voice_command


class TurnGateway(Protocol):
    """The slice of GatewayClient a session needs."""

    @property
    def is_connected(self) -> bool: ...

    async def submit_turn(
        self,
        message: str,
        *,
        prefix: str = "",
        on_soft_timeout: SoftTimeoutFn | None = None,
    ) -> str: ...

    async def send_raw(self, message: str) -> Any: ...

    def cancel_all(self) -> int: ...


class BridgeSession:
    """One device connection. Created on session_start, closed on disconnect."""

    def __init__(
        self,
        *,
        session_id: str,
        user_id: str,
        gateway: TurnGateway,
        surface: DisplaySurface,
        agent_name: str = "Hex",
        arbiter: DisplayArbiter | None = None,
        head_hold_ms: int = HEAD_HOLD_MS,
        dedup_window_ms: int = NOTIFICATION_DEDUP_WINDOW_MS,
        debounce_ms: int = COPILOT_DEBOUNCE_MS,
        safety_ms: int = COPILOT_SAFETY_MS,
        notification_duration_ms: int = NOTIFICATION_DURATION_MS,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.created_at = time.time()

        self._gateway = gateway
        self._agent_name = agent_name
        self._head_hold_ms = head_hold_ms
        self._notification_duration_ms = notification_duration_ms

        self.arbiter = arbiter or DisplayArbiter(
            surface, session_id=session_id, card_title=agent_name
        )
        self.batcher = InputBatcher(
            submit=self._submit_copilot,
            on_reply=self._show_reply,
            cancel_all=gateway.cancel_all,
            debounce_ms=debounce_ms,
            safety_ms=safety_ms,
            session_id=session_id,
        )
        self.dedup = NotificationDeduplicator(
            self._flush_notification,
            window_ms=dedup_window_ms,
            session_id=session_id,
        )

        self.listening = False
        self.copilot = False

        self._hold_timer: Task[None] | None = None
        self._tasks: set[Task[Any]] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Welcome screen plus initial dashboard."""
        state = "connected" if self._gateway.is_connected else "offline"
        await self._safe(self.arbiter.show_welcome(f"{self._agent_name} {state}."))
        await self.update_dashboard()
        log_event({
            "event_type": "SESSION_STARTED",
            "session_id": self.session_id,
            "user_id": self.user_id,
            "gateway_connected": self._gateway.is_connected,
        })

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_hold_timer()
        self.dedup.close()
        await self.batcher.close()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.arbiter.shutdown()
        log_event({
            "event_type": "SESSION_CLOSED",
            "session_id": self.session_id,
        })

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> Task[Any]:
        """Run a handler without blocking the device receive loop."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Device events
    # ------------------------------------------------------------------

    async def on_transcription(self, text: str, *, is_final: bool) -> None:
        if not is_final or self._closed:
            return
        user_text = text.strip()
        if not user_text:
            return

        if not self.listening:
            log_event({
                "event_type": "TRANSCRIPT_IGNORED",
                "session_id": self.session_id,
                "reason": "mic_off",
            })
            return

        command = parse_voice_command(user_text)
        if command is VoiceCommand.NEW_SESSION:
            await self._new_agent_session()
            return
        if command is VoiceCommand.TOGGLE_COPILOT:
            await self.set_copilot(not self.copilot)
            return

        if self.copilot:
            log_event({
                "event_type": "COPILOT_HEARD",
                "session_id": self.session_id,
                "chars": len(user_text),
            })
            self.batcher.push(user_text)
            return

        await self._run_turn(user_text)

    async def on_head_position(self, position: str) -> None:
        if position == "up":
            self._cancel_hold_timer()
            self._hold_timer = asyncio.create_task(self._head_hold_task())
        elif position == "down":
            self._cancel_hold_timer()

    async def on_phone_notification(
        self,
        app: str | None,
        title: str | None,
        content: str | None,
    ) -> None:
        body = format_body(title, content)
        await self.dedup.add(source_key(app), body)

    # ------------------------------------------------------------------
    # Mode flags
    # ------------------------------------------------------------------

    async def set_listening(self, enabled: bool) -> bool:
        """Returns True if the flag changed."""
        if enabled == self.listening:
            return False
        self.listening = enabled
        if not enabled:
            self.batcher.flush()
        log_event({
            "event_type": "MIC_ON" if enabled else "MIC_OFF",
            "session_id": self.session_id,
        })
        await self._safe(self.arbiter.show_status(
            "Listening..." if enabled else "Mic off.",
            MIC_STATUS_DURATION_MS,
        ))
        await self.update_dashboard()
        return True

    async def set_copilot(self, enabled: bool) -> bool:
        if enabled == self.copilot:
            return False
        self.copilot = enabled
        if not enabled:
            self.batcher.flush()
        log_event({
            "event_type": "COPILOT_ON" if enabled else "COPILOT_OFF",
            "session_id": self.session_id,
        })
        await self._safe(self.arbiter.show_status(
            "Copilot ON" if enabled else "Copilot OFF",
            STATUS_DURATION_MS,
        ))
        await self.update_dashboard()
        return True

    def dashboard_text(self) -> str:
        if self.copilot:
            return f"{self._agent_name}: Copilot"
        if self.listening:
            return f"{self._agent_name}: Listening..."
        return f"{self._agent_name}: Ready"

    async def update_dashboard(self) -> None:
        await self.arbiter.set_dashboard(self.dashboard_text())

    # ------------------------------------------------------------------
    # Control plane pushes
    # ------------------------------------------------------------------

    async def push_text(self, text: str, duration_ms: int = NOTIFICATION_DURATION_MS) -> bool:
        return await self.arbiter.show_notification(clip_card(text), duration_ms)

    async def push_bitmap(self, bitmap: str, duration_ms: int) -> bool:
        return await self.arbiter.show_bitmap(bitmap, duration_ms)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "listening": self.listening,
            "copilot": self.copilot,
            "head_hold_pending": self._hold_timer is not None and not self._hold_timer.done(),
            "tasks": len(self._tasks),
            "arbiter": self.arbiter.snapshot(),
            "batcher": self.batcher.snapshot(),
            "dedup": self.dedup.snapshot(),
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _run_turn(self, user_text: str) -> None:
        log_event({
            "event_type": "USER_UTTERANCE",
            "session_id": self.session_id,
            "chars": len(user_text),
        })
        await self._safe(self.arbiter.show_thinking(user_text))

        reply = await self._gateway.submit_turn(
            user_text,
            prefix=DISPLAY_PROMPT_PREFIX,
            on_soft_timeout=self.arbiter.show_waiting,
        )

        kind = classify_reply(reply)
        log_event({
            "event_type": "AGENT_REPLY",
            "session_id": self.session_id,
            "reply_kind": kind.value,
            "chars": len(reply),
        })
        if kind is ReplyKind.CONTENT:
            await self._show_reply(reply)
        else:
            await self._safe(self.arbiter.dismiss())

    async def _submit_copilot(self, message: str) -> str:
        return await self._gateway.submit_turn(message, prefix=COPILOT_PROMPT_PREFIX)

    async def _show_reply(self, reply: str) -> None:
        await self._safe(self.arbiter.show_reply(reply))

    async def _flush_notification(self, app: str, body: str, count: int) -> None:
        await self._safe(self.arbiter.show_notification(
            clip_card(format_card(app, body, count)),
            self._notification_duration_ms,
        ))

    async def _new_agent_session(self) -> None:
        log_event({
            "event_type": "AGENT_SESSION_RESET",
            "session_id": self.session_id,
        })
        await self._safe(self.arbiter.show_status("New session...", STATUS_DURATION_MS))
        try:
            await self._gateway.send_raw(NEW_SESSION_COMMAND)
        except GatewayError as exc:
            log_event({
                "event_type": "AGENT_SESSION_RESET_FAILED",
                "session_id": self.session_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
        await self._safe(self.arbiter.show_status("Session reset.", STATUS_DURATION_MS))

    async def _head_hold_task(self) -> None:
        try:
            await asyncio.sleep(self._head_hold_ms / 1000.0)
        except asyncio.CancelledError:
            return
        self._hold_timer = None
        log_event({
            "event_type": "HEAD_HOLD_TOGGLE",
            "session_id": self.session_id,
            "listening": not self.listening,
        })
        await self.set_listening(not self.listening)

    def _cancel_hold_timer(self) -> None:
        task = self._hold_timer
        self._hold_timer = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _safe(self, aw: Awaitable[Any]) -> None:
        """Display failures degrade to a log line; the session keeps going."""
        try:
            await aw
        except DisplayUnavailable as exc:
            log_event({
                "event_type": "SESSION_DISPLAY_FAILED",
                "session_id": self.session_id,
                "operation": exc.operation,
                "message": str(exc),
            })
