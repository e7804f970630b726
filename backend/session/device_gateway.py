"""
Device gateway: one per /device WebSocket connection.

Responsibilities:
- Decode inbound JSON device events
- Create and register the BridgeSession on session_start
- Route device events into the session
- Unregister and close the session on disconnect

Still NOT responsible for:
- Any orchestration decision (BridgeSession)
- Render scheduling (DisplayArbiter)

Inbound events:
    {"type": "session_start", "user_id": ...}
    {"type": "transcription", "text": ..., "is_final": bool}
    {"type": "head_position", "position": "up" | "down"}
    {"type": "phone_notification", "app": ..., "title": ..., "content": ...}
"""

from __future__ import annotations

import json
from typing import Any, TYPE_CHECKING
from uuid import uuid4

from display.websocket_surface import SendText, WebSocketSurface
from observability.logger import log_event
from session.bridge_session import BridgeSession, TurnGateway
from session.registry import SessionRegistry

if TYPE_CHECKING:
    from config import AppConfig


def _new_session_id() -> str:
    return f"sess_{uuid4().hex[:12]}"


def _optional_str(value: Any) -> str | None:
    """Device payloads are loosely typed; anything present becomes text."""
    return None if value is None else str(value)


class DeviceGateway:
    def __init__(
        self,
        *,
        config: AppConfig,
        gateway: TurnGateway,
        registry: SessionRegistry,
        send_text: SendText,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._registry = registry
        self._send_text = send_text
        self.session: BridgeSession | None = None

    async def on_json_message(self, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError as exc:
            log_event({
                "event_type": "DEVICE_MESSAGE_INVALID",
                "error": str(exc),
                "payload_preview": raw[:100],
            })
            return

        if not isinstance(msg, dict):
            log_event({
                "event_type": "DEVICE_MESSAGE_INVALID",
                "error": "not an object",
                "payload_preview": raw[:100],
            })
            return

        msg_type = msg.get("type")

        if msg_type == "session_start":
            await self._start_session(msg)
            return

        session = self.session
        if session is None:
            log_event({
                "event_type": "DEVICE_EVENT_BEFORE_START",
                "device_event": msg_type,
            })
            return

        if msg_type == "transcription":
            session.spawn(session.on_transcription(
                str(msg.get("text") or ""),
                is_final=bool(msg.get("is_final")),
            ))
        elif msg_type == "head_position":
            await session.on_head_position(str(msg.get("position") or ""))
        elif msg_type == "phone_notification":
            await session.on_phone_notification(
                _optional_str(msg.get("app")),
                _optional_str(msg.get("title")),
                _optional_str(msg.get("content")),
            )
        else:
            log_event({
                "event_type": "DEVICE_EVENT_UNKNOWN",
                "session_id": session.session_id,
                "device_event": msg_type,
            })

    async def on_ws_disconnect(self, *, reason: str) -> None:
        session = self.session
        self.session = None
        if session is None:
            return
        log_event({
            "event_type": "DEVICE_DISCONNECTED",
            "session_id": session.session_id,
            "reason": reason,
        })
        await self._registry.remove(session.session_id)

    async def _start_session(self, msg: dict[str, Any]) -> None:
        if self.session is not None:
            log_event({
                "event_type": "DEVICE_SESSION_ALREADY_STARTED",
                "session_id": self.session.session_id,
            })
            return

        session = BridgeSession(
            session_id=_new_session_id(),
            user_id=str(msg.get("user_id") or "unknown"),
            gateway=self._gateway,
            surface=WebSocketSurface(self._send_text),
            agent_name=self._config.agent_name,
        )
        self.session = session
        self._registry.add(session)
        await self._send_text(json.dumps({
            "type": "session_ready",
            "session_id": session.session_id,
        }))
        await session.start()
