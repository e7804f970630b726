"""
Route registration for the bridge.

Responsibilities:
- Control-plane HTTP endpoints (push, mode toggles, status, debug)
- The /device WebSocket that wires a DeviceGateway to each connection
- Pull dependencies from app.state

Error bodies are JSON `{"ok": false, "error": ...}`; handlers never raise
for bad input.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from constants import BITMAP_DURATION_MS, NOTIFICATION_DURATION_MS
from display.errors import DisplayUnavailable
from observability.logger import log_event
from session.bridge_session import BridgeSession
from session.device_gateway import DeviceGateway
from session.registry import SessionRegistry


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    @app.get("/health")
    async def health() -> dict[str, str]:  # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.get("/status")
    async def status() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        registry: SessionRegistry = app.state.registry
        return {
            "ok": True,
            "gateway": app.state.gateway.is_connected,
            "sessions": len(registry),
            "sessionIds": registry.ids(),
        }

    @app.get("/debug")
    async def debug() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        registry: SessionRegistry = app.state.registry
        return {
            "ok": True,
            "gateway": app.state.gateway.snapshot(),
            "sessions": registry.snapshot(),
        }

    # ------------------------------------------------------------------
    # Pushes
    # ------------------------------------------------------------------

    @app.post("/push")
    async def push(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        session_id: str | None = None,
    ) -> JSONResponse:
        body = await _read_json(request)
        if body is None:
            return _error("invalid json")
        text = body.get("text")
        if not text or not isinstance(text, str):
            return _error("text required")
        duration = _duration(body, NOTIFICATION_DURATION_MS)
        if duration is None:
            return _error("duration must be a positive integer")

        sent = 0
        for session in app.state.registry.select(session_id):
            if await _deliver(session, "push", session.push_text(text, duration)):
                sent += 1
        return JSONResponse({"ok": True, "sessions": sent})

    @app.post("/push-bitmap")
    async def push_bitmap(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        session_id: str | None = None,
    ) -> JSONResponse:
        body = await _read_json(request)
        if body is None:
            return _error("invalid json")
        bitmap = body.get("bitmap")
        if not bitmap or not isinstance(bitmap, str):
            return _error("bitmap required")
        duration = _duration(body, BITMAP_DURATION_MS)
        if duration is None:
            return _error("duration must be a positive integer")

        sent = 0
        for session in app.state.registry.select(session_id):
            if await _deliver(session, "push_bitmap", session.push_bitmap(bitmap, duration)):
                sent += 1
        return JSONResponse({"ok": True, "sessions": sent})

    # ------------------------------------------------------------------
    # Mode flags
    # ------------------------------------------------------------------

    @app.get("/mic")
    async def mic_status(session_id: str | None = None) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        sessions = app.state.registry.select(session_id)
        return {"ok": True, "sessions": {s.session_id: s.listening for s in sessions}}

    @app.post("/mic")
    async def mic_toggle(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        session_id: str | None = None,
    ) -> JSONResponse:
        enabled = await _read_enabled(request)
        if enabled is _INVALID:
            return _error("enabled must be a boolean")
        result: dict[str, bool] = {}
        for session in app.state.registry.select(session_id):
            target = (not session.listening) if enabled is None else bool(enabled)
            await session.set_listening(target)
            result[session.session_id] = session.listening
        return JSONResponse({"ok": True, "sessions": result})

    @app.get("/copilot")
    async def copilot_status(session_id: str | None = None) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        sessions = app.state.registry.select(session_id)
        return {"ok": True, "sessions": {s.session_id: s.copilot for s in sessions}}

    @app.post("/copilot")
    async def copilot_toggle(  # pyright: ignore[reportUnusedFunction]
        request: Request,
        session_id: str | None = None,
    ) -> JSONResponse:
        enabled = await _read_enabled(request)
        if enabled is _INVALID:
            return _error("enabled must be a boolean")
        result: dict[str, bool] = {}
        for session in app.state.registry.select(session_id):
            target = (not session.copilot) if enabled is None else bool(enabled)
            await session.set_copilot(target)
            result[session.session_id] = session.copilot
        return JSONResponse({"ok": True, "sessions": result})

    # ------------------------------------------------------------------
    # Device socket
    # ------------------------------------------------------------------

    @app.websocket("/device")
    async def device_socket(ws: WebSocket) -> None:  # pyright: ignore[reportUnusedFunction]
        expected_key = app.state.config.device_api_key
        if expected_key and ws.query_params.get("api_key") != expected_key:
            log_event({"event_type": "DEVICE_AUTH_REJECTED"})
            await ws.close(code=1008)
            return

        await ws.accept()

        device = DeviceGateway(
            config=app.state.config,
            gateway=app.state.gateway,
            registry=app.state.registry,
            send_text=ws.send_text,
        )

        try:
            while True:
                raw = await ws.receive_text()
                await device.on_json_message(raw)

        except WebSocketDisconnect:
            await device.on_ws_disconnect(reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "DEVICE_WS_FATAL_ERROR",
                "session_id": device.session.session_id if device.session else None,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await device.on_ws_disconnect(reason="server_error")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

_INVALID = object()


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


async def _read_json(request: Request) -> dict[str, Any] | None:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def _read_enabled(request: Request) -> Any:
    """None (toggle), a bool, or _INVALID."""
    body = await _read_json(request)
    if body is None:
        return _INVALID
    enabled = body.get("enabled")
    if enabled is None or isinstance(enabled, bool):
        return enabled
    return _INVALID


def _duration(body: dict[str, Any], default: int) -> int | None:
    value = body.get("duration", default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return value


async def _deliver(session: BridgeSession, operation: str, aw: Any) -> bool:
    try:
        await aw
    except DisplayUnavailable as exc:
        log_event({
            "event_type": "PUSH_DELIVERY_FAILED",
            "session_id": session.session_id,
            "operation": operation,
            "message": str(exc),
        })
        return False
    return True
