"""
DisplaySurface over the /device WebSocket.

The device (or an SDK-side relay) renders whatever command it receives.
Each command is one JSON text frame:

    {"type": "show_text",   "text": ...}
    {"type": "show_card",   "title": ..., "body": ...}
    {"type": "show_bitmap", "bitmap": <base64 BMP>}
    {"type": "clear"}
    {"type": "dashboard",   "text": ...}
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable


SendText = Callable[[str], Awaitable[None]]


class WebSocketSurface:
    def __init__(self, send_text: SendText) -> None:
        self._send_text = send_text

    async def show_text(self, body: str) -> None:
        await self._send({"type": "show_text", "text": body})

    async def show_card(self, title: str, body: str) -> None:
        await self._send({"type": "show_card", "title": title, "body": body})

    async def show_bitmap(self, base64_image: str) -> None:
        await self._send({"type": "show_bitmap", "bitmap": base64_image})

    async def clear(self) -> None:
        await self._send({"type": "clear"})

    async def write_dashboard(self, text: str) -> None:
        await self._send({"type": "dashboard", "text": text})

    async def _send(self, msg: dict[str, Any]) -> None:
        await self._send_text(json.dumps(msg, ensure_ascii=False))
