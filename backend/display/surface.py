"""
Device rendering surface.

The wearable SDK (or a relay speaking for it) is an external
collaborator; the arbiter only needs these capabilities.

Contract:
- Every call renders immediately and returns once the device accepted it
- Failures raise; the arbiter decides whether they matter
- write_dashboard() is cosmetic
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class DisplaySurface(Protocol):
    async def show_text(self, body: str) -> None: ...
    async def show_card(self, title: str, body: str) -> None: ...
    async def show_bitmap(self, base64_image: str) -> None: ...
    async def clear(self) -> None: ...
    async def write_dashboard(self, text: str) -> None: ...
