"""
Active session registry.

The control plane fans pushes out to every session here; the device
socket adds a session on session_start and removes it on disconnect.
"""

from __future__ import annotations

from typing import Any, Iterator

from observability.logger import log_event
from session.bridge_session import BridgeSession


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, BridgeSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[BridgeSession]:
        return iter(list(self._sessions.values()))

    def ids(self) -> list[str]:
        return list(self._sessions)

    def get(self, session_id: str) -> BridgeSession | None:
        return self._sessions.get(session_id)

    def select(self, session_id: str | None = None) -> list[BridgeSession]:
        """All sessions, or just the named one (empty if unknown)."""
        if session_id is None:
            return list(self._sessions.values())
        session = self._sessions.get(session_id)
        return [session] if session else []

    def add(self, session: BridgeSession) -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"duplicate session id: {session.session_id}")
        self._sessions[session.session_id] = session
        log_event({
            "event_type": "SESSION_REGISTERED",
            "session_id": session.session_id,
            "active": len(self._sessions),
        })

    async def remove(self, session_id: str) -> BridgeSession | None:
        """Unregister and close; closing twice is harmless."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        await session.close()
        log_event({
            "event_type": "SESSION_UNREGISTERED",
            "session_id": session_id,
            "active": len(self._sessions),
        })
        return session

    async def close_all(self) -> None:
        for session_id in self.ids():
            await self.remove(session_id)

    def snapshot(self) -> dict[str, Any]:
        return {sid: s.snapshot() for sid, s in self._sessions.items()}
