"""
Turn result classification.

Every consumer of submit_turn() results runs the reply through
classify_reply() before deciding whether to render anything.
"""

from __future__ import annotations

from enum import Enum

from constants import NO_REPLY_SENTINELS


class ReplyKind(str, Enum):
    """
    CONTENT:  render it
    EMPTY:    nothing came back (cancelled, ended without text)
    NO_REPLY: the agent explicitly declined to answer
    """

    CONTENT = "CONTENT"
    EMPTY = "EMPTY"
    NO_REPLY = "NO_REPLY"


def classify_reply(text: str | None) -> ReplyKind:
    if text is None:
        return ReplyKind.EMPTY
    stripped = text.strip()
    if not stripped:
        return ReplyKind.EMPTY
    upper = stripped.upper()
    if any(upper.startswith(s) for s in NO_REPLY_SENTINELS):
        return ReplyKind.NO_REPLY
    return ReplyKind.CONTENT
