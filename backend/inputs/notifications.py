"""
Phone notification formatting.

Pure string helpers; the deduplicator decides when these run.
"""

from __future__ import annotations

from constants import (
    CARD_MAX_CHARS,
    NOTIFICATION_DEFAULT_APP,
    NOTIFICATION_MAX_BODY_CHARS,
    NOTIFICATION_MIN_CUT_CHARS,
)


def source_key(app: str | None) -> str:
    return (app or "").strip() or NOTIFICATION_DEFAULT_APP


def format_body(
    title: str | None,
    content: str | None,
    *,
    max_chars: int = NOTIFICATION_MAX_BODY_CHARS,
    min_cut_chars: int = NOTIFICATION_MIN_CUT_CHARS,
) -> str:
    """
    "title: content" (or whichever exists), shortened to max_chars.

    Long bodies are cut at the last space before max_chars when that space
    lies past min_cut_chars, otherwise hard-cut; "..." is appended.
    """
    title = (title or "").strip()
    content = (content or "").strip()
    if title and content:
        body = f"{title}: {content}"
    else:
        body = title or content

    if len(body) <= max_chars:
        return body

    cut = body.rfind(" ", 0, max_chars + 1)
    if cut <= min_cut_chars:
        cut = max_chars
    return body[:cut] + "..."


def format_card(app: str, body: str, count: int = 1) -> str:
    """Card text; coalesced flushes carry the count next to the app name."""
    heading = app if count <= 1 else f"{app} ({count})"
    return f"{heading}\n{body}"


def clip_card(text: str, max_chars: int = CARD_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."
