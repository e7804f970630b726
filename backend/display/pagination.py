"""
Pure text pagination for the constrained display.

No side effects, no timing. The arbiter decides how long each page dwells.

Split rule:
- Text of at most `chunk_chars` characters is a single page.
- Otherwise cut at the last space at or before index `chunk_chars`.
- If that space sits before `min_chunk_chars` (or there is none), hard-cut
  at exactly `chunk_chars`.
- Exactly the boundary space is dropped at a word cut, so joining
  word-split pages with a single space restores the text, newlines and
  runs of spaces included. Hard cuts drop nothing.
"""

from __future__ import annotations

from constants import PAGE_CHUNK_CHARS, PAGE_MIN_CHUNK_CHARS


def split_pages(
    text: str,
    *,
    chunk_chars: int = PAGE_CHUNK_CHARS,
    min_chunk_chars: int = PAGE_MIN_CHUNK_CHARS,
) -> list[str]:
    """
    Split `text` into display pages.

    >>> split_pages("short")
    ['short']
    """
    if chunk_chars <= 0:
        raise ValueError("chunk_chars must be > 0")
    if min_chunk_chars > chunk_chars:
        raise ValueError("min_chunk_chars must be <= chunk_chars")

    if len(text) <= chunk_chars:
        return [text]

    pages: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= chunk_chars:
            pages.append(remaining)
            break

        cut = remaining.rfind(" ", 0, chunk_chars + 1)
        if cut <= 0 or cut < min_chunk_chars:
            pages.append(remaining[:chunk_chars])
            remaining = remaining[chunk_chars:]
            continue

        # the boundary space is consumed; any other whitespace is kept
        pages.append(remaining[:cut])
        remaining = remaining[cut + 1:]

    return pages


def label_pages(pages: list[str]) -> list[str]:
    """Prefix `[i/n] ` when there is more than one page."""
    total = len(pages)
    if total <= 1:
        return list(pages)
    return [f"[{i}/{total}] {page}" for i, page in enumerate(pages, start=1)]


def paginate(
    text: str,
    *,
    chunk_chars: int = PAGE_CHUNK_CHARS,
    min_chunk_chars: int = PAGE_MIN_CHUNK_CHARS,
) -> list[str]:
    """split_pages() followed by label_pages()."""
    return label_pages(
        split_pages(text, chunk_chars=chunk_chars, min_chunk_chars=min_chunk_chars)
    )
