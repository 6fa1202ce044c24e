"""Fence-aware text splitting for streamed blocks and outbound replies.

A fenced region runs from a line starting with three backticks to the end of
the next such line; an unclosed fence runs to the end of the text. No split
point ever lands strictly inside a fenced region, so a fence longer than the
limit is emitted whole.
"""

from __future__ import annotations

FENCE = "```"

PARAGRAPH: tuple[str, ...] = ("\n\n",)
SENTENCE: tuple[str, ...] = (". ", "! ", "? ", ".\n", "!\n", "?\n")
LINE: tuple[str, ...] = ("\n",)

BLOCK_LEVELS: tuple[tuple[str, ...], ...] = (PARAGRAPH, LINE)
REPLY_LEVELS: tuple[tuple[str, ...], ...] = (PARAGRAPH, SENTENCE, LINE)


def fence_spans(text: str) -> list[tuple[int, int]]:
    """(start, end) offsets of fenced regions, each covering whole lines."""
    spans: list[tuple[int, int]] = []
    open_at: int | None = None
    pos = 0
    for line in text.splitlines(keepends=True):
        if line.lstrip(" ").startswith(FENCE):
            if open_at is None:
                open_at = pos
            else:
                spans.append((open_at, pos + len(line)))
                open_at = None
        pos += len(line)
    if open_at is not None:
        spans.append((open_at, len(text)))
    return spans


def has_open_fence(text: str) -> bool:
    """True when the text ends inside an unclosed fence."""
    spans = fence_spans(text)
    if not spans:
        return False
    start, end = spans[-1]
    if end < len(text):
        return False
    fences = sum(1 for line in text[start:].splitlines() if line.lstrip(" ").startswith(FENCE))
    return fences % 2 == 1


def _inside(spans: list[tuple[int, int]], pos: int) -> tuple[int, int] | None:
    for start, end in spans:
        if start < pos < end:
            return start, end
    return None


def find_cut(
    text: str,
    max_chars: int,
    min_chars: int,
    levels: tuple[tuple[str, ...], ...] = BLOCK_LEVELS,
) -> int:
    """Offset at which to end the next piece of `text`."""
    if len(text) <= max_chars:
        return len(text)

    spans = fence_spans(text)
    span = _inside(spans, max_chars)
    if span is not None:
        start, end = span
        if start >= min_chars and start > 0:
            return start
        return end

    for separators in levels:
        best = -1
        for sep in separators:
            idx = text.rfind(sep, 0, max_chars)
            while idx >= min_chars:
                cut = idx + len(sep)
                if _inside(spans, cut) is None:
                    best = max(best, cut)
                    break
                idx = text.rfind(sep, 0, idx)
        if best > 0:
            return best
    return max_chars


def _split(text: str, max_chars: int, min_chars: int, levels: tuple[tuple[str, ...], ...]) -> list[str]:
    max_chars = max(1, int(max_chars))
    min_chars = max(0, min(int(min_chars), max_chars))
    pieces: list[str] = []
    remaining = text.strip()
    while remaining:
        cut = find_cut(remaining, max_chars, min_chars, levels)
        piece = remaining[:cut].rstrip()
        if piece:
            pieces.append(piece)
        remaining = remaining[cut:].lstrip()
    return pieces


def split_blocks(text: str, max_chars: int, min_fraction: float = 0.3) -> list[str]:
    """Split streamed text into blocks of about `max_chars` (paragraph, line, hard cut)."""
    return _split(text, max_chars, int(max_chars * min_fraction), BLOCK_LEVELS)


def chunk_reply(text: str, max_chars: int, min_chars: int = 0) -> list[str]:
    """
    Split a complete reply for delivery (paragraph, sentence, line, hard cut).

    Boundaries are only taken at or past `min_chars`, itself capped at two
    thirds of `max_chars` so a large minimum cannot force hard cuts.
    """
    effective_min = min(max(0, int(min_chars)), int(max_chars * 0.66))
    return _split(text, max_chars, effective_min, REPLY_LEVELS)
