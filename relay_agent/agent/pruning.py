"""Tool-result truncation for transcripts that overflow the context window."""

from __future__ import annotations

from typing import Any

from loguru import logger

DEFAULT_CONTEXT_CHARS = 200_000
TRUNCATION_FRACTION = 0.3


def content_length(content: Any) -> int:
    if isinstance(content, str):
        return len(content)
    if isinstance(content, list):
        return sum(len(block.get("text") or "") for block in content if isinstance(block, dict))
    return 0


def _truncate_text(text: str, limit: int) -> str:
    return f"{text[:limit]}\n\n[content truncated from {len(text)} to {limit} chars]"


def truncate_oversized_tool_results(
    messages: list[dict[str, Any]],
    context_chars: int = DEFAULT_CONTEXT_CHARS,
) -> int:
    """Truncate `tool` messages larger than 30% of the context in place; returns how many."""
    limit = int(context_chars * TRUNCATION_FRACTION)
    truncated = 0
    for message in messages:
        if not isinstance(message, dict) or message.get("role") != "tool":
            continue
        content = message.get("content")
        size = content_length(content)
        if size <= limit:
            continue

        rewritten = False
        if isinstance(content, str):
            message["content"] = _truncate_text(content, limit)
            rewritten = True
        elif isinstance(content, list):
            for block in content:
                text = block.get("text") if isinstance(block, dict) else None
                if isinstance(text, str) and len(text) > limit:
                    block["text"] = _truncate_text(text, limit)
                    rewritten = True
        if rewritten:
            truncated += 1
            logger.warning(f"Truncating oversized tool result: {size} -> {limit} chars")
    return truncated

