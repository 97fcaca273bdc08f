"""In-session text search helpers shared by the providers."""
from __future__ import annotations

import json
from typing import Any

from sessionlens import config


def make_snippet(text: str, query: str, radius: int | None = None) -> str | None:
    """Return the match plus ``radius`` characters either side, or ``None``."""
    if not text or not query:
        return None
    radius = config.SEARCH_SNIPPET_RADIUS if radius is None else radius
    index = text.lower().find(query.lower())
    if index < 0:
        return None
    start = max(0, index - radius)
    end = min(len(text), index + len(query) + radius)
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet.replace("\n", " ")


def searchable_block_text(content: Any) -> str:
    """Flatten canonical/Claude message content into one searchable string."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        for key in ("text", "thinking", "content"):
            value = block.get(key)
            if isinstance(value, str):
                parts.append(value)
        tool_input = block.get("input")
        if isinstance(tool_input, dict):
            parts.append(json.dumps(tool_input, ensure_ascii=False))
    return " ".join(parts)


def truncate_label(text: str, max_length: int | None = None) -> str:
    """Collapse whitespace and cap ``text`` at ``max_length`` characters."""
    max_length = config.LABEL_MAX_LENGTH if max_length is None else max_length
    collapsed = " ".join(text.split())
    if len(collapsed) > max_length:
        return collapsed[: max_length - 3] + "..."
    return collapsed
