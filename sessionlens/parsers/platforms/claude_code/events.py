"""Claude Code transcript records mapped onto canonical events.

Claude's own JSONL shape is already close to the canonical model, so this is
mostly validation: unknown record types are dropped and unknown content
blocks fall back to text.
"""
from __future__ import annotations

import json
from typing import Any

from sessionlens.date_utils import to_iso_timestamp
from sessionlens.models import (
    CanonicalEvent,
    EventMessage,
    MessageUsage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

_CONVERTED_TYPES = {"user", "assistant", "summary"}
_PLACEHOLDER_BLOCKS = {"image": "[Image]", "document": "[Document]"}


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def convert_usage(raw: Any) -> MessageUsage | None:
    if not isinstance(raw, dict):
        return None
    cost = raw.get("reported_cost")
    return MessageUsage(
        input_tokens=_coerce_int(raw.get("input_tokens")),
        output_tokens=_coerce_int(raw.get("output_tokens")),
        cache_creation_input_tokens=_coerce_int(raw.get("cache_creation_input_tokens")),
        cache_read_input_tokens=_coerce_int(raw.get("cache_read_input_tokens")),
        reasoning_tokens=_coerce_int(raw.get("reasoning_tokens")),
        reported_cost=float(cost) if isinstance(cost, (int, float)) and not isinstance(cost, bool) else None,
    )


def convert_block(block: Any) -> Any | None:
    if isinstance(block, str):
        return TextBlock(text=block)
    if not isinstance(block, dict):
        return None
    kind = block.get("type")
    if kind == "text":
        return TextBlock(text=str(block.get("text") or ""))
    if kind == "thinking":
        return ThinkingBlock(thinking=str(block.get("thinking") or ""))
    if kind == "tool_use":
        tool_input = block.get("input")
        return ToolUseBlock(
            id=str(block.get("id") or ""),
            name=str(block.get("name") or ""),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if kind == "tool_result":
        duration = block.get("duration")
        return ToolResultBlock(
            tool_use_id=str(block.get("tool_use_id") or ""),
            content=block.get("content", ""),
            is_error=bool(block.get("is_error")),
            duration=float(duration) if isinstance(duration, (int, float)) and not isinstance(duration, bool) else None,
        )
    if kind in _PLACEHOLDER_BLOCKS:
        return TextBlock(text=_PLACEHOLDER_BLOCKS[kind])
    if kind == "redacted_thinking":
        return None
    return TextBlock(text=json.dumps(block, ensure_ascii=False))


def convert_content(content: Any) -> list[Any]:
    if isinstance(content, str):
        return [TextBlock(text=content)] if content else []
    if not isinstance(content, list):
        return []
    blocks = []
    for raw in content:
        block = convert_block(raw)
        if block is not None:
            blocks.append(block)
    return blocks


def convert_claude_record(record: dict[str, Any]) -> CanonicalEvent | None:
    """Return the canonical event for one transcript line, or ``None``."""
    kind = record.get("type")
    if kind not in _CONVERTED_TYPES:
        return None
    timestamp = to_iso_timestamp(record.get("timestamp"))

    if kind == "summary":
        summary_id = record.get("leafUuid") or record.get("uuid") or f"summary-{timestamp}"
        return CanonicalEvent(
            type="summary",
            message=EventMessage(role="assistant", id=str(summary_id), content=str(record.get("summary") or "")),
            timestamp=timestamp,
        )

    message = record.get("message")
    if not isinstance(message, dict):
        return None
    message_id = message.get("id") or record.get("uuid") or ""
    return CanonicalEvent(
        type=kind,
        message=EventMessage(
            role=str(message.get("role") or kind),
            id=str(message_id),
            model=message.get("model") if isinstance(message.get("model"), str) else None,
            usage=convert_usage(message.get("usage")) if kind == "assistant" else None,
            content=convert_content(message.get("content")),
        ),
        timestamp=timestamp,
    )
