"""Line addition/deletion estimates for file-modifying tool calls."""
from __future__ import annotations

from typing import Any


def count_lines(text: Any) -> int:
    if not isinstance(text, str) or not text:
        return 0
    newlines = text.count("\n")
    return newlines if text.endswith("\n") else newlines + 1


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def calculate_line_changes(tool_name: str, tool_input: dict[str, Any]) -> tuple[int, int]:
    """Return ``(additions, deletions)`` for one tool invocation."""
    if tool_name == "Write":
        return count_lines(tool_input.get("content")), 0

    if tool_name == "Edit":
        if "new_string" not in tool_input and "old_string" not in tool_input:
            # Patch-derived edits report their own counts.
            return _coerce_count(tool_input.get("additions")), _coerce_count(tool_input.get("deletions"))
        return count_lines(tool_input.get("new_string")), count_lines(tool_input.get("old_string"))

    if tool_name == "MultiEdit":
        edits = tool_input.get("edits")
        if not isinstance(edits, list):
            return 0, 0
        additions = 0
        deletions = 0
        for edit in edits:
            if not isinstance(edit, dict):
                continue
            additions += count_lines(edit.get("new_string"))
            deletions += count_lines(edit.get("old_string"))
        return additions, deletions

    return 0, 0
