"""Canonical tool naming shared by every provider normalizer."""
from __future__ import annotations

_CANONICAL_TOOL_NAMES = {
    "bash": "Bash",
    "shell": "Bash",
    "exec_command": "Bash",
    "local_shell": "Bash",
    "local_shell_call": "Bash",
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "multiedit": "MultiEdit",
    "patch": "Edit",
    "apply_patch": "Edit",
    "glob": "Glob",
    "grep": "Grep",
    "list": "LS",
    "ls": "LS",
    "webfetch": "WebFetch",
    "web_fetch": "WebFetch",
    "websearch": "WebSearch",
    "web_search": "WebSearch",
    "task": "Task",
    "todowrite": "TodoWrite",
    "todoread": "TodoRead",
}


def normalize_tool_name(name: str | None) -> str:
    """Map a provider-native tool name onto the canonical tool vocabulary.

    Lookup is case-insensitive; names without a canonical mapping are
    returned unchanged.
    """
    if not name:
        return name or ""
    return _CANONICAL_TOOL_NAMES.get(name.strip().lower(), name)
