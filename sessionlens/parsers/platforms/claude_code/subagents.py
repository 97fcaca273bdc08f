"""Scan Claude Code subagent transcripts stored beside a parent session."""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from sessionlens.date_utils import to_iso_timestamp
from sessionlens.models import SubagentStats, ToolCall
from sessionlens.parsers.jsonl import iter_json_records

logger = logging.getLogger("sessionlens.claude")

_AGENT_FILE_PATTERN = re.compile(r"^agent-(.+)\.jsonl$")
_SYSTEM_AGENT_TYPE_PATTERN = re.compile(r"subagent_type['\":\s]+(\w+)", re.IGNORECASE)


def _first_user_text(content: Any) -> str:
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = str(block.get("text") or "").strip()
                if text:
                    return text
    return ""


def _parent_task_calls(parent_path: Path) -> list[dict[str, Any]]:
    """``Task`` tool inputs issued by the parent session, in order."""
    calls: list[dict[str, Any]] = []
    if not parent_path.is_file():
        return calls
    for record in iter_json_records(parent_path, "claude-code"):
        if record.get("type") != "assistant":
            continue
        content = (record.get("message") or {}).get("content")
        if not isinstance(content, list):
            continue
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            if block.get("name") != "Task" or not isinstance(block.get("input"), dict):
                continue
            calls.append(block["input"])
    return calls


def _parse_agent_file(path: Path, agent_id: str, parent_calls: list[dict[str, Any]]) -> SubagentStats | None:
    tool_calls: list[ToolCall] = []
    agent_type: str | None = None
    description: str | None = None
    first_prompt = ""

    for record in iter_json_records(path, "claude-code"):
        kind = record.get("type")
        message = record.get("message") if isinstance(record.get("message"), dict) else {}
        content = message.get("content")

        if kind == "user" and not first_prompt:
            first_prompt = _first_user_text(content)

        if kind == "system" and content and agent_type is None:
            raw = content if isinstance(content, str) else json.dumps(content)
            match = _SYSTEM_AGENT_TYPE_PATTERN.search(raw)
            if match:
                agent_type = match.group(1)

        if kind != "assistant" or not isinstance(content, list):
            continue
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
            tool_calls.append(
                ToolCall(
                    name=str(block.get("name") or ""),
                    input=tool_input,
                    timestamp=to_iso_timestamp(record.get("timestamp")),
                    toolUseId=block.get("id"),
                )
            )

    # The spawning call's prompt is the fork's first user message.
    if first_prompt:
        for call in parent_calls:
            if str(call.get("prompt") or "").strip() == first_prompt:
                agent_type = str(call["subagent_type"]) if call.get("subagent_type") else agent_type
                description = str(call["description"]) if call.get("description") else description
                break

    if agent_type is None or description is None:
        for call in tool_calls:
            if call.name != "Task":
                continue
            if agent_type is None and call.input.get("subagent_type"):
                agent_type = str(call.input["subagent_type"])
            if description is None and call.input.get("description"):
                description = str(call.input["description"])

    if not tool_calls and not agent_type and not description:
        return None
    return SubagentStats(agentId=agent_id, agentType=agent_type, description=description, toolCalls=tool_calls)


def scan_subagent_dir(session_dir: str | Path, session_id: str) -> list[SubagentStats]:
    """Parse every ``agent-<id>.jsonl`` under ``<session_dir>/<session_id>/subagents``."""
    session_dir = Path(session_dir)
    subagents_dir = session_dir / session_id / "subagents"
    if not subagents_dir.is_dir():
        return []
    try:
        names = sorted(entry.name for entry in subagents_dir.iterdir())
    except OSError as exc:
        logger.warning("Failed to scan subagents directory %s: %s", subagents_dir, exc)
        return []

    parent_calls = _parent_task_calls(session_dir / f"{session_id}.jsonl")
    results: list[SubagentStats] = []
    for name in names:
        match = _AGENT_FILE_PATTERN.match(name)
        if not match:
            continue
        stats = _parse_agent_file(subagents_dir / name, match.group(1), parent_calls)
        if stats is not None:
            results.append(stats)
    logger.debug("Found %d subagents for session %s", len(results), session_id)
    return results
