"""OpenCode message/part shapes and the shared folding into canonical events.

OpenCode splits each message into a message record plus any number of part
records (text, reasoning, tool calls, patches, subtasks...). Both storage
backends, per-record JSON files and the ``opencode.db`` SQLite index, are
adapted into ``OpenCodeMessage``/``OpenCodePart`` and folded by
``fold_message`` so equivalent input yields identical events.
"""
from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, Field

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
from sessionlens.parsers.tool_names import normalize_tool_name

_TOOL_PART_TYPES = {"tool", "tool-invocation"}
_SILENT_PART_TYPES = {"step-start", "step-finish", "snapshot", "agent", "compaction"}


# ── Intermediate shapes ─────────────────────────────────────────────

class OpenCodeTokens(BaseModel):
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cacheRead: int = 0
    cacheWrite: int = 0


class OpenCodeMessage(BaseModel):
    id: str
    sessionID: str = ""
    role: str = "unknown"
    modelID: Optional[str] = None
    parentID: Optional[str] = None
    summary: bool = False
    cost: Optional[float] = None
    tokens: OpenCodeTokens = Field(default_factory=OpenCodeTokens)
    timeCreated: Any = None
    timeCompleted: Any = None


class OpenCodeToolState(BaseModel):
    status: str = "completed"
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Any = None
    title: Optional[str] = None
    timeEnd: Any = None


class OpenCodePart(BaseModel):
    id: str
    messageID: str = ""
    type: str
    index: int = 0
    text: str = ""
    callID: str = ""
    tool: str = ""
    state: Optional[OpenCodeToolState] = None
    hash: Optional[str] = None
    files: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    agent: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    command: Optional[str] = None
    mime: Optional[str] = None
    filename: Optional[str] = None
    url: Optional[str] = None
    attempt: Optional[int] = None
    errorMessage: Optional[str] = None


# ── Adapters ────────────────────────────────────────────────────────

def _int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_message_data(
    data: dict[str, Any],
    message_id: str | None = None,
    session_id: str | None = None,
    fallback_created: Any = None,
) -> OpenCodeMessage:
    """Adapt an OpenCode message payload (file body or DB ``data`` column)."""
    tokens = _dict(data.get("tokens"))
    cache = _dict(tokens.get("cache"))
    time = _dict(data.get("time"))
    cost = data.get("cost")
    summary = data.get("summary")
    return OpenCodeMessage(
        id=str(message_id or data.get("id") or ""),
        sessionID=str(session_id or data.get("sessionID") or ""),
        role=str(data.get("role") or "unknown"),
        modelID=_str_or_none(data.get("modelID")),
        parentID=_str_or_none(data.get("parentID")) or None,
        summary=summary is not None and summary is not False,
        cost=float(cost) if isinstance(cost, (int, float)) and not isinstance(cost, bool) and cost else None,
        tokens=OpenCodeTokens(
            input=_int(tokens.get("input")),
            output=_int(tokens.get("output")),
            reasoning=_int(tokens.get("reasoning")),
            cacheRead=_int(cache.get("read", tokens.get("cacheRead"))),
            cacheWrite=_int(cache.get("write", tokens.get("cacheWrite"))),
        ),
        timeCreated=time.get("created") or fallback_created,
        timeCompleted=time.get("completed") or None,
    )


def _parse_tool_state(raw: Any) -> OpenCodeToolState:
    state = _dict(raw)
    return OpenCodeToolState(
        status=str(state.get("status") or "completed"),
        input=_dict(state.get("input")),
        output=state.get("output"),
        error=state.get("error"),
        title=_str_or_none(state.get("title")),
        timeEnd=_dict(state.get("time")).get("end"),
    )


def parse_part_data(data: dict[str, Any], part_id: str | None = None, message_id: str | None = None) -> OpenCodePart:
    """Adapt an OpenCode part payload; unknown kinds become raw-JSON text parts."""
    base = {
        "id": str(part_id or data.get("id") or ""),
        "messageID": str(message_id or data.get("messageID") or ""),
        "index": _int(data.get("index")),
    }
    kind = data.get("type")

    if kind in ("text", "reasoning"):
        return OpenCodePart(type=kind, text=str(data.get("text") or ""), **base)
    if kind in _TOOL_PART_TYPES:
        return OpenCodePart(
            type=kind,
            callID=str(data.get("callID") or ""),
            tool=str(data.get("tool") or ""),
            state=_parse_tool_state(data.get("state")),
            **base,
        )
    if kind == "patch":
        files = data.get("files")
        return OpenCodePart(
            type=kind,
            hash=_str_or_none(data.get("hash")),
            files=[str(item) for item in files] if isinstance(files, list) else [],
            **base,
        )
    if kind == "subtask":
        return OpenCodePart(
            type=kind,
            description=_str_or_none(data.get("description")),
            agent=_str_or_none(data.get("agent")),
            model=_str_or_none(data.get("model")),
            prompt=_str_or_none(data.get("prompt")),
            command=_str_or_none(data.get("command")),
            **base,
        )
    if kind == "file":
        return OpenCodePart(
            type=kind,
            mime=_str_or_none(data.get("mime")),
            filename=_str_or_none(data.get("filename")),
            url=_str_or_none(data.get("url")),
            **base,
        )
    if kind == "retry":
        attempt = data.get("attempt")
        return OpenCodePart(
            type=kind,
            attempt=attempt if isinstance(attempt, int) and not isinstance(attempt, bool) else None,
            errorMessage=_str_or_none(_dict(data.get("error")).get("message")),
            **base,
        )
    if kind == "compaction":
        return OpenCodePart(type=kind, text=str(data.get("text") or ""), **base)
    if kind in _SILENT_PART_TYPES:
        return OpenCodePart(type=str(kind), **base)
    return OpenCodePart(type="text", text=json.dumps(data, ensure_ascii=False), **base)


def parse_db_message(row: dict[str, Any]) -> OpenCodeMessage:
    """Adapt a ``message`` table row; raises ``ValueError`` on a malformed ``data`` blob."""
    data = json.loads(row["data"])
    if not isinstance(data, dict):
        raise ValueError(f"message {row.get('id')} data is not an object")
    return parse_message_data(data, row["id"], row.get("session_id"), row.get("time_created"))


def parse_db_part(row: dict[str, Any]) -> OpenCodePart:
    data = json.loads(row["data"])
    if not isinstance(data, dict):
        raise ValueError(f"part {row.get('id')} data is not an object")
    return parse_part_data(data, row["id"], row.get("message_id"))


# ── Folding ─────────────────────────────────────────────────────────

def _file_label(part: OpenCodePart) -> str:
    return f"[File: {part.filename or 'unknown'} ({part.mime or 'unknown'})]"


def _fold_user(message: OpenCodeMessage, parts: list[OpenCodePart]) -> list[CanonicalEvent]:
    content: list[Any] = []
    for part in parts:
        if part.type == "text":
            content.append(TextBlock(text=part.text))
        elif part.type == "file":
            content.append(TextBlock(text=_file_label(part)))
        elif part.type == "subtask":
            content.append(TextBlock(text=f"[Subtask: {part.description or 'unknown'}]"))
    if not content:
        return []
    return [
        CanonicalEvent(
            type="user",
            message=EventMessage(role="user", id=message.id, content=content),
            timestamp=to_iso_timestamp(message.timeCreated),
        )
    ]


def _assistant_block(part: OpenCodePart) -> Any | None:
    if part.type == "text":
        return TextBlock(text=part.text)
    if part.type == "reasoning":
        return ThinkingBlock(thinking=part.text)
    if part.type in _TOOL_PART_TYPES:
        state = part.state or OpenCodeToolState()
        return ToolUseBlock(id=part.callID, name=normalize_tool_name(part.tool), input=dict(state.input))
    if part.type == "patch":
        return ToolUseBlock(id=f"patch-{part.id}", name="Patch", input={"hash": part.hash, "files": list(part.files)})
    if part.type == "subtask":
        return ToolUseBlock(
            id=f"subtask-{part.id}",
            name="Subtask",
            input={
                "description": part.description,
                "agent": part.agent,
                "model": part.model,
                "prompt": part.prompt,
                "command": part.command,
            },
        )
    if part.type == "file":
        return TextBlock(text=_file_label(part))
    if part.type == "retry":
        attempt = part.attempt if part.attempt is not None else "?"
        return TextBlock(text=f"[Retry attempt {attempt}: {part.errorMessage or 'unknown error'}]")
    return None


def _fold_assistant(message: OpenCodeMessage, parts: list[OpenCodePart]) -> list[CanonicalEvent]:
    events: list[CanonicalEvent] = []
    content = [block for block in (_assistant_block(part) for part in parts) if block is not None]
    tokens = message.tokens
    timestamp = to_iso_timestamp(message.timeCompleted or message.timeCreated)

    # Usage-only messages still matter for token accounting.
    if content or tokens.input > 0 or tokens.output > 0:
        usage = MessageUsage(
            input_tokens=tokens.input,
            output_tokens=tokens.output,
            cache_creation_input_tokens=tokens.cacheWrite,
            cache_read_input_tokens=tokens.cacheRead,
            reasoning_tokens=tokens.reasoning,
            reported_cost=message.cost if message.cost and message.cost > 0 else None,
        )
        events.append(
            CanonicalEvent(
                type="assistant",
                message=EventMessage(
                    role="assistant",
                    id=message.id,
                    model=message.modelID,
                    usage=usage,
                    content=content,
                ),
                timestamp=timestamp,
            )
        )

    for part in parts:
        state = part.state
        if part.type in _TOOL_PART_TYPES and state and state.status in ("completed", "error"):
            failed = state.status == "error"
            events.append(
                CanonicalEvent(
                    type="user",
                    message=EventMessage(
                        role="user",
                        id=f"{message.id}:{part.callID}:result",
                        content=[
                            ToolResultBlock(
                                tool_use_id=part.callID,
                                content=(state.error if failed else state.output) or "",
                                is_error=failed,
                            )
                        ],
                    ),
                    timestamp=to_iso_timestamp(state.timeEnd) if state.timeEnd else timestamp,
                )
            )
        if part.type == "subtask":
            events.append(
                CanonicalEvent(
                    type="user",
                    message=EventMessage(
                        role="user",
                        id=f"{message.id}:subtask-{part.id}:result",
                        content=[
                            ToolResultBlock(
                                tool_use_id=f"subtask-{part.id}",
                                content=part.description or "Subtask completed",
                                is_error=False,
                            )
                        ],
                    ),
                    timestamp=timestamp,
                )
            )

    if message.summary or any(part.type == "compaction" for part in parts):
        events.append(
            CanonicalEvent(
                type="summary",
                message=EventMessage(role="assistant", id=f"{message.id}:summary", content="Context compacted"),
                timestamp=timestamp,
            )
        )
    return events


def fold_message(message: OpenCodeMessage, parts: list[OpenCodePart]) -> list[CanonicalEvent]:
    """Fold one message and its parts into canonical events.

    Yields at most one primary event, one ``tool_result`` event per finished
    tool or subtask part, and at most one compaction summary.
    """
    ordered = sorted(parts, key=lambda part: part.index)
    if message.role == "user":
        return _fold_user(message, ordered)
    if message.role == "assistant":
        return _fold_assistant(message, ordered)
    return []
