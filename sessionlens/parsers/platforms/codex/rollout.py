"""Stateful conversion of Codex rollout lines into canonical events.

Codex writes tool execution as separate begin/end records
(``exec_command_begin``/``exec_command_end``, ``mcp_tool_call_begin``/
``mcp_tool_call_end``) sharing a ``call_id``. The normalizer keeps the begin
record until its end arrives and then emits a ``tool_use``/``tool_result``
pair. ``turn_context`` records set the model stamped onto later assistant
events; ``token_count`` records carry usage plus sparse context-window and
rate-limit snapshots.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

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
from sessionlens.observability import record_parser_failure
from sessionlens.parsers.tool_names import normalize_tool_name

logger = logging.getLogger("sessionlens.codex")

_PATCH_FILE_PATTERN = re.compile(r"\*\*\* (?:Add|Update|Delete) File: (.+)")

# event_msg kinds that carry nothing beyond what response_item already records.
_IGNORED_EVENT_KINDS = {
    "turn_started",
    "turn_complete",
    "task_started",
    "task_complete",
    "turn_aborted",
    "agent_reasoning",
    "agent_message",
    "user_message",
    "background",
}


@dataclass
class PendingCall:
    call_id: str
    timestamp: str
    tool_name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    command: list[str] = field(default_factory=list)
    workdir: str | None = None


def extract_patch_file_paths(patch_input: str) -> list[str]:
    """File paths named by ``*** Add|Update|Delete File:`` headers in a patch."""
    if not isinstance(patch_input, str):
        return []
    return [match.group(1).strip() for match in _PATCH_FILE_PATTERN.finditer(patch_input)]


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _optional_number(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts = [str(part.get("text")) for part in content if isinstance(part, dict) and part.get("text")]
    return "\n".join(texts)


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"raw": raw}


def _command_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(part) for part in value]
    if isinstance(value, str) and value:
        return [value]
    return []


class CodexRolloutNormalizer:
    """Converts rollout lines to canonical events; one instance per reader."""

    def __init__(self) -> None:
        self._record_handlers: dict[str, Callable[[str, dict[str, Any]], list[CanonicalEvent]]] = {
            "session_meta": self._handle_session_meta,
            "response_item": self._handle_response_item,
            "compacted": self._handle_compacted,
            "turn_context": self._handle_turn_context,
            "event_msg": self._handle_event_msg,
        }
        self._item_handlers: dict[str, Callable[[str, dict[str, Any]], list[CanonicalEvent]]] = {
            "message": self._handle_message,
            "reasoning": self._handle_reasoning,
            "function_call": self._handle_function_call,
            "function_call_output": self._handle_function_call_output,
            "local_shell_call": self._handle_local_shell_call,
            "custom_tool_call": self._handle_custom_tool_call,
            "custom_tool_call_output": self._handle_custom_tool_call_output,
        }
        self._event_handlers: dict[str, Callable[[str, dict[str, Any]], list[CanonicalEvent]]] = {
            "token_count": self._handle_token_count,
            "exec_command_begin": self._handle_exec_begin,
            "exec_command_end": self._handle_exec_end,
            "mcp_tool_call_begin": self._handle_mcp_begin,
            "mcp_tool_call_end": self._handle_mcp_end,
            "error": self._handle_error,
            "context_compacted": self._handle_context_compacted,
            "patch_applied": self._handle_patch_applied,
        }
        self.reset()

    def reset(self) -> None:
        self.session_meta: dict[str, Any] | None = None
        self.current_model: str | None = None
        self.pending_exec: dict[str, PendingCall] = {}
        self.pending_mcp: dict[str, PendingCall] = {}
        self.last_token_usage: dict[str, Any] | None = None
        self.model_context_window: int | None = None
        self.last_rate_limits: dict[str, Any] | None = None

    def convert_line(self, line: dict[str, Any]) -> list[CanonicalEvent]:
        handler = self._record_handlers.get(str(line.get("type") or ""))
        payload = line.get("payload")
        if handler is None or not isinstance(payload, dict):
            return []
        return handler(to_iso_timestamp(line.get("timestamp")), payload)

    # ── Event construction ──

    def _assistant(self, message_id: str, timestamp: str, content: list[Any], usage: MessageUsage | None = None) -> CanonicalEvent:
        return CanonicalEvent(
            type="assistant",
            message=EventMessage(
                role="assistant",
                id=message_id,
                model=self.current_model,
                usage=usage,
                content=content,
            ),
            timestamp=timestamp,
        )

    @staticmethod
    def _user(message_id: str, timestamp: str, content: list[Any]) -> CanonicalEvent:
        return CanonicalEvent(
            type="user",
            message=EventMessage(role="user", id=message_id, content=content),
            timestamp=timestamp,
        )

    @staticmethod
    def _summary(message_id: str, timestamp: str, text: str) -> CanonicalEvent:
        return CanonicalEvent(
            type="summary",
            message=EventMessage(role="assistant", id=message_id, content=text),
            timestamp=timestamp,
        )

    # ── Top-level records ──

    def _handle_session_meta(self, timestamp: str, payload: dict[str, Any]) -> list[CanonicalEvent]:
        self.session_meta = payload
        return []

    def _handle_turn_context(self, timestamp: str, payload: dict[str, Any]) -> list[CanonicalEvent]:
        model = payload.get("model")
        if isinstance(model, str) and model:
            self.current_model = model
        return []

    def _handle_compacted(self, timestamp: str, payload: dict[str, Any]) -> list[CanonicalEvent]:
        return [self._summary(f"compacted-{timestamp}", timestamp, str(payload.get("summary") or "Context compacted"))]

    def _handle_response_item(self, timestamp: str, payload: dict[str, Any]) -> list[CanonicalEvent]:
        handler = self._item_handlers.get(str(payload.get("type") or ""))
        return handler(timestamp, payload) if handler else []

    def _handle_event_msg(self, timestamp: str, payload: dict[str, Any]) -> list[CanonicalEvent]:
        kind = str(payload.get("type") or "")
        if kind in _IGNORED_EVENT_KINDS:
            return []
        handler = self._event_handlers.get(kind)
        return handler(timestamp, payload) if handler else []

    # ── response_item payloads ──

    def _handle_message(self, timestamp: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        text = _content_text(item.get("content"))
        if not text:
            return []
        message_id = str(item.get("id") or f"message-{timestamp}")
        role = item.get("role")
        if role == "user":
            return [self._user(message_id, timestamp, [TextBlock(text=text)])]
        if role == "assistant":
            return [self._assistant(message_id, timestamp, [TextBlock(text=text)])]
        return []

    def _handle_reasoning(self, timestamp: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        summaries = [
            str(entry["text"])
            for entry in item.get("summary") or []
            if isinstance(entry, dict) and entry.get("type") == "summary_text" and entry.get("text")
        ]
        if not summaries:
            return []
        message_id = str(item.get("id") or f"reasoning-{timestamp}")
        return [self._assistant(message_id, timestamp, [ThinkingBlock(thinking="\n".join(summaries))])]

    def _handle_function_call(self, timestamp: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        call_id = str(item.get("call_id") or "")
        block = ToolUseBlock(
            id=call_id,
            name=normalize_tool_name(str(item.get("name") or "")),
            input=_parse_arguments(item.get("arguments")),
        )
        return [self._assistant(str(item.get("id") or call_id), timestamp, [block])]

    def _handle_function_call_output(self, timestamp: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        call_id = str(item.get("call_id") or "")
        output = item.get("output")
        if isinstance(output, dict):
            # Newer rollouts wrap output as {"content": ..., "success": ...}.
            block = ToolResultBlock(
                tool_use_id=call_id,
                content=output.get("content", ""),
                is_error=output.get("success") is False,
            )
        else:
            block = ToolResultBlock(tool_use_id=call_id, content=output if output is not None else "", is_error=False)
        return [self._user(f"{call_id}:result", timestamp, [block])]

    def _handle_local_shell_call(self, timestamp: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        action = item.get("action") if isinstance(item.get("action"), dict) else {}
        call_id = str(item.get("call_id") or item.get("id") or "")
        block = ToolUseBlock(
            id=call_id,
            name="Bash",
            input={"command": " ".join(_command_list(action.get("command"))), "workdir": action.get("workdir")},
        )
        return [self._assistant(str(item.get("id") or call_id), timestamp, [block])]

    def _handle_custom_tool_call(self, timestamp: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        call_id = str(item.get("call_id") or "")
        name = str(item.get("name") or "")
        if name == "apply_patch":
            events = []
            for file_path in extract_patch_file_paths(item.get("input")):
                event_id = f"{call_id}-{file_path}"
                block = ToolUseBlock(id=event_id, name="Edit", input={"file_path": file_path})
                events.append(self._assistant(event_id, timestamp, [block]))
            return events
        block = ToolUseBlock(id=call_id, name=normalize_tool_name(name), input=_parse_arguments(item.get("input")))
        return [self._assistant(call_id, timestamp, [block])]

    def _handle_custom_tool_call_output(self, timestamp: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        call_id = str(item.get("call_id") or "")
        output = item.get("output")
        is_error = False
        duration: float | None = None
        try:
            parsed = json.loads(output) if isinstance(output, str) else None
        except ValueError:
            parsed = None
        metadata = parsed.get("metadata") if isinstance(parsed, dict) else None
        if isinstance(metadata, dict):
            exit_code = metadata.get("exit_code")
            is_error = exit_code is not None and exit_code != 0
            seconds = _optional_number(metadata.get("duration_seconds"))
            if seconds:
                duration = float(round(seconds * 1000))
        block = ToolResultBlock(
            tool_use_id=call_id,
            content=output if output is not None else "",
            is_error=is_error,
            duration=duration,
        )
        return [self._user(f"{call_id}:result", timestamp, [block])]

    # ── event_msg payloads ──

    def _handle_token_count(self, timestamp: str, event: dict[str, Any]) -> list[CanonicalEvent]:
        info = event.get("info") if isinstance(event.get("info"), dict) else {}
        # Sparse updates: an absent field never clears a known value.
        window = _coerce_int(info.get("model_context_window"))
        if window:
            self.model_context_window = window
        if event.get("rate_limits"):
            self.last_rate_limits = event["rate_limits"]

        usage = info.get("last_token_usage") or info.get("total_token_usage")
        if not isinstance(usage, dict):
            return []
        self.last_token_usage = usage
        mapped = MessageUsage(
            input_tokens=_coerce_int(usage.get("input_tokens")),
            output_tokens=_coerce_int(usage.get("output_tokens")),
            cache_read_input_tokens=_coerce_int(usage.get("cached_input_tokens")),
            cache_creation_input_tokens=0,
            reasoning_tokens=_coerce_int(usage.get("reasoning_output_tokens")),
        )
        return [self._assistant(f"token-count-{timestamp}", timestamp, [], usage=mapped)]

    def _require_call_id(self, event: dict[str, Any]) -> str | None:
        call_id = event.get("call_id")
        if isinstance(call_id, str) and call_id:
            return call_id
        logger.debug("Skipping %s without call_id", event.get("type"))
        record_parser_failure("codex")
        return None

    def _handle_exec_begin(self, timestamp: str, event: dict[str, Any]) -> list[CanonicalEvent]:
        call_id = self._require_call_id(event)
        if call_id is None:
            return []
        self.pending_exec[call_id] = PendingCall(
            call_id=call_id,
            timestamp=timestamp,
            command=_command_list(event.get("command")),
            workdir=event.get("cwd") or event.get("workdir"),
        )
        return []

    def _handle_exec_end(self, timestamp: str, event: dict[str, Any]) -> list[CanonicalEvent]:
        call_id = self._require_call_id(event)
        if call_id is None:
            return []
        pending = self.pending_exec.pop(call_id, None)
        if pending is None:
            logger.debug("exec_command_end %s has no matching begin", call_id)
        tool_use = ToolUseBlock(
            id=call_id,
            name="Bash",
            input={
                "command": " ".join(pending.command) if pending else "",
                "workdir": pending.workdir if pending else None,
            },
        )
        output = "\n".join(str(part) for part in (event.get("stdout"), event.get("stderr")) if part)
        result = ToolResultBlock(
            tool_use_id=call_id,
            content=output,
            is_error=event.get("exit_code") != 0,
            duration=_optional_number(event.get("duration_ms")),
        )
        return [
            self._assistant(f"exec-{call_id}", pending.timestamp if pending else timestamp, [tool_use]),
            self._user(f"exec-{call_id}:result", timestamp, [result]),
        ]

    def _handle_mcp_begin(self, timestamp: str, event: dict[str, Any]) -> list[CanonicalEvent]:
        call_id = self._require_call_id(event)
        if call_id is None:
            return []
        invocation = event.get("invocation") if isinstance(event.get("invocation"), dict) else event
        arguments = invocation.get("arguments")
        self.pending_mcp[call_id] = PendingCall(
            call_id=call_id,
            timestamp=timestamp,
            tool_name=str(invocation.get("tool") or invocation.get("tool_name") or ""),
            arguments=arguments if isinstance(arguments, dict) else {},
        )
        return []

    def _handle_mcp_end(self, timestamp: str, event: dict[str, Any]) -> list[CanonicalEvent]:
        call_id = self._require_call_id(event)
        if call_id is None:
            return []
        pending = self.pending_mcp.pop(call_id, None)
        if pending is None:
            logger.debug("mcp_tool_call_end %s has no matching begin", call_id)
        tool_use = ToolUseBlock(
            id=call_id,
            name=normalize_tool_name((pending.tool_name if pending else "") or "McpTool"),
            input=dict(pending.arguments) if pending else {},
        )
        result = ToolResultBlock(
            tool_use_id=call_id,
            content=event.get("result") or "",
            is_error=bool(event.get("is_error")),
            duration=_optional_number(event.get("duration_ms")),
        )
        return [
            self._assistant(f"mcp-{call_id}", pending.timestamp if pending else timestamp, [tool_use]),
            self._user(f"mcp-{call_id}:result", timestamp, [result]),
        ]

    def _handle_error(self, timestamp: str, event: dict[str, Any]) -> list[CanonicalEvent]:
        code = event.get("code")
        prefix = f"[Error ({code})]" if code else "[Error]"
        text = f"{prefix} {event.get('message') or ''}"
        return [self._assistant(f"error-{timestamp}", timestamp, [TextBlock(text=text)])]

    def _handle_context_compacted(self, timestamp: str, event: dict[str, Any]) -> list[CanonicalEvent]:
        return [self._summary(f"ctx-compacted-{timestamp}", timestamp, str(event.get("summary") or "Context compacted"))]

    def _handle_patch_applied(self, timestamp: str, event: dict[str, Any]) -> list[CanonicalEvent]:
        file_path = event.get("file_path")
        if not file_path:
            return []
        patch_id = f"patch-{timestamp}-{file_path}"
        block = ToolUseBlock(
            id=patch_id,
            name="Edit",
            input={
                "file_path": file_path,
                "additions": _coerce_int(event.get("additions")),
                "deletions": _coerce_int(event.get("deletions")),
            },
        )
        return [self._assistant(patch_id, timestamp, [block])]
