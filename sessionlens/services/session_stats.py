"""Fold canonical events into per-session statistics."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable
from urllib.parse import urlparse

from sessionlens.date_utils import iso_to_epoch
from sessionlens.models import (
    CanonicalEvent,
    ModelUsage,
    SessionStats,
    SubagentStats,
    TimelineEvent,
    TokenUsage,
    ToolAnalytics,
    ToolCall,
    TrackedTask,
)
from sessionlens.parsers.platforms.base import SessionProvider

logger = logging.getLogger("sessionlens.stats")

MAX_TIMELINE_EVENTS = 100
MAX_SEEN_EVENTS = 10_000
TASK_TOOLS = {"TaskCreate", "TaskUpdate", "TaskGet", "TaskList", "Task", "TodoWrite", "TodoRead"}

_TASK_ID_PATTERNS = [
    re.compile(r"Task\s*#\s*(\d+)", re.IGNORECASE),
    re.compile(r"\"id\"\s*:\s*\"?(\w[\w-]*)\"?"),
    re.compile(r"\btaskId\b[\"']?\s*[:=]\s*[\"']?(\w[\w-]*)", re.IGNORECASE),
]
_TOOL_ERROR_TAGS = re.compile(r"</?tool_use_error>")
_TODO_STATUSES = {"pending", "in_progress", "completed"}


def extract_task_id(result: Any) -> str | None:
    """Task id announced by a ``TaskCreate`` result (``Task #N``, ``"id": "N"``, ``taskId: N``)."""
    text = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
    for pattern in _TASK_ID_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return match.group(1)
    return None


def categorize_error(output: Any) -> str:
    text = str(output or "").lower()
    if "permission denied" in text:
        return "permission"
    if "not found" in text or "no such file" in text:
        return "not_found"
    if "timeout" in text:
        return "timeout"
    if "syntax error" in text:
        return "syntax"
    if "exit code" in text:
        return "exit_code"
    if "tool_use_error" in text:
        return "tool_error"
    return "other"


def _error_message(content: Any, tool_name: str) -> str:
    message = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False, default=str)
    message = _TOOL_ERROR_TAGS.sub("", message or "Unknown error").strip()
    if len(message) > 150:
        message = message[:147] + "..."
    return f"{tool_name}: {message}"


def _shorten(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _basename(path: Any) -> str:
    text = str(path)
    return text.rstrip("/").split("/")[-1] or text


def describe_tool_call(name: str, tool_input: dict[str, Any]) -> str:
    """Short ``Tool: context`` description used on the timeline."""
    context = ""
    if name in ("Read", "Write", "Edit") and tool_input.get("file_path"):
        context = _basename(tool_input["file_path"])
    elif name == "Glob" and tool_input.get("pattern"):
        context = str(tool_input["pattern"])
        if tool_input.get("path"):
            context += " in " + "/".join(str(tool_input["path"]).split("/")[-2:])
    elif name == "Grep" and tool_input.get("pattern"):
        context = _shorten(str(tool_input["pattern"]), 30)
    elif name == "Bash" and tool_input.get("command"):
        context = _shorten(str(tool_input["command"]), 40)
    elif name == "Task":
        if tool_input.get("description"):
            context = f"Subagent spawned: {tool_input['description']}"
        elif tool_input.get("subagent_type"):
            context = f"Subagent spawned ({tool_input['subagent_type']})"
        else:
            context = "Subagent spawned"
    elif name in ("WebFetch", "WebSearch"):
        if tool_input.get("url"):
            context = urlparse(str(tool_input["url"])).hostname or str(tool_input["url"])[:30]
        elif tool_input.get("query"):
            context = str(tool_input["query"])
    elif tool_input.get("file_path"):
        context = _basename(tool_input["file_path"])
    elif tool_input.get("path"):
        context = _basename(tool_input["path"])
    elif tool_input.get("command"):
        context = str(tool_input["command"])[:30]
    return f"{name}: {context}" if context else name


def _text_blocks(event: CanonicalEvent) -> list[str]:
    content = event.message.content
    if isinstance(content, str):
        return [content]
    return [block.text for block in content if block.type == "text"]


def extract_token_usage(event: CanonicalEvent) -> TokenUsage | None:
    if event.type != "assistant" or event.message.usage is None:
        return None
    usage = event.message.usage
    return TokenUsage(
        inputTokens=usage.input_tokens,
        outputTokens=usage.output_tokens,
        cacheWriteTokens=usage.cache_creation_input_tokens,
        cacheReadTokens=usage.cache_read_input_tokens,
        reasoningTokens=usage.reasoning_tokens,
        model=event.message.model or "unknown",
        timestamp=event.timestamp,
        reportedCost=usage.reported_cost,
    )


class SessionStatsAggregator:
    """Accumulates ``SessionStats`` from a stream of canonical events.

    Events are deduplicated by ``(type, timestamp, message id)`` so readers
    that re-emit an updated message do not double-count it.
    """

    def __init__(self, provider: SessionProvider | None = None):
        self.provider = provider
        self.reset()

    def reset(self) -> None:
        self.stats = SessionStats()
        self._seen: dict[tuple[str, str, str], None] = {}
        self._pending: dict[str, tuple[str, str, int]] = {}  # tool_use_id -> (name, start, call index)
        self._pending_creates: dict[str, dict[str, Any]] = {}
        self._previous_context_size = 0

    # ── Ingestion ──

    def ingest(self, events: Iterable[CanonicalEvent]) -> SessionStats:
        for event in events:
            self.ingest_event(event)
        return self.stats

    def ingest_event(self, event: CanonicalEvent) -> None:
        key = (event.type, event.timestamp, event.message.id)
        if key in self._seen:
            return
        if len(self._seen) >= MAX_SEEN_EVENTS:
            for stale in list(self._seen)[: MAX_SEEN_EVENTS // 4]:
                del self._seen[stale]
        self._seen[key] = None

        stats = self.stats
        stats.messageCount += 1
        stats.lastUpdated = event.timestamp
        if stats.sessionStartTime is None and event.timestamp:
            stats.sessionStartTime = event.timestamp

        usage = extract_token_usage(event)
        if usage is not None:
            self._record_usage(event, usage)

        if event.type == "assistant":
            self._record_tool_uses(event)
            self._record_assistant_text(event)
        elif event.type == "user":
            self._record_user_prompt(event)
            self._record_tool_results(event)
        elif event.type == "summary":
            stats.compactionCount += 1
            self._push_timeline(
                TimelineEvent(type="compaction", timestamp=event.timestamp, description="Context compacted (summary event)")
            )

    def set_subagents(self, subagents: list[SubagentStats]) -> None:
        self.stats.subagents = list(subagents)

    # ── Usage ──

    def _record_usage(self, event: CanonicalEvent, usage: TokenUsage) -> None:
        stats = self.stats
        stats.totalInputTokens += usage.inputTokens
        stats.totalOutputTokens += usage.outputTokens
        stats.totalCacheWriteTokens += usage.cacheWriteTokens
        stats.totalCacheReadTokens += usage.cacheReadTokens
        stats.totalReasoningTokens += usage.reasoningTokens
        if usage.reportedCost is not None and usage.reportedCost > 0:
            stats.totalReportedCost += usage.reportedCost

        model = stats.modelUsage.setdefault(usage.model, ModelUsage())
        model.calls += 1
        model.tokens += usage.inputTokens + usage.outputTokens

        raw = event.message.usage
        if self.provider is not None and raw is not None:
            size = self.provider.compute_context_size(raw)
            stats.contextWindowLimit = self.provider.get_context_window_limit(event.message.model)
        else:
            size = usage.inputTokens + usage.cacheWriteTokens + usage.cacheReadTokens

        if self._previous_context_size > 0 and size < self._previous_context_size * 0.8:
            before = self._previous_context_size
            logger.debug("Context dropped from %d to %d tokens", before, size)
            self._push_timeline(
                TimelineEvent(
                    type="compaction",
                    timestamp=event.timestamp,
                    description=(
                        f"Context compacted: {round(before / 1000)}K -> {round(size / 1000)}K tokens "
                        f"(reclaimed {round((before - size) / 1000)}K)"
                    ),
                    metadata={"contextBefore": before, "contextAfter": size, "tokensReclaimed": before - size},
                )
            )
        self._previous_context_size = size
        stats.currentContextSize = size

    # ── Timeline ──

    def _push_timeline(self, entry: TimelineEvent) -> None:
        timeline = self.stats.timeline
        timeline.insert(0, entry)
        del timeline[MAX_TIMELINE_EVENTS:]

    def _record_user_prompt(self, event: CanonicalEvent) -> None:
        texts = [text for text in _text_blocks(event) if text.strip()]
        if not texts:
            return
        prompt = " ".join(texts[0].split())
        self._push_timeline(TimelineEvent(type="user_prompt", timestamp=event.timestamp, description=_shorten(prompt, 100)))

    def _record_assistant_text(self, event: CanonicalEvent) -> None:
        texts = _text_blocks(event)
        if not texts:
            return
        full = " ".join("\n".join(texts).split())
        if not full:
            return
        short = _shorten(full, 150)
        metadata: dict[str, Any] = {"model": event.message.model}
        if short != full:
            metadata["fullText"] = full
        self._push_timeline(
            TimelineEvent(type="assistant_response", timestamp=event.timestamp, description=short, metadata=metadata)
        )

    # ── Tool calls ──

    def _record_tool_uses(self, event: CanonicalEvent) -> None:
        stats = self.stats
        for block in event.message.blocks():
            if block.type != "tool_use":
                continue
            self._handle_task_tool(block.id, block.name, block.input, event.timestamp)

            analytics = stats.toolAnalytics.setdefault(block.name, ToolAnalytics(name=block.name))
            analytics.pendingCount += 1

            call = ToolCall(name=block.name, input=dict(block.input), timestamp=event.timestamp, toolUseId=block.id)
            self._pending[block.id] = (block.name, event.timestamp, len(stats.toolCalls))
            stats.toolCalls.append(call)
            self._push_timeline(
                TimelineEvent(
                    type="tool_call",
                    timestamp=event.timestamp,
                    description=describe_tool_call(block.name, block.input),
                    metadata={"toolName": block.name},
                )
            )

            active_id = stats.taskState.activeTaskId
            if block.name not in TASK_TOOLS and active_id:
                active = stats.taskState.tasks.get(active_id)
                if active is not None:
                    active.associatedToolCalls.append(call)

    def _record_tool_results(self, event: CanonicalEvent) -> None:
        stats = self.stats
        for block in event.message.blocks():
            if block.type != "tool_result":
                continue
            pending = self._pending.pop(block.tool_use_id, None)
            if pending is None:
                continue
            name, started, index = pending

            if name == "TaskCreate":
                self._handle_task_create_result(block.tool_use_id, block.content, event.timestamp, block.is_error)
            if name == "Task":
                agent_task = stats.taskState.tasks.get(f"agent-{block.tool_use_id}")
                if agent_task is not None:
                    agent_task.status = "deleted" if block.is_error else "completed"
                    agent_task.updatedAt = event.timestamp

            if block.duration is not None:
                duration = float(block.duration)
            else:
                duration = max(0.0, (iso_to_epoch(event.timestamp) - iso_to_epoch(started)) * 1000.0)

            call = stats.toolCalls[index]
            call.isError = bool(block.is_error)
            call.duration = duration
            if block.is_error and block.content:
                call.errorMessage = _error_message(block.content, name)

            analytics = stats.toolAnalytics.get(name)
            if analytics is not None:
                analytics.pendingCount = max(0, analytics.pendingCount - 1)
                analytics.completedCount += 1
                analytics.totalDuration += duration
                if block.is_error:
                    analytics.failureCount += 1
                    stats.errorDetails.setdefault(categorize_error(block.content), []).append(
                        _error_message(block.content, name)
                    )
                else:
                    analytics.successCount += 1

            self._push_timeline(
                TimelineEvent(
                    type="error" if block.is_error else "tool_result",
                    timestamp=event.timestamp,
                    description=f"{name} failed" if block.is_error else f"{name} completed",
                    metadata={"isError": bool(block.is_error), "toolName": name},
                )
            )

    # ── Task tracking ──

    def _handle_task_tool(self, tool_use_id: str, name: str, tool_input: dict[str, Any], timestamp: str) -> None:
        state = self.stats.taskState
        if name == "TaskCreate":
            self._pending_creates[tool_use_id] = {
                "subject": str(tool_input.get("subject") or ""),
                "description": str(tool_input["description"]) if tool_input.get("description") else None,
                "activeForm": str(tool_input["activeForm"]) if tool_input.get("activeForm") else None,
                "timestamp": timestamp,
            }
        elif name == "Task":
            subagent_type = str(tool_input["subagent_type"]) if tool_input.get("subagent_type") else None
            task_id = f"agent-{tool_use_id}"
            state.tasks[task_id] = TrackedTask(
                taskId=task_id,
                subject=str(tool_input.get("description") or "Subagent"),
                status="in_progress",
                createdAt=timestamp,
                updatedAt=timestamp,
                activeForm=f"Running {subagent_type} agent" if subagent_type else "Running subagent",
                isSubagent=True,
                subagentType=subagent_type,
                toolUseId=tool_use_id,
            )
        elif name == "TaskUpdate":
            self._handle_task_update(tool_input, timestamp)
        elif name == "TodoWrite":
            self._handle_todo_write(tool_input, timestamp)

    def _handle_task_update(self, tool_input: dict[str, Any], timestamp: str) -> None:
        state = self.stats.taskState
        task_id = str(tool_input.get("taskId") or "")
        task = state.tasks.get(task_id)
        if task is None:
            logger.debug("TaskUpdate for unknown task %s; creating placeholder", task_id)
            task = TrackedTask(
                taskId=task_id,
                subject=str(tool_input.get("subject") or f"Task {task_id}"),
                description=str(tool_input["description"]) if tool_input.get("description") else None,
                status=str(tool_input.get("status") or "pending"),
                createdAt=timestamp,
                updatedAt=timestamp,
                activeForm=str(tool_input["activeForm"]) if tool_input.get("activeForm") else None,
            )
            state.tasks[task_id] = task
            if task.status == "in_progress":
                state.activeTaskId = task_id
            return

        if tool_input.get("status"):
            old_status = task.status
            task.status = str(tool_input["status"])
            if task.status == "in_progress" and old_status != "in_progress":
                state.activeTaskId = task_id
            elif old_status == "in_progress" and task.status != "in_progress" and state.activeTaskId == task_id:
                state.activeTaskId = None
        if tool_input.get("subject"):
            task.subject = str(tool_input["subject"])
        if tool_input.get("description"):
            task.description = str(tool_input["description"])
        if tool_input.get("activeForm"):
            task.activeForm = str(tool_input["activeForm"])
        for key, target in (("addBlockedBy", task.blockedBy), ("addBlocks", task.blocks)):
            values = tool_input.get(key)
            if isinstance(values, list):
                for value in values:
                    if str(value) not in target:
                        target.append(str(value))
        task.updatedAt = timestamp

    def _handle_todo_write(self, tool_input: dict[str, Any], timestamp: str) -> None:
        todos = tool_input.get("todos")
        if not isinstance(todos, list):
            return
        state = self.stats.taskState
        # Each TodoWrite carries the full list; replace earlier todo-derived tasks.
        previous_todos = {task_id: state.tasks.pop(task_id) for task_id in list(state.tasks) if task_id.startswith("todo-")}
        if state.activeTaskId in previous_todos:
            state.activeTaskId = None
        for index, todo in enumerate(todos, start=1):
            if not isinstance(todo, dict):
                continue
            task_id = f"todo-{index}"
            status = str(todo.get("status") or "pending")
            previous = previous_todos.get(task_id)
            task = TrackedTask(
                taskId=task_id,
                subject=str(todo.get("content") or f"Todo {index}"),
                status=status if status in _TODO_STATUSES else "pending",
                createdAt=previous.createdAt if previous else timestamp,
                updatedAt=timestamp,
                activeForm=str(todo["activeForm"]) if todo.get("activeForm") else None,
                associatedToolCalls=list(previous.associatedToolCalls) if previous else [],
            )
            state.tasks[task_id] = task
            if task.status == "in_progress" and state.activeTaskId is None:
                state.activeTaskId = task_id

    def _handle_task_create_result(self, tool_use_id: str, content: Any, timestamp: str, is_error: bool) -> None:
        pending = self._pending_creates.pop(tool_use_id, None)
        if pending is None or is_error:
            return
        task_id = extract_task_id(content)
        if not task_id:
            logger.debug("No task id in TaskCreate result for %s", tool_use_id)
            return
        self.stats.taskState.tasks[task_id] = TrackedTask(
            taskId=task_id,
            subject=pending["subject"],
            description=pending["description"],
            status="pending",
            createdAt=pending["timestamp"],
            updatedAt=timestamp,
            activeForm=pending["activeForm"],
        )
