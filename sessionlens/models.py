"""Pydantic models for canonical session events, statistics, and graphs."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Annotated, Any, Literal, Optional, Union

# ── Canonical event model ───────────────────────────────────────────

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ThinkingBlock(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = ""
    is_error: bool = False
    duration: Optional[float] = None  # milliseconds


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class MessageUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    reasoning_tokens: int = 0
    reported_cost: Optional[float] = None


class EventMessage(BaseModel):
    role: str
    id: str
    model: Optional[str] = None
    usage: Optional[MessageUsage] = None
    # Summary events carry plain text; user/assistant events carry blocks.
    content: Union[list[ContentBlock], str] = Field(default_factory=list)

    def blocks(self) -> list[Any]:
        return self.content if isinstance(self.content, list) else []


class CanonicalEvent(BaseModel):
    type: Literal["user", "assistant", "summary"]
    message: EventMessage
    timestamp: str

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ── Usage snapshots ─────────────────────────────────────────────────

class TokenUsage(BaseModel):
    inputTokens: int = 0
    outputTokens: int = 0
    cacheWriteTokens: int = 0
    cacheReadTokens: int = 0
    reasoningTokens: int = 0
    model: str = "unknown"
    timestamp: str = ""
    reportedCost: Optional[float] = None


# ── Session statistics ──────────────────────────────────────────────

class ToolCall(BaseModel):
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = ""
    toolUseId: Optional[str] = None
    isError: Optional[bool] = None
    duration: Optional[float] = None
    errorMessage: Optional[str] = None


class ToolAnalytics(BaseModel):
    name: str
    successCount: int = 0
    failureCount: int = 0
    totalDuration: float = 0.0
    completedCount: int = 0
    pendingCount: int = 0


class TimelineEvent(BaseModel):
    type: str  # "user_prompt" | "tool_call" | "tool_result" | "error" | "assistant_response" | "compaction"
    timestamp: str
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class TrackedTask(BaseModel):
    taskId: str
    subject: str = ""
    description: Optional[str] = None
    status: str = "pending"  # "pending" | "in_progress" | "completed" | "deleted"
    createdAt: str = ""
    updatedAt: str = ""
    activeForm: Optional[str] = None
    blockedBy: list[str] = Field(default_factory=list)
    blocks: list[str] = Field(default_factory=list)
    associatedToolCalls: list[ToolCall] = Field(default_factory=list)
    isSubagent: bool = False
    subagentType: Optional[str] = None
    toolUseId: Optional[str] = None


class TaskState(BaseModel):
    tasks: dict[str, TrackedTask] = Field(default_factory=dict)
    activeTaskId: Optional[str] = None


class SubagentStats(BaseModel):
    agentId: str
    agentType: Optional[str] = None
    description: Optional[str] = None
    toolCalls: list[ToolCall] = Field(default_factory=list)
    taskState: Optional[TaskState] = None


class ModelUsage(BaseModel):
    calls: int = 0
    tokens: int = 0


class SessionStats(BaseModel):
    totalInputTokens: int = 0
    totalOutputTokens: int = 0
    totalCacheWriteTokens: int = 0
    totalCacheReadTokens: int = 0
    totalReasoningTokens: int = 0
    totalReportedCost: float = 0.0
    messageCount: int = 0
    toolCalls: list[ToolCall] = Field(default_factory=list)
    modelUsage: dict[str, ModelUsage] = Field(default_factory=dict)
    lastUpdated: str = ""
    sessionStartTime: Optional[str] = None
    toolAnalytics: dict[str, ToolAnalytics] = Field(default_factory=dict)
    timeline: list[TimelineEvent] = Field(default_factory=list)  # most recent first
    errorDetails: dict[str, list[str]] = Field(default_factory=dict)
    currentContextSize: int = 0
    contextWindowLimit: Optional[int] = None
    compactionCount: int = 0
    taskState: TaskState = Field(default_factory=TaskState)
    subagents: list[SubagentStats] = Field(default_factory=list)


# ── Mind-map graph ──────────────────────────────────────────────────

class GraphNode(BaseModel):
    id: str
    label: str
    type: str  # "session" | "tool" | "file" | "url" | "directory" | "command" | "todo" | "task" | "subagent"
    fullPath: Optional[str] = None
    count: Optional[int] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    taskStatus: Optional[str] = None  # "pending" | "in_progress" | "completed"
    taskId: Optional[str] = None


class GraphLink(BaseModel):
    source: str
    target: str
    linkType: Optional[str] = None  # "task-action" | "task-dependency"
    isLatest: Optional[bool] = None


class GraphData(BaseModel):
    nodes: list[GraphNode] = Field(default_factory=list)
    links: list[GraphLink] = Field(default_factory=list)


# ── Discovery ───────────────────────────────────────────────────────

class ProjectFolderInfo(BaseModel):
    dir: str
    name: str
    encodedName: str
    sessionCount: int = 0
    lastModified: str = ""


class SearchHit(BaseModel):
    sessionPath: str
    line: str
    eventType: str = "unknown"
    timestamp: str = ""
    projectPath: str = ""


class SessionSummary(BaseModel):
    id: str
    path: str
    provider: str
    label: Optional[str] = None
    isActive: bool = False


class ProviderInfo(BaseModel):
    id: str
    displayName: str
    baseDirectory: str
    available: bool = False
    lastActivity: float = 0.0
    selected: bool = False
