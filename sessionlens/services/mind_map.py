"""Build the session mind-map graph from accumulated statistics.

The graph is rebuilt from scratch on every call. Node ids are derived from
node kind plus a natural key, so repeated builds over the same statistics
produce identical ids and renderers can diff across rebuilds.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import urlparse

from sessionlens.models import GraphData, GraphLink, GraphNode, SessionStats, SubagentStats, TaskState, ToolCall, TrackedTask
from sessionlens.parsers.line_changes import calculate_line_changes

logger = logging.getLogger("sessionlens.graph")

ROOT_ID = "session-root"

FILE_TOOLS = ("Read", "Write", "Edit", "MultiEdit")
URL_TOOLS = ("WebFetch", "WebSearch")
SEARCH_TOOLS = ("Grep", "Glob")
SHELL_TOOLS = ("Bash",)
TASK_TOOLS = ("TaskCreate", "TaskUpdate", "TaskGet", "TaskList", "TodoWrite", "TodoRead")

_COMMAND_PATTERN = re.compile(
    r"^(git|npm|npx|yarn|pnpm|node|python|pip|docker|make|cargo|go|rustc|tsc|eslint|prettier|vitest|jest|pytest)",
    re.IGNORECASE,
)
_TODO_PATTERN = re.compile(r"TODO:?\s*(.+?)(?:\n|$)", re.IGNORECASE)
_LEGACY_AGENT_PATTERN = re.compile(r"(?:subagent|agent)\s*[-:]?\s*(\w+)", re.IGNORECASE)


@dataclass
class _FileStats:
    touchCount: int = 0
    additions: int = 0
    deletions: int = 0


@dataclass
class _DirStats:
    count: int = 0
    patterns: list[str] = field(default_factory=list)


@dataclass
class _CommandStats:
    count: int = 0
    examples: list[str] = field(default_factory=list)


def truncate_label(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def file_name(path: str) -> str:
    return path.split("/")[-1] or path


def dir_label(path: str) -> str:
    if not path or path == ".":
        return "."
    return path.rstrip("/").split("/")[-1] or path


def url_label(url_or_query: str) -> str:
    parsed = urlparse(url_or_query)
    if parsed.scheme and parsed.hostname:
        return parsed.hostname
    return truncate_label(url_or_query, 25)


# ── Natural-key extraction ──────────────────────────────────────────

def _str_field(call: ToolCall, *keys: str) -> str | None:
    for key in keys:
        value = call.input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def file_key(call: ToolCall) -> str | None:
    return _str_field(call, "file_path") if call.name in FILE_TOOLS else None


def url_key(call: ToolCall) -> str | None:
    return _str_field(call, "url", "query") if call.name in URL_TOOLS else None


def directory_key(call: ToolCall) -> str | None:
    return _str_field(call, "path") if call.name in SEARCH_TOOLS else None


def command_key(call: ToolCall) -> str | None:
    if call.name not in SHELL_TOOLS:
        return None
    command = _str_field(call, "command")
    match = _COMMAND_PATTERN.match(command) if command else None
    return match.group(1).lower() if match else None


def extract_files(calls: list[ToolCall]) -> dict[str, _FileStats]:
    files: dict[str, _FileStats] = {}
    for call in calls:
        path = file_key(call)
        if path is None:
            continue
        entry = files.setdefault(path, _FileStats())
        entry.touchCount += 1
        additions, deletions = calculate_line_changes(call.name, call.input)
        entry.additions += additions
        entry.deletions += deletions
    return files


def extract_urls(calls: list[ToolCall]) -> dict[str, int]:
    urls: dict[str, int] = {}
    for call in calls:
        url = url_key(call)
        if url is not None:
            urls[url] = urls.get(url, 0) + 1
    return urls


def extract_directories(calls: list[ToolCall]) -> dict[str, _DirStats]:
    directories: dict[str, _DirStats] = {}
    for call in calls:
        path = directory_key(call)
        if path is None:
            continue
        entry = directories.setdefault(path, _DirStats())
        entry.count += 1
        pattern = _str_field(call, "pattern")
        if pattern and pattern not in entry.patterns:
            entry.patterns.append(pattern)
    return directories


def extract_commands(calls: list[ToolCall]) -> dict[str, _CommandStats]:
    commands: dict[str, _CommandStats] = {}
    for call in calls:
        name = command_key(call)
        if name is None:
            continue
        entry = commands.setdefault(name, _CommandStats())
        entry.count += 1
        example = truncate_label(str(call.input["command"]).split("\n")[0], 60)
        if example not in entry.examples and len(entry.examples) < 5:
            entry.examples.append(example)
    return commands


def extract_todos(stats: SessionStats) -> list[str]:
    todos: list[str] = []
    seen: set[str] = set()
    for entry in stats.timeline:
        for match in _TODO_PATTERN.finditer(entry.description):
            todo = match.group(1).strip()
            if todo and todo.lower() not in seen:
                todos.append(todo)
                seen.add(todo.lower())
    return todos


def extract_legacy_subagents(stats: SessionStats) -> dict[str, int]:
    """Subagent mentions on the timeline, used when no scanned forks exist."""
    agents: dict[str, int] = {}
    for entry in stats.timeline:
        lowered = entry.description.lower()
        if "subagent" not in lowered and "sidechain" not in lowered and "spawned" not in lowered:
            continue
        match = _LEGACY_AGENT_PATTERN.search(entry.description)
        agent_id = match.group(1) if match else "worker"
        agents[agent_id] = agents.get(agent_id, 0) + 1
    return agents


def task_node_status(task: TrackedTask) -> str:
    return task.status if task.status in ("in_progress", "completed") else "pending"


# ── Builder ─────────────────────────────────────────────────────────

class _GraphAccumulator:
    def __init__(self) -> None:
        self.nodes: list[GraphNode] = []
        self.links: list[GraphLink] = []
        self.node_ids: set[str] = set()
        self._link_keys: set[tuple[str, str, str | None]] = set()

    def add_node(self, node: GraphNode) -> bool:
        if node.id in self.node_ids:
            return False
        self.nodes.append(node)
        self.node_ids.add(node.id)
        return True

    def add_link(self, source: str, target: str, link_type: str | None = None) -> None:
        key = (source, target, link_type)
        if key in self._link_keys:
            return
        if source not in self.node_ids or target not in self.node_ids:
            return
        self._link_keys.add(key)
        self.links.append(GraphLink(source=source, target=target, linkType=link_type))


def _add_entity_nodes(graph: _GraphAccumulator, calls: list[ToolCall], prefix: str) -> None:
    """File, URL, directory and command nodes for one call history, ids namespaced by ``prefix``."""
    for path, entry in extract_files(calls).items():
        graph.add_node(
            GraphNode(
                id=f"{prefix}file-{path}",
                label=file_name(path),
                fullPath=path,
                type="file",
                count=entry.touchCount,
                additions=entry.additions,
                deletions=entry.deletions,
            )
        )
    for url, count in extract_urls(calls).items():
        graph.add_node(GraphNode(id=f"{prefix}url-{url}", label=url_label(url), fullPath=url, type="url", count=count))
    for path, entry in extract_directories(calls).items():
        tooltip = path
        if entry.patterns:
            tooltip += "\n\nPatterns:\n• " + "\n• ".join(entry.patterns[:5])
            if len(entry.patterns) > 5:
                tooltip += f"\n• ... and {len(entry.patterns) - 5} more"
        graph.add_node(
            GraphNode(id=f"{prefix}directory-{path}", label=dir_label(path), fullPath=tooltip, type="directory", count=entry.count)
        )
    for name, entry in extract_commands(calls).items():
        tooltip = name
        if entry.examples:
            tooltip += "\n\nCommands:\n• " + "\n• ".join(entry.examples)
        graph.add_node(GraphNode(id=f"{prefix}command-{name}", label=name, fullPath=tooltip, type="command", count=entry.count))


_ENTITY_KEYS: list[tuple[str, Callable[[ToolCall], str | None]]] = [
    ("file", file_key),
    ("url", url_key),
    ("directory", directory_key),
    ("command", command_key),
]


def _add_entity_links(graph: _GraphAccumulator, calls: list[ToolCall], prefix: str) -> None:
    for kind, key_of in _ENTITY_KEYS:
        for call in calls:
            key = key_of(call)
            if key is not None:
                graph.add_link(f"{prefix}tool-{call.name}", f"{prefix}{kind}-{key}")


def _add_task_nodes(graph: _GraphAccumulator, task_state: TaskState, parent_id: str, prefix: str) -> None:
    visible = [task for task in task_state.tasks.values() if task.status != "deleted"]
    for task in visible:
        graph.add_node(
            GraphNode(
                id=f"{prefix}task-{task.taskId}",
                label=truncate_label(task.subject, 25),
                fullPath=task.description or task.subject,
                type="task",
                count=len(task.associatedToolCalls),
                taskStatus=task_node_status(task),
                taskId=task.taskId,
            )
        )
    for task in visible:
        task_node_id = f"{prefix}task-{task.taskId}"
        graph.add_link(parent_id, task_node_id)
        for call in task.associatedToolCalls:
            if call.name in TASK_TOOLS:
                continue
            graph.add_link(task_node_id, f"{prefix}tool-{call.name}", "task-action")
            path = file_key(call)
            if path is not None:
                graph.add_link(task_node_id, f"{prefix}file-{path}", "task-action")
        for blocking_id in task.blockedBy:
            graph.add_link(f"{prefix}task-{blocking_id}", task_node_id, "task-dependency")


def _add_subagent(graph: _GraphAccumulator, agent: SubagentStats) -> None:
    agent_node_id = f"subagent-{agent.agentId}"
    prefix = f"{agent_node_id}-"
    label = agent.agentType or "Subagent"
    if agent.description:
        label = f"{label}: {truncate_label(agent.description, 20)}"
    graph.add_node(
        GraphNode(
            id=agent_node_id,
            label=truncate_label(label, 30),
            fullPath=agent.description or f"Agent {agent.agentId}",
            type="subagent",
            count=len(agent.toolCalls),
        )
    )
    graph.add_link(ROOT_ID, agent_node_id)

    tool_counts: dict[str, int] = {}
    for call in agent.toolCalls:
        tool_counts[call.name] = tool_counts.get(call.name, 0) + 1
    for name, count in tool_counts.items():
        tool_id = f"{prefix}tool-{name}"
        graph.add_node(GraphNode(id=tool_id, label=name, type="tool", count=count))
        graph.add_link(agent_node_id, tool_id)

    _add_entity_nodes(graph, agent.toolCalls, prefix)
    _add_entity_links(graph, agent.toolCalls, prefix)
    if agent.taskState is not None:
        _add_task_nodes(graph, agent.taskState, agent_node_id, prefix)


def _mark_latest(graph: _GraphAccumulator, calls: list[ToolCall]) -> None:
    """Flag the link produced by the most recent file or URL call."""
    last = next((call for call in reversed(calls) if call.name in FILE_TOOLS or call.name in URL_TOOLS), None)
    if last is None:
        return
    key = file_key(last) if last.name in FILE_TOOLS else url_key(last)
    if key is None:
        return
    target = f"file-{key}" if last.name in FILE_TOOLS else f"url-{key}"
    source = f"tool-{last.name}"
    for link in graph.links:
        if link.source == source and link.target == target and link.linkType is None:
            link.isLatest = True
            return


def build_graph(stats: SessionStats, subagents: list[SubagentStats] | None = None) -> GraphData:
    """Rebuild the full node/link graph for one session.

    ``subagents`` defaults to ``stats.subagents``. Without scanned forks the
    timeline's subagent mentions are used as flat subagent nodes.
    """
    agents = stats.subagents if subagents is None else subagents
    calls = stats.toolCalls
    graph = _GraphAccumulator()
    graph.add_node(GraphNode(id=ROOT_ID, label="Session", type="session", count=stats.messageCount))

    _add_entity_nodes(graph, calls, "")

    for name, analytics in stats.toolAnalytics.items():
        tool_id = f"tool-{name}"
        if graph.add_node(GraphNode(id=tool_id, label=name, type="tool", count=analytics.completedCount)):
            graph.add_link(ROOT_ID, tool_id)

    for index, todo in enumerate(extract_todos(stats)):
        todo_id = f"todo-{index}"
        graph.add_node(GraphNode(id=todo_id, label=truncate_label(todo, 30), fullPath=todo, type="todo"))
        graph.add_link(ROOT_ID, todo_id)

    _add_task_nodes(graph, stats.taskState, ROOT_ID, "")

    if agents:
        for agent in agents:
            _add_subagent(graph, agent)
    else:
        for agent_id, count in extract_legacy_subagents(stats).items():
            agent_node_id = f"subagent-{agent_id}"
            if graph.add_node(GraphNode(id=agent_node_id, label=f"Subagent {agent_id}", type="subagent", count=count)):
                graph.add_link(ROOT_ID, agent_node_id)

    _add_entity_links(graph, calls, "")
    _mark_latest(graph, calls)

    logger.debug("Built graph with %d nodes and %d links (%d subagents)", len(graph.nodes), len(graph.links), len(agents))
    return GraphData(nodes=graph.nodes, links=graph.links)
