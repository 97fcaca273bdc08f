import unittest

from sessionlens.models import (
    SessionStats,
    SubagentStats,
    TaskState,
    TimelineEvent,
    ToolAnalytics,
    ToolCall,
    TrackedTask,
)
from sessionlens.services.mind_map import ROOT_ID, build_graph, command_key, url_label


def _call(name: str, timestamp: str = "2026-02-16T10:00:00Z", **tool_input) -> ToolCall:
    return ToolCall(name=name, input=tool_input, timestamp=timestamp)


def _stats(calls: list[ToolCall], **kwargs) -> SessionStats:
    analytics: dict[str, ToolAnalytics] = {}
    for call in calls:
        entry = analytics.setdefault(call.name, ToolAnalytics(name=call.name))
        entry.completedCount += 1
    return SessionStats(messageCount=len(calls), toolCalls=calls, toolAnalytics=analytics, **kwargs)


def _node_ids(graph) -> set[str]:
    return {node.id for node in graph.nodes}


def _link_keys(graph) -> set[tuple]:
    return {(link.source, link.target, link.linkType) for link in graph.links}


class MindMapGraphTests(unittest.TestCase):
    def test_entities_are_linked_to_their_tools(self) -> None:
        stats = _stats(
            [
                _call("Read", file_path="/w/src/app.py"),
                _call("Edit", file_path="/w/src/app.py", old_string="a", new_string="b\nc"),
                _call("WebFetch", url="https://docs.python.org/3/library/"),
                _call("Grep", pattern="TODO", path="/w/src"),
                _call("Bash", command="git status"),
                _call("Bash", command="echo hi"),
            ]
        )
        graph = build_graph(stats)
        nodes = {node.id: node for node in graph.nodes}

        self.assertEqual(nodes[ROOT_ID].type, "session")
        file_node = nodes["file-/w/src/app.py"]
        self.assertEqual(file_node.label, "app.py")
        self.assertEqual(file_node.count, 2)
        self.assertEqual((file_node.additions, file_node.deletions), (2, 1))
        self.assertEqual(nodes["url-https://docs.python.org/3/library/"].label, "docs.python.org")
        self.assertEqual(nodes["directory-/w/src"].label, "src")
        self.assertIn("TODO", nodes["directory-/w/src"].fullPath)
        self.assertEqual(nodes["command-git"].count, 1)
        self.assertNotIn("command-echo", nodes)

        links = _link_keys(graph)
        self.assertIn((ROOT_ID, "tool-Read", None), links)
        self.assertIn(("tool-Read", "file-/w/src/app.py", None), links)
        self.assertIn(("tool-Edit", "file-/w/src/app.py", None), links)
        self.assertIn(("tool-Grep", "directory-/w/src", None), links)
        self.assertIn(("tool-Bash", "command-git", None), links)

    def test_links_always_reference_existing_nodes(self) -> None:
        stats = _stats([_call("Read", file_path="/a"), _call("Bash", command="npm test")])
        stats.taskState = TaskState(
            tasks={"1": TrackedTask(taskId="1", subject="Do it", blockedBy=["missing"], associatedToolCalls=[_call("Write", file_path="/b")])}
        )
        graph = build_graph(stats)
        ids = _node_ids(graph)
        for link in graph.links:
            self.assertIn(link.source, ids)
            self.assertIn(link.target, ids)

    def test_rebuild_is_deterministic(self) -> None:
        stats = _stats([_call("Read", file_path="/a"), _call("WebSearch", query="python asyncio")])
        first = build_graph(stats)
        second = build_graph(stats)
        self.assertEqual(first.model_dump(), second.model_dump())

    def test_latest_file_or_url_link_is_flagged(self) -> None:
        stats = _stats(
            [
                _call("Read", file_path="/a"),
                _call("WebFetch", url="https://example.com/x"),
                _call("Bash", command="git diff"),
            ]
        )
        graph = build_graph(stats)
        latest = [link for link in graph.links if link.isLatest]

        self.assertEqual(len(latest), 1)
        self.assertEqual((latest[0].source, latest[0].target), ("tool-WebFetch", "url-https://example.com/x"))

    def test_no_latest_flag_without_file_or_url_calls(self) -> None:
        graph = build_graph(_stats([_call("Bash", command="git diff")]))
        self.assertFalse(any(link.isLatest for link in graph.links))

    def test_tasks_and_dependencies(self) -> None:
        stats = _stats([_call("Read", file_path="/w/a.py")])
        stats.taskState = TaskState(
            tasks={
                "1": TrackedTask(
                    taskId="1",
                    subject="Read the code",
                    status="in_progress",
                    associatedToolCalls=[_call("Read", file_path="/w/a.py"), _call("TaskUpdate", taskId="1")],
                ),
                "2": TrackedTask(taskId="2", subject="Fix it", blockedBy=["1"]),
                "3": TrackedTask(taskId="3", subject="Gone", status="deleted"),
            }
        )
        graph = build_graph(stats)
        nodes = {node.id: node for node in graph.nodes}
        links = _link_keys(graph)

        self.assertEqual(nodes["task-1"].taskStatus, "in_progress")
        self.assertEqual(nodes["task-1"].count, 2)
        self.assertEqual(nodes["task-2"].taskStatus, "pending")
        self.assertNotIn("task-3", nodes)
        self.assertIn((ROOT_ID, "task-1", None), links)
        self.assertIn(("task-1", "tool-Read", "task-action"), links)
        self.assertIn(("task-1", "file-/w/a.py", "task-action"), links)
        self.assertIn(("task-1", "task-2", "task-dependency"), links)
        self.assertNotIn(("task-1", "tool-TaskUpdate", "task-action"), links)

    def test_subagents_get_isolated_namespaces(self) -> None:
        stats = _stats([_call("Read", file_path="/w/a.py")])
        agents = [
            SubagentStats(agentId="a1", agentType="Explore", description="Map modules", toolCalls=[_call("Read", file_path="/w/a.py")]),
            SubagentStats(agentId="a2", toolCalls=[_call("Read", file_path="/w/a.py"), _call("Read", file_path="/w/b.py")]),
        ]
        graph = build_graph(stats, agents)
        nodes = {node.id: node for node in graph.nodes}
        links = _link_keys(graph)

        self.assertIn("file-/w/a.py", nodes)
        self.assertIn("subagent-a1-file-/w/a.py", nodes)
        self.assertIn("subagent-a2-file-/w/a.py", nodes)
        self.assertEqual(nodes["subagent-a1"].label, "Explore: Map modules")
        self.assertEqual(nodes["subagent-a2-tool-Read"].count, 2)
        self.assertIn((ROOT_ID, "subagent-a1", None), links)
        self.assertIn(("subagent-a1", "subagent-a1-tool-Read", None), links)
        self.assertIn(("subagent-a2-tool-Read", "subagent-a2-file-/w/b.py", None), links)
        self.assertNotIn(("tool-Read", "subagent-a1-file-/w/a.py", None), links)

    def test_stats_subagents_are_used_by_default(self) -> None:
        stats = _stats([], subagents=[SubagentStats(agentId="x", toolCalls=[_call("Bash", command="pytest -q")])])
        graph = build_graph(stats)
        self.assertIn("subagent-x-command-pytest", _node_ids(graph))

    def test_timeline_todos_and_legacy_subagents(self) -> None:
        stats = _stats(
            [],
            timeline=[
                TimelineEvent(type="assistant_response", timestamp="t", description="TODO: add retries"),
                TimelineEvent(type="tool_call", timestamp="t", description="Task: Subagent spawned: Map modules"),
            ],
        )
        graph = build_graph(stats)
        nodes = {node.id: node for node in graph.nodes}

        self.assertEqual(nodes["todo-0"].fullPath, "add retries")
        self.assertEqual([node.type for node in graph.nodes if node.type == "subagent"], ["subagent"])


class MindMapHelperTests(unittest.TestCase):
    def test_command_key_matches_known_tools_only(self) -> None:
        self.assertEqual(command_key(_call("Bash", command="NPM run build")), "npm")
        self.assertIsNone(command_key(_call("Bash", command="ls -la")))
        self.assertIsNone(command_key(_call("Read", command="git status")))

    def test_url_label_falls_back_to_query_text(self) -> None:
        self.assertEqual(url_label("https://github.com/org/repo"), "github.com")
        self.assertEqual(url_label("how to tail a file in python asyncio"), "how to tail a file in ...")


if __name__ == "__main__":
    unittest.main()
