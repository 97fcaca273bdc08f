import unittest

from sessionlens.models import (
    CanonicalEvent,
    EventMessage,
    MessageUsage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from sessionlens.parsers.line_changes import calculate_line_changes, count_lines
from sessionlens.parsers.platforms.codex.provider import CodexProvider
from sessionlens.services.session_stats import (
    MAX_TIMELINE_EVENTS,
    SessionStatsAggregator,
    categorize_error,
    describe_tool_call,
    extract_task_id,
)


def _assistant(message_id: str, timestamp: str, blocks: list, usage: MessageUsage | None = None, model: str = "claude-sonnet") -> CanonicalEvent:
    return CanonicalEvent(
        type="assistant",
        message=EventMessage(role="assistant", id=message_id, model=model, usage=usage, content=blocks),
        timestamp=timestamp,
    )


def _user(message_id: str, timestamp: str, blocks: list) -> CanonicalEvent:
    return CanonicalEvent(type="user", message=EventMessage(role="user", id=message_id, content=blocks), timestamp=timestamp)


def _tool(tool_id: str, name: str, timestamp: str, **tool_input) -> CanonicalEvent:
    return _assistant(f"msg-{tool_id}", timestamp, [ToolUseBlock(id=tool_id, name=name, input=tool_input)])


def _result(tool_id: str, timestamp: str, content="ok", is_error: bool = False, duration: float | None = None) -> CanonicalEvent:
    return _user(
        f"{tool_id}:result",
        timestamp,
        [ToolResultBlock(tool_use_id=tool_id, content=content, is_error=is_error, duration=duration)],
    )


class SessionStatsAggregatorTests(unittest.TestCase):
    def test_usage_totals_and_model_breakdown(self) -> None:
        aggregator = SessionStatsAggregator()
        stats = aggregator.ingest(
            [
                _user("u1", "2026-02-16T10:00:00Z", [TextBlock(text="hello")]),
                _assistant(
                    "a1",
                    "2026-02-16T10:00:01Z",
                    [TextBlock(text="hi")],
                    MessageUsage(input_tokens=100, output_tokens=20, cache_read_input_tokens=50, reported_cost=0.5),
                ),
                _assistant("a2", "2026-02-16T10:00:02Z", [], MessageUsage(input_tokens=10, output_tokens=5), model="claude-opus"),
            ]
        )

        self.assertEqual(stats.messageCount, 3)
        self.assertEqual(stats.totalInputTokens, 110)
        self.assertEqual(stats.totalOutputTokens, 25)
        self.assertEqual(stats.totalCacheReadTokens, 50)
        self.assertEqual(stats.totalReportedCost, 0.5)
        self.assertEqual(stats.modelUsage["claude-sonnet"].tokens, 120)
        self.assertEqual(stats.modelUsage["claude-opus"].calls, 1)
        self.assertEqual(stats.sessionStartTime, "2026-02-16T10:00:00Z")
        self.assertEqual(stats.lastUpdated, "2026-02-16T10:00:02Z")
        self.assertEqual(stats.currentContextSize, 10)

    def test_duplicate_events_are_counted_once(self) -> None:
        aggregator = SessionStatsAggregator()
        event = _assistant("a1", "2026-02-16T10:00:01Z", [], MessageUsage(input_tokens=100))
        aggregator.ingest([event, event])
        aggregator.ingest_event(event)

        self.assertEqual(aggregator.stats.messageCount, 1)
        self.assertEqual(aggregator.stats.totalInputTokens, 100)

    def test_tool_results_complete_calls_with_duration(self) -> None:
        aggregator = SessionStatsAggregator()
        stats = aggregator.ingest(
            [
                _tool("t1", "Read", "2026-02-16T10:00:00Z", file_path="/w/a.py"),
                _result("t1", "2026-02-16T10:00:02Z"),
                _tool("t2", "Bash", "2026-02-16T10:00:03Z", command="ls /missing"),
                _result("t2", "2026-02-16T10:00:04Z", content="<tool_use_error>No such file</tool_use_error>", is_error=True, duration=7),
                _tool("t3", "Grep", "2026-02-16T10:00:05Z", pattern="TODO"),
            ]
        )

        read_call, bash_call, grep_call = stats.toolCalls
        self.assertEqual(read_call.duration, 2000.0)
        self.assertFalse(read_call.isError)
        self.assertTrue(bash_call.isError)
        self.assertEqual(bash_call.duration, 7.0)
        self.assertEqual(bash_call.errorMessage, "Bash: No such file")
        self.assertIsNone(grep_call.isError)

        self.assertEqual(stats.toolAnalytics["Read"].successCount, 1)
        self.assertEqual(stats.toolAnalytics["Bash"].failureCount, 1)
        self.assertEqual(stats.toolAnalytics["Grep"].pendingCount, 1)
        self.assertEqual(stats.errorDetails, {"not_found": ["Bash: No such file"]})

        self.assertEqual(stats.timeline[0].type, "tool_call")
        self.assertEqual(stats.timeline[0].description, "Grep: TODO")
        self.assertEqual(stats.timeline[1].type, "error")

    def test_result_without_pending_call_is_ignored(self) -> None:
        aggregator = SessionStatsAggregator()
        stats = aggregator.ingest([_result("ghost", "2026-02-16T10:00:00Z")])
        self.assertEqual(stats.toolAnalytics, {})
        self.assertEqual(stats.timeline, [])

    def test_timeline_is_capped_and_newest_first(self) -> None:
        aggregator = SessionStatsAggregator()
        events = [
            _user(f"u{index}", f"2026-02-16T10:{index // 60:02d}:{index % 60:02d}Z", [TextBlock(text=f"prompt {index}")])
            for index in range(MAX_TIMELINE_EVENTS + 20)
        ]
        stats = aggregator.ingest(events)

        self.assertEqual(len(stats.timeline), MAX_TIMELINE_EVENTS)
        self.assertEqual(stats.timeline[0].description, f"prompt {MAX_TIMELINE_EVENTS + 19}")

    def test_long_assistant_text_keeps_full_text(self) -> None:
        aggregator = SessionStatsAggregator()
        text = "word " * 60
        stats = aggregator.ingest([_assistant("a1", "2026-02-16T10:00:00Z", [TextBlock(text=text)])])

        entry = stats.timeline[0]
        self.assertEqual(entry.type, "assistant_response")
        self.assertEqual(len(entry.description), 150)
        self.assertEqual(entry.metadata["fullText"], text.strip())

    def test_context_drop_and_summary_record_compaction(self) -> None:
        aggregator = SessionStatsAggregator()
        stats = aggregator.ingest(
            [
                _assistant("a1", "2026-02-16T10:00:00Z", [], MessageUsage(input_tokens=150_000)),
                _assistant("a2", "2026-02-16T10:00:01Z", [], MessageUsage(input_tokens=30_000)),
                CanonicalEvent(
                    type="summary",
                    message=EventMessage(role="assistant", id="s1", content="Compacted"),
                    timestamp="2026-02-16T10:00:02Z",
                ),
            ]
        )

        compactions = [entry for entry in stats.timeline if entry.type == "compaction"]
        self.assertEqual(len(compactions), 2)
        self.assertEqual(compactions[1].metadata["tokensReclaimed"], 120_000)
        self.assertEqual(stats.compactionCount, 1)

    def test_provider_controls_context_accounting(self) -> None:
        provider = CodexProvider()
        self.addCleanup(provider.dispose)
        aggregator = SessionStatsAggregator(provider)
        stats = aggregator.ingest(
            [_assistant("a1", "2026-02-16T10:00:00Z", [], MessageUsage(input_tokens=900, cache_read_input_tokens=800), model="gpt-4o")]
        )
        self.assertEqual(stats.currentContextSize, 900)
        self.assertEqual(stats.contextWindowLimit, 128_000)


class TaskTrackingTests(unittest.TestCase):
    def test_task_create_and_update_lifecycle(self) -> None:
        aggregator = SessionStatsAggregator()
        stats = aggregator.ingest(
            [
                _tool("c1", "TaskCreate", "2026-02-16T10:00:00Z", subject="Write parser", description="JSONL parser"),
                _result("c1", "2026-02-16T10:00:01Z", content="Task #1 created successfully"),
                _tool("c2", "TaskCreate", "2026-02-16T10:00:02Z", subject="Write tests"),
                _result("c2", "2026-02-16T10:00:03Z", content='{"id": "2"}'),
                _tool("u1", "TaskUpdate", "2026-02-16T10:00:04Z", taskId="1", status="in_progress"),
                _tool("u2", "TaskUpdate", "2026-02-16T10:00:05Z", taskId="2", addBlockedBy=["1"]),
                _tool("r1", "Read", "2026-02-16T10:00:06Z", file_path="/w/parser.py"),
                _tool("u3", "TaskUpdate", "2026-02-16T10:00:07Z", taskId="1", status="completed"),
                _tool("r2", "Read", "2026-02-16T10:00:08Z", file_path="/w/other.py"),
            ]
        )

        tasks = stats.taskState.tasks
        self.assertEqual(tasks["1"].subject, "Write parser")
        self.assertEqual(tasks["1"].status, "completed")
        self.assertEqual([call.toolUseId for call in tasks["1"].associatedToolCalls], ["r1"])
        self.assertEqual(tasks["2"].blockedBy, ["1"])
        self.assertIsNone(stats.taskState.activeTaskId)

    def test_update_for_unknown_task_creates_placeholder(self) -> None:
        aggregator = SessionStatsAggregator()
        stats = aggregator.ingest([_tool("u1", "TaskUpdate", "2026-02-16T10:00:00Z", taskId="7", status="in_progress")])
        self.assertEqual(stats.taskState.tasks["7"].subject, "Task 7")
        self.assertEqual(stats.taskState.activeTaskId, "7")

    def test_failed_task_create_adds_nothing(self) -> None:
        aggregator = SessionStatsAggregator()
        stats = aggregator.ingest(
            [
                _tool("c1", "TaskCreate", "2026-02-16T10:00:00Z", subject="Nope"),
                _result("c1", "2026-02-16T10:00:01Z", content="Task #3", is_error=True),
            ]
        )
        self.assertEqual(stats.taskState.tasks, {})

    def test_subagent_task_follows_its_result(self) -> None:
        aggregator = SessionStatsAggregator()
        aggregator.ingest([_tool("t1", "Task", "2026-02-16T10:00:00Z", description="Explore", subagent_type="Explore")])
        task = aggregator.stats.taskState.tasks["agent-t1"]
        self.assertEqual(task.status, "in_progress")
        self.assertTrue(task.isSubagent)
        self.assertEqual(task.activeForm, "Running Explore agent")

        aggregator.ingest([_result("t1", "2026-02-16T10:01:00Z", content="done")])
        self.assertEqual(task.status, "completed")

    def test_todo_write_replaces_previous_list(self) -> None:
        aggregator = SessionStatsAggregator()
        stats = aggregator.ingest(
            [
                _tool(
                    "w1",
                    "TodoWrite",
                    "2026-02-16T10:00:00Z",
                    todos=[
                        {"content": "Read code", "status": "in_progress"},
                        {"content": "Fix bug", "status": "pending"},
                        {"content": "Ship", "status": "pending"},
                    ],
                ),
                _tool("r1", "Read", "2026-02-16T10:00:01Z", file_path="/w/a.py"),
                _tool(
                    "w2",
                    "TodoWrite",
                    "2026-02-16T10:00:02Z",
                    todos=[{"content": "Read code", "status": "completed"}, {"content": "Fix bug", "status": "in_progress"}],
                ),
            ]
        )

        tasks = stats.taskState.tasks
        self.assertEqual(sorted(tasks), ["todo-1", "todo-2"])
        self.assertEqual(tasks["todo-1"].status, "completed")
        self.assertEqual(tasks["todo-1"].createdAt, "2026-02-16T10:00:00Z")
        self.assertEqual([call.toolUseId for call in tasks["todo-1"].associatedToolCalls], ["r1"])
        self.assertEqual(stats.taskState.activeTaskId, "todo-2")


class StatsHelperTests(unittest.TestCase):
    def test_extract_task_id_patterns(self) -> None:
        self.assertEqual(extract_task_id("Task #12 created"), "12")
        self.assertEqual(extract_task_id({"id": "abc-1"}), "abc-1")
        self.assertEqual(extract_task_id("created taskId: 9"), "9")
        self.assertIsNone(extract_task_id("nothing here"))

    def test_categorize_error(self) -> None:
        self.assertEqual(categorize_error("Permission denied"), "permission")
        self.assertEqual(categorize_error("command timeout"), "timeout")
        self.assertEqual(categorize_error("Exit code 1"), "exit_code")
        self.assertEqual(categorize_error("weird"), "other")

    def test_describe_tool_call(self) -> None:
        self.assertEqual(describe_tool_call("Read", {"file_path": "/w/src/app.py"}), "Read: app.py")
        self.assertEqual(describe_tool_call("Glob", {"pattern": "*.py", "path": "/w/src/pkg"}), "Glob: *.py in src/pkg")
        self.assertEqual(describe_tool_call("WebFetch", {"url": "https://docs.python.org/3/"}), "WebFetch: docs.python.org")
        self.assertEqual(describe_tool_call("Task", {"description": "Map"}), "Task: Subagent spawned: Map")
        self.assertEqual(describe_tool_call("Mystery", {}), "Mystery")


class LineChangeTests(unittest.TestCase):
    def test_counts(self) -> None:
        self.assertEqual(count_lines("a\nb\n"), 2)
        self.assertEqual(count_lines("a\nb"), 2)
        self.assertEqual(count_lines(""), 0)

    def test_tool_specific_changes(self) -> None:
        self.assertEqual(calculate_line_changes("Write", {"content": "a\nb\nc"}), (3, 0))
        self.assertEqual(calculate_line_changes("Edit", {"old_string": "a", "new_string": "b\nc"}), (2, 1))
        self.assertEqual(calculate_line_changes("Edit", {"file_path": "x", "additions": 4, "deletions": 2}), (4, 2))
        self.assertEqual(
            calculate_line_changes("MultiEdit", {"edits": [{"old_string": "a", "new_string": "b"}, {"new_string": "c\nd"}]}),
            (3, 1),
        )
        self.assertEqual(calculate_line_changes("Read", {"file_path": "x"}), (0, 0))


if __name__ == "__main__":
    unittest.main()
