import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sessionlens.parsers.platforms.codex.provider import CodexProvider, extract_session_id, is_rollout_file
from sessionlens.parsers.platforms.codex.rollout import CodexRolloutNormalizer, extract_patch_file_paths

SESSION_UUID = "0199a1b2-c3d4-7e5f-8a9b-0c1d2e3f4a5b"


def _line(kind: str, payload: dict, timestamp: str = "2026-02-16T10:00:00Z") -> dict:
    return {"type": kind, "timestamp": timestamp, "payload": payload}


class CodexRolloutNormalizerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.normalizer = CodexRolloutNormalizer()

    def test_exec_begin_and_end_pair_into_tool_use_and_result(self) -> None:
        begin = _line(
            "event_msg",
            {"type": "exec_command_begin", "call_id": "c1", "command": ["ls"], "cwd": "/w"},
            "2026-02-16T10:00:00Z",
        )
        end = _line(
            "event_msg",
            {"type": "exec_command_end", "call_id": "c1", "stdout": "a.txt", "exit_code": 0, "duration_ms": 12},
            "2026-02-16T10:00:01Z",
        )

        self.assertEqual(self.normalizer.convert_line(begin), [])
        events = self.normalizer.convert_line(end)

        self.assertEqual([event.type for event in events], ["assistant", "user"])
        tool_use = events[0].message.content[0]
        self.assertEqual(tool_use.name, "Bash")
        self.assertEqual(tool_use.id, "c1")
        self.assertEqual(tool_use.input["command"], "ls")
        self.assertEqual(tool_use.input["workdir"], "/w")
        self.assertEqual(events[0].timestamp, "2026-02-16T10:00:00Z")

        result = events[1].message.content[0]
        self.assertEqual(result.tool_use_id, "c1")
        self.assertEqual(result.content, "a.txt")
        self.assertFalse(result.is_error)
        self.assertEqual(result.duration, 12.0)
        self.assertEqual(self.normalizer.pending_exec, {})

    def test_orphan_exec_end_is_synthesized(self) -> None:
        end = _line("event_msg", {"type": "exec_command_end", "call_id": "c9", "stderr": "boom", "exit_code": 2})
        events = self.normalizer.convert_line(end)

        self.assertEqual(len(events), 2)
        self.assertEqual(events[0].message.content[0].input["command"], "")
        self.assertTrue(events[1].message.content[0].is_error)
        self.assertEqual(events[1].message.content[0].content, "boom")

    def test_exec_records_without_call_id_are_skipped(self) -> None:
        self.assertEqual(self.normalizer.convert_line(_line("event_msg", {"type": "exec_command_begin"})), [])
        self.assertEqual(self.normalizer.convert_line(_line("event_msg", {"type": "exec_command_end"})), [])

    def test_mcp_call_pairs_with_tool_name(self) -> None:
        self.normalizer.convert_line(
            _line(
                "event_msg",
                {
                    "type": "mcp_tool_call_begin",
                    "call_id": "m1",
                    "invocation": {"server": "docs", "tool": "lookup", "arguments": {"q": "x"}},
                },
            )
        )
        events = self.normalizer.convert_line(
            _line("event_msg", {"type": "mcp_tool_call_end", "call_id": "m1", "result": "found"})
        )
        self.assertEqual(events[0].message.content[0].name, "lookup")
        self.assertEqual(events[0].message.content[0].input, {"q": "x"})
        self.assertEqual(events[1].message.content[0].content, "found")

    def test_token_count_updates_are_sparse(self) -> None:
        self.normalizer.convert_line(_line("turn_context", {"model": "gpt-5-codex"}))
        first = self.normalizer.convert_line(
            _line(
                "event_msg",
                {
                    "type": "token_count",
                    "info": {
                        "model_context_window": 272000,
                        "last_token_usage": {"input_tokens": 100, "cached_input_tokens": 40, "output_tokens": 7},
                    },
                },
            )
        )
        second = self.normalizer.convert_line(
            _line(
                "event_msg",
                {"type": "token_count", "info": {"last_token_usage": {"input_tokens": 150, "output_tokens": 3}}},
                "2026-02-16T10:00:05Z",
            )
        )

        self.assertEqual(self.normalizer.model_context_window, 272000)
        usage = first[0].message.usage
        self.assertEqual(usage.input_tokens, 100)
        self.assertEqual(usage.cache_read_input_tokens, 40)
        self.assertEqual(first[0].message.model, "gpt-5-codex")
        self.assertEqual(second[0].message.usage.input_tokens, 150)

    def test_token_count_without_usage_emits_nothing(self) -> None:
        events = self.normalizer.convert_line(
            _line("event_msg", {"type": "token_count", "info": None, "rate_limits": {"primary": {"used_percent": 5}}})
        )
        self.assertEqual(events, [])
        self.assertEqual(self.normalizer.last_rate_limits, {"primary": {"used_percent": 5}})

    def test_apply_patch_emits_one_edit_per_file(self) -> None:
        patch_text = (
            "*** Begin Patch\n"
            "*** Update File: src/app.py\n@@\n-a\n+b\n"
            "*** Add File: src/new.py\n+x\n"
            "*** End Patch"
        )
        events = self.normalizer.convert_line(
            _line("response_item", {"type": "custom_tool_call", "call_id": "p1", "name": "apply_patch", "input": patch_text})
        )
        self.assertEqual(
            [event.message.content[0].input["file_path"] for event in events],
            ["src/app.py", "src/new.py"],
        )
        self.assertTrue(all(event.message.content[0].name == "Edit" for event in events))

    def test_function_call_output_pairs_by_call_id(self) -> None:
        call = self.normalizer.convert_line(
            _line(
                "response_item",
                {"type": "function_call", "call_id": "f1", "name": "shell", "arguments": json.dumps({"command": ["ls"]})},
            )
        )
        output = self.normalizer.convert_line(
            _line("response_item", {"type": "function_call_output", "call_id": "f1", "output": "ok"})
        )
        self.assertEqual(call[0].message.content[0].name, "Bash")
        self.assertEqual(output[0].message.content[0].tool_use_id, "f1")
        self.assertEqual(output[0].message.id, "f1:result")

    def test_messages_reasoning_and_compaction(self) -> None:
        user = self.normalizer.convert_line(
            _line("response_item", {"type": "message", "role": "user", "content": [{"type": "input_text", "text": "hi"}]})
        )
        reasoning = self.normalizer.convert_line(
            _line("response_item", {"type": "reasoning", "summary": [{"type": "summary_text", "text": "thinking"}]})
        )
        compacted = self.normalizer.convert_line(_line("compacted", {"summary": "short"}))
        ignored = self.normalizer.convert_line(_line("event_msg", {"type": "agent_message", "message": "dup"}))

        self.assertEqual(user[0].type, "user")
        self.assertEqual(reasoning[0].message.content[0].thinking, "thinking")
        self.assertEqual(compacted[0].type, "summary")
        self.assertEqual(compacted[0].message.content, "short")
        self.assertEqual(ignored, [])

    def test_reset_clears_pending_calls(self) -> None:
        self.normalizer.convert_line(_line("event_msg", {"type": "exec_command_begin", "call_id": "c1", "command": ["ls"]}))
        self.normalizer.reset()
        self.assertEqual(self.normalizer.pending_exec, {})
        self.assertIsNone(self.normalizer.model_context_window)


class CodexProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.home = Path(tmpdir.name)
        env = patch.dict(os.environ, {"CODEX_HOME": str(self.home)})
        env.start()
        self.addCleanup(env.stop)
        self.provider = CodexProvider()
        self.addCleanup(self.provider.dispose)

    def _write_rollout(self, name: str, cwd: str, prompt: str) -> Path:
        path = self.home / "sessions" / "2026" / "02" / "16" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [
            _line("session_meta", {"id": SESSION_UUID, "cwd": cwd}),
            _line("response_item", {"type": "message", "role": "user", "content": [{"type": "input_text", "text": "<env>ctx</env>"}]}),
            _line("response_item", {"type": "message", "role": "user", "content": [{"type": "input_text", "text": prompt}]}),
        ]
        path.write_text("\n".join(json.dumps(line) for line in lines) + "\n", encoding="utf-8")
        return path

    def test_session_id_and_file_detection(self) -> None:
        name = f"rollout-2026-02-16T10-00-00-{SESSION_UUID}.jsonl"
        self.assertTrue(is_rollout_file(name))
        self.assertFalse(is_rollout_file("notes.jsonl"))
        self.assertEqual(extract_session_id(name), SESSION_UUID)
        self.assertEqual(extract_session_id("rollout-custom.jsonl"), "custom")

    def test_discovers_sessions_by_cwd_without_index(self) -> None:
        mine = self._write_rollout(f"rollout-2026-02-16T10-00-00-{SESSION_UUID}.jsonl", "/work/app", "fix the bug")
        self._write_rollout("rollout-2026-02-16T11-00-00-other.jsonl", "/work/other", "unrelated")

        self.assertTrue(self.provider.is_available())
        self.assertEqual(self.provider.find_all_sessions("/work/app"), [str(mine)])
        self.assertEqual(self.provider.find_active_session("/work/app"), str(mine))
        self.assertEqual(self.provider.extract_session_label(str(mine)), "fix the bug")
        self.assertEqual(self.provider.scan_subagents(str(mine.parent), SESSION_UUID), [])

        folders = self.provider.get_all_project_folders("/work/app")
        self.assertEqual(folders[0].name, "/work/app")
        self.assertEqual({folder.name for folder in folders}, {"/work/app", "/work/other"})

    def test_reader_reports_dynamic_context_window(self) -> None:
        path = self._write_rollout(f"rollout-2026-02-16T10-00-00-{SESSION_UUID}.jsonl", "/work/app", "hello")
        with path.open("a", encoding="utf-8") as handle:
            handle.write(
                json.dumps(
                    _line(
                        "event_msg",
                        {"type": "token_count", "info": {"model_context_window": 258400, "last_token_usage": {"input_tokens": 5}}},
                    )
                )
                + "\n"
            )

        reader = self.provider.create_reader(str(path))
        events = reader.read_new()

        self.assertEqual([event.type for event in events], ["user", "user", "assistant"])
        self.assertEqual(self.provider.get_context_window_limit("gpt-5"), 258400)

    def test_context_size_uses_input_tokens_only(self) -> None:
        from sessionlens.models import MessageUsage

        usage = MessageUsage(input_tokens=1000, cache_read_input_tokens=600, output_tokens=50)
        self.assertEqual(self.provider.compute_context_size(usage), 1000)
        self.assertEqual(self.provider.get_context_window_limit("gpt-4.1-mini"), 1_048_576)

    def test_truncation_drops_pending_exec_calls(self) -> None:
        path = self.home / "rollout-truncated.jsonl"
        begin = _line(
            "event_msg",
            {"type": "exec_command_begin", "call_id": "c1", "command": ["pytest", "-q", "tests/" + "x" * 200], "cwd": "/w"},
            "2026-02-16T10:00:00Z",
        )
        path.write_text(json.dumps(begin) + "\n", encoding="utf-8")
        reader = self.provider.create_reader(str(path))
        self.assertEqual(reader.read_new(), [])
        self.assertIn("c1", reader.normalizer.pending_exec)

        end = _line("event_msg", {"type": "exec_command_end", "call_id": "c1", "exit_code": 0}, "2026-02-16T10:00:05Z")
        path.write_text(json.dumps(end) + "\n", encoding="utf-8")
        events = reader.read_new()

        self.assertTrue(reader.was_truncated())
        self.assertEqual([event.type for event in events], ["assistant", "user"])
        self.assertEqual(events[0].message.content[0].input["command"], "")
        self.assertEqual(events[0].timestamp, "2026-02-16T10:00:05Z")
        self.assertEqual(reader.normalizer.pending_exec, {})

    def test_search_returns_snippets(self) -> None:
        path = self._write_rollout(f"rollout-2026-02-16T10-00-00-{SESSION_UUID}.jsonl", "/work/app", "please fix the parser bug")
        hits = self.provider.search_in_session(str(path), "PARSER", 10)
        self.assertEqual(len(hits), 1)
        self.assertIn("parser", hits[0].line)
        self.assertEqual(hits[0].projectPath, "/work/app")


class PatchPathTests(unittest.TestCase):
    def test_extracts_headers(self) -> None:
        self.assertEqual(extract_patch_file_paths("*** Delete File: old.txt\n"), ["old.txt"])
        self.assertEqual(extract_patch_file_paths(None), [])


if __name__ == "__main__":
    unittest.main()
