import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from sessionlens import config
from sessionlens.parsers.platforms import registry
from sessionlens.parsers.platforms.claude_code.provider import ClaudeCodeProvider
from sessionlens.parsers.platforms.codex.provider import CodexProvider
from sessionlens.parsers.platforms.opencode.provider import OpenCodeProvider
from sessionlens.parsers.tool_names import normalize_tool_name


class ProviderDetectionTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        env = patch.dict(
            os.environ,
            {
                "CLAUDE_CONFIG_DIR": str(self.root / "claude"),
                "CODEX_HOME": str(self.root / "codex"),
                "XDG_DATA_HOME": str(self.root / "xdg"),
            },
        )
        env.start()
        self.addCleanup(env.stop)

    def _touch_dir(self, path: Path, mtime: float) -> None:
        path.mkdir(parents=True, exist_ok=True)
        marker = path / "marker.jsonl"
        marker.write_text("{}\n", encoding="utf-8")
        os.utime(marker, (mtime, mtime))

    def test_override_wins(self) -> None:
        provider = registry.detect_provider("codex")
        self.assertIsInstance(provider, CodexProvider)

    def test_configured_override_is_used_when_no_argument(self) -> None:
        with patch.object(config, "PROVIDER_OVERRIDE", "opencode"):
            provider = registry.detect_provider()
        self.assertIsInstance(provider, OpenCodeProvider)

    def test_defaults_to_claude_when_nothing_is_installed(self) -> None:
        with patch.object(config, "PROVIDER_OVERRIDE", ""):
            provider = registry.detect_provider()
        self.assertIsInstance(provider, ClaudeCodeProvider)

    def test_unknown_override_falls_back_to_detection(self) -> None:
        now = time.time()
        self._touch_dir(self.root / "codex" / "sessions", now)
        provider = registry.detect_provider("vim")
        self.assertIsInstance(provider, CodexProvider)

    def test_most_recently_active_provider_is_selected(self) -> None:
        now = time.time()
        self._touch_dir(self.root / "claude" / "projects", now - 3600)
        self._touch_dir(self.root / "codex" / "sessions", now - 60)
        with patch.object(config, "PROVIDER_OVERRIDE", ""):
            provider = registry.detect_provider()
        self.assertIsInstance(provider, CodexProvider)

    def test_create_provider_rejects_unknown_ids(self) -> None:
        with self.assertRaises(ValueError):
            registry.create_provider("emacs")

    def test_list_providers_reports_availability(self) -> None:
        self._touch_dir(self.root / "claude" / "projects", time.time())
        infos = {info.id: info for info in registry.list_providers("claude-code")}

        self.assertEqual(set(infos), {"claude-code", "opencode", "codex"})
        self.assertTrue(infos["claude-code"].available)
        self.assertTrue(infos["claude-code"].selected)
        self.assertGreater(infos["claude-code"].lastActivity, 0)
        self.assertFalse(infos["codex"].available)
        self.assertEqual(infos["codex"].lastActivity, 0.0)


class ToolNameTests(unittest.TestCase):
    def test_normalizes_known_names_case_insensitively(self) -> None:
        self.assertEqual(normalize_tool_name("bash"), "Bash")
        self.assertEqual(normalize_tool_name("APPLY_PATCH"), "Edit")
        self.assertEqual(normalize_tool_name("todowrite"), "TodoWrite")

    def test_unknown_names_pass_through(self) -> None:
        self.assertEqual(normalize_tool_name("mcp__docs__lookup"), "mcp__docs__lookup")
        self.assertEqual(normalize_tool_name(None), "")
        self.assertEqual(normalize_tool_name(""), "")


if __name__ == "__main__":
    unittest.main()
