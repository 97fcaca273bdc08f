"""Claude Code session provider (``~/.claude/projects/<encoded>/<id>.jsonl``)."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sessionlens import config
from sessionlens.models import CanonicalEvent, ProjectFolderInfo, SearchHit, SubagentStats
from sessionlens.parsers.jsonl import JsonlTailReader, parse_json_line
from sessionlens.parsers.platforms.base import SessionProvider, SessionReader, most_recent_mtime
from sessionlens.parsers.platforms.claude_code import paths
from sessionlens.parsers.platforms.claude_code.events import convert_claude_record
from sessionlens.parsers.platforms.claude_code.subagents import scan_subagent_dir
from sessionlens.parsers.search import make_snippet, searchable_block_text, truncate_label

logger = logging.getLogger("sessionlens.claude")

_LABEL_SCAN_BYTES = 8192
CLAUDE_CONTEXT_WINDOW = 200_000


class ClaudeCodeReader(JsonlTailReader):
    provider = "claude-code"

    def _convert(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        event = convert_claude_record(record)
        return [event] if event is not None else []


class ClaudeCodeProvider(SessionProvider):
    id = "claude-code"
    display_name = "Claude Code"

    def get_session_directory(self, workspace_path: str) -> str:
        return str(paths.get_session_directory(workspace_path))

    def discover_session_directory(self, workspace_path: str) -> str | None:
        found = paths.discover_session_directory(workspace_path)
        return str(found) if found else None

    def find_active_session(self, workspace_path: str) -> str | None:
        found = paths.find_active_session(workspace_path)
        return str(found) if found else None

    def find_all_sessions(self, workspace_path: str) -> list[str]:
        return [str(path) for path in paths.find_all_sessions(workspace_path)]

    def find_sessions_in_directory(self, directory: str) -> list[str]:
        return [str(path) for path in paths.find_sessions_in_directory(Path(directory))]

    def get_all_project_folders(self, workspace_path: str | None = None) -> list[ProjectFolderInfo]:
        return paths.get_all_project_folders(workspace_path)

    def is_session_file(self, filename: str) -> bool:
        return filename.endswith(".jsonl")

    def extract_session_id(self, session_path: str) -> str:
        name = Path(session_path).name
        return name[: -len(".jsonl")] if name.endswith(".jsonl") else name

    def encode_workspace_path(self, workspace_path: str) -> str:
        return paths.encode_workspace_path(workspace_path)

    def extract_session_label(self, session_path: str) -> str | None:
        try:
            with open(session_path, "rb") as handle:
                head = handle.read(_LABEL_SCAN_BYTES)
        except OSError:
            return None
        lines = head.decode("utf-8", errors="replace").split("\n")
        if len(head) == _LABEL_SCAN_BYTES:
            lines.pop()
        for line in lines:
            record = parse_json_line(line, "claude-code")
            if not record or record.get("type") != "user":
                continue
            content = (record.get("message") or {}).get("content")
            text = ""
            if isinstance(content, str):
                text = content.strip()
            elif isinstance(content, list):
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "text" and str(block.get("text") or "").strip():
                        text = str(block["text"]).strip()
                        break
            if text:
                return truncate_label(text)
        return None

    def create_reader(self, session_path: str) -> SessionReader:
        return ClaudeCodeReader(session_path)

    def scan_subagents(self, session_dir: str, session_id: str) -> list[SubagentStats]:
        return scan_subagent_dir(session_dir, session_id)

    def search_in_session(self, session_path: str, query: str, max_results: int) -> list[SearchHit]:
        results: list[SearchHit] = []
        if not query:
            return results
        path = Path(session_path)
        project_path = paths.decode_encoded_path(path.parent.name)
        needle = query.lower()
        try:
            handle = path.open("r", encoding="utf-8", errors="replace")
        except OSError:
            return results
        with handle:
            for line in handle:
                if len(results) >= max_results:
                    break
                if needle not in line.lower():
                    continue
                record = parse_json_line(line, "claude-code")
                if record is None:
                    continue
                message = record.get("message") if isinstance(record.get("message"), dict) else {}
                snippet = make_snippet(searchable_block_text(message.get("content")), query)
                if snippet is None:
                    continue
                results.append(
                    SearchHit(
                        sessionPath=session_path,
                        line=snippet,
                        eventType=str(record.get("type") or "unknown"),
                        timestamp=str(record.get("timestamp") or ""),
                        projectPath=project_path,
                    )
                )
        return results

    def get_base_directory(self) -> str:
        return str(config.claude_projects_dir())

    def get_context_window_limit(self, model_id: str | None = None) -> int | None:
        return CLAUDE_CONTEXT_WINDOW

    def get_last_activity(self) -> float:
        return most_recent_mtime(config.claude_projects_dir())
