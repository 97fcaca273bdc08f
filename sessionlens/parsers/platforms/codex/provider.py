"""Codex CLI session provider (``$CODEX_HOME/sessions/YYYY/MM/DD/rollout-*.jsonl``)."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Callable

from sessionlens import config
from sessionlens.date_utils import epoch_ms_to_iso, mtime_to_iso
from sessionlens.models import CanonicalEvent, MessageUsage, ProjectFolderInfo, SearchHit, SubagentStats
from sessionlens.parsers.jsonl import JsonlTailReader, parse_json_line, read_first_lines
from sessionlens.parsers.platforms.base import SessionProvider, SessionReader, most_recent_mtime
from sessionlens.parsers.platforms.codex.database import CodexDatabase, cwd_matches, epoch_to_ms
from sessionlens.parsers.platforms.codex.rollout import CodexRolloutNormalizer
from sessionlens.parsers.search import make_snippet, truncate_label

logger = logging.getLogger("sessionlens.codex")

_UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_LABEL_SCAN_LINES = 20

_CONTEXT_WINDOWS: list[tuple[tuple[str, ...], int]] = [
    (("gpt-4.1",), 1_048_576),
    (("gpt-4o", "gpt-4"), 128_000),
    (("o1", "o3", "o4"), 200_000),
]
DEFAULT_CONTEXT_WINDOW = 128_000


def is_rollout_file(filename: str) -> bool:
    return filename.startswith("rollout-") and filename.endswith(".jsonl")


def extract_session_id(filename: str) -> str:
    """UUID suffix of ``rollout-<timestamp>-<uuid>.jsonl``."""
    base = Path(filename).name
    if base.endswith(".jsonl"):
        base = base[: -len(".jsonl")]
    parts = base.split("-")
    if len(parts) >= 6:
        candidate = "-".join(parts[-5:])
        if _UUID_PATTERN.match(candidate):
            return candidate
    return base[len("rollout-"):] if base.startswith("rollout-") else base


def find_rollout_files(directory: Path) -> list[tuple[Path, float]]:
    """Non-empty rollout files below ``directory`` with their mtimes."""
    results: list[tuple[Path, float]] = []
    if not directory.is_dir():
        return results
    try:
        candidates = list(directory.rglob("rollout-*.jsonl"))
    except OSError:
        return results
    for path in candidates:
        try:
            stat = path.stat()
        except OSError:
            continue
        if path.is_file() and stat.st_size > 0:
            results.append((path, stat.st_mtime))
    results.sort(key=lambda item: item[1], reverse=True)
    return results


def read_session_meta(rollout_path: Path) -> dict[str, Any] | None:
    lines = read_first_lines(rollout_path, 1)
    if not lines:
        return None
    record = parse_json_line(lines[0], "codex")
    if record and record.get("type") == "session_meta" and isinstance(record.get("payload"), dict):
        return record["payload"]
    return None


def _is_system_injection(text: str) -> bool:
    stripped = text.lstrip()
    return stripped.startswith("<") or stripped.startswith("#")


def extract_first_user_message(rollout_path: Path) -> str | None:
    for line in read_first_lines(rollout_path, _LABEL_SCAN_LINES):
        record = parse_json_line(line, "codex")
        if not record or not isinstance(record.get("payload"), dict):
            continue
        payload = record["payload"]
        if record.get("type") == "response_item" and payload.get("role") == "user":
            content = payload.get("content")
            candidates = [content] if isinstance(content, str) else [
                part.get("text") for part in content or [] if isinstance(part, dict)
            ]
            for text in candidates:
                if isinstance(text, str) and text.strip() and not _is_system_injection(text):
                    return truncate_label(text)
        if record.get("type") == "event_msg" and payload.get("type") == "user_message":
            message = payload.get("message")
            if isinstance(message, str) and message.strip():
                return truncate_label(message)
    return None


def extract_searchable_text(record: dict[str, Any]) -> str:
    payload = record.get("payload")
    if not isinstance(payload, dict):
        return ""
    kind = record.get("type")
    if kind == "response_item":
        item_type = payload.get("type")
        if item_type == "message":
            content = payload.get("content")
            if isinstance(content, str):
                return content
            return " ".join(
                str(part.get("text")) for part in content or [] if isinstance(part, dict) and part.get("text")
            )
        if item_type == "function_call":
            return str(payload.get("arguments") or "")
        if item_type == "function_call_output":
            output = payload.get("output")
            return output if isinstance(output, str) else ""
        return ""
    if kind == "event_msg":
        return str(payload.get("message") or payload.get("result") or "")
    if kind == "compacted":
        return str(payload.get("summary") or "")
    return ""


class CodexReader(JsonlTailReader):
    provider = "codex"

    def __init__(self, path: str | Path, on_context_window: Callable[[int], None] | None = None):
        super().__init__(path)
        self.normalizer = CodexRolloutNormalizer()
        self._on_context_window = on_context_window

    def _convert(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        return self.normalizer.convert_line(record)

    def _reset_state(self) -> None:
        self.normalizer.reset()

    def read_new(self) -> list[CanonicalEvent]:
        events = super().read_new()
        window = self.normalizer.model_context_window
        if window and self._on_context_window:
            self._on_context_window(window)
        return events


class CodexProvider(SessionProvider):
    id = "codex"
    display_name = "Codex CLI"

    def __init__(self) -> None:
        self._db: CodexDatabase | None = None
        self._db_initialized = False
        self._dynamic_context_window: int | None = None
        self._cwd_cache: dict[str, str | None] = {}

    @property
    def codex_home(self) -> Path:
        return config.codex_home()

    @property
    def sessions_dir(self) -> Path:
        return self.codex_home / "sessions"

    def _ensure_db(self) -> CodexDatabase | None:
        if self._db_initialized:
            return self._db
        self._db_initialized = True
        database = CodexDatabase(self.codex_home)
        if database.is_available():
            self._db = database
            logger.info("Codex thread index connected: %s", database.db.path)
        else:
            database.close()
            logger.info("Codex thread index unavailable; using rollout file discovery")
        return self._db

    def _session_cwd(self, rollout_path: Path) -> str | None:
        key = str(rollout_path)
        if key not in self._cwd_cache:
            meta = read_session_meta(rollout_path)
            cwd = meta.get("cwd") if meta else None
            self._cwd_cache[key] = cwd if isinstance(cwd, str) and cwd else None
        return self._cwd_cache[key]

    def _workspace_rollouts(self, workspace_path: str) -> list[Path]:
        return [
            path
            for path, _ in find_rollout_files(self.sessions_dir)
            if cwd_matches(self._session_cwd(path), workspace_path)
        ]

    # ── Discovery ──

    def get_session_directory(self, workspace_path: str) -> str:
        database = self._ensure_db()
        thread = database.get_most_recent_thread(workspace_path) if database else None
        if thread and thread.get("rollout_path"):
            return str(Path(thread["rollout_path"]).parent)
        return str(self.sessions_dir)

    def discover_session_directory(self, workspace_path: str) -> str | None:
        active = self.find_active_session(workspace_path)
        if active:
            return str(Path(active).parent)
        return str(self.sessions_dir) if self.sessions_dir.is_dir() else None

    def find_active_session(self, workspace_path: str) -> str | None:
        database = self._ensure_db()
        thread = database.get_most_recent_thread(workspace_path) if database else None
        if thread and thread.get("rollout_path") and Path(thread["rollout_path"]).is_file():
            return str(thread["rollout_path"])
        rollouts = self._workspace_rollouts(workspace_path)
        return str(rollouts[0]) if rollouts else None

    def find_all_sessions(self, workspace_path: str) -> list[str]:
        database = self._ensure_db()
        if database:
            indexed = [
                str(row["rollout_path"])
                for row in database.get_threads_by_cwd(workspace_path)
                if row.get("rollout_path") and Path(row["rollout_path"]).is_file()
            ]
            if indexed:
                return indexed
        return [str(path) for path in self._workspace_rollouts(workspace_path)]

    def find_sessions_in_directory(self, directory: str) -> list[str]:
        return [str(path) for path, _ in find_rollout_files(Path(directory))]

    def get_all_project_folders(self, workspace_path: str | None = None) -> list[ProjectFolderInfo]:
        seen: dict[str, tuple[ProjectFolderInfo, float]] = {}
        database = self._ensure_db()
        if database:
            for row in database.get_all_distinct_cwds():
                cwd = str(row["cwd"])
                updated_ms = epoch_to_ms(row.get("lastUpdated"))
                seen[cwd] = (
                    ProjectFolderInfo(
                        dir=str(self.sessions_dir),
                        name=cwd,
                        encodedName=cwd,
                        sessionCount=int(row.get("count") or 0),
                        lastModified=epoch_ms_to_iso(updated_ms) if updated_ms else "",
                    ),
                    updated_ms / 1000.0,
                )

        for path, mtime in find_rollout_files(self.sessions_dir):
            cwd = self._session_cwd(path)
            if not cwd:
                continue
            existing = seen.get(cwd)
            if existing is None:
                seen[cwd] = (
                    ProjectFolderInfo(
                        dir=str(path.parent),
                        name=cwd,
                        encodedName=cwd,
                        sessionCount=1,
                        lastModified=mtime_to_iso(mtime),
                    ),
                    mtime,
                )
            elif database is None:
                existing[0].sessionCount += 1
                if mtime > existing[1]:
                    existing[0].lastModified = mtime_to_iso(mtime)
                    seen[cwd] = (existing[0], mtime)
            elif mtime > existing[1]:
                existing[0].lastModified = mtime_to_iso(mtime)
                seen[cwd] = (existing[0], mtime)

        folders = list(seen.values())
        folders.sort(
            key=lambda item: (bool(workspace_path) and cwd_matches(item[0].name, workspace_path or ""), item[1]),
            reverse=True,
        )
        return [info for info, _ in folders]

    # ── Identification ──

    def is_session_file(self, filename: str) -> bool:
        return is_rollout_file(Path(filename).name)

    def extract_session_id(self, session_path: str) -> str:
        return extract_session_id(session_path)

    def encode_workspace_path(self, workspace_path: str) -> str:
        return workspace_path

    def extract_session_label(self, session_path: str) -> str | None:
        database = self._ensure_db()
        if database:
            thread = database.get_thread(self.extract_session_id(session_path))
            if thread:
                for key in ("title", "first_user_message"):
                    value = thread.get(key)
                    if isinstance(value, str) and value.strip():
                        return truncate_label(value)
        return extract_first_user_message(Path(session_path))

    # ── Reading ──

    def create_reader(self, session_path: str) -> SessionReader:
        return CodexReader(session_path, on_context_window=self._set_dynamic_context_window)

    def _set_dynamic_context_window(self, limit: int) -> None:
        self._dynamic_context_window = limit

    def scan_subagents(self, session_dir: str, session_id: str) -> list[SubagentStats]:
        # Codex forks are separate rollouts linked by forked_from_id; not scanned.
        return []

    def search_in_session(self, session_path: str, query: str, max_results: int) -> list[SearchHit]:
        results: list[SearchHit] = []
        if not query:
            return results
        path = Path(session_path)
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
                record = parse_json_line(line, "codex")
                if record is None:
                    continue
                snippet = make_snippet(extract_searchable_text(record), query)
                if snippet is None:
                    continue
                results.append(
                    SearchHit(
                        sessionPath=session_path,
                        line=snippet,
                        eventType=str(record.get("type") or "unknown"),
                        timestamp=str(record.get("timestamp") or ""),
                        projectPath=self._session_cwd(path) or session_path,
                    )
                )
        return results

    def get_base_directory(self) -> str:
        return str(self.sessions_dir)

    def is_available(self) -> bool:
        return self.sessions_dir.is_dir() or (self.codex_home / "state.sqlite").is_file()

    def get_last_activity(self) -> float:
        db_path = self.codex_home / "state.sqlite"
        try:
            return db_path.stat().st_mtime
        except OSError:
            return most_recent_mtime(self.sessions_dir)

    def get_context_window_limit(self, model_id: str | None = None) -> int | None:
        if self._dynamic_context_window:
            return self._dynamic_context_window
        if not model_id:
            return DEFAULT_CONTEXT_WINDOW
        lowered = model_id.lower()
        for prefixes, window in _CONTEXT_WINDOWS:
            if lowered.startswith(prefixes):
                return window
        return DEFAULT_CONTEXT_WINDOW

    def compute_context_size(self, usage: MessageUsage) -> int:
        # OpenAI input_tokens already include cached input tokens.
        return usage.input_tokens

    def dispose(self) -> None:
        if self._db is not None:
            self._db.close()
        self._db = None
        self._db_initialized = False
        self._cwd_cache.clear()
