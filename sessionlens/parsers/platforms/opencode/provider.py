"""OpenCode session provider.

Sessions live either in ``opencode.db`` or as per-record JSON files under
``storage/`` (``session/<projectId>/<sessionId>.json``,
``message/<sessionId>/*.json``, ``part/<messageId>/*.json``). DB-backed
sessions are addressed by a synthetic ``db-sessions/<projectId>/<sessionId>.json``
path so both backends share one path shape.
"""
from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Any

from sessionlens import config
from sessionlens.date_utils import epoch_ms_to_iso, mtime_to_iso, to_iso_timestamp
from sessionlens.models import MessageUsage, ProjectFolderInfo, SearchHit, SubagentStats
from sessionlens.parsers.platforms.base import SessionProvider, SessionReader, most_recent_mtime
from sessionlens.parsers.platforms.opencode.database import OpenCodeDatabase
from sessionlens.parsers.platforms.opencode.readers import OpenCodeDbReader, OpenCodeFileReader
from sessionlens.parsers.search import make_snippet, truncate_label

logger = logging.getLogger("sessionlens.opencode")

DB_SESSIONS_DIR = "db-sessions"
_GIT_HASH_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")
_LABEL_SCAN_MESSAGES = 5

_CONTEXT_WINDOWS: list[tuple[tuple[str, ...], int]] = [
    (("gpt-4.1",), 1_000_000),
    (("gpt-5",), 400_000),
    (("o1", "o3", "o4"), 200_000),
    (("gpt-4",), 128_000),
    (("claude",), 200_000),
    (("gemini",), 1_000_000),
    (("deepseek",), 128_000),
]
DEFAULT_CONTEXT_WINDOW = 200_000


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _json_files(directory: Path) -> list[Path]:
    try:
        return [path for path in directory.iterdir() if path.suffix == ".json" and path.is_file()]
    except OSError:
        return []


def _ms(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


class OpenCodeProvider(SessionProvider):
    id = "opencode"
    display_name = "OpenCode"

    def __init__(self) -> None:
        self._db: OpenCodeDatabase | None = None
        self._db_initialized = False
        self._project_cache: dict[str, str | None] = {}
        self._session_meta: dict[str, tuple[str | None, float]] = {}

    @property
    def data_dir(self) -> Path:
        return config.opencode_data_dir()

    @property
    def storage_dir(self) -> Path:
        return self.data_dir / "storage"

    @property
    def session_root(self) -> Path:
        return self.storage_dir / "session"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "opencode.db"

    def _ensure_db(self) -> OpenCodeDatabase | None:
        if self._db_initialized:
            return self._db
        self._db_initialized = True
        database = OpenCodeDatabase(self.db_path)
        if database.is_available() and database.db.has_table("session"):
            self._db = database
            logger.info("OpenCode database connected: %s", self.db_path)
        else:
            database.close()
            logger.info("OpenCode database unavailable; using storage files")
        return self._db

    # ── Synthetic DB paths ──

    def db_session_path(self, project_id: str, session_id: str) -> str:
        return str(self.data_dir / DB_SESSIONS_DIR / project_id / f"{session_id}.json")

    def is_db_session_path(self, session_path: str) -> bool:
        return DB_SESSIONS_DIR in Path(session_path).parts

    def project_id_from_db_path(self, path: str) -> str | None:
        parts = Path(path).parts
        if DB_SESSIONS_DIR not in parts:
            return None
        index = parts.index(DB_SESSIONS_DIR)
        return parts[index + 1] if index + 1 < len(parts) else None

    # ── Project resolution ──

    def resolve_project_id(self, workspace_path: str) -> str | None:
        """Map a workspace to an OpenCode project id: DB worktree, project files, then git root commit."""
        if workspace_path in self._project_cache:
            return self._project_cache[workspace_path]
        project_id = self._project_from_db(workspace_path) or self._project_from_files(workspace_path)
        if project_id is None:
            project_id = self._project_from_git(workspace_path)
        self._project_cache[workspace_path] = project_id
        return project_id

    def _project_from_db(self, workspace_path: str) -> str | None:
        database = self._ensure_db()
        if database is None:
            return None
        row = database.find_project_by_worktree(workspace_path)
        return str(row["id"]) if row else None

    def _project_files(self) -> list[dict[str, Any]]:
        projects = []
        for path in _json_files(self.storage_dir / "project"):
            data = _read_json(path)
            if data is not None:
                data.setdefault("id", path.stem)
                projects.append(data)
        return projects

    def _project_from_files(self, workspace_path: str) -> str | None:
        workspace = os.path.normpath(workspace_path)
        best: str | None = None
        best_len = -1
        for project in self._project_files():
            worktree = project.get("worktree") or project.get("path")
            if not isinstance(worktree, str) or not worktree:
                continue
            worktree = os.path.normpath(worktree)
            if workspace == worktree or workspace.startswith(worktree + os.sep):
                if len(worktree) > best_len:
                    best, best_len = str(project["id"]), len(worktree)
        return best

    def _project_from_git(self, workspace_path: str) -> str | None:
        try:
            result = subprocess.run(
                ["git", "rev-list", "--max-parents=0", "HEAD"],
                cwd=workspace_path,
                capture_output=True,
                text=True,
                timeout=config.GIT_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("git root-commit lookup failed for %s: %s", workspace_path, exc)
            return None
        if result.returncode != 0:
            return None
        first = (result.stdout.strip().splitlines() or [""])[0].strip()
        return first if _GIT_HASH_PATTERN.match(first) else None

    # ── Discovery ──

    def _file_sessions(self, directory: Path) -> list[Path]:
        sessions = []
        for path in _json_files(directory):
            try:
                stat = path.stat()
            except OSError:
                continue
            if stat.st_size > 0:
                sessions.append((path, stat.st_mtime))
        sessions.sort(key=lambda item: item[1], reverse=True)
        return [path for path, _ in sessions]

    def _db_sessions(self, project_id: str) -> list[str]:
        database = self._ensure_db()
        if database is None:
            return []
        paths = []
        for row in database.get_sessions_for_project(project_id):
            path = self.db_session_path(project_id, str(row["id"]))
            self._session_meta[path] = (row.get("title"), _ms(row.get("time_updated")))
            paths.append(path)
        return paths

    def get_session_directory(self, workspace_path: str) -> str:
        project_id = self.resolve_project_id(workspace_path)
        if project_id and self._ensure_db() is not None:
            return str(self.data_dir / DB_SESSIONS_DIR / project_id)
        if project_id:
            return str(self.session_root / project_id)
        return str(self.session_root)

    def discover_session_directory(self, workspace_path: str) -> str | None:
        project_id = self.resolve_project_id(workspace_path)
        if not project_id:
            return None
        if self._db_sessions(project_id):
            return str(self.data_dir / DB_SESSIONS_DIR / project_id)
        directory = self.session_root / project_id
        return str(directory) if directory.is_dir() else None

    def find_active_session(self, workspace_path: str) -> str | None:
        project_id = self.resolve_project_id(workspace_path)
        if not project_id:
            return None
        database = self._ensure_db()
        if database is not None:
            row = database.get_most_recent_session(project_id)
            if row:
                path = self.db_session_path(project_id, str(row["id"]))
                self._session_meta[path] = (row.get("title"), _ms(row.get("time_updated")))
                return path
        sessions = self._file_sessions(self.session_root / project_id)
        return str(sessions[0]) if sessions else None

    def find_all_sessions(self, workspace_path: str) -> list[str]:
        project_id = self.resolve_project_id(workspace_path)
        if not project_id:
            return []
        return self._db_sessions(project_id) or [str(path) for path in self._file_sessions(self.session_root / project_id)]

    def find_sessions_in_directory(self, directory: str) -> list[str]:
        project_id = self.project_id_from_db_path(os.path.join(directory, "x.json")) or Path(directory).name
        if project_id:
            sessions = self._db_sessions(project_id)
            if sessions:
                return sessions
        return [str(path) for path in self._file_sessions(Path(directory))]

    def get_all_project_folders(self, workspace_path: str | None = None) -> list[ProjectFolderInfo]:
        current = self.resolve_project_id(workspace_path) if workspace_path else None
        folders: list[tuple[ProjectFolderInfo, float]] = []
        database = self._ensure_db()

        if database is not None:
            stats = {str(row["projectId"]): row for row in database.get_project_session_stats()}
            for project in database.get_projects():
                project_id = str(project["id"])
                row = stats.get(project_id)
                count = int(row["sessionCount"] or 0) if row else 0
                if count == 0:
                    continue
                updated = _ms(row.get("maxTimeUpdated"))
                folders.append(
                    (
                        ProjectFolderInfo(
                            dir=str(self.data_dir / DB_SESSIONS_DIR / project_id),
                            name=str(project.get("worktree") or project.get("name") or project_id),
                            encodedName=project_id,
                            sessionCount=count,
                            lastModified=epoch_ms_to_iso(updated) if updated else "",
                        ),
                        updated / 1000.0,
                    )
                )
        else:
            names = {
                str(project["id"]): str(project.get("worktree") or project.get("path") or project.get("name") or project["id"])
                for project in self._project_files()
            }
            try:
                project_dirs = [path for path in self.session_root.iterdir() if path.is_dir()]
            except OSError:
                project_dirs = []
            for project_dir in project_dirs:
                sessions = self._file_sessions(project_dir)
                if not sessions:
                    continue
                try:
                    latest = sessions[0].stat().st_mtime
                except OSError:
                    latest = 0.0
                folders.append(
                    (
                        ProjectFolderInfo(
                            dir=str(project_dir),
                            name=names.get(project_dir.name, project_dir.name),
                            encodedName=project_dir.name,
                            sessionCount=len(sessions),
                            lastModified=mtime_to_iso(latest),
                        ),
                        latest,
                    )
                )

        folders.sort(key=lambda item: (item[0].encodedName == current, item[1]), reverse=True)
        return [info for info, _ in folders]

    # ── Identification ──

    def is_session_file(self, filename: str) -> bool:
        return filename.endswith(".json")

    def extract_session_id(self, session_path: str) -> str:
        name = Path(session_path).name
        return name[: -len(".json")] if name.endswith(".json") else name

    def encode_workspace_path(self, workspace_path: str) -> str:
        return self.resolve_project_id(workspace_path) or workspace_path

    def extract_session_label(self, session_path: str) -> str | None:
        cached = self._session_meta.get(session_path)
        if cached and cached[0]:
            return truncate_label(cached[0])
        session_id = self.extract_session_id(session_path)

        if self.is_db_session_path(session_path):
            database = self._ensure_db()
            row = database.get_session(session_id) if database else None
            title = row.get("title") if row else None
            return truncate_label(title) if isinstance(title, str) and title.strip() else None

        session = _read_json(Path(session_path))
        title = session.get("title") if session else None
        if isinstance(title, str) and title.strip():
            return truncate_label(title)
        return self._first_user_text(session_id)

    def _first_user_text(self, session_id: str) -> str | None:
        message_files = sorted(_json_files(self.storage_dir / "message" / session_id))[:_LABEL_SCAN_MESSAGES]
        for message_file in message_files:
            message = _read_json(message_file)
            if not message or message.get("role") != "user":
                continue
            for part_file in sorted(_json_files(self.storage_dir / "part" / message_file.stem)):
                part = _read_json(part_file)
                text = part.get("text") if part and part.get("type") == "text" else None
                if isinstance(text, str) and text.strip():
                    return truncate_label(text)
        return None

    # ── Reading ──

    def create_reader(self, session_path: str) -> SessionReader:
        session_id = self.extract_session_id(session_path)
        database = self._ensure_db()
        if database is not None and database.get_session(session_id) is not None:
            return OpenCodeDbReader(database, session_id)
        return OpenCodeFileReader(self.storage_dir, session_id)

    def scan_subagents(self, session_dir: str, session_id: str) -> list[SubagentStats]:
        # Subtasks are reported inline as Subtask tool calls.
        return []

    def search_in_session(self, session_path: str, query: str, max_results: int) -> list[SearchHit]:
        if not query:
            return []
        session_id = self.extract_session_id(session_path)
        database = self._ensure_db()
        if self.is_db_session_path(session_path) and database is not None:
            project_id = self.project_id_from_db_path(session_path) or ""
            results = []
            for row in database.search_parts(session_id, query):
                snippet = make_snippet(str(row.get("data") or ""), query)
                if snippet is None:
                    continue
                results.append(
                    SearchHit(
                        sessionPath=session_path,
                        line=snippet,
                        eventType=str(row.get("role") or "unknown"),
                        timestamp=to_iso_timestamp(row.get("timeCreated")),
                        projectPath=project_id,
                    )
                )
                if len(results) >= max_results:
                    break
            return results
        return self._search_files(session_path, session_id, query, max_results)

    def _search_files(self, session_path: str, session_id: str, query: str, max_results: int) -> list[SearchHit]:
        session = _read_json(Path(session_path)) or {}
        project_path = str(session.get("directory") or session.get("projectID") or "")
        results: list[SearchHit] = []
        for message_file in sorted(_json_files(self.storage_dir / "message" / session_id)):
            message = _read_json(message_file) or {}
            created = (message.get("time") or {}).get("created") if isinstance(message.get("time"), dict) else None
            for part_file in sorted(_json_files(self.storage_dir / "part" / message_file.stem)):
                part = _read_json(part_file) or {}
                state = part.get("state") if isinstance(part.get("state"), dict) else {}
                for text in (part.get("text"), state.get("output")):
                    snippet = make_snippet(text, query) if isinstance(text, str) else None
                    if snippet is None:
                        continue
                    results.append(
                        SearchHit(
                            sessionPath=session_path,
                            line=snippet,
                            eventType=str(message.get("role") or "unknown"),
                            timestamp=to_iso_timestamp(created),
                            projectPath=project_path,
                        )
                    )
                    if len(results) >= max_results:
                        return results
        return results

    def get_base_directory(self) -> str:
        return str(self.session_root)

    def is_available(self) -> bool:
        return self.storage_dir.is_dir() or self.db_path.is_file()

    def get_last_activity(self) -> float:
        try:
            return self.db_path.stat().st_mtime
        except OSError:
            pass
        latest = 0.0
        for name in ("session", "message", "part"):
            directory = self.storage_dir / name
            try:
                latest = max(latest, directory.stat().st_mtime)
            except OSError:
                continue
            # New records land in per-session and per-message subdirectories.
            latest = max(latest, most_recent_mtime(directory))
        return latest

    def get_context_window_limit(self, model_id: str | None = None) -> int | None:
        if not model_id:
            return DEFAULT_CONTEXT_WINDOW
        lowered = model_id.lower()
        for prefixes, window in _CONTEXT_WINDOWS:
            if lowered.startswith(prefixes):
                return window
        return DEFAULT_CONTEXT_WINDOW

    def compute_context_size(self, usage: MessageUsage) -> int:
        return (
            usage.input_tokens
            + usage.output_tokens
            + usage.reasoning_tokens
            + usage.cache_creation_input_tokens
            + usage.cache_read_input_tokens
        )

    def current_usage_snapshot(self, session_path: str) -> MessageUsage | None:
        """Token usage of the latest assistant reply, read straight from the DB."""
        database = self._ensure_db()
        if database is None or not self.is_db_session_path(session_path):
            return None
        row = database.get_latest_assistant_context_usage(self.extract_session_id(session_path))
        if row is None:
            return None
        return MessageUsage(
            input_tokens=int(row.get("inputTokens") or 0),
            output_tokens=int(row.get("outputTokens") or 0),
            reasoning_tokens=int(row.get("reasoningTokens") or 0),
            cache_read_input_tokens=int(row.get("cacheReadTokens") or 0),
            cache_creation_input_tokens=int(row.get("cacheWriteTokens") or 0),
        )

    def dispose(self) -> None:
        if self._db is not None:
            self._db.close()
        self._db = None
        self._db_initialized = False
        self._project_cache.clear()
        self._session_meta.clear()
