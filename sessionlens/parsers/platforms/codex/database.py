"""Codex ``state.sqlite`` thread index."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from sessionlens import config
from sessionlens.db.sqlite import ReadOnlyDatabase

logger = logging.getLogger("sessionlens.codex")

_THREAD_COLUMNS = "id, rollout_path, cwd, created_at, updated_at, title, first_user_message, model_provider"


def normalize_path(value: str) -> str:
    try:
        return os.path.realpath(value)
    except (OSError, ValueError):
        return os.path.abspath(value)


def cwd_matches(session_cwd: str | None, workspace_path: str) -> bool:
    """True when either path equals or contains the other."""
    if not session_cwd or not workspace_path:
        return False
    session = normalize_path(session_cwd)
    workspace = normalize_path(workspace_path)
    return session == workspace or workspace.startswith(session + os.sep) or session.startswith(workspace + os.sep)


def epoch_to_ms(value: Any) -> float:
    """Codex stores thread times in seconds; accept milliseconds as well."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value) * 1000.0 if value < 100_000_000_000 else float(value)


class CodexDatabase:
    """Thread lookups against ``$CODEX_HOME/state.sqlite``."""

    def __init__(self, codex_home: Path):
        self.db = ReadOnlyDatabase(codex_home / "state.sqlite")
        self._has_threads: bool | None = None

    def is_available(self) -> bool:
        if not self.db.exists():
            return False
        if self._has_threads is None:
            self._has_threads = self.db.has_table("threads")
            if not self._has_threads:
                logger.info("Codex database %s has no threads table; using rollout scanning", self.db.path)
        return self._has_threads

    def _threads(self, where: str = "", params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        sql = f"SELECT {_THREAD_COLUMNS} FROM threads {where} ORDER BY updated_at DESC LIMIT ?"
        return self.db.query(sql, params + (config.DB_ROW_LIMIT,))

    def get_threads_by_cwd(self, workspace_path: str) -> list[dict[str, Any]]:
        # Prefix matching on realpaths happens in Python; SQL cannot see symlinks.
        return [row for row in self._threads() if cwd_matches(row.get("cwd"), workspace_path)]

    def get_most_recent_thread(self, workspace_path: str) -> dict[str, Any] | None:
        threads = self.get_threads_by_cwd(workspace_path)
        return threads[0] if threads else None

    def get_thread(self, thread_id: str) -> dict[str, Any] | None:
        rows = self._threads("WHERE id = ?", (thread_id,))
        return rows[0] if rows else None

    def get_all_distinct_cwds(self) -> list[dict[str, Any]]:
        return self.db.query(
            "SELECT cwd, COUNT(*) AS count, MAX(updated_at) AS lastUpdated "
            "FROM threads WHERE cwd IS NOT NULL AND cwd != '' GROUP BY cwd ORDER BY lastUpdated DESC"
        )

    def close(self) -> None:
        self.db.close()
