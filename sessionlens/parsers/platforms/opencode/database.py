"""OpenCode ``opencode.db`` lookups."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterable

from sessionlens import config
from sessionlens.db.sqlite import ReadOnlyDatabase

logger = logging.getLogger("sessionlens.opencode")

_SESSION_COLUMNS = "id, project_id, title, directory, time_created, time_updated"
_MESSAGE_COLUMNS = "id, session_id, time_created, time_updated, data"
_PART_COLUMNS = "id, message_id, session_id, time_created, time_updated, data"


def _placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


class OpenCodeDatabase:
    """Read-only view over the OpenCode project/session/message/part tables."""

    def __init__(self, path: Path):
        self.db = ReadOnlyDatabase(path)

    @property
    def path(self) -> Path:
        return self.db.path

    def is_available(self) -> bool:
        return self.db.exists()

    # ── Projects ──

    def get_projects(self) -> list[dict[str, Any]]:
        return self.db.query("SELECT id, worktree, name, time_created, time_updated FROM project")

    def find_project_by_worktree(self, workspace_path: str) -> dict[str, Any] | None:
        """Exact worktree match first, then the longest containing/contained worktree."""
        workspace = os.path.normpath(workspace_path)
        projects = [row for row in self.get_projects() if row.get("worktree")]
        for row in projects:
            if os.path.normpath(row["worktree"]) == workspace:
                return row
        best: dict[str, Any] | None = None
        best_len = -1
        for row in projects:
            worktree = os.path.normpath(row["worktree"])
            if workspace.startswith(worktree + os.sep) or worktree.startswith(workspace + os.sep):
                if len(worktree) > best_len:
                    best, best_len = row, len(worktree)
        return best

    def get_project_session_stats(self) -> list[dict[str, Any]]:
        return self.db.query(
            "SELECT project_id AS projectId, COUNT(*) AS sessionCount, MAX(time_updated) AS maxTimeUpdated "
            "FROM session GROUP BY project_id"
        )

    # ── Sessions ──

    def get_sessions_for_project(self, project_id: str) -> list[dict[str, Any]]:
        return self.db.query(
            f"SELECT {_SESSION_COLUMNS} FROM session WHERE project_id = ? ORDER BY time_updated DESC LIMIT ?",
            (project_id, config.DB_ROW_LIMIT),
        )

    def get_most_recent_session(self, project_id: str) -> dict[str, Any] | None:
        rows = self.db.query(
            f"SELECT {_SESSION_COLUMNS} FROM session WHERE project_id = ? ORDER BY time_updated DESC LIMIT 1",
            (project_id,),
        )
        return rows[0] if rows else None

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        rows = self.db.query(f"SELECT {_SESSION_COLUMNS} FROM session WHERE id = ?", (session_id,))
        return rows[0] if rows else None

    # ── Messages and parts ──

    def get_messages(self, session_id: str, newer_than: float | None = None) -> list[dict[str, Any]]:
        if newer_than is None:
            return self.db.query(
                f"SELECT {_MESSAGE_COLUMNS} FROM message WHERE session_id = ? ORDER BY time_created ASC LIMIT ?",
                (session_id, config.DB_ROW_LIMIT),
            )
        # Bounded incremental reads walk in watermark order so nothing is skipped.
        return self.db.query(
            f"SELECT {_MESSAGE_COLUMNS} FROM message WHERE session_id = ? AND time_updated > ? "
            "ORDER BY time_updated ASC, time_created ASC LIMIT ?",
            (session_id, newer_than, config.DB_ROW_LIMIT),
        )

    def get_parts(self, session_id: str, newer_than: float | None = None) -> list[dict[str, Any]]:
        if newer_than is None:
            return self.db.query(
                f"SELECT {_PART_COLUMNS} FROM part WHERE session_id = ? ORDER BY time_created ASC LIMIT ?",
                (session_id, config.DB_ROW_LIMIT),
            )
        return self.db.query(
            f"SELECT {_PART_COLUMNS} FROM part WHERE session_id = ? AND time_updated > ? "
            "ORDER BY time_updated ASC, time_created ASC LIMIT ?",
            (session_id, newer_than, config.DB_ROW_LIMIT),
        )

    def get_messages_by_ids(self, message_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = list(message_ids)
        if not ids:
            return []
        return self.db.query(
            f"SELECT {_MESSAGE_COLUMNS} FROM message WHERE id IN ({_placeholders(ids)}) ORDER BY time_created ASC",
            ids,
        )

    def get_parts_for_messages(self, message_ids: Iterable[str]) -> dict[str, list[dict[str, Any]]]:
        ids = list(message_ids)
        grouped: dict[str, list[dict[str, Any]]] = {message_id: [] for message_id in ids}
        if not ids:
            return grouped
        rows = self.db.query(
            f"SELECT {_PART_COLUMNS} FROM part WHERE message_id IN ({_placeholders(ids)}) ORDER BY time_created ASC",
            ids,
        )
        for row in rows:
            grouped.setdefault(row["message_id"], []).append(row)
        return grouped

    def get_latest_message_time_updated(self, session_id: str) -> float:
        rows = self.db.query("SELECT MAX(time_updated) AS latest FROM message WHERE session_id = ?", (session_id,))
        return float(rows[0]["latest"] or 0) if rows else 0.0

    def get_latest_part_time_updated(self, session_id: str) -> float:
        rows = self.db.query("SELECT MAX(time_updated) AS latest FROM part WHERE session_id = ?", (session_id,))
        return float(rows[0]["latest"] or 0) if rows else 0.0

    def get_processed_user_message_ids(self, session_id: str, user_ids: Iterable[str]) -> set[str]:
        """User message ids that already have an assistant reply pointing back at them."""
        ids = list(user_ids)
        if not ids:
            return set()
        rows = self.db.query(
            "SELECT DISTINCT json_extract(data, '$.parentID') AS parentId FROM message "
            "WHERE session_id = ? AND json_extract(data, '$.role') = 'assistant' "
            f"AND json_extract(data, '$.parentID') IN ({_placeholders(ids)})",
            [session_id, *ids],
        )
        return {row["parentId"] for row in rows if row.get("parentId")}

    def get_latest_assistant_context_usage(self, session_id: str) -> dict[str, Any] | None:
        rows = self.db.query(
            "SELECT json_extract(data, '$.tokens.input') AS inputTokens, "
            "json_extract(data, '$.tokens.output') AS outputTokens, "
            "json_extract(data, '$.tokens.reasoning') AS reasoningTokens, "
            "json_extract(data, '$.tokens.cache.read') AS cacheReadTokens, "
            "json_extract(data, '$.tokens.cache.write') AS cacheWriteTokens, "
            "json_extract(data, '$.modelID') AS modelId, time_created AS timeCreated "
            "FROM message WHERE session_id = ? AND json_extract(data, '$.role') = 'assistant' "
            "AND COALESCE(json_extract(data, '$.tokens.input'), 0) > 0 "
            "ORDER BY time_created DESC LIMIT 1",
            (session_id,),
        )
        return rows[0] if rows else None

    def search_parts(self, session_id: str, query: str) -> list[dict[str, Any]]:
        """Parts whose raw data contains ``query`` (case-insensitive), joined to their message role."""
        return self.db.query(
            "SELECT part.id AS id, part.message_id AS messageId, part.time_created AS timeCreated, "
            "part.data AS data, json_extract(message.data, '$.role') AS role "
            "FROM part JOIN message ON message.id = part.message_id "
            "WHERE part.session_id = ? AND instr(lower(part.data), lower(?)) > 0 "
            "ORDER BY part.time_created ASC LIMIT ?",
            (session_id, query, config.DB_ROW_LIMIT),
        )

    def close(self) -> None:
        self.db.close()
