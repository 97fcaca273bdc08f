"""Read-only SQLite access for provider-owned databases.

Provider databases (OpenCode's ``opencode.db``, Codex's ``state.sqlite``) are
written by the CLI process; SessionLens only ever reads them. Every query has
a hard wall-clock limit and failures degrade to an empty result.
"""
from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Sequence

from sessionlens import config

logger = logging.getLogger("sessionlens.db")

# Progress handler granularity, in SQLite VM instructions.
_PROGRESS_STEPS = 1000


class ReadOnlyDatabase:
    """Lazily opened, read-only connection with per-query timeouts."""

    def __init__(self, path: str | Path, timeout_ms: int | None = None):
        self.path = Path(path)
        self.timeout_ms = config.DB_QUERY_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._deadline = 0.0

    def exists(self) -> bool:
        return self.path.is_file()

    def _abort_if_expired(self) -> int:
        # A non-zero return interrupts the running statement.
        return 1 if time.monotonic() > self._deadline else 0

    def _connect(self) -> sqlite3.Connection | None:
        if self._conn is not None:
            return self._conn
        if not self.exists():
            return None
        try:
            conn = sqlite3.connect(
                f"file:{self.path.as_posix()}?mode=ro",
                uri=True,
                timeout=max(0.0, self.timeout_ms / 1000.0),
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            logger.warning("Could not open %s read-only: %s", self.path, exc)
            return None
        conn.row_factory = sqlite3.Row
        conn.set_progress_handler(self._abort_if_expired, _PROGRESS_STEPS)
        self._conn = conn
        logger.debug("Opened read-only database %s", self.path)
        return conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run one parameterized SELECT; returns ``[]`` on any failure."""
        conn = self._connect()
        if conn is None:
            return []
        self._deadline = time.monotonic() + self.timeout_ms / 1000.0
        try:
            rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.OperationalError as exc:
            if "interrupted" in str(exc).lower():
                logger.warning("Query on %s exceeded %d ms; returning no rows", self.path.name, self.timeout_ms)
            else:
                logger.warning("Query on %s failed: %s", self.path.name, exc)
            return []
        except sqlite3.Error as exc:
            logger.warning("Query on %s failed: %s", self.path.name, exc)
            return []
        return [dict(row) for row in rows]

    def has_table(self, name: str) -> bool:
        rows = self.query("SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (name,))
        return bool(rows)

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.debug("Closing %s failed", self.path, exc_info=True)
            self._conn = None
