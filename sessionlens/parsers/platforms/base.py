"""Provider and reader interfaces shared by every session platform."""
from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from sessionlens.models import (
    CanonicalEvent,
    MessageUsage,
    ProjectFolderInfo,
    SearchHit,
    SubagentStats,
)


class SessionReader(ABC):
    """Incremental reader over one session source.

    ``read_new`` only returns events derived from data that no previous call
    returned. A missing source yields an empty list, never an exception.
    """

    @abstractmethod
    def read_new(self) -> list[CanonicalEvent]:
        ...

    def read_all(self) -> list[CanonicalEvent]:
        self.reset()
        return self.read_new()

    def flush(self) -> list[CanonicalEvent]:
        return []

    @abstractmethod
    def reset(self) -> None:
        ...

    @abstractmethod
    def get_position(self) -> int:
        ...

    @abstractmethod
    def exists(self) -> bool:
        ...

    def was_truncated(self) -> bool:
        return False


class SessionProvider(ABC):
    """Discovery, identification and reading for one CLI tool's session store."""

    id: str = ""
    display_name: str = ""

    # ── Discovery ──

    @abstractmethod
    def get_session_directory(self, workspace_path: str) -> str:
        ...

    @abstractmethod
    def discover_session_directory(self, workspace_path: str) -> str | None:
        ...

    @abstractmethod
    def find_active_session(self, workspace_path: str) -> str | None:
        ...

    @abstractmethod
    def find_all_sessions(self, workspace_path: str) -> list[str]:
        ...

    @abstractmethod
    def find_sessions_in_directory(self, directory: str) -> list[str]:
        ...

    @abstractmethod
    def get_all_project_folders(self, workspace_path: str | None = None) -> list[ProjectFolderInfo]:
        ...

    # ── Identification ──

    @abstractmethod
    def is_session_file(self, filename: str) -> bool:
        ...

    @abstractmethod
    def extract_session_id(self, session_path: str) -> str:
        ...

    @abstractmethod
    def encode_workspace_path(self, workspace_path: str) -> str:
        ...

    @abstractmethod
    def extract_session_label(self, session_path: str) -> str | None:
        ...

    # ── Reading ──

    @abstractmethod
    def create_reader(self, session_path: str) -> SessionReader:
        ...

    @abstractmethod
    def scan_subagents(self, session_dir: str, session_id: str) -> list[SubagentStats]:
        ...

    @abstractmethod
    def search_in_session(self, session_path: str, query: str, max_results: int) -> list[SearchHit]:
        ...

    @abstractmethod
    def get_base_directory(self) -> str:
        ...

    # ── Optional hooks ──

    def get_context_window_limit(self, model_id: str | None = None) -> int | None:
        return None

    def compute_context_size(self, usage: MessageUsage) -> int:
        """Tokens occupying the context window after one assistant turn.

        The default counts fresh input plus cache reads and writes; providers
        whose reported input already subsumes cached tokens override this.
        """
        return usage.input_tokens + usage.cache_creation_input_tokens + usage.cache_read_input_tokens

    def current_usage_snapshot(self, session_path: str) -> MessageUsage | None:
        """Latest context usage straight from the provider store, when it keeps one."""
        return None

    def get_last_activity(self) -> float:
        """Most recent modification time (epoch seconds) in this provider's store."""
        return 0.0

    def is_available(self) -> bool:
        return Path(self.get_base_directory()).is_dir()

    def dispose(self) -> None:
        """Release provider-held resources (database handles, caches)."""


def most_recent_mtime(directory: Path) -> float:
    """Newest modification time among the direct children of ``directory``."""
    latest = 0.0
    try:
        entries = list(directory.iterdir())
    except OSError:
        return latest
    for entry in entries:
        try:
            latest = max(latest, entry.stat().st_mtime)
        except OSError:
            continue
    return latest
