"""SessionLens configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = (os.getenv(name) or "").strip()
    if not value:
        return default
    return Path(value).expanduser()


# Provider selection ("claude-code" | "opencode" | "codex"; empty means auto-detect)
PROVIDER_OVERRIDE = (os.getenv("SESSIONLENS_PROVIDER") or "").strip().lower()
DEFAULT_PROVIDER = "claude-code"

# Workspace the HTTP app reports on
WORKSPACE_PATH = (os.getenv("SESSIONLENS_WORKSPACE") or "").strip()

# Discovery / reading tuning
ACTIVE_WINDOW_SECONDS = _env_int("SESSIONLENS_ACTIVE_WINDOW_SECONDS", 5 * 60)
DB_QUERY_TIMEOUT_MS = _env_int("SESSIONLENS_DB_QUERY_TIMEOUT_MS", 5000)
DB_ROW_LIMIT = _env_int("SESSIONLENS_DB_ROW_LIMIT", 5000)
GIT_TIMEOUT_SECONDS = _env_int("SESSIONLENS_GIT_TIMEOUT_SECONDS", 5)
POLL_INTERVAL_MS = _env_int("SESSIONLENS_POLL_INTERVAL_MS", 1000)
READ_MAX_BYTES = _env_int("SESSIONLENS_READ_MAX_BYTES", 8 * 1024 * 1024)
LABEL_MAX_LENGTH = 60
SEARCH_SNIPPET_RADIUS = 40

# Observability
OTEL_ENABLED = _env_bool("SESSIONLENS_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("SESSIONLENS_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("SESSIONLENS_OTEL_SERVICE_NAME", "sessionlens")
PROM_PORT = _env_int("SESSIONLENS_PROM_PORT", 0)

# Server settings
HOST = os.getenv("SESSIONLENS_HOST", "0.0.0.0")
PORT = int(os.getenv("SESSIONLENS_PORT", "8000"))
WATCH_ENABLED = _env_bool("SESSIONLENS_WATCH_ENABLED", True)

# CORS
FRONTEND_ORIGIN = os.getenv("SESSIONLENS_FRONTEND_ORIGIN", "http://localhost:3000")


# Provider data roots are resolved on every call so that tests and
# long-running processes see environment changes.

def claude_home() -> Path:
    return _env_path("CLAUDE_CONFIG_DIR", Path.home() / ".claude")


def claude_projects_dir() -> Path:
    return claude_home() / "projects"


def codex_home() -> Path:
    return _env_path("CODEX_HOME", Path.home() / ".codex")


def opencode_data_dir() -> Path:
    xdg = (os.getenv("XDG_DATA_HOME") or "").strip()
    if xdg:
        return Path(xdg) / "opencode"
    return Path.home() / ".local" / "share" / "opencode"
