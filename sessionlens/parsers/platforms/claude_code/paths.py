"""Locate Claude Code session transcripts for a workspace."""
from __future__ import annotations

import logging
import re
import tempfile
import time
from pathlib import Path

from sessionlens import config
from sessionlens.date_utils import mtime_to_iso
from sessionlens.models import ProjectFolderInfo

logger = logging.getLogger("sessionlens.claude")

_ENCODE_PATTERN = re.compile(r"[:/_]")
_WINDOWS_DRIVE_PATTERN = re.compile(r"^([A-Za-z])--")


def encode_workspace_path(workspace_path: str) -> str:
    """Encode a workspace path the way Claude Code names its project folders.

    ``/home/user/foo_bar`` becomes ``-home-user-foo-bar`` and
    ``C:\\Users\\foo`` becomes ``C--Users-foo``.
    """
    normalized = workspace_path.replace("\\", "/")
    return _ENCODE_PATTERN.sub("-", normalized)


def decode_encoded_path(encoded: str) -> str:
    """Best-effort inverse of ``encode_workspace_path``.

    Lossy: hyphens and underscores in the original path come back as separators.
    """
    if not encoded:
        return encoded
    drive = _WINDOWS_DRIVE_PATTERN.match(encoded)
    if drive:
        return f"{drive.group(1)}:/" + encoded[drive.end():].replace("-", "/")
    return encoded.replace("-", "/")


def get_session_directory(workspace_path: str) -> Path:
    return config.claude_projects_dir() / encode_workspace_path(workspace_path)


def _list_dirs(parent: Path) -> list[str]:
    try:
        return sorted(entry.name for entry in parent.iterdir() if entry.is_dir())
    except OSError:
        return []


def _basename_key(workspace_path: str) -> str:
    return Path(workspace_path.replace("\\", "/")).name.replace("_", "-").lower()


def _matches_basename(dir_name: str, basename: str) -> bool:
    lowered = dir_name.lower()
    return bool(basename) and (lowered == basename or lowered.endswith("-" + basename))


def discover_session_directory(workspace_path: str) -> Path | None:
    """Find the project folder holding this workspace's transcripts.

    Tries, in order: the computed encoding, a case-insensitive match of the
    encoding, a folder ending in the workspace basename, and encodings found
    among Claude's scratchpad folders under the temp directory.
    """
    projects_dir = config.claude_projects_dir()

    computed = get_session_directory(workspace_path)
    if computed.is_dir():
        return computed

    existing = _list_dirs(projects_dir)
    normalized = encode_workspace_path(workspace_path).lower()
    for name in existing:
        if name.lower() == normalized:
            return projects_dir / name

    basename = _basename_key(workspace_path)
    for name in existing:
        if _matches_basename(name, basename):
            return projects_dir / name

    scratch_root = Path(tempfile.gettempdir()) / "claude"
    for name in _list_dirs(scratch_root):
        if _matches_basename(name, basename):
            candidate = projects_dir / name
            if candidate.is_dir():
                return candidate

    logger.debug("No Claude project folder found for %s", workspace_path)
    return None


def _session_files(directory: Path) -> list[tuple[Path, float, int]]:
    files: list[tuple[Path, float, int]] = []
    try:
        entries = list(directory.iterdir())
    except OSError:
        return files
    for entry in entries:
        if entry.suffix != ".jsonl":
            continue
        try:
            stat = entry.stat()
        except OSError:
            continue
        if not entry.is_file():
            continue
        files.append((entry, stat.st_mtime, stat.st_size))
    return files


def find_sessions_in_directory(directory: Path) -> list[Path]:
    """Non-empty transcripts in ``directory``, newest first."""
    files = [item for item in _session_files(directory) if item[2] > 0]
    files.sort(key=lambda item: item[1], reverse=True)
    return [item[0] for item in files]


def find_active_session(workspace_path: str) -> Path | None:
    session_dir = discover_session_directory(workspace_path)
    if session_dir is None:
        return None
    files = [item for item in _session_files(session_dir) if item[2] > 0]
    if not files:
        return None
    now = time.time()
    # Sessions touched inside the active window win, then recency.
    files.sort(key=lambda item: (now - item[1] < config.ACTIVE_WINDOW_SECONDS, item[1]), reverse=True)
    return files[0][0]


def find_all_sessions(workspace_path: str) -> list[Path]:
    session_dir = discover_session_directory(workspace_path)
    if session_dir is None:
        return []
    files = _session_files(session_dir)
    files.sort(key=lambda item: item[1], reverse=True)
    return [item[0] for item in files]


def get_all_project_folders(workspace_path: str | None = None) -> list[ProjectFolderInfo]:
    """Every project folder with at least one transcript.

    The folder matching ``workspace_path`` sorts first, the rest by recency.
    """
    projects_dir = config.claude_projects_dir()
    current = discover_session_directory(workspace_path) if workspace_path else None
    folders: list[tuple[ProjectFolderInfo, float]] = []
    for name in _list_dirs(projects_dir):
        directory = projects_dir / name
        sessions = [item for item in _session_files(directory) if item[2] > 0]
        if not sessions:
            continue
        newest = max(item[1] for item in sessions)
        folders.append(
            (
                ProjectFolderInfo(
                    dir=str(directory),
                    name=decode_encoded_path(name),
                    encodedName=name,
                    sessionCount=len(sessions),
                    lastModified=mtime_to_iso(newest),
                ),
                newest,
            )
        )
    folders.sort(key=lambda item: (current is not None and item[0].dir == str(current), item[1]), reverse=True)
    return [info for info, _ in folders]
