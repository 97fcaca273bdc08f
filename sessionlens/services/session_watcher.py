"""Live session watching using watchfiles.

Watches the active provider's data directories and polls every registered
reader when relevant files change, fanning new canonical events out to the
registered callbacks.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from watchfiles import Change, awatch

from sessionlens import config
from sessionlens.models import CanonicalEvent
from sessionlens.parsers.platforms.base import SessionProvider, SessionReader

logger = logging.getLogger("sessionlens.watcher")

EventCallback = Callable[[str, list[CanonicalEvent]], None]

_RELEVANT_SUFFIXES = (".jsonl", ".json", ".db", ".sqlite", ".db-wal", ".sqlite-wal")


@dataclass
class WatchedSession:
    path: str
    reader: SessionReader
    callback: EventCallback


class SessionWatcher:
    """Background watcher that polls readers on change."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._sessions: dict[str, WatchedSession] = {}

    # ── Registration ──

    def register(self, session_path: str, reader: SessionReader, callback: EventCallback) -> None:
        self._sessions[session_path] = WatchedSession(session_path, reader, callback)
        logger.info("Watching session %s", session_path)

    def unregister(self, session_path: str) -> None:
        watched = self._sessions.pop(session_path, None)
        if watched is not None:
            self._drain(watched, watched.reader.flush())

    @property
    def sessions(self) -> list[str]:
        return list(self._sessions)

    # ── Polling ──

    def _drain(self, watched: WatchedSession, events: list[CanonicalEvent]) -> None:
        if not events:
            return
        try:
            watched.callback(watched.path, events)
        except Exception as e:
            logger.error(f"Session callback failed for {watched.path}: {e}")

    def poll_once(self) -> int:
        """Run ``read_new`` on every registered reader; returns the number of events delivered."""
        delivered = 0
        for watched in list(self._sessions.values()):
            events = watched.reader.read_new()
            if watched.reader.was_truncated():
                logger.info("Session %s was truncated; reader restarted from the beginning", watched.path)
            self._drain(watched, events)
            delivered += len(events)
        return delivered

    # ── Lifecycle ──

    async def start(self, provider: SessionProvider) -> None:
        """Start watching the provider's data directories in a background task."""
        if self._running:
            logger.warning("Session watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(watch_roots(provider)))
        logger.info(f"Session watcher started for provider {provider.id}")

    async def stop(self) -> None:
        """Stop the watcher and flush buffered partial lines."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for watched in list(self._sessions.values()):
            self._drain(watched, watched.reader.flush())
        logger.info("Session watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, watch_paths: list[Path]) -> None:
        if not watch_paths:
            logger.warning("No watch paths exist, watcher has nothing to monitor")
            self._running = False
            return

        logger.info(f"Watching {len(watch_paths)} directories: {[str(p) for p in watch_paths]}")

        try:
            async for changes in awatch(
                *watch_paths,
                stop_event=self._stop_event,
                debounce=max(50, config.POLL_INTERVAL_MS),
            ):
                if not self._running:
                    break
                relevant = classify_changes(changes)
                if relevant:
                    logger.debug("Detected %d relevant changes, polling %d readers", len(relevant), len(self._sessions))
                    self.poll_once()
        except asyncio.CancelledError:
            logger.info("Session watcher task cancelled")
        except Exception as e:
            logger.error(f"Session watcher error: {e}")
        finally:
            self._running = False


def watch_roots(provider: SessionProvider) -> list[Path]:
    """Existing directories worth watching for ``provider``."""
    candidates = [Path(provider.get_base_directory())]
    db_path = getattr(provider, "db_path", None)
    if isinstance(db_path, Path):
        candidates.append(db_path.parent)
    roots: list[Path] = []
    for path in candidates:
        if path.is_dir() and path not in roots:
            roots.append(path)
    return roots


def classify_changes(changes: set[tuple[Change, str]]) -> list[tuple[str, Path]]:
    """Keep session-store changes as ``(change_type, path)`` pairs."""
    result = []
    for change_type, path_str in changes:
        path = Path(path_str)
        if not path.name.endswith(_RELEVANT_SUFFIXES):
            continue
        if change_type == Change.deleted:
            result.append(("deleted", path))
        elif change_type in (Change.modified, Change.added):
            result.append(("modified", path))
    return result


# Singleton instance
session_watcher = SessionWatcher()
