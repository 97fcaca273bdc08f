"""Incremental readers for OpenCode's two storage backends."""
from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

from sessionlens.models import CanonicalEvent
from sessionlens.observability import record_events, record_parser_failure
from sessionlens.parsers.platforms.base import SessionReader
from sessionlens.parsers.platforms.opencode.database import OpenCodeDatabase
from sessionlens.parsers.platforms.opencode.messages import (
    OpenCodePart,
    fold_message,
    parse_db_message,
    parse_db_part,
    parse_message_data,
    parse_part_data,
)

logger = logging.getLogger("sessionlens.opencode")

PROVIDER = "opencode"


def _load_json(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Skipping unreadable OpenCode record %s: %s", path, exc)
        record_parser_failure(PROVIDER)
        return None
    return data if isinstance(data, dict) else None


def _time_key(event: CanonicalEvent) -> str:
    return event.timestamp or ""


class OpenCodeDbReader(SessionReader):
    """Watermark poller over the ``message`` and ``part`` tables of one session.

    The first ``read_new`` after construction or ``reset`` only catches the
    watermarks up to the current tail. Later calls fold messages touched by
    newer rows. A batch referencing a message that cannot be fetched leaves
    both watermarks untouched so it is retried on the next poll.
    """

    def __init__(self, database: OpenCodeDatabase, session_id: str):
        self.database = database
        self.session_id = session_id
        self._message_watermark = 0.0
        self._part_watermark = 0.0
        self._caught_up = False
        self._polls = 0

    def read_new(self) -> list[CanonicalEvent]:
        started = time.monotonic()
        if not self._caught_up:
            self._message_watermark = self.database.get_latest_message_time_updated(self.session_id)
            self._part_watermark = self.database.get_latest_part_time_updated(self.session_id)
            self._caught_up = True
            logger.debug(
                "OpenCode session %s caught up at message=%s part=%s",
                self.session_id,
                self._message_watermark,
                self._part_watermark,
            )
            return []

        message_rows = self.database.get_messages(self.session_id, self._message_watermark)
        part_rows = self.database.get_parts(self.session_id, self._part_watermark)
        if not message_rows and not part_rows:
            return []

        targets: dict[str, dict[str, Any]] = {row["id"]: row for row in message_rows}
        wanted = set(targets)
        wanted.update(row["message_id"] for row in part_rows if row.get("message_id"))
        for row in message_rows:
            try:
                parent = json.loads(row["data"]).get("parentID")
            except (ValueError, TypeError, AttributeError):
                parent = None
            if isinstance(parent, str) and parent:
                wanted.add(parent)

        missing = wanted - set(targets)
        if missing:
            for row in self.database.get_messages_by_ids(sorted(missing)):
                targets[row["id"]] = row
            unresolved = wanted - set(targets)
            if unresolved:
                logger.debug(
                    "OpenCode session %s: %d referenced message(s) not visible yet; retrying next poll",
                    self.session_id,
                    len(unresolved),
                )
                return []

        events = self._fold_rows(list(targets.values()))

        self._message_watermark = max(
            [self._message_watermark, *(float(row.get("time_updated") or 0) for row in message_rows)]
        )
        self._part_watermark = max(
            [self._part_watermark, *(float(row.get("time_updated") or 0) for row in part_rows)]
        )
        self._polls += 1
        record_events(PROVIDER, [event.type for event in events], (time.monotonic() - started) * 1000)
        return events

    def read_all(self) -> list[CanonicalEvent]:
        """Emit the complete stored history and leave the watermarks at its tail."""
        self.reset()
        self._caught_up = True
        return self.read_new()

    def _fold_rows(self, rows: list[dict[str, Any]]) -> list[CanonicalEvent]:
        rows.sort(key=lambda row: row.get("time_created") or 0)
        parts_by_message = self.database.get_parts_for_messages([row["id"] for row in rows])

        user_ids = []
        for row in rows:
            try:
                if json.loads(row["data"]).get("role") == "user":
                    user_ids.append(row["id"])
            except (ValueError, TypeError, AttributeError):
                continue
        processed = self.database.get_processed_user_message_ids(self.session_id, user_ids)

        events: list[CanonicalEvent] = []
        for row in rows:
            try:
                message = parse_db_message(row)
                # User prompts surface once an assistant reply points back at them.
                if message.role == "user" and message.id not in processed:
                    continue
                parts = self._parse_parts(parts_by_message.get(row["id"], []))
                events.extend(fold_message(message, parts))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unparseable OpenCode message %s: %s", row.get("id"), exc)
                record_parser_failure(PROVIDER)
        return events

    def _parse_parts(self, part_rows: list[dict[str, Any]]) -> list[OpenCodePart]:
        parts = []
        for row in part_rows:
            try:
                parts.append(parse_db_part(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unparseable OpenCode part %s: %s", row.get("id"), exc)
                record_parser_failure(PROVIDER)
        return parts

    def reset(self) -> None:
        self._message_watermark = 0.0
        self._part_watermark = 0.0
        self._caught_up = False
        self._polls = 0

    def get_position(self) -> int:
        return self._polls

    def exists(self) -> bool:
        return self.database.is_available()


class OpenCodeFileReader(SessionReader):
    """Re-folds per-record JSON messages whose files or part set changed."""

    def __init__(self, storage_dir: str | Path, session_id: str):
        self.storage_dir = Path(storage_dir)
        self.session_id = session_id
        self._seen: dict[str, tuple[frozenset[str], float]] = {}

    @property
    def message_dir(self) -> Path:
        return self.storage_dir / "message" / self.session_id

    def _part_files(self, message_id: str) -> list[Path]:
        part_dir = self.storage_dir / "part" / message_id
        try:
            return sorted(path for path in part_dir.iterdir() if path.suffix == ".json")
        except OSError:
            return []

    def read_new(self) -> list[CanonicalEvent]:
        started = time.monotonic()
        try:
            message_files = sorted(path for path in self.message_dir.iterdir() if path.suffix == ".json")
        except OSError:
            return []

        events: list[CanonicalEvent] = []
        for message_file in message_files:
            message_id = message_file.stem
            try:
                mtime = message_file.stat().st_mtime
            except OSError:
                continue
            part_files = self._part_files(message_id)
            part_ids = frozenset(path.stem for path in part_files)
            if self._seen.get(message_id) == (part_ids, mtime):
                continue

            data = _load_json(message_file)
            if data is None:
                continue
            try:
                message = parse_message_data(data, message_id=data.get("id") or message_id)
                parts = []
                for part_file in part_files:
                    part_data = _load_json(part_file)
                    if part_data is None:
                        continue
                    try:
                        parts.append(parse_part_data(part_data, message_id=message.id))
                    except (KeyError, TypeError, ValueError) as exc:
                        logger.warning("Skipping unparseable OpenCode part file %s: %s", part_file.name, exc)
                        record_parser_failure(PROVIDER)
                events.extend(fold_message(message, parts))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unparseable OpenCode message file %s: %s", message_file.name, exc)
                record_parser_failure(PROVIDER)
                continue
            self._seen[message_id] = (part_ids, mtime)

        events.sort(key=_time_key)
        record_events(PROVIDER, [event.type for event in events], (time.monotonic() - started) * 1000)
        return events

    def reset(self) -> None:
        self._seen.clear()

    def get_position(self) -> int:
        return len(self._seen)

    def exists(self) -> bool:
        return self.message_dir.is_dir()
