"""Tolerant JSON-lines parsing and the byte-offset tailing reader."""
from __future__ import annotations

import json
import logging
import time
from abc import abstractmethod
from pathlib import Path
from typing import Any

from sessionlens import config
from sessionlens.models import CanonicalEvent
from sessionlens.observability import record_events, record_parser_failure, record_truncation
from sessionlens.parsers.platforms.base import SessionReader

logger = logging.getLogger("sessionlens.readers")

_FIRST_LINES_CHUNK = 16 * 1024
_FIRST_LINES_MAX_BYTES = 256 * 1024


def parse_json_line(line: str, parser: str = "jsonl") -> dict[str, Any] | None:
    """Parse one JSONL record, returning ``None`` for blank or malformed lines."""
    stripped = line.strip()
    if not stripped:
        return None
    if not stripped.startswith("{"):
        logger.debug("Skipping non-object line in %s stream: %.80s", parser, stripped)
        record_parser_failure(parser)
        return None
    try:
        record = json.loads(stripped)
    except json.JSONDecodeError as exc:
        logger.debug("Skipping malformed line in %s stream: %s", parser, exc)
        record_parser_failure(parser)
        return None
    if not isinstance(record, dict):
        record_parser_failure(parser)
        return None
    return record


def iter_json_records(path: Path, parser: str = "jsonl", max_lines: int | None = None):
    """Yield parsed records from a whole JSONL file, skipping malformed lines."""
    try:
        handle = path.open("r", encoding="utf-8", errors="replace")
    except OSError:
        return
    with handle:
        for index, line in enumerate(handle):
            if max_lines is not None and index >= max_lines:
                break
            record = parse_json_line(line, parser)
            if record is not None:
                yield record


def read_first_lines(path: Path, max_lines: int) -> list[str]:
    """Read up to ``max_lines`` complete lines from the head of a file.

    Reads in 16KB chunks and stops after 256KB, so a single huge first record
    cannot stall discovery.
    """
    lines: list[str] = []
    buffer = b""
    consumed = 0
    at_eof = False
    try:
        with path.open("rb") as handle:
            while len(lines) < max_lines and consumed < _FIRST_LINES_MAX_BYTES:
                chunk = handle.read(_FIRST_LINES_CHUNK)
                if not chunk:
                    at_eof = True
                    break
                consumed += len(chunk)
                parts = (buffer + chunk).split(b"\n")
                buffer = parts.pop()
                for part in parts[: max_lines - len(lines)]:
                    lines.append(part.decode("utf-8", errors="replace"))
    except OSError:
        return []
    # An unterminated final line is only complete once the file is exhausted.
    if at_eof and buffer.strip() and len(lines) < max_lines:
        lines.append(buffer.decode("utf-8", errors="replace"))
    return lines


class JsonlTailReader(SessionReader):
    """Tail an append-only JSONL file from a byte offset.

    Subclasses convert one parsed record into canonical events and reset any
    normalizer state in ``_reset_state``.
    """

    provider = "jsonl"

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._position = 0
        self._partial = b""
        self._truncated = False

    @abstractmethod
    def _convert(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        ...

    def _reset_state(self) -> None:
        """Clear normalizer state; called on reset and truncation."""

    def _parse_lines(self, lines: list[bytes]) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        for raw in lines:
            record = parse_json_line(raw.decode("utf-8", errors="replace"), self.provider)
            if record is None:
                continue
            try:
                events.extend(self._convert(record))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning("Skipping unconvertible %s record in %s: %s", self.provider, self.path.name, exc)
                record_parser_failure(self.provider)
        return events

    def read_new(self) -> list[CanonicalEvent]:
        started = time.monotonic()
        self._truncated = False
        try:
            size = self.path.stat().st_size
        except OSError:
            return []

        if size < self._position:
            logger.info(
                "Session file %s shrank (%d < %d); resetting reader",
                self.path.name,
                size,
                self._position,
            )
            self._truncated = True
            record_truncation(self.provider)
            self._position = 0
            self._partial = b""
            self._reset_state()

        if size == self._position:
            return []

        to_read = min(size - self._position, max(1, config.READ_MAX_BYTES))
        try:
            with self.path.open("rb") as handle:
                handle.seek(self._position)
                data = handle.read(to_read)
        except OSError as exc:
            logger.warning("Failed reading %s: %s", self.path, exc)
            return []

        self._position += len(data)
        lines = (self._partial + data).split(b"\n")
        self._partial = lines.pop()
        events = self._parse_lines(lines)
        record_events(self.provider, [event.type for event in events], (time.monotonic() - started) * 1000)
        return events

    def flush(self) -> list[CanonicalEvent]:
        if not self._partial.strip():
            self._partial = b""
            return []
        pending = self._partial
        self._partial = b""
        return self._parse_lines([pending])

    def reset(self) -> None:
        self._position = 0
        self._partial = b""
        self._truncated = False
        self._reset_state()

    def get_position(self) -> int:
        return self._position

    def exists(self) -> bool:
        return self.path.is_file()

    def was_truncated(self) -> bool:
        return self._truncated
