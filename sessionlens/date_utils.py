"""Shared timestamp normalization helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        return None


def utc_now_iso() -> str:
    return _format_datetime_utc(datetime.now(timezone.utc))


def epoch_ms_to_iso(value: float) -> str:
    return _format_datetime_utc(datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc))


def to_iso_timestamp(value: Any) -> str:
    """Convert an ISO string or a millisecond epoch into an ISO-8601 string.

    Strings are passed through unchanged; missing values fall back to now.
    """
    if value is None or value == "" or value == 0:
        return utc_now_iso()
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return _format_datetime_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return epoch_ms_to_iso(value)
        except (OverflowError, OSError, ValueError):
            return utc_now_iso()
    return utc_now_iso()


def iso_to_epoch(value: str) -> float:
    parsed = _parse_datetime_token(value or "")
    if not parsed:
        return 0.0
    dt = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).timestamp()


def mtime_to_iso(mtime: float) -> str:
    return _format_datetime_utc(datetime.fromtimestamp(mtime, tz=timezone.utc))
