"""Observability helpers."""

from sessionlens.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_events,
    record_parser_failure,
    record_truncation,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_events",
    "record_parser_failure",
    "record_truncation",
]
