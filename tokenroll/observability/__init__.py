"""Observability helpers."""

from tokenroll.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_cycle,
    record_file_scan,
    record_malformed_lines,
    record_tokens,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_cycle",
    "record_file_scan",
    "record_malformed_lines",
    "record_tokens",
]
