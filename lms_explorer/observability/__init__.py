"""Observability helpers.

The host process calls ``initialize()`` once at startup and ``shutdown()``
on exit; the indexer calls the span and ``record_*`` helpers unconditionally.
"""

from lms_explorer.observability.otel import (
    initialize,
    is_enabled,
    shutdown,
    start_span,
    record_ingestion,
    record_parser_failure,
    record_sessions_indexed,
)

__all__ = [
    "initialize",
    "is_enabled",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_parser_failure",
    "record_sessions_indexed",
]
