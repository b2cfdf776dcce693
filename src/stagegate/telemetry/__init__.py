"""OpenTelemetry and structlog integration for stagegate.

Example:
    >>> from stagegate.telemetry import configure_logging, create_span
    >>> configure_logging(log_level="INFO", json_output=True)
    >>> with create_span("stagegate.stage.delivery", attributes={"revision": "abc123"}):
    ...     pass
"""

from __future__ import annotations

from stagegate.telemetry.logging import add_trace_context, configure_logging
from stagegate.telemetry.sanitization import sanitize_error_message
from stagegate.telemetry.tracing import (
    create_span,
    current_trace_id,
    get_tracer,
    reset_tracer,
    set_tracer,
    traced,
)

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "current_trace_id",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
