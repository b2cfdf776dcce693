"""Tracers for stagegate spans.

Every span is emitted by the tracer of its instrumentation scope: the first
two dotted components of the span name, so ``stagegate.registry.tag_alias``
comes from the ``stagegate.registry`` tracer and ``stagegate.stage.delivery``
from ``stagegate.stage``. Names outside the ``stagegate`` namespace fall back
to the root scope. Tracers report the installed stagegate version.

A tracer injected with :func:`set_tracer` replaces every scope; tests use it
to capture spans without touching the global tracer provider.
"""

from __future__ import annotations

import threading
from importlib.metadata import PackageNotFoundError, version
from typing import TYPE_CHECKING

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

ROOT_SCOPE = "stagegate"

_tracers: dict[str, Tracer] = {}
_injected: Tracer | None = None
_tracing_unavailable: bool = False
_lock = threading.Lock()


def scope_for(span_name: str) -> str:
    """Return the instrumentation scope emitting ``span_name``.

    Example:
        >>> scope_for("stagegate.registry.tag_alias")
        'stagegate.registry'
        >>> scope_for("push")
        'stagegate'
    """
    parts = span_name.split(".")
    if parts[0] != ROOT_SCOPE or len(parts) < 2:
        return ROOT_SCOPE
    return ".".join(parts[:2])


def _package_version() -> str | None:
    try:
        return version("stagegate")
    except PackageNotFoundError:
        return None


def get_tracer(scope: str = ROOT_SCOPE) -> Tracer:
    """Return the cached tracer for a ``stagegate.*`` scope.

    Once the OpenTelemetry API fails to hand out a tracer (a corrupted
    global provider), every call returns a NoOpTracer so instrumentation
    never fails a stage.
    """
    global _tracing_unavailable

    if _injected is not None:
        return _injected
    cached = _tracers.get(scope)
    if cached is not None:
        return cached
    if _tracing_unavailable:
        return trace.NoOpTracer()

    with _lock:
        if scope in _tracers:
            return _tracers[scope]
        try:
            tracer = trace.get_tracer(scope, _package_version())
        except Exception:
            _tracing_unavailable = True
            return trace.NoOpTracer()
        _tracers[scope] = tracer
        return tracer


def set_tracer(tracer: Tracer | None) -> None:
    """Route every scope to ``tracer`` (for testing), or None to stop."""
    global _injected
    with _lock:
        _injected = tracer


def reset_tracer() -> None:
    """Drop cached and injected tracers and retry initialization."""
    global _injected, _tracing_unavailable
    with _lock:
        _tracers.clear()
        _injected = None
        _tracing_unavailable = False


__all__ = ["ROOT_SCOPE", "get_tracer", "reset_tracer", "scope_for", "set_tracer"]
