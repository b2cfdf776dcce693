"""OpenTelemetry tracing utilities.

Provides the ``@traced`` decorator and the ``create_span()`` context manager
used to instrument dispatch, stage execution, registry calls, gates and
promotions. Error messages are sanitized before they are recorded on a span.

Spans are emitted by the tracer of their scope, see
:func:`stagegate.telemetry.tracer_factory.scope_for`.

Span names used by the controller:
    stagegate.dispatch.<source>       Trigger handling
    stagegate.stage.<stage>           One stage invocation
    stagegate.registry.<operation>    Registry calls
    stagegate.quality_gate            Metric threshold evaluation
    stagegate.validation              Start, readiness wait and suite run
    stagegate.promote                 Two-resource alias move
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

from opentelemetry.trace import Status, StatusCode

from stagegate.telemetry.sanitization import sanitize_error_message
from stagegate.telemetry.tracer_factory import get_tracer, reset_tracer, scope_for, set_tracer

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def current_trace_id(span: Span) -> str:
    """Return the span's trace id as 32 hex chars, or "" for invalid spans."""
    ctx = span.get_span_context()
    return format(ctx.trace_id, "032x") if ctx.is_valid else ""


def _record_error(span: Span, error: Exception) -> None:
    sanitized = sanitize_error_message(str(error))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(error).__name__)
    span.set_attribute("exception.message", sanitized)


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator to trace a function call with an OpenTelemetry span.

    Can be used with or without arguments:
        @traced
        def my_function(): ...

        @traced(name="stagegate.registry.push", attributes={"kind": "model_version"})
        def push(): ...

    Args:
        func: The function to decorate (when used without parentheses).
        name: Span name. Defaults to the function name.
        attributes: Static span attributes set on every invocation.
        attributes_fn: Callable receiving the decorated function's arguments
            and returning dynamic attributes. Failures are logged and ignored.

    Returns:
        Decorated function that creates a span on each invocation.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            tracer = get_tracer(scope_for(span_name))
            with tracer.start_as_current_span(
                span_name,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                if attributes:
                    for key, value in attributes.items():
                        span.set_attribute(key, value)
                if attributes_fn is not None:
                    try:
                        for key, value in attributes_fn(*args, **kwargs).items():
                            span.set_attribute(key, value)
                    except Exception:
                        logger.warning(
                            "attributes_fn failed for span %s",
                            span_name,
                            exc_info=True,
                        )
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships automatically. Attributes
    whose value is None are skipped.

    Args:
        name: Span name.
        attributes: Optional attributes to set on the span.

    Yields:
        The created span for additional attribute setting.

    Example:
        >>> with create_span("stagegate.promote", attributes={"revision": "abc123"}):
        ...     pass
    """
    tracer = get_tracer(scope_for(name))
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise


__all__ = [
    "create_span",
    "current_trace_id",
    "get_tracer",
    "reset_tracer",
    "set_tracer",
    "traced",
]
