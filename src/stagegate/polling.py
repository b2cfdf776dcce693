"""Bounded polling for readiness waits.

Functions:
    wait_for_condition: Poll until a condition is true or a timeout elapses
    wait_for_http_ready: Poll an HTTP endpoint until it answers successfully

Example:
    from stagegate.polling import wait_for_http_ready

    wait_for_http_ready("http://localhost:8080/health", timeout=120.0, interval=2.0)
"""

from __future__ import annotations

import time
from collections.abc import Callable

import httpx
import structlog

logger = structlog.get_logger(__name__)


class PollingTimeoutError(TimeoutError):
    """Raised when a polling operation times out.

    Attributes:
        description: What was being waited for.
        timeout: How long we waited.
        last_error: Last exception raised by the condition, if any.
    """

    def __init__(
        self,
        description: str,
        timeout: float,
        last_error: Exception | None = None,
    ) -> None:
        self.description = description
        self.timeout = timeout
        self.last_error = last_error
        message = f"Timeout waiting for {description} after {timeout:.1f}s"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


def wait_for_condition(
    condition: Callable[[], bool],
    timeout: float = 30.0,
    interval: float = 0.5,
    description: str = "condition",
    *,
    raise_on_timeout: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll until ``condition`` returns True or ``timeout`` elapses.

    Exceptions raised by the condition count as "not yet" and are remembered
    for the timeout message.

    Args:
        condition: Callable returning True when the wait is over.
        timeout: Maximum wait time in seconds.
        interval: Poll interval in seconds.
        description: Description for error messages.
        raise_on_timeout: Raise PollingTimeoutError on timeout if True,
            return False otherwise.
        sleep: Sleep function (injectable for tests).

    Returns:
        True if the condition was met, False on timeout when not raising.

    Raises:
        PollingTimeoutError: On timeout when ``raise_on_timeout`` is True.
    """
    start_time = time.monotonic()
    last_error: Exception | None = None

    while True:
        try:
            if condition():
                return True
        except Exception as e:  # noqa: BLE001
            last_error = e

        elapsed = time.monotonic() - start_time
        if elapsed >= timeout:
            if raise_on_timeout:
                raise PollingTimeoutError(description, timeout, last_error)
            return False

        sleep_time = min(interval, timeout - elapsed)
        if sleep_time > 0:
            sleep(sleep_time)


def wait_for_http_ready(
    url: str,
    timeout: float = 120.0,
    interval: float = 2.0,
    *,
    client: httpx.Client | None = None,
) -> None:
    """Wait until ``url`` answers with a non-error HTTP status.

    Args:
        url: Readiness URL.
        timeout: Maximum wait time in seconds.
        interval: Poll interval in seconds.
        client: HTTP client to use (a short-lived one is created if None).

    Raises:
        PollingTimeoutError: If the endpoint never became ready.
    """
    owns_client = client is None
    http = client or httpx.Client(timeout=min(interval * 2, 10.0))
    attempts = 0

    def _ready() -> bool:
        nonlocal attempts
        attempts += 1
        response = http.get(url)
        return response.status_code < 400

    try:
        wait_for_condition(_ready, timeout=timeout, interval=interval, description=url)
        logger.debug("readiness_reached", url=url, attempts=attempts)
    finally:
        if owns_client:
            http.close()


__all__ = ["PollingTimeoutError", "wait_for_condition", "wait_for_http_ready"]
