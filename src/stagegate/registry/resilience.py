"""Retry policy for registry operations.

Transient transport failures are retried with exponential backoff and
jitter. Everything else (not found, duplicate version, authentication)
propagates on the first attempt.

Example:
    >>> from stagegate.registry.resilience import RetryPolicy
    >>> from stagegate.schemas.config import RetryConfig
    >>> policy = RetryPolicy(RetryConfig(max_attempts=3))
    >>>
    >>> @policy.wrap
    ... def fetch_manifest():
    ...     return oras_client.get_manifest(container=ref)
"""

from __future__ import annotations

import functools
import random
import time
from collections.abc import Callable
from typing import ParamSpec, TypeVar

import structlog

from stagegate.errors import RegistryUnavailableError
from stagegate.schemas.config import RetryConfig

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Retry timeline with the default config:
    - Attempt 1: immediate
    - Attempt 2: ~0.5s delay
    - Attempt 3: ~1s delay

    Attributes:
        config: RetryConfig with attempts, delays and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on. Defaults to
                (RegistryUnavailableError, ConnectionError, TimeoutError).
            sleep: Sleep function (injectable for tests).
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or (
            RegistryUnavailableError,
            ConnectionError,
            TimeoutError,
        )
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Return the delay in seconds before retrying after ``attempt`` (0-indexed).

        delay = initial * multiplier**attempt, capped at max_delay_ms, with
        +/-25% jitter when enabled.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)

        return max(base_delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Return True if ``exception`` is a transient failure."""
        return isinstance(exception, self._retryable_exceptions)

    def wrap(self, func: Callable[P, T]) -> Callable[P, T]:
        """Wrap ``func`` so transient failures are retried.

        Args:
            func: Function to wrap.

        Returns:
            Wrapped function. The last transient error is re-raised once
            attempts are exhausted.
        """

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(self._config.max_attempts):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not self.should_retry(e):
                        raise

                    remaining = self._config.max_attempts - attempt - 1
                    if remaining == 0:
                        logger.warning(
                            "retry_exhausted",
                            operation=getattr(func, "__name__", "call"),
                            attempts=self._config.max_attempts,
                            error=str(e),
                        )
                        raise

                    delay = self.calculate_delay(attempt)
                    logger.debug(
                        "retry_attempt",
                        operation=getattr(func, "__name__", "call"),
                        attempt=attempt + 1,
                        max_attempts=self._config.max_attempts,
                        delay_seconds=delay,
                        error=str(e),
                    )
                    self._sleep(delay)

            raise RuntimeError("Retry exhausted without exception")  # pragma: no cover

        return wrapper

    def call(self, func: Callable[[], T]) -> T:
        """Invoke a zero-argument callable under this policy."""
        return self.wrap(func)()


__all__ = ["RetryPolicy"]
