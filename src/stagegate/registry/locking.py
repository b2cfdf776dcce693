"""Serialization of alias reassignment per (resource kind, alias).

Two promotions racing to move the same alias must not interleave. Within a
process a threading lock serializes them; across processes on the same host
an ``fcntl`` file lock does. The last committed write wins.
"""

from __future__ import annotations

import errno
import fcntl
import hashlib
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from stagegate.errors import RegistryUnavailableError

logger = structlog.get_logger(__name__)

# Seconds to wait for an alias lock (configurable via STAGEGATE_ALIAS_LOCK_TIMEOUT)
DEFAULT_LOCK_TIMEOUT = 30.0

LOCK_RETRY_INTERVAL = 0.1

_thread_locks: dict[str, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def _get_lock_dir() -> Path:
    lock_dir = Path(
        os.environ.get("STAGEGATE_LOCK_DIR", Path(tempfile.gettempdir()) / "stagegate" / "locks")
    )
    lock_dir.mkdir(parents=True, exist_ok=True)
    return lock_dir


def _lock_key(scope: str, kind: str, alias: str) -> str:
    return f"{scope}|{kind}|{alias}"


def _thread_lock(key: str) -> threading.Lock:
    with _thread_locks_guard:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _thread_locks[key] = lock
        return lock


@contextmanager
def alias_lock(
    scope: str,
    kind: str,
    alias: str,
    timeout_seconds: float | None = None,
) -> Iterator[None]:
    """Hold the exclusive lock for one alias of one resource kind.

    Args:
        scope: Registry location, so distinct registries never contend.
        kind: Resource kind value.
        alias: Alias being reassigned.
        timeout_seconds: How long to wait for the lock.

    Yields:
        None while the lock is held.

    Raises:
        RegistryUnavailableError: If the lock cannot be acquired in time.
    """
    if timeout_seconds is None:
        timeout_seconds = float(
            os.environ.get("STAGEGATE_ALIAS_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT)
        )

    key = _lock_key(scope, kind, alias)
    thread_lock = _thread_lock(key)
    if not thread_lock.acquire(timeout=timeout_seconds):
        raise RegistryUnavailableError(
            scope, f"timed out waiting for alias lock {kind}/{alias}"
        )

    try:
        digest = hashlib.sha256(key.encode()).hexdigest()[:16]
        lock_path = _get_lock_dir() / f"alias-{digest}.lock"
        lock_path.touch(exist_ok=True)

        start_time = time.monotonic()
        lock_fd = os.open(str(lock_path), os.O_RDWR)
        lock_acquired = False
        try:
            while True:
                try:
                    fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EWOULDBLOCK):
                        raise

                    if time.monotonic() - start_time >= timeout_seconds:
                        raise RegistryUnavailableError(
                            scope, f"timed out waiting for alias lock {kind}/{alias}"
                        ) from e

                    time.sleep(LOCK_RETRY_INTERVAL)

            logger.debug("alias_lock_acquired", kind=kind, alias=alias)
            yield

        finally:
            if lock_acquired:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
            os.close(lock_fd)
    finally:
        thread_lock.release()


__all__ = ["alias_lock"]
