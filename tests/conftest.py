"""Shared pytest configuration for stagegate tests.

NOTE: Do NOT add __init__.py to test directories - pytest runs in importlib
mode, where __init__.py files cause namespace collisions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import structlog

from stagegate.telemetry.tracing import reset_tracer

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "requirement(id): Mark test with requirement ID for traceability",
    )


@pytest.fixture(autouse=True)
def isolated_lock_dir(
    tmp_path_factory: pytest.TempPathFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> Path:
    """Point alias lock files at a per-test directory."""
    lock_dir = tmp_path_factory.mktemp("locks")
    monkeypatch.setenv("STAGEGATE_LOCK_DIR", str(lock_dir))
    return lock_dir


@pytest.fixture(autouse=True)
def reset_telemetry() -> Generator[None, None, None]:
    """Reset cached tracers and structlog configuration around each test.

    CLI tests configure structlog to write to CliRunner's captured stderr,
    which is closed once the invocation returns.
    """
    reset_tracer()
    yield
    reset_tracer()
    structlog.reset_defaults()
