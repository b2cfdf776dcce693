"""Persistence for pipeline runs and their stage attempts.

The store is the audit trail of the state machine: every stage attempt for
a revision is appended to that revision's PipelineRun and updated in place
when it finishes. ``claim`` is the one operation that must be atomic: it
checks the run and appends a Running attempt under a single lock, which is
what guarantees at most one concurrent execution per (stage, revision).

Backends:
    InMemoryRunStore: Process-local, guarded by a threading lock
    FileRunStore: One JSON document per revision, guarded by fcntl locks
"""

from __future__ import annotations

import fcntl
import json
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from uuid import UUID

import structlog
from pydantic import ValidationError

from stagegate.errors import ConcurrentStageExecutionError, ConfigurationError, PipelineError
from stagegate.schemas.pipeline import (
    PipelineRun,
    ResourceKind,
    StageAttempt,
    StageName,
    StageStatus,
    TriggerSource,
    utc_now,
)

logger = structlog.get_logger(__name__)

# Called with the current run before a claim is recorded; raises to refuse it.
ClaimCheck = Callable[[PipelineRun], None]


class RunStore(ABC):
    """Storage of PipelineRun documents keyed by revision."""

    @abstractmethod
    @contextmanager
    def _locked(self, revision: str) -> Iterator[None]:
        """Hold the exclusive lock for one revision's run."""

    @abstractmethod
    def _read(self, revision: str) -> PipelineRun | None:
        """Return the stored run for ``revision`` (caller holds the lock)."""

    @abstractmethod
    def _write(self, run: PipelineRun) -> None:
        """Persist ``run`` (caller holds the lock)."""

    @abstractmethod
    def list_runs(self) -> list[PipelineRun]:
        """Return every stored run, oldest first."""

    def load(self, revision: str) -> PipelineRun | None:
        """Return the run for ``revision``, or None if nothing ran for it."""
        with self._locked(revision):
            return self._read(revision)

    def claim(
        self,
        stage: StageName,
        revision: str,
        triggered_by: TriggerSource,
        check: ClaimCheck | None = None,
    ) -> StageAttempt:
        """Atomically record a Running attempt for (stage, revision).

        Args:
            stage: Stage to claim.
            revision: Revision the stage runs for.
            triggered_by: What caused the invocation.
            check: Extra admission check run against the current run under
                the same lock (the state machine's ordering rules).

        Returns:
            The new Running attempt.

        Raises:
            ConcurrentStageExecutionError: If the stage is already running
                for the revision.
        """
        with self._locked(revision):
            run = self._read(revision) or PipelineRun(revision=revision, triggered_by=triggered_by)
            if check is not None:
                check(run)
            running = run.running_attempt(stage)
            if running is not None:
                raise ConcurrentStageExecutionError(
                    stage.value, revision, str(running.attempt_id)
                )
            attempt = StageAttempt(stage=stage, revision=revision, triggered_by=triggered_by)
            run.attempts.append(attempt)
            self._write(run)
        logger.debug(
            "attempt_claimed",
            stage=stage.value,
            revision=revision,
            attempt_id=str(attempt.attempt_id),
        )
        return attempt

    def finish(
        self,
        revision: str,
        attempt_id: UUID,
        status: StageStatus,
        *,
        error: str | None = None,
        error_type: str | None = None,
        versions: Mapping[ResourceKind, str] | None = None,
        trace_id: str | None = None,
    ) -> StageAttempt:
        """Move a Running attempt to a final status.

        Raises:
            PipelineError: If the attempt does not exist or already finished.
        """
        if not status.is_final:
            raise ValueError(f"{status.value} is not a final status")
        with self._locked(revision):
            run = self._read(revision)
            idx = run.find_attempt(attempt_id) if run is not None else None
            if run is None or idx is None:
                raise PipelineError(
                    f"No attempt {attempt_id} recorded for revision {revision}",
                    revision=revision,
                )
            attempt = run.attempts[idx]
            if attempt.status.is_final:
                raise PipelineError(
                    f"Attempt {attempt_id} already {attempt.status.value}",
                    revision=revision,
                    stage=attempt.stage.value,
                )
            update: dict[str, object] = {
                "status": status,
                "finished_at": utc_now(),
                "error": error,
                "error_type": error_type,
                "trace_id": trace_id or attempt.trace_id,
            }
            if versions:
                update["versions"] = {**attempt.versions, **versions}
            finished = attempt.model_copy(update=update)
            run.attempts[idx] = finished
            self._write(run)
        return finished


class InMemoryRunStore(RunStore):
    """Single-process run store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: dict[str, PipelineRun] = {}

    @contextmanager
    def _locked(self, revision: str) -> Iterator[None]:
        with self._lock:
            yield

    def _read(self, revision: str) -> PipelineRun | None:
        run = self._runs.get(revision)
        return run.model_copy(deep=True) if run is not None else None

    def _write(self, run: PipelineRun) -> None:
        self._runs[run.revision] = run.model_copy(deep=True)

    def list_runs(self) -> list[PipelineRun]:
        with self._lock:
            runs = [run.model_copy(deep=True) for run in self._runs.values()]
        return sorted(runs, key=lambda r: r.created_at)


class FileRunStore(RunStore):
    """Run store holding one JSON document per revision.

    Layout::

        <state_dir>/runs/<revision>.json
        <state_dir>/runs/<revision>.lock

    The lock file is held with ``fcntl.flock`` for the duration of every
    read-modify-write, so claims from concurrent processes on the same host
    serialize.
    """

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)
        self._runs_dir = self.state_dir / "runs"
        self._thread_lock = threading.RLock()
        try:
            self._runs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot create state directory {self._runs_dir}: {e}"
            ) from e

    def _path(self, revision: str) -> Path:
        return self._runs_dir / f"{revision}.json"

    @contextmanager
    def _locked(self, revision: str) -> Iterator[None]:
        lock_path = self._runs_dir / f"{revision}.lock"
        with self._thread_lock:
            lock_fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_fd, fcntl.LOCK_UN)
            finally:
                os.close(lock_fd)

    def _read(self, revision: str) -> PipelineRun | None:
        path = self._path(revision)
        if not path.exists():
            return None
        return self._parse(path)

    def _parse(self, path: Path) -> PipelineRun:
        try:
            return PipelineRun.model_validate_json(path.read_text())
        except ValidationError as e:
            raise PipelineError(f"Corrupt run record {path}: {e}") from e

    def _write(self, run: PipelineRun) -> None:
        path = self._path(run.revision)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(run.model_dump(mode="json"), indent=2))
        os.replace(tmp, path)

    def list_runs(self) -> list[PipelineRun]:
        runs = [self._parse(path) for path in sorted(self._runs_dir.glob("*.json"))]
        return sorted(runs, key=lambda r: r.created_at)


__all__ = ["ClaimCheck", "FileRunStore", "InMemoryRunStore", "RunStore"]
