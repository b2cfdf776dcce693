"""Pipeline state machine.

Each stage of a run moves ``pending -> running -> {succeeded | failed |
cancelled}``. The machine enforces the ordering rules when a stage is
claimed:

- No stage starts once an earlier stage's latest attempt failed or was
  cancelled for the same revision.
- A stage started by an upstream completion event requires its
  predecessor's latest attempt to have succeeded.
- At most one attempt per (stage, revision) is running at a time.

Manual re-runs create new, independent attempts; they never trigger
downstream stages on their own.
"""

from __future__ import annotations

from uuid import UUID

import structlog

from stagegate.errors import ContextResolutionError, StageBlockedError
from stagegate.schemas.pipeline import (
    PipelineRun,
    ResourceKind,
    StageAttempt,
    StageName,
    StageStatus,
    TriggerSource,
)
from stagegate.store import ClaimCheck, InMemoryRunStore, RunStore

logger = structlog.get_logger(__name__)


class PipelineStateMachine:
    """Records stage transitions and refuses out-of-order starts.

    Attributes:
        store: Run store holding the attempt audit trail.
    """

    def __init__(self, store: RunStore | None = None) -> None:
        self.store = store or InMemoryRunStore()

    @staticmethod
    def _admission_check(stage: StageName, triggered_by: TriggerSource) -> ClaimCheck:
        def check(run: PipelineRun) -> None:
            for earlier in stage.earlier:
                latest = run.latest_attempt(earlier)
                if latest is not None and latest.status.halts_run:
                    raise StageBlockedError(
                        stage.value, run.revision, earlier.value, latest.status.value
                    )

            predecessor = stage.predecessor
            if triggered_by is TriggerSource.UPSTREAM_COMPLETION and predecessor is not None:
                latest = run.latest_attempt(predecessor)
                status = latest.status if latest is not None else StageStatus.PENDING
                if status is not StageStatus.SUCCEEDED:
                    raise StageBlockedError(
                        stage.value, run.revision, predecessor.value, status.value
                    )

        return check

    def start(
        self,
        stage: StageName,
        revision: str,
        triggered_by: TriggerSource,
    ) -> StageAttempt:
        """Claim a Running attempt for (stage, revision).

        Raises:
            StageBlockedError: If an ordering rule refuses the start.
            ConcurrentStageExecutionError: If the stage is already running.
        """
        attempt = self.store.claim(
            stage,
            revision,
            triggered_by,
            check=self._admission_check(stage, triggered_by),
        )
        logger.info(
            "stage_started",
            stage=stage.value,
            revision=revision,
            attempt_id=str(attempt.attempt_id),
            triggered_by=triggered_by.value,
        )
        return attempt

    def complete(
        self,
        revision: str,
        attempt_id: UUID,
        *,
        versions: dict[ResourceKind, str] | None = None,
        trace_id: str | None = None,
    ) -> StageAttempt:
        """Mark an attempt succeeded."""
        attempt = self.store.finish(
            revision,
            attempt_id,
            StageStatus.SUCCEEDED,
            versions=versions,
            trace_id=trace_id,
        )
        logger.info(
            "stage_succeeded",
            stage=attempt.stage.value,
            revision=revision,
            attempt_id=str(attempt_id),
            duration_seconds=attempt.duration_seconds,
        )
        return attempt

    def fail(
        self,
        revision: str,
        attempt_id: UUID,
        error: BaseException,
        *,
        versions: dict[ResourceKind, str] | None = None,
        trace_id: str | None = None,
    ) -> StageAttempt:
        """Mark an attempt failed, recording the error message and type."""
        attempt = self.store.finish(
            revision,
            attempt_id,
            StageStatus.FAILED,
            error=str(error),
            error_type=type(error).__name__,
            versions=versions,
            trace_id=trace_id,
        )
        logger.error(
            "stage_failed",
            stage=attempt.stage.value,
            revision=revision,
            attempt_id=str(attempt_id),
            error_type=attempt.error_type,
            error=attempt.error,
        )
        return attempt

    def cancel(
        self,
        revision: str,
        attempt_id: UUID,
        reason: str = "cancelled",
        *,
        trace_id: str | None = None,
    ) -> StageAttempt:
        """Mark an attempt cancelled. Cancelled attempts never trigger downstream."""
        attempt = self.store.finish(
            revision,
            attempt_id,
            StageStatus.CANCELLED,
            error=reason,
            error_type="StageCancelledError",
            trace_id=trace_id,
        )
        logger.warning(
            "stage_cancelled",
            stage=attempt.stage.value,
            revision=revision,
            attempt_id=str(attempt_id),
            reason=reason,
        )
        return attempt

    def cancel_running(
        self,
        stage: StageName,
        revision: str,
        reason: str = "cancelled by operator",
    ) -> StageAttempt:
        """Cancel whatever attempt is running for (stage, revision).

        Releases a stage whose process was killed before it could record an
        outcome, so the stage can be claimed again.

        Raises:
            ContextResolutionError: If no attempt is running.
        """
        run = self.store.load(revision)
        attempt = run.running_attempt(stage) if run is not None else None
        if attempt is None:
            raise ContextResolutionError(
                "no running attempt to cancel", revision=revision, stage=stage.value
            )
        return self.cancel(revision, attempt.attempt_id, reason)

    def run(self, revision: str) -> PipelineRun | None:
        """Return the run recorded for ``revision``."""
        return self.store.load(revision)

    def runs(self) -> list[PipelineRun]:
        """Return every recorded run, oldest first."""
        return self.store.list_runs()

    def history(self, revision: str | None = None) -> list[StageAttempt]:
        """Return stage attempts in the order they were claimed.

        Args:
            revision: Limit to one revision; all revisions if None.
        """
        if revision is not None:
            run = self.store.load(revision)
            return list(run.attempts) if run is not None else []
        attempts = [a for run in self.store.list_runs() for a in run.attempts]
        return sorted(attempts, key=lambda a: a.started_at)


__all__ = ["PipelineStateMachine"]
