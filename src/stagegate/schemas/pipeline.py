"""Pipeline lifecycle schemas.

This module defines Pydantic v2 schemas for the entities the controller
tracks: revisions, environments, stages, registered resources, and the
audit trail of stage attempts.

Key Components:
    Environment: Ordered deployment environments (commit, staging, production)
    StageName: Fixed, linear stage order (build, delivery, staging, deployment)
    StageStatus: Per-stage lifecycle status
    ResourceKind: Independently versioned resources moved by promotion
    UpstreamEvent: Completion event delivered by the CI platform
    StageInvocation: A claimed, context-resolved stage execution
    StageAttempt: Audit record of a single stage execution
    PipelineRun: All attempts recorded for one revision
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

# Revision ids end up in OCI tags and shell command substitutions.
REVISION_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$"


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class Environment(str, Enum):
    """Ordered deployment environments.

    ``commit`` is the immutable version produced for a revision; ``staging``
    and ``production`` are aliases. Promotion only ever moves one step
    forward in this order.

    Examples:
        >>> Environment.COMMIT.next
        <Environment.STAGING: 'staging'>
        >>> Environment.PRODUCTION.next is None
        True
    """

    COMMIT = "commit"
    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def index(self) -> int:
        """Position of this environment in the promotion path."""
        return ENVIRONMENT_ORDER.index(self)

    @property
    def next(self) -> Environment | None:
        """The environment one step forward, or None for the last one."""
        idx = self.index + 1
        return ENVIRONMENT_ORDER[idx] if idx < len(ENVIRONMENT_ORDER) else None

    @property
    def is_alias(self) -> bool:
        """True for environments represented by a registry alias."""
        return self is not Environment.COMMIT

    @classmethod
    def of_reference(cls, reference: str) -> Environment:
        """Return the environment a version-or-alias reference belongs to.

        Alias names map to their environment; anything else is treated as
        an immutable version or revision, i.e. ``commit``.
        """
        for env in ENVIRONMENT_ORDER:
            if env.is_alias and env.value == reference:
                return env
        return cls.COMMIT


ENVIRONMENT_ORDER: tuple[Environment, ...] = (
    Environment.COMMIT,
    Environment.STAGING,
    Environment.PRODUCTION,
)


class StageName(str, Enum):
    """Pipeline stages in their fixed execution order.

    Examples:
        >>> StageName.STAGING.predecessor
        <StageName.DELIVERY: 'delivery'>
        >>> StageName.BUILD.predecessor is None
        True
    """

    BUILD = "build"
    DELIVERY = "delivery"
    STAGING = "staging"
    DEPLOYMENT = "deployment"

    @property
    def index(self) -> int:
        """Position of this stage in the pipeline."""
        return STAGE_ORDER.index(self)

    @property
    def predecessor(self) -> StageName | None:
        """The single stage that must succeed before this one, if any."""
        return STAGE_ORDER[self.index - 1] if self.index > 0 else None

    @property
    def successor(self) -> StageName | None:
        """The stage triggered by this one's successful completion, if any."""
        idx = self.index + 1
        return STAGE_ORDER[idx] if idx < len(STAGE_ORDER) else None

    @property
    def earlier(self) -> tuple[StageName, ...]:
        """All stages that run before this one."""
        return STAGE_ORDER[: self.index]

    @property
    def source_environment(self) -> Environment | None:
        """Environment whose alias supplies this stage's context, if any."""
        return _STAGE_SOURCE_ENV.get(self)

    @property
    def target_environment(self) -> Environment | None:
        """Environment this stage promotes into, if it promotes at all."""
        return _STAGE_TARGET_ENV.get(self)


STAGE_ORDER: tuple[StageName, ...] = (
    StageName.BUILD,
    StageName.DELIVERY,
    StageName.STAGING,
    StageName.DEPLOYMENT,
)

_STAGE_SOURCE_ENV: dict[StageName, Environment] = {
    StageName.STAGING: Environment.STAGING,
    StageName.DEPLOYMENT: Environment.PRODUCTION,
}

_STAGE_TARGET_ENV: dict[StageName, Environment] = {
    StageName.DELIVERY: Environment.STAGING,
    StageName.STAGING: Environment.PRODUCTION,
}


class StageStatus(str, Enum):
    """Lifecycle status of one stage within a pipeline run.

    Attributes:
        PENDING: Not started yet.
        RUNNING: Claimed by an invocation and executing.
        SUCCEEDED: Completed successfully.
        FAILED: Completed with an error; halts later stages.
        SKIPPED: Never started because an earlier stage halted the run.
        CANCELLED: Interrupted; terminal, never triggers downstream.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        """True once an attempt with this status can no longer change."""
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED)

    @property
    def halts_run(self) -> bool:
        """True if this status prevents any later stage from starting."""
        return self in (StageStatus.FAILED, StageStatus.CANCELLED)


class Conclusion(str, Enum):
    """Outcome carried by an upstream completion event."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @classmethod
    def from_status(cls, status: StageStatus) -> Conclusion:
        """Map a final stage status onto an event conclusion."""
        if status is StageStatus.SUCCEEDED:
            return cls.SUCCESS
        if status is StageStatus.CANCELLED:
            return cls.CANCELLED
        return cls.FAILURE


class TriggerSource(str, Enum):
    """What caused a stage to be invoked."""

    PUSH = "push"
    MANUAL_DISPATCH = "manual_dispatch"
    UPSTREAM_COMPLETION = "upstream_completion"


class ArtifactKind(str, Enum):
    """Container image kinds built for every revision."""

    TRAINING = "training"
    SERVING = "serving"


class ResourceKind(str, Enum):
    """Independently versioned resources held in registries.

    Promotion moves a set of these together; the model version is always
    tagged first because it determines serving behavior.
    """

    MODEL_VERSION = "model_version"
    SERVING_IMAGE = "serving_image"
    TRAINING_IMAGE = "training_image"

    @classmethod
    def for_artifact(cls, kind: ArtifactKind) -> ResourceKind:
        """Return the resource kind holding images of the given artifact kind."""
        if kind is ArtifactKind.TRAINING:
            return cls.TRAINING_IMAGE
        return cls.SERVING_IMAGE

    @property
    def artifact_kind(self) -> ArtifactKind | None:
        """The artifact kind for image resources, None for model versions."""
        if self is ResourceKind.TRAINING_IMAGE:
            return ArtifactKind.TRAINING
        if self is ResourceKind.SERVING_IMAGE:
            return ArtifactKind.SERVING
        return None

    @property
    def promotion_rank(self) -> int:
        """Tagging order during promotion (lower is tagged first)."""
        return 0 if self is ResourceKind.MODEL_VERSION else 1


IMAGE_KINDS: tuple[ResourceKind, ...] = (
    ResourceKind.TRAINING_IMAGE,
    ResourceKind.SERVING_IMAGE,
)

# Resources that move together on every promotion.
PROMOTED_KINDS: tuple[ResourceKind, ...] = (
    ResourceKind.MODEL_VERSION,
    ResourceKind.SERVING_IMAGE,
)


# =============================================================================
# Registered resources
# =============================================================================


class Artifact(BaseModel):
    """A built, runnable container image.

    Attributes:
        kind: Training or serving image.
        immutable_version: Tag derived from the revision (unique per kind).
        revision: Source revision that produced the image.
        digest: Manifest digest, when known.
        aliases: Environment aliases currently pointing at this version.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ArtifactKind = Field(..., description="Image kind")
    immutable_version: str = Field(..., min_length=1, description="Immutable image tag")
    revision: str = Field(..., pattern=REVISION_PATTERN, description="Source revision")
    digest: str | None = Field(default=None, description="Manifest digest")
    aliases: frozenset[str] = Field(default_factory=frozenset, description="Held aliases")


class ModelVersion(BaseModel):
    """A registered model version.

    Metrics are written once at registration; only alias assignment changes
    afterwards, and that is owned by the promotion engine.

    Examples:
        >>> mv = ModelVersion(
        ...     model_name="churn",
        ...     immutable_version="3",
        ...     revision="abc123",
        ...     metrics={"accuracy": 0.95},
        ... )
        >>> mv.metrics["accuracy"]
        0.95
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    model_name: str = Field(..., min_length=1, description="Registered model name")
    immutable_version: str = Field(..., min_length=1, description="Registry-assigned version")
    revision: str = Field(..., pattern=REVISION_PATTERN, description="Source revision")
    metrics: dict[str, float] = Field(default_factory=dict, description="Recorded metrics")
    source: str | None = Field(default=None, description="Model artifact location")
    aliases: frozenset[str] = Field(default_factory=frozenset, description="Held aliases")


# =============================================================================
# Triggers and attempts
# =============================================================================


class UpstreamEvent(BaseModel):
    """Completion event for a stage, as delivered by the CI platform."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    upstream_stage: StageName = Field(..., description="Stage that completed")
    conclusion: Conclusion = Field(..., description="How it completed")
    revision: str = Field(..., pattern=REVISION_PATTERN, description="Revision it ran for")


class StageInvocation(BaseModel):
    """A stage execution that has been claimed and bound to its context.

    Attributes:
        attempt_id: Attempt record created when the invocation was claimed.
        revision: Revision the stage acts on.
        stage: Stage to run.
        triggered_by: What caused the invocation.
        versions: Immutable version per resource kind the stage must act on.
        alias: Environment alias the versions were resolved from, if any.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    attempt_id: UUID = Field(..., description="Claimed attempt")
    revision: str = Field(..., pattern=REVISION_PATTERN, description="Source revision")
    stage: StageName = Field(..., description="Stage to run")
    triggered_by: TriggerSource = Field(..., description="Trigger source")
    versions: dict[ResourceKind, str] = Field(
        default_factory=dict,
        description="Resolved immutable version per resource kind",
    )
    alias: str | None = Field(default=None, description="Alias the context came from")


class StageAttempt(BaseModel):
    """Audit record for one execution of one stage.

    Attributes:
        attempt_id: Unique attempt identifier.
        stage: Stage executed.
        revision: Revision it executed for.
        status: Current status of the attempt.
        triggered_by: What caused the attempt.
        started_at: When the attempt was claimed (UTC).
        finished_at: When it reached a final status (UTC).
        error: Failure message naming revision, stage and version/alias.
        error_type: Exception class name on failure.
        versions: Immutable versions the attempt acted on, per resource kind.
        trace_id: OpenTelemetry trace id for correlation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    attempt_id: UUID = Field(default_factory=uuid4, description="Attempt identifier")
    stage: StageName = Field(..., description="Stage executed")
    revision: str = Field(..., pattern=REVISION_PATTERN, description="Source revision")
    status: StageStatus = Field(default=StageStatus.RUNNING, description="Attempt status")
    triggered_by: TriggerSource = Field(..., description="Trigger source")
    started_at: datetime = Field(default_factory=utc_now, description="Claim time (UTC)")
    finished_at: datetime | None = Field(default=None, description="Completion time (UTC)")
    error: str | None = Field(default=None, description="Failure message")
    error_type: str | None = Field(default=None, description="Failure class name")
    versions: dict[ResourceKind, str] = Field(
        default_factory=dict,
        description="Versions acted on",
    )
    trace_id: str | None = Field(default=None, description="OpenTelemetry trace id")

    @property
    def conclusion(self) -> Conclusion | None:
        """Event conclusion for a finished attempt, None while running."""
        if not self.status.is_final:
            return None
        return Conclusion.from_status(self.status)

    @property
    def duration_seconds(self) -> float | None:
        """Wall-clock duration of a finished attempt."""
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class PipelineRun(BaseModel):
    """All stage attempts recorded for a single revision.

    The run is the logical unit the state machine reasons about: a later
    stage may only start while no earlier stage's latest attempt has halted
    the run.
    """

    model_config = ConfigDict(extra="forbid")

    revision: str = Field(..., pattern=REVISION_PATTERN, description="Source revision")
    triggered_by: TriggerSource = Field(..., description="Trigger of the first attempt")
    created_at: datetime = Field(default_factory=utc_now, description="Creation time (UTC)")
    attempts: list[StageAttempt] = Field(default_factory=list, description="Attempt log")

    def latest_attempt(self, stage: StageName) -> StageAttempt | None:
        """Return the most recent attempt for a stage."""
        for attempt in reversed(self.attempts):
            if attempt.stage is stage:
                return attempt
        return None

    def running_attempt(self, stage: StageName) -> StageAttempt | None:
        """Return the attempt currently running for a stage, if any."""
        for attempt in self.attempts:
            if attempt.stage is stage and attempt.status is StageStatus.RUNNING:
                return attempt
        return None

    def find_attempt(self, attempt_id: UUID) -> int | None:
        """Return the list index of an attempt, or None."""
        for idx, attempt in enumerate(self.attempts):
            if attempt.attempt_id == attempt_id:
                return idx
        return None

    @property
    def stage_statuses(self) -> dict[StageName, StageStatus]:
        """Latest status per stage, in pipeline order.

        Stages after a halting stage that never started report SKIPPED.
        """
        statuses: dict[StageName, StageStatus] = {}
        halted = False
        for stage in STAGE_ORDER:
            latest = self.latest_attempt(stage)
            if latest is None:
                statuses[stage] = StageStatus.SKIPPED if halted else StageStatus.PENDING
                continue
            statuses[stage] = latest.status
            if latest.status.halts_run:
                halted = True
        return statuses

    @property
    def status(self) -> StageStatus:
        """Overall run status derived from the stage statuses."""
        statuses = list(self.stage_statuses.values())
        if all(s is StageStatus.SUCCEEDED for s in statuses):
            return StageStatus.SUCCEEDED
        if StageStatus.FAILED in statuses:
            return StageStatus.FAILED
        if StageStatus.CANCELLED in statuses:
            return StageStatus.CANCELLED
        if StageStatus.RUNNING in statuses:
            return StageStatus.RUNNING
        return StageStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        """True once the run halted or its last stage succeeded."""
        return self.status in (
            StageStatus.SUCCEEDED,
            StageStatus.FAILED,
            StageStatus.CANCELLED,
        )


class EnvironmentStatus(BaseModel):
    """Which versions, and therefore which revisions, an environment holds.

    Attributes:
        environment: Environment described.
        versions: Version per resource kind (None when unassigned).
        revisions: Revision per resource kind (None when unassigned).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: Environment = Field(..., description="Environment")
    versions: dict[ResourceKind, str | None] = Field(default_factory=dict)
    revisions: dict[ResourceKind, str | None] = Field(default_factory=dict)

    @property
    def revision(self) -> str | None:
        """The revision every resource traces to, or None if they disagree."""
        found = set(self.revisions.values())
        if len(found) == 1:
            return found.pop()
        return None

    @property
    def consistent(self) -> bool:
        """True when all resource kinds trace to the same revision (or none)."""
        return len(set(self.revisions.values())) <= 1

    def to_display(self) -> dict[str, Any]:
        """Return a JSON-friendly representation for CLI output."""
        return {
            "environment": self.environment.value,
            "revision": self.revision,
            "consistent": self.consistent,
            "versions": {k.value: v for k, v in self.versions.items()},
            "revisions": {k.value: v for k, v in self.revisions.items()},
        }


__all__ = [
    "ENVIRONMENT_ORDER",
    "IMAGE_KINDS",
    "PROMOTED_KINDS",
    "REVISION_PATTERN",
    "STAGE_ORDER",
    "Artifact",
    "ArtifactKind",
    "Conclusion",
    "Environment",
    "EnvironmentStatus",
    "ModelVersion",
    "PipelineRun",
    "ResourceKind",
    "StageAttempt",
    "StageInvocation",
    "StageName",
    "StageStatus",
    "TriggerSource",
    "UpstreamEvent",
    "utc_now",
]
