"""Gate and promotion schemas.

Key Components:
    MetricEvaluation: One metric compared against its threshold
    QualityGateResult: Derived pass/fail for a model version's metrics
    TestFailure / SuiteResult: Outcome of a functional validation suite
    PromotionClearance: Gate evidence required before any alias moves
    PromotionStep: One alias reassignment within a promotion
    PromotionResult: Record of a completed promotion
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from stagegate.errors import MissingMetricError, QualityGateFailedError
from stagegate.schemas.pipeline import Environment, ResourceKind, utc_now


class MetricEvaluation(BaseModel):
    """A single metric compared against its minimum.

    Attributes:
        metric: Metric name.
        value: Recorded value, None if the metric was never recorded.
        threshold: Configured minimum.
        passed: True iff the value is present and ``value >= threshold``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    metric: str = Field(..., min_length=1)
    value: float | None = Field(default=None)
    threshold: float = Field(...)
    passed: bool = Field(...)

    @property
    def missing(self) -> bool:
        """True when the metric was never recorded."""
        return self.value is None


class QualityGateResult(BaseModel):
    """Result of evaluating a model version against metric thresholds.

    Derived on demand and never stored in a registry.

    Examples:
        >>> result = QualityGateResult(
        ...     model_version="3",
        ...     revision="abc123",
        ...     evaluations=[],
        ...     passed=True,
        ... )
        >>> result.missing_metrics
        []
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    model_version: str = Field(..., min_length=1, description="Evaluated immutable version")
    revision: str = Field(..., min_length=1, description="Revision of the evaluated version")
    evaluations: list[MetricEvaluation] = Field(default_factory=list)
    passed: bool = Field(...)
    evaluated_at: datetime = Field(default_factory=utc_now)

    @property
    def missing_metrics(self) -> list[str]:
        """Names of configured metrics that were never recorded."""
        return [e.metric for e in self.evaluations if e.missing]

    @property
    def failed_metrics(self) -> dict[str, tuple[float, float]]:
        """Metrics present but below threshold, as ``{name: (value, threshold)}``."""
        return {
            e.metric: (e.value, e.threshold)
            for e in self.evaluations
            if not e.passed and e.value is not None
        }

    def raise_for_failure(self, stage: str | None = None) -> None:
        """Halt the calling stage if the gate did not pass.

        Raises:
            MissingMetricError: If any configured metric was never recorded.
            QualityGateFailedError: If any metric is below its threshold.
        """
        if self.passed:
            return
        if self.missing_metrics:
            raise MissingMetricError(
                self.model_version,
                self.missing_metrics,
                revision=self.revision,
                stage=stage,
            )
        raise QualityGateFailedError(
            self.model_version,
            self.failed_metrics,
            revision=self.revision,
            stage=stage,
        )


class TestFailure(BaseModel):
    """A single failing case reported by a validation suite."""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    message: str | None = Field(default=None)


class SuiteResult(BaseModel):
    """Outcome of running a validation suite against a live target.

    Attributes:
        suite: Suite name.
        target: Endpoint the suite ran against.
        passed: Whether the suite passed.
        failures: Failing cases, when the harness reports them.
        duration_ms: Suite execution time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    suite: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    passed: bool = Field(...)
    failures: list[TestFailure] = Field(default_factory=list)
    duration_ms: int = Field(default=0, ge=0)


class PromotionClearance(BaseModel):
    """Evidence that a revision may be promoted into an environment.

    Both the quality gate and the validation suite must have passed for the
    same ``(revision, target_environment)`` pair.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    revision: str = Field(..., min_length=1)
    target_environment: Environment = Field(...)
    quality_gate: QualityGateResult = Field(...)
    validation: SuiteResult = Field(...)

    @property
    def passed(self) -> bool:
        """True when both gates passed."""
        return self.quality_gate.passed and self.validation.passed


class PromotionStep(BaseModel):
    """One alias reassignment performed by a promotion.

    Attributes:
        kind: Resource kind tagged.
        version: Version the alias now points at.
        previous_version: Version the alias pointed at before, if any.
        tagged_at: When the alias was written (UTC).
        changed: False if the alias already pointed at ``version``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ResourceKind = Field(...)
    version: str = Field(..., min_length=1)
    previous_version: str | None = Field(default=None)
    tagged_at: datetime = Field(default_factory=utc_now)
    changed: bool = Field(default=True)


class PromotionResult(BaseModel):
    """Record of a successful promotion across resource kinds.

    Steps are listed in the order they were applied; the model version is
    always first.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    promotion_id: UUID = Field(default_factory=uuid4)
    revision: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1, description="Version or alias promoted from")
    source_environment: Environment = Field(...)
    target_environment: Environment = Field(...)
    steps: list[PromotionStep] = Field(default_factory=list)
    promoted_at: datetime = Field(default_factory=utc_now)
    trace_id: str = Field(default="")

    @property
    def versions(self) -> dict[ResourceKind, str]:
        """Version now holding the target alias, per resource kind."""
        return {step.kind: step.version for step in self.steps}


__all__ = [
    "MetricEvaluation",
    "PromotionClearance",
    "PromotionResult",
    "PromotionStep",
    "QualityGateResult",
    "SuiteResult",
    "TestFailure",
]
