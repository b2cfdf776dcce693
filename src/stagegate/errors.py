"""Exception hierarchy for the stagegate pipeline controller.

Every error raised by a pipeline component inherits from PipelineError and
carries the revision, stage, and version/alias it concerns so that a failed
stage attempt can be traced back to the change that produced it.

Exception Hierarchy:
    PipelineError (base)
    ├── AuthenticationError            # Registry credentials rejected
    ├── ConfigurationError             # Invalid or unreadable configuration
    ├── TrainingError                  # Training collaborator failed
    ├── ContextResolutionError         # No valid revision/version to act on
    ├── NotFoundError                  # Version or alias does not resolve
    ├── DuplicateVersionError          # Push collides with a different payload
    ├── RegistryUnavailableError       # Registry not reachable after retries
    ├── GateError (base for stage gates)
    │   ├── QualityGateFailedError     # Metric below threshold
    │   ├── MissingMetricError         # Required metric never recorded
    │   ├── ValidationFailedError      # Functional suite failed
    │   ├── ReadinessTimeoutError      # Service under test never became ready
    │   └── ServiceStartError          # Service under test failed to start
    ├── InvalidTransitionError         # Promotion is not one step forward
    ├── PromotionBlockedError          # Promotion without matching clearance
    ├── PromotionFailedError           # Tagging failed, rollback restored state
    ├── PartialPromotionError          # Rollback failed, aliases inconsistent
    ├── ConcurrentStageExecutionError  # Overlapping (stage, revision) run
    ├── StageBlockedError              # Earlier stage failed or predecessor pending
    └── StageCancelledError            # Invocation cancelled

Exit Codes:
    0   - Success
    1   - General error (PipelineError)
    2   - Authentication or configuration error
    3   - Context resolution / not found
    4   - Duplicate version
    5   - Registry unavailable
    7   - Training failed
    8   - Gate failed (quality, validation, readiness)
    9   - Invalid or blocked promotion
    10  - Promotion failed and rolled back
    11  - Partial promotion, manual remediation required
    12  - Stage rejected by the state machine
    130 - Cancelled

Example:
    >>> from stagegate.errors import NotFoundError
    >>> raise NotFoundError("staging", registry="oci://registry.example.com/ml/serving")
    Traceback (most recent call last):
        ...
    NotFoundError: Not found: staging in oci://registry.example.com/ml/serving
"""

from __future__ import annotations

from collections.abc import Sequence


class PipelineError(Exception):
    """Base exception for all pipeline controller errors.

    Attributes:
        revision: Source revision the failing operation acted on, if known.
        stage: Stage name the error was raised in, if known.
        reference: Version or alias involved, if any.
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        revision: str | None = None,
        stage: str | None = None,
        reference: str | None = None,
    ) -> None:
        self.revision = revision
        self.stage = stage
        self.reference = reference
        super().__init__(message)

    def with_context(
        self,
        *,
        revision: str | None = None,
        stage: str | None = None,
    ) -> PipelineError:
        """Fill in revision and stage when the raiser did not know them.

        Returns:
            The same exception instance, for use in ``raise exc.with_context(...)``.
        """
        if self.revision is None:
            self.revision = revision
        if self.stage is None:
            self.stage = stage
        return self

    def context(self) -> dict[str, str | None]:
        """Return the structured context for logs and CLI output."""
        return {
            "revision": self.revision,
            "stage": self.stage,
            "reference": self.reference,
        }


class AuthenticationError(PipelineError):
    """Raised when a registry rejects the configured credentials.

    Attributes:
        registry: Registry URI where authentication failed.
        reason: Description of why authentication failed.
        exit_code: CLI exit code (2).
    """

    exit_code: int = 2

    def __init__(self, registry: str, reason: str) -> None:
        self.registry = registry
        self.reason = reason
        super().__init__(f"Authentication failed for {registry}: {reason}")


class ContextResolutionError(PipelineError):
    """Raised when a stage invocation cannot be bound to a valid revision.

    Covers manual dispatch with no registered versions, aliases that do not
    resolve, and resolved versions that trace to different revisions.

    Attributes:
        exit_code: CLI exit code (3).
    """

    exit_code: int = 3

    def __init__(
        self,
        reason: str,
        *,
        revision: str | None = None,
        stage: str | None = None,
        reference: str | None = None,
    ) -> None:
        self.reason = reason
        msg = f"Cannot resolve pipeline context: {reason}"
        details = _format_context(revision=revision, stage=stage, reference=reference)
        if details:
            msg += f" ({details})"
        super().__init__(msg, revision=revision, stage=stage, reference=reference)


class NotFoundError(PipelineError):
    """Raised when a version or alias does not resolve in a registry.

    Attributes:
        registry: Registry (URI or resource kind) that was queried.
        exit_code: CLI exit code (3).
    """

    exit_code: int = 3

    def __init__(
        self,
        reference: str,
        *,
        registry: str,
        revision: str | None = None,
    ) -> None:
        self.registry = registry
        super().__init__(
            f"Not found: {reference} in {registry}",
            revision=revision,
            reference=reference,
        )


class DuplicateVersionError(PipelineError):
    """Raised when an immutable version already exists with different content.

    Immutable versions are write-once. Re-pushing the same payload is
    idempotent; pushing a different payload under the same key is rejected.

    Attributes:
        registry: Registry (URI or resource kind) that rejected the push.
        exit_code: CLI exit code (4).
    """

    exit_code: int = 4

    def __init__(
        self,
        version: str,
        *,
        registry: str,
        revision: str | None = None,
    ) -> None:
        self.registry = registry
        super().__init__(
            f"Version {version} already exists in {registry} with a different payload",
            revision=revision,
            reference=version,
        )


class RegistryUnavailableError(PipelineError):
    """Raised when a registry cannot be reached.

    Retried with exponential backoff before surfacing.

    Attributes:
        registry: Registry URI that was unreachable.
        reason: Transport-level failure description.
        exit_code: CLI exit code (5).
    """

    exit_code: int = 5

    def __init__(self, registry: str, reason: str) -> None:
        self.registry = registry
        self.reason = reason
        super().__init__(f"Registry unavailable: {registry} - {reason}")


class ConfigurationError(PipelineError):
    """Raised when the pipeline configuration cannot be loaded or is invalid.

    Attributes:
        exit_code: CLI exit code (2).
    """

    exit_code: int = 2


class TrainingError(PipelineError):
    """Raised when the training collaborator fails to produce a model.

    Attributes:
        exit_code: CLI exit code (7).
    """

    exit_code: int = 7

    def __init__(
        self,
        reason: str,
        *,
        revision: str | None = None,
        stage: str | None = None,
        reference: str | None = None,
    ) -> None:
        self.reason = reason
        super().__init__(
            f"Training failed for revision {revision} using {reference}: {reason}",
            revision=revision,
            stage=stage,
            reference=reference,
        )


class GateError(PipelineError):
    """Base class for checks that halt a stage before promotion.

    Attributes:
        exit_code: CLI exit code (8).
    """

    exit_code: int = 8


class QualityGateFailedError(GateError):
    """Raised when a model version's metrics fall below a configured threshold.

    Attributes:
        failures: Mapping of metric name to (value, threshold).
    """

    def __init__(
        self,
        version: str,
        failures: dict[str, tuple[float, float]],
        *,
        revision: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.failures = failures
        detail = ", ".join(
            f"{name}={value:.4f} < {threshold:.4f}"
            for name, (value, threshold) in sorted(failures.items())
        )
        super().__init__(
            f"Quality gate failed for model version {version} "
            f"(revision={revision}): {detail}",
            revision=revision,
            stage=stage,
            reference=version,
        )


class MissingMetricError(GateError):
    """Raised when a required metric was never recorded for a model version.

    A missing metric is a hard failure, never a skip.

    Attributes:
        metrics: Names of the missing metrics.
    """

    def __init__(
        self,
        version: str,
        metrics: Sequence[str],
        *,
        revision: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.metrics = list(metrics)
        super().__init__(
            f"Model version {version} (revision={revision}) is missing required "
            f"metrics: {', '.join(self.metrics)}",
            revision=revision,
            stage=stage,
            reference=version,
        )


class ValidationFailedError(GateError):
    """Raised when the functional test suite reports failures.

    Attributes:
        suite: Suite that failed.
        failures: Names of failing test cases.
    """

    def __init__(
        self,
        suite: str,
        target: str,
        failures: Sequence[str],
        *,
        revision: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.suite = suite
        self.failures = list(failures)
        msg = f"Validation suite '{suite}' failed against {target} (revision={revision})"
        if self.failures:
            preview = ", ".join(self.failures[:5])
            if len(self.failures) > 5:
                preview += f" (and {len(self.failures) - 5} more)"
            msg += f": {preview}"
        super().__init__(msg, revision=revision, stage=stage, reference=target)


class ReadinessTimeoutError(GateError):
    """Raised when the service under test never reports ready.

    Attributes:
        endpoint: Readiness URL that was polled.
        timeout_seconds: How long the controller waited.
    """

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float,
        *,
        image_ref: str | None = None,
        revision: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Service {image_ref or endpoint} not ready at {endpoint} "
            f"after {timeout_seconds:.1f}s (revision={revision})",
            revision=revision,
            stage=stage,
            reference=image_ref,
        )


class ServiceStartError(GateError):
    """Raised when the service under test could not be started.

    Attributes:
        image_ref: Image that failed to start.
    """

    def __init__(
        self,
        image_ref: str,
        reason: str,
        *,
        revision: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.image_ref = image_ref
        super().__init__(
            f"Failed to start {image_ref} (revision={revision}): {reason}",
            revision=revision,
            stage=stage,
            reference=image_ref,
        )


class InvalidTransitionError(PipelineError):
    """Raised when a promotion does not move exactly one environment forward.

    Attributes:
        from_env: Source environment.
        to_env: Target environment.
        reason: Why the transition is invalid.
        exit_code: CLI exit code (9).
    """

    exit_code: int = 9

    def __init__(
        self,
        from_env: str,
        to_env: str,
        reason: str,
        *,
        revision: str | None = None,
    ) -> None:
        self.from_env = from_env
        self.to_env = to_env
        self.reason = reason
        super().__init__(
            f"Invalid transition from '{from_env}' to '{to_env}': {reason}",
            revision=revision,
            reference=to_env,
        )


class PromotionBlockedError(PipelineError):
    """Raised when a promotion is attempted without passing gate evidence.

    Attributes:
        exit_code: CLI exit code (9).
    """

    exit_code: int = 9

    def __init__(
        self,
        revision: str,
        target: str,
        reason: str,
        *,
        stage: str | None = None,
    ) -> None:
        self.reason = reason
        super().__init__(
            f"Promotion of revision {revision} to '{target}' blocked: {reason}",
            revision=revision,
            stage=stage,
            reference=target,
        )


class PromotionFailedError(PipelineError):
    """Raised when alias tagging failed but every alias was restored.

    The registries are in the same state as before the promotion started.

    Attributes:
        kind: Resource kind whose tagging failed.
        cause: Underlying error message.
        exit_code: CLI exit code (10).
    """

    exit_code: int = 10

    def __init__(
        self,
        revision: str,
        alias: str,
        kind: str,
        cause: str,
        *,
        stage: str | None = None,
    ) -> None:
        self.kind = kind
        self.cause = cause
        super().__init__(
            f"Promotion of revision {revision} to '{alias}' failed tagging {kind}; "
            f"prior aliases restored: {cause}",
            revision=revision,
            stage=stage,
            reference=alias,
        )


class PartialPromotionError(PipelineError):
    """Raised when a promotion failed midway and could not be rolled back.

    The alias now points at different revisions across resource kinds and
    requires manual remediation.

    Attributes:
        alias: Alias left inconsistent.
        inconsistent: Mapping of resource kind to the version it now holds.
        expected: Mapping of resource kind to the version it held before.
        exit_code: CLI exit code (11).
    """

    exit_code: int = 11

    def __init__(
        self,
        revision: str,
        alias: str,
        inconsistent: dict[str, str | None],
        expected: dict[str, str | None],
        *,
        stage: str | None = None,
    ) -> None:
        self.alias = alias
        self.inconsistent = inconsistent
        self.expected = expected
        detail = ", ".join(
            f"{kind} holds {inconsistent[kind]} (expected {expected.get(kind)})"
            for kind in sorted(inconsistent)
        )
        super().__init__(
            f"Partial promotion of revision {revision} to '{alias}', "
            f"manual remediation required: {detail}",
            revision=revision,
            stage=stage,
            reference=alias,
        )


class ConcurrentStageExecutionError(PipelineError):
    """Raised when a stage is already running for the same revision.

    Attributes:
        attempt_id: Identifier of the attempt that holds the slot.
        exit_code: CLI exit code (12).
    """

    exit_code: int = 12

    def __init__(self, stage: str, revision: str, attempt_id: str) -> None:
        self.attempt_id = attempt_id
        super().__init__(
            f"Stage '{stage}' is already running for revision {revision} "
            f"(attempt {attempt_id})",
            revision=revision,
            stage=stage,
        )


class StageBlockedError(PipelineError):
    """Raised when the state machine refuses to start a stage.

    Attributes:
        blocking_stage: Stage whose status blocks this one.
        blocking_status: Status of the blocking stage.
        exit_code: CLI exit code (12).
    """

    exit_code: int = 12

    def __init__(
        self,
        stage: str,
        revision: str,
        blocking_stage: str,
        blocking_status: str,
    ) -> None:
        self.blocking_stage = blocking_stage
        self.blocking_status = blocking_status
        super().__init__(
            f"Stage '{stage}' cannot start for revision {revision}: "
            f"stage '{blocking_stage}' is {blocking_status}",
            revision=revision,
            stage=stage,
        )


class StageCancelledError(PipelineError):
    """Raised when a running stage invocation is cancelled.

    Attributes:
        exit_code: CLI exit code (130).
    """

    exit_code: int = 130

    def __init__(self, stage: str, revision: str, reason: str = "cancelled") -> None:
        super().__init__(
            f"Stage '{stage}' for revision {revision} {reason}",
            revision=revision,
            stage=stage,
        )


def _format_context(**context: str | None) -> str:
    return ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)


__all__ = [
    "AuthenticationError",
    "ConcurrentStageExecutionError",
    "ConfigurationError",
    "ContextResolutionError",
    "DuplicateVersionError",
    "GateError",
    "InvalidTransitionError",
    "MissingMetricError",
    "NotFoundError",
    "PartialPromotionError",
    "PipelineError",
    "PromotionBlockedError",
    "PromotionFailedError",
    "QualityGateFailedError",
    "ReadinessTimeoutError",
    "RegistryUnavailableError",
    "ServiceStartError",
    "StageBlockedError",
    "StageCancelledError",
    "TrainingError",
    "ValidationFailedError",
]
