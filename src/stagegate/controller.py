"""Pipeline controller.

Ties the dispatcher, the state machine and the stage bodies together. Each
stage invocation runs inside its own span; its outcome is recorded on the
claimed attempt before any error propagates, and only a succeeded attempt
produces a success completion event for the next stage.

Example:
    >>> controller = PipelineController.from_config(PipelineConfig.load())
    >>> attempt = controller.run_stage(StageName.BUILD, "abc123")
    >>> controller.trigger(controller.completion_event(attempt))
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from stagegate.dispatcher import StageTriggerDispatcher
from stagegate.errors import (
    ContextResolutionError,
    PartialPromotionError,
    PipelineError,
    StageCancelledError,
)
from stagegate.promotion import PromotionEngine
from stagegate.registry import create_registries
from stagegate.registry.base import Payload, RegistryClient
from stagegate.schemas.config import PipelineConfig
from stagegate.schemas.pipeline import (
    ENVIRONMENT_ORDER,
    PROMOTED_KINDS,
    EnvironmentStatus,
    PipelineRun,
    ResourceKind,
    StageAttempt,
    StageInvocation,
    StageName,
    TriggerSource,
    UpstreamEvent,
)
from stagegate.stages import (
    BuildStage,
    DeliveryStage,
    DeploymentStage,
    Stage,
    StageOutcome,
    StagingStage,
)
from stagegate.state_machine import PipelineStateMachine
from stagegate.store import FileRunStore, RunStore
from stagegate.telemetry.tracing import create_span, current_trace_id
from stagegate.training import CommandTrainer, Trainer
from stagegate.validation import (
    CommandValidationHarness,
    ServiceLauncher,
    ValidationHarness,
    ValidationRunner,
    create_launcher,
)

logger = structlog.get_logger(__name__)


class PipelineController:
    """Runs pipeline stages and answers status queries.

    Attributes:
        registries: Registry client per resource kind.
        state_machine: Stage lifecycle and audit trail.
        dispatcher: Trigger handling and context resolution.
        stages: Stage body per stage name.
    """

    def __init__(
        self,
        registries: Mapping[ResourceKind, RegistryClient],
        state_machine: PipelineStateMachine,
        stages: Mapping[StageName, Stage],
    ) -> None:
        self.registries = dict(registries)
        self.state_machine = state_machine
        self.dispatcher = StageTriggerDispatcher(state_machine, self.registries)
        self.stages = dict(stages)
        self.outcomes: dict[str, StageOutcome] = {}

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        *,
        registries: Mapping[ResourceKind, RegistryClient] | None = None,
        store: RunStore | None = None,
        trainer: Trainer | None = None,
        launcher: ServiceLauncher | None = None,
        harness: ValidationHarness | None = None,
    ) -> PipelineController:
        """Build a controller and its collaborators from configuration.

        Collaborators passed explicitly take precedence over configured ones.

        Raises:
            ConfigurationError: If a configured backend is incomplete.
        """
        if registries is None:
            registries = create_registries(config.registry, config.model_registry)
        if store is None:
            store = FileRunStore(config.state_dir)
        if trainer is None and config.training.command:
            trainer = CommandTrainer(
                config.training.command,
                metrics_file=config.training.metrics_file,
                timeout_seconds=config.training.timeout_seconds,
            )
        if harness is None and config.validation.command:
            harness = CommandValidationHarness(
                config.validation.command,
                timeout_seconds=config.validation.suite_timeout_seconds,
            )
        if launcher is None:
            launcher = create_launcher(config.validation)

        runner = ValidationRunner(launcher, harness, config.validation)
        promotion = PromotionEngine(registries)
        thresholds = config.quality_gate.thresholds
        suites = config.validation.suites

        stages: dict[StageName, Stage] = {
            StageName.BUILD: BuildStage(registries),
            StageName.DELIVERY: DeliveryStage(
                registries,
                trainer=trainer,
                runner=runner,
                promotion=promotion,
                thresholds=thresholds,
                suite=suites.get(StageName.DELIVERY, "smoke"),
            ),
            StageName.STAGING: StagingStage(
                registries,
                runner=runner,
                promotion=promotion,
                thresholds=thresholds,
                suite=suites.get(StageName.STAGING, "functional"),
            ),
            StageName.DEPLOYMENT: DeploymentStage(registries, runner=runner),
        }
        return cls(registries, PipelineStateMachine(store), stages)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, invocation: StageInvocation) -> StageAttempt:
        """Run a claimed invocation and record its outcome.

        Returns:
            The succeeded attempt.

        Raises:
            PipelineError: The stage failure, after the attempt was recorded
                as failed.
            StageCancelledError: If the invocation was interrupted, after the
                attempt was recorded as cancelled.
        """
        stage = invocation.stage
        revision = invocation.revision
        log = logger.bind(
            stage=stage.value,
            revision=revision,
            attempt_id=str(invocation.attempt_id),
        )
        body = self.stages[stage]

        with create_span(
            f"stagegate.stage.{stage.value}",
            attributes={
                "stage": stage.value,
                "revision": revision,
                "attempt_id": str(invocation.attempt_id),
                "triggered_by": invocation.triggered_by.value,
                "alias": invocation.alias,
            },
        ) as span:
            trace_id = current_trace_id(span) or None
            log.info("stage_execution_started", trace_id=trace_id)
            try:
                outcome = body.execute(invocation)
            except StageCancelledError as e:
                self.state_machine.cancel(
                    revision, invocation.attempt_id, str(e), trace_id=trace_id
                )
                raise
            except KeyboardInterrupt as e:
                # The CLI turns SIGTERM into KeyboardInterrupt("SIGTERM").
                reason = f"interrupted by {e}" if e.args else "interrupted"
                self.state_machine.cancel(
                    revision, invocation.attempt_id, reason, trace_id=trace_id
                )
                raise StageCancelledError(stage.value, revision, reason) from e
            except PipelineError as e:
                e.with_context(revision=revision, stage=stage.value)
                if isinstance(e, PartialPromotionError):
                    log.critical(
                        "stage_partial_promotion",
                        alias=e.alias,
                        inconsistent=e.inconsistent,
                        expected=e.expected,
                    )
                self.state_machine.fail(
                    revision,
                    invocation.attempt_id,
                    e,
                    versions=invocation.versions,
                    trace_id=trace_id,
                )
                raise
            except Exception as e:
                self.state_machine.fail(
                    revision,
                    invocation.attempt_id,
                    e,
                    versions=invocation.versions,
                    trace_id=trace_id,
                )
                raise

            attempt = self.state_machine.complete(
                revision,
                invocation.attempt_id,
                versions=outcome.versions or invocation.versions,
                trace_id=trace_id,
            )
            self.outcomes[str(invocation.attempt_id)] = outcome
            return attempt

    @staticmethod
    def completion_event(attempt: StageAttempt) -> UpstreamEvent:
        """Return the completion event a finished attempt emits.

        Raises:
            ValueError: If the attempt has not finished.
        """
        conclusion = attempt.conclusion
        if conclusion is None:
            raise ValueError(f"attempt {attempt.attempt_id} has not finished")
        return UpstreamEvent(
            upstream_stage=attempt.stage,
            conclusion=conclusion,
            revision=attempt.revision,
        )

    def trigger(self, event: UpstreamEvent) -> StageAttempt | None:
        """Run the stage an upstream completion event triggers, if any."""
        invocation = self.dispatcher.on_upstream_event(event)
        if invocation is None:
            return None
        return self.execute(invocation)

    def run_stage(
        self,
        stage: StageName | str,
        revision: str | None = None,
        triggered_by: TriggerSource = TriggerSource.MANUAL_DISPATCH,
        *,
        manifests: Mapping[ResourceKind, Payload] | None = None,
    ) -> StageAttempt:
        """Run one stage without an upstream event.

        Never triggers downstream stages.

        Args:
            stage: Stage to run.
            revision: Revision to run for (latest registered if None).
            triggered_by: Trigger recorded on the attempt.
            manifests: Image manifests to push (build stage only).
        """
        stage = StageName(stage)
        if manifests:
            if stage is not StageName.BUILD:
                raise ValueError("manifests can only be supplied to the build stage")
            if revision is None:
                raise ContextResolutionError(
                    "a revision is required when pushing manifests", stage=stage.value
                )
            build = self.stages[StageName.BUILD]
            if isinstance(build, BuildStage):
                build.add_manifests(revision, manifests)
        invocation = self.dispatcher.dispatch(stage, revision, triggered_by)
        return self.execute(invocation)

    def run_pipeline(
        self,
        revision: str,
        *,
        manifests: Mapping[ResourceKind, Payload] | None = None,
    ) -> PipelineRun:
        """Run every stage for ``revision``, chained through completion events.

        Raises:
            PipelineError: The first stage failure; later stages never start.
        """
        log = logger.bind(revision=revision)
        log.info("pipeline_started")
        attempt: StageAttempt | None = self.run_stage(
            StageName.BUILD, revision, TriggerSource.PUSH, manifests=manifests
        )
        while attempt is not None:
            attempt = self.trigger(self.completion_event(attempt))

        run = self.state_machine.run(revision)
        if run is None:  # pragma: no cover
            raise PipelineError(f"No run recorded for revision {revision}", revision=revision)
        log.info("pipeline_finished", status=run.status.value)
        return run

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def environment_status(self) -> list[EnvironmentStatus]:
        """Report which version and revision each environment alias holds."""
        statuses = []
        for env in ENVIRONMENT_ORDER:
            if not env.is_alias:
                continue
            versions: dict[ResourceKind, str | None] = {}
            revisions: dict[ResourceKind, str | None] = {}
            for kind in PROMOTED_KINDS:
                registry = self.registries[kind]
                version = registry.resolve_alias(env.value)
                versions[kind] = version
                revisions[kind] = registry.revision_of(version) if version else None
            statuses.append(
                EnvironmentStatus(environment=env, versions=versions, revisions=revisions)
            )
        return statuses

    def history(self, revision: str | None = None) -> list[StageAttempt]:
        """Return recorded stage attempts (for one revision, or all)."""
        return self.state_machine.history(revision)


__all__ = ["PipelineController"]
