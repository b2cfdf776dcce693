"""Stage trigger dispatcher.

Decides, from an upstream completion event or a manual dispatch, whether a
stage runs and for which revision, then claims the (stage, revision) slot
and binds the invocation to the immutable versions it must act on.

Context resolution per stage:
    build:      nothing beyond the revision
    delivery:   both image kinds registered for the revision
    staging:    the ``staging`` alias on every promoted kind
    deployment: the ``production`` alias on every promoted kind

Aliased stages always resolve through the alias (never the raw revision),
and the resolved versions must trace back to the invocation's revision.
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from stagegate.errors import (
    ConcurrentStageExecutionError,
    ContextResolutionError,
    NotFoundError,
    PipelineError,
)
from stagegate.registry.base import RegistryClient
from stagegate.schemas.pipeline import (
    IMAGE_KINDS,
    PROMOTED_KINDS,
    Conclusion,
    ResourceKind,
    StageAttempt,
    StageInvocation,
    StageName,
    TriggerSource,
    UpstreamEvent,
)
from stagegate.state_machine import PipelineStateMachine
from stagegate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class StageTriggerDispatcher:
    """Turns trigger inputs into claimed, context-resolved stage invocations.

    Attributes:
        state_machine: State machine used to claim (stage, revision) slots.
        registries: Registry client per resource kind.
    """

    def __init__(
        self,
        state_machine: PipelineStateMachine,
        registries: Mapping[ResourceKind, RegistryClient],
    ) -> None:
        self.state_machine = state_machine
        self.registries = dict(registries)

    def _registry(self, kind: ResourceKind, stage: StageName | None = None) -> RegistryClient:
        try:
            return self.registries[kind]
        except KeyError:
            raise ContextResolutionError(
                f"no registry configured for {kind.value}",
                stage=stage.value if stage else None,
            ) from None

    def on_upstream_event(self, event: UpstreamEvent) -> StageInvocation | None:
        """Handle a completion event for ``event.upstream_stage``.

        Returns:
            The invocation of the next stage, or None when nothing should run:
            the upstream did not succeed, it was the last stage, or the next
            stage is already running for this revision (duplicate event).

        Raises:
            StageBlockedError: If the state machine refuses the start.
            ContextResolutionError: If the next stage's context does not
                resolve (the claimed attempt is recorded as failed).
        """
        log = logger.bind(
            upstream_stage=event.upstream_stage.value,
            conclusion=event.conclusion.value,
            revision=event.revision,
        )
        if event.conclusion is not Conclusion.SUCCESS:
            log.info("dispatch_skipped", reason="upstream did not succeed")
            return None

        stage = event.upstream_stage.successor
        if stage is None:
            log.info("dispatch_skipped", reason="upstream is the last stage")
            return None

        with create_span(
            f"stagegate.dispatch.{TriggerSource.UPSTREAM_COMPLETION.value}",
            attributes={"stage": stage.value, "revision": event.revision},
        ):
            try:
                attempt = self.state_machine.start(
                    stage, event.revision, TriggerSource.UPSTREAM_COMPLETION
                )
            except ConcurrentStageExecutionError as e:
                log.info("dispatch_coalesced", stage=stage.value, running_attempt=e.attempt_id)
                return None
            return self._bind(attempt)

    def dispatch(
        self,
        stage: StageName | str,
        revision: str | None = None,
        triggered_by: TriggerSource = TriggerSource.MANUAL_DISPATCH,
    ) -> StageInvocation:
        """Start ``stage`` without an upstream event.

        Args:
            stage: Stage to run.
            revision: Revision to run for. Defaults to the revision of the
                most recently registered serving image.
            triggered_by: Trigger source recorded on the attempt.

        Returns:
            The claimed, context-resolved invocation.

        Raises:
            ContextResolutionError: If no revision can be determined or the
                stage's context does not resolve.
            ConcurrentStageExecutionError: If the stage is already running
                for the revision.
            StageBlockedError: If an earlier stage failed for the revision.
        """
        stage = StageName(stage)
        with create_span(
            f"stagegate.dispatch.{triggered_by.value}",
            attributes={"stage": stage.value, "revision": revision},
        ) as span:
            if revision is None:
                revision = self.latest_revision(stage)
                span.set_attribute("revision", revision)
            attempt = self.state_machine.start(stage, revision, triggered_by)
            return self._bind(attempt)

    def latest_revision(self, stage: StageName | None = None) -> str:
        """Return the revision of the most recently registered serving image.

        Raises:
            ContextResolutionError: If no serving image has been registered.
        """
        registry = self._registry(ResourceKind.SERVING_IMAGE, stage)
        version = registry.latest_version()
        if version is None:
            raise ContextResolutionError(
                "no serving image has been registered and no revision was given",
                stage=stage.value if stage else None,
            )
        return registry.revision_of(version)

    def _bind(self, attempt: StageAttempt) -> StageInvocation:
        """Resolve context for a claimed attempt, failing the attempt if it cannot."""
        try:
            versions, alias = self.resolve_context(attempt.stage, attempt.revision)
        except PipelineError as e:
            self.state_machine.fail(attempt.revision, attempt.attempt_id, e)
            raise
        invocation = StageInvocation(
            attempt_id=attempt.attempt_id,
            revision=attempt.revision,
            stage=attempt.stage,
            triggered_by=attempt.triggered_by,
            versions=versions,
            alias=alias,
        )
        logger.info(
            "stage_dispatched",
            stage=attempt.stage.value,
            revision=attempt.revision,
            attempt_id=str(attempt.attempt_id),
            triggered_by=attempt.triggered_by.value,
            alias=alias,
            versions={k.value: v for k, v in versions.items()},
        )
        return invocation

    def resolve_context(
        self,
        stage: StageName,
        revision: str,
    ) -> tuple[dict[ResourceKind, str], str | None]:
        """Return the immutable versions ``stage`` must act on for ``revision``.

        Returns:
            ``(versions, alias)`` where alias is the environment alias the
            versions were resolved from, or None.

        Raises:
            ContextResolutionError: If anything required does not resolve or
                traces to another revision.
        """
        if stage is StageName.BUILD:
            return {}, None

        if stage is StageName.DELIVERY:
            versions: dict[ResourceKind, str] = {}
            for kind in IMAGE_KINDS:
                version = self._registry(kind, stage).find_version(revision)
                if version is None:
                    raise ContextResolutionError(
                        f"no {kind.value} registered for the revision",
                        revision=revision,
                        stage=stage.value,
                    )
                versions[kind] = version
            return versions, None

        env = stage.source_environment
        if env is None:  # pragma: no cover
            raise ContextResolutionError(
                "stage has no source environment", revision=revision, stage=stage.value
            )
        alias = env.value
        versions = {}
        for kind in PROMOTED_KINDS:
            registry = self._registry(kind, stage)
            version = registry.resolve_alias(alias)
            if version is None:
                raise ContextResolutionError(
                    f"alias '{alias}' is not assigned for {kind.value}",
                    revision=revision,
                    stage=stage.value,
                    reference=alias,
                )
            try:
                traced_revision = registry.revision_of(version)
            except NotFoundError as e:
                raise ContextResolutionError(
                    f"alias '{alias}' points at missing {kind.value} {version}",
                    revision=revision,
                    stage=stage.value,
                    reference=alias,
                ) from e
            if traced_revision != revision:
                raise ContextResolutionError(
                    f"alias '{alias}' {kind.value} {version} traces to revision "
                    f"{traced_revision}",
                    revision=revision,
                    stage=stage.value,
                    reference=alias,
                )
            versions[kind] = version
        return versions, alias


__all__ = ["StageTriggerDispatcher"]
