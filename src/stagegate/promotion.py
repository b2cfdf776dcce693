"""Promotion engine: moves environment aliases across resource kinds.

A promotion points the target environment's alias at the versions the
source resolves to, for every promoted resource kind, as one logical
operation:

    1. Validate the transition (exactly one environment forward)
    2. Resolve the source per kind and check all versions share one revision
    3. Check the gate clearance for (revision, target environment)
    4. Record the current alias holders
    5. Tag model version first, then the serving image
    6. On failure, restore the recorded holders (rollback)

If rollback itself fails the registries are left pointing at different
revisions and PartialPromotionError names what needs manual remediation.

Example:
    >>> engine = PromotionEngine(registries)
    >>> result = engine.promote("abc123", Environment.STAGING, clearance=clearance)
    >>> result.versions[ResourceKind.MODEL_VERSION]
    '3'
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

import structlog

from stagegate.errors import (
    ContextResolutionError,
    InvalidTransitionError,
    PartialPromotionError,
    PromotionBlockedError,
    PromotionFailedError,
)
from stagegate.registry.base import RegistryClient
from stagegate.schemas.pipeline import PROMOTED_KINDS, Environment, ResourceKind
from stagegate.schemas.promotion import PromotionClearance, PromotionResult, PromotionStep
from stagegate.telemetry.tracing import create_span, current_trace_id

logger = structlog.get_logger(__name__)


class PromotionEngine:
    """Moves aliases across resource kinds with rollback on failure.

    The engine is the only component that writes aliases.

    Attributes:
        registries: Registry client per resource kind.
    """

    def __init__(self, registries: Mapping[ResourceKind, RegistryClient]) -> None:
        self.registries = dict(registries)
        self._log = logger.bind(component="promotion")

    def _registry(self, kind: ResourceKind) -> RegistryClient:
        try:
            return self.registries[kind]
        except KeyError:
            raise ContextResolutionError(
                f"no registry configured for {kind.value}"
            ) from None

    def _validate_transition(
        self,
        source_env: Environment,
        target: Environment,
        revision: str | None,
    ) -> None:
        """Check that ``target`` is exactly one step after ``source_env``.

        Raises:
            InvalidTransitionError: If the transition goes backward or skips.
        """
        if not target.is_alias:
            raise InvalidTransitionError(
                source_env.value,
                target.value,
                "target must be an environment alias",
                revision=revision,
            )
        if target.index <= source_env.index:
            raise InvalidTransitionError(
                source_env.value,
                target.value,
                f"cannot promote backward from '{source_env.value}'",
                revision=revision,
            )
        if source_env.next is not target:
            expected = source_env.next.value if source_env.next else None
            raise InvalidTransitionError(
                source_env.value,
                target.value,
                f"cannot skip environments: must promote through '{expected}'",
                revision=revision,
            )

    def _resolve_source(
        self,
        source: str,
        source_env: Environment,
        kinds: Iterable[ResourceKind],
    ) -> dict[ResourceKind, str]:
        """Resolve ``source`` to an immutable version per resource kind.

        Raises:
            ContextResolutionError: If a kind has nothing to promote.
        """
        versions: dict[ResourceKind, str] = {}
        for kind in kinds:
            registry = self._registry(kind)
            if source_env is Environment.COMMIT:
                version = registry.find_version(source)
                if version is None and registry.exists(source):
                    version = source
            else:
                version = registry.resolve_alias(source)
            if version is None:
                raise ContextResolutionError(
                    f"{kind.value} has no version for '{source}'",
                    revision=source if source_env is Environment.COMMIT else None,
                    reference=source,
                )
            versions[kind] = version
        return versions

    def _common_revision(
        self,
        source: str,
        versions: Mapping[ResourceKind, str],
    ) -> str:
        revisions = {
            kind: self._registry(kind).revision_of(version)
            for kind, version in versions.items()
        }
        distinct = set(revisions.values())
        if len(distinct) != 1:
            detail = ", ".join(
                f"{kind.value}={versions[kind]} (revision {rev})"
                for kind, rev in sorted(revisions.items(), key=lambda kv: kv[0].value)
            )
            raise ContextResolutionError(
                f"'{source}' resolves to different revisions: {detail}",
                reference=source,
            )
        return distinct.pop()

    def _check_clearance(
        self,
        revision: str,
        target: Environment,
        versions: Mapping[ResourceKind, str],
        clearance: PromotionClearance | None,
        stage: str | None,
    ) -> None:
        """Refuse to tag anything without matching gate evidence.

        Raises:
            PromotionBlockedError: If the clearance is missing, failed, or
                belongs to another revision, environment or model version.
        """
        if clearance is None:
            reason = "no quality gate and validation results supplied"
        elif clearance.revision != revision:
            reason = f"clearance is for revision {clearance.revision}"
        elif clearance.target_environment is not target:
            reason = f"clearance is for '{clearance.target_environment.value}'"
        elif not clearance.quality_gate.passed:
            reason = f"quality gate failed for model version {clearance.quality_gate.model_version}"
        elif not clearance.validation.passed:
            reason = f"validation suite '{clearance.validation.suite}' failed"
        elif (
            ResourceKind.MODEL_VERSION in versions
            and clearance.quality_gate.model_version != versions[ResourceKind.MODEL_VERSION]
        ):
            reason = (
                f"quality gate evaluated model version {clearance.quality_gate.model_version}, "
                f"promoting {versions[ResourceKind.MODEL_VERSION]}"
            )
        else:
            return

        self._log.warning(
            "promotion_blocked",
            revision=revision,
            target=target.value,
            reason=reason,
        )
        raise PromotionBlockedError(revision, target.value, reason, stage=stage)

    def _rollback(
        self,
        tagged: list[PromotionStep],
        alias: str,
        revision: str,
    ) -> dict[str, str | None]:
        """Restore prior alias holders, newest tag first.

        Returns:
            Kinds that could not be restored, mapped to the version the alias
            still points at. Empty when every kind was restored.
        """
        inconsistent: dict[str, str | None] = {}
        for step in reversed(tagged):
            registry = self._registry(step.kind)
            try:
                if step.previous_version is None:
                    registry.remove_alias(alias)
                else:
                    registry.tag_alias(step.previous_version, alias)
                self._log.info(
                    "promotion_rolled_back",
                    kind=step.kind.value,
                    alias=alias,
                    restored=step.previous_version,
                    revision=revision,
                )
            except Exception as e:
                self._log.error(
                    "promotion_rollback_failed",
                    kind=step.kind.value,
                    alias=alias,
                    holds=step.version,
                    expected=step.previous_version,
                    revision=revision,
                    error=str(e),
                )
                inconsistent[step.kind.value] = step.version
        return inconsistent

    def promote(
        self,
        source: str,
        to_env: Environment | str,
        resource_kinds: Iterable[ResourceKind] = PROMOTED_KINDS,
        *,
        clearance: PromotionClearance | None,
        stage: str | None = None,
    ) -> PromotionResult:
        """Point the ``to_env`` alias at the versions ``source`` resolves to.

        Args:
            source: Revision or immutable version (environment ``commit``),
                or an environment alias.
            to_env: Target environment; must be one step after the source's.
            resource_kinds: Kinds to move together.
            clearance: Gate evidence for the same revision and target.
            stage: Stage performing the promotion, for error context.

        Returns:
            PromotionResult listing each alias reassignment in tag order.

        Raises:
            InvalidTransitionError: If the transition is not one step forward.
            ContextResolutionError: If the source does not resolve to one revision.
            PromotionBlockedError: If the clearance does not permit it.
            PromotionFailedError: If tagging failed and was rolled back.
            PartialPromotionError: If tagging failed and rollback failed.
        """
        source_env = Environment.of_reference(source)
        try:
            target = Environment(to_env)
        except ValueError:
            raise InvalidTransitionError(
                source_env.value, str(to_env), f"unknown environment '{to_env}'"
            ) from None
        kinds = sorted(set(resource_kinds), key=lambda k: (k.promotion_rank, k.value))
        alias = target.value

        with create_span(
            "stagegate.promote",
            attributes={
                "source": source,
                "from_env": source_env.value,
                "to_env": target.value,
                "stage": stage,
            },
        ) as span:
            trace_id = current_trace_id(span)
            log = self._log.bind(source=source, to_env=target.value, trace_id=trace_id)
            log.info("promote_started", kinds=[k.value for k in kinds])

            hint = source if source_env is Environment.COMMIT else None
            self._validate_transition(source_env, target, hint)

            try:
                versions = self._resolve_source(source, source_env, kinds)
                revision = self._common_revision(source, versions)
            except ContextResolutionError as e:
                raise e.with_context(stage=stage)
            span.set_attribute("revision", revision)
            log = log.bind(revision=revision)

            self._check_clearance(revision, target, versions, clearance, stage)

            previous = {kind: self._registry(kind).resolve_alias(alias) for kind in kinds}

            tagged: list[PromotionStep] = []
            steps: list[PromotionStep] = []
            for kind in kinds:
                version = versions[kind]
                if previous[kind] == version:
                    steps.append(
                        PromotionStep(
                            kind=kind,
                            version=version,
                            previous_version=version,
                            changed=False,
                        )
                    )
                    log.debug("alias_unchanged", kind=kind.value, version=version)
                    continue
                try:
                    displaced = self._registry(kind).tag_alias(version, alias)
                except Exception as e:
                    log.error(
                        "promote_tag_failed",
                        kind=kind.value,
                        version=version,
                        error=str(e),
                    )
                    inconsistent = self._rollback(tagged, alias, revision)
                    if inconsistent:
                        expected = {
                            step.kind.value: step.previous_version
                            for step in tagged
                            if step.kind.value in inconsistent
                        }
                        log.critical(
                            "promotion_partial",
                            alias=alias,
                            inconsistent=inconsistent,
                            expected=expected,
                        )
                        raise PartialPromotionError(
                            revision, alias, inconsistent, expected, stage=stage
                        ) from e
                    raise PromotionFailedError(
                        revision, alias, kind.value, str(e), stage=stage
                    ) from e
                # Holder displaced under the alias lock; the earlier read may be stale.
                step = PromotionStep(kind=kind, version=version, previous_version=displaced)
                tagged.append(step)
                steps.append(step)

            result = PromotionResult(
                revision=revision,
                source=source,
                source_environment=source_env,
                target_environment=target,
                steps=steps,
                trace_id=trace_id,
            )
            log.info(
                "promote_completed",
                promotion_id=str(result.promotion_id),
                versions={k.value: v for k, v in result.versions.items()},
            )
            return result


__all__ = ["PromotionEngine"]
