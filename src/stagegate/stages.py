"""Stage bodies.

Each stage is a function of its invocation (revision plus resolved
versions) and the registry contents. Cross-stage state lives only in
registry aliases, which only the promotion engine writes.

    build       verify (and optionally push) both images for the revision
    delivery    train -> register -> quality gate -> validate -> promote to staging
    staging     re-gate staging model -> validate staging -> promote to production
    deployment  start the production image and wait until it is ready
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field

from stagegate.errors import ConfigurationError, ContextResolutionError
from stagegate.promotion import PromotionEngine
from stagegate.quality_gate import evaluate_version
from stagegate.registry.base import ModelRegistryClient, Payload, RegistryClient
from stagegate.schemas.pipeline import (
    IMAGE_KINDS,
    Environment,
    ResourceKind,
    StageInvocation,
    StageName,
)
from stagegate.schemas.promotion import (
    PromotionClearance,
    PromotionResult,
    QualityGateResult,
    SuiteResult,
)
from stagegate.training import Trainer
from stagegate.validation import ValidationRunner

logger = structlog.get_logger(__name__)


class StageOutcome(BaseModel):
    """What a successful stage acted on and produced."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage: StageName = Field(...)
    revision: str = Field(..., min_length=1)
    versions: dict[ResourceKind, str] = Field(default_factory=dict)
    quality_gate: QualityGateResult | None = Field(default=None)
    validation: SuiteResult | None = Field(default=None)
    promotion: PromotionResult | None = Field(default=None)
    endpoint: str | None = Field(default=None, description="Deployed service URL")


class Stage(ABC):
    """A pipeline stage body."""

    name: StageName

    def __init__(self, registries: Mapping[ResourceKind, RegistryClient]) -> None:
        self.registries = dict(registries)
        self._log = logger.bind(stage=self.name.value)

    def registry(self, kind: ResourceKind) -> RegistryClient:
        try:
            return self.registries[kind]
        except KeyError:
            raise ContextResolutionError(
                f"no registry configured for {kind.value}", stage=self.name.value
            ) from None

    @property
    def model_registry(self) -> ModelRegistryClient:
        registry = self.registry(ResourceKind.MODEL_VERSION)
        if not isinstance(registry, ModelRegistryClient):
            raise ConfigurationError(
                f"{ResourceKind.MODEL_VERSION.value} registry does not support model operations"
            )
        return registry

    def _version(self, invocation: StageInvocation, kind: ResourceKind) -> str:
        try:
            return invocation.versions[kind]
        except KeyError:
            raise ContextResolutionError(
                f"invocation has no {kind.value} version",
                revision=invocation.revision,
                stage=self.name.value,
            ) from None

    def model_env(self, version_or_alias: str, version: str) -> dict[str, str]:
        """Environment variables telling the serving image which model to load."""
        registry = self.model_registry
        return {
            "MODEL_NAME": registry.model_name,
            "MODEL_VERSION": version,
            "MODEL_URI": registry.reference(version_or_alias),
        }

    @abstractmethod
    def execute(self, invocation: StageInvocation) -> StageOutcome:
        """Run the stage for a claimed invocation.

        Raises:
            PipelineError: Any failure; the controller records it on the attempt.
        """


class BuildStage(Stage):
    """Registers and verifies the revision's training and serving images.

    Image building itself belongs to CI. Manifests handed over with
    :meth:`add_manifests` are pushed before verification; otherwise the
    images are expected to be registered already.
    """

    name = StageName.BUILD

    def __init__(self, registries: Mapping[ResourceKind, RegistryClient]) -> None:
        super().__init__(registries)
        self._manifests: dict[str, dict[ResourceKind, Payload]] = {}

    def add_manifests(self, revision: str, manifests: Mapping[ResourceKind, Payload]) -> None:
        """Queue image manifests to push when the build stage runs for ``revision``."""
        unknown = set(manifests) - set(IMAGE_KINDS)
        if unknown:
            raise ValueError(f"not image kinds: {sorted(k.value for k in unknown)}")
        self._manifests.setdefault(revision, {}).update(manifests)

    def execute(self, invocation: StageInvocation) -> StageOutcome:
        revision = invocation.revision
        for kind, manifest in self._manifests.pop(revision, {}).items():
            self.registry(kind).push(revision, manifest)

        versions: dict[ResourceKind, str] = {}
        for kind in IMAGE_KINDS:
            version = self.registry(kind).find_version(revision)
            if version is None:
                raise ContextResolutionError(
                    f"{kind.value} was not built for the revision",
                    revision=revision,
                    stage=self.name.value,
                )
            versions[kind] = version
        self._log.info(
            "build_verified",
            revision=revision,
            versions={k.value: v for k, v in versions.items()},
        )
        return StageOutcome(stage=self.name, revision=revision, versions=versions)


class DeliveryStage(Stage):
    """Trains, registers, gates and validates a revision, then promotes it to staging."""

    name = StageName.DELIVERY

    def __init__(
        self,
        registries: Mapping[ResourceKind, RegistryClient],
        *,
        trainer: Trainer | None,
        runner: ValidationRunner,
        promotion: PromotionEngine,
        thresholds: Mapping[str, float],
        suite: str = "smoke",
    ) -> None:
        super().__init__(registries)
        self.trainer = trainer
        self.runner = runner
        self.promotion = promotion
        self.thresholds = dict(thresholds)
        self.suite = suite

    def execute(self, invocation: StageInvocation) -> StageOutcome:
        revision = invocation.revision
        stage = self.name.value
        if self.trainer is None:
            raise ConfigurationError("training.command is not configured")

        training_version = self._version(invocation, ResourceKind.TRAINING_IMAGE)
        serving_version = self._version(invocation, ResourceKind.SERVING_IMAGE)
        training_ref = self.registry(ResourceKind.TRAINING_IMAGE).reference(training_version)

        outcome = self.trainer.train(revision, training_ref)
        model_version = self.model_registry.register(revision, outcome.metrics, outcome.source)
        log = self._log.bind(revision=revision, model_version=model_version)
        log.info("model_registered", metrics=outcome.metrics)

        gate = evaluate_version(self.model_registry, model_version, self.thresholds)
        gate.raise_for_failure(stage=stage)

        serving_ref = self.registry(ResourceKind.SERVING_IMAGE).reference(serving_version)
        validation = self.runner.validate(
            serving_ref,
            self.model_env(model_version, model_version),
            self.suite,
            revision=revision,
            stage=stage,
        )

        clearance = PromotionClearance(
            revision=revision,
            target_environment=Environment.STAGING,
            quality_gate=gate,
            validation=validation,
        )
        promotion = self.promotion.promote(
            revision, Environment.STAGING, clearance=clearance, stage=stage
        )
        return StageOutcome(
            stage=self.name,
            revision=revision,
            versions={
                ResourceKind.TRAINING_IMAGE: training_version,
                ResourceKind.SERVING_IMAGE: serving_version,
                ResourceKind.MODEL_VERSION: model_version,
            },
            quality_gate=gate,
            validation=validation,
            promotion=promotion,
        )


class StagingStage(Stage):
    """Validates what the staging alias holds and promotes it to production."""

    name = StageName.STAGING

    def __init__(
        self,
        registries: Mapping[ResourceKind, RegistryClient],
        *,
        runner: ValidationRunner,
        promotion: PromotionEngine,
        thresholds: Mapping[str, float],
        suite: str = "functional",
    ) -> None:
        super().__init__(registries)
        self.runner = runner
        self.promotion = promotion
        self.thresholds = dict(thresholds)
        self.suite = suite

    def execute(self, invocation: StageInvocation) -> StageOutcome:
        revision = invocation.revision
        stage = self.name.value
        alias = Environment.STAGING.value
        model_version = self._version(invocation, ResourceKind.MODEL_VERSION)
        serving_version = self._version(invocation, ResourceKind.SERVING_IMAGE)

        # Evaluate the immutable version the alias resolved to, not the alias.
        gate = evaluate_version(self.model_registry, model_version, self.thresholds)
        gate.raise_for_failure(stage=stage)

        validation = self.runner.validate(
            self.registry(ResourceKind.SERVING_IMAGE).reference(alias),
            self.model_env(alias, model_version),
            self.suite,
            revision=revision,
            stage=stage,
        )

        clearance = PromotionClearance(
            revision=revision,
            target_environment=Environment.PRODUCTION,
            quality_gate=gate,
            validation=validation,
        )
        promotion = self.promotion.promote(
            alias, Environment.PRODUCTION, clearance=clearance, stage=stage
        )
        return StageOutcome(
            stage=self.name,
            revision=revision,
            versions={
                ResourceKind.MODEL_VERSION: model_version,
                ResourceKind.SERVING_IMAGE: serving_version,
            },
            quality_gate=gate,
            validation=validation,
            promotion=promotion,
        )


class DeploymentStage(Stage):
    """Starts the production image with the production model and waits until ready.

    The service is left running once ready, and stopped if it never becomes ready.
    """

    name = StageName.DEPLOYMENT

    def __init__(
        self,
        registries: Mapping[ResourceKind, RegistryClient],
        *,
        runner: ValidationRunner,
    ) -> None:
        super().__init__(registries)
        self.runner = runner

    def execute(self, invocation: StageInvocation) -> StageOutcome:
        revision = invocation.revision
        alias = Environment.PRODUCTION.value
        model_version = self._version(invocation, ResourceKind.MODEL_VERSION)
        serving_version = self._version(invocation, ResourceKind.SERVING_IMAGE)

        serving = self.registry(ResourceKind.SERVING_IMAGE)
        serving.pull(alias)
        image_ref = serving.reference(alias)

        config = self.runner.config
        env = {**config.env, **self.model_env(alias, model_version)}
        handle = self.runner.launcher.start(image_ref, config.port, env)
        try:
            self.runner.wait_ready(handle, revision=revision, stage=self.name.value)
        except BaseException:
            # Only a ready deployment is left running.
            self.runner.launcher.stop(handle)
            raise
        self._log.info(
            "deployment_ready",
            revision=revision,
            endpoint=handle.endpoint,
            image_ref=image_ref,
            model_version=model_version,
        )
        return StageOutcome(
            stage=self.name,
            revision=revision,
            versions={
                ResourceKind.MODEL_VERSION: model_version,
                ResourceKind.SERVING_IMAGE: serving_version,
            },
            endpoint=handle.endpoint,
        )


__all__ = [
    "BuildStage",
    "DeliveryStage",
    "DeploymentStage",
    "Stage",
    "StageOutcome",
    "StagingStage",
]
