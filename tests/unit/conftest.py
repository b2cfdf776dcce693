"""Unit test fixtures for stagegate.

Unit tests run without external services: registries are in-memory, the
service under test is a fake launcher, and readiness checks go through an
``httpx.MockTransport`` client.

Key Fixtures:
- registries: In-memory registry client per resource kind
- seed_images: Push training and serving images for a revision
- promote_to: Register a model version and point an alias at a revision
- trainer / launcher / harness: Fake collaborators with call recording
- make_controller: PipelineController wired to the fakes above
- exporter: In-memory span exporter receiving stagegate spans
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from stagegate.controller import PipelineController
from stagegate.promotion import PromotionEngine
from stagegate.registry.memory import InMemoryModelRegistry, InMemoryRegistryClient
from stagegate.schemas.config import DEFAULT_THRESHOLDS, ValidationConfig
from stagegate.schemas.pipeline import (
    IMAGE_KINDS,
    PROMOTED_KINDS,
    Environment,
    ResourceKind,
    StageName,
)
from stagegate.schemas.promotion import (
    PromotionClearance,
    QualityGateResult,
    SuiteResult,
    TestFailure,
)
from stagegate.stages import BuildStage, DeliveryStage, DeploymentStage, StagingStage
from stagegate.state_machine import PipelineStateMachine
from stagegate.store import InMemoryRunStore
from stagegate.telemetry import set_tracer
from stagegate.telemetry.logging import configure_logging
from stagegate.training import TrainingOutcome
from stagegate.validation import ServiceHandle, ValidationRunner

if TYPE_CHECKING:
    from collections.abc import Generator

    from stagegate.registry.base import RegistryClient

GOOD_METRICS = {"accuracy": 0.95, "precision": 0.93}


class FakeTrainer:
    """Trainer returning fixed metrics, or raising ``error``."""

    def __init__(
        self,
        metrics: Mapping[str, float] | None = None,
        error: BaseException | None = None,
    ) -> None:
        self.metrics = dict(GOOD_METRICS if metrics is None else metrics)
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def train(self, revision: str, image_ref: str) -> TrainingOutcome:
        self.calls.append((revision, image_ref))
        if self.error is not None:
            raise self.error
        return TrainingOutcome(metrics=self.metrics, source=f"s3://models/{revision}")


class FakeLauncher:
    """Launcher recording started and stopped services."""

    def __init__(self, endpoint: str = "http://svc.test:8080") -> None:
        self.endpoint = endpoint
        self.started: list[tuple[str, int, dict[str, str]]] = []
        self.stopped: list[ServiceHandle] = []
        self._ids = itertools.count(1)

    def start(self, image_ref: str, port: int, env_vars: Mapping[str, str]) -> ServiceHandle:
        self.started.append((image_ref, port, dict(env_vars)))
        return ServiceHandle(
            handle_id=f"svc-{next(self._ids)}",
            image_ref=image_ref,
            endpoint=self.endpoint,
        )

    def stop(self, handle: ServiceHandle) -> None:
        self.stopped.append(handle)


class FakeHarness:
    """Harness whose suites pass unless their name is in ``failing``."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []

    def run_suite(self, target_endpoint: str, suite_name: str) -> SuiteResult:
        self.calls.append((target_endpoint, suite_name))
        if suite_name in self.failing:
            return SuiteResult(
                suite=suite_name,
                target=target_endpoint,
                passed=False,
                failures=[TestFailure(name="test_predict", message="status 500")],
            )
        return SuiteResult(suite=suite_name, target=target_endpoint, passed=True, duration_ms=12)


@pytest.fixture
def registries() -> dict[ResourceKind, RegistryClient]:
    """Fresh in-memory registries for every resource kind."""
    # Registries bind their loggers at construction, so configure logging first
    # (as the CLI does before build_controller) to keep their output off stdout.
    configure_logging()
    return {
        ResourceKind.MODEL_VERSION: InMemoryModelRegistry("churn"),
        ResourceKind.TRAINING_IMAGE: InMemoryRegistryClient(ResourceKind.TRAINING_IMAGE),
        ResourceKind.SERVING_IMAGE: InMemoryRegistryClient(ResourceKind.SERVING_IMAGE),
    }


@pytest.fixture
def model_registry(registries: dict[ResourceKind, RegistryClient]) -> InMemoryModelRegistry:
    """The in-memory model registry from ``registries``."""
    registry = registries[ResourceKind.MODEL_VERSION]
    assert isinstance(registry, InMemoryModelRegistry)
    return registry


@pytest.fixture
def seed_images(
    registries: dict[ResourceKind, RegistryClient],
) -> Callable[[str], None]:
    """Return a function pushing both images for a revision."""

    def _seed(revision: str) -> None:
        for kind in IMAGE_KINDS:
            registries[kind].push(revision, {"digest": f"sha256:{kind.value}-{revision}"})

    return _seed


@pytest.fixture
def promote_to(
    registries: dict[ResourceKind, RegistryClient],
    model_registry: InMemoryModelRegistry,
    seed_images: Callable[[str], None],
) -> Callable[..., str]:
    """Return a function placing a revision in an environment directly.

    Registers images and a model version for the revision and points the
    environment alias at them, bypassing the promotion engine. Returns the
    model version.
    """

    def _promote(
        revision: str,
        env: Environment,
        metrics: Mapping[str, float] | None = None,
    ) -> str:
        seed_images(revision)
        recorded = dict(GOOD_METRICS if metrics is None else metrics)
        version = model_registry.register(revision, recorded)
        model_registry.tag_alias(version, env.value)
        registries[ResourceKind.SERVING_IMAGE].tag_alias(revision, env.value)
        return version

    return _promote


@pytest.fixture
def make_clearance() -> Callable[..., PromotionClearance]:
    """Return a factory for promotion clearances."""

    def _clearance(
        revision: str,
        target: Environment,
        model_version: str,
        *,
        gate_passed: bool = True,
        validation_passed: bool = True,
    ) -> PromotionClearance:
        return PromotionClearance(
            revision=revision,
            target_environment=target,
            quality_gate=QualityGateResult(
                model_version=model_version,
                revision=revision,
                passed=gate_passed,
            ),
            validation=SuiteResult(
                suite="smoke",
                target="http://svc.test:8080",
                passed=validation_passed,
            ),
        )

    return _clearance


@pytest.fixture
def ready_client() -> Generator[httpx.Client, None, None]:
    """HTTP client whose every request answers 200."""
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    yield client
    client.close()


@pytest.fixture
def validation_config() -> ValidationConfig:
    """Validation config with short readiness timings."""
    return ValidationConfig(readiness_timeout_seconds=0.2, poll_interval_seconds=0.01)


@pytest.fixture
def trainer() -> FakeTrainer:
    return FakeTrainer()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def harness() -> FakeHarness:
    return FakeHarness()


@pytest.fixture
def make_trainer() -> type[FakeTrainer]:
    """The FakeTrainer class, for tests needing custom metrics or errors."""
    return FakeTrainer


@pytest.fixture
def make_harness() -> type[FakeHarness]:
    """The FakeHarness class, for tests needing failing suites."""
    return FakeHarness


@pytest.fixture
def runner(
    launcher: FakeLauncher,
    harness: FakeHarness,
    validation_config: ValidationConfig,
    ready_client: httpx.Client,
) -> ValidationRunner:
    """ValidationRunner over the fake launcher and harness."""
    return ValidationRunner(launcher, harness, validation_config, http_client=ready_client)


@pytest.fixture
def make_controller(
    registries: dict[ResourceKind, RegistryClient],
    launcher: FakeLauncher,
    harness: FakeHarness,
    trainer: FakeTrainer,
    validation_config: ValidationConfig,
    ready_client: httpx.Client,
) -> Callable[..., PipelineController]:
    """Return a factory for controllers wired to in-memory registries and fakes."""

    def _make(**overrides: Any) -> PipelineController:
        runner = ValidationRunner(
            overrides.get("launcher", launcher),
            overrides.get("harness", harness),
            validation_config,
            http_client=ready_client,
        )
        promotion = PromotionEngine(registries)
        thresholds = overrides.get("thresholds", DEFAULT_THRESHOLDS)
        stages = {
            StageName.BUILD: BuildStage(registries),
            StageName.DELIVERY: DeliveryStage(
                registries,
                trainer=overrides.get("trainer", trainer),
                runner=runner,
                promotion=promotion,
                thresholds=thresholds,
            ),
            StageName.STAGING: StagingStage(
                registries,
                runner=runner,
                promotion=promotion,
                thresholds=thresholds,
            ),
            StageName.DEPLOYMENT: DeploymentStage(registries, runner=runner),
        }
        state_machine = PipelineStateMachine(overrides.get("store", InMemoryRunStore()))
        return PipelineController(registries, state_machine, stages)

    return _make


@pytest.fixture
def alias_revisions(
    registries: dict[ResourceKind, RegistryClient],
) -> Callable[[Environment], dict[ResourceKind, str | None]]:
    """Return a function reporting the revision each promoted kind's alias traces to."""

    def _revisions(env: Environment) -> dict[ResourceKind, str | None]:
        result: dict[ResourceKind, str | None] = {}
        for kind in PROMOTED_KINDS:
            version = registries[kind].resolve_alias(env.value)
            result[kind] = registries[kind].revision_of(version) if version else None
        return result

    return _revisions


@pytest.fixture
def exporter() -> Generator[InMemorySpanExporter, None, None]:
    """Route stagegate spans to an in-memory exporter."""
    span_exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    set_tracer(provider.get_tracer("stagegate-test"))
    yield span_exporter
    set_tracer(None)
