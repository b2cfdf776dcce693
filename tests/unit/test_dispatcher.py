"""Unit tests for the stage trigger dispatcher.

Requirements tested:
    DISP-001: Only successful upstream completions trigger the next stage
    DISP-002: Aliased stages resolve their context through the alias
    DISP-003: Duplicate upstream events are coalesced
    DISP-004: Manual dispatch defaults to the latest registered revision
    DISP-005: Unresolvable context fails the claimed attempt
"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from stagegate.dispatcher import StageTriggerDispatcher
from stagegate.errors import (
    ConcurrentStageExecutionError,
    ContextResolutionError,
    StageBlockedError,
)
from stagegate.registry.base import RegistryClient
from stagegate.schemas.pipeline import (
    Conclusion,
    Environment,
    ResourceKind,
    StageName,
    StageStatus,
    TriggerSource,
    UpstreamEvent,
)
from stagegate.state_machine import PipelineStateMachine

Registries = dict[ResourceKind, RegistryClient]


@pytest.fixture
def machine() -> PipelineStateMachine:
    return PipelineStateMachine()


@pytest.fixture
def dispatcher(machine: PipelineStateMachine, registries: Registries) -> StageTriggerDispatcher:
    return StageTriggerDispatcher(machine, registries)


def _complete_through(machine: PipelineStateMachine, last: StageName, revision: str) -> None:
    """Record succeeded attempts for every stage up to and including ``last``."""
    for stage in StageName:
        trigger = (
            TriggerSource.PUSH if stage is StageName.BUILD else TriggerSource.UPSTREAM_COMPLETION
        )
        attempt = machine.start(stage, revision, trigger)
        machine.complete(revision, attempt.attempt_id)
        if stage is last:
            return


def _event(
    stage: StageName,
    revision: str = "abc123",
    conclusion: Conclusion = Conclusion.SUCCESS,
) -> UpstreamEvent:
    return UpstreamEvent(upstream_stage=stage, conclusion=conclusion, revision=revision)


class TestUpstreamEvents:
    """Tests for on_upstream_event()."""

    @pytest.mark.requirement("DISP-002")
    def test_staging_resolves_alias(
        self,
        dispatcher: StageTriggerDispatcher,
        machine: PipelineStateMachine,
        promote_to: Callable[..., str],
    ) -> None:
        """Test staging binds to the versions delivery tagged, via the staging alias."""
        version = promote_to("abc123", Environment.STAGING)
        _complete_through(machine, StageName.DELIVERY, "abc123")

        invocation = dispatcher.on_upstream_event(_event(StageName.DELIVERY))

        assert invocation is not None
        assert invocation.stage is StageName.STAGING
        assert invocation.alias == "staging"
        assert invocation.triggered_by is TriggerSource.UPSTREAM_COMPLETION
        assert invocation.versions == {
            ResourceKind.MODEL_VERSION: version,
            ResourceKind.SERVING_IMAGE: "abc123",
        }

    @pytest.mark.requirement("DISP-001")
    @pytest.mark.parametrize("conclusion", [Conclusion.FAILURE, Conclusion.CANCELLED])
    def test_unsuccessful_upstream_ignored(
        self,
        dispatcher: StageTriggerDispatcher,
        machine: PipelineStateMachine,
        conclusion: Conclusion,
    ) -> None:
        """Test failed or cancelled upstream stages trigger nothing."""
        assert dispatcher.on_upstream_event(_event(StageName.BUILD, conclusion=conclusion)) is None
        assert machine.history("abc123") == []

    @pytest.mark.requirement("DISP-001")
    def test_last_stage_triggers_nothing(self, dispatcher: StageTriggerDispatcher) -> None:
        """Test a deployment completion has no successor."""
        assert dispatcher.on_upstream_event(_event(StageName.DEPLOYMENT)) is None

    @pytest.mark.requirement("DISP-003")
    def test_duplicate_event_coalesced(
        self,
        dispatcher: StageTriggerDispatcher,
        machine: PipelineStateMachine,
        seed_images: Callable[[str], None],
    ) -> None:
        """Test a second event while the stage is running starts nothing new."""
        seed_images("abc123")
        _complete_through(machine, StageName.BUILD, "abc123")

        first = dispatcher.on_upstream_event(_event(StageName.BUILD))
        second = dispatcher.on_upstream_event(_event(StageName.BUILD))

        assert first is not None
        assert second is None
        delivery = [a for a in machine.history("abc123") if a.stage is StageName.DELIVERY]
        assert len(delivery) == 1

    @pytest.mark.requirement("DISP-001")
    def test_event_after_failed_predecessor(
        self,
        dispatcher: StageTriggerDispatcher,
        machine: PipelineStateMachine,
    ) -> None:
        """Test a stale success event cannot start a stage whose predecessor failed since."""
        attempt = machine.start(StageName.BUILD, "abc123", TriggerSource.PUSH)
        machine.fail("abc123", attempt.attempt_id, RuntimeError("docker build failed"))

        with pytest.raises(StageBlockedError):
            dispatcher.on_upstream_event(_event(StageName.BUILD))


class TestManualDispatch:
    """Tests for dispatch()."""

    @pytest.mark.requirement("DISP-004")
    def test_defaults_to_latest_revision(
        self,
        dispatcher: StageTriggerDispatcher,
        seed_images: Callable[[str], None],
    ) -> None:
        """Test a manual dispatch without a revision uses the newest serving image."""
        seed_images("abc123")
        seed_images("def456")

        invocation = dispatcher.dispatch("delivery")

        assert invocation.revision == "def456"
        assert invocation.triggered_by is TriggerSource.MANUAL_DISPATCH
        assert invocation.versions == {
            ResourceKind.TRAINING_IMAGE: "def456",
            ResourceKind.SERVING_IMAGE: "def456",
        }
        assert invocation.alias is None

    @pytest.mark.requirement("DISP-004")
    def test_build_needs_no_context(self, dispatcher: StageTriggerDispatcher) -> None:
        """Test build only needs a revision."""
        invocation = dispatcher.dispatch(StageName.BUILD, "abc123", TriggerSource.PUSH)

        assert invocation.versions == {}
        assert invocation.triggered_by is TriggerSource.PUSH

    @pytest.mark.requirement("DISP-005")
    def test_no_images_registered(
        self,
        dispatcher: StageTriggerDispatcher,
        machine: PipelineStateMachine,
    ) -> None:
        """Test a manual dispatch with nothing registered cannot pick a revision."""
        with pytest.raises(ContextResolutionError, match="no serving image"):
            dispatcher.dispatch(StageName.DELIVERY)

        assert machine.history() == []

    @pytest.mark.requirement("DISP-005")
    def test_missing_images_fail_attempt(
        self,
        dispatcher: StageTriggerDispatcher,
        machine: PipelineStateMachine,
    ) -> None:
        """Test an unresolvable context is recorded as a failed attempt."""
        with pytest.raises(ContextResolutionError, match="no training_image"):
            dispatcher.dispatch(StageName.DELIVERY, "abc123")

        [attempt] = machine.history("abc123")
        assert attempt.status is StageStatus.FAILED
        assert attempt.error_type == "ContextResolutionError"

    @pytest.mark.requirement("DISP-002")
    def test_alias_for_another_revision(
        self,
        dispatcher: StageTriggerDispatcher,
        promote_to: Callable[..., str],
    ) -> None:
        """Test an alias holding another revision's versions is refused."""
        promote_to("abc123", Environment.STAGING)

        with pytest.raises(ContextResolutionError, match="traces to revision abc123"):
            dispatcher.dispatch(StageName.STAGING, "def456")

    @pytest.mark.requirement("DISP-002")
    def test_unassigned_alias(self, dispatcher: StageTriggerDispatcher) -> None:
        """Test deployment cannot run before anything reached production."""
        with pytest.raises(ContextResolutionError, match="alias 'production' is not assigned"):
            dispatcher.dispatch(StageName.DEPLOYMENT, "abc123")

    @pytest.mark.requirement("DISP-003")
    def test_duplicate_manual_dispatch_raises(
        self,
        dispatcher: StageTriggerDispatcher,
        seed_images: Callable[[str], None],
    ) -> None:
        """Test a manual dispatch of a running stage is refused rather than coalesced."""
        seed_images("abc123")
        dispatcher.dispatch(StageName.DELIVERY, "abc123")

        with pytest.raises(ConcurrentStageExecutionError):
            dispatcher.dispatch(StageName.DELIVERY, "abc123")
