"""Unit tests for the promotion engine.

Requirements tested:
    PROMO-001: Promotion moves exactly one environment forward
    PROMO-002: Model version is tagged before the serving image
    PROMO-003: All promoted kinds trace back to the same revision
    PROMO-004: No alias moves without passing gate evidence
    PROMO-005: A failed promotion restores the previous alias holders
    PROMO-006: Rollback failures surface as a partial promotion
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from stagegate.errors import (
    ContextResolutionError,
    InvalidTransitionError,
    PartialPromotionError,
    PromotionBlockedError,
    PromotionFailedError,
    RegistryUnavailableError,
)
from stagegate.promotion import PromotionEngine
from stagegate.registry.base import RegistryClient
from stagegate.registry.memory import InMemoryModelRegistry
from stagegate.schemas.pipeline import Environment, ResourceKind
from stagegate.schemas.promotion import PromotionClearance

Registries = dict[ResourceKind, RegistryClient]


@pytest.fixture
def engine(registries: Registries) -> PromotionEngine:
    return PromotionEngine(registries)


@pytest.fixture
def committed(
    seed_images: Callable[[str], None],
    model_registry: InMemoryModelRegistry,
) -> str:
    """Register images and a passing model version for abc123; return the model version."""
    seed_images("abc123")
    return model_registry.register("abc123", {"accuracy": 0.95, "precision": 0.93})


def _fail_set_alias(monkeypatch: pytest.MonkeyPatch, registry: RegistryClient) -> None:
    def _raise(version: str, alias: str) -> None:
        raise RegistryUnavailableError(registry.location, "HTTP 503: unavailable")

    monkeypatch.setattr(registry, "_set_alias", _raise)


class TestPromote:
    """Tests for successful promotions."""

    @pytest.mark.requirement("PROMO-001")
    def test_commit_to_staging(
        self,
        engine: PromotionEngine,
        committed: str,
        make_clearance: Callable[..., PromotionClearance],
        alias_revisions: Callable[[Environment], dict[ResourceKind, str | None]],
    ) -> None:
        """Test a revision is promoted into staging across all promoted kinds."""
        clearance = make_clearance("abc123", Environment.STAGING, committed)

        result = engine.promote("abc123", Environment.STAGING, clearance=clearance)

        assert result.revision == "abc123"
        assert result.source_environment is Environment.COMMIT
        assert result.target_environment is Environment.STAGING
        assert result.versions == {
            ResourceKind.MODEL_VERSION: committed,
            ResourceKind.SERVING_IMAGE: "abc123",
        }
        assert all(step.changed and step.previous_version is None for step in result.steps)
        assert set(alias_revisions(Environment.STAGING).values()) == {"abc123"}

    @pytest.mark.requirement("PROMO-002")
    def test_model_tagged_before_serving_image(
        self,
        engine: PromotionEngine,
        registries: Registries,
        committed: str,
        make_clearance: Callable[..., PromotionClearance],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test the model version alias moves first."""
        order: list[ResourceKind] = []
        for kind, registry in registries.items():
            original = registry.tag_alias

            def _recording(
                version: str, alias: str, _kind: ResourceKind = kind, _orig: Any = original
            ) -> None:
                order.append(_kind)
                _orig(version, alias)

            monkeypatch.setattr(registry, "tag_alias", _recording)

        result = engine.promote(
            "abc123",
            "staging",
            resource_kinds=[ResourceKind.SERVING_IMAGE, ResourceKind.MODEL_VERSION],
            clearance=make_clearance("abc123", Environment.STAGING, committed),
        )

        assert order == [ResourceKind.MODEL_VERSION, ResourceKind.SERVING_IMAGE]
        assert [step.kind for step in result.steps] == order

    @pytest.mark.requirement("PROMO-001")
    def test_staging_to_production(
        self,
        engine: PromotionEngine,
        promote_to: Callable[..., str],
        make_clearance: Callable[..., PromotionClearance],
        alias_revisions: Callable[[Environment], dict[ResourceKind, str | None]],
    ) -> None:
        """Test promoting the staging alias moves production to the same versions."""
        promote_to("abc123", Environment.PRODUCTION)
        version = promote_to("def456", Environment.STAGING)

        result = engine.promote(
            "staging",
            Environment.PRODUCTION,
            clearance=make_clearance("def456", Environment.PRODUCTION, version),
        )

        assert result.source == "staging"
        assert result.source_environment is Environment.STAGING
        previous = {step.kind: step.previous_version for step in result.steps}
        assert previous == {ResourceKind.MODEL_VERSION: "1", ResourceKind.SERVING_IMAGE: "abc123"}
        assert set(alias_revisions(Environment.PRODUCTION).values()) == {"def456"}

    @pytest.mark.requirement("PROMO-001")
    def test_repeat_promotion_is_unchanged(
        self,
        engine: PromotionEngine,
        committed: str,
        make_clearance: Callable[..., PromotionClearance],
    ) -> None:
        """Test promoting the same revision twice leaves aliases untouched."""
        clearance = make_clearance("abc123", Environment.STAGING, committed)
        engine.promote("abc123", Environment.STAGING, clearance=clearance)

        result = engine.promote("abc123", Environment.STAGING, clearance=clearance)

        assert [step.changed for step in result.steps] == [False, False]
        assert result.versions[ResourceKind.MODEL_VERSION] == committed


class TestTransitions:
    """Tests for transition validation."""

    @pytest.mark.requirement("PROMO-001")
    @pytest.mark.parametrize(
        ("source", "target", "reason"),
        [
            ("production", "staging", "backward"),
            ("staging", "staging", "backward"),
            ("abc123", "production", "skip"),
            ("abc123", "commit", "environment alias"),
            ("abc123", "qa", "unknown environment"),
        ],
    )
    def test_invalid_transitions(
        self,
        engine: PromotionEngine,
        committed: str,
        make_clearance: Callable[..., PromotionClearance],
        source: str,
        target: str,
        reason: str,
    ) -> None:
        """Test backward, skipping and unknown transitions are rejected."""
        clearance = make_clearance("abc123", Environment.STAGING, committed)

        with pytest.raises(InvalidTransitionError, match=reason):
            engine.promote(source, target, clearance=clearance)


class TestSourceResolution:
    """Tests for resolving the promotion source."""

    @pytest.mark.requirement("PROMO-003")
    def test_unknown_revision(
        self,
        engine: PromotionEngine,
        make_clearance: Callable[..., PromotionClearance],
    ) -> None:
        """Test a revision with nothing registered cannot be promoted."""
        clearance = make_clearance("zzz999", Environment.STAGING, "1")

        with pytest.raises(ContextResolutionError) as exc_info:
            engine.promote("zzz999", Environment.STAGING, clearance=clearance, stage="delivery")

        assert exc_info.value.stage == "delivery"
        assert exc_info.value.revision == "zzz999"

    @pytest.mark.requirement("PROMO-003")
    def test_lineage_mismatch(
        self,
        engine: PromotionEngine,
        registries: Registries,
        promote_to: Callable[..., str],
        seed_images: Callable[[str], None],
        make_clearance: Callable[..., PromotionClearance],
    ) -> None:
        """Test an alias whose kinds trace to different revisions is refused."""
        version = promote_to("abc123", Environment.STAGING)
        seed_images("def456")
        registries[ResourceKind.SERVING_IMAGE].tag_alias("def456", "staging")

        with pytest.raises(ContextResolutionError, match="different revisions"):
            engine.promote(
                "staging",
                Environment.PRODUCTION,
                clearance=make_clearance("abc123", Environment.PRODUCTION, version),
            )

        assert registries[ResourceKind.MODEL_VERSION].resolve_alias("production") is None


class TestClearance:
    """Tests for gate evidence checks."""

    @pytest.mark.requirement("PROMO-004")
    @pytest.mark.parametrize(
        ("overrides", "reason"),
        [
            ({"gate_passed": False}, "quality gate failed"),
            ({"validation_passed": False}, "validation suite"),
            ({"revision": "def456"}, "revision def456"),
            ({"target": Environment.PRODUCTION}, "clearance is for 'production'"),
            ({"model_version": "7"}, "evaluated model version 7"),
        ],
    )
    def test_blocked(
        self,
        engine: PromotionEngine,
        registries: Registries,
        committed: str,
        make_clearance: Callable[..., PromotionClearance],
        overrides: dict[str, Any],
        reason: str,
    ) -> None:
        """Test mismatched or failed clearances block the promotion."""
        args: dict[str, Any] = {
            "revision": "abc123",
            "target": Environment.STAGING,
            "model_version": committed,
        }
        args.update(overrides)
        gate_kwargs = {k: args.pop(k) for k in ("gate_passed", "validation_passed") if k in args}
        clearance = make_clearance(
            args["revision"], args["target"], args["model_version"], **gate_kwargs
        )

        with pytest.raises(PromotionBlockedError, match=reason):
            engine.promote("abc123", Environment.STAGING, clearance=clearance)

        for registry in registries.values():
            assert registry.resolve_alias("staging") is None

    @pytest.mark.requirement("PROMO-004")
    def test_missing_clearance(self, engine: PromotionEngine, committed: str) -> None:
        """Test promotion without any clearance is refused."""
        with pytest.raises(PromotionBlockedError, match="no quality gate"):
            engine.promote("abc123", Environment.STAGING, clearance=None)


class TestRollback:
    """Tests for failure handling during tagging."""

    @pytest.mark.requirement("PROMO-005")
    def test_failure_restores_previous_holders(
        self,
        engine: PromotionEngine,
        registries: Registries,
        promote_to: Callable[..., str],
        make_clearance: Callable[..., PromotionClearance],
        alias_revisions: Callable[[Environment], dict[ResourceKind, str | None]],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a serving image tag failure restores the model alias."""
        promote_to("abc123", Environment.STAGING)
        version = promote_to("def456", Environment.COMMIT)
        _fail_set_alias(monkeypatch, registries[ResourceKind.SERVING_IMAGE])

        with pytest.raises(PromotionFailedError) as exc_info:
            engine.promote(
                "def456",
                Environment.STAGING,
                clearance=make_clearance("def456", Environment.STAGING, version),
            )

        assert exc_info.value.kind == ResourceKind.SERVING_IMAGE.value
        assert set(alias_revisions(Environment.STAGING).values()) == {"abc123"}

    @pytest.mark.requirement("PROMO-005")
    def test_rollback_restores_holder_seen_under_lock(
        self,
        engine: PromotionEngine,
        registries: Registries,
        promote_to: Callable[..., str],
        make_clearance: Callable[..., PromotionClearance],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test rollback restores the holder the tag displaced, not an earlier stale read."""
        held = promote_to("abc123", Environment.STAGING)
        version = promote_to("def456", Environment.COMMIT)
        model = registries[ResourceKind.MODEL_VERSION]
        # The first read of the staging alias predates a concurrent promotion.
        real_resolve = model.resolve_alias
        stale = iter([None])
        monkeypatch.setattr(model, "resolve_alias", lambda alias: next(stale, real_resolve(alias)))
        _fail_set_alias(monkeypatch, registries[ResourceKind.SERVING_IMAGE])

        with pytest.raises(PromotionFailedError):
            engine.promote(
                "def456",
                Environment.STAGING,
                clearance=make_clearance("def456", Environment.STAGING, version),
            )

        assert real_resolve("staging") == held

    @pytest.mark.requirement("PROMO-005")
    def test_failure_removes_new_alias(
        self,
        engine: PromotionEngine,
        registries: Registries,
        committed: str,
        make_clearance: Callable[..., PromotionClearance],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test an alias that had no holder is removed again on failure."""
        _fail_set_alias(monkeypatch, registries[ResourceKind.SERVING_IMAGE])

        with pytest.raises(PromotionFailedError):
            engine.promote(
                "abc123",
                Environment.STAGING,
                clearance=make_clearance("abc123", Environment.STAGING, committed),
            )

        assert registries[ResourceKind.MODEL_VERSION].resolve_alias("staging") is None

    @pytest.mark.requirement("PROMO-006")
    def test_rollback_failure_is_partial(
        self,
        engine: PromotionEngine,
        registries: Registries,
        committed: str,
        make_clearance: Callable[..., PromotionClearance],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a failed rollback reports the inconsistent kinds."""
        model = registries[ResourceKind.MODEL_VERSION]
        _fail_set_alias(monkeypatch, registries[ResourceKind.SERVING_IMAGE])

        def _no_delete(alias: str) -> None:
            raise RegistryUnavailableError(model.location, "connection reset")

        monkeypatch.setattr(model, "_delete_alias", _no_delete)

        with pytest.raises(PartialPromotionError) as exc_info:
            engine.promote(
                "abc123",
                Environment.STAGING,
                clearance=make_clearance("abc123", Environment.STAGING, committed),
            )

        error = exc_info.value
        assert error.exit_code == 11
        assert error.alias == "staging"
        assert error.inconsistent == {"model_version": committed}
        assert error.expected == {"model_version": None}
        assert model.resolve_alias("staging") == committed
