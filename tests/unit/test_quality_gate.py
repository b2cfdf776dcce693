"""Unit tests for quality gate evaluation.

Requirements tested:
    GATE-001: A model version passes iff every metric meets its threshold
    GATE-002: A metric that was never recorded fails the gate
    GATE-003: Evaluation is deterministic for the same inputs
"""

from __future__ import annotations

import pytest

from stagegate.errors import MissingMetricError, NotFoundError, QualityGateFailedError
from stagegate.quality_gate import evaluate, evaluate_version
from stagegate.registry import InMemoryModelRegistry
from stagegate.schemas.pipeline import ModelVersion

THRESHOLDS = {"accuracy": 0.90, "precision": 0.85}


def _version(**metrics: float) -> ModelVersion:
    return ModelVersion(
        model_name="churn",
        immutable_version="3",
        revision="abc123",
        metrics=metrics,
    )


class TestEvaluate:
    """Tests for evaluate()."""

    @pytest.mark.requirement("GATE-001")
    def test_all_metrics_above_threshold(self) -> None:
        """Test a model version meeting every threshold passes."""
        result = evaluate(_version(accuracy=0.95, precision=0.93), THRESHOLDS)

        assert result.passed
        assert result.model_version == "3"
        assert result.revision == "abc123"
        assert [e.metric for e in result.evaluations] == ["accuracy", "precision"]
        result.raise_for_failure()

    @pytest.mark.requirement("GATE-001")
    def test_metric_below_threshold(self) -> None:
        """Test one metric below its minimum fails the gate."""
        result = evaluate(_version(accuracy=0.95, precision=0.80), THRESHOLDS)

        assert not result.passed
        assert result.failed_metrics == {"precision": (0.80, 0.85)}
        assert result.missing_metrics == []
        with pytest.raises(QualityGateFailedError) as exc_info:
            result.raise_for_failure(stage="delivery")
        assert exc_info.value.stage == "delivery"

    @pytest.mark.requirement("GATE-001")
    def test_value_at_threshold_passes(self) -> None:
        """Test thresholds are inclusive minimums."""
        assert evaluate(_version(accuracy=0.90, precision=0.85), THRESHOLDS).passed

    @pytest.mark.requirement("GATE-002")
    def test_missing_metric_fails(self) -> None:
        """Test a configured metric that was never recorded fails the gate."""
        result = evaluate(_version(accuracy=0.99), THRESHOLDS)

        assert not result.passed
        assert result.missing_metrics == ["precision"]
        assert result.failed_metrics == {}
        with pytest.raises(MissingMetricError):
            result.raise_for_failure()

    @pytest.mark.requirement("GATE-001")
    def test_unconfigured_metrics_ignored(self) -> None:
        """Test extra recorded metrics do not affect the result."""
        result = evaluate(_version(accuracy=0.95, precision=0.9, recall=0.1), THRESHOLDS)

        assert result.passed
        assert {e.metric for e in result.evaluations} == set(THRESHOLDS)

    @pytest.mark.requirement("GATE-001")
    def test_default_thresholds(self) -> None:
        """Test accuracy 0.90 and precision 0.85 are the defaults."""
        assert evaluate(_version(accuracy=0.91, precision=0.86)).passed
        assert not evaluate(_version(accuracy=0.89, precision=0.99)).passed

    @pytest.mark.requirement("GATE-003")
    def test_deterministic(self) -> None:
        """Test repeated evaluation of the same inputs gives the same outcome."""
        model_version = _version(accuracy=0.95, precision=0.80)

        results = [evaluate(model_version, THRESHOLDS) for _ in range(3)]

        assert {r.passed for r in results} == {False}
        assert {tuple(r.evaluations) for r in results} == {tuple(results[0].evaluations)}


class TestEvaluateVersion:
    """Tests for evaluate_version() against a registry."""

    @pytest.mark.requirement("GATE-001")
    def test_reads_metrics_from_registry(self) -> None:
        """Test the registered metrics of the immutable version are evaluated."""
        registry = InMemoryModelRegistry("churn")
        version = registry.register("abc123", {"accuracy": 0.95, "precision": 0.93})

        result = evaluate_version(registry, version, THRESHOLDS)

        assert result.passed
        assert result.model_version == version

    @pytest.mark.requirement("GATE-001")
    def test_unknown_version(self) -> None:
        """Test evaluating a version that does not exist raises NotFoundError."""
        with pytest.raises(NotFoundError):
            evaluate_version(InMemoryModelRegistry("churn"), "9", THRESHOLDS)
