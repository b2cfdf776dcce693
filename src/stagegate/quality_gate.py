"""Quality gate evaluation for registered model versions.

The gate compares a model version's recorded metrics against configured
minimums. A metric that was never recorded fails the gate; it is never
skipped.

Example:
    >>> from stagegate.schemas.pipeline import ModelVersion
    >>> mv = ModelVersion(
    ...     model_name="churn",
    ...     immutable_version="3",
    ...     revision="abc123",
    ...     metrics={"accuracy": 0.95, "precision": 0.80},
    ... )
    >>> result = evaluate(mv, {"accuracy": 0.90, "precision": 0.85})
    >>> result.passed
    False
    >>> result.failed_metrics
    {'precision': (0.8, 0.85)}
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from stagegate.registry.base import ModelRegistryClient
from stagegate.schemas.config import DEFAULT_THRESHOLDS
from stagegate.schemas.pipeline import ModelVersion
from stagegate.schemas.promotion import MetricEvaluation, QualityGateResult
from stagegate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


def evaluate(
    model_version: ModelVersion,
    thresholds: Mapping[str, float] | None = None,
) -> QualityGateResult:
    """Evaluate a model version against metric thresholds.

    Pure and deterministic: the same metrics and thresholds always produce
    the same result.

    Args:
        model_version: Registered model version with its recorded metrics.
        thresholds: ``{metric: minimum}``. Defaults to accuracy 0.90 and
            precision 0.85.

    Returns:
        QualityGateResult that passed iff every configured metric is present
        and at or above its threshold.
    """
    limits = dict(DEFAULT_THRESHOLDS if thresholds is None else thresholds)
    evaluations: list[MetricEvaluation] = []
    for metric in sorted(limits):
        threshold = limits[metric]
        value = model_version.metrics.get(metric)
        evaluations.append(
            MetricEvaluation(
                metric=metric,
                value=value,
                threshold=threshold,
                passed=value is not None and value >= threshold,
            )
        )

    return QualityGateResult(
        model_version=model_version.immutable_version,
        revision=model_version.revision,
        evaluations=evaluations,
        passed=all(e.passed for e in evaluations),
    )


def evaluate_version(
    registry: ModelRegistryClient,
    version: str,
    thresholds: Mapping[str, float] | None = None,
) -> QualityGateResult:
    """Fetch a model version's metrics and evaluate them.

    The metrics are read once, from the immutable version (never an alias),
    so the result cannot change if an alias moves during evaluation.

    Raises:
        NotFoundError: If the version does not exist.
    """
    with create_span(
        "stagegate.quality_gate",
        attributes={"model_name": registry.model_name, "version": version},
    ) as span:
        model_version = registry.model_version(version)
        result = evaluate(model_version, thresholds)
        span.set_attribute("passed", result.passed)

    log = logger.bind(
        model_name=registry.model_name,
        version=version,
        revision=model_version.revision,
    )
    if result.passed:
        log.info("quality_gate_passed")
    else:
        log.warning(
            "quality_gate_failed",
            missing=result.missing_metrics,
            below_threshold=sorted(result.failed_metrics),
        )
    return result


__all__ = ["evaluate", "evaluate_version"]
