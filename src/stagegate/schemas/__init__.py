"""Schema definitions for the stagegate pipeline controller.

Pipeline Models:
    Environment, StageName, StageStatus: Ordered lifecycle enums
    ResourceKind, ArtifactKind: Versioned resource kinds
    Artifact, ModelVersion: Registered resources
    UpstreamEvent, StageInvocation: Trigger inputs and claimed invocations
    StageAttempt, PipelineRun: Audit trail
    EnvironmentStatus: Which revision is at which environment

Gate and Promotion Models:
    QualityGateResult, MetricEvaluation: Metric threshold evaluation
    SuiteResult, TestFailure: Functional validation outcome
    PromotionClearance, PromotionResult, PromotionStep: Promotion records

Configuration Models:
    PipelineConfig and its sections (loaded from YAML with env overrides)
"""

from __future__ import annotations

from stagegate.schemas.config import (
    ModelRegistryConfig,
    PipelineConfig,
    QualityGateConfig,
    RegistryConfig,
    RetryConfig,
    TrainingConfig,
    ValidationConfig,
)
from stagegate.schemas.pipeline import (
    ENVIRONMENT_ORDER,
    IMAGE_KINDS,
    PROMOTED_KINDS,
    STAGE_ORDER,
    Artifact,
    ArtifactKind,
    Conclusion,
    Environment,
    EnvironmentStatus,
    ModelVersion,
    PipelineRun,
    ResourceKind,
    StageAttempt,
    StageInvocation,
    StageName,
    StageStatus,
    TriggerSource,
    UpstreamEvent,
)
from stagegate.schemas.promotion import (
    MetricEvaluation,
    PromotionClearance,
    PromotionResult,
    PromotionStep,
    QualityGateResult,
    SuiteResult,
    TestFailure,
)

__all__ = [
    "ENVIRONMENT_ORDER",
    "IMAGE_KINDS",
    "PROMOTED_KINDS",
    "STAGE_ORDER",
    "Artifact",
    "ArtifactKind",
    "Conclusion",
    "Environment",
    "EnvironmentStatus",
    "MetricEvaluation",
    "ModelRegistryConfig",
    "ModelVersion",
    "PipelineConfig",
    "PipelineRun",
    "PromotionClearance",
    "PromotionResult",
    "PromotionStep",
    "QualityGateConfig",
    "QualityGateResult",
    "RegistryConfig",
    "ResourceKind",
    "RetryConfig",
    "StageAttempt",
    "StageInvocation",
    "StageName",
    "StageStatus",
    "SuiteResult",
    "TestFailure",
    "TrainingConfig",
    "TriggerSource",
    "UpstreamEvent",
    "ValidationConfig",
]
