"""Configuration schemas for the pipeline controller.

Configuration is read from a YAML file (``stagegate.yaml`` by default) and
overlaid with environment variables, so that credentials never need to be
written to disk.

Recognized environment variables:
    STAGEGATE_REGISTRY_URI: Image registry URI (``oci://host/namespace``)
    STAGEGATE_REGISTRY_USERNAME / STAGEGATE_REGISTRY_PASSWORD: Registry credentials
    STAGEGATE_MODEL_REGISTRY_URI: Model registry tracking URI
    STAGEGATE_MODEL_REGISTRY_TOKEN: Model registry bearer token
        (falls back to MLFLOW_TRACKING_TOKEN)
    STAGEGATE_MODEL_NAME: Registered model name
    STAGEGATE_EXPERIMENT_NAME: Experiment that training runs are logged under
    STAGEGATE_MIN_ACCURACY / STAGEGATE_MIN_PRECISION: Quality gate thresholds
    STAGEGATE_STATE_DIR: Directory holding the stage attempt audit trail

Example:
    >>> config = PipelineConfig.load("stagegate.yaml")
    >>> config.quality_gate.thresholds
    {'accuracy': 0.9, 'precision': 0.85}
"""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from stagegate.errors import ConfigurationError
from stagegate.schemas.pipeline import StageName

DEFAULT_CONFIG_FILE = "stagegate.yaml"

DEFAULT_THRESHOLDS: dict[str, float] = {"accuracy": 0.90, "precision": 0.85}


class RetryConfig(BaseModel):
    """Retry policy configuration for transient registry failures.

    Uses exponential backoff with optional jitter.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=10, description="Maximum attempts")
    initial_delay_ms: int = Field(default=500, ge=0, description="First retry delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=5.0)
    max_delay_ms: int = Field(default=10000, ge=0, description="Delay cap")
    jitter: bool = Field(default=True, description="Randomize delays by +/-25%")


class RegistryConfig(BaseModel):
    """Container image registry configuration.

    Each artifact kind lives in its own repository below ``uri``
    (``<uri>/training``, ``<uri>/serving``).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backend: Literal["oci", "memory"] = Field(default="memory")
    uri: str | None = Field(default=None, description="oci://host/namespace")
    username: str | None = Field(default=None)
    password: SecretStr | None = Field(default=None)
    tls_verify: bool = Field(default=True)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("uri")
    @classmethod
    def _check_uri(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith("oci://"):
            raise ValueError("registry uri must start with oci://")
        return value.rstrip("/") if value else value


class ModelRegistryConfig(BaseModel):
    """Model registry configuration (MLflow-compatible REST API)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    backend: Literal["mlflow", "memory"] = Field(default="memory")
    uri: str | None = Field(default=None, description="Tracking server base URL")
    token: SecretStr | None = Field(default=None)
    model_name: str = Field(default="model", min_length=1)
    experiment_name: str = Field(default="stagegate", min_length=1)
    timeout_seconds: float = Field(default=30.0, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class QualityGateConfig(BaseModel):
    """Metric thresholds every model version must meet.

    The gate is always evaluated; an empty threshold mapping is rejected so
    that no configuration can produce an ungated promotion path.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    thresholds: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))

    @field_validator("thresholds")
    @classmethod
    def _check_thresholds(cls, value: dict[str, float]) -> dict[str, float]:
        if not value:
            raise ValueError("at least one quality gate threshold is required")
        for name, threshold in value.items():
            if not name:
                raise ValueError("threshold metric names must be non-empty")
            if not math.isfinite(threshold):
                raise ValueError(f"threshold for {name} must be a finite number")
        return value


class ValidationConfig(BaseModel):
    """Functional validation of a freshly started service.

    ``command`` is run for each suite with ``${TARGET_ENDPOINT}`` and
    ``${SUITE}`` substituted; exit code 0 means the suite passed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str | None = Field(default=None)
    suites: dict[StageName, str] = Field(
        default_factory=lambda: {
            StageName.DELIVERY: "smoke",
            StageName.STAGING: "functional",
        }
    )
    launcher: Literal["docker", "external"] = Field(default="docker")
    external_endpoint: str | None = Field(
        default=None,
        description="Base URL of an already running service (launcher=external)",
    )
    host: str = Field(default="localhost")
    port: int = Field(default=8080, ge=1, le=65535)
    readiness_path: str = Field(default="/health")
    readiness_timeout_seconds: float = Field(default=120.0, gt=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    suite_timeout_seconds: int = Field(default=1800, ge=1)
    env: dict[str, str] = Field(default_factory=dict, description="Extra service env vars")


class TrainingConfig(BaseModel):
    """Training collaborator invoked by the delivery stage.

    ``command`` runs with ``${REVISION}``, ``${TRAINING_IMAGE}`` and
    ``${METRICS_FILE}`` substituted and must write a JSON document with a
    ``metrics`` mapping (and optionally ``source``) to the metrics file.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str | None = Field(default=None)
    metrics_file: str = Field(default="metrics.json")
    timeout_seconds: int = Field(default=3600, ge=1)


class PipelineConfig(BaseModel):
    """Top-level pipeline controller configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    model_registry: ModelRegistryConfig = Field(default_factory=ModelRegistryConfig)
    quality_gate: QualityGateConfig = Field(default_factory=QualityGateConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    training: TrainingConfig = Field(default_factory=TrainingConfig)
    state_dir: Path = Field(default=Path(".stagegate"))

    @classmethod
    def load(
        cls,
        path: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> PipelineConfig:
        """Load configuration from YAML and apply environment overrides.

        Args:
            path: Configuration file. If None, ``stagegate.yaml`` in the
                working directory is used when it exists.
            environ: Environment mapping (defaults to ``os.environ``).

        Returns:
            Validated configuration.

        Raises:
            ConfigurationError: If the file cannot be parsed or is invalid.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}

        if path is None and Path(DEFAULT_CONFIG_FILE).exists():
            path = DEFAULT_CONFIG_FILE
        if path is not None:
            data = _read_yaml(Path(path))

        _apply_env_overrides(data, env)

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    try:
        with path.open() as f:
            loaded = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse configuration YAML: {e}") from e
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Configuration must be a mapping: {path}")
    return loaded


def _apply_env_overrides(data: dict[str, Any], env: Mapping[str, str]) -> None:
    registry = data.setdefault("registry", {})
    if env.get("STAGEGATE_REGISTRY_URI"):
        registry["uri"] = env["STAGEGATE_REGISTRY_URI"]
        registry.setdefault("backend", "oci")
    if env.get("STAGEGATE_REGISTRY_USERNAME"):
        registry["username"] = env["STAGEGATE_REGISTRY_USERNAME"]
    if env.get("STAGEGATE_REGISTRY_PASSWORD"):
        registry["password"] = env["STAGEGATE_REGISTRY_PASSWORD"]

    model_registry = data.setdefault("model_registry", {})
    if env.get("STAGEGATE_MODEL_REGISTRY_URI"):
        model_registry["uri"] = env["STAGEGATE_MODEL_REGISTRY_URI"]
        model_registry.setdefault("backend", "mlflow")
    token = env.get("STAGEGATE_MODEL_REGISTRY_TOKEN") or env.get("MLFLOW_TRACKING_TOKEN")
    if token:
        model_registry["token"] = token
    if env.get("STAGEGATE_MODEL_NAME"):
        model_registry["model_name"] = env["STAGEGATE_MODEL_NAME"]
    if env.get("STAGEGATE_EXPERIMENT_NAME"):
        model_registry["experiment_name"] = env["STAGEGATE_EXPERIMENT_NAME"]

    for metric in ("accuracy", "precision"):
        raw = env.get(f"STAGEGATE_MIN_{metric.upper()}")
        if not raw:
            continue
        try:
            value = float(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"STAGEGATE_MIN_{metric.upper()} must be a number, got {raw!r}"
            ) from e
        gate = data.setdefault("quality_gate", {})
        thresholds = gate.setdefault("thresholds", dict(DEFAULT_THRESHOLDS))
        thresholds[metric] = value

    if env.get("STAGEGATE_STATE_DIR"):
        data["state_dir"] = env["STAGEGATE_STATE_DIR"]


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_THRESHOLDS",
    "ModelRegistryConfig",
    "PipelineConfig",
    "QualityGateConfig",
    "RegistryConfig",
    "RetryConfig",
    "TrainingConfig",
    "ValidationConfig",
]
