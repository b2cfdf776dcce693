"""Registry clients for container images and model versions.

Backends:
    ImageRegistryClient: OCI registry via ORAS (one repository per image kind)
    MlflowModelRegistry: MLflow REST API model registry
    InMemoryRegistryClient / InMemoryModelRegistry: single-process backends

Use :func:`create_registries` to build the set of clients a pipeline needs
from configuration.
"""

from __future__ import annotations

from stagegate.errors import ConfigurationError
from stagegate.registry.base import ModelRegistryClient, Payload, RegistryClient
from stagegate.registry.image import ImageRegistryClient
from stagegate.registry.memory import InMemoryModelRegistry, InMemoryRegistryClient
from stagegate.registry.mlflow import MlflowModelRegistry
from stagegate.registry.resilience import RetryPolicy
from stagegate.schemas.config import ModelRegistryConfig, RegistryConfig
from stagegate.schemas.pipeline import IMAGE_KINDS, ResourceKind


def create_model_registry(config: ModelRegistryConfig) -> ModelRegistryClient:
    """Build the model registry client described by ``config``.

    Raises:
        ConfigurationError: If the mlflow backend has no URI.
    """
    if config.backend == "memory":
        return InMemoryModelRegistry(config.model_name)
    if not config.uri:
        raise ConfigurationError("model_registry.uri is required for the mlflow backend")
    return MlflowModelRegistry(
        config.uri,
        model_name=config.model_name,
        experiment_name=config.experiment_name,
        token=config.token.get_secret_value() if config.token else None,
        timeout_seconds=config.timeout_seconds,
        retry_policy=RetryPolicy(config.retry),
    )


def create_image_registry(kind: ResourceKind, config: RegistryConfig) -> RegistryClient:
    """Build the image registry client for one image kind.

    Raises:
        ConfigurationError: If the oci backend has no URI.
    """
    if config.backend == "memory":
        return InMemoryRegistryClient(kind)
    if not config.uri:
        raise ConfigurationError("registry.uri is required for the oci backend")
    return ImageRegistryClient(
        kind,
        config.uri,
        username=config.username,
        password=config.password.get_secret_value() if config.password else None,
        tls_verify=config.tls_verify,
        retry_policy=RetryPolicy(config.retry),
    )


def create_registries(
    registry: RegistryConfig,
    model_registry: ModelRegistryConfig,
) -> dict[ResourceKind, RegistryClient]:
    """Build one client per resource kind."""
    clients: dict[ResourceKind, RegistryClient] = {
        ResourceKind.MODEL_VERSION: create_model_registry(model_registry),
    }
    for kind in IMAGE_KINDS:
        clients[kind] = create_image_registry(kind, registry)
    return clients


__all__ = [
    "ImageRegistryClient",
    "InMemoryModelRegistry",
    "InMemoryRegistryClient",
    "MlflowModelRegistry",
    "ModelRegistryClient",
    "Payload",
    "RegistryClient",
    "RetryPolicy",
    "create_image_registry",
    "create_model_registry",
    "create_registries",
]
