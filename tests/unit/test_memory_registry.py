"""Unit tests for the in-memory registry backends and the registry factory.

Requirements tested:
    REG-001: Immutable versions are write-once, re-push is idempotent
    REG-002: Aliases resolve to exactly one version and can be reassigned
    REG-003: Every version traces back to the revision that produced it
    REG-005: Registries are built from configuration
"""

from __future__ import annotations

import pytest

from stagegate.errors import ConfigurationError, DuplicateVersionError, NotFoundError
from stagegate.registry import (
    ImageRegistryClient,
    InMemoryModelRegistry,
    InMemoryRegistryClient,
    MlflowModelRegistry,
    create_registries,
)
from stagegate.schemas.config import ModelRegistryConfig, RegistryConfig
from stagegate.schemas.pipeline import ResourceKind


@pytest.fixture
def images() -> InMemoryRegistryClient:
    return InMemoryRegistryClient(ResourceKind.SERVING_IMAGE)


@pytest.fixture
def models() -> InMemoryModelRegistry:
    return InMemoryModelRegistry("churn")


class TestImagePush:
    """Tests for pushing immutable image versions."""

    @pytest.mark.requirement("REG-001")
    def test_push_returns_revision_as_version(self, images: InMemoryRegistryClient) -> None:
        """Test an image's immutable version is its revision."""
        assert images.push("abc123", {"digest": "sha256:1"}) == "abc123"
        assert images.exists("abc123")
        assert images.revision_of("abc123") == "abc123"

    @pytest.mark.requirement("REG-001")
    def test_push_idempotent(self, images: InMemoryRegistryClient) -> None:
        """Test re-pushing the same payload is a no-op."""
        images.push("abc123", {"digest": "sha256:1"})

        assert images.push("abc123", {"digest": "sha256:1"}) == "abc123"
        assert images.latest_version() == "abc123"

    @pytest.mark.requirement("REG-001")
    def test_push_different_payload_rejected(self, images: InMemoryRegistryClient) -> None:
        """Test an existing version cannot be overwritten."""
        images.push("abc123", {"digest": "sha256:1"})

        with pytest.raises(DuplicateVersionError) as exc_info:
            images.push("abc123", {"digest": "sha256:2"})

        assert exc_info.value.revision == "abc123"
        assert images.pull("abc123") == {"digest": "sha256:1"}

    @pytest.mark.requirement("REG-003")
    def test_find_and_latest_version(self, images: InMemoryRegistryClient) -> None:
        """Test lookups by revision and by registration order."""
        images.push("abc123", {"digest": "sha256:1"})
        images.push("def456", {"digest": "sha256:2"})

        assert images.find_version("abc123") == "abc123"
        assert images.find_version("zzz999") is None
        assert images.latest_version() == "def456"

    @pytest.mark.requirement("REG-003")
    def test_empty_registry(self, images: InMemoryRegistryClient) -> None:
        """Test an empty registry has no latest version."""
        assert images.latest_version() is None
        with pytest.raises(NotFoundError):
            images.revision_of("abc123")


class TestAliases:
    """Tests for alias reassignment and resolution."""

    @pytest.mark.requirement("REG-002")
    def test_tag_and_resolve(self, images: InMemoryRegistryClient) -> None:
        """Test an alias resolves to the version it was pointed at."""
        images.push("abc123", {"digest": "sha256:1"})
        images.tag_alias("abc123", "staging")

        assert images.resolve_alias("staging") == "abc123"
        assert images.resolve("staging") == "abc123"
        assert images.pull("staging") == {"digest": "sha256:1"}
        assert images.aliases_of("abc123") == frozenset({"staging"})

    @pytest.mark.requirement("REG-002")
    def test_tag_moves_alias(self, images: InMemoryRegistryClient) -> None:
        """Test tagging displaces the previous holder."""
        images.push("abc123", {"digest": "sha256:1"})
        images.push("def456", {"digest": "sha256:2"})
        images.tag_alias("abc123", "staging")

        images.tag_alias("def456", "staging")

        assert images.resolve_alias("staging") == "def456"
        assert images.aliases_of("abc123") == frozenset()

    @pytest.mark.requirement("REG-002")
    def test_tag_missing_version(self, images: InMemoryRegistryClient) -> None:
        """Test an alias cannot point at a version that does not exist."""
        with pytest.raises(NotFoundError):
            images.tag_alias("abc123", "staging")
        assert images.resolve_alias("staging") is None

    @pytest.mark.requirement("REG-002")
    def test_remove_alias(self, images: InMemoryRegistryClient) -> None:
        """Test remove_alias() unassigns the alias."""
        images.push("abc123", {"digest": "sha256:1"})
        images.tag_alias("abc123", "staging")

        images.remove_alias("staging")

        assert images.resolve_alias("staging") is None
        with pytest.raises(NotFoundError):
            images.resolve("staging")

    @pytest.mark.requirement("REG-002")
    def test_resolve_revision(self, images: InMemoryRegistryClient) -> None:
        """Test resolve_revision() raises when the revision has no version."""
        images.push("abc123", {"digest": "sha256:1"})

        assert images.resolve_revision("abc123") == "abc123"
        with pytest.raises(NotFoundError):
            images.resolve_revision("def456")

    @pytest.mark.requirement("REG-002")
    def test_reference(self, images: InMemoryRegistryClient) -> None:
        """Test references address the registry location."""
        assert images.reference("staging") == "memory://serving_image:staging"


class TestModelRegistry:
    """Tests for the in-memory model registry."""

    @pytest.mark.requirement("REG-001")
    def test_versions_increase(self, models: InMemoryModelRegistry) -> None:
        """Test the registry assigns monotonically increasing versions."""
        assert models.register("abc123", {"accuracy": 0.9}) == "1"
        assert models.register("def456", {"accuracy": 0.95}) == "2"
        assert models.latest_version() == "2"

    @pytest.mark.requirement("REG-001")
    def test_register_idempotent(self, models: InMemoryModelRegistry) -> None:
        """Test registering the same revision and metrics returns the same version."""
        first = models.register("abc123", {"accuracy": 0.9})

        assert models.register("abc123", {"accuracy": 0.9}) == first
        assert models.latest_version() == first

    @pytest.mark.requirement("REG-001")
    def test_register_different_metrics_creates_new_version(
        self, models: InMemoryModelRegistry
    ) -> None:
        """Test re-running a revision with other metrics registers a newer version."""
        models.register("abc123", {"accuracy": 0.9})

        assert models.register("abc123", {"accuracy": 0.99}) == "2"
        assert models.find_version("abc123") == "2"
        assert models.model_version("1").metrics == {"accuracy": 0.9}

    @pytest.mark.requirement("REG-001")
    def test_register_different_source_creates_new_version(
        self, models: InMemoryModelRegistry
    ) -> None:
        """Test the same metrics from another artifact source are a new version."""
        models.register("abc123", {"accuracy": 0.9}, source="s3://m/1")

        assert models.register("abc123", {"accuracy": 0.9}, source="s3://m/2") == "2"

    @pytest.mark.requirement("REG-003")
    def test_model_version_lineage(self, models: InMemoryModelRegistry) -> None:
        """Test a model version records its revision, metrics and aliases."""
        version = models.register("abc123", {"accuracy": 0.9}, source="s3://m/1")
        models.set_alias(version, "staging")

        mv = models.model_version(version)

        assert mv.revision == "abc123"
        assert mv.metrics == {"accuracy": 0.9}
        assert mv.source == "s3://m/1"
        assert mv.aliases == frozenset({"staging"})
        assert models.revision_of(version) == "abc123"
        assert models.find_version("abc123") == version
        assert models.get_metrics(version) == {"accuracy": 0.9}

    @pytest.mark.requirement("REG-003")
    def test_push_and_pull_payload(self, models: InMemoryModelRegistry) -> None:
        """Test the generic push/pull interface maps onto registration."""
        version = models.push("abc123", {"metrics": {"accuracy": 0.9}, "source": "s3://m"})
        models.tag_alias(version, "production")

        payload = models.pull("production")

        assert payload["version"] == version
        assert payload["revision"] == "abc123"
        assert payload["metrics"] == {"accuracy": 0.9}

    @pytest.mark.requirement("REG-002")
    def test_model_references(self, models: InMemoryModelRegistry) -> None:
        """Test version and alias model URIs."""
        assert models.reference("3") == "models:/churn/3"
        assert models.reference("staging") == "models:/churn@staging"

    @pytest.mark.requirement("REG-003")
    def test_missing_version(self, models: InMemoryModelRegistry) -> None:
        """Test unknown versions raise NotFoundError."""
        with pytest.raises(NotFoundError):
            models.model_version("7")
        assert not models.exists("7")


class TestCreateRegistries:
    """Tests for building registries from configuration."""

    @pytest.mark.requirement("REG-005")
    def test_memory_backends(self) -> None:
        """Test the default configuration builds in-memory registries."""
        registries = create_registries(RegistryConfig(), ModelRegistryConfig(model_name="churn"))

        assert set(registries) == set(ResourceKind)
        model = registries[ResourceKind.MODEL_VERSION]
        assert isinstance(model, InMemoryModelRegistry)
        assert model.model_name == "churn"
        assert isinstance(registries[ResourceKind.SERVING_IMAGE], InMemoryRegistryClient)

    @pytest.mark.requirement("REG-005")
    def test_remote_backends(self) -> None:
        """Test oci and mlflow backends build their clients without connecting."""
        registries = create_registries(
            RegistryConfig(backend="oci", uri="oci://registry.example.com/ml"),
            ModelRegistryConfig(backend="mlflow", uri="https://mlflow.example.com"),
        )

        serving = registries[ResourceKind.SERVING_IMAGE]
        assert isinstance(serving, ImageRegistryClient)
        assert serving.repository == "registry.example.com/ml/serving"
        training = registries[ResourceKind.TRAINING_IMAGE]
        assert isinstance(training, ImageRegistryClient)
        assert training.repository == "registry.example.com/ml/training"
        model = registries[ResourceKind.MODEL_VERSION]
        assert isinstance(model, MlflowModelRegistry)
        model.close()

    @pytest.mark.requirement("REG-005")
    def test_oci_without_uri(self) -> None:
        """Test the oci backend requires a URI."""
        with pytest.raises(ConfigurationError, match="registry.uri"):
            create_registries(RegistryConfig(backend="oci"), ModelRegistryConfig())

    @pytest.mark.requirement("REG-005")
    def test_mlflow_without_uri(self) -> None:
        """Test the mlflow backend requires a URI."""
        with pytest.raises(ConfigurationError, match="model_registry.uri"):
            create_registries(RegistryConfig(), ModelRegistryConfig(backend="mlflow"))
