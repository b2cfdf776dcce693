"""Registry client abstraction shared by image and model registries.

A RegistryClient holds the immutable versions of one resource kind and the
aliases (``staging``, ``production``) pointing at them. Subclasses provide
the storage primitives; this base class provides alias serialization,
reference resolution and lineage lookups on top of them.

Example:
    >>> client = InMemoryRegistryClient(ResourceKind.SERVING_IMAGE)
    >>> client.push("abc123", {"digest": "sha256:..."})
    'abc123'
    >>> client.tag_alias("abc123", "staging")
    >>> client.resolve_alias("staging")
    'abc123'
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import structlog

from stagegate.errors import NotFoundError
from stagegate.registry.locking import alias_lock
from stagegate.schemas.pipeline import ModelVersion, ResourceKind
from stagegate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

Payload = dict[str, Any]


class RegistryClient(ABC):
    """Uniform push, pull and alias operations over one resource kind.

    Attributes:
        kind: Resource kind this client manages.
        location: Human-readable registry location used in errors and locks.
    """

    def __init__(self, kind: ResourceKind, location: str) -> None:
        self.kind = kind
        self.location = location
        self._log = logger.bind(kind=kind.value, registry=location)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def push(self, key: str, payload: Mapping[str, Any]) -> str:
        """Register an immutable version for revision ``key``.

        Idempotent when the payload matches what is already registered.

        Args:
            key: Revision the payload was produced from.
            payload: Resource payload (image manifest, model metrics, ...).

        Returns:
            The immutable version id.

        Raises:
            DuplicateVersionError: If the version exists with another payload.
        """

    @abstractmethod
    def pull(self, version_or_alias: str) -> Payload:
        """Return the payload of a version or of the version an alias points at.

        Raises:
            NotFoundError: If neither a version nor an alias matches.
        """

    @abstractmethod
    def exists(self, version: str) -> bool:
        """Return True if ``version`` is a registered immutable version."""

    @abstractmethod
    def resolve_alias(self, alias: str) -> str | None:
        """Return the version ``alias`` points at, or None."""

    @abstractmethod
    def revision_of(self, version: str) -> str:
        """Return the revision that produced ``version``.

        Raises:
            NotFoundError: If the version does not exist.
        """

    @abstractmethod
    def find_version(self, revision: str) -> str | None:
        """Return the version produced by ``revision``, or None."""

    @abstractmethod
    def latest_version(self) -> str | None:
        """Return the most recently registered version, or None if empty."""

    @abstractmethod
    def reference(self, version_or_alias: str) -> str:
        """Return the address consumers use to fetch a version or alias."""

    @abstractmethod
    def _set_alias(self, version: str, alias: str) -> None:
        """Point ``alias`` at ``version`` (caller holds the alias lock)."""

    @abstractmethod
    def _delete_alias(self, alias: str) -> None:
        """Remove ``alias`` (caller holds the alias lock)."""

    # ------------------------------------------------------------------
    # Alias operations
    # ------------------------------------------------------------------

    def tag_alias(self, version: str, alias: str) -> str | None:
        """Atomically point ``alias`` at ``version``, displacing any prior holder.

        Serialized per (resource kind, alias) so concurrent promotions never
        interleave.

        Returns:
            The version ``alias`` pointed at just before, read under the same
            lock, or None if it was unset.

        Raises:
            NotFoundError: If ``version`` does not exist.
        """
        with create_span(
            "stagegate.registry.tag_alias",
            attributes={"kind": self.kind.value, "version": version, "alias": alias},
        ):
            with alias_lock(self.location, self.kind.value, alias):
                if not self.exists(version):
                    raise NotFoundError(version, registry=self.location)
                previous = self.resolve_alias(alias)
                self._set_alias(version, alias)
            self._log.info("alias_tagged", version=version, alias=alias, previous=previous)
            return previous

    def remove_alias(self, alias: str) -> None:
        """Remove ``alias`` entirely.

        Only used to roll back a promotion whose alias had no prior holder.
        """
        with create_span(
            "stagegate.registry.remove_alias",
            attributes={"kind": self.kind.value, "alias": alias},
        ):
            with alias_lock(self.location, self.kind.value, alias):
                self._delete_alias(alias)
            self._log.info("alias_removed", alias=alias)

    def resolve(self, version_or_alias: str) -> str:
        """Resolve an alias or immutable version to an immutable version.

        Aliases take precedence over versions of the same name.

        Raises:
            NotFoundError: If neither resolves.
        """
        version = self.resolve_alias(version_or_alias)
        if version is not None:
            return version
        if self.exists(version_or_alias):
            return version_or_alias
        raise NotFoundError(version_or_alias, registry=self.location)

    def resolve_revision(self, revision: str) -> str:
        """Return the version produced by ``revision``.

        Raises:
            NotFoundError: If the revision has no version in this registry.
        """
        version = self.find_version(revision)
        if version is None:
            raise NotFoundError(revision, registry=self.location, revision=revision)
        return version


class ModelRegistryClient(RegistryClient):
    """Registry client for trained model versions.

    Adds the model-registry operations: ``register`` (registry-assigned,
    monotonically increasing versions), ``get_metrics`` and ``set_alias``.
    """

    def __init__(self, model_name: str, location: str) -> None:
        super().__init__(ResourceKind.MODEL_VERSION, location)
        self.model_name = model_name

    @abstractmethod
    def register(
        self,
        revision: str,
        metrics: Mapping[str, float],
        source: str | None = None,
    ) -> str:
        """Register a model version for ``revision`` and return its version id.

        Every training run of a revision gets a new, higher version, so a
        re-run stage registers alongside earlier attempts. Registering the
        newest version's exact metrics and source again returns that version.
        """

    @abstractmethod
    def model_version(self, version: str) -> ModelVersion:
        """Return the registered model version with its metrics and aliases.

        Raises:
            NotFoundError: If the version does not exist.
        """

    def _same_registration(
        self,
        version: str,
        metrics: Mapping[str, float],
        source: str | None,
    ) -> bool:
        """True when ``version`` already records these metrics (and source, if given)."""
        existing = self.model_version(version)
        if existing.metrics != dict(metrics):
            return False
        return source is None or existing.source == source

    def get_metrics(self, version: str) -> dict[str, float]:
        """Return the metrics recorded for ``version``."""
        return dict(self.model_version(version).metrics)

    def set_alias(self, version: str, alias: str) -> None:
        """Point ``alias`` at ``version`` (same as :meth:`tag_alias`)."""
        self.tag_alias(version, alias)

    def push(self, key: str, payload: Mapping[str, Any]) -> str:
        metrics = payload.get("metrics", {})
        return self.register(key, metrics, payload.get("source"))

    def pull(self, version_or_alias: str) -> Payload:
        version = self.resolve(version_or_alias)
        mv = self.model_version(version)
        return {
            "model_name": mv.model_name,
            "version": mv.immutable_version,
            "revision": mv.revision,
            "metrics": dict(mv.metrics),
            "source": mv.source,
        }

    def reference(self, version_or_alias: str) -> str:
        if version_or_alias.isdigit():
            return f"models:/{self.model_name}/{version_or_alias}"
        return f"models:/{self.model_name}@{version_or_alias}"


__all__ = ["ModelRegistryClient", "Payload", "RegistryClient"]
