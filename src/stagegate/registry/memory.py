"""In-process registry backends.

Used for local single-process pipeline runs (``stagegate run`` with the
``memory`` backend) and as the registries behind unit tests.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

from stagegate.errors import DuplicateVersionError, NotFoundError
from stagegate.registry.base import ModelRegistryClient, Payload, RegistryClient
from stagegate.schemas.pipeline import ModelVersion, ResourceKind


class InMemoryRegistryClient(RegistryClient):
    """Image-style registry: the immutable version is the revision itself."""

    def __init__(self, kind: ResourceKind, location: str | None = None) -> None:
        super().__init__(kind, location or f"memory://{kind.value}")
        self._lock = threading.RLock()
        self._payloads: dict[str, Payload] = {}
        self._revisions: dict[str, str] = {}
        self._aliases: dict[str, str] = {}
        self._order: list[str] = []

    def push(self, key: str, payload: Mapping[str, Any]) -> str:
        with self._lock:
            existing = self._payloads.get(key)
            if existing is not None:
                if existing != dict(payload):
                    raise DuplicateVersionError(key, registry=self.location, revision=key)
                self._log.debug("push_idempotent", version=key)
                return key
            self._payloads[key] = dict(payload)
            self._revisions[key] = key
            self._order.append(key)
        self._log.info("version_pushed", version=key, revision=key)
        return key

    def pull(self, version_or_alias: str) -> Payload:
        with self._lock:
            version = self.resolve(version_or_alias)
            return dict(self._payloads[version])

    def exists(self, version: str) -> bool:
        with self._lock:
            return version in self._payloads

    def resolve_alias(self, alias: str) -> str | None:
        with self._lock:
            return self._aliases.get(alias)

    def revision_of(self, version: str) -> str:
        with self._lock:
            try:
                return self._revisions[version]
            except KeyError:
                raise NotFoundError(version, registry=self.location) from None

    def find_version(self, revision: str) -> str | None:
        with self._lock:
            for version in reversed(self._order):
                if self._revisions[version] == revision:
                    return version
            return None

    def latest_version(self) -> str | None:
        with self._lock:
            return self._order[-1] if self._order else None

    def reference(self, version_or_alias: str) -> str:
        return f"{self.location}:{version_or_alias}"

    def aliases_of(self, version: str) -> frozenset[str]:
        """Return the aliases currently pointing at ``version``."""
        with self._lock:
            return frozenset(a for a, v in self._aliases.items() if v == version)

    def _set_alias(self, version: str, alias: str) -> None:
        with self._lock:
            self._aliases[alias] = version

    def _delete_alias(self, alias: str) -> None:
        with self._lock:
            self._aliases.pop(alias, None)


class InMemoryModelRegistry(ModelRegistryClient):
    """Model registry assigning versions "1", "2", ... per model name."""

    def __init__(self, model_name: str = "model", location: str | None = None) -> None:
        super().__init__(model_name, location or f"memory://models/{model_name}")
        self._lock = threading.RLock()
        self._versions: dict[str, ModelVersion] = {}
        self._aliases: dict[str, str] = {}
        self._next_version = 1

    def register(
        self,
        revision: str,
        metrics: Mapping[str, float],
        source: str | None = None,
    ) -> str:
        with self._lock:
            existing = self.find_version(revision)
            if existing is not None and self._same_registration(existing, metrics, source):
                self._log.debug("register_idempotent", version=existing, revision=revision)
                return existing

            version = str(self._next_version)
            self._next_version += 1
            self._versions[version] = ModelVersion(
                model_name=self.model_name,
                immutable_version=version,
                revision=revision,
                metrics=dict(metrics),
                source=source,
            )
        self._log.info("model_version_registered", version=version, revision=revision)
        return version

    def model_version(self, version: str) -> ModelVersion:
        with self._lock:
            mv = self._versions.get(version)
            if mv is None:
                raise NotFoundError(version, registry=self.location)
            aliases = frozenset(a for a, v in self._aliases.items() if v == version)
            return mv.model_copy(update={"aliases": aliases})

    def exists(self, version: str) -> bool:
        with self._lock:
            return version in self._versions

    def resolve_alias(self, alias: str) -> str | None:
        with self._lock:
            return self._aliases.get(alias)

    def revision_of(self, version: str) -> str:
        return self.model_version(version).revision

    def find_version(self, revision: str) -> str | None:
        with self._lock:
            matches = [v for v, mv in self._versions.items() if mv.revision == revision]
            return max(matches, key=int) if matches else None

    def latest_version(self) -> str | None:
        with self._lock:
            return max(self._versions, key=int) if self._versions else None

    def _set_alias(self, version: str, alias: str) -> None:
        with self._lock:
            self._aliases[alias] = version

    def _delete_alias(self, alias: str) -> None:
        with self._lock:
            self._aliases.pop(alias, None)


__all__ = ["InMemoryModelRegistry", "InMemoryRegistryClient"]
