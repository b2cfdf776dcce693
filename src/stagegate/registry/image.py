"""Container image registry client over OCI via ORAS.

Each artifact kind lives in its own repository below the configured URI
(``oci://host/namespace`` -> ``host/namespace/<kind>``). The immutable version
of an image is tagged with the revision id; aliases are further tags
(``staging``, ``production``) created by re-uploading the version's manifest
under the alias tag, which registries apply as a single atomic manifest PUT.

Lineage is carried in the standard OCI manifest annotations
``org.opencontainers.image.revision`` and ``org.opencontainers.image.version``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from oras.client import OrasClient

from stagegate.errors import (
    AuthenticationError,
    DuplicateVersionError,
    NotFoundError,
    PipelineError,
    RegistryUnavailableError,
)
from stagegate.registry.base import Payload, RegistryClient
from stagegate.registry.resilience import RetryPolicy
from stagegate.schemas.pipeline import ENVIRONMENT_ORDER, ResourceKind, utc_now
from stagegate.telemetry.sanitization import sanitize_error_message
from stagegate.telemetry.tracing import create_span

ANNOTATION_REVISION = "org.opencontainers.image.revision"
ANNOTATION_VERSION = "org.opencontainers.image.version"
ANNOTATION_CREATED = "org.opencontainers.image.created"

_ALIAS_TAGS = frozenset(env.value for env in ENVIRONMENT_ORDER if env.is_alias)


class ImageRegistryClient(RegistryClient):
    """RegistryClient for one image kind in an OCI registry.

    Attributes:
        repository: ``host/namespace/<kind>`` repository reference.
    """

    def __init__(
        self,
        kind: ResourceKind,
        uri: str,
        *,
        username: str | None = None,
        password: str | None = None,
        tls_verify: bool = True,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            kind: Image resource kind (training or serving).
            uri: Registry URI, ``oci://host/namespace``.
            username: Registry username (anonymous if None).
            password: Registry password or token.
            tls_verify: Verify TLS certificates.
            retry_policy: Retry policy for transient failures.

        Raises:
            ValueError: If ``kind`` is not an image kind or ``uri`` is malformed.
        """
        artifact_kind = kind.artifact_kind
        if artifact_kind is None:
            raise ValueError(f"{kind.value} is not an image resource kind")
        if not uri.startswith("oci://"):
            raise ValueError(f"Registry URI must start with oci://: {uri}")

        base = uri[len("oci://") :].rstrip("/")
        self.repository = f"{base}/{artifact_kind.value}"
        super().__init__(kind, f"oci://{self.repository}")

        self._host = base.split("/", 1)[0]
        self._username = username
        self._password = password
        self._tls_verify = tls_verify
        self._retry = retry_policy or RetryPolicy()
        self._oras: OrasClient | None = None

    # ------------------------------------------------------------------
    # ORAS plumbing
    # ------------------------------------------------------------------

    def _create_oras_client(self) -> OrasClient:
        """Create and authenticate an ORAS client.

        Raises:
            AuthenticationError: If login fails.
        """
        auth_backend = "basic" if self._username else "token"
        oras_client = OrasClient(insecure=not self._tls_verify, auth_backend=auth_backend)

        # ORAS prompts interactively when credentials are empty, so skip login.
        if self._username and self._password:
            try:
                oras_client.login(
                    hostname=self._host,
                    username=self._username,
                    password=self._password,
                )
            except Exception as e:
                raise AuthenticationError(
                    self._host,
                    f"Failed to authenticate with registry: {sanitize_error_message(str(e))}",
                ) from e
        return oras_client

    @property
    def oras(self) -> OrasClient:
        if self._oras is None:
            self._oras = self._create_oras_client()
        return self._oras

    def _target(self, tag: str) -> str:
        return f"{self.repository}:{tag}"

    def _translate_error(self, error: Exception, tag: str) -> PipelineError:
        if isinstance(error, PipelineError):
            return error
        error_str = str(error).lower()
        if "manifest unknown" in error_str or "not found" in error_str or "404" in error_str:
            return NotFoundError(tag, registry=self.location)
        if "unauthorized" in error_str or "authentication" in error_str or "403" in error_str:
            return AuthenticationError(self._host, sanitize_error_message(str(error)))
        return RegistryUnavailableError(self.location, sanitize_error_message(str(error)))

    def _get_manifest(self, tag: str) -> dict[str, Any]:
        def _fetch() -> dict[str, Any]:
            try:
                manifest: dict[str, Any] = self.oras.get_manifest(container=self._target(tag))
                return manifest
            except Exception as e:
                raise self._translate_error(e, tag) from e

        with create_span(
            "stagegate.registry.get_manifest",
            attributes={"repository": self.repository, "tag": tag},
        ):
            return self._retry.call(_fetch)

    def _upload_manifest(self, manifest: Mapping[str, Any], tag: str) -> None:
        def _upload() -> None:
            try:
                self.oras.upload_manifest(manifest=dict(manifest), container=self._target(tag))
            except Exception as e:
                raise self._translate_error(e, tag) from e

        with create_span(
            "stagegate.registry.upload_manifest",
            attributes={"repository": self.repository, "tag": tag},
        ):
            self._retry.call(_upload)

    def _try_manifest(self, tag: str) -> dict[str, Any] | None:
        try:
            return self._get_manifest(tag)
        except NotFoundError:
            return None

    # ------------------------------------------------------------------
    # RegistryClient
    # ------------------------------------------------------------------

    def push(self, key: str, payload: Mapping[str, Any]) -> str:
        """Register the image manifest built for revision ``key``.

        The layers and config blobs referenced by the manifest must already
        have been uploaded by the build process. Lineage annotations are
        added before the manifest is stored.
        """
        manifest = _annotate(payload, revision=key)
        existing = self._try_manifest(key)
        if existing is not None:
            if _content_key(existing) != _content_key(manifest):
                raise DuplicateVersionError(key, registry=self.location, revision=key)
            self._log.debug("push_idempotent", version=key)
            return key

        self._upload_manifest(manifest, key)
        self._log.info("version_pushed", version=key, revision=key)
        return key

    def pull(self, version_or_alias: str) -> Payload:
        manifest = self._try_manifest(version_or_alias)
        if manifest is None:
            raise NotFoundError(version_or_alias, registry=self.location)
        return manifest

    def exists(self, version: str) -> bool:
        if version in _ALIAS_TAGS:
            return False
        return self._try_manifest(version) is not None

    def resolve_alias(self, alias: str) -> str | None:
        manifest = self._try_manifest(alias)
        if manifest is None:
            return None
        annotations = manifest.get("annotations", {})
        version = annotations.get(ANNOTATION_VERSION) or annotations.get(ANNOTATION_REVISION)
        if not version:
            raise NotFoundError(
                f"{alias} (manifest lacks {ANNOTATION_VERSION})", registry=self.location
            )
        return str(version)

    def revision_of(self, version: str) -> str:
        manifest = self._try_manifest(version)
        if manifest is None:
            raise NotFoundError(version, registry=self.location)
        return str(manifest.get("annotations", {}).get(ANNOTATION_REVISION) or version)

    def find_version(self, revision: str) -> str | None:
        return revision if self.exists(revision) else None

    def latest_version(self) -> str | None:
        """Return the version tag with the newest creation annotation."""
        try:
            tags: list[str] = self.oras.get_tags(container=self.repository)
        except Exception as e:
            translated = self._translate_error(e, self.repository)
            if isinstance(translated, NotFoundError):
                return None
            raise translated from e

        latest: tuple[str, str] | None = None
        for tag in tags:
            if tag in _ALIAS_TAGS:
                continue
            manifest = self._try_manifest(tag)
            if manifest is None:
                continue
            created = str(manifest.get("annotations", {}).get(ANNOTATION_CREATED, ""))
            if latest is None or created > latest[0]:
                latest = (created, tag)
        return latest[1] if latest else None

    def reference(self, version_or_alias: str) -> str:
        return self._target(version_or_alias)

    def _set_alias(self, version: str, alias: str) -> None:
        manifest = self._get_manifest(version)
        self._upload_manifest(manifest, alias)

    def _delete_alias(self, alias: str) -> None:
        # Deleting a tag deletes the manifest for every tag on most registries.
        raise PipelineError(
            f"Registry {self.location} cannot remove alias tag '{alias}' without "
            f"deleting the image it points at",
            reference=alias,
        )


def _annotate(payload: Mapping[str, Any], *, revision: str) -> dict[str, Any]:
    manifest = dict(payload)
    annotations = dict(manifest.get("annotations", {}))
    annotations[ANNOTATION_REVISION] = revision
    annotations[ANNOTATION_VERSION] = revision
    annotations.setdefault(ANNOTATION_CREATED, utc_now().isoformat())
    manifest["annotations"] = annotations
    return manifest


def _content_key(manifest: Mapping[str, Any]) -> str:
    """Serialize a manifest for comparison, ignoring its creation timestamp."""
    comparable = dict(manifest)
    annotations = dict(comparable.get("annotations", {}))
    annotations.pop(ANNOTATION_CREATED, None)
    comparable["annotations"] = annotations
    return json.dumps(comparable, sort_keys=True)


__all__ = [
    "ANNOTATION_CREATED",
    "ANNOTATION_REVISION",
    "ANNOTATION_VERSION",
    "ImageRegistryClient",
]
