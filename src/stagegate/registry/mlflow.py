"""Model registry client for MLflow-compatible tracking servers.

Talks to the MLflow REST API 2.0 over httpx. A registration creates a run
in the configured experiment, logs the metrics on it, and creates a model
version from it tagged with the source revision. Aliases map to MLflow
registered-model aliases.

Example:
    >>> client = MlflowModelRegistry(
    ...     "https://mlflow.example.com",
    ...     model_name="churn",
    ...     experiment_name="churn-training",
    ... )
    >>> version = client.register("abc123", {"accuracy": 0.95, "precision": 0.93})
    >>> client.set_alias(version, "staging")
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

import httpx

from stagegate.errors import (
    AuthenticationError,
    NotFoundError,
    PipelineError,
    RegistryUnavailableError,
)
from stagegate.registry.base import ModelRegistryClient
from stagegate.registry.resilience import RetryPolicy
from stagegate.schemas.pipeline import ModelVersion
from stagegate.telemetry.sanitization import sanitize_error_message
from stagegate.telemetry.tracing import create_span

API_PREFIX = "/api/2.0/mlflow"

# Model version tag carrying the source revision.
REVISION_TAG = "stagegate.revision"

# Run tag MLflow uses for the source commit.
COMMIT_TAG = "mlflow.source.git.commit"

_SEARCH_PAGE_SIZE = 200


class MlflowModelRegistry(ModelRegistryClient):
    """ModelRegistryClient backed by the MLflow REST API.

    Attributes:
        experiment_name: Experiment registration runs are created in.
    """

    def __init__(
        self,
        uri: str,
        *,
        model_name: str,
        experiment_name: str,
        token: str | None = None,
        timeout_seconds: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            uri: Tracking server base URL.
            model_name: Registered model name.
            experiment_name: Experiment registration runs are logged under.
            token: Bearer token, if the server requires one.
            timeout_seconds: Per-request timeout.
            retry_policy: Retry policy for transient failures.
            transport: httpx transport override (tests use MockTransport).
        """
        base_url = uri.rstrip("/")
        super().__init__(model_name, f"{base_url}#{model_name}")
        self.experiment_name = experiment_name
        self._base_url = base_url
        self._retry = retry_policy or RetryPolicy()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.Client(
            base_url=base_url + API_PREFIX,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Mapping[str, Any] | None = None,
        reference: str | None = None,
    ) -> dict[str, Any]:
        def _send() -> dict[str, Any]:
            try:
                response = self._http.request(method, path, params=params, json=json)
            except httpx.TransportError as e:
                raise RegistryUnavailableError(
                    self._base_url, sanitize_error_message(str(e))
                ) from e
            return self._handle_response(response, reference or path)

        with create_span(
            "stagegate.registry.mlflow",
            attributes={"http.method": method, "mlflow.endpoint": path},
        ):
            return self._retry.call(_send)

    def _handle_response(self, response: httpx.Response, reference: str) -> dict[str, Any]:
        if response.status_code < 400:
            if not response.content:
                return {}
            body: dict[str, Any] = response.json()
            return body

        try:
            error_body = response.json()
        except ValueError:
            error_body = {}
        error_code = error_body.get("error_code", "")
        message = sanitize_error_message(error_body.get("message") or response.text)

        if response.status_code in (401, 403):
            raise AuthenticationError(self._base_url, message or "access denied")
        if response.status_code == 404 or error_code == "RESOURCE_DOES_NOT_EXIST":
            raise NotFoundError(reference, registry=self.location)
        if response.status_code >= 500 or response.status_code == 429:
            raise RegistryUnavailableError(
                self._base_url, f"HTTP {response.status_code}: {message}"
            )
        raise _MlflowRequestError(error_code, message, reference)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        revision: str,
        metrics: Mapping[str, float],
        source: str | None = None,
    ) -> str:
        log = self._log.bind(revision=revision)
        with create_span(
            "stagegate.registry.register",
            attributes={"model_name": self.model_name, "revision": revision},
        ) as span:
            existing = self.find_version(revision)
            if existing is not None and self._same_registration(existing, metrics, source):
                log.info("register_idempotent", version=existing)
                span.set_attribute("version", existing)
                return existing

            experiment_id = self._ensure_experiment()
            run_id = self._create_run(experiment_id, revision, metrics)
            self._ensure_registered_model()

            body = self._request(
                "POST",
                "/model-versions/create",
                json={
                    "name": self.model_name,
                    "source": source or f"runs:/{run_id}/model",
                    "run_id": run_id,
                    "tags": [{"key": REVISION_TAG, "value": revision}],
                },
            )
            version = str(body["model_version"]["version"])
            span.set_attribute("version", version)
            log.info("model_version_registered", version=version, run_id=run_id)
            return version

    def _ensure_experiment(self) -> str:
        try:
            body = self._request(
                "GET",
                "/experiments/get-by-name",
                params={"experiment_name": self.experiment_name},
                reference=self.experiment_name,
            )
            return str(body["experiment"]["experiment_id"])
        except NotFoundError:
            body = self._request(
                "POST", "/experiments/create", json={"name": self.experiment_name}
            )
            self._log.info("experiment_created", experiment=self.experiment_name)
            return str(body["experiment_id"])

    def _create_run(
        self,
        experiment_id: str,
        revision: str,
        metrics: Mapping[str, float],
    ) -> str:
        now_ms = int(time.time() * 1000)
        body = self._request(
            "POST",
            "/runs/create",
            json={
                "experiment_id": experiment_id,
                "start_time": now_ms,
                "run_name": f"{self.model_name}-{revision}",
                "tags": [{"key": COMMIT_TAG, "value": revision}],
            },
        )
        run_id = str(body["run"]["info"]["run_id"])
        self._request(
            "POST",
            "/runs/log-batch",
            json={
                "run_id": run_id,
                "metrics": [
                    {"key": name, "value": float(value), "timestamp": now_ms, "step": 0}
                    for name, value in sorted(metrics.items())
                ],
            },
        )
        self._request(
            "POST",
            "/runs/update",
            json={"run_id": run_id, "status": "FINISHED", "end_time": now_ms},
        )
        return run_id

    def _ensure_registered_model(self) -> None:
        try:
            self._request("POST", "/registered-models/create", json={"name": self.model_name})
        except _MlflowRequestError as e:
            if e.error_code != "RESOURCE_ALREADY_EXISTS":
                raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get_model_version(self, version: str) -> dict[str, Any]:
        body = self._request(
            "GET",
            "/model-versions/get",
            params={"name": self.model_name, "version": version},
            reference=version,
        )
        model_version: dict[str, Any] = body["model_version"]
        return model_version

    def model_version(self, version: str) -> ModelVersion:
        data = self._get_model_version(version)
        run_id = data.get("run_id")
        metrics: dict[str, float] = {}
        if run_id:
            run = self._request("GET", "/runs/get", params={"run_id": run_id}, reference=run_id)
            for metric in run["run"].get("data", {}).get("metrics", []):
                metrics[metric["key"]] = float(metric["value"])
        return ModelVersion(
            model_name=self.model_name,
            immutable_version=str(data["version"]),
            revision=_revision_from(data, version),
            metrics=metrics,
            source=data.get("source"),
            aliases=frozenset(data.get("aliases", [])),
        )

    def exists(self, version: str) -> bool:
        if not version.isdigit():
            return False
        try:
            self._get_model_version(version)
        except NotFoundError:
            return False
        return True

    def resolve_alias(self, alias: str) -> str | None:
        try:
            body = self._request(
                "GET",
                "/registered-models/alias",
                params={"name": self.model_name, "alias": alias},
                reference=alias,
            )
        except NotFoundError:
            return None
        except _MlflowRequestError as e:
            if e.error_code == "INVALID_PARAMETER_VALUE":
                return None
            raise
        return str(body["model_version"]["version"])

    def revision_of(self, version: str) -> str:
        return _revision_from(self._get_model_version(version), version)

    def _search_versions(self) -> list[dict[str, Any]]:
        versions: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "filter": f"name='{self.model_name}'",
                "max_results": _SEARCH_PAGE_SIZE,
            }
            if page_token:
                params["page_token"] = page_token
            try:
                body = self._request("GET", "/model-versions/search", params=params)
            except NotFoundError:
                return versions
            versions.extend(body.get("model_versions", []))
            page_token = body.get("next_page_token")
            if not page_token:
                return versions

    def find_version(self, revision: str) -> str | None:
        matches = [
            int(v["version"])
            for v in self._search_versions()
            if _tags(v).get(REVISION_TAG) == revision
        ]
        return str(max(matches)) if matches else None

    def latest_version(self) -> str | None:
        versions = [int(v["version"]) for v in self._search_versions()]
        return str(max(versions)) if versions else None

    def _set_alias(self, version: str, alias: str) -> None:
        self._request(
            "POST",
            "/registered-models/alias",
            json={"name": self.model_name, "alias": alias, "version": version},
            reference=version,
        )

    def _delete_alias(self, alias: str) -> None:
        try:
            self._request(
                "DELETE",
                "/registered-models/alias",
                params={"name": self.model_name, "alias": alias},
                reference=alias,
            )
        except NotFoundError:
            return


class _MlflowRequestError(PipelineError):
    """A 4xx response that is not authentication or not-found."""

    def __init__(self, error_code: str, message: str, reference: str) -> None:
        self.error_code = error_code
        super().__init__(
            f"Model registry rejected request for {reference}: {error_code} {message}".strip(),
            reference=reference,
        )


def _tags(model_version: Mapping[str, Any]) -> dict[str, str]:
    return {t["key"]: t["value"] for t in model_version.get("tags", [])}


def _revision_from(model_version: Mapping[str, Any], version: str) -> str:
    revision = _tags(model_version).get(REVISION_TAG)
    if not revision:
        raise NotFoundError(f"{version} (no {REVISION_TAG} tag)", registry="model registry")
    return revision


__all__ = ["COMMIT_TAG", "MlflowModelRegistry", "REVISION_TAG"]
