"""Functional validation of a running service.

The controller does not implement test suites. It starts the service under
test through a ServiceLauncher, waits until its readiness endpoint answers,
asks a ValidationHarness to run a named suite against it, and stops the
service again. A failed suite fails the stage; it is never retried.

Components:
    ValidationHarness: Protocol for suite runners
    ServiceLauncher: Protocol for starting and stopping the service under test
    CommandValidationHarness: Runs a shell command per suite (exit 0 = pass)
    DockerServiceLauncher: Starts images with ``docker run``
    ExternalServiceLauncher: Targets an already running service
    ValidationRunner: start -> wait for ready -> run suite -> stop
"""

from __future__ import annotations

import re
import shlex
import subprocess
import time
import uuid
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from stagegate.errors import (
    ConfigurationError,
    ReadinessTimeoutError,
    ServiceStartError,
    ValidationFailedError,
)
from stagegate.polling import PollingTimeoutError, wait_for_http_ready
from stagegate.schemas.config import ValidationConfig
from stagegate.schemas.promotion import SuiteResult, TestFailure
from stagegate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

# Lines such as "FAILED tests/test_api.py::test_predict - AssertionError"
_FAILED_LINE = re.compile(r"^FAILED\s+(?P<name>\S+)(?:\s+-\s+(?P<message>.*))?$")


class ServiceHandle(BaseModel):
    """A started service under test."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    handle_id: str = Field(..., min_length=1, description="Launcher-specific identifier")
    image_ref: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1, description="Base URL of the service")


@runtime_checkable
class ValidationHarness(Protocol):
    """Runs a named functional test suite against a live endpoint."""

    def run_suite(self, target_endpoint: str, suite_name: str) -> SuiteResult: ...


@runtime_checkable
class ServiceLauncher(Protocol):
    """Starts and stops the service under test."""

    def start(
        self,
        image_ref: str,
        port: int,
        env_vars: Mapping[str, str],
    ) -> ServiceHandle: ...

    def stop(self, handle: ServiceHandle) -> None: ...


class CommandValidationHarness:
    """Runs a configured shell command as the test suite.

    ``${TARGET_ENDPOINT}`` and ``${SUITE}`` are substituted before the
    command runs. Exit code 0 means the suite passed; any ``FAILED <name>``
    lines on stdout are reported as individual failures.
    """

    def __init__(self, command: str, timeout_seconds: int = 1800) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds

    def _render(self, target_endpoint: str, suite_name: str) -> str:
        return self.command.replace("${TARGET_ENDPOINT}", shlex.quote(target_endpoint)).replace(
            "${SUITE}", shlex.quote(suite_name)
        )

    def run_suite(self, target_endpoint: str, suite_name: str) -> SuiteResult:
        command = self._render(target_endpoint, suite_name)
        log = logger.bind(suite=suite_name, target=target_endpoint)
        log.info("suite_started", command=command, timeout_seconds=self.timeout_seconds)
        start_time = time.monotonic()

        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            log.warning("suite_timeout", duration_ms=duration_ms)
            return SuiteResult(
                suite=suite_name,
                target=target_endpoint,
                passed=False,
                failures=[
                    TestFailure(
                        name=suite_name,
                        message=f"suite timed out after {self.timeout_seconds} seconds",
                    )
                ],
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        if result.returncode == 0:
            log.info("suite_passed", duration_ms=duration_ms)
            return SuiteResult(
                suite=suite_name,
                target=target_endpoint,
                passed=True,
                duration_ms=duration_ms,
            )

        failures = _parse_failures(result.stdout)
        if not failures:
            message = f"exit code {result.returncode}"
            if result.stderr:
                message = f"{message}: {result.stderr.strip()}"
            failures = [TestFailure(name=suite_name, message=message)]
        log.warning(
            "suite_failed",
            duration_ms=duration_ms,
            exit_code=result.returncode,
            failures=[f.name for f in failures],
        )
        return SuiteResult(
            suite=suite_name,
            target=target_endpoint,
            passed=False,
            failures=failures,
            duration_ms=duration_ms,
        )


def _parse_failures(output: str) -> list[TestFailure]:
    failures = []
    for line in output.splitlines():
        match = _FAILED_LINE.match(line.strip())
        if match:
            failures.append(TestFailure(name=match["name"], message=match["message"]))
    return failures


class DockerServiceLauncher:
    """Starts the service under test as a local docker container."""

    def __init__(self, host: str = "localhost", docker: str = "docker") -> None:
        self.host = host
        self.docker = docker

    def start(
        self,
        image_ref: str,
        port: int,
        env_vars: Mapping[str, str],
    ) -> ServiceHandle:
        """Run ``image_ref`` detached with ``port`` published.

        Raises:
            ServiceStartError: If docker cannot start the container.
        """
        name = f"stagegate-{uuid.uuid4().hex[:12]}"
        args = [self.docker, "run", "-d", "--name", name, "-p", f"{port}:{port}"]
        for key, value in sorted(env_vars.items()):
            args += ["-e", f"{key}={value}"]
        args.append(image_ref)

        try:
            result = subprocess.run(args, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ServiceStartError(image_ref, str(e)) from e
        if result.returncode != 0:
            raise ServiceStartError(
                image_ref, result.stderr.strip() or f"exit code {result.returncode}"
            )

        handle = ServiceHandle(
            handle_id=result.stdout.strip() or name,
            image_ref=image_ref,
            endpoint=f"http://{self.host}:{port}",
        )
        logger.info("service_started", image_ref=image_ref, container=handle.handle_id)
        return handle

    def stop(self, handle: ServiceHandle) -> None:
        result = subprocess.run(
            [self.docker, "rm", "-f", handle.handle_id],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            logger.warning(
                "service_stop_failed",
                container=handle.handle_id,
                error=result.stderr.strip(),
            )
            return
        logger.info("service_stopped", container=handle.handle_id)


class ExternalServiceLauncher:
    """Launcher for a service deployed by something else.

    ``start`` only returns a handle for the configured base URL; the service
    is expected to already run ``image_ref``.
    """

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def start(
        self,
        image_ref: str,
        port: int,
        env_vars: Mapping[str, str],
    ) -> ServiceHandle:
        return ServiceHandle(handle_id=self.base_url, image_ref=image_ref, endpoint=self.base_url)

    def stop(self, handle: ServiceHandle) -> None:
        return None


class ValidationRunner:
    """Drives one validation: start, wait for readiness, run suite, stop."""

    def __init__(
        self,
        launcher: ServiceLauncher,
        harness: ValidationHarness | None,
        config: ValidationConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.launcher = launcher
        self.harness = harness
        self.config = config or ValidationConfig()
        self._http_client = http_client

    def wait_ready(
        self,
        handle: ServiceHandle,
        *,
        revision: str | None = None,
        stage: str | None = None,
    ) -> None:
        """Poll the service's readiness endpoint.

        Raises:
            ReadinessTimeoutError: If it does not answer within the timeout.
        """
        url = handle.endpoint.rstrip("/") + self.config.readiness_path
        try:
            wait_for_http_ready(
                url,
                timeout=self.config.readiness_timeout_seconds,
                interval=self.config.poll_interval_seconds,
                client=self._http_client,
            )
        except PollingTimeoutError as e:
            raise ReadinessTimeoutError(
                url,
                self.config.readiness_timeout_seconds,
                image_ref=handle.image_ref,
                revision=revision,
                stage=stage,
            ) from e

    def validate(
        self,
        image_ref: str,
        env_vars: Mapping[str, str],
        suite: str,
        *,
        revision: str | None = None,
        stage: str | None = None,
    ) -> SuiteResult:
        """Start ``image_ref``, run ``suite`` against it and stop it.

        Returns:
            The passing SuiteResult.

        Raises:
            ServiceStartError: If the service cannot be started.
            ReadinessTimeoutError: If it never becomes ready.
            ValidationFailedError: If the suite fails.
            ConfigurationError: If no validation harness is configured.
        """
        if self.harness is None:
            raise ConfigurationError("validation.command is not configured")
        with create_span(
            "stagegate.validation",
            attributes={"image_ref": image_ref, "suite": suite, "revision": revision},
        ) as span:
            env = {**self.config.env, **env_vars}
            try:
                handle = self.launcher.start(image_ref, self.config.port, env)
            except ServiceStartError as e:
                raise e.with_context(revision=revision, stage=stage)

            try:
                self.wait_ready(handle, revision=revision, stage=stage)
                result = self.harness.run_suite(handle.endpoint, suite)
            finally:
                self.launcher.stop(handle)

            span.set_attribute("passed", result.passed)
            span.set_attribute("duration_ms", result.duration_ms)
            if not result.passed:
                raise ValidationFailedError(
                    suite,
                    handle.endpoint,
                    [f.name for f in result.failures],
                    revision=revision,
                    stage=stage,
                )
            return result


def create_launcher(config: ValidationConfig) -> ServiceLauncher:
    """Build the launcher selected by ``config.launcher``.

    Raises:
        ConfigurationError: If ``external`` is selected without an endpoint.
    """
    if config.launcher == "external":
        if not config.external_endpoint:
            raise ConfigurationError(
                "validation.external_endpoint is required for launcher=external"
            )
        return ExternalServiceLauncher(config.external_endpoint)
    return DockerServiceLauncher(host=config.host)


__all__ = [
    "CommandValidationHarness",
    "DockerServiceLauncher",
    "ExternalServiceLauncher",
    "ServiceHandle",
    "ServiceLauncher",
    "ValidationHarness",
    "ValidationRunner",
    "create_launcher",
]
