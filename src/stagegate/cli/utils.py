"""CLI utility functions and error handling.

Errors are printed as plain text to stderr and the process exits with the
``exit_code`` of the PipelineError that ended the command, so CI systems
can tell a failed quality gate from an unreachable registry.

Example:
    from stagegate.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("Manifest not found", exit_code=ExitCode.USAGE_ERROR, path=str(path))
"""

from __future__ import annotations

import json
import sys
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from stagegate.errors import PipelineError
from stagegate.schemas.config import PipelineConfig
from stagegate.schemas.pipeline import ArtifactKind, ResourceKind, StageAttempt

if TYPE_CHECKING:
    from typing import NoReturn

    from stagegate.controller import PipelineController
    from stagegate.registry.base import Payload


class ExitCode(IntEnum):
    """Exit codes not tied to a PipelineError subclass."""

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """Unexpected failure."""

    USAGE_ERROR = 2
    """Invalid arguments or configuration."""

    CANCELLED = 130
    """Interrupted by the user or the CI platform."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Stage failed", revision="abc123", stage="delivery")
        # Output: Error: Stage failed (revision=abc123, stage=delivery)
    """
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    full_message = f"Error: {message} ({context_str})" if context_str else f"Error: {message}"
    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with ``exit_code``."""
    error(message, **context)
    sys.exit(exit_code)


def pipeline_error_exit(exc: PipelineError) -> NoReturn:
    """Report a PipelineError and exit with its exit code."""
    error(str(exc), error_type=type(exc).__name__)
    sys.exit(exc.exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    full_message = f"Warning: {message} ({context_str})" if context_str else f"Warning: {message}"
    click.echo(full_message, err=True)


def success(message: str) -> None:
    """Print a result line to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print a progress message to stderr."""
    click.echo(message, err=True)


def echo_json(data: Any) -> None:
    """Print ``data`` as indented JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def attempt_to_dict(attempt: StageAttempt) -> dict[str, Any]:
    """JSON-friendly view of a stage attempt."""
    data: dict[str, Any] = attempt.model_dump(mode="json")
    data["duration_seconds"] = attempt.duration_seconds
    return data


def attempt_line(attempt: StageAttempt) -> str:
    """One-line summary of a stage attempt for table output."""
    versions = ", ".join(f"{k.value}={v}" for k, v in sorted(attempt.versions.items()))
    line = (
        f"{attempt.started_at:%Y-%m-%d %H:%M:%S}  {attempt.revision:<12}  "
        f"{attempt.stage.value:<10}  {attempt.status.value:<9}  {attempt.triggered_by.value}"
    )
    if versions:
        line += f"  [{versions}]"
    if attempt.error:
        line += f"\n    {attempt.error}"
    return line


def build_controller(ctx: click.Context) -> PipelineController:
    """Load configuration and build the controller for a command.

    Exits with the configuration error's exit code if the configuration
    cannot be loaded.
    """
    from stagegate.controller import PipelineController

    obj = ctx.find_root().obj or {}
    try:
        config = PipelineConfig.load(obj.get("config_path"))
        return PipelineController.from_config(config)
    except PipelineError as e:
        pipeline_error_exit(e)


def load_manifests(specs: tuple[str, ...]) -> dict[ResourceKind, Payload]:
    """Parse ``--manifest kind=path`` options into manifests per image kind.

    Raises:
        click.BadParameter: If a spec is malformed or the file is unreadable.
    """
    manifests: dict[ResourceKind, Payload] = {}
    for spec in specs:
        kind_name, sep, path_str = spec.partition("=")
        if not sep or not path_str:
            raise click.BadParameter(f"expected KIND=PATH, got {spec!r}", param_hint="--manifest")
        try:
            kind = ResourceKind.for_artifact(ArtifactKind(kind_name))
        except ValueError:
            choices = ", ".join(k.value for k in ArtifactKind)
            raise click.BadParameter(
                f"unknown image kind {kind_name!r} (choose from {choices})",
                param_hint="--manifest",
            ) from None
        path = Path(path_str)
        try:
            manifest = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise click.BadParameter(
                f"cannot read manifest {path}: {e}", param_hint="--manifest"
            ) from e
        if not isinstance(manifest, dict):
            raise click.BadParameter(
                f"manifest {path} must be a JSON object", param_hint="--manifest"
            )
        manifests[kind] = manifest
    return manifests


__all__ = [
    "ExitCode",
    "attempt_line",
    "attempt_to_dict",
    "build_controller",
    "echo_json",
    "error",
    "error_exit",
    "info",
    "load_manifests",
    "pipeline_error_exit",
    "success",
    "warn",
]
