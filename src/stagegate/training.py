"""Training collaborator used by the delivery stage.

The controller never trains models itself. A Trainer turns a revision and
its training image into metrics (and optionally a model artifact location)
that the delivery stage registers as a new model version.
"""

from __future__ import annotations

import json
import shlex
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stagegate.errors import TrainingError
from stagegate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class TrainingOutcome(BaseModel):
    """Metrics and model location produced by one training run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    metrics: dict[str, float] = Field(default_factory=dict)
    source: str | None = Field(default=None, description="Model artifact location")


@runtime_checkable
class Trainer(Protocol):
    """Runs training for a revision using its training image."""

    def train(self, revision: str, image_ref: str) -> TrainingOutcome: ...


class CommandTrainer:
    """Runs a configured shell command and reads the metrics it writes.

    ``${REVISION}``, ``${TRAINING_IMAGE}`` and ``${METRICS_FILE}`` are
    substituted before the command runs. The metrics file holds either
    ``{"metrics": {...}, "source": "..."}`` or a flat ``{name: value}``
    mapping.

    Example:
        >>> trainer = CommandTrainer(
        ...     "docker run --rm -v $PWD:/out ${TRAINING_IMAGE} --output /out/${METRICS_FILE}"
        ... )
        >>> outcome = trainer.train("abc123", "registry.example.com/ml/training:abc123")
    """

    def __init__(
        self,
        command: str,
        metrics_file: str | Path = "metrics.json",
        timeout_seconds: int = 3600,
    ) -> None:
        self.command = command
        self.metrics_file = Path(metrics_file)
        self.timeout_seconds = timeout_seconds

    def _render(self, revision: str, image_ref: str) -> str:
        substitutions = {
            "${REVISION}": revision,
            "${TRAINING_IMAGE}": image_ref,
            "${METRICS_FILE}": str(self.metrics_file),
        }
        command = self.command
        for placeholder, value in substitutions.items():
            command = command.replace(placeholder, shlex.quote(value))
        return command

    def train(self, revision: str, image_ref: str) -> TrainingOutcome:
        """Run the training command.

        Raises:
            TrainingError: If the command fails, times out, or writes no
                readable metrics.
        """
        command = self._render(revision, image_ref)
        log = logger.bind(revision=revision, image_ref=image_ref)

        with create_span(
            "stagegate.training",
            attributes={"revision": revision, "image_ref": image_ref},
        ):
            if self.metrics_file.exists():
                self.metrics_file.unlink()
            log.info("training_started", command=command)
            try:
                result = subprocess.run(
                    command,
                    shell=True,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                )
            except subprocess.TimeoutExpired as e:
                raise TrainingError(
                    f"timed out after {self.timeout_seconds} seconds",
                    revision=revision,
                    reference=image_ref,
                ) from e

            if result.returncode != 0:
                reason = f"exit code {result.returncode}"
                if result.stderr:
                    reason = f"{reason}: {result.stderr.strip()}"
                raise TrainingError(reason, revision=revision, reference=image_ref)

            outcome = self._read_outcome(revision, image_ref)
            log.info("training_completed", metrics=outcome.metrics)
            return outcome

    def _read_outcome(self, revision: str, image_ref: str) -> TrainingOutcome:
        if not self.metrics_file.exists():
            raise TrainingError(
                f"metrics file {self.metrics_file} was not written",
                revision=revision,
                reference=image_ref,
            )
        try:
            data = json.loads(self.metrics_file.read_text())
        except json.JSONDecodeError as e:
            raise TrainingError(
                f"metrics file {self.metrics_file} is not valid JSON: {e}",
                revision=revision,
                reference=image_ref,
            ) from e

        if isinstance(data, dict) and "metrics" not in data:
            data = {"metrics": data}
        try:
            return TrainingOutcome.model_validate(data)
        except ValidationError as e:
            raise TrainingError(
                f"metrics file {self.metrics_file} is malformed: {e}",
                revision=revision,
                reference=image_ref,
            ) from e


__all__ = ["CommandTrainer", "Trainer", "TrainingOutcome"]
