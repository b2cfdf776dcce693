"""``stagegate status`` and ``stagegate history``.

Example:
    $ stagegate status
    staging     abc123  model_version=3 serving_image=abc123
    production  9f8e7d  model_version=2 serving_image=9f8e7d

    $ stagegate history --revision abc123 --output json
"""

from __future__ import annotations

import click

from stagegate.cli.utils import (
    attempt_line,
    attempt_to_dict,
    build_controller,
    echo_json,
    info,
    pipeline_error_exit,
    success,
    warn,
)
from stagegate.errors import PipelineError

_OUTPUT_OPTION = click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format.",
)


@click.command(name="status", help="Show which revision each environment holds.")
@_OUTPUT_OPTION
@click.pass_context
def status_command(ctx: click.Context, output: str) -> None:
    """Report the version and revision behind each environment alias."""
    controller = build_controller(ctx)
    try:
        statuses = controller.environment_status()
    except PipelineError as e:
        pipeline_error_exit(e)

    if output == "json":
        echo_json({"environments": [s.to_display() for s in statuses]})
        return

    for status in statuses:
        versions = " ".join(
            f"{kind.value}={version or '-'}" for kind, version in status.versions.items()
        )
        revision = status.revision or "-"
        success(f"{status.environment.value:<11} {revision:<12} {versions}")
        if not status.consistent:
            warn(
                f"{status.environment.value} resources trace to different revisions",
                **{kind.value: rev for kind, rev in status.revisions.items()},
            )


@click.command(name="history", help="Show recorded stage attempts.")
@click.option("--revision", "-r", default=None, help="Only show attempts for this revision.")
@_OUTPUT_OPTION
@click.pass_context
def history_command(ctx: click.Context, revision: str | None, output: str) -> None:
    """List stage attempts, oldest first."""
    controller = build_controller(ctx)
    try:
        attempts = controller.history(revision)
    except PipelineError as e:
        pipeline_error_exit(e)

    if output == "json":
        echo_json({"attempts": [attempt_to_dict(a) for a in attempts]})
        return
    if not attempts:
        info("No stage attempts recorded")
        return
    for attempt in attempts:
        success(attempt_line(attempt))


__all__ = ["history_command", "status_command"]
