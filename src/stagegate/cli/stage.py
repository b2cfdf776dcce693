"""``stagegate run-stage`` and ``stagegate run``.

``run-stage`` is the manual dispatch path: it runs exactly one stage and
never triggers downstream stages. ``run`` drives a whole pipeline for a
revision in this process, chaining stages through completion events.

Example:
    $ stagegate run-stage build --revision abc123 \\
        --manifest training=out/training.json --manifest serving=out/serving.json
    $ stagegate run-stage staging
    $ stagegate run --revision abc123
"""

from __future__ import annotations

import click

from stagegate.cli.utils import (
    attempt_line,
    attempt_to_dict,
    build_controller,
    echo_json,
    info,
    load_manifests,
    pipeline_error_exit,
    success,
)
from stagegate.errors import PipelineError
from stagegate.schemas.pipeline import STAGE_ORDER, StageName, StageStatus

_OUTPUT_OPTION = click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format.",
)

_MANIFEST_OPTION = click.option(
    "--manifest",
    "-m",
    "manifests",
    multiple=True,
    metavar="KIND=PATH",
    help="Image manifest JSON to register for the revision (training or serving). "
    "Build stage only; repeatable.",
)


@click.command(
    name="run-stage",
    help="""\b
Run a single stage manually.

Without --revision the revision of the most recently registered
serving image is used. A manual run never triggers later stages.

Examples:
    $ stagegate run-stage delivery --revision abc123
    $ stagegate run-stage staging
""",
)
@click.argument("stage", type=click.Choice([s.value for s in STAGE_ORDER]))
@click.option("--revision", "-r", default=None, help="Revision to run the stage for.")
@_MANIFEST_OPTION
@_OUTPUT_OPTION
@click.pass_context
def run_stage_command(
    ctx: click.Context,
    stage: str,
    revision: str | None,
    manifests: tuple[str, ...],
    output: str,
) -> None:
    """Dispatch one stage manually."""
    parsed = load_manifests(manifests)
    if parsed and stage != StageName.BUILD.value:
        raise click.BadParameter("only the build stage accepts manifests", param_hint="--manifest")

    controller = build_controller(ctx)
    try:
        attempt = controller.run_stage(StageName(stage), revision, manifests=parsed or None)
    except PipelineError as e:
        pipeline_error_exit(e)

    if output == "json":
        echo_json(attempt_to_dict(attempt))
    else:
        success(attempt_line(attempt))


@click.command(
    name="run",
    help="""\b
Run the whole pipeline for a revision.

Stages run in order (build, delivery, staging, deployment); the
first failure stops the run and sets the exit code.

Example:
    $ stagegate run --revision abc123
""",
)
@click.option("--revision", "-r", required=True, help="Revision to run.")
@_MANIFEST_OPTION
@_OUTPUT_OPTION
@click.pass_context
def run_command(
    ctx: click.Context,
    revision: str,
    manifests: tuple[str, ...],
    output: str,
) -> None:
    """Run every stage for one revision."""
    parsed = load_manifests(manifests)
    controller = build_controller(ctx)
    try:
        run = controller.run_pipeline(revision, manifests=parsed or None)
    except PipelineError as e:
        pipeline_error_exit(e)

    if output == "json":
        echo_json(
            {
                "revision": run.revision,
                "status": run.status.value,
                "stages": {s.value: st.value for s, st in run.stage_statuses.items()},
                "attempts": [attempt_to_dict(a) for a in run.attempts],
            }
        )
        return

    for attempt in run.attempts:
        success(attempt_line(attempt))
    if run.status is StageStatus.SUCCEEDED:
        info(f"Pipeline succeeded for {revision}")


__all__ = ["run_command", "run_stage_command"]
