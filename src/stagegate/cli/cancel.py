"""``stagegate cancel``.

Releases a stage attempt left ``running`` by a process that was killed
before it could record an outcome (SIGKILL, a lost CI runner). Until it is
cancelled, every new claim of that stage for the revision is refused.

Example:
    $ stagegate cancel delivery --revision abc123
    2026-10-18 09:12:44  abc123        delivery    cancelled  manual_dispatch
        cancelled by operator
"""

from __future__ import annotations

import click

from stagegate.cli.utils import (
    attempt_line,
    attempt_to_dict,
    build_controller,
    echo_json,
    pipeline_error_exit,
    success,
)
from stagegate.errors import PipelineError
from stagegate.schemas.pipeline import STAGE_ORDER, StageName


@click.command(
    name="cancel",
    help="""\b
Cancel the running attempt of a stage.

Use this when the process running the stage died without recording an
outcome. The stage can be run again afterwards.

Example:
    $ stagegate cancel delivery --revision abc123
""",
)
@click.argument("stage", type=click.Choice([s.value for s in STAGE_ORDER]))
@click.option("--revision", "-r", required=True, help="Revision the attempt runs for.")
@click.option(
    "--reason",
    default="cancelled by operator",
    show_default=True,
    help="Reason recorded on the attempt.",
)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format.",
)
@click.pass_context
def cancel_command(
    ctx: click.Context,
    stage: str,
    revision: str,
    reason: str,
    output: str,
) -> None:
    """Mark the running attempt of (stage, revision) cancelled."""
    controller = build_controller(ctx)
    try:
        attempt = controller.state_machine.cancel_running(StageName(stage), revision, reason)
    except PipelineError as e:
        pipeline_error_exit(e)

    if output == "json":
        echo_json(attempt_to_dict(attempt))
    else:
        success(attempt_line(attempt))
