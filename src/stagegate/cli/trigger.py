"""``stagegate trigger``: react to an upstream stage completion.

Called by the CI platform when a stage workflow finishes. Runs the next
stage for the same revision when the upstream succeeded; does nothing
otherwise.

Example:
    $ stagegate trigger --upstream-stage build --conclusion success --revision abc123
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
)
from stagegate.errors import PipelineError
from stagegate.schemas.pipeline import STAGE_ORDER, Conclusion, StageName, UpstreamEvent


@click.command(
    name="trigger",
    help="""\b
Run the stage that follows a completed upstream stage.

Nothing runs when the upstream did not succeed, when it was the
last stage, or when the next stage is already running for the
revision (duplicate event).

Examples:
    $ stagegate trigger --upstream-stage build --conclusion success --revision abc123
    $ stagegate trigger -u delivery -c success -r abc123 --follow
""",
)
@click.option(
    "--upstream-stage",
    "-u",
    type=click.Choice([s.value for s in STAGE_ORDER]),
    required=True,
    help="Stage that completed.",
)
@click.option(
    "--conclusion",
    "-c",
    type=click.Choice([c.value for c in Conclusion]),
    required=True,
    help="How the upstream stage completed.",
)
@click.option("--revision", "-r", required=True, help="Revision the upstream ran for.")
@click.option(
    "--follow/--no-follow",
    default=False,
    help="Keep running downstream stages in this process after each success.",
)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format.",
)
@click.pass_context
def trigger_command(
    ctx: click.Context,
    upstream_stage: str,
    conclusion: str,
    revision: str,
    follow: bool,
    output: str,
) -> None:
    """Dispatch the next stage for an upstream completion event."""
    controller = build_controller(ctx)
    try:
        event = UpstreamEvent(
            upstream_stage=StageName(upstream_stage),
            conclusion=Conclusion(conclusion),
            revision=revision,
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--revision") from e

    attempts = []
    try:
        attempt = controller.trigger(event)
        while attempt is not None:
            attempts.append(attempt)
            if not follow:
                break
            attempt = controller.trigger(controller.completion_event(attempt))
    except PipelineError as e:
        pipeline_error_exit(e)

    if output == "json":
        echo_json({"triggered": [attempt_to_dict(a) for a in attempts]})
    elif not attempts:
        info(f"No stage triggered by {upstream_stage} ({conclusion}) for {revision}")
    else:
        for a in attempts:
            success(attempt_line(a))


__all__ = ["trigger_command"]
