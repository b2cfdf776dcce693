"""Main entry point for the stagegate CLI.

Commands:
    stagegate trigger: Run the stage following an upstream completion
    stagegate run-stage: Run one stage manually
    stagegate run: Run the whole pipeline for a revision
    stagegate status: Show which revision each environment holds
    stagegate history: Show recorded stage attempts
    stagegate cancel: Cancel a stage attempt left running

Example:
    $ stagegate --help
    $ stagegate --log-format console run --revision abc123
"""

from __future__ import annotations

import signal
import sys
from importlib.metadata import version as get_version
from typing import TYPE_CHECKING

import click

from stagegate.cli.cancel import cancel_command
from stagegate.cli.stage import run_command, run_stage_command
from stagegate.cli.status import history_command, status_command
from stagegate.cli.trigger import trigger_command
from stagegate.cli.utils import ExitCode
from stagegate.telemetry.logging import configure_logging

if TYPE_CHECKING:
    from types import FrameType


def _get_version() -> str:
    """Return the installed package version, or 'unknown'."""
    try:
        return get_version("stagegate")
    except Exception:
        return "unknown"


@click.group(
    name="stagegate",
    help="stagegate - staged release pipeline controller for models and serving images.",
    epilog="Use 'stagegate <command> --help' for command-specific help.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(
    version=_get_version(),
    prog_name="stagegate",
    message="%(prog)s %(version)s",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    envvar="STAGEGATE_CONFIG",
    help="Configuration file (default: ./stagegate.yaml if present).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Minimum log level.",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"]),
    default="json",
    show_default=True,
    help="Log rendering on stderr.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str, log_format: str) -> None:
    """Root command group for the stagegate CLI."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    configure_logging(log_level=log_level, json_output=log_format == "json")


cli.add_command(trigger_command)
cli.add_command(run_stage_command)
cli.add_command(run_command)
cli.add_command(status_command)
cli.add_command(history_command)
cli.add_command(cancel_command)


def terminate_on_signal(signum: int, frame: FrameType | None) -> None:
    """Signal handler raising KeyboardInterrupt named after the signal.

    A stage executing when the CI platform sends SIGTERM is then recorded
    as cancelled instead of staying ``running``.
    """
    raise KeyboardInterrupt(signal.Signals(signum).name)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the stagegate CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    signal.signal(signal.SIGTERM, terminate_on_signal)
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(ExitCode.CANCELLED)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(ExitCode.GENERAL_ERROR)


if __name__ == "__main__":
    main()
