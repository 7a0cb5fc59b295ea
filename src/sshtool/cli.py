"""sshtool CLI entry point."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from sshtool import __version__
from sshtool.config import load_config
from sshtool.errors import ConfigError
from sshtool.request import ExecutionRequest
from sshtool.runner import RunResult, execute
from sshtool.ssh import RemoteExecutor, TransportSettings
from sshtool.targets import load_targets

app = typer.Typer(
    name="sshtool",
    help="Run the same commands on many hosts over ssh and summarize the results.",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()

EPILOG = """
On each target, the environment variable SSHTOOL_TARGET holds the target's name.
Without -t, targets are read from the file named in the config (~/.sshtool_targets by default).

Examples:

  sshtool -t 'as1-11,as1-12' -f myscript.sh arg1

  sshtool -o ConnectTimeout=1 -o ConnectionAttempts=1 -t ~/targets.all 'cd $SC; ./scion.sh status'

  sshtool -t as1-17 -c $SC/gen 'cd $SC; mv /tmp/gen gen.nextversion'
"""


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"sshtool {__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    """Send log records to stderr through rich; debug records only with --verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.command(epilog=EPILOG)
def main(
    commands: Optional[list[str]] = typer.Argument(
        None,
        help="Commands to run on every target, or the script's arguments when -f is given.",
    ),
    targets: Optional[str] = typer.Option(
        None, "--targets", "-t", help="Targets file, or a comma-separated list of targets."
    ),
    options: Optional[list[str]] = typer.Option(
        None, "--option", "-o", help="ssh option, passed as -o OPTION. Repeatable."
    ),
    identity: Optional[str] = typer.Option(
        None, "--identity", "-i", help="Identity file passed to ssh and scp."
    ),
    copy: Optional[Path] = typer.Option(
        None, "--copy", "-c", help="File or directory to copy to target:/tmp/ first."
    ),
    script: Optional[Path] = typer.Option(
        None, "--file", "-f", help="Script to copy to every target and run there."
    ),
    ssh_command: Optional[str] = typer.Option(
        None, "--ssh-command", help="Command to run ssh (default: ssh)."
    ),
    scp_command: Optional[str] = typer.Option(
        None, "--scp-command", help="Command to run scp (default: scp)."
    ),
    verbatim: bool = typer.Option(
        False, "--verbatim", help="Don't replace target names in results, and report each target separately."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Be verbose when outputting."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Config file (default: ~/.config/sshtool/config.toml)."
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Execute COMMANDS on every target, or run a script there with -f.

    All targets run concurrently. Once every target has finished, identical
    outputs (and identical errors) are printed once, followed by the targets
    that produced them. Ctrl-C lists the pending targets and offers to stop
    waiting and print what has finished so far.
    """
    configure_logging(verbose)

    try:
        config = load_config(config_path)
    except (ValidationError, ValueError) as exc:
        # Reason: tomllib.TOMLDecodeError subclasses ValueError.
        console.print(f"Error: invalid config: {exc}", markup=False)
        raise typer.Exit(code=RunResult.CONFIG_ERROR.exit_code)

    settings = TransportSettings.from_config(config)
    if options:
        settings.options += options
    if identity:
        settings.identity_file = identity
    if ssh_command:
        settings.ssh_command = ssh_command
    if scp_command:
        settings.scp_command = scp_command

    try:
        if script is not None:
            request = ExecutionRequest(
                script=script, script_args=tuple(commands or ()), copy_source=copy
            )
        elif commands:
            request = ExecutionRequest.from_commands(commands, config.profile, copy_source=copy)
        else:
            request = ExecutionRequest(copy_source=copy)
        request.validate_paths()
        target_list = load_targets(targets or config.targets)
    except ConfigError as exc:
        console.print(f"Error: {exc}", markup=False)
        raise typer.Exit(code=RunResult.CONFIG_ERROR.exit_code)

    result = asyncio.run(
        execute(
            target_list,
            request,
            RemoteExecutor(settings),
            console,
            substitute_target=config.substitute_target and not verbatim,
            group_output=config.group_output and not verbatim,
        )
    )
    raise typer.Exit(code=result.exit_code)
