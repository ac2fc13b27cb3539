"""Tails CLI - serve a tail log to the web."""

import re
import sys
from pathlib import Path
from typing import Optional

import click

from .. import __version__
from ..config import load_config
from ..exceptions import ConfigError

HELP_TEXT = [
    "before running the serve command make sure the file you want to tail exists",
    "any number of browsers can connect; use --max-subscribers 1 --capacity-mode preempt",
    "to allow a single viewer at a time",
    "the serve command is: tails serve ./path/to/file/to/tail port, both parameters are mandatory",
]

COMMANDS = [
    ("help", "runs the help command."),
    ("commands", "shows all commands."),
    ("about", "tell more about tails."),
    ("serve ./path/to/file/to/tail port", "serves a file in to the web"),
]


def _fail(message: str) -> None:
    """Print a validation error and exit without starting the server."""
    click.echo(click.style(message, fg="red"), err=True)
    sys.exit(1)


def _parse_port(value: str) -> Optional[int]:
    """Parse a TCP port. Returns None if value is not a valid port."""
    value = value.strip()
    if not re.search(r"\d", value):
        return None
    if not re.fullmatch(r"\+?\d+", value):
        return None
    port = int(value)
    if port > 65535:
        return None
    return port


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="tails")
@click.pass_context
def cli(ctx: click.Context):
    """Tails - serve a tail log to the web with no time.

    Every new line of the file is pushed to the browser over
    Server-Sent Events.
    """
    if ctx.invoked_subcommand is None:
        click.echo("No arguments provided, use the 'help' command")


@cli.command("help")
def help_command():
    """Show how to use tails."""
    click.echo(click.style("Tails help", fg="cyan", bold=True))
    for line in HELP_TEXT:
        click.echo(line)


@cli.command()
def commands():
    """Show all commands."""
    click.echo(click.style("Tails commands", fg="cyan", bold=True))
    for name, description in COMMANDS:
        click.echo(f"{name}: {description}")


@cli.command()
def about():
    """Tell more about tails."""
    click.echo(click.style("Tails about", fg="cyan", bold=True))
    click.echo("Tails is application that aims into serving a tail log to the web with no time")
    click.echo(
        "the connection is based on SSE (Server-Sent-Events) tails do not use websockets "
        "to make the connection."
    )


@cli.command()
@click.argument("path", required=False)
@click.argument("port", required=False)
@click.option("--host", "-h", default=None, help="Host to bind to (default 0.0.0.0)")
@click.option("--config", "-c", "config_file", type=click.Path(), help="YAML configuration file")
@click.option("--source", type=click.Choice(["process", "poll"]), help="Run `tail -F` or poll the file")
@click.option("--no-restart", is_flag=True, help="Do not respawn the line source when it exits")
@click.option("--policy", type=click.Choice(["drop", "timeout"]), help="Delivery policy for slow clients")
@click.option("--max-subscribers", type=int, help="Maximum concurrent clients")
@click.option(
    "--capacity-mode",
    type=click.Choice(["reject", "preempt"]),
    help="Reject new clients or disconnect the oldest when full"
)
@click.option("--static-dir", type=click.Path(), help="Directory with index.html, styles.css, app.js")
@click.option("--log-level", help="Log level (default from TAILS_LOG_LEVEL or INFO)")
def serve(
    path: Optional[str],
    port: Optional[str],
    host: Optional[str],
    config_file: Optional[str],
    source: Optional[str],
    no_restart: bool,
    policy: Optional[str],
    max_subscribers: Optional[int],
    capacity_mode: Optional[str],
    static_dir: Optional[str],
    log_level: Optional[str]
):
    """Serve a file to the web.

    Examples:
        tails serve ./app.log 8080
        tails serve ./app.log 8080 --source poll --no-restart
        tails serve ./app.log 8080 --max-subscribers 1 --capacity-mode preempt
    """
    if path is None or port is None:
        _fail("Invalid arguments for the serve command. use the help command")
    if path == "":
        _fail("Please provide a path to the file")
    if not Path(path).exists():
        _fail(f'"{path}" path not found')
    if port.strip() == "":
        _fail("Please provide a port to serve the app")
    port_number = _parse_port(port)
    if port_number is None:
        _fail("Please provide a valid port")

    try:
        config = load_config(
            config_file,
            path=Path(path),
            port=port_number,
            host=host,
            source=source,
            restart=False if no_restart else None,
            delivery_policy=policy,
            max_subscribers=max_subscribers,
            capacity_mode=capacity_mode,
            static_dir=Path(static_dir) if static_dir else None,
        )
    except ConfigError as e:
        _fail(f"Error: {e}")

    from ..dashboard import run_server
    from ..logging_config import setup_logging

    setup_logging(log_level)

    click.echo("Running the server...")
    click.echo(f"  Tailing: {config.path}")
    click.echo("  URL: " + click.style(f"http://{config.host}:{config.port}", fg="green", bold=True))
    click.echo()
    click.echo("Press Ctrl+C to stop the server")

    run_server(config)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
