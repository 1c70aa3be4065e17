"""Root CLI group, version flag and logging setup."""

from __future__ import annotations

import logging
import signal
from pathlib import Path

import click

from conduit import __version__
from conduit.commands.chat import chat
from conduit.commands.history import history
from conduit.commands.sessions import sessions
from conduit.config.parser import load_config
from conduit.errors import ConfigError

# Keep click.echo from dying silently when stdout is a closed pipe.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="conduit")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file path (default: ./conduit.yaml if present).",
)
@click.option("-v", "--verbose", count=True, help="More logging (-v info, -vv debug).")
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None, verbose: int) -> None:
    """Conduit — supervise coding-agent sessions over stream-json."""
    _configure_logging(verbose)
    try:
        ctx.obj = load_config(config_file)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=_LOG_FORMAT, force=True)


cli.add_command(chat)
cli.add_command(sessions)
cli.add_command(history)
