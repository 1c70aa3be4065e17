"""conduit history — print a session's durable log as a conversation."""

from __future__ import annotations

from pathlib import Path

import click

from conduit.commands.render import render_event
from conduit.config.models import ConduitConfig
from conduit.errors import RecoveryGap
from conduit.session.log import SessionLog, calculate_usage, log_path
from conduit.session.scanner import scan_projects


@click.command()
@click.argument("agent_session_id")
@click.option(
    "-C",
    "--cwd",
    "working_directory",
    type=click.Path(file_okay=False, resolve_path=True),
    default=None,
    help="Working directory of the session (default: search every project).",
)
@click.option("--thinking", "show_thinking", is_flag=True, help="Show thinking blocks.")
@click.pass_obj
def history(
    config: ConduitConfig,
    agent_session_id: str,
    working_directory: str | None,
    show_thinking: bool,
) -> None:
    """Print the history of AGENT_SESSION_ID with its token usage."""
    path = _find_log(config, agent_session_id, working_directory)
    if path is None:
        click.echo(f"No log found for session {agent_session_id}", err=True)
        raise SystemExit(1)

    log = SessionLog(path, config.max_line_bytes)
    try:
        result = log.read()
    except RecoveryGap as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    click.echo(click.style(f"\nSession {agent_session_id}", bold=True))
    click.echo(f"   Log: {path}\n")

    for record in result.records:
        for event in record.frame.events:
            text = render_event(event, show_thinking=show_thinking)
            if text is not None:
                click.echo(text)

    usage = calculate_usage(path)
    click.echo()
    click.echo(f"Records: {len(result.records):,}")
    if usage.valid:
        click.echo(
            f"Tokens: {usage.total_tokens:,} / {usage.budget:,} "
            f"({usage.percentage_used:.1f}% used, {usage.remaining_tokens:,} remaining)"
        )
    if result.errors:
        click.echo(f"\nWarning: {len(result.errors)} malformed line(s) skipped")
        for error in result.errors[:10]:
            click.echo(f"   {error.detail}")
        if len(result.errors) > 10:
            click.echo(f"   ... and {len(result.errors) - 10} more")


def _find_log(
    config: ConduitConfig, agent_session_id: str, working_directory: str | None
) -> Path | None:
    if working_directory is not None:
        path = log_path(config.projects_dir, working_directory, agent_session_id)
        return path if path.is_file() else None
    for summary in scan_projects(config.projects_dir):
        if summary.agent_session_id == agent_session_id:
            return summary.path
    return None
