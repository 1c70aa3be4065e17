"""conduit sessions — list resumable sessions found in the agent's logs."""

from __future__ import annotations

import click

from conduit.config.models import ConduitConfig
from conduit.session.log import calculate_usage, project_slug
from conduit.session.scanner import LogSummary, scan_projects
from conduit.session.store import JsonSessionStore


@click.command()
@click.option(
    "-C",
    "--cwd",
    "working_directory",
    type=click.Path(file_okay=False, resolve_path=True),
    default=None,
    help="Only list sessions of this working directory.",
)
@click.option("-a", "--all", "show_all", is_flag=True, help="Include bookkeeping-only logs.")
@click.option("-n", "--limit", type=int, default=20, show_default=True, help="Rows to show.")
@click.option("--usage", "show_usage", is_flag=True, help="Compute token usage per session.")
@click.pass_obj
def sessions(
    config: ConduitConfig,
    working_directory: str | None,
    show_all: bool,
    limit: int,
    show_usage: bool,
) -> None:
    """List sessions that can be resumed with `conduit chat --resume`."""
    slug = project_slug(working_directory) if working_directory else None
    found = scan_projects(config.projects_dir, slug)
    if not show_all:
        found = [s for s in found if not s.is_excluded]

    if not found:
        click.echo(f"No sessions found under {config.projects_dir}.")
        return

    names = _display_names(config)
    shown = found[:limit] if limit > 0 else found
    click.echo(f"\nFound {len(found)} session(s):\n")

    header = f"{'SESSION ID':<38} {'MODIFIED':<17} {'SIZE':>9}  DIRECTORY"
    if show_usage:
        header = f"{'SESSION ID':<38} {'MODIFIED':<17} {'SIZE':>9} {'TOKENS':>12}  DIRECTORY"
    click.echo(header)
    click.echo("─" * len(header))

    for summary in shown:
        click.echo(_format_row(summary, names.get(summary.agent_session_id), show_usage))

    if len(found) > len(shown):
        click.echo(f"... and {len(found) - len(shown)} more (use --limit)")
    click.echo()


def _format_row(summary: LogSummary, name: str | None, show_usage: bool) -> str:
    modified = summary.modified.astimezone().strftime("%Y-%m-%d %H:%M")
    size = _human_size(summary.size_bytes)
    directory = summary.working_directory
    if name:
        directory = f"{directory}  ({name})"
    if summary.is_excluded:
        directory += click.style(f"  [{summary.excluded_reason}]", dim=True)

    row = f"{summary.agent_session_id:<38} {modified:<17} {size:>9}"
    if show_usage:
        usage = calculate_usage(summary.path)
        tokens = f"{usage.percentage_used:.0f}%" if usage.valid else "?"
        row += f" {tokens:>12}"
    return f"{row}  {directory}"


def _display_names(config: ConduitConfig) -> dict[str, str]:
    if not config.store_path.exists():
        return {}
    store = JsonSessionStore(config.store_path)
    return {r.agent_session_id: r.display_name for r in store.list_sessions() if r.display_name}


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"
