"""conduit chat — interactive REPL over one agent session."""

from __future__ import annotations

import asyncio
import functools
import os
import select
import sys
import threading

import click

from conduit.commands.render import render_envelope, render_metrics
from conduit.config.models import ConduitConfig
from conduit.errors import SpawnError, StreamError
from conduit.protocol.events import Envelope
from conduit.router.router import Consumer
from conduit.session.models import SessionStatus
from conduit.supervisor import Supervisor

_HELP = """\
Commands:
  /exit            close the session and quit
  /kill            kill the agent immediately (the session stays resumable)
  /resume          restart a closed or crashed session from its log
  /name [NAME]     set or clear the session's display name
  /status          show the session's state and usage
  /help            show this help"""


@click.command()
@click.option(
    "-C",
    "--cwd",
    "working_directory",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Working directory for the agent (default: current directory).",
)
@click.option("-r", "--resume", "resume_of", default=None, help="Agent session id to resume.")
@click.option("-n", "--name", "display_name", default=None, help="Display name for the session.")
@click.option(
    "--permission-mode",
    type=click.Choice(["default", "plan", "acceptEdits", "bypassPermissions"]),
    default=None,
    help="Permission mode for this session (default: from config).",
)
@click.option(
    "-p",
    "--prompt",
    "initial_prompt",
    default=None,
    help="Initial prompt to send as soon as the agent is up.",
)
@click.option("--thinking", "show_thinking", is_flag=True, help="Show thinking blocks.")
@click.pass_obj
def chat(
    config: ConduitConfig,
    working_directory: str | None,
    resume_of: str | None,
    display_name: str | None,
    permission_mode: str | None,
    initial_prompt: str | None,
    show_thinking: bool,
) -> None:
    """Chat with an agent session, new or resumed."""
    exit_code = asyncio.run(
        _run_chat(
            config,
            working_directory or os.getcwd(),
            resume_of=resume_of,
            display_name=display_name,
            permission_mode=permission_mode,
            initial_prompt=initial_prompt,
            show_thinking=show_thinking,
        )
    )
    if exit_code:
        raise SystemExit(exit_code)


async def _run_chat(
    config: ConduitConfig,
    working_directory: str,
    *,
    resume_of: str | None,
    display_name: str | None,
    permission_mode: str | None,
    initial_prompt: str | None,
    show_thinking: bool,
) -> int:
    """Open the session, run the REPL, and tear everything down.  Returns an exit code."""
    supervisor = Supervisor(config)

    async def _print(envelope: Envelope) -> None:
        text = render_envelope(envelope, show_thinking=show_thinking)
        if text is not None:
            click.echo(text)

    try:
        key = await supervisor.open(
            working_directory,
            resume_of=resume_of,
            display_name=display_name,
            permission_mode=permission_mode,
            consumer=_print,
        )
    except SpawnError as exc:
        click.echo(f"Error: {exc}", err=True)
        await supervisor.shutdown()
        return 1

    click.echo(click.style(f"Session {key} in {working_directory}", bold=True))
    click.echo("Type /help for commands.\n")

    try:
        key = await _repl_loop(supervisor, key, _print, initial_prompt)
    finally:
        session = supervisor.get(key)
        if session is not None and session.status.is_live:
            await supervisor.close(key)
        await supervisor.shutdown()
    return 0


async def _repl_loop(
    supervisor: Supervisor,
    key: str,
    printer: Consumer,
    initial_prompt: str | None = None,
) -> str:
    """Read user input in a loop and forward it to the session.

    Returns the key of the session the loop ended on (``/resume`` changes it).
    """
    if initial_prompt:
        click.echo(f"> {initial_prompt}")
        await _send(supervisor, key, initial_prompt)

    loop = asyncio.get_running_loop()
    cancel = threading.Event()
    try:
        while True:
            try:
                line = await loop.run_in_executor(
                    None, functools.partial(_read_input, cancel)
                )
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue

            if line.startswith("/"):
                outcome = await _handle_command(supervisor, key, line, printer)
                if outcome is None:
                    break
                key = outcome
                continue

            await _send(supervisor, key, line)
    finally:
        cancel.set()
    return key


async def _send(supervisor: Supervisor, key: str, text: str) -> None:
    try:
        await supervisor.send(key, text)
    except StreamError as exc:
        click.echo(click.style(f"Cannot send: {exc}", fg="red"))
        click.echo("Use /resume to restart the session.")


async def _handle_command(
    supervisor: Supervisor, key: str, line: str, printer: Consumer
) -> str | None:
    """Process a slash command.  Returns the current key, or ``None`` to exit."""
    command, _, arg = line.partition(" ")
    arg = arg.strip()

    match command:
        case "/exit" | "/quit":
            code = await supervisor.close(key)
            click.echo(f"Session closed (exit code {code}).")
            return None
        case "/kill":
            await supervisor.kill(key)
            return key
        case "/resume":
            session = supervisor.get(key)
            if session is not None and session.status.is_live:
                click.echo("Session is still running.")
                return key
            try:
                return await supervisor.resume(key, consumer=printer)
            except (RuntimeError, SpawnError) as exc:
                click.echo(click.style(f"Cannot resume: {exc}", fg="red"))
                return key
        case "/name":
            supervisor.rename(key, arg or None)
            click.echo(f"Display name {'set to ' + arg if arg else 'cleared'}.")
            return key
        case "/status":
            session = supervisor.get(key)
            if session is None:
                click.echo("Session is gone.")
                return None
            status_color = "green" if session.status is SessionStatus.RUNNING else "yellow"
            click.echo(
                f"  key {session.key} · "
                + click.style(str(session.status), fg=status_color)
                + f" · id {session.agent_session_id or '(pending)'}"
                + (f" · {session.display_name}" if session.display_name else "")
            )
            click.echo(render_metrics(session.metrics))
            return key
        case "/help":
            click.echo(_HELP)
            return key
        case _:
            click.echo(f"Unknown command: {command}. Type /help for commands.")
            return key


def _read_input(cancel: threading.Event | None = None) -> str:
    r"""Blocking stdin reader for use with ``run_in_executor``.

    Polls stdin with a 0.5 s timeout so the thread notices *cancel*.  Lines
    ending with ``\`` continue on the next line.
    """
    lines: list[str] = []
    prompt = "> "

    while True:
        sys.stdout.write(prompt)
        sys.stdout.flush()

        while cancel is None or not cancel.is_set():
            try:
                ready, _, _ = select.select([sys.stdin], [], [], 0.5)
            except (ValueError, OSError):
                # stdin has no file descriptor; fall back to a blocking read.
                break
            if ready:
                break

        if cancel is not None and cancel.is_set():
            raise EOFError

        line = sys.stdin.readline()
        if not line:
            raise EOFError
        line = line.rstrip("\n")

        if line.endswith("\\"):
            lines.append(line[:-1])
            prompt = "... "
        else:
            lines.append(line)
            return "\n".join(lines)
