"""Terminal rendering of routed events for the CLI commands."""

from __future__ import annotations

import click

from conduit.protocol.events import (
    AssistantText,
    Closed,
    Crashed,
    Envelope,
    HistoryReplayed,
    IdAssigned,
    Init,
    RoutedEvent,
    Started,
    Thinking,
    ToolCall,
    ToolResult,
    TurnMetadata,
    UserPrompt,
)
from conduit.session.models import SessionMetrics

#: Max characters of tool output / thinking shown inline.
_PREVIEW_LEN = 160


def _preview(text: str, limit: int = _PREVIEW_LEN) -> str:
    flat = text.replace("\n", " ").strip()
    if len(flat) > limit:
        return flat[:limit] + "…"
    return flat


def render_event(event: RoutedEvent, *, show_thinking: bool = False) -> str | None:
    """One display line (or block) for *event*, or ``None`` to print nothing."""
    match event:
        case AssistantText(text=text):
            return text
        case UserPrompt(text=text):
            return click.style("> ", fg="green", bold=True) + text
        case Thinking(text=text):
            if not show_thinking:
                return None
            return click.style(f"  (thinking) {_preview(text)}", dim=True)
        case ToolCall(name=name, description=description, args_json=args_json):
            detail = description or _preview(args_json, 80)
            return click.style(f"  ⚙ {name}", fg="cyan") + f" {detail}"
        case ToolResult(output_text=output, is_error=is_error):
            color = "red" if is_error else "bright_black"
            return click.style(f"    ↳ {_preview(output)}", fg=color)
        case TurnMetadata() as meta:
            status = "ok" if meta.success else "failed"
            return click.style(
                f"  [{status}] {meta.duration_ms / 1000:.1f}s · "
                f"${meta.cost_usd:.4f} · {meta.input_tokens:,} in / "
                f"{meta.output_tokens:,} out",
                dim=True,
            )
        case Init(model=model, permission_mode=mode):
            return click.style(f"  model {model or '?'} · permissions {mode}", dim=True)
        case Started(pid=pid):
            return click.style(f"  agent started (PID {pid})", dim=True)
        case IdAssigned(agent_session_id=agent_id):
            return click.style(f"  session {agent_id}", dim=True)
        case HistoryReplayed(records=records, available=available):
            if not available:
                return click.style("  no earlier history found", fg="yellow")
            return click.style(f"  ── replayed {records} earlier entries ──", dim=True)
        case Crashed(reason=reason, exit_code=code, stderr_tail=tail):
            line = click.style(f"  ✗ session crashed: {reason}", fg="red", bold=True)
            if code is not None:
                line += click.style(f" (exit code {code})", fg="red")
            if tail:
                line += "\n" + click.style(f"    {tail}", fg="red", dim=True)
            return line
        case Closed(exit_code=code):
            return click.style(f"  session closed (exit code {code})", dim=True)
    return None


def render_envelope(envelope: Envelope, *, show_thinking: bool = False) -> str | None:
    return render_event(envelope.event, show_thinking=show_thinking)


def render_metrics(metrics: SessionMetrics) -> str:
    """The ``/status`` usage block for one session."""
    lines = [
        f"  model {metrics.model or '?'} · {metrics.turns} turns · "
        f"${metrics.cost_usd:.4f}",
        f"  tokens {metrics.input_tokens:,} in / {metrics.output_tokens:,} out · "
        f"cache {metrics.cache_read_tokens:,} read / "
        f"{metrics.cache_creation_tokens:,} written",
        f"  time {metrics.total_duration_ms / 1000:.1f}s total · "
        f"{metrics.last_duration_ms / 1000:.1f}s last turn",
    ]
    if metrics.tools_used:
        top = ", ".join(f"{name} ×{count}" for name, count in metrics.top_tools())
        lines.append(f"  tools {top}")
    return click.style("\n".join(lines), dim=True)
