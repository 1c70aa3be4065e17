"""Session records held by the registry."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from conduit.protocol.events import AgentEvent, Init, ToolCall, TurnMetadata


class SessionStatus(StrEnum):
    """Lifecycle states of a session."""

    STARTING = "starting"
    RUNNING = "running"
    AWAITING_ID = "awaiting_id"
    CLOSED = "closed"
    CRASHED = "crashed"

    @property
    def is_live(self) -> bool:
        """Whether a child process is (or is about to be) attached."""
        return self in (
            SessionStatus.STARTING,
            SessionStatus.RUNNING,
            SessionStatus.AWAITING_ID,
        )


class IdAssignment(StrEnum):
    """Outcome of offering an agent session id to the registry."""

    ASSIGNED = "assigned"
    CONFIRMED = "confirmed"
    CONFLICT = "conflict"


@dataclass
class SessionMetrics:
    """Running totals for one session, fed from the agent's live events."""

    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    turns: int = 0
    total_duration_ms: int = 0
    last_duration_ms: int = 0
    model: str = ""
    tools_used: dict[str, int] = field(default_factory=dict)

    def apply(self, event: AgentEvent) -> None:
        """Fold one agent event into the totals.  Other events are ignored."""
        match event:
            case Init(model=model) if model:
                self.model = model
            case ToolCall(name=name):
                self.tools_used[name or "?"] = self.tools_used.get(name or "?", 0) + 1
            case TurnMetadata() as meta:
                self.cost_usd += meta.cost_usd
                self.input_tokens += meta.input_tokens
                self.output_tokens += meta.output_tokens
                self.cache_read_tokens += meta.cache_read_tokens
                self.cache_creation_tokens += meta.cache_creation_tokens
                self.turns += max(meta.turn_count, 1)
                self.total_duration_ms += meta.duration_ms
                self.last_duration_ms = meta.duration_ms

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )

    def top_tools(self, limit: int = 5) -> list[tuple[str, int]]:
        return sorted(self.tools_used.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]

    def copy(self) -> SessionMetrics:
        return dataclasses.replace(self, tools_used=dict(self.tools_used))


@dataclass
class Session:
    """One agent conversation.

    ``key`` is local to this process and never sent to the agent.
    ``agent_session_id`` is set once, by the first event that carries it.
    """

    key: str
    working_directory: str
    agent_session_id: str | None = None
    display_name: str | None = None
    resume_of: str | None = None
    permission_mode: str | None = None
    status: SessionStatus = SessionStatus.STARTING
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    exit_code: int | None = None
    metrics: SessionMetrics = field(default_factory=SessionMetrics)

    @property
    def resumable_id(self) -> str | None:
        """The identifier a later ``--resume`` should use."""
        return self.agent_session_id or self.resume_of
