"""Pydantic v2 models for agent events, decoded frames, and routed envelopes."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _EventBase(BaseModel):
    """Common configuration shared by every event model."""

    model_config = ConfigDict(frozen=True, extra="forbid")


# ------------------------------------------------------------------ #
# Agent events (decoded from the wire protocol or the durable log)
# ------------------------------------------------------------------ #


class Init(_EventBase):
    """``system``/``init`` line: the agent announces its session."""

    kind: Literal["init"] = "init"
    agent_session_id: str = Field(default="", description="Agent-assigned session id")
    model: str = Field(default="", description="Model identifier in use")
    permission_mode: str = Field(default="default", description="Active permission mode")


class AssistantText(_EventBase):
    """A ``text`` content block from an assistant message."""

    kind: Literal["assistant_text"] = "assistant_text"
    text: str = Field(default="", description="Text content")


class Thinking(_EventBase):
    """A ``thinking`` content block from an assistant message."""

    kind: Literal["thinking"] = "thinking"
    text: str = Field(default="", description="Thinking content")


class ToolCall(_EventBase):
    """A ``tool_use`` content block from an assistant message."""

    kind: Literal["tool_call"] = "tool_call"
    tool_id: str = Field(default="", description="Tool-use id, matched by ToolResult")
    name: str = Field(default="", description="Tool name")
    description: str = Field(default="", description="input.description, when present")
    args_json: str = Field(default="{}", description="Compact JSON of the tool input")


class ToolResult(_EventBase):
    """A ``tool_result`` block fed back to the model."""

    kind: Literal["tool_result"] = "tool_result"
    tool_id: str = Field(default="", description="The tool_use id this answers")
    output_text: str = Field(default="", description="Flattened result text")
    is_error: bool = Field(default=False, description="Whether the tool failed")


class UserPrompt(_EventBase):
    """A user-authored turn, as recorded in the durable log."""

    kind: Literal["user_prompt"] = "user_prompt"
    text: str = Field(default="", description="Prompt text")


class TurnMetadata(_EventBase):
    """``result`` line: per-turn usage and cost."""

    kind: Literal["turn_metadata"] = "turn_metadata"
    duration_ms: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    turn_count: int = 0
    success: bool = False


def _kind_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("kind", ""))
    return str(getattr(v, "kind", ""))


AgentEvent = Annotated[
    Annotated[Init, Tag("init")]
    | Annotated[AssistantText, Tag("assistant_text")]
    | Annotated[Thinking, Tag("thinking")]
    | Annotated[ToolCall, Tag("tool_call")]
    | Annotated[ToolResult, Tag("tool_result")]
    | Annotated[UserPrompt, Tag("user_prompt")]
    | Annotated[TurnMetadata, Tag("turn_metadata")],
    Discriminator(_kind_discriminator),
]
"""Discriminated union of all agent event types."""


# ------------------------------------------------------------------ #
# Lifecycle notifications (produced by the core, not the agent)
# ------------------------------------------------------------------ #


class Started(_EventBase):
    """The child process is alive."""

    kind: Literal["started"] = "started"
    pid: int | None = None


class IdAssigned(_EventBase):
    """The agent session identifier was discovered and recorded."""

    kind: Literal["id_assigned"] = "id_assigned"
    agent_session_id: str


class HistoryReplayed(_EventBase):
    """Resume replay finished; ``available`` is False when no log existed."""

    kind: Literal["history_replayed"] = "history_replayed"
    records: int = 0
    available: bool = True


class Crashed(_EventBase):
    """The session ended unexpectedly.  It stays in the registry, resumable."""

    kind: Literal["crashed"] = "crashed"
    reason: str
    exit_code: int | None = None
    stderr_tail: str = ""


class Closed(_EventBase):
    """The session ended on request (graceful close or explicit kill)."""

    kind: Literal["closed"] = "closed"
    exit_code: int | None = None


LifecycleEvent = Annotated[
    Annotated[Started, Tag("started")]
    | Annotated[IdAssigned, Tag("id_assigned")]
    | Annotated[HistoryReplayed, Tag("history_replayed")]
    | Annotated[Crashed, Tag("crashed")]
    | Annotated[Closed, Tag("closed")],
    Discriminator(_kind_discriminator),
]
"""Discriminated union of core lifecycle notifications."""

RoutedEvent = Annotated[
    Annotated[Init, Tag("init")]
    | Annotated[AssistantText, Tag("assistant_text")]
    | Annotated[Thinking, Tag("thinking")]
    | Annotated[ToolCall, Tag("tool_call")]
    | Annotated[ToolResult, Tag("tool_result")]
    | Annotated[UserPrompt, Tag("user_prompt")]
    | Annotated[TurnMetadata, Tag("turn_metadata")]
    | Annotated[Started, Tag("started")]
    | Annotated[IdAssigned, Tag("id_assigned")]
    | Annotated[HistoryReplayed, Tag("history_replayed")]
    | Annotated[Crashed, Tag("crashed")]
    | Annotated[Closed, Tag("closed")],
    Discriminator(_kind_discriminator),
]
"""Everything a subscriber can receive: agent events and lifecycle notifications."""


# ------------------------------------------------------------------ #
# Decode results
# ------------------------------------------------------------------ #


class DecodeErrorKind(StrEnum):
    MALFORMED = "malformed"
    UNKNOWN_TYPE = "unknown_type"


class Frame(_EventBase):
    """One decoded line: its envelope fields plus the events it carried.

    An assistant line may hold several content blocks, so a frame can carry
    more than one event.  The ``uuid`` names the line, which is why dedup
    works on frames and not on individual events.
    """

    line_type: str
    uuid: str | None = None
    session_id: str | None = None
    events: tuple[AgentEvent, ...] = ()


class Skip(_EventBase):
    """A recognised line that carries nothing to deliver."""

    line_type: str
    reason: str = ""
    uuid: str | None = None
    session_id: str | None = None


class DecodeError(_EventBase):
    """A line that could not be decoded.  A value, never raised."""

    kind: DecodeErrorKind
    raw: str
    detail: str = ""
    session_id: str | None = None


Decoded = Frame | Skip | DecodeError
"""Everything :func:`conduit.protocol.codec.decode` can return."""


# ------------------------------------------------------------------ #
# Routed envelopes
# ------------------------------------------------------------------ #


class EventSource(StrEnum):
    LIVE = "live"
    LOG = "log"
    CORE = "core"


class Envelope(BaseModel):
    """An event as delivered to subscribers of one session."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(description="Registry session key")
    seq: int = Field(ge=0, description="Per-session monotonic sequence number")
    ts: str = Field(description="ISO 8601 timestamp with milliseconds")
    source: EventSource = Field(description="Where the event came from")
    uuid: str | None = Field(default=None, description="Line UUID, when known")
    event: RoutedEvent
