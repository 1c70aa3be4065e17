"""Pydantic v2 models for conduit.yaml configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from conduit.constants import DEFAULT_EXECUTABLE, DEFAULT_PROJECTS_DIR, MAX_LINE_BYTES

PermissionMode = Literal["default", "plan", "acceptEdits", "bypassPermissions"]

OverflowPolicy = Literal["drop_oldest", "disconnect"]


class AgentConfig(BaseModel):
    """How to launch the agent CLI."""

    model_config = ConfigDict(extra="forbid")

    executable: str = Field(
        default=DEFAULT_EXECUTABLE,
        description="Agent executable name or path",
    )
    extra_args: list[str] = Field(
        default_factory=list,
        description="Additional flags appended after the stream-json flags",
    )
    permission_mode: PermissionMode = Field(
        default="bypassPermissions",
        description="Permission mode used when a session does not request one",
    )
    strip_env: list[str] = Field(
        default_factory=lambda: ["ANTHROPIC_API_KEY"],
        description="Environment variables removed so the CLI uses subscription auth",
    )
    node_heap_mb: int = Field(
        default=2048,
        ge=0,
        description="V8 heap cap for Node.js based agents (0 to disable)",
    )

    @field_validator("executable")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            msg = "executable must not be empty"
            raise ValueError(msg)
        return value


class TimeoutConfig(BaseModel):
    """Bounded waits, in seconds."""

    model_config = ConfigDict(extra="forbid")

    identifier: float = Field(
        default=5.0,
        gt=0,
        description="How long to wait for the agent to reveal its session id",
    )
    close: float = Field(
        default=5.0,
        gt=0,
        description="Graceful-exit wait after closing stdin, before killing",
    )


class RouterConfig(BaseModel):
    """Per-consumer delivery queues."""

    model_config = ConfigDict(extra="forbid")

    queue_size: int = Field(
        default=1000,
        ge=1,
        description="Bounded queue length per consumer",
    )
    overflow: OverflowPolicy = Field(
        default="drop_oldest",
        description="What to do when a consumer's queue is full",
    )


class ConduitConfig(BaseModel):
    """Top-level conduit.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    agent: AgentConfig = Field(default_factory=AgentConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    projects_dir: Path = Field(
        default=DEFAULT_PROJECTS_DIR,
        description="Root directory of the agent's durable session logs",
    )
    store_path: Path = Field(
        default=Path(".conduit") / "sessions.json",
        description="Where session metadata is persisted",
    )
    dedup_capacity: int = Field(
        default=50_000,
        ge=1,
        description="Recent UUIDs remembered per session for dedup",
    )
    max_line_bytes: int = Field(
        default=MAX_LINE_BYTES,
        ge=1024,
        description="Longest stdout line accepted from the agent",
    )

    @field_validator("projects_dir", "store_path", mode="after")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()
