"""Shared constants and type aliases for the Conduit runtime."""

from __future__ import annotations

from pathlib import Path

#: Default agent executable.
DEFAULT_EXECUTABLE = "claude"

#: Flags that put the agent in persistent line-delimited JSON mode.
STREAM_JSON_FLAGS = (
    "-p",
    "--input-format",
    "stream-json",
    "--output-format",
    "stream-json",
    "--verbose",
)

#: Where the agent keeps its per-project session logs.
DEFAULT_PROJECTS_DIR = Path.home() / ".claude" / "projects"

#: Maximum bytes per JSONL line from subprocess stdout (1 MB).
MAX_LINE_BYTES = 1_048_576

#: Log record types that carry bookkeeping rather than conversation turns.
BOOKKEEPING_TYPES = frozenset({"summary", "file-history-snapshot", "queue-operation"})

#: Context-window budget used for usage percentages.
DEFAULT_TOKEN_BUDGET = 200_000
