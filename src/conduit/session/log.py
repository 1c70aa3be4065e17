"""Durable session log — path derivation and growth-tolerant forward reads.

The agent appends one JSON object per line to
``<projects_dir>/<slug(working_directory)>/<agent_session_id>.jsonl``.
Conduit never writes to these files; it only reads them, to replay history
at resume and to recover after the live stream is lost.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from conduit.constants import DEFAULT_TOKEN_BUDGET, MAX_LINE_BYTES
from conduit.errors import RecoveryGap
from conduit.protocol.codec import decode
from conduit.protocol.events import DecodeError, DecodeErrorKind, Frame

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^A-Za-z0-9-]")


def project_slug(working_directory: str) -> str:
    """Encode a working directory the way the agent names its project dirs.

    ``C:\\Sources\\App`` → ``C--Sources-App``; ``/home/u/app`` → ``-home-u-app``.
    """
    return _SLUG_RE.sub("-", working_directory)


def log_path(projects_dir: Path, working_directory: str, agent_session_id: str) -> Path:
    """Deterministic path of the durable log for one agent session."""
    return projects_dir / project_slug(working_directory) / f"{agent_session_id}.jsonl"


@dataclass(frozen=True)
class LogRecord:
    """One deliverable log line, with its position in the file."""

    uuid: str
    offset: int
    line_number: int
    frame: Frame


@dataclass
class LogReadResult:
    """Everything one forward read produced."""

    records: list[LogRecord] = field(default_factory=list)
    errors: list[DecodeError] = field(default_factory=list)
    skipped: int = 0
    end_offset: int = 0
    end_line: int = 0


class SessionLog:
    """Reader for one agent session's append-only JSONL log."""

    def __init__(self, path: Path, max_line_bytes: int = MAX_LINE_BYTES) -> None:
        self._path = path
        self._max_line_bytes = max_line_bytes

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def read(self, start_offset: int = 0, start_line: int = 0) -> LogReadResult:
        """Read forward from *start_offset* to the file's current length.

        The agent may be appending concurrently, so the read stops at the
        length observed when the file was opened, and a trailing line with
        no newline yet is left for the next read (``end_offset`` points at
        its first byte).  Malformed lines are logged and skipped.

        Raises:
            RecoveryGap: The log does not exist or cannot be read.
        """
        try:
            with self._path.open("rb") as fh:
                fh.seek(0, 2)
                length = fh.tell()
                if start_offset > length:
                    logger.warning(
                        "%s shrank below offset %d; rereading from start",
                        self._path.name,
                        start_offset,
                    )
                    start_offset, start_line = 0, 0
                fh.seek(start_offset)
                data = fh.read(length - start_offset)
        except FileNotFoundError as exc:
            msg = f"Session log not found: {self._path}"
            raise RecoveryGap(msg) from exc
        except OSError as exc:
            msg = f"Cannot read session log {self._path}: {exc}"
            raise RecoveryGap(msg) from exc

        result = LogReadResult(end_offset=start_offset, end_line=start_line)
        position = 0
        line_number = start_line
        while True:
            newline = data.find(b"\n", position)
            if newline == -1:
                break
            raw = data[position:newline]
            offset = start_offset + position
            position = newline + 1
            line_number += 1
            result.end_offset = start_offset + position
            result.end_line = line_number
            self._consume(raw, offset, line_number, result)

        if position < len(data):
            logger.debug(
                "%s: leaving %d unterminated bytes for the next read",
                self._path.name,
                len(data) - position,
            )
        return result

    def records_after(self, last_uuid: str | None) -> LogReadResult:
        """Records that follow *last_uuid* in file order.

        When *last_uuid* is ``None`` or not (yet) in the file, every record is
        returned and the caller's dedup set filters what was already seen.
        """
        result = self.read()
        if last_uuid is None:
            return result
        for index, record in enumerate(result.records):
            if record.uuid == last_uuid:
                result.records = result.records[index + 1 :]
                return result
        logger.info(
            "%s: last delivered uuid %s not in log yet; scanning all records",
            self._path.name,
            last_uuid,
        )
        return result

    def _consume(
        self, raw: bytes, offset: int, line_number: int, result: LogReadResult
    ) -> None:
        if len(raw) > self._max_line_bytes:
            logger.warning(
                "%s:%d exceeds %d bytes, skipping",
                self._path.name,
                line_number,
                self._max_line_bytes,
            )
            result.skipped += 1
            return
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return

        decoded = decode(text)
        if isinstance(decoded, DecodeError):
            if decoded.kind is DecodeErrorKind.MALFORMED:
                logger.warning(
                    "%s:%d malformed log line: %s",
                    self._path.name,
                    line_number,
                    decoded.detail,
                )
                result.errors.append(decoded)
            else:
                result.skipped += 1
            return
        if not isinstance(decoded, Frame) or decoded.uuid is None:
            result.skipped += 1
            return
        result.records.append(
            LogRecord(
                uuid=decoded.uuid,
                offset=offset,
                line_number=line_number,
                frame=decoded,
            )
        )


# ------------------------------------------------------------------ #
# Token usage
# ------------------------------------------------------------------ #


@dataclass
class TokenUsage:
    """Token totals read from a session log."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    budget: int = DEFAULT_TOKEN_BUDGET
    valid: bool = False

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def remaining_tokens(self) -> int:
        return self.budget - self.total_tokens

    @property
    def percentage_used(self) -> float:
        return self.total_tokens / self.budget * 100 if self.budget > 0 else 0.0


def calculate_usage(path: Path, budget: int = DEFAULT_TOKEN_BUDGET) -> TokenUsage:
    """Sum ``message.usage`` over every line of a session log.

    Missing or unreadable logs yield ``valid=False`` rather than an error.
    """
    usage = TokenUsage(budget=budget)
    try:
        fh = path.open("r", encoding="utf-8", errors="replace")
    except OSError:
        logger.debug("Session log not found for usage: %s", path)
        return usage

    with fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(data, dict):
                continue
            message = data.get("message")
            if not isinstance(message, dict):
                continue
            counts = message.get("usage")
            if not isinstance(counts, dict):
                continue
            usage.input_tokens += _count(counts.get("input_tokens"))
            usage.output_tokens += _count(counts.get("output_tokens"))
            usage.cache_creation_tokens += _count(
                counts.get("cache_creation_input_tokens")
            )
            usage.cache_read_tokens += _count(counts.get("cache_read_input_tokens"))

    usage.valid = True
    return usage


def _count(value: object) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0
