"""Protocol codec — stateless parser/encoder for the agent's line-delimited JSON.

The agent's ``--output-format stream-json --verbose`` mode emits these
top-level line types:

* ``system``    — ``init`` carries ``session_id``, ``model``, ``permissionMode``;
  other subtypes (hooks, compaction boundaries) are skipped.
* ``assistant`` — wraps an API message; content blocks are nested inside
  ``message.content[]`` as ``text``, ``tool_use``, or ``thinking`` blocks.
* ``user``      — tool results fed back to the model, or (in the durable
  log) the user's own prompt.
* ``result``    — per-turn metadata: duration, cost, token usage, turns.

The durable log uses the same shapes plus bookkeeping records (``summary``,
``file-history-snapshot``, ``queue-operation``), and spells the identifier
``sessionId`` instead of ``session_id``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from conduit.constants import BOOKKEEPING_TYPES, MAX_LINE_BYTES
from conduit.protocol.events import (
    AgentEvent,
    AssistantText,
    Decoded,
    DecodeError,
    DecodeErrorKind,
    Frame,
    Init,
    Skip,
    Thinking,
    ToolCall,
    ToolResult,
    TurnMetadata,
    UserPrompt,
)

logger = logging.getLogger(__name__)

#: Max characters of a raw line kept in a DecodeError / log message.
_RAW_PREVIEW = 200

#: Line types the decoder recognises but never turns into events.
_SKIPPED_TYPES = frozenset({"stream_event"}) | BOOKKEEPING_TYPES


# ------------------------------------------------------------------ #
# Decoding
# ------------------------------------------------------------------ #


def decode(line: str) -> Decoded:
    """Decode one line into a :class:`Frame`, :class:`Skip`, or :class:`DecodeError`.

    Never raises: invalid JSON, a non-object payload or a missing ``type``
    yield ``DecodeError(kind=MALFORMED)``; an unrecognised ``type`` yields
    ``DecodeError(kind=UNKNOWN_TYPE)`` so newer agents stay readable.
    """
    stripped = line.strip()
    try:
        data = json.loads(stripped)
    except (json.JSONDecodeError, RecursionError) as exc:
        return DecodeError(
            kind=DecodeErrorKind.MALFORMED,
            raw=stripped[:_RAW_PREVIEW],
            detail=str(exc),
        )

    if not isinstance(data, dict):
        return DecodeError(
            kind=DecodeErrorKind.MALFORMED,
            raw=stripped[:_RAW_PREVIEW],
            detail=f"expected a JSON object, got {type(data).__name__}",
        )
    return decode_object(data, raw=stripped)


def decode_object(data: dict[str, Any], raw: str = "") -> Decoded:
    """Decode an already-parsed JSON object (see :func:`decode`)."""
    line_type = data.get("type")
    session_id = extract_session_id(data)
    uuid = _opt_str(data.get("uuid"))

    if not isinstance(line_type, str) or not line_type:
        return DecodeError(
            kind=DecodeErrorKind.MALFORMED,
            raw=raw[:_RAW_PREVIEW],
            detail="missing 'type'",
            session_id=session_id,
        )

    if line_type in _SKIPPED_TYPES:
        return Skip(
            line_type=line_type, reason=line_type, uuid=uuid, session_id=session_id
        )

    events: list[AgentEvent]
    match line_type:
        case "system":
            if data.get("subtype") != "init":
                return Skip(
                    line_type=line_type,
                    reason=f"system/{data.get('subtype', '')}",
                    uuid=uuid,
                    session_id=session_id,
                )
            events = [_decode_init(data, session_id)]
        case "assistant":
            events = _decode_assistant(data)
        case "user":
            events = _decode_user(data)
        case "result":
            events = [_decode_result(data)]
        case _:
            return DecodeError(
                kind=DecodeErrorKind.UNKNOWN_TYPE,
                raw=raw[:_RAW_PREVIEW],
                detail=f"unknown type {line_type!r}",
                session_id=session_id,
            )

    if not events:
        return Skip(
            line_type=line_type, reason="no content", uuid=uuid, session_id=session_id
        )
    return Frame(
        line_type=line_type, uuid=uuid, session_id=session_id, events=tuple(events)
    )


def extract_session_id(data: dict[str, Any]) -> str | None:
    """Return the agent session id carried by a line, if any.

    Live stdout lines use ``session_id``; durable log lines use ``sessionId``.
    """
    for field in ("session_id", "sessionId"):
        value = data.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def _decode_init(data: dict[str, Any], session_id: str | None) -> Init:
    return Init(
        agent_session_id=session_id or "",
        model=_str(data.get("model")),
        permission_mode=_str(data.get("permissionMode")) or "default",
    )


def _content_blocks(data: dict[str, Any]) -> list[Any] | str | None:
    message = data.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, (list, str)):
        return content
    return None


def _decode_assistant(data: dict[str, Any]) -> list[AgentEvent]:
    content = _content_blocks(data)
    if isinstance(content, str):
        return [AssistantText(text=content)] if content.strip() else []
    if content is None:
        return []

    events: list[AgentEvent] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = _str(block.get("text"))
            if text.strip():
                events.append(AssistantText(text=text))
        elif block_type == "thinking":
            text = _str(block.get("thinking"))
            if text.strip():
                events.append(Thinking(text=text))
        elif block_type == "tool_use":
            tool_input = block.get("input")
            if not isinstance(tool_input, dict):
                tool_input = {}
            events.append(
                ToolCall(
                    tool_id=_str(block.get("id")),
                    name=_str(block.get("name")),
                    description=_str(tool_input.get("description")),
                    args_json=json.dumps(tool_input, separators=(",", ":")),
                )
            )
    return events


def _decode_user(data: dict[str, Any]) -> list[AgentEvent]:
    content = _content_blocks(data)
    if isinstance(content, str):
        return [UserPrompt(text=content)] if content.strip() else []
    if content is None:
        return []

    events: list[AgentEvent] = []
    prompt_parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "tool_result":
            events.append(
                ToolResult(
                    tool_id=_str(block.get("tool_use_id")),
                    output_text=_flatten_text(block.get("content")),
                    is_error=block.get("is_error") is True,
                )
            )
        elif block_type == "text":
            prompt_parts.append(_str(block.get("text")))

    prompt = "\n".join(p for p in prompt_parts if p)
    if prompt.strip():
        events.insert(0, UserPrompt(text=prompt))
    return events


def _decode_result(data: dict[str, Any]) -> TurnMetadata:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        usage = {}
    return TurnMetadata(
        duration_ms=_int(data.get("duration_ms")),
        cost_usd=_float(data.get("total_cost_usd")),
        input_tokens=_int(usage.get("input_tokens")),
        output_tokens=_int(usage.get("output_tokens")),
        cache_read_tokens=_int(usage.get("cache_read_input_tokens")),
        cache_creation_tokens=_int(usage.get("cache_creation_input_tokens")),
        turn_count=_int(data.get("num_turns")),
        success=data.get("subtype") == "success",
    )


def _flatten_text(content: Any) -> str:
    """Tool results arrive as a plain string or a list of text blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            _str(item.get("text"))
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(parts)
    if content is None:
        return ""
    return json.dumps(content)


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


# ------------------------------------------------------------------ #
# Encoding
# ------------------------------------------------------------------ #


def encode(user_text: str) -> bytes:
    """Encode a user turn as one stdin line for the agent."""
    payload = {
        "type": "user",
        "message": {"role": "user", "content": user_text},
    }
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


# ------------------------------------------------------------------ #
# Line assembly
# ------------------------------------------------------------------ #


class LineAssembler:
    """Reassembles arbitrary byte chunks into complete text lines.

    The child's stdout is not line-aligned per read: a chunk may end mid-line
    or even mid-UTF-8 sequence, so bytes are buffered and only decoded once a
    full line is available.  Lines longer than *max_line_bytes* are dropped.
    """

    def __init__(self, max_line_bytes: int = MAX_LINE_BYTES) -> None:
        self._buffer = bytearray()
        self._max_line_bytes = max_line_bytes
        self._discarding = False

    @property
    def pending_bytes(self) -> int:
        """Bytes buffered for a line that has not ended yet."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[str]:
        """Add *chunk* and return every line it completed (without newlines)."""
        lines: list[str] = []
        start = 0
        while True:
            newline = chunk.find(b"\n", start)
            if newline == -1:
                self._append(chunk[start:])
                break
            self._append(chunk[start:newline])
            if self._discarding:
                self._discarding = False
            else:
                line = self._take()
                if line is not None:
                    lines.append(line)
            self._buffer.clear()
            start = newline + 1
        return lines

    def flush(self) -> str | None:
        """Return the unterminated trailing line at EOF, if any."""
        if self._discarding:
            self._discarding = False
            self._buffer.clear()
            return None
        line = self._take()
        self._buffer.clear()
        return line

    def _append(self, data: bytes) -> None:
        if self._discarding or not data:
            return
        if len(self._buffer) + len(data) > self._max_line_bytes:
            logger.warning(
                "stdout line exceeds %d bytes, skipping", self._max_line_bytes
            )
            self._buffer.clear()
            self._discarding = True
            return
        self._buffer.extend(data)

    def _take(self) -> str | None:
        text = self._buffer.decode("utf-8", errors="replace").rstrip("\r")
        if not text.strip():
            return None
        return text
