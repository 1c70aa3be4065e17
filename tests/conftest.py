"""Shared fixtures and subprocess doubles for the Conduit test suite."""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conduit.config.models import ConduitConfig, TimeoutConfig

# ------------------------------------------------------------------ #
# Subprocess doubles
# ------------------------------------------------------------------ #

_pids = itertools.count(40_000)
_live_processes: dict[int, MagicMock] = {}


class MockAsyncStream:
    """Async-aware mock stdout/stderr.

    Chunks can be added at any time via ``feed()``; ``read()`` and
    ``readline()`` block until a chunk is available or ``close()`` is
    called.  EOF is sticky.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self.closed = False

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def feed_json(self, *objects: dict[str, Any]) -> None:
        for obj in objects:
            self.feed(json.dumps(obj).encode() + b"\n")

    def close(self) -> None:
        """Signal EOF."""
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        data = await self._queue.get()
        if not data:
            self._queue.put_nowait(b"")
        return data

    async def readline(self) -> bytes:
        return await self.read()


def make_mock_process(*, exit_on_stdin_close: bool = True) -> MagicMock:
    """Create a mock subprocess that exits when told to (or when killed).

    ``proc.exit(code)`` ends the process: stdout/stderr hit EOF and
    ``wait()`` returns *code*.  Closing stdin exits with 0 unless
    *exit_on_stdin_close* is False.
    """
    proc = MagicMock()
    proc.pid = next(_pids)
    proc.returncode = None
    proc.stdout = MockAsyncStream()
    proc.stderr = MockAsyncStream()
    exited = asyncio.Event()

    def _exit(code: int) -> None:
        if proc.returncode is not None:
            return
        proc.returncode = code
        proc.stdout.close()
        proc.stderr.close()
        exited.set()
        _live_processes.pop(proc.pid, None)

    async def _wait() -> int:
        await exited.wait()
        return proc.returncode

    stdin = MagicMock()
    stdin.write = MagicMock()
    stdin.drain = AsyncMock()
    if exit_on_stdin_close:
        stdin.close = MagicMock(side_effect=lambda: _exit(0))
    else:
        stdin.close = MagicMock()
    proc.stdin = stdin

    proc.exit = _exit
    proc.wait = _wait
    proc.kill = MagicMock(side_effect=lambda: _exit(-9))
    proc.terminate = MagicMock(side_effect=lambda: _exit(-15))
    _live_processes[proc.pid] = proc
    return proc


def _fake_killpg(pid: int, sig: int) -> None:
    proc = _live_processes.get(pid)
    if proc is None:
        raise ProcessLookupError(pid)
    proc.exit(-sig)


@pytest.fixture(autouse=True)
def _no_real_signals():
    """Mock process ids must never reach the real ``os.killpg``."""
    with patch("conduit.process.handle.os.killpg", side_effect=_fake_killpg) as killpg:
        yield killpg


# ------------------------------------------------------------------ #
# Wire-line builders
# ------------------------------------------------------------------ #


def init_line(session_id: str, uuid: str | None = None, model: str = "claude-test") -> dict[str, Any]:
    line: dict[str, Any] = {
        "type": "system",
        "subtype": "init",
        "session_id": session_id,
        "model": model,
        "permissionMode": "bypassPermissions",
    }
    if uuid is not None:
        line["uuid"] = uuid
    return line


def assistant_line(
    text: str, uuid: str, session_id: str | None = None, *, log: bool = False
) -> dict[str, Any]:
    line: dict[str, Any] = {
        "type": "assistant",
        "uuid": uuid,
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }
    if session_id is not None:
        line["sessionId" if log else "session_id"] = session_id
    return line


def tool_use_line(
    name: str, tool_id: str, uuid: str, session_id: str | None = None
) -> dict[str, Any]:
    line: dict[str, Any] = {
        "type": "assistant",
        "uuid": uuid,
        "message": {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": tool_id, "name": name, "input": {}}],
        },
    }
    if session_id is not None:
        line["session_id"] = session_id
    return line


def user_prompt_line(text: str, uuid: str, session_id: str) -> dict[str, Any]:
    """A user prompt as the agent records it in its durable log."""
    return {
        "type": "user",
        "uuid": uuid,
        "sessionId": session_id,
        "message": {"role": "user", "content": text},
    }


def tool_result_line(
    tool_id: str, output: str, uuid: str, session_id: str | None = None
) -> dict[str, Any]:
    line: dict[str, Any] = {
        "type": "user",
        "uuid": uuid,
        "message": {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": output}],
        },
    }
    if session_id is not None:
        line["session_id"] = session_id
    return line


def result_line(session_id: str, uuid: str | None = None) -> dict[str, Any]:
    line: dict[str, Any] = {
        "type": "result",
        "subtype": "success",
        "session_id": session_id,
        "duration_ms": 1200,
        "total_cost_usd": 0.0123,
        "num_turns": 1,
        "usage": {"input_tokens": 10, "output_tokens": 20},
    }
    if uuid is not None:
        line["uuid"] = uuid
    return line


def write_log(path: Path, *objects: dict[str, Any], raw_lines: tuple[str, ...] = ()) -> Path:
    """Write a durable log file from JSON objects (plus optional raw lines)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [json.dumps(obj) for obj in objects]
    lines.extend(raw_lines)
    path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
    return path


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds, failing the test after *timeout*."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.01)


# ------------------------------------------------------------------ #
# Config
# ------------------------------------------------------------------ #


@pytest.fixture
def config(tmp_path: Path) -> ConduitConfig:
    return ConduitConfig(
        projects_dir=tmp_path / "projects",
        store_path=tmp_path / "state" / "sessions.json",
        timeouts=TimeoutConfig(identifier=0.3, close=0.5),
    )
