"""Process handle — owns one spawned agent child and its byte streams."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections import deque
from collections.abc import AsyncIterator, Mapping, Sequence

from conduit.constants import MAX_LINE_BYTES
from conduit.errors import SpawnError, StreamError
from conduit.protocol.codec import LineAssembler

logger = logging.getLogger(__name__)

#: Bytes requested per stdout read; lines are reassembled across reads.
_READ_CHUNK = 65_536

#: Seconds to wait for the child to be reaped after SIGKILL.
_KILL_WAIT = 3.0

#: stderr lines kept for crash notifications.
_STDERR_TAIL_LINES = 20


class ProcessHandle:
    """One agent child process with independent read and write directions.

    Writes are serialized by a write-only lock; reads happen in whichever
    task iterates :meth:`lines`.  The two never share a lock, so a write
    never waits on a pending read or vice versa.  stderr is drained on its
    own task and logged.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        argv: Sequence[str],
        *,
        name: str = "",
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> None:
        self._process = process
        self._argv = list(argv)
        self._name = name or str(process.pid)
        self._max_line_bytes = max_line_bytes
        self._write_lock = asyncio.Lock()
        self._stdin_closed = False
        self._termination_requested = False
        self._killed = False
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------ #
    # Spawning
    # ------------------------------------------------------------------ #

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        name: str = "",
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> ProcessHandle:
        """Start *argv* with piped stdio in its own process group.

        Raises:
            SpawnError: The executable is missing, not executable, or the
                working directory is invalid.
        """
        if not argv:
            msg = "Cannot spawn an empty command"
            raise SpawnError(msg)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                limit=max_line_bytes,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            if cwd is not None and not os.path.isdir(cwd):
                msg = f"Working directory not found: {cwd}"
            else:
                msg = (
                    f"Agent executable '{argv[0]}' not found. "
                    "Make sure it is installed and on your PATH."
                )
            raise SpawnError(msg) from exc
        except PermissionError as exc:
            msg = f"Permission denied starting '{argv[0]}': {exc}"
            raise SpawnError(msg) from exc
        except OSError as exc:
            msg = f"Failed to spawn '{argv[0]}': {exc}"
            raise SpawnError(msg) from exc

        handle = cls(process, argv, name=name, max_line_bytes=max_line_bytes)
        handle._start_stderr_drain()
        logger.info("%s: spawned PID %s: %s", handle._name, process.pid, " ".join(argv))
        return handle

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def alive(self) -> bool:
        return self._process.returncode is None and not self._killed

    @property
    def termination_requested(self) -> bool:
        """True once :meth:`close` or :meth:`kill` has been called."""
        return self._termination_requested

    @property
    def stderr_tail(self) -> str:
        """The last few stderr lines, newline-joined."""
        return "\n".join(self._stderr_tail)

    # ------------------------------------------------------------------ #
    # Input
    # ------------------------------------------------------------------ #

    async def write_line(self, data: str | bytes) -> None:
        """Write one line to the child's stdin and wait for it to drain.

        Raises:
            StreamError: stdin is closed or the pipe broke.
        """
        payload = data if isinstance(data, bytes) else data.encode("utf-8")
        if not payload.endswith(b"\n"):
            payload += b"\n"

        async with self._write_lock:
            stdin = self._process.stdin
            if self._stdin_closed or stdin is None or self._process.returncode is not None:
                msg = f"{self._name}: process is not accepting input"
                raise StreamError(msg)
            try:
                stdin.write(payload)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                msg = f"{self._name}: failed to write to stdin: {exc}"
                raise StreamError(msg) from exc
        logger.debug("%s: wrote %d bytes to stdin", self._name, len(payload))

    # ------------------------------------------------------------------ #
    # Output
    # ------------------------------------------------------------------ #

    async def lines(self) -> AsyncIterator[str]:
        """Yield complete stdout lines until EOF.

        Reads arbitrary chunks and reassembles them, since the child's
        output is not line-aligned per read.  A read failure after
        :meth:`kill`/:meth:`close` ends the stream quietly; otherwise it
        raises :class:`StreamError`.
        """
        stdout = self._process.stdout
        if stdout is None:
            return
        assembler = LineAssembler(self._max_line_bytes)
        while True:
            try:
                chunk = await stdout.read(_READ_CHUNK)
            except (ConnectionResetError, BrokenPipeError, OSError) as exc:
                if self._termination_requested:
                    break
                msg = f"{self._name}: error reading stdout: {exc}"
                raise StreamError(msg) from exc
            if not chunk:
                break
            for line in assembler.feed(chunk):
                yield line
        tail = assembler.flush()
        if tail is not None:
            yield tail

    def _start_stderr_drain(self) -> None:
        if self._process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        try:
            while True:
                raw = await stderr.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip()
                if line:
                    self._stderr_tail.append(line)
                    logger.warning("%s stderr: %s", self._name, line)
        except (ValueError, OSError) as exc:
            # ValueError: line exceeded the StreamReader limit.
            logger.warning("%s: stopped reading stderr: %s", self._name, exc)

    # ------------------------------------------------------------------ #
    # Termination
    # ------------------------------------------------------------------ #

    async def wait(self) -> int:
        """Wait for the child to exit and return its exit code."""
        code = await self._process.wait()
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait({self._stderr_task}, timeout=1.0)
        return code

    async def kill(self) -> None:
        """Terminate the whole process tree immediately.  Idempotent."""
        self._termination_requested = True
        if self._killed or self._process.returncode is not None:
            self._killed = True
            return
        self._killed = True

        pid = self._process.pid
        try:
            if hasattr(os, "killpg"):
                os.killpg(pid, signal.SIGKILL)
            else:
                self._process.kill()
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.warning("%s: killpg failed (%s); killing PID only", self._name, exc)
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()

        try:
            await asyncio.wait_for(self._process.wait(), timeout=_KILL_WAIT)
        except TimeoutError:
            logger.error("%s: PID %s did not exit after SIGKILL", self._name, pid)
        else:
            logger.warning("%s: process killed (PID %s)", self._name, pid)

    async def close(self, timeout: float = 5.0) -> int | None:
        """Close stdin, wait up to *timeout* for exit, then escalate to :meth:`kill`.

        Returns the exit code, or ``None`` if it could not be determined.
        """
        self._termination_requested = True
        if self._process.returncode is not None:
            return self._process.returncode

        # Not under the write lock: a write stuck in drain() must not block close.
        self._stdin_closed = True
        stdin = self._process.stdin
        if stdin is not None:
            with contextlib.suppress(BrokenPipeError, ConnectionResetError, OSError):
                stdin.close()

        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "%s: did not exit within %.1fs of closing stdin; killing",
                self._name,
                timeout,
            )
            await self.kill()
        else:
            logger.info(
                "%s: exited gracefully (code %s)", self._name, self._process.returncode
            )
        return self._process.returncode
