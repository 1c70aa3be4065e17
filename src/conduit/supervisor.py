"""Supervisor — opens, drives and tears down agent sessions.

Wires the components together: the registry creates a session, the
supervisor spawns its child, one read-loop task per child feeds decoded
lines to the reconciler, and the reconciler publishes to the router.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from collections.abc import Callable
from typing import Any

from conduit.config.models import ConduitConfig
from conduit.errors import SpawnError, StreamError, UnknownSessionError
from conduit.process.args import build_args, build_env
from conduit.process.handle import ProcessHandle
from conduit.protocol.codec import decode, encode
from conduit.protocol.events import Closed, Crashed, EventSource, Started
from conduit.reconciler import Reconciler
from conduit.router.router import Consumer, OutputRouter
from conduit.session.models import Session, SessionStatus
from conduit.session.registry import SessionRegistry
from conduit.session.store import JsonSessionStore, MetadataStore, StoreStatus

logger = logging.getLogger(__name__)


class Supervisor:
    """Session lifecycle for N concurrent agent children.

    Every public coroutine must run on the same event loop.  Registry reads
    are safe from any thread.
    """

    def __init__(
        self,
        config: ConduitConfig,
        *,
        registry: SessionRegistry | None = None,
        router: OutputRouter | None = None,
        store: MetadataStore | None = None,
        reconciler: Reconciler | None = None,
    ) -> None:
        self._config = config
        self.registry = registry or SessionRegistry()
        self.router = router or OutputRouter(
            queue_size=config.router.queue_size,
            overflow=config.router.overflow,
        )
        self.store: MetadataStore = store or JsonSessionStore(config.store_path)
        self.reconciler = reconciler or Reconciler(
            self.registry,
            self.router,
            self.store,
            config.projects_dir,
            id_timeout=config.timeouts.identifier,
            dedup_capacity=config.dedup_capacity,
            max_line_bytes=config.max_line_bytes,
        )
        self.reconciler.on_identifier_timeout = self._on_identifier_timeout
        self._readers: dict[str, asyncio.Task[None]] = {}
        self._shutting_down = False

    # ------------------------------------------------------------------ #
    # Opening
    # ------------------------------------------------------------------ #

    async def open(
        self,
        working_directory: str,
        *,
        resume_of: str | None = None,
        display_name: str | None = None,
        permission_mode: str | None = None,
        consumer: Consumer | None = None,
    ) -> str:
        """Open a new session (or resume *resume_of*) and return its key.

        *consumer* is subscribed before anything is published, so it sees
        the replayed history and ``Started``.  On :class:`SpawnError` the
        session is left in the registry as ``crashed``, ``Crashed`` is
        delivered to *consumer*, and the error is re-raised.  The
        subscription lives until :meth:`close` removes the record.
        """
        if self._shutting_down:
            msg = "Supervisor is shutting down"
            raise RuntimeError(msg)

        key = self.registry.create(
            working_directory,
            resume_of,
            display_name=display_name,
            permission_mode=permission_mode,
        )
        if consumer is not None:
            self.router.subscribe(key, consumer)
        self.reconciler.attach(key)

        if resume_of:
            await self.reconciler.replay_history(key, resume_of)

        session = self._session(key)
        argv = build_args(session, self._config.agent)
        env = build_env(self._config.agent, os.environ)
        try:
            handle = await ProcessHandle.spawn(
                argv,
                cwd=working_directory,
                env=env,
                name=f"session {key}",
                max_line_bytes=self._config.max_line_bytes,
            )
        except SpawnError as exc:
            logger.error("Session %s: %s", key, exc)
            self.registry.set_status(key, SessionStatus.CRASHED)
            self.router.publish(key, Crashed(reason=str(exc)), source=EventSource.CORE)
            self.reconciler.detach(key)
            await self.router.drain(key)
            raise

        self.registry.attach_handle(key, handle)
        self.registry.transition(
            key, {SessionStatus.STARTING}, SessionStatus.AWAITING_ID
        )
        self.router.publish(key, Started(pid=handle.pid), source=EventSource.CORE)

        task = asyncio.create_task(self._pump_output(key, handle), name=f"conduit-read-{key}")
        self._readers[key] = task
        task.add_done_callback(functools.partial(self._reader_done, key))
        return key

    async def resume(
        self, key: str, *, consumer: Consumer | None = None
    ) -> str:
        """Reopen a closed or crashed session under a new key.

        The old record is removed and a new session with ``resume_of`` set
        to its identifier takes its place.
        """
        session = self._session(key)
        if session.status.is_live:
            msg = f"Session '{key}' is still {session.status}"
            raise RuntimeError(msg)
        resume_id = session.resumable_id
        if resume_id is None:
            msg = f"Session '{key}' never received an identifier; nothing to resume"
            raise RuntimeError(msg)

        await self._finish_reader(key)
        self.reconciler.detach(key)
        await self.router.release(key)
        self.registry.remove(key)
        logger.info("Resuming %s as a new session (was %s)", resume_id, key)
        return await self.open(
            session.working_directory,
            resume_of=resume_id,
            display_name=session.display_name,
            permission_mode=session.permission_mode,
            consumer=consumer,
        )

    # ------------------------------------------------------------------ #
    # Input
    # ------------------------------------------------------------------ #

    async def send(self, key: str, text: str) -> None:
        """Send one user turn to the session's agent.

        Raises:
            StreamError: The session is not running or its stdin is broken.
        """
        session = self._session(key)
        handle = self.registry.handle(key)
        if handle is None or not session.status.is_live:
            msg = f"Session '{key}' is {session.status}; cannot send"
            raise StreamError(msg)

        await handle.write_line(encode(text))
        self.registry.touch(key)
        self.reconciler.start_timer(key)

    def rename(self, key: str, display_name: str | None) -> None:
        """Set or clear a session's display name, here and in the store."""
        self.registry.rename(key, display_name)
        session = self._session(key)
        if session.agent_session_id is not None:
            self.store.rename(session.agent_session_id, display_name)

    # ------------------------------------------------------------------ #
    # Termination
    # ------------------------------------------------------------------ #

    async def close(self, key: str) -> int | None:
        """Gracefully end a session and remove its record.

        Closes stdin, waits for the agent to exit (killing it after the
        configured timeout), delivers everything it printed, then publishes
        ``Closed``.  Returns the exit code.
        """
        session = self._session(key)
        handle = self.registry.handle(key)
        exit_code = session.exit_code
        if handle is not None:
            exit_code = await handle.close(self._config.timeouts.close)
        await self._finish_reader(key)
        self.reconciler.flush_pending(key)

        self.registry.set_exit_code(key, exit_code)
        if session.status is not SessionStatus.CRASHED:
            self.registry.set_status(key, SessionStatus.CLOSED)
        self.router.publish(key, Closed(exit_code=exit_code), source=EventSource.CORE)
        await self._store_status(session, "closed")

        self.reconciler.detach(key)
        await self.router.release(key)
        self.registry.remove(key)
        logger.info("Session %s closed (exit code %s)", key, exit_code)
        return exit_code

    async def kill(self, key: str) -> None:
        """Terminate a session's child immediately.  The record is kept."""
        session = self._session(key)
        handle = self.registry.handle(key)
        if handle is not None:
            await handle.kill()
        await self._finish_reader(key)
        self.reconciler.flush_pending(key)

        if self.registry.transition(
            key,
            {SessionStatus.STARTING, SessionStatus.AWAITING_ID, SessionStatus.RUNNING},
            SessionStatus.CLOSED,
        ):
            exit_code = handle.returncode if handle is not None else None
            self.registry.set_exit_code(key, exit_code)
            self.router.publish(key, Closed(exit_code=exit_code), source=EventSource.CORE)
            await self._store_status(session, "closed")
            logger.info("Session %s killed", key)
        self.reconciler.detach(key)

    async def shutdown(self, *, kill_running: bool = False) -> None:
        """Stop delivery and timers.

        Running children are left alone unless *kill_running* is set; their
        logs keep growing and they can be resumed later.
        """
        self._shutting_down = True
        self.reconciler.shutdown()

        if kill_running:
            for key in self.registry.list():
                handle = self.registry.handle(key)
                if handle is not None and handle.alive:
                    try:
                        await self.kill(key)
                    except UnknownSessionError:
                        continue

        readers = list(self._readers.values())
        for task in readers:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
        self._readers.clear()
        await self.router.close()
        logger.info("Supervisor shut down (%d sessions registered)", len(self.registry))

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get(self, key: str) -> Session | None:
        return self.registry.get(key)

    def sessions(self) -> list[Session]:
        """Snapshots of every registered session."""
        return [s for key in self.registry.list() if (s := self.registry.get(key)) is not None]

    # ------------------------------------------------------------------ #
    # Read loop
    # ------------------------------------------------------------------ #

    async def _pump_output(self, key: str, handle: ProcessHandle) -> None:
        reason: str | None = None
        try:
            async for line in handle.lines():
                await self.reconciler.on_live(key, decode(line))
        except StreamError as exc:
            reason = str(exc)
            logger.error("Session %s: %s", key, exc)

        try:
            exit_code = await asyncio.wait_for(
                handle.wait(), timeout=self._config.timeouts.close
            )
        except TimeoutError:
            logger.warning("Session %s: stdout closed but process still running; killing", key)
            await handle.kill()
            exit_code = handle.returncode

        await self._stream_ended(key, handle, exit_code, reason)

    async def _stream_ended(
        self,
        key: str,
        handle: ProcessHandle,
        exit_code: int | None,
        reason: str | None,
    ) -> None:
        session = self.registry.get(key)
        if session is None:
            return

        if handle.termination_requested:
            # close()/kill() publish their own notification; an identifier
            # timeout already published Crashed.
            if session.status is SessionStatus.CRASHED:
                self.registry.set_exit_code(key, exit_code)
                await self._store_status(session, "crashed")
                self.reconciler.detach(key)
            return

        self.reconciler.flush_pending(key)
        recovered = await self.reconciler.recover(key)
        if reason is None:
            reason = f"agent exited unexpectedly (exit code {exit_code})"
        logger.error(
            "Session %s crashed: %s (%d frames recovered from log)", key, reason, recovered
        )
        self.registry.set_exit_code(key, exit_code)
        self.registry.set_status(key, SessionStatus.CRASHED)
        self.router.publish(
            key,
            Crashed(reason=reason, exit_code=exit_code, stderr_tail=handle.stderr_tail),
            source=EventSource.CORE,
        )
        await self._store_status(session, "crashed")
        self.reconciler.detach(key)

    async def _on_identifier_timeout(self, key: str) -> None:
        handle = self.registry.handle(key)
        if handle is not None:
            await handle.kill()

    async def _finish_reader(self, key: str) -> None:
        task = self._readers.get(key)
        if task is None or task.done() or task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=self._config.timeouts.close)
        if not done:
            logger.warning("Session %s: read loop still running; cancelling", key)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _reader_done(self, key: str, task: asyncio.Task[None]) -> None:
        """Callback for read-loop tasks — log errors, forget the task."""
        if self._readers.get(key) is task:
            del self._readers[key]
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                logger.error("Session %s: read loop failed: %s", key, exc, exc_info=exc)

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _session(self, key: str) -> Session:
        session = self.registry.get(key)
        if session is None:
            msg = f"Unknown session '{key}'"
            raise UnknownSessionError(msg)
        return session

    async def _store_status(self, session: Session, status: StoreStatus) -> None:
        # The identifier may have arrived after *session* was snapshotted.
        current = self.registry.get(session.key) or session
        if current.agent_session_id is None:
            return
        await self._run_blocking(self.store.update_status, current.agent_session_id, status)

    async def _run_blocking(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args))
        except OSError as exc:
            logger.error("Metadata store call %s failed: %s", fn.__name__, exc)
            return None
