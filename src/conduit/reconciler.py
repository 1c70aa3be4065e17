"""Reconciler — merges the live stream and the durable log into one sequence.

The live stream is the primary source.  The log is read only at resume
(before the child starts) and after the live stream ended unexpectedly.
Frames are deduplicated by line UUID within a session; when both sources
hold the same line, whichever arrives first is delivered, which in
practice is the live copy.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from conduit.errors import RecoveryGap, UnknownSessionError
from conduit.protocol.events import (
    Crashed,
    Decoded,
    DecodeError,
    DecodeErrorKind,
    EventSource,
    Frame,
    HistoryReplayed,
    IdAssigned,
    UserPrompt,
)
from conduit.router.router import OutputRouter
from conduit.session.log import LogReadResult, SessionLog, log_path
from conduit.session.models import IdAssignment, SessionStatus
from conduit.session.registry import SessionRegistry
from conduit.session.store import MetadataStore

logger = logging.getLogger(__name__)

TimeoutCallback = Callable[[str], Awaitable[None]]
"""Called with the session key when the identifier never arrived."""

_AWAITING = frozenset({SessionStatus.STARTING, SessionStatus.AWAITING_ID})


@dataclass
class _SessionState:
    """Per-session reconciliation state, discarded on detach."""

    capacity: int
    recent: OrderedDict[str, None] = field(default_factory=OrderedDict)
    buffer: list[Frame] = field(default_factory=list)
    timer: asyncio.Task[None] | None = None
    identified: bool = False
    expired: bool = False
    last_uuid: str | None = None

    def seen(self, uuid: str) -> bool:
        return uuid in self.recent

    def remember(self, uuid: str) -> None:
        self.recent[uuid] = None
        self.recent.move_to_end(uuid)
        while len(self.recent) > self.capacity:
            self.recent.popitem(last=False)


class Reconciler:
    """Identifier discovery, early-event buffering, dedup and log recovery."""

    def __init__(
        self,
        registry: SessionRegistry,
        router: OutputRouter,
        store: MetadataStore,
        projects_dir: Path,
        *,
        id_timeout: float = 5.0,
        dedup_capacity: int = 50_000,
        max_line_bytes: int | None = None,
        on_identifier_timeout: TimeoutCallback | None = None,
    ) -> None:
        self._registry = registry
        self._router = router
        self._store = store
        self._projects_dir = projects_dir
        self._id_timeout = id_timeout
        self._dedup_capacity = dedup_capacity
        self._max_line_bytes = max_line_bytes
        self.on_identifier_timeout = on_identifier_timeout
        self._states: dict[str, _SessionState] = {}

    # ------------------------------------------------------------------ #
    # Attachment
    # ------------------------------------------------------------------ #

    def attach(self, key: str) -> None:
        """Start tracking *key*.  See :meth:`start_timer` for the identifier timeout."""
        if key in self._states:
            return
        session = self._registry.get(key)
        if session is None:
            msg = f"Unknown session '{key}'"
            raise UnknownSessionError(msg)
        state = _SessionState(capacity=self._dedup_capacity)
        state.identified = session.agent_session_id is not None
        self._states[key] = state

    def start_timer(self, key: str) -> None:
        """Arm the identifier timeout for *key*.  Called on the first input written."""
        state = self._states.get(key)
        if state is None or state.identified or state.expired or state.timer is not None:
            return
        state.timer = asyncio.create_task(
            self._expire(key, state), name=f"conduit-idtimer-{key}"
        )

    def flush_pending(self, key: str) -> int:
        """Deliver frames still buffered for *key* because no identifier came.

        Called when the session ends before the agent identified itself.
        Later frames are delivered directly.  Returns the number flushed.
        """
        state = self._states.get(key)
        if state is None:
            return 0
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None
        state.expired = True
        pending = len(state.buffer)
        self._flush_buffer(key, state)
        return pending

    def detach(self, key: str) -> None:
        """Stop tracking *key*; drops its dedup set.  Flush pending frames first."""
        state = self._states.pop(key, None)
        if state is None:
            return
        if state.timer is not None:
            state.timer.cancel()
        if state.buffer:
            logger.error(
                "Session %s: detached with %d undelivered frames",
                key,
                len(state.buffer),
            )

    def is_attached(self, key: str) -> bool:
        return key in self._states

    def last_uuid(self, key: str) -> str | None:
        state = self._states.get(key)
        return state.last_uuid if state is not None else None

    def shutdown(self) -> None:
        """Cancel every pending identifier timer."""
        for state in self._states.values():
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None

    # ------------------------------------------------------------------ #
    # Live stream
    # ------------------------------------------------------------------ #

    async def on_live(self, key: str, decoded: Decoded) -> None:
        """Handle one decoded line from the live stream of *key*."""
        state = self._states.get(key)
        if state is None:
            logger.debug("Session %s: not attached; dropping live line", key)
            return

        candidate = decoded.session_id
        if candidate:
            await self._offer_identifier(key, state, candidate)

        if isinstance(decoded, DecodeError):
            if decoded.kind is DecodeErrorKind.MALFORMED:
                logger.warning(
                    "Session %s: malformed line skipped: %s (%s)",
                    key,
                    decoded.detail,
                    decoded.raw[:80],
                )
            else:
                logger.debug("Session %s: unknown line type skipped: %s", key, decoded.detail)
            return
        if not isinstance(decoded, Frame):
            return

        if not state.identified and not state.expired:
            state.buffer.append(decoded)
            return
        self._deliver(key, state, decoded, EventSource.LIVE)

    async def _offer_identifier(
        self, key: str, state: _SessionState, candidate: str
    ) -> None:
        session = self._registry.get(key)
        if session is None or session.agent_session_id == candidate:
            return

        outcome = self._registry.assign_agent_session_id(key, candidate)
        if outcome is not IdAssignment.ASSIGNED:
            return

        state.identified = True
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None

        await self._upsert(candidate, session.working_directory, session.display_name)
        self._router.publish(
            key, IdAssigned(agent_session_id=candidate), source=EventSource.CORE
        )
        self._registry.transition(key, _AWAITING, SessionStatus.RUNNING)
        self._flush_buffer(key, state)

    async def _upsert(
        self, agent_session_id: str, working_directory: str, display_name: str | None
    ) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                functools.partial(
                    self._store.upsert_session,
                    agent_session_id,
                    working_directory,
                    datetime.now(tz=UTC),
                    display_name,
                ),
            )
        except OSError as exc:
            logger.error("Failed to persist session %s: %s", agent_session_id, exc)

    def _flush_buffer(self, key: str, state: _SessionState) -> None:
        buffered, state.buffer = state.buffer, []
        if buffered:
            logger.debug("Session %s: flushing %d buffered frames", key, len(buffered))
        for frame in buffered:
            self._deliver(key, state, frame, EventSource.LIVE)

    async def _expire(self, key: str, state: _SessionState) -> None:
        await asyncio.sleep(self._id_timeout)
        if state.identified or self._states.get(key) is not state:
            return
        # The callback may lead to detach(); this task must not cancel itself.
        state.timer = None
        state.expired = True
        try:
            crashed = self._registry.transition(key, _AWAITING, SessionStatus.CRASHED)
        except UnknownSessionError:
            return
        if not crashed:
            return

        reason = f"no session identifier within {self._id_timeout:g}s"
        logger.error("Session %s: %s", key, reason)
        self._flush_buffer(key, state)
        self._router.publish(key, Crashed(reason=reason), source=EventSource.CORE)
        if self.on_identifier_timeout is not None:
            await self.on_identifier_timeout(key)

    def _deliver(
        self,
        key: str,
        state: _SessionState,
        frame: Frame,
        source: EventSource,
        *,
        counted: bool = True,
    ) -> bool:
        if frame.uuid is not None:
            if state.seen(frame.uuid):
                logger.debug("Session %s: duplicate %s from %s dropped", key, frame.uuid, source)
                return False
            state.remember(frame.uuid)
            state.last_uuid = frame.uuid
        for event in frame.events:
            self._router.publish(key, event, source=source, uuid=frame.uuid)
        # Replayed history belongs to an earlier process; only touch it.
        if counted:
            self._registry.record_events(key, frame.events)
        else:
            self._registry.touch(key)
        return True

    # ------------------------------------------------------------------ #
    # Durable log
    # ------------------------------------------------------------------ #

    async def replay_history(self, key: str, agent_session_id: str) -> int:
        """Deliver every record of *agent_session_id*'s log, in file order.

        Runs before the child is spawned.  A missing log means no history:
        ``HistoryReplayed(available=False)`` is published and 0 returned.
        """
        state = self._require(key)
        session = self._registry.get(key)
        if session is None:
            msg = f"Unknown session '{key}'"
            raise UnknownSessionError(msg)

        log = self._log(session.working_directory, agent_session_id)
        try:
            result = await self._read(log.read)
        except RecoveryGap as exc:
            logger.info("Session %s: no history to replay (%s)", key, exc)
            self._router.publish(
                key,
                HistoryReplayed(records=0, available=False),
                source=EventSource.CORE,
            )
            return 0

        delivered = sum(
            self._deliver(key, state, record.frame, EventSource.LOG, counted=False)
            for record in result.records
        )
        logger.info(
            "Session %s: replayed %d records from %s (%d malformed)",
            key,
            delivered,
            log.path.name,
            len(result.errors),
        )
        self._router.publish(
            key, HistoryReplayed(records=delivered), source=EventSource.CORE
        )
        return delivered

    async def recover(self, key: str) -> int:
        """Fill the gap after the live stream ended unexpectedly.

        Reads the log forward from the last delivered UUID and delivers what
        the live stream missed.  Prompts written by this process are not
        echoed back.  Returns the number of frames delivered.
        """
        state = self._states.get(key)
        session = self._registry.get(key)
        if state is None or session is None or session.agent_session_id is None:
            return 0

        log = self._log(session.working_directory, session.agent_session_id)
        try:
            result = await self._read(
                functools.partial(log.records_after, state.last_uuid)
            )
        except RecoveryGap as exc:
            logger.warning("Session %s: cannot recover from log: %s", key, exc)
            return 0

        delivered = 0
        for record in result.records:
            if _is_prompt_only(record.frame):
                state.remember(record.uuid)
                continue
            if self._deliver(key, state, record.frame, EventSource.LOG):
                delivered += 1
        if delivered:
            logger.info("Session %s: recovered %d frames from the log", key, delivered)
        return delivered

    def _log(self, working_directory: str, agent_session_id: str) -> SessionLog:
        path = log_path(self._projects_dir, working_directory, agent_session_id)
        if self._max_line_bytes is None:
            return SessionLog(path)
        return SessionLog(path, self._max_line_bytes)

    async def _read(self, reader: Callable[[], LogReadResult]) -> LogReadResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, reader)

    def _require(self, key: str) -> _SessionState:
        state = self._states.get(key)
        if state is None:
            msg = f"Session '{key}' is not attached"
            raise UnknownSessionError(msg)
        return state


def _is_prompt_only(frame: Frame) -> bool:
    return bool(frame.events) and all(isinstance(e, UserPrompt) for e in frame.events)
