"""Session registry — the sole authority on which sessions exist."""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from conduit.errors import IdentifierConflict, UnknownSessionError
from conduit.session.models import IdAssignment, Session, SessionStatus

if TYPE_CHECKING:
    from conduit.process.handle import ProcessHandle
    from conduit.protocol.events import AgentEvent

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    """A session record plus its handle, guarded by its own lock."""

    session: Session
    handle: ProcessHandle | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class SessionRegistry:
    """Concurrency-safe map from session key to :class:`Session` and handle.

    Each entry has its own lock, so work on one session never serializes
    another.  Two short structural locks guard only dictionary membership:
    ``_map_lock`` for the key → entry map and ``_index_lock`` for the
    agent-id → key index.  Lock order is always entry, then index; the map
    lock is never held while taking any other lock.

    Safe to call from any thread.  Readers get snapshot copies.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._map_lock = threading.Lock()
        self._owners: dict[str, str] = {}
        self._index_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Membership
    # ------------------------------------------------------------------ #

    def create(
        self,
        working_directory: str,
        resume_of: str | None = None,
        *,
        display_name: str | None = None,
        permission_mode: str | None = None,
    ) -> str:
        """Register a new session in ``starting`` state and return its key."""
        if not working_directory:
            msg = "working_directory is required"
            raise ValueError(msg)
        key = uuid.uuid4().hex[:12]
        session = Session(
            key=key,
            working_directory=working_directory,
            resume_of=resume_of or None,
            display_name=display_name,
            permission_mode=permission_mode,
        )
        with self._map_lock:
            self._entries[key] = _Entry(session=session)
        logger.info(
            "Session %s created (cwd=%s, resume_of=%s)",
            key,
            working_directory,
            resume_of or "none",
        )
        return key

    def get(self, key: str) -> Session | None:
        """Return a snapshot of the session, or ``None`` if unknown."""
        with self._map_lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        with entry.lock:
            return _snapshot(entry.session)

    def remove(self, key: str) -> Session | None:
        """Drop a session record.  Returns the final snapshot, if it existed."""
        with self._map_lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        with entry.lock:
            session = _snapshot(entry.session)
            entry.handle = None
            agent_id = entry.session.agent_session_id
            if agent_id is not None:
                with self._index_lock:
                    if self._owners.get(agent_id) == key:
                        del self._owners[agent_id]
        logger.info("Session %s removed", key)
        return session

    def list(self) -> list[str]:
        """Keys of all registered sessions, in creation order."""
        with self._map_lock:
            return list(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._map_lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._entries)

    def find_by_agent_session_id(self, agent_session_id: str) -> str | None:
        """Key of the session that owns *agent_session_id*, if any."""
        with self._index_lock:
            return self._owners.get(agent_session_id)

    # ------------------------------------------------------------------ #
    # Identifier assignment
    # ------------------------------------------------------------------ #

    def assign_agent_session_id(self, key: str, agent_session_id: str) -> IdAssignment:
        """Compare-and-set the agent session id of *key*.

        The first non-empty id wins.  Offering the same id again is a no-op
        confirmation.  A different id, or an id already owned by another
        live session, is an :class:`IdentifierConflict`: logged and ignored,
        never overwritten.
        """
        if not agent_session_id:
            msg = "agent_session_id must be non-empty"
            raise ValueError(msg)

        entry = self._entry(key)
        with entry.lock:
            current = entry.session.agent_session_id
            if current == agent_session_id:
                return IdAssignment.CONFIRMED
            if current is not None:
                conflict = IdentifierConflict(key, current, agent_session_id)
                logger.warning("%s; keeping first-seen identifier", conflict)
                return IdAssignment.CONFLICT

            with self._index_lock:
                owner = self._owners.get(agent_session_id)
                if owner is not None and owner != key and self._owner_is_live(owner):
                    logger.warning(
                        "Session %s: identifier %r already belongs to live session %s",
                        key,
                        agent_session_id,
                        owner,
                    )
                    return IdAssignment.CONFLICT
                self._owners[agent_session_id] = key

            entry.session.agent_session_id = agent_session_id
            entry.session.last_activity = datetime.now(tz=UTC)

        logger.info("Session %s: agent session id is %s", key, agent_session_id)
        return IdAssignment.ASSIGNED

    def _owner_is_live(self, owner: str) -> bool:
        # Called with the index lock held; reads the owner's status without
        # its entry lock (a single attribute read) to keep lock order intact.
        with self._map_lock:
            entry = self._entries.get(owner)
        return entry is not None and entry.session.status.is_live

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def set_status(self, key: str, status: SessionStatus) -> SessionStatus:
        """Set the status unconditionally.  Returns the previous status."""
        entry = self._entry(key)
        with entry.lock:
            previous = entry.session.status
            entry.session.status = status
        if previous is not status:
            logger.debug("Session %s: %s -> %s", key, previous, status)
        return previous

    def transition(
        self,
        key: str,
        expected: Iterable[SessionStatus],
        status: SessionStatus,
    ) -> bool:
        """Set *status* only if the current status is one of *expected*."""
        allowed = frozenset(expected)
        entry = self._entry(key)
        with entry.lock:
            previous = entry.session.status
            if previous not in allowed:
                return False
            entry.session.status = status
        logger.debug("Session %s: %s -> %s", key, previous, status)
        return True

    def touch(self, key: str, when: datetime | None = None) -> None:
        """Record activity on *key*.  Unknown keys are ignored."""
        with self._map_lock:
            entry = self._entries.get(key)
        if entry is None:
            return
        stamp = when or datetime.now(tz=UTC)
        with entry.lock:
            if stamp > entry.session.last_activity:
                entry.session.last_activity = stamp

    def record_events(self, key: str, events: Iterable[AgentEvent]) -> None:
        """Fold delivered *events* into the metrics of *key*.  Unknown keys are ignored."""
        with self._map_lock:
            entry = self._entries.get(key)
        if entry is None:
            return
        with entry.lock:
            for event in events:
                entry.session.metrics.apply(event)
            entry.session.last_activity = max(
                entry.session.last_activity, datetime.now(tz=UTC)
            )

    def rename(self, key: str, display_name: str | None) -> None:
        entry = self._entry(key)
        with entry.lock:
            entry.session.display_name = display_name or None

    def set_exit_code(self, key: str, exit_code: int | None) -> None:
        entry = self._entry(key)
        with entry.lock:
            entry.session.exit_code = exit_code

    # ------------------------------------------------------------------ #
    # Process handles
    # ------------------------------------------------------------------ #

    def attach_handle(self, key: str, handle: ProcessHandle) -> None:
        entry = self._entry(key)
        with entry.lock:
            entry.handle = handle

    def handle(self, key: str) -> ProcessHandle | None:
        """The process handle attached to *key*, if any."""
        with self._map_lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        with entry.lock:
            return entry.handle

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _entry(self, key: str) -> _Entry:
        with self._map_lock:
            entry = self._entries.get(key)
        if entry is None:
            msg = f"Unknown session '{key}'"
            raise UnknownSessionError(msg)
        return entry


def _snapshot(session: Session) -> Session:
    return dataclasses.replace(session, metrics=session.metrics.copy())
