"""Session metadata store — the persistence capability the core consumes."""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

StoreStatus = Literal["open", "closed", "crashed"]


class SessionRecord(BaseModel):
    """One persisted session row, keyed by the agent session id."""

    model_config = ConfigDict(extra="ignore")

    agent_session_id: str = Field(description="Agent-assigned session id")
    working_directory: str = Field(description="Working directory of the session")
    display_name: str | None = Field(default=None, description="User-chosen name")
    status: StoreStatus = Field(default="open", description="Last known status")
    created_at: datetime = Field(description="When the row was inserted")
    last_activity: datetime = Field(description="Latest activity seen")


@runtime_checkable
class MetadataStore(Protocol):
    """Minimal upsert/query capability required from the persistence layer."""

    def upsert_session(
        self,
        agent_session_id: str,
        working_directory: str,
        last_activity: datetime,
        display_name: str | None = None,
    ) -> bool:
        """Update ``last_activity`` if the row exists, else insert it.

        Returns ``True`` when a row was inserted.
        """
        ...

    def update_status(self, agent_session_id: str, status: StoreStatus) -> None:
        """Record a status change.  Unknown ids are ignored."""
        ...

    def rename(self, agent_session_id: str, display_name: str | None) -> None:
        """Set or clear the display name.  Unknown ids are ignored."""
        ...

    def get_session(self, agent_session_id: str) -> SessionRecord | None: ...

    def list_sessions(self, status: StoreStatus | None = None) -> list[SessionRecord]: ...


class JsonSessionStore:
    """:class:`MetadataStore` backed by a single JSON file.

    Thread-safe: every read-modify-write is serialized through a
    ``threading.Lock``, which is what makes :meth:`upsert_session`
    idempotent under concurrent discovery of the same identifier.
    Crash-safe: the file is rewritten through a temp file and ``os.replace``.
    With ``path=None`` the store lives in memory only.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._rows: dict[str, SessionRecord] = {}
        if path is not None:
            self._rows = _load_rows(path)

    @property
    def path(self) -> Path | None:
        return self._path

    def upsert_session(
        self,
        agent_session_id: str,
        working_directory: str,
        last_activity: datetime,
        display_name: str | None = None,
    ) -> bool:
        stamp = _aware(last_activity)
        with self._lock:
            row = self._rows.get(agent_session_id)
            if row is not None:
                # Concurrent upserts may land out of order; keep the latest.
                if stamp > row.last_activity:
                    row.last_activity = stamp
                if display_name and not row.display_name:
                    row.display_name = display_name
                row.status = "open"
                inserted = False
            else:
                self._rows[agent_session_id] = SessionRecord(
                    agent_session_id=agent_session_id,
                    working_directory=working_directory,
                    display_name=display_name,
                    status="open",
                    created_at=datetime.now(tz=UTC),
                    last_activity=stamp,
                )
                inserted = True
            self._persist()

        if inserted:
            logger.info("Inserted session row %s", agent_session_id)
        else:
            logger.debug("Updated last_activity for session row %s", agent_session_id)
        return inserted

    def update_status(self, agent_session_id: str, status: StoreStatus) -> None:
        with self._lock:
            row = self._rows.get(agent_session_id)
            if row is None:
                logger.warning("No session row with id %s", agent_session_id)
                return
            row.status = status
            self._persist()
        logger.info("Session row %s status -> %s", agent_session_id, status)

    def rename(self, agent_session_id: str, display_name: str | None) -> None:
        with self._lock:
            row = self._rows.get(agent_session_id)
            if row is None:
                return
            row.display_name = display_name or None
            self._persist()

    def get_session(self, agent_session_id: str) -> SessionRecord | None:
        with self._lock:
            row = self._rows.get(agent_session_id)
            return row.model_copy() if row is not None else None

    def list_sessions(self, status: StoreStatus | None = None) -> list[SessionRecord]:
        """Rows ordered by most recent activity first."""
        with self._lock:
            rows = [
                row.model_copy()
                for row in self._rows.values()
                if status is None or row.status == status
            ]
        rows.sort(key=lambda r: r.last_activity, reverse=True)
        return rows

    def _persist(self) -> None:
        """Rewrite the backing file (caller must hold the lock)."""
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            key: json.loads(row.model_dump_json()) for key, row in self._rows.items()
        }
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self._path)


def _load_rows(path: Path) -> dict[str, SessionRecord]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Ignoring unreadable session store %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring session store %s: expected a JSON object", path)
        return {}

    rows: dict[str, SessionRecord] = {}
    for key, value in data.items():
        try:
            rows[key] = SessionRecord.model_validate(value)
        except ValidationError as exc:
            logger.warning("Skipping invalid session row %s: %s", key, exc)
    return rows


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
