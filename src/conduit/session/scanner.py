"""Discover resumable sessions from the agent's projects directory."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from conduit.constants import BOOKKEEPING_TYPES

logger = logging.getLogger(__name__)

#: Lines inspected when deciding whether a log holds any conversation.
_HEAD_LINES = 10


@dataclass
class LogSummary:
    """One session log found on disk."""

    agent_session_id: str
    project_slug: str
    path: Path
    modified: datetime
    size_bytes: int
    excluded_reason: str | None = None

    @property
    def working_directory(self) -> str:
        """Best-effort decode of the project slug (lossy: ``-`` is ambiguous)."""
        return decode_project_slug(self.project_slug)

    @property
    def is_excluded(self) -> bool:
        return self.excluded_reason is not None


def decode_project_slug(slug: str) -> str:
    """Invert :func:`conduit.session.log.project_slug` as well as possible.

    ``C--Sources-App`` → ``C:\\Sources\\App``; ``-home-u-app`` → ``/home/u/app``.
    """
    if not slug:
        return ""
    if slug.startswith("-"):
        return slug.replace("-", "/")
    drive, sep, rest = slug.partition("--")
    if not sep or len(drive) != 1:
        return slug
    return f"{drive}:\\" + rest.replace("-", "\\")


def scan_projects(projects_dir: Path, project_slug: str | None = None) -> list[LogSummary]:
    """List session logs under *projects_dir*, newest first.

    Sidechain logs (``agent-*.jsonl``) are ignored.  Logs whose first lines
    hold only bookkeeping records are returned with ``excluded_reason`` set.
    """
    if not projects_dir.is_dir():
        logger.info("Projects directory not found: %s", projects_dir)
        return []

    if project_slug is not None:
        project_dirs = [projects_dir / project_slug]
    else:
        project_dirs = sorted(p for p in projects_dir.iterdir() if p.is_dir())

    summaries: list[LogSummary] = []
    for project_dir in project_dirs:
        if not project_dir.is_dir():
            continue
        for path in project_dir.glob("*.jsonl"):
            if path.name.startswith("agent-"):
                continue
            try:
                stat = path.stat()
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", path, exc)
                continue
            summaries.append(
                LogSummary(
                    agent_session_id=path.stem,
                    project_slug=project_dir.name,
                    path=path,
                    modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                    size_bytes=stat.st_size,
                    excluded_reason=exclusion_reason(path),
                )
            )

    summaries.sort(key=lambda s: s.modified, reverse=True)
    return summaries


def exclusion_reason(path: Path) -> str | None:
    """Return why a log should be hidden, or ``None`` if it holds a conversation.

    Reads up to the first few lines.  A log is excluded only when those lines
    contain bookkeeping records and no ``user``/``assistant`` record.  Empty
    or unreadable logs are kept (the safe default).
    """
    first_special: str | None = None
    try:
        with path.open("r", encoding="utf-8", errors="replace") as fh:
            for line_num, line in enumerate(fh, start=1):
                if line_num > _HEAD_LINES:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Unparseable line %d in %s", line_num, path.name)
                    continue
                if not isinstance(data, dict):
                    continue
                line_type = data.get("type")
                if line_type in ("user", "assistant"):
                    return None
                if first_special is None and line_type in BOOKKEEPING_TYPES:
                    first_special = str(line_type)
    except OSError as exc:
        logger.warning("Cannot inspect %s: %s", path, exc)
        return None
    return first_special
