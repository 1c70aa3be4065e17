"""Sessions — registry, metadata store, and the agent's durable logs."""

from conduit.session.log import (
    LogReadResult,
    LogRecord,
    SessionLog,
    TokenUsage,
    calculate_usage,
    log_path,
    project_slug,
)
from conduit.session.models import IdAssignment, Session, SessionStatus
from conduit.session.registry import SessionRegistry
from conduit.session.scanner import LogSummary, decode_project_slug, scan_projects
from conduit.session.store import JsonSessionStore, MetadataStore, SessionRecord

__all__ = [
    "IdAssignment",
    "JsonSessionStore",
    "LogReadResult",
    "LogRecord",
    "LogSummary",
    "MetadataStore",
    "Session",
    "SessionLog",
    "SessionRecord",
    "SessionRegistry",
    "SessionStatus",
    "TokenUsage",
    "calculate_usage",
    "decode_project_slug",
    "log_path",
    "project_slug",
    "scan_projects",
]
