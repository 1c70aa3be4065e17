"""Exception taxonomy for the Conduit runtime core.

Parsing and log-read problems are recovered locally and never surface as
exceptions to consumers (see :class:`conduit.protocol.events.DecodeError`,
which is a value, not an exception).  Process-lifecycle problems surface as
the exceptions below and as typed lifecycle notifications.
"""

from __future__ import annotations


class ConduitError(Exception):
    """Base class for all Conduit errors."""


class SpawnError(ConduitError):
    """The agent executable could not be started (missing, not executable, bad cwd)."""


class StreamError(ConduitError):
    """An I/O failure on a running child's stdin or stdout."""


class IdentifierConflict(ConduitError):
    """A session saw two different agent session identifiers.

    Never raised to callers: the registry logs it and keeps the first-seen
    identifier.  Kept as a type so the condition has a name in logs and tests.
    """

    def __init__(self, key: str, current: str, offered: str) -> None:
        super().__init__(
            f"Session {key}: identifier {offered!r} conflicts with {current!r}"
        )
        self.key = key
        self.current = current
        self.offered = offered


class RecoveryGap(ConduitError):
    """The durable log is unavailable, so history cannot be read."""


class UnknownSessionError(ConduitError, KeyError):
    """An operation referenced a session key the registry does not hold."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class ConfigError(ConduitError):
    """User-facing configuration error."""
