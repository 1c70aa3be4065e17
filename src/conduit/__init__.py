"""Conduit — supervision and stream reconciliation for coding-agent CLI sessions."""

__version__ = "0.1.0"
