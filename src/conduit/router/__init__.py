"""Output router — per-session delivery of events to subscribers."""

from conduit.router.router import Consumer, OutputRouter, Subscription

__all__ = ["Consumer", "OutputRouter", "Subscription"]
