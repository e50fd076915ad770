"""Ephemeral chat rooms with idempotent, poll-friendly message sync."""

__version__ = "1.0.0"
