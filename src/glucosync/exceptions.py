"""Failure taxonomy for the glucosync engine.

None of these escape the engine's public operations.  Each one is caught at
the component seam where it happens, logged, and turned into an outcome:

    TransportFailure — one delivery channel refused a payload; the other
                       channels cover for it.
    DecodeFailure    — a payload could not be turned into a Snapshot; the
                       merger rejects it and keeps what it had.
    StoreUnavailable — the shared store could not be read or written;
                       freshness reads as unknown until the next success.
    WakeDenied       — the wake facility refused a request; the scheduler
                       backs off and waits for the consumer to run again.

Duplicate or reordered deliveries are not errors at all and never raise.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all glucosync failures."""


class TransportFailure(SyncError):
    """A single delivery channel failed to accept a payload."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel} channel send failed: {message}")
        self.channel = channel
        self.message = message


class DecodeFailure(SyncError, ValueError):
    """A payload is malformed or is missing a required field."""


class StoreUnavailable(SyncError):
    """The shared store could not be read or written."""


class WakeDenied(SyncError):
    """The wake facility did not grant a background wake."""
