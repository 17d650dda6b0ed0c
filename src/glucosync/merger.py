"""Consumer-side merge of incoming snapshots into the shared store.

Deliveries arrive over several channels with no ordering between them, and
the same reading routinely arrives more than once.  The merger accepts an
incoming snapshot only if its reading time is strictly later than the stored
one, which makes the stored value monotonic under any interleaving.

An accepted snapshot is written and the write is awaited until durable
before any listener (timeline re-plan, display reload) is told about it, so
a reload can never read the value being replaced.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from glucosync.base import ReloadSignal, SharedStore
from glucosync.exceptions import DecodeFailure, StoreUnavailable
from glucosync.models import Snapshot, decode_snapshot, encode_snapshot
from glucosync.transport import Inbox

logger = logging.getLogger("glucosync.merger")

SNAPSHOT_KEY = "complicationData"


class MergeOutcome(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"


class MergeReason(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    MALFORMED = "malformed"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class MergeResult:
    """Outcome of one merge attempt.

    Attributes:
        outcome:  APPLIED or REJECTED.
        reason:   Why.  Duplicates and reordering are expected, not errors.
        snapshot: The snapshot held in the store after the attempt.
    """

    outcome: MergeOutcome
    reason: MergeReason
    snapshot: Snapshot | None = None

    @property
    def applied(self) -> bool:
        return self.outcome is MergeOutcome.APPLIED


def merge(incoming: Snapshot, current: Snapshot | None) -> MergeOutcome:
    """Decide whether ``incoming`` supersedes ``current``.

    Applied iff there is no current snapshot or the incoming reading time is
    strictly later.  Equal or earlier reading times are rejected.
    """
    if incoming.is_newer_than(current):
        return MergeOutcome.APPLIED
    return MergeOutcome.REJECTED


class UpdateMerger:
    """The single writer of the latest snapshot in the shared store.

    Usage::

        merger = UpdateMerger(store, reload_signal, on_applied=consumer.replan)
        result = await merger.apply_payload(raw_bytes)
    """

    def __init__(
        self,
        store: SharedStore,
        reload_signal: ReloadSignal | None = None,
        on_applied: Callable[[Snapshot], None] | None = None,
        key: str = SNAPSHOT_KEY,
    ) -> None:
        """Initialize the merger.

        Args:
            store:         Shared store that owns the latest snapshot.
            reload_signal: Told after every durable apply.
            on_applied:    Called with the new snapshot after every durable
                           apply, before the reload signal fires.
            key:           Store key holding the encoded snapshot.
        """
        self._store = store
        self._reload_signal = reload_signal
        self._listeners: list[Callable[[Snapshot], None]] = [on_applied] if on_applied else []
        self._key = key
        # Serializes read, check, write, flush and notify across concurrent merges.
        self._lock = asyncio.Lock()

    @property
    def key(self) -> str:
        return self._key

    def subscribe(self, callback: Callable[[Snapshot], None]) -> None:
        """Call ``callback`` with every snapshot applied from now on."""
        self._listeners.append(callback)

    def read(self) -> Snapshot | None:
        """Read and decode the stored snapshot.

        Raises:
            StoreUnavailable: If the store cannot be read.
            DecodeFailure:    If the stored blob is corrupt.
        """
        raw = self._store.get(self._key)
        if raw is None:
            return None
        return decode_snapshot(raw)

    def current(self) -> Snapshot | None:
        """Return the stored snapshot, or None if absent or unreadable."""
        try:
            return self.read()
        except StoreUnavailable as exc:
            logger.warning("Shared store unavailable: %s", exc)
        except DecodeFailure as exc:
            logger.warning("Stored snapshot under %r is corrupt: %s", self._key, exc)
        return None

    async def apply(self, incoming: Snapshot) -> MergeResult:
        """Merge a decoded snapshot into the store.

        Concurrent calls (the inbox task and a wake cycle) are applied one at
        a time, so each compares against the value the previous one flushed.
        """
        async with self._lock:
            return await self._apply_locked(incoming)

    async def _apply_locked(self, incoming: Snapshot) -> MergeResult:
        try:
            current = self.read()
        except StoreUnavailable as exc:
            logger.warning("Cannot merge %s, store unavailable: %s", incoming.reading_time, exc)
            return MergeResult(MergeOutcome.REJECTED, MergeReason.STORE_UNAVAILABLE)
        except DecodeFailure as exc:
            # A corrupt stored blob cannot be ordered against; replace it.
            logger.warning("Replacing corrupt stored snapshot: %s", exc)
            current = None

        if merge(incoming, current) is MergeOutcome.REJECTED:
            reason = (
                MergeReason.DUPLICATE
                if incoming.reading_time == current.reading_time
                else MergeReason.OUT_OF_ORDER
            )
            logger.debug(
                "Rejected %s snapshot %s (holding %s)",
                reason.value,
                incoming.reading_time,
                current.reading_time,
            )
            return MergeResult(MergeOutcome.REJECTED, reason, current)

        try:
            handle = self._store.set(self._key, encode_snapshot(incoming))
            await self._store.await_flush(handle)
        except StoreUnavailable as exc:
            logger.warning("Write of %s failed: %s", incoming.reading_time, exc)
            return MergeResult(MergeOutcome.REJECTED, MergeReason.STORE_UNAVAILABLE, current)

        logger.info(
            "Applied snapshot %s (value=%s, urgent=%s)",
            incoming.reading_time,
            incoming.value,
            incoming.urgent,
        )
        self._notify(incoming)
        return MergeResult(MergeOutcome.APPLIED, MergeReason.APPLIED, incoming)

    async def apply_payload(self, payload: bytes) -> MergeResult:
        """Decode a wire payload and merge it.  Malformed payloads are rejected
        without touching the store."""
        try:
            incoming = decode_snapshot(payload)
        except DecodeFailure as exc:
            logger.warning("Rejected malformed payload: %s", exc)
            return MergeResult(MergeOutcome.REJECTED, MergeReason.MALFORMED, self.current())
        return await self.apply(incoming)

    async def drain(self, inbox: Inbox) -> list[MergeResult]:
        """Merge every payload currently waiting in ``inbox``."""
        results: list[MergeResult] = []
        while (event := inbox.get_nowait()) is not None:
            results.append(await self.apply_payload(event.payload))
        return results

    async def run(self, inbox: Inbox) -> None:
        """Merge payloads from ``inbox`` as they arrive until cancelled."""
        logger.debug("Merger consuming inbox")
        while True:
            event = await inbox.get()
            result = await self.apply_payload(event.payload)
            logger.debug("%s payload → %s", event.channel.value, result.reason.value)

    def _notify(self, snapshot: Snapshot) -> None:
        for callback in self._listeners:
            try:
                callback(snapshot)
            except Exception as exc:
                logger.warning("Merge listener %r failed: %s", callback, exc)
        if self._reload_signal is not None:
            self._reload_signal.notify_display_invalidated()

