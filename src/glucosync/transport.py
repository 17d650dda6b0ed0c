"""Producer-side dispatch over redundant delivery channels.

A freshly built Snapshot is pushed over every channel that can take it:

    durable    — always; store-and-forward backbone.
    context    — always; last-value-wins recovery path read on activation.
    immediate  — only while the consumer is known to be running.

No channel is retried.  A failing channel is logged and the others carry the
reading; the consumer's merger discards whatever arrives twice.

The in-process channels here deliver into an ``Inbox`` — a bounded queue of
``IncomingPayload`` events the consumer's merger drains.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from glucosync.base import ChannelKind, DeliveryChannel, SharedStore
from glucosync.config_loader import SafeRange
from glucosync.exceptions import StoreUnavailable, TransportFailure
from glucosync.models import GlucoseReading, Snapshot, encode_snapshot, utc_now

logger = logging.getLogger("glucosync.transport")


# ---------------------------------------------------------------------------
# Consumer inbox
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IncomingPayload:
    """One raw payload as it arrived at the consumer."""

    channel: ChannelKind
    payload: bytes
    received_at: datetime = field(default_factory=utc_now)


class Inbox:
    """Bounded FIFO of incoming payloads.

    When full, the oldest waiting payload is dropped to make room: a newer
    reading is always worth more than an older one.
    """

    def __init__(self, max_size: int = 64) -> None:
        self._queue: asyncio.Queue[IncomingPayload] = asyncio.Queue(maxsize=max_size)
        self.dropped = 0

    def deliver(self, channel: ChannelKind, payload: bytes) -> None:
        event = IncomingPayload(channel=channel, payload=payload)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            stale = self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning(
                "Inbox full, dropped oldest %s payload received at %s",
                stale.channel.value,
                stale.received_at,
            )
            self._queue.put_nowait(event)

    def get_nowait(self) -> IncomingPayload | None:
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        self._queue.task_done()
        return event

    async def get(self) -> IncomingPayload:
        event = await self._queue.get()
        self._queue.task_done()
        return event

    def __len__(self) -> int:
        return self._queue.qsize()


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class QueuedChannel(DeliveryChannel):
    """Durable store-and-forward channel.  Payloads wait in the inbox until
    the consumer drains it, whether or not it is running now."""

    kind = ChannelKind.DURABLE

    def __init__(self, inbox: Inbox) -> None:
        self._inbox = inbox

    def send(self, payload: bytes) -> None:
        self._inbox.deliver(self.kind, payload)


class ContextChannel(DeliveryChannel):
    """Persistent last-value-wins channel.

    Each send overwrites the previous payload.  The consumer reads the latest
    value with ``latest()`` on cold start and on every wake.  With a backing
    store every ``latest()`` re-reads the store, so a consumer sees writes
    made by a producer in another process, and the value survives restarts.
    """

    kind = ChannelKind.CONTEXT
    CONTEXT_KEY = "applicationContext"

    def __init__(self, store: SharedStore | None = None) -> None:
        self._store = store
        self._latest: bytes | None = None

    def send(self, payload: bytes) -> None:
        self._latest = payload
        if self._store is not None:
            try:
                handle = self._store.set(self.CONTEXT_KEY, payload)
            except StoreUnavailable as exc:
                raise TransportFailure(self.kind.value, str(exc)) from exc
            if handle.pending is not None:
                handle.pending.add_done_callback(self._log_failed_write)

    def _log_failed_write(self, pending: asyncio.Future) -> None:
        if pending.cancelled():
            return
        exc = pending.exception()
        if exc is not None:
            logger.warning("%s", TransportFailure(self.kind.value, str(exc)))

    def latest(self) -> bytes | None:
        if self._store is None:
            return self._latest
        try:
            value = self._store.get(self.CONTEXT_KEY)
        except StoreUnavailable as exc:
            logger.warning("Context channel unreadable, using last sent value: %s", exc)
            return self._latest
        if value is not None:
            self._latest = value
        return self._latest


class ImmediateChannel(DeliveryChannel):
    """Best-effort live channel.  Refuses payloads while the consumer is not
    running."""

    kind = ChannelKind.IMMEDIATE

    def __init__(self, inbox: Inbox) -> None:
        self._inbox = inbox
        self.live = False

    def send(self, payload: bytes) -> None:
        if not self.live:
            raise TransportFailure(self.kind.value, "consumer not reachable")
        self._inbox.deliver(self.kind, payload)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChannelReachability:
    """What the producer currently knows about the consumer.

    Attributes:
        consumer_live:      The consumer is running and reachable right now.
        paired:             A consumer device is paired at all.
        consumer_installed: The consumer app is installed on that device.
    """

    consumer_live: bool = False
    paired: bool = True
    consumer_installed: bool = True

    @property
    def session_usable(self) -> bool:
        return self.paired and self.consumer_installed


@dataclass
class DispatchOutcome:
    """Per-channel result of one dispatch."""

    sent: list[ChannelKind] = field(default_factory=list)
    failed: dict[ChannelKind, str] = field(default_factory=dict)
    skipped: list[ChannelKind] = field(default_factory=list)

    @property
    def delivered_any(self) -> bool:
        return bool(self.sent)


class TransportDispatcher:
    """Push snapshots over the durable, context and immediate channels."""

    def __init__(
        self,
        durable: DeliveryChannel,
        context: DeliveryChannel,
        immediate: DeliveryChannel | None = None,
    ) -> None:
        self._durable = durable
        self._context = context
        self._immediate = immediate

    def dispatch(self, snapshot: Snapshot, reachability: ChannelReachability) -> DispatchOutcome:
        """Send ``snapshot`` on every channel that can currently take it.

        Args:
            snapshot:     The reading to propagate.
            reachability: Current consumer reachability.

        Returns:
            DispatchOutcome listing sent, failed and skipped channels.
        """
        outcome = DispatchOutcome()
        channels = [self._durable, self._context]
        if self._immediate is not None:
            channels.append(self._immediate)

        if not reachability.session_usable:
            outcome.skipped.extend(c.kind for c in channels)
            logger.info(
                "No usable consumer session (paired=%s, installed=%s); skipping dispatch of %s",
                reachability.paired,
                reachability.consumer_installed,
                snapshot.reading_time,
            )
            return outcome

        payload = encode_snapshot(snapshot)
        for channel in channels:
            if channel.kind is ChannelKind.IMMEDIATE and not reachability.consumer_live:
                outcome.skipped.append(channel.kind)
                continue
            try:
                channel.send(payload)
            except TransportFailure as exc:
                outcome.failed[channel.kind] = exc.message
                logger.warning("Dispatch of %s: %s", snapshot.reading_time, exc)
            except Exception as exc:
                failure = TransportFailure(channel.kind.value, str(exc))
                outcome.failed[channel.kind] = failure.message
                logger.warning("Dispatch of %s: %s", snapshot.reading_time, failure)
            else:
                outcome.sent.append(channel.kind)

        logger.debug(
            "Dispatched %s (urgent=%s): sent=%s failed=%s skipped=%s",
            snapshot.reading_time,
            snapshot.urgent,
            [k.value for k in outcome.sent],
            [k.value for k in outcome.failed],
            [k.value for k in outcome.skipped],
        )
        return outcome


# ---------------------------------------------------------------------------
# Snapshot builder
# ---------------------------------------------------------------------------


def _trim(value: float, digits: int) -> str:
    text = f"{value:.{digits}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


class SnapshotBuilder:
    """Format a raw reading into a Snapshot and flag it urgent when it falls
    outside the safe range."""

    def __init__(self, safe_range: SafeRange | None = None) -> None:
        self._safe_range = safe_range or SafeRange()

    def build(self, reading: GlucoseReading) -> Snapshot:
        delta = reading.delta_mgdl
        return Snapshot(
            value=str(round(reading.glucose_mgdl)),
            trend=reading.trend,
            delta=f"{round(delta):+d}" if delta is not None else "",
            insulin_on_board=_trim(reading.iob_units, 2) if reading.iob_units is not None else None,
            carbs_on_board=_trim(reading.cob_grams, 0) if reading.cob_grams is not None else None,
            reading_time=reading.reading_time,
            control_loop_time=reading.loop_time,
            urgent=not self._safe_range.contains(reading.glucose_mgdl),
        )
