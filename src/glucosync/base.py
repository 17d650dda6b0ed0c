"""Interfaces to the external collaborators the engine runs against.

The engine never talks to a concrete transport, storage mechanism, wake
facility or renderer directly.  It consumes the narrow ABCs below; concrete
implementations live in ``store``, ``transport`` and ``scheduler`` (and in
test fakes).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger("glucosync")


# ---------------------------------------------------------------------------
# Delivery channels
# ---------------------------------------------------------------------------


class ChannelKind(str, Enum):
    """Delivery guarantee offered by a channel.

    DURABLE    — store-and-forward; delivered even if the consumer is not running.
    CONTEXT    — last value wins; read by the consumer on its next activation.
    IMMEDIATE  — best effort; both ends must be running at the same time.
    """

    DURABLE = "durable"
    CONTEXT = "context"
    IMMEDIATE = "immediate"


class DeliveryChannel(ABC):
    """One way of getting a payload from the producer to the consumer."""

    kind: ChannelKind

    @abstractmethod
    def send(self, payload: bytes) -> None:
        """Hand ``payload`` to the channel without waiting for delivery.

        Raises:
            TransportFailure: If the channel refuses the payload.
        """


# ---------------------------------------------------------------------------
# Shared store
# ---------------------------------------------------------------------------


@dataclass
class FlushHandle:
    """Receipt for a store write.

    Attributes:
        key:     The key that was written.
        pending: Future resolved once the write is durable, or None when the
                 write was already durable when ``set()`` returned.
    """

    key: str
    pending: asyncio.Future | None = None

    @property
    def done(self) -> bool:
        return self.pending is None or self.pending.done()


class SharedStore(ABC):
    """Key → blob store readable from both processes.

    ``set()`` must replace the whole value atomically: a reader sees either
    the old blob or the new one, never a mix.
    """

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the stored blob, or None if nothing is stored.

        Raises:
            StoreUnavailable: If the store cannot be read.
        """

    @abstractmethod
    def set(self, key: str, data: bytes) -> FlushHandle:
        """Start replacing the value under ``key``.

        Raises:
            StoreUnavailable: If the write cannot be started.
        """

    @abstractmethod
    async def await_flush(self, handle: FlushHandle) -> None:
        """Wait until the write behind ``handle`` is durable.

        Raises:
            StoreUnavailable: If the write failed.
        """


# ---------------------------------------------------------------------------
# Wake facility
# ---------------------------------------------------------------------------

_ticket_ids = itertools.count(1)

WakeHandler = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class WakeTicket:
    """A granted wake request."""

    at: datetime
    ticket_id: int = field(default_factory=lambda: next(_ticket_ids))


class WakeFacility(ABC):
    """OS-controlled, rate-limited mechanism that wakes a suspended consumer.

    The handler runs at or after the requested instant, never before, and
    the facility may coalesce or delay requests at will.
    """

    #: True if several requests may be outstanding at once.  When False a new
    #: request implicitly replaces the previous one.
    allows_multiple: bool = False

    @abstractmethod
    def request_wake(self, at: datetime, handler: WakeHandler) -> WakeTicket:
        """Ask for ``handler`` to run no earlier than ``at``.

        Raises:
            WakeDenied: If the facility will not grant the request.
        """

    @abstractmethod
    def cancel(self, ticket: WakeTicket) -> None:
        """Withdraw an outstanding request.  Unknown tickets are ignored."""


# ---------------------------------------------------------------------------
# Reload signal
# ---------------------------------------------------------------------------


class ReloadSignal(ABC):
    """Tells the rendering layer that the displayed state is out of date."""

    @abstractmethod
    def notify_display_invalidated(self) -> None:
        """Fire and forget."""


class CallbackReloadSignal(ReloadSignal):
    """Reload signal that fans out to registered callbacks.

    Callback errors are logged and never reach the caller.
    """

    def __init__(self) -> None:
        self._callbacks: list[Callable[[], None]] = []
        self.fired = 0

    def subscribe(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def notify_display_invalidated(self) -> None:
        self.fired += 1
        for callback in self._callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning("Reload callback %r failed: %s", callback, exc)
