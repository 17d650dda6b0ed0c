"""Shared fixtures and fakes for glucosync tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from glucosync.base import FlushHandle, SharedStore, WakeFacility, WakeHandler, WakeTicket
from glucosync.config_loader import RefreshConfig, load_refresh_config
from glucosync.exceptions import StoreUnavailable, WakeDenied
from glucosync.models import Snapshot
from glucosync.store import InMemoryStore

# Fixed reference instant used across tests ("t" in scenario descriptions)
NOW = datetime(2026, 2, 23, 10, 45, 0, tzinfo=timezone.utc)


def make_snapshot(
    offset_minutes: float = 0,
    *,
    value: str = "142",
    urgent: bool = False,
    at: datetime | None = None,
) -> Snapshot:
    """Snapshot read ``offset_minutes`` relative to NOW."""
    return Snapshot(
        value=value,
        trend="→",
        delta="+2",
        insulin_on_board="1.35",
        carbs_on_board="12",
        reading_time=at or NOW + timedelta(minutes=offset_minutes),
        control_loop_time=NOW,
        urgent=urgent,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeWakeFacility(WakeFacility):
    """Records wake requests; fires them only when told to."""

    def __init__(self, allows_multiple: bool = False, deny: int = 0) -> None:
        self.allows_multiple = allows_multiple
        self.deny_remaining = deny
        self.requests: list[datetime] = []
        self.cancelled: list[WakeTicket] = []
        self.pending: dict[int, tuple[WakeTicket, WakeHandler]] = {}

    def request_wake(self, at: datetime, handler: WakeHandler) -> WakeTicket:
        self.requests.append(at)
        if self.deny_remaining:
            self.deny_remaining -= 1
            raise WakeDenied("budget exhausted")
        if not self.allows_multiple:
            self.pending.clear()
        ticket = WakeTicket(at=at)
        self.pending[ticket.ticket_id] = (ticket, handler)
        return ticket

    def cancel(self, ticket: WakeTicket) -> None:
        self.cancelled.append(ticket)
        self.pending.pop(ticket.ticket_id, None)

    @property
    def latest(self) -> WakeTicket | None:
        if not self.pending:
            return None
        return list(self.pending.values())[-1][0]

    async def fire(self) -> None:
        """Run the most recently granted handler, as the OS would."""
        ticket, handler = list(self.pending.values())[-1]
        del self.pending[ticket.ticket_id]
        await handler()


class BrokenStore(SharedStore):
    """Store that is unreachable for reads and/or writes."""

    def __init__(self, fail_reads: bool = True, fail_writes: bool = True) -> None:
        self._inner = InMemoryStore()
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    def get(self, key: str) -> bytes | None:
        if self.fail_reads:
            raise StoreUnavailable("read failed")
        return self._inner.get(key)

    def set(self, key: str, data: bytes) -> FlushHandle:
        if self.fail_writes:
            raise StoreUnavailable("write failed")
        return self._inner.set(key, data)

    async def await_flush(self, handle: FlushHandle) -> None:
        return None


class RecordingStore(InMemoryStore):
    """In-memory store that logs set/flush calls into a shared event list."""

    def __init__(self, events: list[str]) -> None:
        super().__init__()
        self.events = events

    def set(self, key: str, data: bytes) -> FlushHandle:
        self.events.append("set")
        return super().set(key, data)

    async def await_flush(self, handle: FlushHandle) -> None:
        self.events.append("flushed")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def refresh_config() -> RefreshConfig:
    """Load the bundled refresh config."""
    return load_refresh_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def facility() -> FakeWakeFacility:
    return FakeWakeFacility()
