"""Background refresh scheduling against a rate-limited wake facility.

The consumer only gets to run in the background when the OS wakes it, and
the OS grants a handful of low-frequency wakes per hour at most.  The
scheduler spends that budget to keep the freshness tier honest:

1. Ask for a wake no earlier than the plan's next boundary, pushed back if
   needed so wakes stay at least ``3600 / max_wakes_per_hour`` seconds apart.
2. On wake, run the refresh cycle: drain the inbox, re-read the shared store,
   merge anything newer from the persistent context channel, re-plan, and ask
   the display to reload.
3. Re-arm before returning — always, even when the cycle failed.  A missed
   re-arm ends background refresh for good.

Denied requests are logged and backed off exponentially.  When even the
backed-off request is denied the scheduler stops asking and waits for the
consumer to run for some other reason (``on_activation``).
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from glucosync.base import ReloadSignal, WakeFacility, WakeHandler, WakeTicket
from glucosync.config_loader import WakeBudget
from glucosync.exceptions import WakeDenied
from glucosync.merger import MergeResult, UpdateMerger
from glucosync.models import Snapshot, utc_now
from glucosync.staleness import FreshnessTier
from glucosync.timeline import RefreshPlan, TimelinePlanner
from glucosync.transport import ContextChannel, Inbox

logger = logging.getLogger("glucosync.scheduler")

Clock = Callable[[], datetime]


@dataclass
class WakeResult:
    """What one refresh cycle did.

    Attributes:
        merged:       Snapshots applied during the cycle.
        snapshot:     Latest snapshot after the cycle (None = nothing stored).
        tier:         Freshness tier at the time of the cycle.
        plan:         The recomputed refresh plan.
        next_refresh: Instant the scheduler should wake next.
    """

    merged: int
    snapshot: Snapshot | None
    tier: FreshnessTier
    plan: RefreshPlan | None = None
    next_refresh: datetime | None = None


class RefreshCycle:
    """The default wake handler: reconcile, re-plan, reload."""

    def __init__(
        self,
        merger: UpdateMerger,
        planner: TimelinePlanner,
        reload_signal: ReloadSignal | None = None,
        context_channel: ContextChannel | None = None,
        inbox: Inbox | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._merger = merger
        self._planner = planner
        self._reload_signal = reload_signal
        self._context = context_channel
        self._inbox = inbox
        self._clock = clock
        self.last_plan: RefreshPlan | None = None

    async def __call__(self) -> WakeResult:
        results: list[MergeResult] = []
        if self._inbox is not None:
            results.extend(await self._merger.drain(self._inbox))

        # The context channel may hold a reading that arrived while suspended.
        if self._context is not None:
            latest = self._context.latest()
            if latest is not None:
                results.append(await self._merger.apply_payload(latest))

        now = self._clock()
        snapshot = self._merger.current()
        plan = self._planner.plan(now, snapshot)
        self.last_plan = plan
        merged = sum(1 for r in results if r.applied)

        # Applied merges already invalidated the display.
        if not merged and self._reload_signal is not None:
            self._reload_signal.notify_display_invalidated()

        tier = plan.entries[0].tier
        logger.info(
            "Refresh cycle: merged=%d tier=%s next=%s",
            merged,
            tier.value,
            plan.next_boundary(now),
        )
        return WakeResult(
            merged=merged,
            snapshot=snapshot,
            tier=tier,
            plan=plan,
            next_refresh=plan.next_boundary(now),
        )


class RefreshScheduler:
    """Self-perpetuating wake schedule within a fixed wake budget.

    Usage::

        scheduler = RefreshScheduler(facility, budget)
        scheduler.on_wake(RefreshCycle(merger, planner, reload_signal, context))
        scheduler.schedule_next(plan.next_boundary(now))
    """

    def __init__(
        self,
        facility: WakeFacility,
        budget: WakeBudget | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._facility = facility
        self._budget = budget or WakeBudget()
        self._clock = clock
        self._handler: Callable[[], Awaitable[WakeResult]] | None = None
        self._ticket: WakeTicket | None = None
        self._last_wake: datetime | None = None
        self.denials = 0
        self.last_result: WakeResult | None = None

    @property
    def ticket(self) -> WakeTicket | None:
        """The outstanding wake request, if any."""
        return self._ticket

    def on_wake(self, handler: Callable[[], Awaitable[WakeResult]]) -> None:
        """Register the handler run on every wake and activation."""
        self._handler = handler

    def backoff_delay(self) -> timedelta:
        """Delay applied after the current run of consecutive denials."""
        if self.denials == 0:
            return timedelta(0)
        delay = self._budget.backoff_base * (2 ** (self.denials - 1))
        return min(delay, self._budget.backoff_max)

    def effective_instant(self, preferred: datetime | None) -> datetime:
        """Earliest instant the budget allows at or after ``preferred``."""
        now = self._clock()
        spacing = self._budget.min_spacing
        at = preferred if preferred is not None else now + spacing
        at = max(at, now)
        if self._last_wake is not None:
            at = max(at, self._last_wake + spacing)
        if self.denials:
            at = max(at, now + self.backoff_delay())
        return at

    def schedule_next(self, preferred: datetime | None) -> WakeTicket | None:
        """Request the next wake no earlier than ``preferred``.

        Returns:
            The granted ticket, or None if the facility denied the request and
            the backed-off retry.  Denial is never raised.
        """
        if self._ticket is not None and self._facility.allows_multiple:
            self._facility.cancel(self._ticket)
        self._ticket = None

        at = self.effective_instant(preferred)
        for attempt in (1, 2):
            try:
                self._ticket = self._facility.request_wake(at, self._wake)
            except WakeDenied as exc:
                self.denials += 1
                logger.warning(
                    "Wake request for %s denied (attempt %d, %d consecutive): %s",
                    at,
                    attempt,
                    self.denials,
                    exc,
                )
                at = max(at, self._clock() + self.backoff_delay())
                continue
            self.denials = 0
            logger.info("Scheduled background refresh for %s", at)
            return self._ticket

        logger.warning(
            "No background wake granted; refreshing only when the consumer runs"
        )
        return None

    async def on_activation(self) -> WakeResult | None:
        """Run a refresh cycle because the consumer is running anyway, then re-arm."""
        return await self._run_cycle(reason="activation")

    async def _wake(self) -> None:
        self._ticket = None
        self._last_wake = self._clock()
        await self._run_cycle(reason="wake")

    async def _run_cycle(self, reason: str) -> WakeResult | None:
        result: WakeResult | None = None
        try:
            if self._handler is None:
                logger.warning("Background %s with no handler registered", reason)
            else:
                logger.debug("Background %s triggered", reason)
                result = await self._handler()
                self.last_result = result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Refresh cycle on %s failed: %s", reason, exc)
        finally:
            self.schedule_next(result.next_refresh if result else None)
        return result


# ---------------------------------------------------------------------------
# Concrete facility
# ---------------------------------------------------------------------------


class AsyncioWakeFacility(WakeFacility):
    """Wake facility on top of the running asyncio loop.

    Holds one outstanding request (a new one replaces the previous) and
    enforces a sliding one-hour cap on fired wakes, denying requests once the
    window is full.
    """

    allows_multiple = False

    def __init__(self, max_wakes_per_hour: int = 4, clock: Clock = utc_now) -> None:
        self._max = max_wakes_per_hour
        self._clock = clock
        self._window = timedelta(hours=1)
        self._fired: deque[datetime] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._pending: WakeTicket | None = None
        self._tasks: set[asyncio.Task] = set()

    def _cleanup(self, now: datetime) -> None:
        cutoff = now - self._window
        while self._fired and self._fired[0] <= cutoff:
            self._fired.popleft()

    def request_wake(self, at: datetime, handler: WakeHandler) -> WakeTicket:
        now = self._clock()
        self._cleanup(now)
        if self._pending is not None:
            self.cancel(self._pending)
        if len(self._fired) >= self._max:
            raise WakeDenied(
                f"{len(self._fired)} wakes in the last hour (cap {self._max})"
            )

        loop = asyncio.get_running_loop()
        delay = max((at - now).total_seconds(), 0.0)
        ticket = WakeTicket(at=at)
        self._timer = loop.call_later(delay, self._fire, ticket, handler)
        self._pending = ticket
        return ticket

    def cancel(self, ticket: WakeTicket) -> None:
        if self._pending is None or self._pending.ticket_id != ticket.ticket_id:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._pending = None

    def _fire(self, ticket: WakeTicket, handler: WakeHandler) -> None:
        self._timer = None
        self._pending = None
        self._fired.append(self._clock())
        task = asyncio.get_running_loop().create_task(handler())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
