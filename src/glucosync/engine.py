"""Producer and consumer wiring.

Components are constructed explicitly and injected; nothing here is a
process-wide singleton.  ``build_pair()`` connects a producer and consumer
over in-process channels, which is what the HTTP surface and the tests run.

Consumer lifecycle::

    consumer = pair.consumer
    await consumer.start()    # cold-start recovery, first plan, first wake
    ...                       # inbox task merges deliveries as they arrive
    await consumer.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from glucosync.base import CallbackReloadSignal, ReloadSignal, SharedStore, WakeFacility
from glucosync.config import Settings, get_settings
from glucosync.config_loader import RefreshConfig, get_refresh_config
from glucosync.exceptions import StoreUnavailable
from glucosync.merger import UpdateMerger
from glucosync.models import GlucoseReading, Snapshot, utc_now
from glucosync.scheduler import (
    AsyncioWakeFacility,
    Clock,
    RefreshCycle,
    RefreshScheduler,
    WakeResult,
)
from glucosync.staleness import FreshnessTier, classify_snapshot, freshness_fraction
from glucosync.store import FileStore, InMemoryStore
from glucosync.timeline import RefreshPlan, TimelinePlanner
from glucosync.transport import (
    ChannelReachability,
    ContextChannel,
    DispatchOutcome,
    ImmediateChannel,
    Inbox,
    QueuedChannel,
    SnapshotBuilder,
    TransportDispatcher,
)

logger = logging.getLogger("glucosync.engine")


class Producer:
    """Producing side: reading → snapshot → channels."""

    def __init__(self, dispatcher: TransportDispatcher, builder: SnapshotBuilder) -> None:
        self._dispatcher = dispatcher
        self._builder = builder

    def publish(
        self, reading: GlucoseReading, reachability: ChannelReachability
    ) -> tuple[Snapshot, DispatchOutcome]:
        snapshot = self._builder.build(reading)
        outcome = self._dispatcher.dispatch(snapshot, reachability)
        if not outcome.delivered_any:
            logger.warning("Reading %s reached no channel", snapshot.reading_time)
        return snapshot, outcome


@dataclass
class ConsumerStatus:
    """Point-in-time view of the consumer for status endpoints and debugging."""

    snapshot: Snapshot | None
    tier: FreshnessTier
    minutes_ago: int | None
    time_string: str
    freshness: float
    plan: RefreshPlan | None
    debug: str
    refresh_instants: list[datetime] = field(default_factory=list)


class Consumer:
    """Consuming side: inbox → merger → planner → scheduler."""

    def __init__(
        self,
        store: SharedStore,
        merger: UpdateMerger,
        planner: TimelinePlanner,
        scheduler: RefreshScheduler,
        context_channel: ContextChannel,
        inbox: Inbox,
        config: RefreshConfig,
        reload_signal: ReloadSignal | None = None,
        app_group: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.merger = merger
        self.planner = planner
        self.scheduler = scheduler
        self.context_channel = context_channel
        self.inbox = inbox
        self._config = config
        self._app_group = app_group
        self._clock = clock
        self._cycle = RefreshCycle(merger, planner, reload_signal, context_channel, inbox, clock)
        self._task: asyncio.Task | None = None
        scheduler.on_wake(self._cycle)
        merger.subscribe(self.replan)

    @property
    def plan(self) -> RefreshPlan | None:
        return self._cycle.last_plan

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> WakeResult | None:
        """Recover from the context channel, plan, arm, and start merging."""
        result = await self.scheduler.on_activation()
        if not self.running:
            self._task = asyncio.create_task(self.merger.run(self.inbox))
        logger.info("Consumer started (tier=%s)", result.tier.value if result else "unknown")
        return result

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Consumer stopped")

    def replan(self, snapshot: Snapshot | None = None) -> RefreshPlan:
        """Re-plan after a merge and move the pending wake to the new boundary."""
        now = self._clock()
        current = snapshot if snapshot is not None else self.merger.current()
        plan = self.planner.plan(now, current)
        self._cycle.last_plan = plan
        self.scheduler.schedule_next(plan.next_boundary(now))
        return plan

    def debug_info(self) -> str:
        """Compact store diagnostics, e.g. ``AG:nightscout.ABC D:True V:False``."""
        group = self._app_group or "nil"
        try:
            has_value = self.store.get(self.merger.key) is not None
            reachable = True
        except StoreUnavailable as exc:
            logger.debug("Store probe failed: %s", exc)
            has_value = False
            reachable = False
        return f"AG:{group[-15:]} D:{reachable} V:{has_value}"

    def status(self, now: datetime | None = None) -> ConsumerStatus:
        at = now or self._clock()
        snapshot = self.merger.current()
        thresholds = self._config.staleness
        plan = self.plan
        return ConsumerStatus(
            snapshot=snapshot,
            tier=classify_snapshot(at, snapshot, thresholds),
            minutes_ago=snapshot.minutes_ago(at) if snapshot else None,
            time_string=snapshot.time_string() if snapshot else "--:--",
            freshness=freshness_fraction(at, snapshot, thresholds),
            plan=plan,
            debug=self.debug_info(),
            refresh_instants=plan.refresh_instants if plan else [],
        )


@dataclass
class SyncPair:
    producer: Producer
    consumer: Consumer
    durable: QueuedChannel
    context: ContextChannel
    immediate: ImmediateChannel
    reload_signal: CallbackReloadSignal


def build_pair(
    config: RefreshConfig | None = None,
    settings: Settings | None = None,
    facility: WakeFacility | None = None,
    store: SharedStore | None = None,
    clock: Clock = utc_now,
) -> SyncPair:
    """Wire a producer and consumer over in-process channels.

    Args:
        config:   Engine tuning.  Defaults to the bundled refresh_config.yaml.
        settings: Process settings.  Defaults to the environment.
        facility: Wake facility.  Defaults to an AsyncioWakeFacility honoring
                  the configured wake budget.
        store:    Shared store.  Defaults to a FileStore in the app-group
                  directory when one is configured, else an in-memory store.
        clock:    Source of "now".

    Returns:
        The wired SyncPair.
    """
    cfg = config or get_refresh_config()
    s = settings or get_settings()
    if store is None:
        store = FileStore(s.shared_store_dir) if s.app_group else InMemoryStore()

    inbox = Inbox(max_size=cfg.inbox_size)
    durable = QueuedChannel(inbox)
    context = ContextChannel()
    immediate = ImmediateChannel(inbox)
    reload_signal = CallbackReloadSignal()

    planner = TimelinePlanner(cfg)
    scheduler = RefreshScheduler(
        facility or AsyncioWakeFacility(cfg.wake_budget.max_wakes_per_hour, clock),
        cfg.wake_budget,
        clock,
    )
    merger = UpdateMerger(store, reload_signal, key=s.snapshot_key)
    consumer = Consumer(
        store=store,
        merger=merger,
        planner=planner,
        scheduler=scheduler,
        context_channel=context,
        inbox=inbox,
        config=cfg,
        reload_signal=reload_signal,
        app_group=s.app_group,
        clock=clock,
    )
    producer = Producer(
        TransportDispatcher(durable, context, immediate),
        SnapshotBuilder(cfg.safe_range),
    )
    logger.debug("Built sync pair (store=%s, group=%s)", type(store).__name__, s.app_group)
    return SyncPair(
        producer=producer,
        consumer=consumer,
        durable=durable,
        context=context,
        immediate=immediate,
        reload_signal=reload_signal,
    )
