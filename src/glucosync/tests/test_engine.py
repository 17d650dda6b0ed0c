"""End-to-end tests for the producer/consumer pair."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from glucosync.config import Settings
from glucosync.config_loader import RefreshConfig
from glucosync.engine import SyncPair, build_pair
from glucosync.models import GlucoseReading
from glucosync.staleness import FreshnessTier
from glucosync.store import FileStore, InMemoryStore
from glucosync.tests.conftest import NOW, BrokenStore, FakeClock, FakeWakeFacility
from glucosync.transport import ChannelReachability

MIN = timedelta(minutes=1)
SUSPENDED = ChannelReachability(consumer_live=False)
LIVE = ChannelReachability(consumer_live=True)


def _reading(offset_minutes: float = 0, mgdl: float = 142) -> GlucoseReading:
    return GlucoseReading(
        glucose_mgdl=mgdl,
        trend="→",
        delta_mgdl=2,
        reading_time=NOW + timedelta(minutes=offset_minutes),
    )


async def _settle(pair: SyncPair) -> None:
    """Let the consumer's inbox task catch up."""
    for _ in range(50):
        if len(pair.consumer.inbox) == 0:
            break
        await asyncio.sleep(0)
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def pair(
    refresh_config: RefreshConfig,
    settings: Settings,
    facility: FakeWakeFacility,
    store: InMemoryStore,
    clock: FakeClock,
) -> SyncPair:
    return build_pair(
        config=refresh_config, settings=settings, facility=facility, store=store, clock=clock
    )


class TestColdStart:
    @pytest.mark.asyncio
    async def test_empty_start(self, pair: SyncPair, facility: FakeWakeFacility) -> None:
        result = await pair.consumer.start()
        try:
            assert result.tier is FreshnessTier.UNKNOWN
            assert pair.consumer.running
            assert facility.requests == [NOW + 15 * MIN]
        finally:
            await pair.consumer.stop()
        assert not pair.consumer.running

    @pytest.mark.asyncio
    async def test_recovers_deliveries_made_while_suspended(
        self, pair: SyncPair, store: InMemoryStore
    ) -> None:
        _, outcome = pair.producer.publish(_reading(), SUSPENDED)
        assert [k.value for k in outcome.sent] == ["durable", "context"]

        result = await pair.consumer.start()
        try:
            assert result.merged == 1
            assert result.snapshot.value == "142"
            assert result.tier is FreshnessTier.FRESH
            assert store.writes == 1
        finally:
            await pair.consumer.stop()

    @pytest.mark.asyncio
    async def test_urgent_reading_plans_dense_timeline(
        self, pair: SyncPair, facility: FakeWakeFacility
    ) -> None:
        snapshot, _ = pair.producer.publish(_reading(mgdl=58), SUSPENDED)
        assert snapshot.urgent

        await pair.consumer.start()
        try:
            assert pair.consumer.plan.urgent
            assert pair.consumer.plan.cadence == 5 * MIN
            assert facility.requests[-1] == NOW + 5 * MIN
        finally:
            await pair.consumer.stop()


class TestLiveDelivery:
    @pytest.mark.asyncio
    async def test_live_reading_merged_once(
        self, pair: SyncPair, store: InMemoryStore, facility: FakeWakeFacility, clock: FakeClock
    ) -> None:
        """Durable, context and immediate all carry it; the store is written once."""
        await pair.consumer.start()
        pair.immediate.live = True
        try:
            _, outcome = pair.producer.publish(_reading(), LIVE)
            assert len(outcome.sent) == 3
            await _settle(pair)

            assert pair.consumer.merger.current().reading_time == NOW
            assert store.writes == 1

            # The next wake sees the same reading on the context channel and
            # leaves the store alone.
            clock.now = facility.latest.at
            await facility.fire()
            assert store.writes == 1
            assert pair.consumer.scheduler.last_result.merged == 0
        finally:
            await pair.consumer.stop()

    @pytest.mark.asyncio
    async def test_newer_reading_replans(
        self, pair: SyncPair, facility: FakeWakeFacility, clock: FakeClock
    ) -> None:
        await pair.consumer.start()
        pair.immediate.live = True
        try:
            clock.advance(minutes=5)
            pair.producer.publish(_reading(5, mgdl=250), LIVE)
            await _settle(pair)

            plan = pair.consumer.plan
            assert plan.urgent
            assert plan.created_at == NOW + 5 * MIN
            assert facility.latest.at == NOW + 10 * MIN
            assert pair.reload_signal.fired >= 1
        finally:
            await pair.consumer.stop()

    @pytest.mark.asyncio
    async def test_reordered_delivery_keeps_latest(self, pair: SyncPair) -> None:
        await pair.consumer.start()
        pair.immediate.live = True
        try:
            pair.producer.publish(_reading(0), LIVE)
            pair.producer.publish(_reading(-5), LIVE)
            await _settle(pair)
            assert pair.consumer.merger.current().reading_time == NOW
        finally:
            await pair.consumer.stop()

    def test_unpaired_publish_reaches_nothing(self, pair: SyncPair) -> None:
        _, outcome = pair.producer.publish(_reading(), ChannelReachability(paired=False))
        assert not outcome.delivered_any
        assert len(pair.consumer.inbox) == 0


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_after_merge(self, pair: SyncPair, clock: FakeClock) -> None:
        pair.producer.publish(_reading(), SUSPENDED)
        await pair.consumer.start()
        try:
            clock.advance(minutes=12)
            status = pair.consumer.status()
            assert status.tier is FreshnessTier.STALE
            assert status.minutes_ago == 12
            assert status.time_string == "10:45"
            assert status.freshness == pytest.approx(1 - 12 / 15)
            assert status.debug == "AG:nil D:True V:True"
        finally:
            await pair.consumer.stop()

    def test_status_without_data(self, pair: SyncPair) -> None:
        status = pair.consumer.status()
        assert status.snapshot is None
        assert status.tier is FreshnessTier.UNKNOWN
        assert status.time_string == "--:--"
        assert status.refresh_instants == []
        assert status.debug == "AG:nil D:True V:False"

    def test_debug_info_unreachable_store(
        self, refresh_config: RefreshConfig, settings: Settings, facility: FakeWakeFacility
    ) -> None:
        pair = build_pair(
            config=refresh_config, settings=settings, facility=facility, store=BrokenStore()
        )
        assert pair.consumer.debug_info() == "AG:nil D:False V:False"
        assert pair.consumer.status().tier is FreshnessTier.UNKNOWN


class TestBuildPair:
    def test_app_group_uses_file_store(
        self,
        refresh_config: RefreshConfig,
        facility: FakeWakeFacility,
        tmp_path: Path,
    ) -> None:
        settings = Settings(
            _env_file=None,
            bundle_id="org.nightscout.ABC123.trio.watchkitapp.Complication",
            store_dir=tmp_path,
        )
        pair = build_pair(config=refresh_config, settings=settings, facility=facility)
        store = pair.consumer.store
        assert isinstance(store, FileStore)
        assert store.directory == tmp_path / "group.org.nightscout.ABC123.trio.trio-app-group"
        assert pair.consumer.debug_info() == "AG:.trio-app-group D:True V:False"

    def test_no_app_group_uses_memory(
        self, refresh_config: RefreshConfig, settings: Settings, facility: FakeWakeFacility
    ) -> None:
        pair = build_pair(config=refresh_config, settings=settings, facility=facility)
        assert isinstance(pair.consumer.store, InMemoryStore)

    def test_inbox_sized_from_config(
        self, settings: Settings, facility: FakeWakeFacility
    ) -> None:
        pair = build_pair(
            config=RefreshConfig(inbox_size=1), settings=settings, facility=facility
        )
        pair.producer.publish(_reading(0), SUSPENDED)
        pair.producer.publish(_reading(1), SUSPENDED)
        assert len(pair.consumer.inbox) == 1
        assert pair.consumer.inbox.dropped == 1
