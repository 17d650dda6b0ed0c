"""Tests for the adaptive timeline planner."""

from __future__ import annotations

from datetime import timedelta

import pytest

from glucosync.config_loader import CadencePolicy, RefreshConfig
from glucosync.staleness import FreshnessTier
from glucosync.tests.conftest import NOW, make_snapshot
from glucosync.timeline import ExpiryPolicy, TimelinePlanner

MIN = timedelta(minutes=1)


@pytest.fixture
def planner(refresh_config: RefreshConfig) -> TimelinePlanner:
    return TimelinePlanner(refresh_config)


class TestAdaptiveCadence:
    """Urgent readings get a denser, shorter lease."""

    def test_urgent_every_five_minutes_for_thirty(self, planner: TimelinePlanner) -> None:
        plan = planner.plan(NOW, make_snapshot(urgent=True))
        assert plan.instants == [NOW + n * 5 * MIN for n in range(7)]
        assert plan.cadence == 5 * MIN
        assert plan.horizon == 30 * MIN
        assert plan.urgent

    def test_normal_every_fifteen_minutes_for_sixty(self, planner: TimelinePlanner) -> None:
        plan = planner.plan(NOW, make_snapshot(urgent=False))
        assert plan.instants == [NOW + n * 15 * MIN for n in range(5)]
        assert plan.cadence == 15 * MIN
        assert plan.horizon == 60 * MIN
        assert not plan.urgent

    def test_no_snapshot_uses_normal_cadence_and_unknown_tiers(
        self, planner: TimelinePlanner
    ) -> None:
        plan = planner.plan(NOW, None)
        assert plan.instants == [NOW + n * 15 * MIN for n in range(5)]
        assert {e.tier for e in plan.entries} == {FreshnessTier.UNKNOWN}

    def test_instants_strictly_increasing(self, planner: TimelinePlanner) -> None:
        instants = planner.plan(NOW, make_snapshot(urgent=True)).instants
        assert all(a < b for a, b in zip(instants, instants[1:]))

    def test_horizon_not_a_multiple_of_cadence(self) -> None:
        config = RefreshConfig(normal=CadencePolicy(every=20 * MIN, horizon=50 * MIN))
        plan = TimelinePlanner(config).plan(NOW, None)
        assert plan.instants == [NOW, NOW + 20 * MIN, NOW + 40 * MIN]


class TestEntryTiers:
    def test_tiers_age_along_the_timeline(self, planner: TimelinePlanner) -> None:
        plan = planner.plan(NOW, make_snapshot(0, urgent=True))
        tiers = [e.tier for e in plan.entries]
        assert tiers == [
            FreshnessTier.FRESH,       # +0
            FreshnessTier.FRESH,       # +5
            FreshnessTier.FRESH,       # +10
            FreshnessTier.STALE,       # +15
            FreshnessTier.VERY_STALE,  # +20
            FreshnessTier.VERY_STALE,  # +25
            FreshnessTier.VERY_STALE,  # +30
        ]

    def test_tier_at(self, planner: TimelinePlanner) -> None:
        plan = planner.plan(NOW, make_snapshot(0))
        assert plan.tier_at(NOW + 14 * MIN) is FreshnessTier.FRESH
        assert plan.tier_at(NOW + 16 * MIN) is FreshnessTier.STALE
        assert plan.tier_at(NOW + 31 * MIN) is FreshnessTier.VERY_STALE

    def test_current_entry(self, planner: TimelinePlanner) -> None:
        entry = planner.current_entry(NOW, make_snapshot(-12))
        assert entry.at == NOW
        assert entry.tier is FreshnessTier.STALE


class TestLease:
    """Plans are renewable leases, not one-shot schedules."""

    def test_expires_at_end(self, planner: TimelinePlanner) -> None:
        plan = planner.plan(NOW, None)
        assert plan.policy is ExpiryPolicy.AT_END
        assert plan.expires_at == NOW + 60 * MIN
        assert not plan.is_expired(NOW + 59 * MIN)
        assert plan.is_expired(NOW + 60 * MIN)

    def test_next_boundary(self, planner: TimelinePlanner) -> None:
        plan = planner.plan(NOW, None)
        assert plan.next_boundary(NOW) == NOW + 15 * MIN
        assert plan.next_boundary(NOW + 15 * MIN) == NOW + 30 * MIN
        assert plan.next_boundary(NOW + 60 * MIN) is None

    def test_refresh_instants_exclude_planning_instant(self, planner: TimelinePlanner) -> None:
        plan = planner.plan(NOW, make_snapshot(urgent=True))
        assert plan.refresh_instants[0] == NOW + 5 * MIN
        assert len(plan.refresh_instants) == 6
