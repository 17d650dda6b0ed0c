"""Tests for the freshness classifier."""

from __future__ import annotations

from datetime import timedelta

import pytest

from glucosync.config_loader import StalenessThresholds
from glucosync.staleness import (
    FreshnessTier,
    classify,
    classify_snapshot,
    freshness_fraction,
)
from glucosync.tests.conftest import NOW, make_snapshot

MIN = timedelta(minutes=1)
SEC = timedelta(seconds=1)


class TestClassifyBoundaries:
    """Tier boundaries are inclusive on the fresher side."""

    @pytest.mark.parametrize(
        ("age", "expected"),
        [
            (timedelta(0), FreshnessTier.FRESH),
            (10 * MIN, FreshnessTier.FRESH),
            (10 * MIN + SEC, FreshnessTier.STALE),
            (15 * MIN, FreshnessTier.STALE),
            (15 * MIN + SEC, FreshnessTier.VERY_STALE),
            (timedelta(hours=6), FreshnessTier.VERY_STALE),
        ],
    )
    def test_default_thresholds(self, age: timedelta, expected: FreshnessTier) -> None:
        assert classify(NOW, NOW - age) is expected

    def test_no_reading_is_unknown(self) -> None:
        assert classify(NOW, None) is FreshnessTier.UNKNOWN

    def test_future_reading_is_fresh(self) -> None:
        """Clock skew between devices must not read as stale."""
        assert classify(NOW, NOW + 3 * MIN) is FreshnessTier.FRESH

    def test_overridden_thresholds(self) -> None:
        thresholds = StalenessThresholds(stale_after=5 * MIN, very_stale_after=8 * MIN)
        assert classify(NOW, NOW - 6 * MIN, thresholds) is FreshnessTier.STALE
        assert classify(NOW, NOW - 9 * MIN, thresholds) is FreshnessTier.VERY_STALE

    def test_deterministic(self) -> None:
        results = {classify(NOW, NOW - 12 * MIN) for _ in range(100)}
        assert results == {FreshnessTier.STALE}


class TestClassifySnapshot:
    def test_uses_reading_time(self) -> None:
        assert classify_snapshot(NOW, make_snapshot(-11)) is FreshnessTier.STALE

    def test_none_is_unknown(self) -> None:
        assert classify_snapshot(NOW, None) is FreshnessTier.UNKNOWN


class TestFreshnessFraction:
    def test_new_reading_is_full(self) -> None:
        assert freshness_fraction(NOW, make_snapshot(0)) == pytest.approx(1.0)

    def test_drains_linearly(self) -> None:
        assert freshness_fraction(NOW, make_snapshot(-6)) == pytest.approx(1 - 6 / 15)

    def test_empty_after_very_stale(self) -> None:
        assert freshness_fraction(NOW, make_snapshot(-40)) == 0.0

    def test_no_snapshot(self) -> None:
        assert freshness_fraction(NOW, None) == 0.0
