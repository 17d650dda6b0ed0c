"""Freshness classification of a reading by its age."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from glucosync.config_loader import StalenessThresholds
from glucosync.models import Snapshot

DEFAULT_THRESHOLDS = StalenessThresholds()


class FreshnessTier(str, Enum):
    """Coarse age band of the latest reading.

    Thresholds (defaults, see refresh_config.yaml):
        FRESH       age <= 10 min
        STALE       10 min < age <= 15 min
        VERY_STALE  age > 15 min
        UNKNOWN     no reading has ever been merged
    """

    FRESH = "fresh"
    STALE = "stale"
    VERY_STALE = "very_stale"
    UNKNOWN = "unknown"

    @classmethod
    def from_age(
        cls, age: timedelta, thresholds: StalenessThresholds = DEFAULT_THRESHOLDS
    ) -> FreshnessTier:
        if age <= thresholds.stale_after:
            return cls.FRESH
        if age <= thresholds.very_stale_after:
            return cls.STALE
        return cls.VERY_STALE


def classify(
    now: datetime,
    reading_time: datetime | None,
    thresholds: StalenessThresholds | None = None,
) -> FreshnessTier:
    """Classify a reading taken at ``reading_time`` as seen at ``now``.

    A reading time in the future (clock skew between devices) is fresh.
    """
    if reading_time is None:
        return FreshnessTier.UNKNOWN
    return FreshnessTier.from_age(now - reading_time, thresholds or DEFAULT_THRESHOLDS)


def classify_snapshot(
    now: datetime,
    snapshot: Snapshot | None,
    thresholds: StalenessThresholds | None = None,
) -> FreshnessTier:
    return classify(now, snapshot.reading_time if snapshot else None, thresholds)


def freshness_fraction(
    now: datetime,
    snapshot: Snapshot | None,
    thresholds: StalenessThresholds | None = None,
) -> float:
    """Remaining freshness in [0.0, 1.0]; drains to 0 at the very-stale limit.

    Uses whole elapsed minutes so the value only moves once a minute.
    """
    if snapshot is None:
        return 0.0
    limit = (thresholds or DEFAULT_THRESHOLDS).very_stale_after.total_seconds() / 60
    used = min(snapshot.minutes_ago(now) / limit, 1.0)
    return 1.0 - used
