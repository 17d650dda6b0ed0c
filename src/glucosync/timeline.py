"""Adaptive refresh timeline.

A plan is a short lease of future instants at which the displayed reading
must be re-classified.  Urgent (out-of-range) readings get a dense, short
timeline; everything else a sparse, longer one:

    urgent      every 5 min for 30 min   → 7 entries
    otherwise   every 15 min for 60 min  → 5 entries

Plans always expire ``AT_END``: when the last entry is reached the consumer
plans again instead of letting the display freeze on the final tier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from glucosync.config_loader import CadencePolicy, RefreshConfig, get_refresh_config
from glucosync.models import Snapshot
from glucosync.staleness import FreshnessTier, classify

logger = logging.getLogger("glucosync.timeline")


class ExpiryPolicy(str, Enum):
    """What happens once a plan's last entry is reached."""

    AT_END = "at_end"      # re-plan immediately
    EXTERNAL = "external"  # wait for something else to trigger a re-plan


@dataclass(frozen=True)
class TimelineEntry:
    at: datetime
    tier: FreshnessTier


@dataclass(frozen=True)
class RefreshPlan:
    """Ordered refresh instants plus the lease they were computed under.

    Attributes:
        created_at: The ``now`` the plan was computed for.  First entry.
        entries:    Strictly increasing entries from ``created_at`` to
                    ``created_at + horizon`` inclusive.
        cadence:    Spacing between entries.
        horizon:    Length of the lease.
        urgent:     Whether the urgent cadence was used.
        policy:     Expiry policy.
    """

    created_at: datetime
    entries: tuple[TimelineEntry, ...]
    cadence: timedelta
    horizon: timedelta
    urgent: bool = False
    policy: ExpiryPolicy = ExpiryPolicy.AT_END
    snapshot: Snapshot | None = field(default=None, repr=False, compare=False)

    @property
    def instants(self) -> list[datetime]:
        return [e.at for e in self.entries]

    @property
    def refresh_instants(self) -> list[datetime]:
        """Entry instants strictly after the planning instant."""
        return [e.at for e in self.entries if e.at > self.created_at]

    @property
    def expires_at(self) -> datetime:
        return self.entries[-1].at

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def next_boundary(self, after: datetime) -> datetime | None:
        """First entry instant strictly after ``after``, or None if exhausted."""
        for entry in self.entries:
            if entry.at > after:
                return entry.at
        return None

    def tier_at(self, when: datetime) -> FreshnessTier:
        """Tier of the latest entry at or before ``when``."""
        tier = self.entries[0].tier
        for entry in self.entries:
            if entry.at > when:
                break
            tier = entry.tier
        return tier


class TimelinePlanner:
    """Compute refresh plans from the latest snapshot.

    Usage::

        planner = TimelinePlanner()
        plan = planner.plan(now, store_snapshot)
        scheduler.schedule_next(plan.next_boundary(now))
    """

    def __init__(self, config: RefreshConfig | None = None) -> None:
        self._config = config or get_refresh_config()

    def cadence_for(self, snapshot: Snapshot | None) -> CadencePolicy:
        return self._config.cadence_for(bool(snapshot and snapshot.urgent))

    def plan(self, now: datetime, snapshot: Snapshot | None) -> RefreshPlan:
        """Build the refresh plan for ``snapshot`` starting at ``now``.

        Args:
            now:      Planning instant; becomes the first entry.
            snapshot: Latest merged snapshot, or None if nothing was merged.

        Returns:
            A RefreshPlan whose entries step by the cadence up to the horizon.
        """
        policy = self.cadence_for(snapshot)
        reading_time = snapshot.reading_time if snapshot else None
        thresholds = self._config.staleness

        entries: list[TimelineEntry] = []
        offset = timedelta(0)
        while offset <= policy.horizon:
            at = now + offset
            entries.append(TimelineEntry(at=at, tier=classify(at, reading_time, thresholds)))
            offset += policy.every

        plan = RefreshPlan(
            created_at=now,
            entries=tuple(entries),
            cadence=policy.every,
            horizon=policy.horizon,
            urgent=bool(snapshot and snapshot.urgent),
            snapshot=snapshot,
        )
        logger.debug(
            "Planned %d entries every %s until %s (urgent=%s)",
            len(entries),
            policy.every,
            plan.expires_at,
            plan.urgent,
        )
        return plan

    def current_entry(self, now: datetime, snapshot: Snapshot | None) -> TimelineEntry:
        """Single entry describing the display right now."""
        reading_time = snapshot.reading_time if snapshot else None
        return TimelineEntry(at=now, tier=classify(now, reading_time, self._config.staleness))
