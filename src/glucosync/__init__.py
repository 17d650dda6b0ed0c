"""glucosync — staleness-aware snapshot sync and adaptive refresh engine.

Moves the latest glucose reading from a producing process to a consuming
one over redundant, unordered channels, keeps the consumer's copy monotonic,
and spends a rate-limited background wake budget to keep its freshness tier
accurate.

Core modules:
    models        — Snapshot value object and wire codec
    staleness     — Freshness classifier
    transport     — Producer-side dispatcher, channels, consumer inbox
    merger        — Monotonic merge into the shared store
    timeline      — Urgency-adaptive refresh plans
    scheduler     — Wake budget, backoff and the refresh cycle
    store         — Shared store implementations
    engine        — Producer / consumer wiring
    config_loader — Load/validate/hot-reload refresh_config.yaml
"""

from glucosync.config_loader import RefreshConfig, get_refresh_config
from glucosync.merger import MergeOutcome, UpdateMerger, merge
from glucosync.models import Snapshot, decode_snapshot, encode_snapshot
from glucosync.scheduler import RefreshScheduler, WakeResult
from glucosync.staleness import FreshnessTier, classify
from glucosync.timeline import RefreshPlan, TimelinePlanner
from glucosync.transport import ChannelReachability, DispatchOutcome, TransportDispatcher

__all__ = [
    "Snapshot",
    "encode_snapshot",
    "decode_snapshot",
    "FreshnessTier",
    "classify",
    "TransportDispatcher",
    "ChannelReachability",
    "DispatchOutcome",
    "MergeOutcome",
    "UpdateMerger",
    "merge",
    "RefreshPlan",
    "TimelinePlanner",
    "RefreshScheduler",
    "WakeResult",
    "RefreshConfig",
    "get_refresh_config",
]
