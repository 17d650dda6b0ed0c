"""Load, validate, and hot-reload the refresh engine configuration.

The config lives in ``refresh_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_refresh_config()`` to re-read from
disk after an edit — no restart required.

Usage::

    from glucosync.config_loader import get_refresh_config

    config = get_refresh_config()
    config.staleness.stale_after              # timedelta(minutes=10)
    config.cadence_for(urgent=True).every     # timedelta(minutes=5)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("glucosync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "refresh_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StalenessThresholds:
    """Age limits separating the freshness tiers."""

    stale_after: timedelta = timedelta(minutes=10)
    very_stale_after: timedelta = timedelta(minutes=15)


@dataclass(frozen=True)
class CadencePolicy:
    """Spacing and length of one refresh timeline."""

    every: timedelta
    horizon: timedelta


NORMAL_CADENCE = CadencePolicy(every=timedelta(minutes=15), horizon=timedelta(minutes=60))
URGENT_CADENCE = CadencePolicy(every=timedelta(minutes=5), horizon=timedelta(minutes=30))


@dataclass(frozen=True)
class WakeBudget:
    """Limits on background wake requests."""

    max_wakes_per_hour: int = 4
    backoff_base: timedelta = timedelta(minutes=15)
    backoff_max: timedelta = timedelta(minutes=120)

    @property
    def min_spacing(self) -> timedelta:
        """Shortest gap between two wakes the budget can sustain."""
        return timedelta(hours=1) / self.max_wakes_per_hour


@dataclass(frozen=True)
class SafeRange:
    """Glucose range (mg/dL) outside of which a reading is urgent."""

    low: float = 70.0
    high: float = 180.0

    def contains(self, mgdl: float) -> bool:
        return self.low <= mgdl <= self.high


@dataclass
class RefreshConfig:
    """Complete, validated refresh engine configuration.

    This is the single in-memory representation of refresh_config.yaml.
    The classifier, planner, scheduler and snapshot builder all read from it.

    Attributes:
        version:     Config schema version string.
        staleness:   Freshness tier thresholds.
        normal:      Cadence for in-range readings (and for no reading).
        urgent:      Cadence for out-of-range readings.
        wake_budget: Background wake rate cap and backoff.
        safe_range:  Glucose range used to flag urgent readings.
        inbox_size:  Maximum number of payloads waiting to be merged.
    """

    version: str = "1.0"
    staleness: StalenessThresholds = field(default_factory=StalenessThresholds)
    normal: CadencePolicy = NORMAL_CADENCE
    urgent: CadencePolicy = URGENT_CADENCE
    wake_budget: WakeBudget = field(default_factory=WakeBudget)
    safe_range: SafeRange = field(default_factory=SafeRange)
    inbox_size: int = 64
    _raw: dict = field(default_factory=dict, repr=False)

    def cadence_for(self, urgent: bool) -> CadencePolicy:
        """Return the cadence policy for an urgent or non-urgent reading."""
        return self.urgent if urgent else self.normal


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when refresh_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Refresh config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return raw


def _validate_and_build(raw: dict) -> RefreshConfig:
    """Validate the raw YAML dict and construct a RefreshConfig.

    Every missing key falls back to the built-in default.  All problems are
    collected and reported together.

    Raises:
        ConfigValidationError: If any value is non-numeric or out of range.
    """
    errors: list[str] = []

    def _number(d: Any, key: str, section: str, default: float) -> float:
        if not isinstance(d, dict):
            errors.append(f"'{section}' must be a mapping")
            return default
        val = d.get(key, default)
        try:
            num = float(val)
        except (TypeError, ValueError):
            errors.append(f"{section}.{key} must be a number, got {val!r}")
            return default
        if num <= 0:
            errors.append(f"{section}.{key} must be positive, got {num}")
        return num

    def _minutes(d: Any, key: str, section: str, default: float) -> timedelta:
        return timedelta(minutes=_number(d, key, section, default))

    version = str(raw.get("version", "1.0"))

    # ── Staleness ──
    st_raw = raw.get("staleness") or {}
    staleness = StalenessThresholds(
        stale_after=_minutes(st_raw, "stale_after", "staleness", 10),
        very_stale_after=_minutes(st_raw, "very_stale_after", "staleness", 15),
    )
    if staleness.stale_after >= staleness.very_stale_after:
        errors.append("staleness.stale_after must be less than staleness.very_stale_after")

    # ── Cadence ──
    cad_raw = raw.get("cadence") or {}
    policies: dict[str, CadencePolicy] = {}
    for name, default in (("normal", NORMAL_CADENCE), ("urgent", URGENT_CADENCE)):
        section = f"cadence.{name}"
        p_raw = (cad_raw.get(name) or {}) if isinstance(cad_raw, dict) else {}
        policy = CadencePolicy(
            every=_minutes(p_raw, "every", section, default.every.total_seconds() / 60),
            horizon=_minutes(p_raw, "horizon", section, default.horizon.total_seconds() / 60),
        )
        if policy.every > policy.horizon:
            errors.append(f"{section}.every must not exceed {section}.horizon")
        policies[name] = policy

    # ── Wake budget ──
    wb_raw = raw.get("wake_budget") or {}
    wake_budget = WakeBudget(
        max_wakes_per_hour=int(_number(wb_raw, "max_wakes_per_hour", "wake_budget", 4)),
        backoff_base=_minutes(wb_raw, "backoff_base", "wake_budget", 15),
        backoff_max=_minutes(wb_raw, "backoff_max", "wake_budget", 120),
    )
    if wake_budget.max_wakes_per_hour < 1:
        errors.append("wake_budget.max_wakes_per_hour must be at least 1")
    if wake_budget.backoff_base > wake_budget.backoff_max:
        errors.append("wake_budget.backoff_base must not exceed wake_budget.backoff_max")

    # ── Safe range ──
    sr_raw = raw.get("safe_range") or {}
    safe_range = SafeRange(
        low=_number(sr_raw, "low", "safe_range", 70),
        high=_number(sr_raw, "high", "safe_range", 180),
    )
    if safe_range.low >= safe_range.high:
        errors.append("safe_range.low must be less than safe_range.high")

    # ── Inbox ──
    ib_raw = raw.get("inbox") or {}
    inbox_size = int(_number(ib_raw, "max_size", "inbox", 64))
    if inbox_size < 1:
        errors.append("inbox.max_size must be at least 1")

    if (
        wake_budget.max_wakes_per_hour >= 1
        and wake_budget.min_spacing > policies["normal"].horizon
    ):
        logger.warning(
            "Wake budget allows one wake every %s, longer than the normal horizon %s. "
            "Timelines will expire before the next wake.",
            wake_budget.min_spacing,
            policies["normal"].horizon,
        )

    if errors:
        raise ConfigValidationError(
            f"refresh_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return RefreshConfig(
        version=version,
        staleness=staleness,
        normal=policies["normal"],
        urgent=policies["urgent"],
        wake_budget=wake_budget,
        safe_range=safe_range,
        inbox_size=inbox_size,
        _raw=raw,
    )


def load_refresh_config(path: Path | None = None) -> RefreshConfig:
    """Load and validate the refresh config from disk.

    Args:
        path: Override path to YAML. Uses the bundled refresh_config.yaml by default.

    Returns:
        Validated RefreshConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded refresh config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: RefreshConfig | None = None
_config_lock = threading.Lock()


def get_refresh_config() -> RefreshConfig:
    """Return the global RefreshConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_refresh_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_refresh_config()
    return _config


def reload_refresh_config(path: Path | None = None) -> RefreshConfig:
    """Reload the refresh config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_refresh_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded refresh config: %s → %s", old_version, new_config.version)
    return new_config
