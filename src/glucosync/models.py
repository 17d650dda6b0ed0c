"""Snapshot value object, producer-side reading model, and the wire codec.

A Snapshot is the one record that travels from the producing process to the
consumer.  Its wire form is a small JSON object with the same keys older
producers already write::

    {"glucose": "142", "trend": "↗", "delta": "+6", "iob": "1.35",
     "cob": "12", "glucoseDate": "2026-02-23T10:45:00Z",
     "lastLoopDate": "2026-02-23T10:46:12Z", "isUrgent": false}

``reading_time`` (``glucoseDate``) is the only field the engine ever compares.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from glucosync.exceptions import DecodeFailure

# Numeric dates on the wire count seconds from this instant (the Apple
# reference date) rather than the Unix epoch.
REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GlucoSyncBase(BaseModel):
    """Base model with shared config for all glucosync schemas."""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class Snapshot(GlucoSyncBase):
    """One immutable observed reading plus its derived display fields.

    Attributes:
        value:             Display value of the reading (e.g. ``"142"``).
        trend:             Trend arrow symbol (e.g. ``"→"``).
        delta:             Signed change since the previous reading (``"+6"``).
        insulin_on_board:  Optional IOB display string.
        carbs_on_board:    Optional COB display string.
        reading_time:      When the reading was taken.  Sole ordering key.
        control_loop_time: Last automated control-loop cycle, if known.
        urgent:            True when the value is outside the safe range.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )

    value: str = Field(alias="glucose")
    trend: str = Field(alias="trend")
    delta: str = Field(alias="delta")
    insulin_on_board: str | None = Field(default=None, alias="iob")
    carbs_on_board: str | None = Field(default=None, alias="cob")
    reading_time: datetime = Field(alias="glucoseDate")
    control_loop_time: datetime | None = Field(default=None, alias="lastLoopDate")
    urgent: bool = Field(default=False, alias="isUrgent")

    @field_validator("reading_time", "control_loop_time", mode="before")
    @classmethod
    def _reference_date_seconds(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return REFERENCE_DATE + timedelta(seconds=float(v))
        return v

    @field_validator("reading_time", "control_loop_time")
    @classmethod
    def _as_utc(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("urgent", mode="before")
    @classmethod
    def _missing_urgency(cls, v: Any) -> Any:
        # An explicit null from a partial encoder means "not urgent" too.
        return False if v is None else v

    # ------------------------------------------------------------------
    # Derived, read-only helpers
    # ------------------------------------------------------------------

    def is_newer_than(self, other: Snapshot | None) -> bool:
        """Return True if this snapshot should supersede ``other``."""
        return other is None or self.reading_time > other.reading_time

    def minutes_ago(self, now: datetime) -> int:
        """Whole minutes elapsed since the reading, never negative."""
        seconds = (now - self.reading_time).total_seconds()
        return max(int(seconds // 60), 0)

    def time_string(self, tz: tzinfo | None = None) -> str:
        """Reading time on a 12-hour clock without meridiem, e.g. ``10:45``."""
        local = self.reading_time.astimezone(tz) if tz else self.reading_time
        hour = local.hour % 12 or 12
        return f"{hour}:{local.minute:02d}"

    @classmethod
    def placeholder(cls, now: datetime | None = None) -> Snapshot:
        """Canned preview record shown before any real data exists."""
        at = now or utc_now()
        return cls(
            value="120",
            trend="→",
            delta="+2",
            insulin_on_board="1.5",
            carbs_on_board="20",
            reading_time=at,
            control_loop_time=at,
        )


# ---------------------------------------------------------------------------
# Producer input
# ---------------------------------------------------------------------------


class GlucoseReading(GlucoSyncBase):
    """A raw reading as observed on the producing side, before formatting."""

    glucose_mgdl: float = Field(gt=0, le=1000)
    trend: str = "→"
    delta_mgdl: float | None = None
    iob_units: float | None = None
    cob_grams: float | None = None
    reading_time: datetime
    loop_time: datetime | None = None


# ---------------------------------------------------------------------------
# Wire codec
# ---------------------------------------------------------------------------


def encode_snapshot(snapshot: Snapshot) -> bytes:
    """Serialize a Snapshot to its UTF-8 JSON wire form."""
    return snapshot.model_dump_json(by_alias=True).encode("utf-8")


def decode_snapshot(payload: bytes | str) -> Snapshot:
    """Parse a wire payload into a Snapshot.

    Args:
        payload: UTF-8 JSON bytes (or text) in the wire format.

    Returns:
        The decoded Snapshot.  A payload without ``isUrgent`` decodes as
        not urgent.

    Raises:
        DecodeFailure: If the payload is not JSON, not an object, or lacks
                       one of ``glucose``, ``trend``, ``delta``,
                       ``glucoseDate``.
    """
    try:
        return Snapshot.model_validate_json(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in e["loc"]) or "<root>" for e in exc.errors()})
        raise DecodeFailure(f"Malformed snapshot payload ({', '.join(fields)})") from exc
