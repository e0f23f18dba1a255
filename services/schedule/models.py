"""
Schedule Models

ScheduleEntry and the window normalization every entry goes through before
it is stored:

    once           -> start/end are absolute instants, kept as ISO strings
                      carrying the controller zone's offset
    daily, weekly  -> start/end are wall-clock times of day, kept as HH:MM
    weekly         -> days_of_week required, 0=Sunday .. 6=Saturday
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from common.exceptions import ValidationError
from common.relay import RelayRef
from common.timezone import format_time_of_day, now_zoned, parse_time_of_day, to_zoned


class Recurrence(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"


# Fields a client may change on an existing entry
MUTABLE_FIELDS = frozenset(("start_time", "end_time", "recurrence", "days_of_week", "enabled"))


@dataclass
class ScheduleEntry:
    """One time window driving one relay"""
    relay: RelayRef
    start_time: str
    end_time: str
    recurrence: Recurrence = Recurrence.ONCE
    days_of_week: list[int] = field(default_factory=list)
    enabled: bool = True
    active: bool = False  # last evaluated state, informational only
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Persisted / API representation"""
        return {
            "id": self.id,
            "slave_id": self.relay.slave_id,
            "relay": self.relay.relay,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "recurrence": self.recurrence.value,
            "days_of_week": list(self.days_of_week),
            "enabled": self.enabled,
            "active": self.active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], tz: ZoneInfo) -> "ScheduleEntry":
        """
        Rebuild an entry from its stored form.

        Also reads documents written with camelCase keys (slaveId,
        relayNumber, startTime, ...). In those files ``active`` was the
        on/off switch, so it becomes ``enabled``.
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Schedule entry must be an object, got {type(data).__name__}")

        legacy = "relayNumber" in data or "slaveId" in data
        relay = RelayRef.parse(
            _pick(data, "slave_id", "slaveId"),
            _pick(data, "relay", "relayNumber"),
        )
        recurrence = parse_recurrence(data.get("recurrence", Recurrence.ONCE.value))
        start, end, days = normalize_window(
            recurrence,
            _pick(data, "start_time", "startTime"),
            _pick(data, "end_time", "endTime"),
            _pick(data, "days_of_week", "daysOfWeek"),
            tz,
        )

        if legacy and "enabled" not in data:
            enabled = bool(data.get("active", True))
            active = False
        else:
            enabled = bool(data.get("enabled", True))
            active = bool(data.get("active", False))

        created_at = _pick(data, "created_at", "createdAt") or now_zoned(tz).isoformat()
        entry_id = data.get("id") or uuid.uuid4().hex
        return cls(
            relay=relay,
            start_time=start,
            end_time=end,
            recurrence=recurrence,
            days_of_week=days,
            enabled=enabled,
            active=active,
            id=str(entry_id),
            created_at=str(created_at),
            updated_at=str(data.get("updated_at") or created_at),
        )


def _pick(data: dict, key: str, legacy_key: str) -> Any:
    return data[key] if key in data else data.get(legacy_key)


def parse_recurrence(value: Any) -> Recurrence:
    if isinstance(value, Recurrence):
        return value
    try:
        return Recurrence(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid recurrence {value!r}, expected once, daily or weekly",
            field="recurrence",
        )


def parse_days_of_week(value: Any) -> list[int]:
    """Validate a weekday list; duplicates are dropped, order is sorted"""
    if not isinstance(value, (list, tuple, set)) or not value:
        raise ValidationError(
            "Days of week must be specified for weekly recurrence",
            field="days_of_week",
        )
    days = set()
    for day in value:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise ValidationError(
                f"Invalid day of week {day!r}, expected 0 (Sunday) to 6 (Saturday)",
                field="days_of_week",
            )
        days.add(day)
    return sorted(days)


def normalize_window(
    recurrence: Recurrence,
    start: Any,
    end: Any,
    days_of_week: Any,
    tz: ZoneInfo,
) -> tuple[str, str, list[int]]:
    """
    Validate a schedule window and return its canonical stored form.

    Returns:
        (start_time, end_time, days_of_week)

    Raises:
        ValidationError: Missing or malformed times, end before start for a
            one-off window, empty or out-of-range weekly days
    """
    if start is None or start == "":
        raise ValidationError("Start time is required", field="start_time")
    if end is None or end == "":
        raise ValidationError("End time is required", field="end_time")

    if recurrence == Recurrence.ONCE:
        start_dt = to_zoned(start, tz)
        end_dt = to_zoned(end, tz)
        if end_dt < start_dt:
            raise ValidationError("End time must not be before start time", field="end_time")
        return start_dt.isoformat(), end_dt.isoformat(), []

    # An overnight window (end earlier than start) is legal for daily/weekly
    start_str = format_time_of_day(parse_time_of_day(start))
    end_str = format_time_of_day(parse_time_of_day(end))

    if recurrence == Recurrence.WEEKLY:
        return start_str, end_str, parse_days_of_week(days_of_week)
    return start_str, end_str, []


def new_entry(
    relay: RelayRef,
    start: Any,
    end: Any,
    recurrence: Any,
    days_of_week: Any,
    tz: ZoneInfo,
    now: datetime | None = None,
) -> ScheduleEntry:
    """Validate input and build a fresh entry with a new id"""
    rec = parse_recurrence(recurrence or Recurrence.ONCE)
    start_str, end_str, days = normalize_window(rec, start, end, days_of_week, tz)
    stamp = to_zoned(now, tz).isoformat() if now else now_zoned(tz).isoformat()
    return ScheduleEntry(
        relay=relay,
        start_time=start_str,
        end_time=end_str,
        recurrence=rec,
        days_of_week=days,
        created_at=stamp,
        updated_at=stamp,
    )
