"""
Timezone Conversion

The one place where timestamps are normalized into the controller's zone.
Schedule evaluation, the reconciler and the store all go through
``to_zoned``; nothing else in the codebase calls ``astimezone`` or attaches
tzinfo by hand.

Rules:
    - aware datetime      -> converted into the zone
    - naive datetime      -> taken as wall-clock time in the zone
    - int / float         -> UTC epoch seconds
    - ISO string          -> parsed; "Z" and explicit offsets honoured,
                             no offset means wall-clock time in the zone,
                             "YYYY-MM-DD HH:MM" (space separator) accepted
"""

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from common.exceptions import ConfigError, ValidationError

TimestampLike = datetime | str | int | float


def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name, e.g. "Asia/Bangkok" """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown timezone {name!r}: {e}")


def to_zoned(value: TimestampLike, tz: ZoneInfo) -> datetime:
    """
    Normalize a timestamp into an aware datetime in ``tz``.

    Args:
        value: datetime, ISO-8601 string, or UTC epoch seconds
        tz: Target zone

    Returns:
        Aware datetime whose tzinfo is ``tz``

    Raises:
        ValidationError: If a string cannot be parsed as a timestamp
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value.astimezone(tz)

    # bool is an int subclass; True is not a timestamp
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, timezone.utc).astimezone(tz)

    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        if len(text) > 10 and text[10] == " ":
            text = text[:10] + "T" + text[11:]
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}")
        return to_zoned(parsed, tz)

    raise ValidationError(f"Unsupported timestamp type: {type(value).__name__}")


def now_zoned(tz: ZoneInfo) -> datetime:
    """Current time in ``tz``"""
    return datetime.now(timezone.utc).astimezone(tz)


def parse_time_of_day(value: str | time) -> time:
    """
    Parse "HH:MM" or "HH:MM:SS" into a naive time.

    Raises:
        ValidationError: On malformed or out-of-range input
    """
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    if not isinstance(value, str):
        raise ValidationError(f"Time of day must be a string, got {type(value).__name__}")

    parts = value.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValidationError(f"Invalid time of day {value!r}, expected HH:MM")

    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ValidationError(f"Time of day out of range: {value!r}")
    return time(hour, minute, second)


def format_time_of_day(value: time) -> str:
    """Canonical HH:MM form used in stored schedules"""
    if value.second:
        return value.strftime("%H:%M:%S")
    return value.strftime("%H:%M")


def minutes_since_midnight(value: time | datetime) -> int:
    """Wall-clock minutes since local midnight (seconds are truncated)"""
    return value.hour * 60 + value.minute


def weekday_index(value: datetime) -> int:
    """Day of week with 0=Sunday .. 6=Saturday"""
    return value.isoweekday() % 7
