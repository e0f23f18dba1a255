"""
Schedule Evaluator

Pure decision logic: is an entry's window open at a given instant?
No I/O and no clock reads; callers pass ``now``.
"""

from zoneinfo import ZoneInfo

from common.timezone import (
    TimestampLike,
    minutes_since_midnight,
    parse_time_of_day,
    to_zoned,
    weekday_index,
)
from services.schedule.models import Recurrence, ScheduleEntry


class ScheduleEvaluator:
    """Evaluates schedule windows in the controller's timezone"""

    def __init__(self, tz: ZoneInfo):
        self.tz = tz

    def is_active(self, entry: ScheduleEntry, now: TimestampLike) -> bool:
        """
        True when ``now`` falls inside the entry's window.

        Windows are inclusive at both ends. A daily/weekly window whose end
        is earlier than its start runs overnight (22:00-06:00). For weekly
        entries the weekday check uses the day ``now`` falls on, so the
        after-midnight part of an overnight window belongs to the next day.
        """
        if not entry.enabled:
            return False

        local = to_zoned(now, self.tz)

        if entry.recurrence == Recurrence.WEEKLY and weekday_index(local) not in entry.days_of_week:
            return False

        if entry.recurrence == Recurrence.ONCE:
            start = to_zoned(entry.start_time, self.tz)
            end = to_zoned(entry.end_time, self.tz)
            return start <= local <= end

        start_min = minutes_since_midnight(parse_time_of_day(entry.start_time))
        end_min = minutes_since_midnight(parse_time_of_day(entry.end_time))
        now_min = minutes_since_midnight(local)

        if end_min >= start_min:
            return start_min <= now_min <= end_min
        return now_min >= start_min or now_min <= end_min

    def desired_state(self, entries: list[ScheduleEntry], now: TimestampLike) -> bool:
        """OR across every entry for one relay; no entries means OFF"""
        local = to_zoned(now, self.tz)
        return any(self.is_active(entry, local) for entry in entries)

