"""Schedule window evaluation"""

from datetime import datetime, timezone

import pytest

from common.relay import RelayRef
from services.schedule.evaluator import ScheduleEvaluator
from services.schedule.models import new_entry

RELAY = RelayRef(1, 1)


@pytest.fixture
def evaluator(tz):
    return ScheduleEvaluator(tz)


def entry(tz, start, end, recurrence="once", days=None):
    return new_entry(RELAY, start, end, recurrence, days, tz)


class TestDaily:
    def test_overnight_window(self, evaluator, tz):
        e = entry(tz, "22:00", "06:00", "daily")
        assert evaluator.is_active(e, datetime(2024, 1, 1, 23, 0))
        assert evaluator.is_active(e, datetime(2024, 1, 2, 2, 0))
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 12, 0))

    def test_overnight_boundaries_inclusive(self, evaluator, tz):
        e = entry(tz, "22:00", "06:00", "daily")
        assert evaluator.is_active(e, datetime(2024, 1, 1, 22, 0))
        assert evaluator.is_active(e, datetime(2024, 1, 1, 6, 0))
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 6, 1))
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 21, 59))

    def test_same_day_window(self, evaluator, tz):
        e = entry(tz, "09:00", "17:00", "daily")
        assert evaluator.is_active(e, datetime(2024, 1, 1, 9, 0))
        assert evaluator.is_active(e, datetime(2024, 1, 1, 17, 0, 59))
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 17, 1))
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 8, 59))

    def test_now_is_converted_to_zone(self, evaluator, tz):
        e = entry(tz, "09:00", "10:00", "daily")
        # 02:30 UTC is 09:30 in Bangkok
        assert evaluator.is_active(e, datetime(2024, 1, 1, 2, 30, tzinfo=timezone.utc))
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc))


class TestOnce:
    def test_inclusive_boundaries(self, evaluator, tz):
        e = entry(tz, "2024-01-01T09:00", "2024-01-01T17:00")
        assert evaluator.is_active(e, datetime(2024, 1, 1, 9, 0))
        assert evaluator.is_active(e, datetime(2024, 1, 1, 17, 0))
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 8, 59, 59))
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 17, 0, 1))

    def test_other_day_inactive(self, evaluator, tz):
        e = entry(tz, "2024-01-01T09:00", "2024-01-01T17:00")
        assert not evaluator.is_active(e, datetime(2024, 1, 2, 12, 0))

    def test_utc_input_compares_as_instant(self, evaluator, tz):
        e = entry(tz, "2024-01-01T02:00:00Z", "2024-01-01T03:00:00Z")
        assert e.start_time == "2024-01-01T09:00:00+07:00"
        assert evaluator.is_active(e, datetime(2024, 1, 1, 9, 30))
        assert evaluator.is_active(e, 1704077400)  # 2024-01-01T02:50Z


class TestWeekly:
    def test_day_filter(self, evaluator, tz):
        e = entry(tz, "09:00", "10:00", "weekly", [1])
        # 2024-01-01 is a Monday
        assert evaluator.is_active(e, datetime(2024, 1, 1, 9, 30))
        assert not evaluator.is_active(e, datetime(2024, 1, 2, 9, 30))

    def test_multiple_days(self, evaluator, tz):
        e = entry(tz, "09:00", "10:00", "weekly", [0, 6])
        assert evaluator.is_active(e, datetime(2024, 1, 6, 9, 30))
        assert evaluator.is_active(e, datetime(2024, 1, 7, 9, 30))
        assert not evaluator.is_active(e, datetime(2024, 1, 3, 9, 30))

    def test_overnight_uses_day_of_now(self, evaluator, tz):
        e = entry(tz, "22:00", "02:00", "weekly", [1])
        assert evaluator.is_active(e, datetime(2024, 1, 1, 23, 0))
        # Tuesday 01:00 is the tail of Monday night, but Tuesday is not listed
        assert not evaluator.is_active(e, datetime(2024, 1, 2, 1, 0))
        assert evaluator.is_active(e, datetime(2024, 1, 1, 1, 0))


class TestEnabledAndCombination:
    def test_disabled_entry_never_active(self, evaluator, tz):
        e = entry(tz, "00:00", "23:59", "daily")
        e.enabled = False
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 12, 0))

    def test_active_flag_is_not_consulted(self, evaluator, tz):
        e = entry(tz, "09:00", "10:00", "daily")
        e.active = True
        assert not evaluator.is_active(e, datetime(2024, 1, 1, 12, 0))

    def test_desired_state_is_or(self, evaluator, tz):
        morning = entry(tz, "06:00", "08:00", "daily")
        evening = entry(tz, "18:00", "20:00", "daily")
        assert evaluator.desired_state([morning, evening], datetime(2024, 1, 1, 7, 0))
        assert evaluator.desired_state([morning, evening], datetime(2024, 1, 1, 19, 0))
        assert not evaluator.desired_state([morning, evening], datetime(2024, 1, 1, 12, 0))

    def test_no_entries_means_off(self, evaluator):
        assert not evaluator.desired_state([], datetime(2024, 1, 1, 12, 0))
