"""Timestamp normalization into the controller's zone"""

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from common.exceptions import ConfigError, ValidationError
from common.timezone import (
    format_time_of_day,
    get_zone,
    minutes_since_midnight,
    parse_time_of_day,
    to_zoned,
    weekday_index,
)

NEW_YORK = ZoneInfo("America/New_York")


class TestToZoned:
    def test_naive_datetime_is_wall_clock_in_zone(self, tz):
        result = to_zoned(datetime(2024, 1, 1, 9, 0), tz)
        assert result.tzinfo is tz
        assert (result.hour, result.minute) == (9, 0)
        assert result.utcoffset() == timedelta(hours=7)

    def test_aware_datetime_is_converted(self, tz):
        result = to_zoned(datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc), tz)
        assert (result.day, result.hour) == (1, 9)

    def test_epoch_seconds_are_utc(self, tz):
        result = to_zoned(0, tz)
        assert result == datetime(1970, 1, 1, 7, 0, tzinfo=tz)
        assert to_zoned(1.5, tz).microsecond == 500000

    def test_z_suffix_is_utc(self, tz):
        result = to_zoned("2024-01-01T02:00:00Z", tz)
        assert (result.hour, result.minute) == (9, 0)

    def test_explicit_offset_is_honoured(self, tz):
        result = to_zoned("2024-01-01T09:00:00+02:00", tz)
        assert result.hour == 14

    def test_naive_string_is_wall_clock_in_zone(self, tz):
        result = to_zoned("2024-01-01T09:00", tz)
        assert (result.hour, result.minute) == (9, 0)
        assert result.utcoffset() == timedelta(hours=7)

    def test_space_separator_is_accepted(self, tz):
        assert to_zoned("2024-01-01 09:00", tz) == to_zoned("2024-01-01T09:00", tz)

    def test_all_forms_agree_on_the_same_instant(self, tz):
        instant = datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc)
        forms = [
            instant,
            instant.timestamp(),
            "2024-01-01T02:00:00Z",
            "2024-01-01T09:00:00+07:00",
            "2024-01-01 09:00",
            datetime(2024, 1, 1, 9, 0),
        ]
        assert len({to_zoned(f, tz) for f in forms}) == 1

    def test_bool_is_rejected(self, tz):
        with pytest.raises(ValidationError):
            to_zoned(True, tz)

    def test_garbage_string_is_rejected(self, tz):
        with pytest.raises(ValidationError):
            to_zoned("next tuesday", tz)

    def test_unsupported_type_is_rejected(self, tz):
        with pytest.raises(ValidationError):
            to_zoned([2024, 1, 1], tz)


class TestDaylightSaving:
    def test_offsets_follow_the_season(self):
        winter = to_zoned(datetime(2024, 1, 15, 12, 0), NEW_YORK)
        summer = to_zoned(datetime(2024, 7, 1, 12, 0), NEW_YORK)
        assert winter.utcoffset() == timedelta(hours=-5)
        assert summer.utcoffset() == timedelta(hours=-4)

    def test_instant_after_spring_forward(self):
        # Clocks jump 02:00 EST -> 03:00 EDT at 07:00 UTC
        result = to_zoned("2024-03-10T07:30:00Z", NEW_YORK)
        assert (result.hour, result.minute) == (3, 30)
        assert result.utcoffset() == timedelta(hours=-4)

    def test_instant_before_spring_forward(self):
        result = to_zoned("2024-03-10T06:30:00Z", NEW_YORK)
        assert (result.hour, result.minute) == (1, 30)

    def test_bangkok_has_no_dst(self, tz):
        assert to_zoned(datetime(2024, 1, 1), tz).utcoffset() == to_zoned(datetime(2024, 7, 1), tz).utcoffset()


class TestTimeOfDay:
    @pytest.mark.parametrize("text,expected", [
        ("00:00", time(0, 0)),
        ("09:05", time(9, 5)),
        ("23:59", time(23, 59)),
        ("7:30", time(7, 30)),
        ("06:00:30", time(6, 0, 30)),
    ])
    def test_valid(self, text, expected):
        assert parse_time_of_day(text) == expected

    @pytest.mark.parametrize("text", ["24:00", "12:60", "9", "ab:cd", "", "12:00:00:00", "-1:00"])
    def test_invalid(self, text):
        with pytest.raises(ValidationError):
            parse_time_of_day(text)

    def test_non_string_rejected(self):
        with pytest.raises(ValidationError):
            parse_time_of_day(930)

    def test_format_is_canonical(self):
        assert format_time_of_day(parse_time_of_day("7:30")) == "07:30"
        assert format_time_of_day(time(6, 0, 30)) == "06:00:30"

    def test_minutes_since_midnight(self):
        assert minutes_since_midnight(time(0, 0)) == 0
        assert minutes_since_midnight(time(22, 15, 59)) == 22 * 60 + 15
        assert minutes_since_midnight(datetime(2024, 1, 1, 1, 30)) == 90


class TestWeekdayAndZone:
    def test_sunday_is_zero(self):
        assert weekday_index(datetime(2024, 1, 7)) == 0
        assert weekday_index(datetime(2024, 1, 1)) == 1
        assert weekday_index(datetime(2024, 1, 6)) == 6

    def test_weekday_uses_zone_local_date(self, tz):
        # Sunday 20:00 UTC is already Monday in Bangkok
        local = to_zoned("2024-01-07T20:00:00Z", tz)
        assert weekday_index(local) == 1

    def test_get_zone(self):
        assert get_zone("Asia/Bangkok") == ZoneInfo("Asia/Bangkok")

    def test_unknown_zone(self):
        with pytest.raises(ConfigError):
            get_zone("Mars/Olympus_Mons")
