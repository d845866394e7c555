"""Unit tests for occurrence expansion."""

from datetime import date, datetime

from conftest import UTC, ny_nine

from marketplace.domain.scheduling.expander import expand, next_after, occurrences_on

WEEKLY_COUNT_4 = (
    "DTSTART;TZID=America/New_York:20250106T090000\n"
    "RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO;COUNT=4"
)
WEEKLY_OPEN = "DTSTART;TZID=America/New_York:20250106T090000\nRRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO"


class TestExpand:
    """Rule + exceptions -> UTC instants."""

    def test_weekly_count(self):
        assert expand(WEEKLY_COUNT_4) == [ny_nine(6), ny_nine(13), ny_nine(20), ny_nine(27)]

    def test_exception_does_not_consume_count(self):
        result = expand(WEEKLY_COUNT_4, exceptions=[date(2025, 1, 13)])

        assert result == [ny_nine(6), ny_nine(20), ny_nine(27), ny_nine(3, 2)]

    def test_results_are_utc(self):
        first = expand(WEEKLY_COUNT_4)[0]

        assert first == datetime(2025, 1, 6, 14, 0, tzinfo=UTC)
        assert first.utcoffset().total_seconds() == 0

    def test_wall_clock_time_survives_dst_change(self):
        result = expand(WEEKLY_OPEN, start=ny_nine(3, 3), count=2)

        assert result == [
            datetime(2025, 3, 3, 14, 0, tzinfo=UTC),
            datetime(2025, 3, 10, 13, 0, tzinfo=UTC),
        ]

    def test_window_bounds_are_inclusive(self):
        result = expand(WEEKLY_OPEN, start=ny_nine(13), end=ny_nine(27))

        assert result == [ny_nine(13), ny_nine(20), ny_nine(27)]

    def test_count_limits_output(self):
        assert expand(WEEKLY_OPEN, start=ny_nine(7), count=2) == [ny_nine(13), ny_nine(20)]

    def test_default_window_is_ninety_days(self):
        daily = "DTSTART:20250101T120000Z\nRRULE:FREQ=DAILY;INTERVAL=1"

        result = expand(daily)

        assert len(result) == 91
        assert result[-1] == datetime(2025, 4, 1, 12, 0, tzinfo=UTC)

    def test_start_after_window_end_is_empty(self):
        assert expand(WEEKLY_OPEN, start=ny_nine(1, 3), end=ny_nine(1, 2)) == []

    def test_exhausted_rule_is_empty(self):
        assert expand(WEEKLY_COUNT_4, start=ny_nine(28)) == []

    def test_zero_count_is_empty(self):
        assert expand(WEEKLY_OPEN, count=0) == []

    def test_until_is_inclusive(self):
        rule = (
            "DTSTART;TZID=America/New_York:20250106T090000\n"
            "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO;UNTIL=20250203T140000Z"
        )

        assert expand(rule) == [ny_nine(6), ny_nine(20), ny_nine(3, 2)]

    def test_last_friday_of_month(self):
        rule = "DTSTART:20250101T170000Z\nRRULE:FREQ=MONTHLY;INTERVAL=1;BYDAY=-1FR;COUNT=3"

        assert [d.date() for d in expand(rule)] == [
            date(2025, 1, 31),
            date(2025, 2, 28),
            date(2025, 3, 28),
        ]

    def test_last_weekday_of_month_with_set_position(self):
        rule = (
            "DTSTART:20250501T090000Z\n"
            "RRULE:FREQ=MONTHLY;INTERVAL=1;BYDAY=MO,TU,WE,TH,FR;BYSETPOS=-1;COUNT=2"
        )

        # May 31 2025 is a Saturday
        assert [d.date() for d in expand(rule)] == [date(2025, 5, 30), date(2025, 6, 30)]

    def test_leap_day_only_in_leap_years(self):
        rule = "DTSTART:20240229T100000Z\nRRULE:FREQ=YEARLY;INTERVAL=1"

        result = expand(rule, count=2)

        assert [d.date() for d in result] == [date(2024, 2, 29), date(2028, 2, 29)]

    def test_month_day_that_does_not_exist_is_skipped(self):
        rule = "DTSTART:20250131T100000Z\nRRULE:FREQ=MONTHLY;INTERVAL=1;BYMONTHDAY=31;COUNT=3"

        assert [d.date() for d in expand(rule)] == [
            date(2025, 1, 31),
            date(2025, 3, 31),
            date(2025, 5, 31),
        ]

    def test_expansion_is_deterministic(self):
        first = expand(WEEKLY_OPEN, exceptions=[date(2025, 2, 3)], count=10)
        second = expand(WEEKLY_OPEN, exceptions=[date(2025, 2, 3)], count=10)

        assert first == second
        assert first == sorted(set(first))


class TestNextAfter:
    def test_strictly_after_instant(self):
        assert next_after(WEEKLY_OPEN, [], ny_nine(13)) == ny_nine(20)

    def test_skips_exception_dates(self):
        assert next_after(WEEKLY_OPEN, [date(2025, 1, 20)], ny_nine(13)) == ny_nine(27)

    def test_none_when_exhausted(self):
        assert next_after(WEEKLY_COUNT_4, [], ny_nine(27)) is None

    def test_exception_extends_counted_rule(self):
        assert next_after(WEEKLY_COUNT_4, [date(2025, 1, 13)], ny_nine(27)) == ny_nine(3, 2)


class TestOccurrencesOn:
    def test_matches_local_calendar_date(self):
        # 21:00 New York on Jan 6 is already Jan 7 in UTC
        rule = "DTSTART;TZID=America/New_York:20250106T210000\nRRULE:FREQ=DAILY;INTERVAL=1"

        result = occurrences_on(rule, date(2025, 1, 8))

        assert result == [datetime(2025, 1, 9, 2, 0, tzinfo=UTC)]

    def test_excepted_date_has_no_occurrences(self):
        assert occurrences_on(WEEKLY_OPEN, date(2025, 1, 13), [date(2025, 1, 13)]) == []

    def test_non_matching_date(self):
        assert occurrences_on(WEEKLY_OPEN, date(2025, 1, 14)) == []
