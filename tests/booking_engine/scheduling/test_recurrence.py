import logging
from datetime import date, datetime, time, timedelta

import pytest

from booking_engine.scheduling.recurrence import (
    FourWeekMonthlyStrategy,
    IntervalStrategy,
    MonthlyOrdinalStrategy,
    expand_rule,
    is_recurring,
    js_weekday,
    next_occurrence,
    normalize_recurrence,
    nth_weekday_of_month,
    occurrences,
    strategy_for,
    week_pattern,
)
from booking_engine.scheduling.types import ExceptionSpec, RuleSpec


def make_rule(recurrence_type: str, start_date: date, **fields) -> RuleSpec:
    values = {
        'id': 1,
        'provider_id': 10,
        'recurrence_type': recurrence_type,
        'start_date': start_date,
        'start_time': time(10, 0),
        'end_time': time(11, 0),
        'day_of_week': js_weekday(start_date),
    }
    values.update(fields)
    return RuleSpec(**values)


def starts(series) -> list[datetime]:
    return [occurrence.start for occurrence in series]


def test_weekly_rule_yields_every_monday_in_january() -> None:
    rule = make_rule('weekly', date(2024, 1, 1), day_of_week=1)

    series = occurrences(rule, date(2024, 1, 1), date(2024, 1, 31))

    assert starts(series) == [datetime(2024, 1, day, 10, 0) for day in (1, 8, 15, 22, 29)]
    assert all(occurrence.end - occurrence.start == timedelta(hours=1) for occurrence in series)


def test_weekly_rule_starts_on_its_weekday_after_the_range_start() -> None:
    rule = make_rule('weekly', date(2024, 1, 1), day_of_week=4)

    assert starts(occurrences(rule, date(2024, 1, 1), date(2024, 1, 12))) == [
        datetime(2024, 1, 4, 10, 0),
        datetime(2024, 1, 11, 10, 0),
    ]


def test_biweekly_occurrences_stay_aligned_with_the_rule_start() -> None:
    rule = make_rule('biweekly', date(2024, 1, 3))

    result = starts(occurrences(rule, date(2024, 1, 10), date(2024, 2, 29)))

    assert result[0] == datetime(2024, 1, 17, 10, 0)
    assert all(later - earlier == timedelta(days=14) for earlier, later in zip(result, result[1:]))
    assert result[-1] == datetime(2024, 2, 28, 10, 0)


def test_triweekly_occurrences_are_twenty_one_days_apart() -> None:
    rule = make_rule('triweekly', date(2024, 1, 1))

    assert [value.date() for value in starts(occurrences(rule, date(2024, 1, 1), date(2024, 3, 31)))] == [
        date(2024, 1, 1),
        date(2024, 1, 22),
        date(2024, 2, 12),
        date(2024, 3, 4),
        date(2024, 3, 25),
    ]


def test_monthly_rule_keeps_the_first_friday_pattern() -> None:
    rule = make_rule('monthly', date(2024, 7, 5))

    assert [value.date() for value in starts(occurrences(rule, date(2024, 7, 6), date(2024, 9, 30)))] == [
        date(2024, 8, 2),
        date(2024, 9, 6),
    ]


def test_monthly_rule_skips_months_without_a_fifth_weekday() -> None:
    rule = make_rule('monthly', date(2024, 3, 29))

    assert [value.date() for value in starts(occurrences(rule, date(2024, 3, 1), date(2024, 6, 30)))] == [
        date(2024, 3, 29),
        date(2024, 5, 31),
    ]


def test_occurrence_series_can_be_iterated_more_than_once() -> None:
    series = occurrences(make_rule('weekly', date(2024, 1, 1)), date(2024, 1, 1), date(2024, 1, 31))

    assert list(series) == list(series)


def test_end_time_before_start_time_rolls_into_the_next_day() -> None:
    rule = make_rule('weekly', date(2024, 1, 1), start_time=time(23, 0), end_time=time(1, 0))

    first = list(occurrences(rule, date(2024, 1, 1), date(2024, 1, 1)))[0]

    assert first.start == datetime(2024, 1, 1, 23, 0)
    assert first.end == datetime(2024, 1, 2, 1, 0)


def test_unknown_recurrence_type_falls_back_to_daily(caplog: pytest.LogCaptureFixture) -> None:
    rule = make_rule('every-blue-moon', date(2024, 1, 1))

    with caplog.at_level(logging.WARNING):
        result = starts(occurrences(rule, date(2024, 1, 1), date(2024, 1, 3)))

    assert [value.date() for value in result] == [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]
    assert 'falling back to daily' in caplog.text


def test_iteration_cap_bounds_the_series(caplog: pytest.LogCaptureFixture) -> None:
    rule = make_rule('daily', date(2024, 1, 1))

    with caplog.at_level(logging.WARNING):
        result = list(occurrences(rule, date(2024, 1, 1), date(2024, 12, 31), max_iterations=5))

    assert len(result) == 5
    assert 'safety cap' in caplog.text


def test_one_time_rule_yields_only_its_own_date() -> None:
    rule = make_rule('once', date(2024, 1, 10))

    assert starts(occurrences(rule, date(2024, 1, 1), date(2024, 1, 31))) == [datetime(2024, 1, 10, 10, 0)]


def test_empty_range_yields_nothing() -> None:
    rule = make_rule('weekly', date(2024, 1, 1))

    assert list(occurrences(rule, date(2024, 2, 1), date(2024, 1, 1))) == []


def test_expand_rule_applies_cancellations_and_reschedules() -> None:
    rule = make_rule('weekly', date(2024, 1, 1))
    exceptions = [
        ExceptionSpec(recurring_rule_id=1, exception_date=date(2024, 1, 8), action_type='cancelled'),
        ExceptionSpec(
            recurring_rule_id=1,
            exception_date=date(2024, 1, 15),
            action_type='rescheduled',
            new_start_time=datetime(2024, 1, 16, 14, 0),
            new_end_time=datetime(2024, 1, 16, 15, 0),
        ),
    ]

    assert starts(expand_rule(rule, date(2024, 1, 1), date(2024, 1, 31), exceptions)) == [
        datetime(2024, 1, 1, 10, 0),
        datetime(2024, 1, 16, 14, 0),
        datetime(2024, 1, 22, 10, 0),
        datetime(2024, 1, 29, 10, 0),
    ]


def test_expand_rule_returns_nothing_for_inactive_rules() -> None:
    rule = make_rule('weekly', date(2024, 1, 1), is_active=False)

    assert expand_rule(rule, date(2024, 1, 1), date(2024, 1, 31)) == []


def test_next_occurrence_is_strictly_after_the_given_moment() -> None:
    rule = make_rule('weekly', date(2024, 1, 1))

    upcoming = next_occurrence(rule, datetime(2024, 1, 8, 10, 0))

    assert upcoming.start == datetime(2024, 1, 15, 10, 0)


@pytest.mark.parametrize(
    ('raw', 'expected'),
    [
        ('Semanal', 'weekly'),
        ('quincenal', 'biweekly'),
        ('bi-weekly', 'biweekly'),
        ('mensual', 'monthly'),
        (' Once ', 'once'),
        ('', 'none'),
        (None, 'none'),
        ('fortnightly', 'fortnightly'),
    ],
)
def test_normalize_recurrence_maps_aliases(raw: str | None, expected: str) -> None:
    assert normalize_recurrence(raw) == expected


def test_is_recurring_treats_once_and_none_as_one_time() -> None:
    assert is_recurring('weekly') is True
    assert is_recurring('once') is False
    assert is_recurring(None) is False


def test_weekday_helpers_use_sunday_as_zero() -> None:
    assert js_weekday(date(2024, 1, 7)) == 0
    assert js_weekday(date(2024, 1, 1)) == 1
    assert week_pattern(date(2024, 7, 5)) == (1, 5)
    assert nth_weekday_of_month(2024, 8, 5, 1) == date(2024, 8, 2)
    assert nth_weekday_of_month(2024, 2, 5, 5) is None


def test_strategy_for_picks_the_pattern_strategy() -> None:
    assert strategy_for(make_rule('once', date(2024, 1, 1))) is None
    assert isinstance(strategy_for(make_rule('weekly', date(2024, 1, 1))), IntervalStrategy)
    assert isinstance(strategy_for(make_rule('monthly', date(2024, 7, 5))), MonthlyOrdinalStrategy)
    assert isinstance(
        strategy_for(make_rule('monthly', date(2024, 7, 5)), monthly_mode='four_week'),
        FourWeekMonthlyStrategy,
    )


def test_four_week_strategy_advances_twenty_eight_days() -> None:
    strategy = FourWeekMonthlyStrategy(date(2024, 7, 5))

    assert strategy.first_on_or_after(date(2024, 7, 6)) == date(2024, 8, 2)
    assert strategy.next_after(date(2024, 8, 2)) == date(2024, 8, 30)


def test_monthly_ordinal_crosses_the_year_boundary() -> None:
    strategy = MonthlyOrdinalStrategy(date(2024, 7, 5))

    assert strategy.first_on_or_after(date(2024, 12, 20)) == date(2025, 1, 3)
    assert nth_weekday_of_month(2024, 5, 3, 5) == date(2024, 5, 29)


def test_monthly_fallback_clamps_the_day_to_the_month_end(caplog: pytest.LogCaptureFixture) -> None:
    strategy = MonthlyOrdinalStrategy(date(2024, 1, 31), search_months=1)

    with caplog.at_level(logging.WARNING):
        assert strategy.next_after(date(2024, 1, 31)) == date(2024, 2, 29)

    assert 'using day-of-month 31' in caplog.text
