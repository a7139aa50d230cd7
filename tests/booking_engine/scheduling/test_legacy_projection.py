from datetime import date, datetime

from booking_engine.scheduling.legacy import LegacyProjector
from booking_engine.scheduling.types import RegularOccurrence


def make_appointment(appointment_id: str, start: datetime, end: datetime, **fields) -> RegularOccurrence:
    values = {
        'id': appointment_id,
        'provider_id': 10,
        'start_time': start,
        'end_time': end,
        'status': 'confirmed',
    }
    values.update(fields)
    return RegularOccurrence(**values)


def test_weekly_projection_includes_the_booking_and_eight_future_occurrences() -> None:
    projected = LegacyProjector(count=8).project(datetime(2024, 1, 1, 10, 0), datetime(2024, 1, 1, 11, 0), 'weekly')

    assert len(projected) == 9
    assert projected[0].start == datetime(2024, 1, 1, 10, 0)
    assert projected[-1].start == datetime(2024, 2, 26, 10, 0)
    assert projected[-1].end == datetime(2024, 2, 26, 11, 0)


def test_one_time_booking_projects_only_itself() -> None:
    projected = LegacyProjector().project(datetime(2024, 1, 1, 10, 0), datetime(2024, 1, 1, 11, 0), 'once')

    assert [occurrence.start for occurrence in projected] == [datetime(2024, 1, 1, 10, 0)]


def test_monthly_projection_uses_the_ordinal_weekday_by_default() -> None:
    projected = LegacyProjector(monthly_mode='ordinal').project(
        datetime(2024, 7, 5, 9, 0), datetime(2024, 7, 5, 10, 0), 'mensual', count=2,
    )

    assert [occurrence.start.date() for occurrence in projected] == [
        date(2024, 7, 5),
        date(2024, 8, 2),
        date(2024, 9, 6),
    ]


def test_monthly_projection_can_use_the_four_week_approximation() -> None:
    projected = LegacyProjector(monthly_mode='four_week').project(
        datetime(2024, 7, 5, 9, 0), datetime(2024, 7, 5, 10, 0), 'monthly', count=2,
    )

    assert [occurrence.start.date() for occurrence in projected] == [
        date(2024, 7, 5),
        date(2024, 8, 2),
        date(2024, 8, 30),
    ]


def test_busy_intervals_only_cover_tag_only_recurring_rows_in_the_window() -> None:
    appointments = [
        make_appointment('1', datetime(2024, 1, 1, 10, 0), datetime(2024, 1, 1, 11, 0), recurrence='weekly'),
        make_appointment('2', datetime(2024, 1, 1, 12, 0), datetime(2024, 1, 1, 13, 0), recurrence='once'),
        make_appointment(
            '3', datetime(2024, 1, 1, 14, 0), datetime(2024, 1, 1, 15, 0), recurrence='weekly', recurring_rule_id=7,
        ),
    ]

    intervals = LegacyProjector(count=8).busy_intervals(
        appointments, datetime(2024, 1, 15, 0, 0), datetime(2024, 1, 16, 0, 0),
    )

    assert len(intervals) == 1
    assert intervals[0].source == 'legacy'
    assert intervals[0].source_id == '1'
    assert intervals[0].is_recurring is True
    assert intervals[0].range.start == datetime(2024, 1, 15, 10, 0)


def test_old_legacy_rows_still_block_the_requested_window() -> None:
    appointments = [
        make_appointment('1', datetime(2029, 10, 30, 9, 0), datetime(2029, 10, 30, 10, 0), recurrence='weekly'),
    ]

    intervals = LegacyProjector(count=8).busy_intervals(
        appointments, datetime(2030, 1, 8, 0, 0), datetime(2030, 1, 9, 0, 0),
    )

    assert [interval.range.start for interval in intervals] == [datetime(2030, 1, 8, 9, 0)]


def test_legacy_occurrence_running_into_the_window_is_included() -> None:
    appointments = [
        make_appointment('1', datetime(2024, 1, 1, 23, 0), datetime(2024, 1, 2, 1, 0), recurrence='weekly'),
    ]

    intervals = LegacyProjector().busy_intervals(
        appointments, datetime(2024, 1, 9, 0, 0), datetime(2024, 1, 9, 12, 0),
    )

    assert [interval.range.start for interval in intervals] == [datetime(2024, 1, 8, 23, 0)]
