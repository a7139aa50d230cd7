from datetime import date, datetime, time

import pytest
from sqlalchemy.exc import OperationalError

from booking_engine.core.errors import BookingConflictError, BookingError, ConflictReason, InvalidRecurrenceError
from booking_engine.models.appointment import Appointment
from booking_engine.models.listing import ClientResidence
from booking_engine.models.recurring import RecurringRule
from booking_engine.scheduling.overlap import ConflictDetector
from booking_engine.scheduling.repository import SchedulingRepository
from booking_engine.scheduling.types import BookingRequest, ConflictResult, RuleSpec
from booking_engine.scheduling.validation import (
    BookingValidator,
    check_booking_window,
    check_rule,
    recurrence_warnings,
)

PROVIDER_ID = 10
NOW = datetime(2030, 1, 1, 8, 0)


def make_booking(start: datetime, end: datetime, **fields) -> BookingRequest:
    values = {'provider_id': PROVIDER_ID, 'client_id': 3, 'listing_id': None, 'start_time': start, 'end_time': end}
    values.update(fields)
    return BookingRequest(**values)


def make_validator(repository, detector=None) -> BookingValidator:
    return BookingValidator(repository, detector=detector, clock=lambda: NOW)


class NoConflictDetector(ConflictDetector):
    def check_conflict(self, *args, **kwargs) -> ConflictResult:
        return ConflictResult(has_conflict=False)


@pytest.mark.parametrize(
    ('start', 'end', 'recurrence', 'message'),
    [
        (datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 0), 'daily', 'Unsupported recurrence type: daily.'),
        (datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 10, 0), 'none', 'Appointment end time must be after its start time.'),
        (datetime(2029, 12, 31, 10, 0), datetime(2029, 12, 31, 11, 0), 'none', 'Appointments must be scheduled in the future.'),
    ],
)
def test_check_booking_window_rejects_illegal_bookings(start: datetime, end: datetime, recurrence: str, message: str) -> None:
    with pytest.raises(InvalidRecurrenceError) as exception_info:
        check_booking_window(start, end, recurrence, NOW)

    assert str(exception_info.value) == message


def test_check_booking_window_returns_the_normalized_tag() -> None:
    assert check_booking_window(datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 0), 'Quincenal', NOW) == 'biweekly'


def test_check_rule_rejects_out_of_range_weekdays() -> None:
    rule = RuleSpec(
        recurrence_type='weekly',
        start_date=date(2030, 1, 7),
        start_time=time(10, 0),
        end_time=time(11, 0),
        day_of_week=7,
    )

    with pytest.raises(InvalidRecurrenceError):
        check_rule(rule)


def test_recurrence_warnings() -> None:
    assert recurrence_warnings(datetime(2030, 3, 29, 10, 0), datetime(2030, 3, 29, 11, 0), 'monthly') == [
        'Not every month has a 5th Friday; those months will be skipped.',
    ]
    assert recurrence_warnings(datetime(2030, 1, 7, 8, 0), datetime(2030, 1, 7, 17, 0), 'none') == [
        'The service lasts more than 8 hours.',
    ]
    assert recurrence_warnings(datetime(2030, 1, 7, 8, 0), datetime(2030, 1, 7, 8, 10), 'none') == [
        'The service lasts less than 15 minutes.',
    ]
    assert recurrence_warnings(datetime(2030, 1, 7, 8, 0), datetime(2030, 1, 7, 9, 0), 'weekly') == []


def test_book_one_time_appointment_looks_up_the_residence(repository, add_rows) -> None:
    add_rows(ClientResidence(client_id=3, residencia_id=42, condominium_name='Los Pinos', house_number='12'))

    outcome = make_validator(repository).book(make_booking(datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 0)))

    assert outcome.appointment.status == 'pending'
    assert outcome.appointment.residencia_id == 42
    assert outcome.appointment.recurrence == 'none'
    assert outcome.rule is None


def test_book_recurring_appointment_creates_its_rule(repository) -> None:
    outcome = make_validator(repository).book(
        make_booking(datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 0), recurrence='semanal', client_name='Ana'),
    )

    assert outcome.rule is not None
    assert outcome.rule.recurrence_type == 'weekly'
    assert outcome.rule.day_of_week == 1
    assert outcome.rule.client_name == 'Ana'
    assert outcome.appointment.recurring_rule_id == outcome.rule.id
    assert repository.fetch_rule(outcome.rule.id).is_active is True


def test_book_rejects_conflicts_with_a_categorized_message(repository, add_rows) -> None:
    add_rows(
        Appointment(
            provider_id=PROVIDER_ID,
            start_time=datetime(2030, 1, 7, 10, 0),
            end_time=datetime(2030, 1, 7, 11, 0),
            status='confirmed',
        )
    )

    with pytest.raises(BookingConflictError) as exception_info:
        make_validator(repository).book(make_booking(datetime(2030, 1, 7, 10, 30), datetime(2030, 1, 7, 11, 30)))

    assert exception_info.value.reason == ConflictReason.INTERNAL_BOOKING
    assert exception_info.value.message == 'This time is already booked.'


def test_recurring_booking_reports_the_future_collision(repository, add_rows) -> None:
    add_rows(
        RecurringRule(
            provider_id=PROVIDER_ID,
            recurrence_type='weekly',
            start_date=date(2030, 1, 14),
            start_time=time(10, 0),
            end_time=time(11, 0),
            day_of_week=1,
            is_active=True,
        )
    )

    with pytest.raises(BookingConflictError) as exception_info:
        make_validator(repository).book(
            make_booking(datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 0), recurrence='weekly'),
        )

    assert exception_info.value.reason == ConflictReason.RECURRING_BOOKING
    assert exception_info.value.message == 'This time is taken by a recurring booking. (future occurrence on 2030-01-14)'


def test_unique_index_turns_a_race_into_a_conflict(repository) -> None:
    validator = make_validator(repository, detector=NoConflictDetector(repository))
    booking = make_booking(datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 0))

    validator.book(booking)
    with pytest.raises(BookingConflictError) as exception_info:
        validator.book(booking)

    assert exception_info.value.reason == ConflictReason.INTERNAL_BOOKING


def test_failed_recurring_insert_deactivates_the_new_rule(repository) -> None:
    validator = make_validator(repository, detector=NoConflictDetector(repository))
    booking = make_booking(datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 0), recurrence='weekly')

    first = validator.book(booking)
    with pytest.raises(BookingConflictError):
        validator.book(booking)

    rules = repository.fetch_rules(PROVIDER_ID, active_only=False)
    assert [(rule.id == first.rule.id, rule.is_active) for rule in rules] == [(True, True), (False, False)]


class BrokenWriteRepository(SchedulingRepository):
    def insert_appointment(self, values: dict):
        raise OperationalError('INSERT INTO appointments', {}, Exception('connection lost'))


def test_other_write_failures_surface_a_generic_error(session_factory) -> None:
    repository = BrokenWriteRepository(session_factory)

    with pytest.raises(BookingError) as exception_info:
        make_validator(repository).book(make_booking(datetime(2030, 1, 7, 10, 0), datetime(2030, 1, 7, 11, 0)))

    assert exception_info.value.message == 'We could not complete the booking. Please try again.'


def test_cancel_rule_soft_disables_it(repository, add_rows) -> None:
    (rule_id,) = add_rows(
        RecurringRule(
            provider_id=PROVIDER_ID,
            recurrence_type='weekly',
            start_date=date(2030, 1, 7),
            start_time=time(10, 0),
            end_time=time(11, 0),
            day_of_week=1,
            is_active=True,
        )
    )
    validator = make_validator(repository)

    assert validator.cancel_rule(rule_id).is_active is False
    assert repository.fetch_rule(rule_id).is_active is False
    assert validator.cancel_rule(999) is None
