"""Write-path gate: legality checks, a conflict check, then the insert."""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from booking_engine.core.errors import (
    BookingConflictError,
    BookingError,
    ConflictReason,
    InvalidRecurrenceError,
)
from booking_engine.scheduling.overlap import ConflictDetector
from booking_engine.scheduling.recurrence import is_recurring, normalize_recurrence, rule_from_booking, week_pattern
from booking_engine.scheduling.repository import SchedulingRepository
from booking_engine.scheduling.types import BookingOutcome, BookingRequest, ConflictResult, RuleSpec

logger = logging.getLogger(__name__)

BOOKABLE_RECURRENCE_TYPES = {'once', 'none', 'weekly', 'biweekly', 'triweekly', 'monthly'}
MAX_SERVICE_DURATION = timedelta(hours=8)
MIN_SERVICE_DURATION = timedelta(minutes=15)
WEEKDAY_NAMES = ('Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday')


def check_booking_window(start: datetime, end: datetime, recurrence: str | None, now: datetime) -> str:
    """Reject windows and recurrence tags that can never be booked; return the normalized tag."""
    recurrence_type = normalize_recurrence(recurrence)
    if recurrence_type not in BOOKABLE_RECURRENCE_TYPES:
        raise InvalidRecurrenceError(f'Unsupported recurrence type: {recurrence}.')
    if end <= start:
        raise InvalidRecurrenceError('Appointment end time must be after its start time.')
    if start <= now:
        raise InvalidRecurrenceError('Appointments must be scheduled in the future.')
    return recurrence_type


def check_rule(rule: RuleSpec) -> None:
    if normalize_recurrence(rule.recurrence_type) not in BOOKABLE_RECURRENCE_TYPES - {'once', 'none'}:
        raise InvalidRecurrenceError(f'Unsupported recurrence type: {rule.recurrence_type}.')
    if rule.day_of_week is not None and not 0 <= rule.day_of_week <= 6:
        raise InvalidRecurrenceError('day_of_week must be between 0 (Sunday) and 6 (Saturday).')
    if rule.day_of_month is not None and not 1 <= rule.day_of_month <= 31:
        raise InvalidRecurrenceError('day_of_month must be between 1 and 31.')


def recurrence_warnings(start: datetime, end: datetime, recurrence: str | None) -> list[str]:
    warnings = []
    duration = end - start

    if normalize_recurrence(recurrence) == 'monthly':
        ordinal, weekday = week_pattern(start.date())
        if ordinal == 5:
            warnings.append(
                f'Not every month has a 5th {WEEKDAY_NAMES[weekday]}; those months will be skipped.'
            )
    if duration > MAX_SERVICE_DURATION:
        warnings.append('The service lasts more than 8 hours.')
    if duration < MIN_SERVICE_DURATION:
        warnings.append('The service lasts less than 15 minutes.')

    return warnings


class BookingValidator:
    def __init__(
        self,
        repository: SchedulingRepository | None = None,
        detector: ConflictDetector | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository or SchedulingRepository()
        self.detector = detector or ConflictDetector(self.repository)
        self.clock = clock

    def validate(self, booking: BookingRequest, exclude_id: int | None = None) -> ConflictResult:
        """Raise when the booking cannot be written; return the conflict check otherwise."""
        check_booking_window(booking.start_time, booking.end_time, booking.recurrence, self.clock())

        result = self.detector.check_conflict(
            booking.provider_id,
            booking.start_time,
            booking.end_time,
            exclude_id=exclude_id,
            recurrence=booking.recurrence,
        )
        if result.has_conflict:
            raise BookingConflictError(result.reason, result.details)
        return result

    def book(self, booking: BookingRequest) -> BookingOutcome:
        recurrence_type = check_booking_window(booking.start_time, booking.end_time, booking.recurrence, self.clock())
        warnings = recurrence_warnings(booking.start_time, booking.end_time, recurrence_type)
        result = self.validate(booking)

        residencia_id = booking.residencia_id
        if residencia_id is None and booking.client_id is not None:
            residencia_id = self.repository.fetch_residence_id(booking.client_id)

        rule = None
        if is_recurring(recurrence_type):
            rule = rule_from_booking(
                booking.start_time,
                booking.end_time,
                recurrence_type,
                provider_id=booking.provider_id,
                client_id=booking.client_id,
                listing_id=booking.listing_id,
                client_name=booking.client_name,
                notes=booking.notes,
            )
            check_rule(rule)
            rule = self._write(lambda: self.repository.insert_rule(rule))

        try:
            appointment = self._write(
                lambda: self.repository.insert_appointment(
                    {
                        'provider_id': booking.provider_id,
                        'client_id': booking.client_id,
                        'listing_id': booking.listing_id,
                        'residencia_id': residencia_id,
                        'recurring_rule_id': rule.id if rule else None,
                        'start_time': booking.start_time,
                        'end_time': booking.end_time,
                        'status': 'pending',
                        'recurrence': recurrence_type,
                        'external_booking': booking.external_booking,
                        'notes': booking.notes,
                    }
                )
            )
        except (BookingConflictError, BookingError):
            if rule is not None:
                self.cancel_rule(rule.id)
            raise

        logger.info(
            'Booked appointment %s for provider %s at %s (%s)',
            appointment.id,
            booking.provider_id,
            booking.start_time,
            recurrence_type,
        )
        return BookingOutcome(
            appointment=appointment,
            rule=rule,
            warnings=warnings,
            conflict_check_failed=result.check_failed,
        )

    def cancel_rule(self, rule_id: int) -> RuleSpec | None:
        """Soft-disable a rule; returns ``None`` when it does not exist."""
        rule = self._write(lambda: self.repository.deactivate_rule(rule_id))
        if rule is not None:
            logger.info('Deactivated recurring rule %s', rule_id)
        return rule

    def _write(self, operation):
        try:
            return operation()
        except IntegrityError as exc:
            logger.warning('Booking rejected by the store uniqueness constraint: %s', exc.orig)
            raise BookingConflictError(ConflictReason.INTERNAL_BOOKING) from exc
        except SQLAlchemyError as exc:
            logger.exception('Booking write failed')
            raise BookingError() from exc
