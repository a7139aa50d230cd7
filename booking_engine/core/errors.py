"""Exception types raised by the scheduling engine and its stores."""

from enum import Enum
from typing import Any


class ConflictReason(str, Enum):
    EXTERNAL_BOOKING = 'external_booking'
    INTERNAL_BOOKING = 'internal_booking'
    RECURRING_BOOKING = 'recurring_booking'
    BLOCKED_SLOT = 'blocked_slot'


CONFLICT_MESSAGES = {
    ConflictReason.EXTERNAL_BOOKING: 'This time already has a confirmed external booking.',
    ConflictReason.INTERNAL_BOOKING: 'This time is already booked.',
    ConflictReason.RECURRING_BOOKING: 'This time is taken by a recurring booking.',
    ConflictReason.BLOCKED_SLOT: 'This time has been blocked by the provider.',
}

GENERIC_ERROR_MESSAGE = 'We could not complete the booking. Please try again.'


class SchedulingError(Exception):
    """Base class for scheduling engine errors."""


class DataFetchError(SchedulingError):
    """A read against one of the scheduling stores failed."""


class InvalidRecurrenceError(SchedulingError, ValueError):
    """A recurrence pattern or booking window is not legal."""


class RequestCancelled(SchedulingError):
    """A slot computation was superseded by a newer request."""


class BookingError(SchedulingError):
    """A booking could not be written for a reason other than a conflict."""

    def __init__(self, message: str = GENERIC_ERROR_MESSAGE):
        super().__init__(message)
        self.message = message


class BookingConflictError(SchedulingError):
    def __init__(self, reason: ConflictReason, details: dict[str, Any] | None = None):
        self.reason = reason
        self.details = details or {}
        self.message = CONFLICT_MESSAGES[reason]
        future_date = self.details.get('future_date')
        if future_date:
            self.message = f'{self.message} (future occurrence on {future_date})'
        super().__init__(self.message)
