"""Forward projection of appointments that only carry a recurrence tag.

Rows written before recurring rules existed repeat through the
``appointments.recurrence`` column alone. They are expanded across whatever
window the conflict checks and slot filters ask about; nothing projected
here is ever written back.

The same strategies also project a new recurring booking a fixed number of
occurrences ahead so each of them can be checked for conflicts.
"""

import logging
from datetime import datetime
from typing import Iterable

from booking_engine.core import config
from booking_engine.scheduling.recurrence import OccurrenceSeries, is_recurring, rule_from_booking, strategy_for
from booking_engine.scheduling.types import BusyInterval, RegularOccurrence, TimeRange

logger = logging.getLogger(__name__)


class LegacyProjector:
    def __init__(self, count: int | None = None, monthly_mode: str | None = None):
        self.count = count or config.CONFLICT_LOOKAHEAD_OCCURRENCES
        self.monthly_mode = monthly_mode or config.LEGACY_MONTHLY_MODE

    def project(self, start: datetime, end: datetime, recurrence: str | None, count: int | None = None) -> list[TimeRange]:
        """Return the booking itself followed by its next ``count`` occurrences."""
        booking = TimeRange(start=start, end=end)
        if not is_recurring(recurrence):
            return [booking]

        strategy = strategy_for(rule_from_booking(start, end, recurrence), self.monthly_mode)
        limit = count or self.count
        projected = [booking]
        current = start.date()

        while len(projected) <= limit:
            current = strategy.next_after(current)
            projected.append(booking.shifted(current - start.date()))

        return projected

    def expand(self, appointment: RegularOccurrence, window_start: datetime, window_end: datetime) -> list[TimeRange]:
        """Occurrences of a tag-only recurring appointment that touch ``[window_start, window_end)``."""
        rule = rule_from_booking(appointment.start_time, appointment.end_time, appointment.recurrence)
        series = OccurrenceSeries(
            rule,
            window_start - appointment.time_range.duration,
            window_end,
            monthly_mode=self.monthly_mode,
        )
        window = TimeRange(start=window_start, end=window_end)
        return [occurrence for occurrence in series if occurrence.overlaps(window)]

    def busy_intervals(
        self,
        appointments: Iterable[RegularOccurrence],
        window_start: datetime,
        window_end: datetime,
    ) -> list[BusyInterval]:
        intervals: list[BusyInterval] = []

        for appointment in appointments:
            if appointment.recurring_rule_id is not None or not is_recurring(appointment.recurrence):
                continue

            intervals.extend(
                BusyInterval(
                    range=occurrence,
                    source='legacy',
                    source_id=appointment.id,
                    is_external=appointment.external_booking,
                    is_recurring=True,
                    residencia_id=appointment.residencia_id,
                    status=appointment.status,
                )
                for occurrence in self.expand(appointment, window_start, window_end)
            )

        logger.debug('Projected %s legacy occurrences into %s - %s', len(intervals), window_start, window_end)
        return intervals
