"""Conflict detection for candidate booking windows.

The detector loads every busy interval of a provider once for a horizon and
then answers overlap questions against that snapshot. It is advisory: the
partial unique index on ``appointments`` is what actually prevents a double
booking at commit time.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from sqlalchemy.exc import SQLAlchemyError

from booking_engine.core.errors import ConflictReason, DataFetchError
from booking_engine.scheduling.legacy import LegacyProjector
from booking_engine.scheduling.recurrence import expand_rule, is_recurring
from booking_engine.scheduling.repository import (
    ACTIVE_APPOINTMENT_STATUSES,
    ACTIVE_INSTANCE_STATUSES,
    SchedulingRepository,
)
from booking_engine.scheduling.types import (
    BusyInterval,
    ConflictResult,
    ExceptionSpec,
    PersistedOccurrence,
    RegularOccurrence,
    RuleSpec,
    TimeRange,
)

logger = logging.getLogger(__name__)

# Margin loaded around a candidate so bookings crossing its edges are seen.
SURROUNDING_WINDOW = timedelta(days=1)


def conflict_reason(interval: BusyInterval) -> ConflictReason:
    if interval.source == 'blocked':
        return ConflictReason.BLOCKED_SLOT
    if interval.is_external:
        return ConflictReason.EXTERNAL_BOOKING
    if interval.is_recurring:
        return ConflictReason.RECURRING_BOOKING
    return ConflictReason.INTERNAL_BOOKING


def conflict_type(interval: BusyInterval) -> str:
    if interval.source == 'blocked':
        return 'blocked'
    return 'external' if interval.is_external else 'internal'


def find_conflict(busy: Iterable[BusyInterval], candidate: TimeRange) -> ConflictResult:
    """First busy interval overlapping ``candidate``, in the order given."""
    for interval in busy:
        if interval.range.overlaps(candidate):
            return ConflictResult(
                has_conflict=True,
                reason=conflict_reason(interval),
                details={
                    'type': conflict_type(interval),
                    'source': interval.source,
                    'conflicting_id': interval.source_id,
                    'is_recurring': interval.is_recurring,
                    'start_time': interval.range.start.isoformat(),
                    'end_time': interval.range.end.isoformat(),
                },
            )
    return ConflictResult(has_conflict=False)


def appointment_interval(appointment: RegularOccurrence) -> BusyInterval:
    return BusyInterval(
        range=appointment.time_range,
        source='appointment',
        source_id=appointment.id,
        is_external=appointment.external_booking,
        is_recurring=appointment.recurring_rule_id is not None or is_recurring(appointment.recurrence),
        residencia_id=appointment.residencia_id,
        status=appointment.status,
    )


def collect_busy_intervals(
    window_start: datetime,
    window_end: datetime,
    appointments: Iterable[RegularOccurrence] = (),
    instances: Iterable[PersistedOccurrence] = (),
    rules: Iterable[RuleSpec] = (),
    exceptions: Sequence[ExceptionSpec] = (),
    legacy: Iterable[RegularOccurrence] = (),
    blocked: Iterable[BusyInterval] = (),
    projector: LegacyProjector | None = None,
) -> list[BusyInterval]:
    instances = list(instances)
    projector = projector or LegacyProjector()

    busy = [appointment_interval(appointment) for appointment in appointments]
    busy.extend(
        BusyInterval(
            range=instance.time_range,
            source='instance',
            source_id=instance.id,
            is_recurring=True,
            status=instance.status,
        )
        for instance in instances
        if instance.status in ACTIVE_INSTANCE_STATUSES
    )

    # A rule with any materialized instance in the window is represented by its instances.
    materialized_rule_ids = {instance.recurring_rule_id for instance in instances}
    for rule in rules:
        if rule.id in materialized_rule_ids:
            continue
        rule_exceptions = [exception for exception in exceptions if exception.recurring_rule_id == rule.id]
        busy.extend(
            BusyInterval(range=occurrence, source='rule', source_id=str(rule.id), is_recurring=True)
            for occurrence in expand_rule(rule, window_start, window_end, rule_exceptions)
        )

    busy.extend(projector.busy_intervals(legacy, window_start, window_end))
    busy.extend(blocked)
    return busy


class ConflictDetector:
    def __init__(
        self,
        repository: SchedulingRepository | None = None,
        projector: LegacyProjector | None = None,
    ):
        self.repository = repository or SchedulingRepository()
        self.projector = projector or LegacyProjector()

    def load_busy_intervals(
        self,
        provider_id: int,
        window_start: datetime,
        window_end: datetime,
        exclude_id: int | None = None,
    ) -> list[BusyInterval]:
        """Everything that holds the provider's time inside the window.

        Committed appointments come first, then recurring projections, then
        blocked slots, which is the order conflicts are reported in.
        """
        appointments = self.repository.fetch_appointments(
            provider_id, window_start, window_end, ACTIVE_APPOINTMENT_STATUSES, exclude_id=exclude_id,
        )
        instances = self.repository.fetch_instances(provider_id, window_start, window_end)
        rules = self.repository.fetch_rules(provider_id)
        exceptions = self.repository.fetch_exceptions(
            [rule.id for rule in rules], window_start.date(), window_end.date(),
        )
        legacy = self.repository.fetch_legacy_appointments(provider_id, window_end, exclude_id=exclude_id)
        blocked = self.repository.fetch_blocked_intervals(provider_id, window_start, window_end)

        return collect_busy_intervals(
            window_start,
            window_end,
            appointments=appointments,
            instances=instances,
            rules=rules,
            exceptions=exceptions,
            legacy=legacy,
            blocked=blocked,
            projector=self.projector,
        )

    def check_conflict(
        self,
        provider_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
        recurrence: str | None = None,
    ) -> ConflictResult:
        """Check ``[start, end)`` and, for a recurring booking, its next occurrences.

        A failed read is logged and reported as no conflict with
        ``check_failed`` set.
        """
        candidates = self.projector.project(start, end, recurrence)
        window_start = min(candidate.start for candidate in candidates) - SURROUNDING_WINDOW
        window_end = max(candidate.end for candidate in candidates) + SURROUNDING_WINDOW

        try:
            busy = self.load_busy_intervals(provider_id, window_start, window_end, exclude_id=exclude_id)
        except (DataFetchError, SQLAlchemyError):
            logger.exception(
                'Conflict check failed for provider %s at %s; allowing the booking through',
                provider_id,
                start,
            )
            return ConflictResult(has_conflict=False, check_failed=True)

        for index, candidate in enumerate(candidates):
            result = find_conflict(busy, candidate)
            if result.has_conflict:
                if index > 0:
                    result.details['future_date'] = candidate.start.date().isoformat()
                logger.info(
                    'Conflict for provider %s at %s: %s',
                    provider_id,
                    candidate.start,
                    result.reason.value,
                )
                return result

        return ConflictResult(has_conflict=False)
