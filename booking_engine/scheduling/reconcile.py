"""Merging of regular appointments, persisted instances and virtual occurrences."""

import logging
from datetime import date, datetime
from typing import Iterable, Sequence

from booking_engine.core import config
from booking_engine.scheduling.recurrence import expand_rule
from booking_engine.scheduling.repository import (
    ACTIVE_APPOINTMENT_STATUSES,
    ACTIVE_INSTANCE_STATUSES,
    SchedulingRepository,
    run_reads,
)
from booking_engine.scheduling.types import (
    OCCURRENCE_PRIORITY,
    ExceptionSpec,
    Occurrence,
    PersistedOccurrence,
    RegularOccurrence,
    RuleSpec,
    VirtualOccurrence,
)

logger = logging.getLogger(__name__)


def occurrence_priority(occurrence: Occurrence) -> int:
    return OCCURRENCE_PRIORITY[occurrence.kind]


def merge(
    regular: Iterable[RegularOccurrence],
    persisted: Iterable[PersistedOccurrence],
    virtual: Iterable[VirtualOccurrence],
) -> list[Occurrence]:
    """Deduplicate by identity key, keeping regular over persisted over virtual.

    Within one source the first occurrence seen for a key is kept.
    """
    merged: dict[tuple[int, str, str], Occurrence] = {}

    for occurrence in [*regular, *persisted, *virtual]:
        key = occurrence.identity_key
        current = merged.get(key)
        if current is None or occurrence_priority(occurrence) < occurrence_priority(current):
            merged[key] = occurrence

    return sorted(merged.values(), key=lambda occurrence: (occurrence.start_time, occurrence_priority(occurrence)))


def virtual_occurrences(
    rules: Iterable[RuleSpec],
    range_start: date | datetime,
    range_end: date | datetime,
    exceptions: Sequence[ExceptionSpec] = (),
    materialized_rule_ids: Iterable[int] = (),
    titles: dict[int, str] | None = None,
) -> list[VirtualOccurrence]:
    """Project the rules that have no materialized instance in the window."""
    skip = set(materialized_rule_ids)
    titles = titles or {}
    projected: list[VirtualOccurrence] = []

    for rule in rules:
        if not rule.is_active or rule.id in skip:
            continue

        rule_exceptions = [exception for exception in exceptions if exception.recurring_rule_id == rule.id]
        for occurrence in expand_rule(rule, range_start, range_end, rule_exceptions):
            projected.append(
                VirtualOccurrence(
                    id=f'virtual-{rule.id}-{occurrence.start:%Y%m%d%H%M}',
                    provider_id=rule.provider_id,
                    client_id=rule.client_id,
                    listing_id=rule.listing_id,
                    start_time=occurrence.start,
                    end_time=occurrence.end,
                    status='scheduled',
                    recurrence=rule.recurrence_type,
                    recurring_rule_id=rule.id,
                    notes=rule.notes,
                    client_name=rule.client_name or config.DEFAULT_CLIENT_NAME,
                    service_title=titles.get(rule.listing_id),
                )
            )

    return projected


class InstanceReconciler:
    def __init__(self, repository: SchedulingRepository | None = None, max_workers: int | None = None):
        self.repository = repository or SchedulingRepository()
        self.max_workers = max_workers

    def build_calendar(self, provider_id: int, range_start: datetime, range_end: datetime) -> list[Occurrence]:
        reads = run_reads(
            {
                'appointments': lambda: self.repository.fetch_appointments(
                    provider_id, range_start, range_end, ACTIVE_APPOINTMENT_STATUSES,
                ),
                'instances': lambda: self.repository.fetch_instances(provider_id, range_start, range_end),
                'rules': lambda: self.repository.fetch_rules(provider_id),
            },
            max_workers=self.max_workers,
        )

        rules: list[RuleSpec] = reads['rules']
        instances: list[PersistedOccurrence] = reads['instances']
        exceptions = self.repository.fetch_exceptions(
            [rule.id for rule in rules], range_start.date(), range_end.date(),
        )

        # Any materialized instance, even a cancelled one, means the rule is no longer projected.
        materialized_rule_ids = {instance.recurring_rule_id for instance in instances}
        active_instances = [instance for instance in instances if instance.status in ACTIVE_INSTANCE_STATUSES]
        titles = {
            appointment.listing_id: appointment.service_title
            for appointment in reads['appointments']
            if appointment.service_title
        }
        titles.update(
            {instance.listing_id: instance.service_title for instance in instances if instance.service_title}
        )

        virtual = virtual_occurrences(
            rules, range_start, range_end, exceptions, materialized_rule_ids, titles,
        )
        calendar = merge(reads['appointments'], active_instances, virtual)

        logger.info(
            'Calendar for provider %s: %s regular, %s persisted, %s virtual -> %s entries',
            provider_id,
            len(reads['appointments']),
            len(active_instances),
            len(virtual),
            len(calendar),
        )
        return calendar
