"""Bookable slot generation for one provider, listing and week."""

import logging
import math
import threading
from collections import Counter
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Sequence

from booking_engine.core import config
from booking_engine.core.errors import RequestCancelled
from booking_engine.scheduling.legacy import LegacyProjector
from booking_engine.scheduling.overlap import collect_busy_intervals, conflict_reason
from booking_engine.scheduling.recurrence import js_weekday
from booking_engine.scheduling.repository import (
    ACTIVE_APPOINTMENT_STATUSES,
    RESERVED_SLOT_TYPE,
    SchedulingRepository,
    run_reads,
)
from booking_engine.scheduling.types import (
    AvailabilityWindow,
    BusyInterval,
    ListingInfo,
    RegularOccurrence,
    Slot,
    SlotRecord,
    SlotRequest,
    TimeRange,
)

logger = logging.getLogger(__name__)

RECOMMENDATION_STATUSES = ('confirmed', 'pending', 'completed')


def week_range(week_index: int, now: datetime) -> tuple[datetime, datetime]:
    """Week 0 runs from ``now`` to the end of Sunday; week N is Monday..Sunday N weeks on."""
    monday = datetime.combine(now.date() - timedelta(days=now.weekday()), time.min)
    sunday_end = datetime.combine(monday.date() + timedelta(days=6), time.max)

    if week_index <= 0:
        return now, sunday_end

    offset = timedelta(weeks=week_index)
    return monday + offset, sunday_end + offset


def required_slots(service_duration_minutes: int, slot_size_minutes: int) -> int:
    if service_duration_minutes <= 0:
        return 1
    return math.ceil(service_duration_minutes / slot_size_minutes)


def recommended_discount(base_price: float | Decimal, percent: int | None = None) -> tuple[Decimal, Decimal]:
    """Return ``(discount, final_price)`` for a recommended slot, rounded to cents."""
    percent = config.RECOMMENDED_DISCOUNT_PERCENT if percent is None else percent
    price = Decimal(str(base_price))
    discount = (price * Decimal(percent) / Decimal(100)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    return discount, price - discount


def slots_from_availability(
    windows: Iterable[AvailabilityWindow],
    range_start: date,
    range_end: date,
    slot_size_minutes: int,
) -> list[TimeRange]:
    """Slots of ``slot_size_minutes`` that fit entirely inside each active weekly window."""
    step = timedelta(minutes=slot_size_minutes)
    windows = [window for window in windows if window.is_active]
    generated: list[TimeRange] = []

    current_day = range_start
    while current_day <= range_end:
        for window in windows:
            if window.day_of_week != js_weekday(current_day):
                continue

            window_end = datetime.combine(current_day, window.end_time)
            slot_start = datetime.combine(current_day, window.start_time)
            while slot_start + step <= window_end:
                generated.append(TimeRange(start=slot_start, end=slot_start + step))
                slot_start += step

        current_day += timedelta(days=1)

    generated.sort(key=lambda slot: slot.start)
    return generated


def slot_size_for(listing: ListingInfo, records: Iterable[SlotRecord] = ()) -> int:
    """The listing's slot size preference, else the size most stored slots have."""
    if listing.preferences.slot_size_minutes:
        return listing.preferences.slot_size_minutes

    sizes = Counter(int(record.range.duration.total_seconds() // 60) for record in records)
    if sizes:
        return sizes.most_common(1)[0][0]
    return config.SLOT_SIZE_MINUTES


def merge_slot_records(
by_date: Iterable[SlotRecord], by_datetime: Iterable[SlotRecord]) -> list[SlotRecord]:
    """Merge both storage shapes by id; the datetime-bearing record wins."""
    merged = {record.id: record for record in by_date}
    merged.update({record.id: record for record in by_datetime})
    return sorted(merged.values(), key=lambda record: (record.range.start, record.id))


def apply_min_notice(slots: Iterable[Slot], now: datetime, min_notice_hours: int) -> list[Slot]:
    earliest = now + timedelta(hours=max(min_notice_hours, 0))
    return [slot for slot in slots if slot.start_time >= earliest]


def filter_contiguous(slots: Sequence[Slot], required: int, slot_size_minutes: int) -> list[Slot]:
    """Keep an available slot only when it can start a run of ``required`` slots.

    Unavailable slots stay for rendering.
    """
    if required <= 1:
        return list(slots)

    step = timedelta(minutes=slot_size_minutes)
    available_starts = {slot.start_time for slot in slots if slot.is_available}
    kept: list[Slot] = []

    for slot in slots:
        if not slot.is_available:
            kept.append(slot)
            continue

        follow_ups = [slot.start_time + step * index for index in range(1, required)]
        if all(start in available_starts and start.date() == slot.start_time.date() for start in follow_ups):
            kept.append(slot)

    return kept


def is_adjacent(slot: Slot, appointment: RegularOccurrence, slot_size_minutes: int) -> bool:
    """Exactly one slot-step before or after the appointment, on the same weekday.

    Past appointments are moved onto the slot's date in whole weeks first.
    """
    days_apart = (slot.start_time.date() - appointment.start_time.date()).days
    if days_apart < 0 or days_apart % 7 != 0:
        return False

    appointment_range = appointment.time_range.shifted(timedelta(days=days_apart))
    step = timedelta(minutes=slot_size_minutes)
    return slot.start_time == appointment_range.end or slot.start_time + step == appointment_range.start


def mark_recommended(
    slots: Iterable[Slot],
    residence_appointments: Sequence[RegularOccurrence],
    slot_size_minutes: int,
) -> list[Slot]:
    marked = []
    for slot in slots:
        recommended = slot.is_available and any(
            is_adjacent(slot, appointment, slot_size_minutes) for appointment in residence_appointments
        )
        marked.append(slot.model_copy(update={'is_recommended': recommended}) if recommended else slot)
    return marked


def slot_stats(slots: Sequence[Slot]) -> dict:
    available = [slot for slot in slots if slot.is_available]
    return {
        'total': len(slots),
        'available': len(available),
        'days_with_slots': len({slot.date for slot in available}),
        'availability_rate': round(len(available) / len(slots) * 100, 1) if slots else 0.0,
    }


def _check_cancelled(cancel_event: threading.Event | None, stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info('Slot computation cancelled before %s', stage)
        raise RequestCancelled(f'Slot computation superseded before {stage}.')


def _first_conflict(record: SlotRecord, busy: Sequence[BusyInterval]) -> BusyInterval | None:
    for interval in busy:
        if interval.range.overlaps(record.range):
            return interval
    return None


class SlotAvailabilityGenerator:
    def __init__(
        self,
        repository: SchedulingRepository | None = None,
        clock: Callable[[], datetime] = datetime.now,
        projector: LegacyProjector | None = None,
        max_workers: int | None = None,
    ):
        self.repository = repository or SchedulingRepository()
        self.clock = clock
        self.projector = projector or LegacyProjector()
        self.max_workers = max_workers

    def resolve_listing(self, listing_id: int) -> ListingInfo:
        listing = self.repository.fetch_listing(listing_id)
        if listing is None:
            logger.warning('Listing %s not found; using placeholder service metadata', listing_id)
            return ListingInfo(
                id=listing_id,
                title=config.DEFAULT_SERVICE_TITLE,
                duration_minutes=config.DEFAULT_SERVICE_DURATION_MINUTES,
            )
        return listing

    def generate_slots(
        self,
        provider_id: int,
        listing_id: int,
        service_duration_minutes: int | None = None,
        week_index: int = 0,
        residencia_id: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[Slot]:
        now = self.clock()
        week_start, week_end = week_range(week_index, now)
        history_start = week_start - timedelta(weeks=config.RECOMMENDATION_HISTORY_WEEKS)
        repository = self.repository

        reads = run_reads(
            {
                'listing': lambda: self.resolve_listing(listing_id),
                'slots_by_date': lambda: repository.fetch_slot_rows_by_date(
                    provider_id, listing_id, week_start.date(), week_end.date(),
                ),
                'slots_by_datetime': lambda: repository.fetch_slot_rows_by_datetime(
                    provider_id, listing_id, week_start, week_end,
                ),
                'appointments': lambda: repository.fetch_appointments(
                    provider_id, history_start, week_end, ACTIVE_APPOINTMENT_STATUSES,
                ),
                'instances': lambda: repository.fetch_instances(provider_id, week_start, week_end),
                'rules': lambda: repository.fetch_rules(provider_id),
                'legacy': lambda: repository.fetch_legacy_appointments(provider_id, week_end),
                'blocked': lambda: repository.fetch_blocked_intervals(provider_id, week_start, week_end),
            },
            max_workers=self.max_workers,
        )
        _check_cancelled(cancel_event, 'busy time projection')

        listing: ListingInfo = reads['listing']
        rules = reads['rules']
        exceptions = repository.fetch_exceptions([rule.id for rule in rules], week_start.date(), week_end.date())
        busy = collect_busy_intervals(
            week_start,
            week_end,
            appointments=reads['appointments'],
            instances=reads['instances'],
            rules=rules,
            exceptions=exceptions,
            legacy=reads['legacy'],
            blocked=reads['blocked'],
            projector=self.projector,
        )
        _check_cancelled(cancel_event, 'slot filtering')

        records = merge_slot_records(reads['slots_by_date'], reads['slots_by_datetime'])
        slot_size = slot_size_for(listing, records)
        duration = service_duration_minutes or listing.duration_minutes

        slots: list[Slot] = []
        for record in records:
            if not week_start <= record.range.start <= week_end:
                continue
            if not record.is_available and record.slot_type != RESERVED_SLOT_TYPE:
                continue

            conflict = _first_conflict(record, busy)
            slots.append(
                Slot(
                    slot_id=record.id,
                    date=record.range.start.date(),
                    time=record.range.start.time(),
                    start_time=record.range.start,
                    end_time=record.range.end,
                    is_available=record.is_available and conflict is None,
                    slot_type=record.slot_type,
                    conflict_reason=conflict_reason(conflict).value if conflict else None,
                )
            )

        slots = apply_min_notice(slots, now, listing.preferences.min_notice_hours)
        slots = filter_contiguous(slots, required_slots(duration, slot_size), slot_size)
        _check_cancelled(cancel_event, 'recommendations')

        if residencia_id is not None:
            residence_appointments = [
                appointment
                for appointment in reads['appointments']
                if appointment.residencia_id == residencia_id and appointment.status in RECOMMENDATION_STATUSES
            ]
            slots = mark_recommended(slots, residence_appointments, slot_size)

        logger.info(
            'Generated %s slots (%s available) for provider %s listing %s week %s',
            len(slots),
            sum(1 for slot in slots if slot.is_available),
            provider_id,
            listing_id,
            week_index,
        )
        return slots

    def generate_for_request(self, request: SlotRequest, cancel_event: threading.Event | None = None) -> list[Slot]:
        return self.generate_slots(
            request.provider_id,
            request.listing_id,
            service_duration_minutes=request.service_duration_minutes,
            week_index=request.week_index,
            residencia_id=request.residencia_id,
            cancel_event=cancel_event,
        )

    def materialize_availability(self, provider_id: int, listing_id: int, week_index: int = 0) -> int:
        """Write slot rows for the week from the provider's weekly availability windows."""
        now = self.clock()
        week_start, week_end = week_range(week_index, now)
        listing = self.resolve_listing(listing_id)
        slot_size = slot_size_for(listing)

        windows = self.repository.fetch_availability_windows(provider_id)
        ranges = [
            slot
            for slot in slots_from_availability(windows, week_start.date(), week_end.date(), slot_size)
            if slot.start >= now
        ]
        created = self.repository.save_generated_slots(provider_id, listing_id, ranges)
        logger.info('Materialized %s slots for provider %s listing %s', created, provider_id, listing_id)
        return created
