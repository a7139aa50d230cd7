"""Read and write access to the scheduling tables.

Every read opens and closes its own session, so independent reads of one
operation can run on different threads. Rows are normalized into the value
types of ``booking_engine.scheduling.types`` before they leave this module.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, TypeVar

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.errors import DataFetchError
from booking_engine.database import SessionLocal
from booking_engine.models.appointment import Appointment
from booking_engine.models.listing import ClientResidence, Listing
from booking_engine.models.recurring import RecurringException, RecurringInstance, RecurringRule
from booking_engine.models.time_slot import ProviderAvailability, ProviderTimeSlot
from booking_engine.scheduling.recurrence import is_recurring
from booking_engine.scheduling.types import (
    AvailabilityWindow,
    BusyInterval,
    ExceptionSpec,
    ListingInfo,
    PersistedOccurrence,
    RegularOccurrence,
    RuleSpec,
    SlotPreferences,
    SlotRecord,
    TimeRange,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

ACTIVE_APPOINTMENT_STATUSES = ('pending', 'confirmed', 'completed', 'scheduled')
ACTIVE_INSTANCE_STATUSES = ('scheduled', 'confirmed')
BLOCKED_SLOT_TYPE = 'blocked'
RESERVED_SLOT_TYPE = 'reserved'


def _combine(slot_date: date, start, end) -> TimeRange:
    slot_start = datetime.combine(slot_date, start)
    slot_end = datetime.combine(slot_date, end)
    if slot_end <= slot_start:
        slot_end += timedelta(days=1)
    return TimeRange(start=slot_start, end=slot_end)


def slot_range_from_row(row: ProviderTimeSlot, prefer_datetime: bool = True) -> TimeRange | None:
    """Normalize either storage shape of a slot row into one ``TimeRange``."""
    if prefer_datetime and row.slot_datetime_start is not None and row.slot_datetime_end is not None:
        return TimeRange(start=row.slot_datetime_start, end=row.slot_datetime_end)
    if row.slot_date is not None and row.start_time is not None and row.end_time is not None:
        return _combine(row.slot_date, row.start_time, row.end_time)
    if row.slot_datetime_start is not None and row.slot_datetime_end is not None:
        return TimeRange(start=row.slot_datetime_start, end=row.slot_datetime_end)
    return None


def _slot_record(row: ProviderTimeSlot, prefer_datetime: bool) -> SlotRecord | None:
    slot_range = slot_range_from_row(row, prefer_datetime=prefer_datetime)
    if slot_range is None:
        logger.warning('Skipping time slot %s with no usable start/end', row.id)
        return None
    return SlotRecord(
        id=row.id,
        provider_id=row.provider_id,
        listing_id=row.listing_id,
        range=slot_range,
        is_available=bool(row.is_available),
        slot_type=row.slot_type or 'generated',
    )


def _regular_occurrence(row: Appointment, title: str | None = None) -> RegularOccurrence:
    return RegularOccurrence(
        id=str(row.id),
        provider_id=row.provider_id,
        client_id=row.client_id,
        listing_id=row.listing_id,
        residencia_id=row.residencia_id,
        start_time=row.start_time,
        end_time=row.end_time,
        status=row.status or 'pending',
        recurrence=row.recurrence or 'none',
        recurring_rule_id=row.recurring_rule_id,
        external_booking=bool(row.external_booking),
        notes=row.notes,
        service_title=title,
    )


def _listing_info(row: Listing) -> ListingInfo:
    raw_preferences = dict(row.slot_preferences or {})
    min_notice_hours = raw_preferences.pop('min_notice_hours', None)
    slot_size_minutes = raw_preferences.pop('slot_size_minutes', None)

    preferences = SlotPreferences(
        min_notice_hours=config.DEFAULT_MIN_NOTICE_HOURS if min_notice_hours is None else int(min_notice_hours),
        slot_size_minutes=int(slot_size_minutes) if slot_size_minutes else None,
        extra=raw_preferences,
    )
    return ListingInfo(
        id=row.id,
        title=row.title or config.DEFAULT_SERVICE_TITLE,
        duration_minutes=row.duration_minutes or config.DEFAULT_SERVICE_DURATION_MINUTES,
        preferences=preferences,
    )


class SchedulingRepository:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def _read(self, description: str, query: Callable[[Session], T]) -> T:
        db = self.session_factory()
        try:
            return query(db)
        except SQLAlchemyError as exc:
            logger.exception('Failed to fetch %s', description)
            raise DataFetchError(f'Could not fetch {description}.') from exc
        finally:
            db.close()

    # Appointments

    def fetch_appointments(
        self,
        provider_id: int,
        range_start: datetime,
        range_end: datetime,
        statuses: Iterable[str] = ACTIVE_APPOINTMENT_STATUSES,
        exclude_id: int | None = None,
    ) -> list[RegularOccurrence]:
        def query(db: Session) -> list[RegularOccurrence]:
            filters = [
                Appointment.provider_id == provider_id,
                Appointment.status.in_(tuple(statuses)),
                Appointment.start_time < range_end,
                Appointment.end_time > range_start,
            ]
            if exclude_id is not None:
                filters.append(Appointment.id != exclude_id)

            rows = db.query(Appointment, Listing.title).outerjoin(
                Listing, Listing.id == Appointment.listing_id,
            ).filter(*filters).order_by(Appointment.start_time.asc()).all()

            return [_regular_occurrence(row, title) for row, title in rows]

        return self._read('appointments', query)

    def fetch_legacy_appointments(
        self,
        provider_id: int,
        started_before: datetime,
        statuses: Iterable[str] = ACTIVE_APPOINTMENT_STATUSES,
        exclude_id: int | None = None,
    ) -> list[RegularOccurrence]:
        """Appointments that repeat through their ``recurrence`` tag alone."""

        def query(db: Session) -> list[RegularOccurrence]:
            filters = [
                Appointment.provider_id == provider_id,
                Appointment.status.in_(tuple(statuses)),
                Appointment.recurrence.is_not(None),
                Appointment.recurring_rule_id.is_(None),
                Appointment.start_time < started_before,
            ]
            if exclude_id is not None:
                filters.append(Appointment.id != exclude_id)

            rows = db.query(Appointment).filter(*filters).order_by(Appointment.start_time.asc()).all()
            return [_regular_occurrence(row) for row in rows if is_recurring(row.recurrence)]

        return self._read('legacy recurring appointments', query)

    def insert_appointment(self, values: dict) -> RegularOccurrence:
        """Insert one appointment; integrity and connection errors propagate after rollback."""
        db = self.session_factory()
        try:
            appointment = Appointment(**values)
            db.add(appointment)
            db.commit()
            db.refresh(appointment)
            return _regular_occurrence(appointment)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    # Recurring rules, instances and exceptions

    def fetch_rules(self, provider_id: int, active_only: bool = True) -> list[RuleSpec]:
        def query(db: Session) -> list[RuleSpec]:
            rules = db.query(RecurringRule).filter(RecurringRule.provider_id == provider_id)
            if active_only:
                rules = rules.filter(RecurringRule.is_active.is_(True))
            return [RuleSpec.model_validate(rule) for rule in rules.order_by(RecurringRule.id.asc()).all()]

        return self._read('recurring rules', query)

    def fetch_rule(self, rule_id: int) -> RuleSpec | None:
        def query(db: Session) -> RuleSpec | None:
            rule = db.query(RecurringRule).filter(RecurringRule.id == rule_id).first()
            return RuleSpec.model_validate(rule) if rule else None

        return self._read('recurring rule', query)

    def fetch_exceptions(self, rule_ids: Iterable[int], range_start: date, range_end: date) -> list[ExceptionSpec]:
        rule_ids = tuple(rule_ids)
        if not rule_ids:
            return []

        def query(db: Session) -> list[ExceptionSpec]:
            exceptions = db.query(RecurringException).filter(
                RecurringException.recurring_rule_id.in_(rule_ids),
                RecurringException.exception_date >= range_start,
                RecurringException.exception_date <= range_end,
            ).all()
            return [ExceptionSpec.model_validate(exception) for exception in exceptions]

        return self._read('recurring exceptions', query)

    def fetch_instances(
        self,
        provider_id: int,
        range_start: datetime,
        range_end: datetime,
        statuses: Iterable[str] | None = None,
    ) -> list[PersistedOccurrence]:
        """Materialized instances of the provider's rules; ``statuses=None`` means all of them."""

        def query(db: Session) -> list[PersistedOccurrence]:
            instances = db.query(RecurringInstance, RecurringRule, Listing.title).join(
                RecurringRule, RecurringRule.id == RecurringInstance.recurring_rule_id,
            ).outerjoin(
                Listing, Listing.id == RecurringRule.listing_id,
            ).filter(
                RecurringRule.provider_id == provider_id,
                RecurringInstance.start_time < range_end,
                RecurringInstance.end_time > range_start,
            )
            if statuses is not None:
                instances = instances.filter(RecurringInstance.status.in_(tuple(statuses)))

            return [
                PersistedOccurrence(
                    id=f'instance-{instance.id}',
                    provider_id=rule.provider_id,
                    client_id=rule.client_id,
                    listing_id=rule.listing_id,
                    start_time=instance.start_time,
                    end_time=instance.end_time,
                    status=instance.status or 'scheduled',
                    recurrence=rule.recurrence_type,
                    recurring_rule_id=rule.id,
                    notes=instance.notes,
                    client_name=rule.client_name,
                    service_title=title,
                )
                for instance, rule, title in instances.order_by(RecurringInstance.start_time.asc()).all()
            ]

        return self._read('recurring instances', query)

    def insert_rule(self, rule: RuleSpec) -> RuleSpec:
        db = self.session_factory()
        try:
            row = RecurringRule(**rule.model_dump(exclude={'id'}))
            db.add(row)
            db.commit()
            db.refresh(row)
            return RuleSpec.model_validate(row)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def deactivate_rule(self, rule_id: int) -> RuleSpec | None:
        db = self.session_factory()
        try:
            row = db.query(RecurringRule).filter(RecurringRule.id == rule_id).first()
            if row is None:
                return None
            row.is_active = False
            db.commit()
            db.refresh(row)
            return RuleSpec.model_validate(row)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    # Slots and availability

    def fetch_slot_rows_by_date(
        self,
        provider_id: int,
        listing_id: int,
        range_start: date,
        range_end: date,
    ) -> list[SlotRecord]:
        """Slot rows stored as ``slot_date`` + wall-clock times."""

        def query(db: Session) -> list[SlotRecord]:
            rows = db.query(ProviderTimeSlot).filter(
                ProviderTimeSlot.provider_id == provider_id,
                ProviderTimeSlot.listing_id == listing_id,
                ProviderTimeSlot.slot_date >= range_start,
                ProviderTimeSlot.slot_date <= range_end,
            ).all()
            return [record for record in (_slot_record(row, prefer_datetime=False) for row in rows) if record]

        return self._read('time slots by date', query)

    def fetch_slot_rows_by_datetime(
        self,
        provider_id: int,
        listing_id: int,
        range_start: datetime,
        range_end: datetime,
    ) -> list[SlotRecord]:
        """Slot rows that carry full start/end datetimes."""

        def query(db: Session) -> list[SlotRecord]:
            rows = db.query(ProviderTimeSlot).filter(
                ProviderTimeSlot.provider_id == provider_id,
                ProviderTimeSlot.listing_id == listing_id,
                ProviderTimeSlot.slot_datetime_start >= range_start,
                ProviderTimeSlot.slot_datetime_start <= range_end,
            ).all()
            return [record for record in (_slot_record(row, prefer_datetime=True) for row in rows) if record]

        return self._read('time slots by datetime', query)

    def fetch_blocked_intervals(self, provider_id: int, range_start: datetime, range_end: datetime) -> list[BusyInterval]:
        def query(db: Session) -> list[BusyInterval]:
            rows = db.query(ProviderTimeSlot).filter(
                ProviderTimeSlot.provider_id == provider_id,
                ProviderTimeSlot.slot_type == BLOCKED_SLOT_TYPE,
                or_(
                    and_(
                        ProviderTimeSlot.slot_date >= range_start.date(),
                        ProviderTimeSlot.slot_date <= range_end.date(),
                    ),
                    and_(
                        ProviderTimeSlot.slot_datetime_start < range_end,
                        ProviderTimeSlot.slot_datetime_end > range_start,
                    ),
                ),
            ).all()

            window = TimeRange(start=range_start, end=range_end)
            intervals = []
            for row in rows:
                slot_range = slot_range_from_row(row)
                if slot_range is not None and slot_range.overlaps(window):
                    intervals.append(BusyInterval(range=slot_range, source='blocked', source_id=str(row.id)))
            return intervals

        return self._read('blocked time slots', query)

    def fetch_availability_windows(self, provider_id: int) -> list[AvailabilityWindow]:
        def query(db: Session) -> list[AvailabilityWindow]:
            windows = db.query(ProviderAvailability).filter(
                ProviderAvailability.provider_id == provider_id,
                ProviderAvailability.is_active.is_(True),
            ).order_by(ProviderAvailability.day_of_week.asc(), ProviderAvailability.start_time.asc()).all()
            return [AvailabilityWindow.model_validate(window) for window in windows]

        return self._read('availability windows', query)

    def save_generated_slots(self, provider_id: int, listing_id: int, ranges: Iterable[TimeRange]) -> int:
        """Insert generated slot rows, skipping starts that already have a row."""
        ranges = list(ranges)
        if not ranges:
            return 0

        db = self.session_factory()
        try:
            existing_starts = {
                start
                for (start,) in db.query(ProviderTimeSlot.slot_datetime_start).filter(
                    ProviderTimeSlot.provider_id == provider_id,
                    ProviderTimeSlot.listing_id == listing_id,
                    ProviderTimeSlot.slot_datetime_start >= min(slot.start for slot in ranges),
                    ProviderTimeSlot.slot_datetime_start <= max(slot.start for slot in ranges),
                ).all()
            }

            created = 0
            for slot in ranges:
                if slot.start in existing_starts:
                    continue
                db.add(
                    ProviderTimeSlot(
                        provider_id=provider_id,
                        listing_id=listing_id,
                        slot_date=slot.start.date(),
                        start_time=slot.start.time(),
                        end_time=slot.end.time(),
                        slot_datetime_start=slot.start,
                        slot_datetime_end=slot.end,
                        is_available=True,
                        slot_type='generated',
                    )
                )
                created += 1

            db.commit()
            return created
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    # Lookups

    def fetch_listing(self, listing_id: int) -> ListingInfo | None:
        def query(db: Session) -> ListingInfo | None:
            listing = db.query(Listing).filter(Listing.id == listing_id).first()
            return _listing_info(listing) if listing else None

        return self._read('listing', query)

    def fetch_residence_id(self, client_id: int) -> int | None:
        def query(db: Session) -> int | None:
            residence = db.query(ClientResidence).filter(ClientResidence.client_id == client_id).first()
            return residence.residencia_id if residence else None

        return self._read('client residence', query)


def run_reads(reads: dict[str, Callable[[], object]], max_workers: int | None = None) -> dict[str, object]:
    """Run independent reads on a thread pool and join them.

    The first failure is re-raised once every read has finished.
    """
    workers = min(max_workers or config.FETCH_MAX_WORKERS, len(reads)) or 1
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {name: executor.submit(read) for name, read in reads.items()}
    return {name: future.result() for name, future in futures.items()}
