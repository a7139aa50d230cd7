from datetime import date, datetime, time, timedelta
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError

from booking_engine.core import config
from booking_engine.core.errors import (
    CONFLICT_MESSAGES,
    BookingConflictError,
    BookingError,
    DataFetchError,
    InvalidRecurrenceError,
    RequestCancelled,
)
from booking_engine.database import ensure_scheduling_schema
from booking_engine.scheduling.coalescing import RequestCoalescer
from booking_engine.scheduling.overlap import ConflictDetector
from booking_engine.scheduling.recurrence import expand_rule, next_occurrence, normalize_recurrence
from booking_engine.scheduling.reconcile import InstanceReconciler
from booking_engine.scheduling.repository import SchedulingRepository
from booking_engine.scheduling.slots import SlotAvailabilityGenerator, slot_stats
from booking_engine.scheduling.types import BookingRequest, Slot, SlotRequest
from booking_engine.scheduling.validation import BookingValidator

router = APIRouter(tags=['scheduling'])

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and Postgres credentials.'
MAX_NOTES_LENGTH = 600
MAX_WEEK_INDEX = 52
MAX_CALENDAR_RANGE_DAYS = 93


class SlotListResponse(BaseModel):
    provider_id: int
    listing_id: int
    week_index: int
    slots: list[Slot]
    stats: dict
    recommended_discount_percent: int


class ConflictCheckRequest(BaseModel):
    provider_id: int
    start_time: datetime
    end_time: datetime
    exclude_id: int | None = None
    recurrence: str = 'none'

    @field_validator('recurrence')
    @classmethod
    def validate_recurrence(cls, value: str) -> str:
        return normalize_recurrence(value)


class ConflictCheckResponse(BaseModel):
    has_conflict: bool
    reason: str | None = None
    message: str | None = None
    details: dict = {}
    check_failed: bool = False


class CreateBookingRequest(BaseModel):
    provider_id: int
    client_id: int | None = None
    listing_id: int | None = None
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: int | None = None
    recurrence: str = 'none'
    residencia_id: int | None = None
    external_booking: bool = False
    client_name: str | None = None
    notes: str | None = None

    @field_validator('recurrence')
    @classmethod
    def validate_recurrence(cls, value: str) -> str:
        return normalize_recurrence(value)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration_minutes(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError('Duration must be a positive number of minutes.')
        return value

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_NOTES_LENGTH} characters or fewer.')

        return normalized


class BookingResponse(BaseModel):
    id: int
    provider_id: int
    client_id: int | None = None
    listing_id: int | None = None
    residencia_id: int | None = None
    start_time: datetime
    end_time: datetime
    status: str
    recurrence: str
    recurring_rule_id: int | None = None
    notes: str | None = None
    warnings: list[str] = []
    conflict_check_failed: bool = False


class RuleResponse(BaseModel):
    id: int
    provider_id: int | None = None
    client_id: int | None = None
    listing_id: int | None = None
    recurrence_type: str
    start_date: date
    start_time: time
    end_time: time
    day_of_week: int | None = None
    is_active: bool

    class Config:
        from_attributes = True


class OccurrenceWindowResponse(BaseModel):
    start_time: datetime
    end_time: datetime


class RuleOccurrencesResponse(BaseModel):
    rule_id: int
    recurrence_type: str
    occurrences: list[OccurrenceWindowResponse]
    next_occurrence: OccurrenceWindowResponse | None = None


class CalendarEntryResponse(BaseModel):
    id: str
    kind: str
    provider_id: int
    client_id: int | None = None
    listing_id: int | None = None
    start_time: datetime
    end_time: datetime
    status: str
    recurrence: str
    recurring_rule_id: int | None = None
    external_booking: bool = False
    client_name: str | None = None
    service_title: str | None = None
    notes: str | None = None


class MaterializeSlotsRequest(BaseModel):
    provider_id: int
    listing_id: int
    week_index: int = 0


class MaterializeSlotsResponse(BaseModel):
    created: int


def ensure_database_ready() -> None:
    try:
        ensure_scheduling_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def get_repository() -> SchedulingRepository:
    return SchedulingRepository()


def get_clock() -> Callable[[], datetime]:
    return datetime.now


def get_slot_coalescer(request: Request) -> RequestCoalescer:
    return request.app.state.slot_coalescer


def database_unavailable() -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=DATABASE_UNAVAILABLE_DETAIL)


@router.get('/slots', response_model=SlotListResponse)
def list_slots(
    provider_id: int = Query(...),
    listing_id: int = Query(...),
    service_duration_minutes: int | None = Query(default=None, ge=1),
    week_index: int = Query(default=0, ge=0, le=MAX_WEEK_INDEX),
    residencia_id: int | None = Query(default=None),
    repository: SchedulingRepository = Depends(get_repository),
    coalescer: RequestCoalescer = Depends(get_slot_coalescer),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    ensure_database_ready()

    generator = SlotAvailabilityGenerator(repository, clock=clock)
    slot_request = SlotRequest(
        provider_id=provider_id,
        listing_id=listing_id,
        service_duration_minutes=service_duration_minutes,
        week_index=week_index,
        residencia_id=residencia_id,
    )

    try:
        slots = coalescer.run(slot_request, generator.generate_for_request)
    except RequestCancelled as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='This request was replaced by a newer one.',
        ) from exc
    except (DataFetchError, SQLAlchemyError) as exc:
        raise database_unavailable() from exc

    return SlotListResponse(
        provider_id=provider_id,
        listing_id=listing_id,
        week_index=week_index,
        slots=slots,
        stats=slot_stats(slots),
        recommended_discount_percent=config.RECOMMENDED_DISCOUNT_PERCENT,
    )


@router.post('/slots/materialize', response_model=MaterializeSlotsResponse, status_code=status.HTTP_201_CREATED)
def materialize_slots(
    data: MaterializeSlotsRequest,
    repository: SchedulingRepository = Depends(get_repository),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    ensure_database_ready()

    try:
        created = SlotAvailabilityGenerator(repository, clock=clock).materialize_availability(
            data.provider_id, data.listing_id, data.week_index,
        )
    except (DataFetchError, SQLAlchemyError) as exc:
        raise database_unavailable() from exc

    return MaterializeSlotsResponse(created=created)


@router.post('/conflicts', response_model=ConflictCheckResponse)
def check_conflicts(data: ConflictCheckRequest, repository: SchedulingRepository = Depends(get_repository)):
    if data.end_time <= data.start_time:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='End time must be after start time.',
        )

    ensure_database_ready()

    result = ConflictDetector(repository).check_conflict(
        data.provider_id,
        data.start_time,
        data.end_time,
        exclude_id=data.exclude_id,
        recurrence=data.recurrence,
    )

    message = None
    if result.has_conflict:
        message = CONFLICT_MESSAGES[result.reason]
        if result.details.get('future_date'):
            message = f"{message} (future occurrence on {result.details['future_date']})"

    return ConflictCheckResponse(
        has_conflict=result.has_conflict,
        reason=result.reason.value if result.reason else None,
        message=message,
        details=result.details,
        check_failed=result.check_failed,
    )


@router.post('/appointments', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    repository: SchedulingRepository = Depends(get_repository),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    ensure_database_ready()

    try:
        end_time = data.end_time
        if end_time is None:
            duration_minutes = data.duration_minutes
            if duration_minutes is None and data.listing_id is not None:
                duration_minutes = SlotAvailabilityGenerator(repository, clock=clock).resolve_listing(
                    data.listing_id,
                ).duration_minutes
            end_time = data.start_time + timedelta(
                minutes=duration_minutes or config.DEFAULT_SERVICE_DURATION_MINUTES,
            )

        outcome = BookingValidator(repository, clock=clock).book(
            BookingRequest(
                provider_id=data.provider_id,
                client_id=data.client_id,
                listing_id=data.listing_id,
                start_time=data.start_time.replace(second=0, microsecond=0),
                end_time=end_time.replace(second=0, microsecond=0),
                recurrence=data.recurrence,
                residencia_id=data.residencia_id,
                external_booking=data.external_booking,
                client_name=data.client_name,
                notes=data.notes,
            )
        )
    except InvalidRecurrenceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BookingConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
    except BookingError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message) from exc
    except DataFetchError as exc:
        raise database_unavailable() from exc

    appointment = outcome.appointment
    return BookingResponse(
        id=int(appointment.id),
        provider_id=appointment.provider_id,
        client_id=appointment.client_id,
        listing_id=appointment.listing_id,
        residencia_id=appointment.residencia_id,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        status=appointment.status,
        recurrence=appointment.recurrence,
        recurring_rule_id=appointment.recurring_rule_id,
        notes=appointment.notes,
        warnings=outcome.warnings,
        conflict_check_failed=outcome.conflict_check_failed,
    )


@router.post('/rules/{rule_id}/cancel', response_model=RuleResponse)
def cancel_rule(rule_id: int, repository: SchedulingRepository = Depends(get_repository)):
    ensure_database_ready()

    try:
        rule = BookingValidator(repository).cancel_rule(rule_id)
    except BookingError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message) from exc

    if rule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Recurring rule not found.',
        )

    return rule


@router.get('/rules/{rule_id}/occurrences', response_model=RuleOccurrencesResponse)
def list_rule_occurrences(
    rule_id: int,
    start: date = Query(...),
    end: date = Query(...),
    repository: SchedulingRepository = Depends(get_repository),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    if end < start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='End date must not be before start date.',
        )

    ensure_database_ready()

    try:
        rule = repository.fetch_rule(rule_id)
        if rule is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Recurring rule not found.',
            )
        exceptions = repository.fetch_exceptions([rule_id], start, end)
    except DataFetchError as exc:
        raise database_unavailable() from exc

    upcoming = next_occurrence(rule, clock()) if rule.is_active else None

    return RuleOccurrencesResponse(
        rule_id=rule_id,
        recurrence_type=normalize_recurrence(rule.recurrence_type),
        occurrences=[
            OccurrenceWindowResponse(start_time=occurrence.start, end_time=occurrence.end)
            for occurrence in expand_rule(rule, start, end, exceptions)
        ],
        next_occurrence=(
            OccurrenceWindowResponse(start_time=upcoming.start, end_time=upcoming.end) if upcoming else None
        ),
    )


@router.get('/calendar', response_model=list[CalendarEntryResponse])
def list_calendar(
    provider_id: int = Query(...),
    start: date = Query(...),
    end: date = Query(...),
    repository: SchedulingRepository = Depends(get_repository),
):
    if end < start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='End date must not be before start date.',
        )
    if (end - start).days > MAX_CALENDAR_RANGE_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Calendar range cannot exceed {MAX_CALENDAR_RANGE_DAYS} days.',
        )

    ensure_database_ready()

    try:
        calendar = InstanceReconciler(repository).build_calendar(
            provider_id,
            datetime.combine(start, time.min),
            datetime.combine(end, time.max),
        )
    except DataFetchError as exc:
        raise database_unavailable() from exc

    return [CalendarEntryResponse(**occurrence.model_dump()) for occurrence in calendar]
