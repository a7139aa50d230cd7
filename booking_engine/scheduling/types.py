"""Value types shared by the scheduling engine.

Everything downstream of the stores works on these types only: storage rows
are normalized into them right after they are fetched.
"""

from datetime import date, datetime, time, timedelta
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from booking_engine.core.errors import ConflictReason


class TimeRange(BaseModel):
    """A half-open ``[start, end)`` window of local wall-clock time."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    def overlaps(self, other: 'TimeRange') -> bool:
        return self.start < other.end and self.end > other.start

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def shifted(self, delta: timedelta) -> 'TimeRange':
        return TimeRange(start=self.start + delta, end=self.end + delta)


class RuleSpec(BaseModel):
    """The recurrence-relevant fields of a recurring rule."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int | None = None
    provider_id: int | None = None
    client_id: int | None = None
    listing_id: int | None = None
    recurrence_type: str
    start_date: date
    start_time: time
    end_time: time
    day_of_week: int | None = None
    day_of_month: int | None = None
    is_active: bool = True
    client_name: str | None = None
    notes: str | None = None


class ExceptionSpec(BaseModel):
    """A cancelled or rescheduled date of a rule's projection."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    recurring_rule_id: int | None = None
    exception_date: date
    action_type: str
    new_start_time: datetime | None = None
    new_end_time: datetime | None = None


REGULAR = 'regular'
PERSISTED = 'persisted'
VIRTUAL = 'virtual'

# Lower wins when two sources produce the same identity key.
OCCURRENCE_PRIORITY = {
    REGULAR: 0,
    PERSISTED: 1,
    VIRTUAL: 2,
}


class _OccurrenceBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    provider_id: int
    client_id: int | None = None
    listing_id: int | None = None
    residencia_id: int | None = None
    start_time: datetime
    end_time: datetime
    status: str
    recurrence: str = 'none'
    recurring_rule_id: int | None = None
    external_booking: bool = False
    notes: str | None = None
    client_name: str | None = None
    service_title: str | None = None

    @property
    def identity_key(self) -> tuple[int, str, str]:
        return (self.provider_id, self.start_time.isoformat(), self.end_time.isoformat())

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(start=self.start_time, end=self.end_time)


class RegularOccurrence(_OccurrenceBase):
    kind: Literal['regular'] = REGULAR


class PersistedOccurrence(_OccurrenceBase):
    kind: Literal['persisted'] = PERSISTED


class VirtualOccurrence(_OccurrenceBase):
    kind: Literal['virtual'] = VIRTUAL


Occurrence = Annotated[
    Union[RegularOccurrence, PersistedOccurrence, VirtualOccurrence],
    Field(discriminator='kind'),
]


class BusyInterval(BaseModel):
    """Provider time that is already spoken for, with enough context to explain why."""

    model_config = ConfigDict(frozen=True)

    range: TimeRange
    source: str  # appointment / instance / rule / legacy / blocked
    source_id: str | None = None
    is_external: bool = False
    is_recurring: bool = False
    residencia_id: int | None = None
    status: str | None = None


class ConflictResult(BaseModel):
    has_conflict: bool
    reason: ConflictReason | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    check_failed: bool = False


class SlotRecord(BaseModel):
    """A provider time slot normalized from either storage shape."""

    model_config = ConfigDict(frozen=True)

    id: int
    provider_id: int
    listing_id: int
    range: TimeRange
    is_available: bool = True
    slot_type: str = 'generated'


class Slot(BaseModel):
    slot_id: int
    date: date
    time: time
    start_time: datetime
    end_time: datetime
    is_available: bool
    is_recommended: bool = False
    slot_type: str = 'generated'
    conflict_reason: str | None = None


class SlotPreferences(BaseModel):
    min_notice_hours: int = 0
    slot_size_minutes: int | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class ListingInfo(BaseModel):
    id: int | None = None
    title: str
    duration_minutes: int
    preferences: SlotPreferences = Field(default_factory=SlotPreferences)


class SlotRequest(BaseModel):
    """Immutable signature of one slot computation, used for request coalescing."""

    model_config = ConfigDict(frozen=True)

    provider_id: int
    listing_id: int
    service_duration_minutes: int | None = None
    week_index: int = 0
    residencia_id: int | None = None


class AvailabilityWindow(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool = True


class BookingRequest(BaseModel):
    """An appointment (and, when recurring, its rule) waiting to be written."""

    provider_id: int
    client_id: int | None = None
    listing_id: int | None = None
    start_time: datetime
    end_time: datetime
    recurrence: str = 'none'
    residencia_id: int | None = None
    external_booking: bool = False
    client_name: str | None = None
    notes: str | None = None


class BookingOutcome(BaseModel):
    appointment: RegularOccurrence
    rule: RuleSpec | None = None
    warnings: list[str] = Field(default_factory=list)
    conflict_check_failed: bool = False
