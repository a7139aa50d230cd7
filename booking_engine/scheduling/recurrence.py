"""
Recurrence rule engine.

Turns a recurring rule into concrete ``TimeRange`` occurrences inside a
requested window. Every function here is pure: no store access, no clock.

Weekdays follow the stored convention of the booking tables: 0 = Sunday,
1 = Monday ... 6 = Saturday.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

from booking_engine.core import config
from booking_engine.scheduling.types import ExceptionSpec, RuleSpec, TimeRange

logger = logging.getLogger(__name__)

ONE_TIME_TYPES = {'once', 'none'}
INTERVAL_DAYS = {
    'daily': 1,
    'weekly': 7,
    'biweekly': 14,
    'triweekly': 21,
}
KNOWN_RECURRENCE_TYPES = ONE_TIME_TYPES | set(INTERVAL_DAYS) | {'monthly'}

# Indexed by the stored weekday, 0 = Sunday.
SUNDAY_FIRST_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)

_RECURRENCE_ALIASES = {
    'once': 'once',
    'single': 'once',
    'una vez': 'once',
    'daily': 'daily',
    'day': 'daily',
    'diaria': 'daily',
    'weekly': 'weekly',
    'week': 'weekly',
    'semanal': 'weekly',
    'biweekly': 'biweekly',
    'bi-weekly': 'biweekly',
    'quincenal': 'biweekly',
    'cada dos semanas': 'biweekly',
    'triweekly': 'triweekly',
    'tri-weekly': 'triweekly',
    'trisemanal': 'triweekly',
    'monthly': 'monthly',
    'month': 'monthly',
    'mensual': 'monthly',
    'none': 'none',
    'no': 'none',
    'ninguno': 'none',
}


def normalize_recurrence(recurrence: str | None) -> str:
    """Map a stored recurrence tag onto its canonical name.

    Unknown tags are returned lower-cased so callers can decide what to do
    with them; empty values mean ``none``.
    """
    if not recurrence:
        return 'none'
    normalized = recurrence.strip().lower()
    if not normalized:
        return 'none'
    return _RECURRENCE_ALIASES.get(normalized, normalized)


def is_recurring(recurrence: str | None) -> bool:
    return normalize_recurrence(recurrence) not in ONE_TIME_TYPES


def js_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


def next_weekday_on_or_after(value: date, weekday: int) -> date:
    return value + relativedelta(weekday=SUNDAY_FIRST_WEEKDAYS[weekday])


def week_pattern(value: date) -> tuple[int, int]:
    """Return ``(ordinal, weekday)``: 2024-07-05 is the 1st Friday -> ``(1, 5)``."""
    return (value.day - 1) // 7 + 1, js_weekday(value)


def nth_weekday_of_month(year: int, month: int, weekday: int, ordinal: int) -> date | None:
    candidate = date(year, month, 1) + relativedelta(weekday=SUNDAY_FIRST_WEEKDAYS[weekday](+ordinal))
    if candidate.month != month:
        return None
    return candidate


def _month_start(value: date, months: int) -> date:
    return value + relativedelta(months=months, day=1)


class RecurrenceStrategy:
    """Walks the dates of one recurrence pattern."""

    name = 'base'

    def first_on_or_after(self, not_before: date) -> date:
        raise NotImplementedError

    def next_after(self, current: date) -> date:
        raise NotImplementedError


class IntervalStrategy(RecurrenceStrategy):
    """Fixed-interval patterns anchored on a weekday: weekly, biweekly, triweekly."""

    def __init__(self, anchor: date, weekday: int, interval_days: int, name: str):
        self.anchor = next_weekday_on_or_after(anchor, weekday)
        self.weekday = weekday
        self.interval = timedelta(days=interval_days)
        self.name = name

    def first_on_or_after(self, not_before: date) -> date:
        candidate = next_weekday_on_or_after(max(self.anchor, not_before), self.weekday)
        while (candidate - self.anchor).days % self.interval.days != 0:
            candidate += timedelta(days=7)
        return candidate

    def next_after(self, current: date) -> date:
        return current + self.interval


class DailyStrategy(RecurrenceStrategy):
    name = 'daily'

    def __init__(self, anchor: date):
        self.anchor = anchor

    def first_on_or_after(self, not_before: date) -> date:
        return max(self.anchor, not_before)

    def next_after(self, current: date) -> date:
        return current + timedelta(days=1)


class MonthlyOrdinalStrategy(RecurrenceStrategy):
    """Same ordinal weekday every month ("2nd Tuesday").

    Months without that ordinal are skipped, never clamped to the last
    matching weekday. When no month within ``search_months`` has it, the same
    day-of-month is used instead.
    """

    name = 'monthly'

    def __init__(
        self,
        anchor: date,
        weekday: int | None = None,
        fallback_day: int | None = None,
        search_months: int | None = None,
    ):
        if weekday is not None and js_weekday(anchor) != weekday:
            anchor = next_weekday_on_or_after(anchor, weekday)
        self.anchor = anchor
        self.ordinal, self.weekday = week_pattern(anchor)
        self.fallback_day = fallback_day or anchor.day
        self.search_months = search_months or config.MONTHLY_SEARCH_MONTHS

    def occurrence_in(self, year: int, month: int) -> date | None:
        return nth_weekday_of_month(year, month, self.weekday, self.ordinal)

    def first_on_or_after(self, not_before: date) -> date:
        start = max(self.anchor, not_before)
        for offset in range(self.search_months + 1):
            month = _month_start(start, offset)
            candidate = self.occurrence_in(month.year, month.month)
            if candidate is not None and candidate >= start:
                return candidate
        return self._same_day_of_month(start, 1)

    def next_after(self, current: date) -> date:
        for offset in range(1, self.search_months + 1):
            month = _month_start(current, offset)
            candidate = self.occurrence_in(month.year, month.month)
            if candidate is not None:
                return candidate
        logger.warning(
            'No ordinal %s of weekday %s within %s months after %s; using day-of-month %s',
            self.ordinal,
            self.weekday,
            self.search_months,
            current,
            self.fallback_day,
        )
        return self._same_day_of_month(current, 1)

    def _same_day_of_month(self, value: date, months_ahead: int) -> date:
        # relativedelta clamps the day to the end of shorter months.
        return value + relativedelta(months=months_ahead, day=self.fallback_day)


class FourWeekMonthlyStrategy(RecurrenceStrategy):
    """Legacy "monthly" approximation: every 28 days on the anchor's weekday."""

    name = 'monthly_four_week'

    def __init__(self, anchor: date):
        self.anchor = anchor

    def first_on_or_after(self, not_before: date) -> date:
        if not_before <= self.anchor:
            return self.anchor
        periods = -(-(not_before - self.anchor).days // 28)
        return self.anchor + timedelta(days=28 * periods)

    def next_after(self, current: date) -> date:
        return current + timedelta(days=28)


def strategy_for(rule: RuleSpec, monthly_mode: str = 'ordinal') -> RecurrenceStrategy | None:
    """Pick the strategy for a rule; ``None`` for one-time bookings."""
    recurrence_type = normalize_recurrence(rule.recurrence_type)
    if recurrence_type in ONE_TIME_TYPES:
        return None

    weekday = rule.day_of_week if rule.day_of_week is not None else js_weekday(rule.start_date)

    if recurrence_type == 'monthly':
        if monthly_mode == 'four_week':
            return FourWeekMonthlyStrategy(rule.start_date)
        return MonthlyOrdinalStrategy(rule.start_date, rule.day_of_week, rule.day_of_month)
    if recurrence_type == 'daily':
        return DailyStrategy(rule.start_date)
    if recurrence_type in INTERVAL_DAYS:
        return IntervalStrategy(rule.start_date, weekday, INTERVAL_DAYS[recurrence_type], recurrence_type)

    logger.warning('Unknown recurrence type %r on rule %s; falling back to daily', rule.recurrence_type, rule.id)
    return DailyStrategy(rule.start_date)


def apply_rule_times(rule: RuleSpec, on_date: date) -> TimeRange:
    start = datetime.combine(on_date, rule.start_time)
    end = datetime.combine(on_date, rule.end_time)
    if end <= start:
        end += timedelta(days=1)
    return TimeRange(start=start, end=end)


def _as_range_start(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _as_range_end(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.max)


class OccurrenceSeries:
    """Finite, restartable sequence of a rule's occurrences inside a window.

    Each iteration walks the strategy from scratch, so the same series can be
    consumed any number of times.
    """

    def __init__(
        self,
        rule: RuleSpec,
        range_start: date | datetime,
        range_end: date | datetime,
        max_iterations: int | None = None,
        strategy: RecurrenceStrategy | None = None,
        monthly_mode: str = 'ordinal',
    ):
        self.rule = rule
        self.range_start = _as_range_start(range_start)
        self.range_end = _as_range_end(range_end)
        self.max_iterations = max_iterations or config.RECURRENCE_MAX_ITERATIONS
        self.strategy = strategy or strategy_for(rule, monthly_mode)

    def __iter__(self) -> Iterator[TimeRange]:
        if self.range_end < self.range_start:
            return

        if self.strategy is None:
            occurrence = apply_rule_times(self.rule, self.rule.start_date)
            if self.range_start <= occurrence.start <= self.range_end:
                yield occurrence
            return

        last_date = self.range_end.date()
        current = self.strategy.first_on_or_after(max(self.rule.start_date, self.range_start.date()))
        iterations = 0

        while current <= last_date and iterations < self.max_iterations:
            occurrence = apply_rule_times(self.rule, current)
            if self.range_start <= occurrence.start <= self.range_end:
                yield occurrence
            current = self.strategy.next_after(current)
            iterations += 1

        if current <= last_date:
            logger.warning(
                'Recurrence safety cap of %s iterations reached for rule %s before %s',
                self.max_iterations,
                self.rule.id,
                last_date,
            )


def occurrences(
    rule: RuleSpec,
    range_start: date | datetime,
    range_end: date | datetime,
    max_iterations: int | None = None,
    monthly_mode: str = 'ordinal',
) -> OccurrenceSeries:
    if not isinstance(rule, RuleSpec):
        rule = RuleSpec.model_validate(rule)
    return OccurrenceSeries(rule, range_start, range_end, max_iterations=max_iterations, monthly_mode=monthly_mode)


def expand_rule(
    rule: RuleSpec,
    range_start: date | datetime,
    range_end: date | datetime,
    exceptions: Iterable[ExceptionSpec] = (),
) -> list[TimeRange]:
    """Occurrences of an active rule with its per-date exceptions applied."""
    if not rule.is_active:
        return []

    by_date = {exception.exception_date: exception for exception in exceptions}
    window_start, window_end = _as_range_start(range_start), _as_range_end(range_end)
    expanded: list[TimeRange] = []

    for occurrence in occurrences(rule, range_start, range_end):
        exception = by_date.get(occurrence.start.date())
        if exception is None:
            expanded.append(occurrence)
        elif exception.action_type == 'rescheduled' and exception.new_start_time and exception.new_end_time:
            moved = TimeRange(start=exception.new_start_time, end=exception.new_end_time)
            if window_start <= moved.start <= window_end:
                expanded.append(moved)

    expanded.sort(key=lambda occurrence: occurrence.start)
    return expanded


def next_occurrence(rule: RuleSpec, after: datetime, horizon_days: int = 400) -> TimeRange | None:
    """First occurrence starting strictly after ``after``."""
    for occurrence in occurrences(rule, after, after + timedelta(days=horizon_days)):
        if occurrence.start > after:
            return occurrence
    return None


def rule_from_booking(start: datetime, end: datetime, recurrence: str, **fields) -> RuleSpec:
    """Describe a booking's own repetition as a rule anchored on its first date."""
    return RuleSpec(
        recurrence_type=normalize_recurrence(recurrence),
        start_date=start.date(),
        start_time=start.time(),
        end_time=end.time(),
        day_of_week=js_weekday(start.date()),
        **fields,
    )
