from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Iterable

import holidays

from .conflicts import TimeSpan, overlaps, same_day_candidates

MONDAY_TO_FRIDAY = (0, 1, 2, 3, 4)


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass(frozen=True)
class BusinessRules:
    business_days: tuple[int, ...] = MONDAY_TO_FRIDAY
    day_start: time = time(8, 0)
    day_end: time = time(17, 0)
    step_minutes: int = 60
    horizon_days: int = 30
    fixed_blocks: tuple[tuple[time, time], ...] = ((time(12, 0), time(13, 0)),)
    buffer_minutes: int = 0
    skip_holidays: bool = False
    holiday_country: str = "US"
    closed_dates: frozenset[date] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.day_end <= self.day_start:
            raise ValueError("day_end must be after day_start")
        if self.step_minutes <= 0:
            raise ValueError("step_minutes must be > 0")
        if self.horizon_days <= 0:
            raise ValueError("horizon_days must be > 0")
        for block_start, block_end in self.fixed_blocks:
            if block_end <= block_start:
                raise ValueError("fixed block end must be after its start")


_holiday_calendars: dict[str, holidays.HolidayBase] = {}


def holiday_calendar(country: str) -> holidays.HolidayBase:
    code = (country or "US").strip().upper()
    calendar = _holiday_calendars.get(code)
    if calendar is None:
        calendar = holidays.country_holidays(code)
        _holiday_calendars[code] = calendar
    return calendar


def is_holiday(day: date, country: str) -> bool:
    return day in holiday_calendar(country)


def touches_holiday(start: datetime, end: datetime, country: str) -> bool:
    day = start.date()
    last = (end - timedelta(microseconds=1)).date()
    while day <= last:
        if is_holiday(day, country):
            return True
        day += timedelta(days=1)
    return False


def is_business_day(day: date, rules: BusinessRules) -> bool:
    if day.weekday() not in rules.business_days:
        return False
    if day in rules.closed_dates:
        return False
    if rules.skip_holidays and is_holiday(day, rules.holiday_country):
        return False
    return True


def within_business_hours(start: datetime, end: datetime, rules: BusinessRules) -> bool:
    if start.date() != end.date():
        return False
    open_at = datetime.combine(start.date(), rules.day_start)
    close_at = datetime.combine(start.date(), rules.day_end)
    return open_at <= start and end <= close_at


def overlapping_fixed_block(
    start: datetime, end: datetime, rules: BusinessRules
) -> tuple[datetime, datetime] | None:
    day = start.date()
    last = (end - timedelta(microseconds=1)).date()
    while day <= last:
        for block_start, block_end in rules.fixed_blocks:
            b_start = datetime.combine(day, block_start)
            b_end = datetime.combine(day, block_end)
            if overlaps(start, end, b_start, b_end):
                return b_start, b_end
        day += timedelta(days=1)
    return None


def _iter_day_slots(
    day: date,
    duration: timedelta,
    rules: BusinessRules,
    earliest: datetime | None,
):
    cursor = datetime.combine(day, rules.day_start)
    latest_start = datetime.combine(day, rules.day_end) - duration
    step = timedelta(minutes=rules.step_minutes)
    while cursor <= latest_start:
        if earliest is None or cursor >= earliest:
            yield cursor
        cursor += step


def available_slots(
    existing_windows: Iterable[TimeSpan],
    from_date: date | datetime,
    duration_minutes: int,
    rules: BusinessRules,
    *,
    limit: int = 1,
    admit: Callable[[Slot], bool] | None = None,
) -> list[Slot]:
    """Walk the horizon day by day and collect free slots in order.

    Only ``from_date`` anchors the walk; nothing here reads the clock.
    ``admit`` can veto a free slot for reasons the calendar cannot see.
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be > 0")
    if limit <= 0:
        return []

    earliest = None
    if isinstance(from_date, datetime):
        earliest = from_date
        first_day = from_date.date()
    else:
        first_day = from_date

    windows = list(existing_windows)
    duration = timedelta(minutes=duration_minutes)
    found: list[Slot] = []
    for offset in range(rules.horizon_days):
        day = first_day + timedelta(days=offset)
        if not is_business_day(day, rules):
            continue
        scope = _day_scope(day, windows, rules.buffer_minutes)
        for start in _iter_day_slots(day, duration, rules, earliest):
            end = start + duration
            if overlapping_fixed_block(start, end, rules) is not None:
                continue
            if any(
                overlaps(start, end, w.start, w.end, rules.buffer_minutes)
                for w in scope
            ):
                continue
            slot = Slot(start=start, end=end)
            if admit is not None and not admit(slot):
                continue
            found.append(slot)
            if len(found) >= limit:
                return found
    return found


def next_available_slot(
    existing_windows: Iterable[TimeSpan],
    from_date: date | datetime,
    duration_minutes: int,
    rules: BusinessRules,
) -> Slot | None:
    slots = available_slots(
        existing_windows, from_date, duration_minutes, rules, limit=1
    )
    return slots[0] if slots else None


def _day_scope(day: date, windows: list, buffer_minutes: int) -> list:
    if not buffer_minutes:
        return same_day_candidates(day, windows)
    # buffered windows from the neighbouring days can still reach into this one
    pad = timedelta(minutes=buffer_minutes)
    day_start = datetime.combine(day, time.min) - pad
    day_end = datetime.combine(day, time.min) + timedelta(days=1) + pad
    return [w for w in windows if w.start < day_end and day_start < w.end]
