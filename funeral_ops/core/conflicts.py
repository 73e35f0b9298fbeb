from datetime import date, datetime, time, timedelta
from typing import Iterable, Protocol


class TimeSpan(Protocol):
    start: datetime
    end: datetime


def _buffer(buffer_minutes: int) -> timedelta:
    if buffer_minutes < 0:
        raise ValueError("buffer_minutes must be >= 0")
    return timedelta(minutes=buffer_minutes)


def overlaps(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
    buffer_minutes: int = 0,
) -> bool:
    """Half-open overlap where the windows must stay ``buffer_minutes`` apart.

    The buffer is the required gap between the two windows, whichever comes
    first. Windows that merely touch do not overlap when the buffer is zero.
    """
    pad = _buffer(buffer_minutes)
    return a_start < (b_end + pad) and b_start < (a_end + pad)


def find_conflicts(
    start: datetime,
    end: datetime,
    existing: Iterable[TimeSpan],
    buffer_minutes: int = 0,
    *,
    ignore_keys: Iterable[str] = (),
) -> list:
    skip = set(ignore_keys)
    hits = []
    for window in existing:
        if getattr(window, "business_key", None) in skip:
            continue
        if overlaps(start, end, window.start, window.end, buffer_minutes):
            hits.append(window)
    return hits


def has_conflict(
    start: datetime,
    end: datetime,
    existing: Iterable[TimeSpan],
    buffer_minutes: int = 0,
    *,
    ignore_keys: Iterable[str] = (),
) -> bool:
    return bool(
        find_conflicts(start, end, existing, buffer_minutes, ignore_keys=ignore_keys)
    )


def same_day_candidates(day: date, existing: Iterable[TimeSpan]) -> list:
    # a window crossing midnight belongs to both days
    day_start = datetime.combine(day, time.min)
    day_end = day_start + timedelta(days=1)
    return [w for w in existing if w.start < day_end and day_start < w.end]


def buffered_gap_minutes(a: TimeSpan, b: TimeSpan) -> int:
    if a.end <= b.start:
        return int((b.start - a.end).total_seconds() // 60)
    if b.end <= a.start:
        return int((a.start - b.end).total_seconds() // 60)
    overlap_start = max(a.start, b.start)
    overlap_end = min(a.end, b.end)
    return -int((overlap_end - overlap_start).total_seconds() // 60)
