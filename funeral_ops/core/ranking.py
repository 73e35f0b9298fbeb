from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Mapping

from .conflicts import has_conflict

DEFAULT_CONFLICT_PENALTY = 100


@dataclass(frozen=True)
class StaffRef:
    employee_id: str
    name: str
    role: str


@dataclass(frozen=True)
class Candidate:
    employee_id: str
    name: str
    role: str
    conflict: bool
    recent_load: int
    score: int
    rank: int = 0


def _recent_load(
    windows: Iterable,
    committed: Mapping[str, set[str]],
    lookback_start: datetime | None,
) -> int:
    load = 0
    for window in windows:
        statuses = committed.get(window.kind)
        if not statuses or window.status not in statuses:
            continue
        if lookback_start is not None and window.start < lookback_start:
            continue
        load += 1
    return load


def rank_candidates(
    staff: Iterable[StaffRef],
    windows_by_employee: Mapping[str, list],
    window_start: datetime,
    window_end: datetime,
    *,
    blocking: Mapping[str, set[str]],
    committed: Mapping[str, set[str]],
    buffer_minutes: int = 0,
    lookback_start: datetime | None = None,
    penalty: int = DEFAULT_CONFLICT_PENALTY,
) -> list[Candidate]:
    """Order staff from most to least preferred for a coverage window.

    ``blocking`` maps window kind to the statuses that occupy the employee;
    ``committed`` maps kind to the statuses that count as workload.
    Conflicted staff stay in the list with ``penalty`` added to the score.
    """
    scored = []
    for member in staff:
        windows = windows_by_employee.get(member.employee_id, [])
        occupied = [w for w in windows if w.status in blocking.get(w.kind, ())]
        conflict = has_conflict(window_start, window_end, occupied, buffer_minutes)
        load = _recent_load(windows, committed, lookback_start)
        scored.append(
            Candidate(
                employee_id=member.employee_id,
                name=member.name,
                role=member.role,
                conflict=conflict,
                recent_load=load,
                score=load + (penalty if conflict else 0),
            )
        )
    scored.sort(key=lambda c: (c.score, c.employee_id))
    return [replace(candidate, rank=index + 1) for index, candidate in enumerate(scored)]
