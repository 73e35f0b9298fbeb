from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Sequence

from ..errors import ValidationError

CYCLE_WEEKS = 4
ROTATION_PATTERNS = {
    "on-off-on-off": (1, 3),
    "on-on-off-off": (1, 2),
    "on-off-off-on": (1, 4),
}


@dataclass(frozen=True)
class RotationSlot:
    employee_id: str
    saturday: date
    week: int


@dataclass(frozen=True)
class RotationPlan:
    pattern: str
    weeks: tuple[int, ...]
    slots: tuple[RotationSlot, ...]
    weekends: tuple[date, ...]
    fair_distribution_score: int

    @property
    def uncovered(self) -> list[date]:
        covered = {slot.saturday for slot in self.slots}
        return [saturday for saturday in self.weekends if saturday not in covered]

    def for_employee(self, employee_id: str) -> list[RotationSlot]:
        return [slot for slot in self.slots if slot.employee_id == employee_id]


def pattern_weeks(pattern: str, custom_weeks: Iterable[int] | None = None) -> tuple[int, ...]:
    name = (pattern or "").strip().lower()
    if name == "custom":
        weeks = tuple(sorted(set(custom_weeks or ())))
        if not weeks:
            raise ValidationError(
                "A custom rotation needs at least one working week",
                field="custom_weeks",
                rule="rotation_pattern",
            )
        if any(week < 1 or week > CYCLE_WEEKS for week in weeks):
            raise ValidationError(
                f"Custom weeks must be between 1 and {CYCLE_WEEKS}",
                field="custom_weeks",
                rule="rotation_pattern",
            )
        return weeks
    if name not in ROTATION_PATTERNS:
        raise ValidationError(
            f"Unknown rotation pattern: {pattern!r}",
            field="pattern",
            rule="rotation_pattern",
            details={"allowed": sorted(ROTATION_PATTERNS) + ["custom"]},
        )
    return ROTATION_PATTERNS[name]


def longest_run(weeks: Sequence[int], cycle: int = CYCLE_WEEKS) -> int:
    """Longest streak of working weeks when the cycle repeats back to back."""
    on = set(weeks)
    if len(on) >= cycle:
        return cycle
    best = 0
    for first in on:
        if (first - 2) % cycle + 1 in on:
            continue
        run = 0
        week = first
        while week in on:
            run += 1
            week = week % cycle + 1
        best = max(best, run)
    return best


def fair_distribution_score(weeks: Sequence[int], cycle: int = CYCLE_WEEKS) -> int:
    percentage = 100 * len(set(weeks)) / cycle
    return int(max(0, 100 - 2 * abs(50 - percentage)))


def plan_weekend_rotation(
    employee_ids: Sequence[str],
    first_saturday: date,
    weeks: Sequence[int],
    *,
    cycles: int = 1,
    max_consecutive: int = 2,
    pattern: str = "custom",
) -> RotationPlan:
    """Stagger ``weeks`` across employees so each starts at a different offset.

    Employee ``i`` works cycle week ``w`` when ``(w - 1 + i) % 4 + 1`` is in
    ``weeks``. Every employee keeps at least one weekend off per cycle.
    """
    if len(employee_ids) < 2:
        raise ValidationError(
            "A rotation needs at least two employees", field="director_ids", rule="rotation_size"
        )
    if len(set(employee_ids)) != len(employee_ids):
        raise ValidationError(
            "Employees may appear only once in a rotation", field="director_ids"
        )
    if first_saturday.weekday() != 5:
        raise ValidationError(
            "Rotation must start on a Saturday", field="start_date", rule="rotation_start"
        )
    if cycles < 1:
        raise ValidationError("cycles must be >= 1", field="cycles")
    if len(set(weeks)) >= CYCLE_WEEKS:
        raise ValidationError(
            f"Employees need at least one weekend off every {CYCLE_WEEKS} weeks",
            field="pattern",
            rule="weekend_off",
        )
    run = longest_run(weeks)
    if run > max_consecutive:
        raise ValidationError(
            f"Pattern works {run} weekends in a row; the limit is {max_consecutive}",
            field="pattern",
            rule="consecutive_weekends",
        )

    on = set(weeks)
    weekends = tuple(
        first_saturday + timedelta(weeks=n) for n in range(CYCLE_WEEKS * cycles)
    )
    slots = []
    for n, saturday in enumerate(weekends):
        week = n % CYCLE_WEEKS + 1
        for offset, employee_id in enumerate(employee_ids):
            if (week - 1 + offset) % CYCLE_WEEKS + 1 in on:
                slots.append(RotationSlot(employee_id=employee_id, saturday=saturday, week=week))
    return RotationPlan(
        pattern=pattern,
        weeks=tuple(sorted(on)),
        slots=tuple(slots),
        weekends=weekends,
        fair_distribution_score=fair_distribution_score(weeks),
    )
