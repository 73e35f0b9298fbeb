"""Ordered request checks shared by every mutating scheduling operation.

``check_request`` covers field, policy-bound and blackout checks.
``check_occupancy`` covers concurrency caps and double booking. Both read
stored windows (annual allowances and budgets included), so callers run them
under the resource lock, right before the insert they protect.
"""

from datetime import date, datetime, time, timedelta
from typing import Iterable

from sqlalchemy.orm import Session

from . import store
from .config import settings
from .core.availability import (
    BusinessRules,
    is_business_day,
    overlapping_fixed_block,
    touches_holiday,
    within_business_hours,
)
from .core.conflicts import find_conflicts
from .core.windows import Window
from .errors import CapacityExceededError, ConflictError, ValidationError
from .lifecycles import machine_for
from .schemas import (
    AppointmentPolicySettings,
    OnCallPolicySettings,
    PolicySettings,
    PrepRoomPolicySettings,
    PtoPolicySettings,
    TrainingPolicySettings,
)

# an absence blocks every other booking of the same person
ABSENCE_KINDS = frozenset({"pto", "training"})
ALL_WEEK = (0, 1, 2, 3, 4, 5, 6)


def kinds_conflict(a: str, b: str) -> bool:
    return a == b or a in ABSENCE_KINDS or b in ABSENCE_KINDS


def effective_buffer(kind: str, policy: PolicySettings) -> int:
    if kind == "on_call" and isinstance(policy, OnCallPolicySettings):
        return max(policy.buffer_minutes, policy.min_rest_hours_after_shift * 60)
    return policy.buffer_minutes


def business_rules_for(kind: str, policy: PolicySettings) -> BusinessRules:
    if isinstance(policy, AppointmentPolicySettings):
        blocks = ()
        if policy.lunch_start is not None and policy.lunch_end is not None:
            blocks = ((policy.lunch_start, policy.lunch_end),)
        return BusinessRules(
            business_days=tuple(policy.business_days),
            day_start=policy.business_hours_start,
            day_end=policy.business_hours_end,
            step_minutes=policy.slot_step_minutes,
            horizon_days=settings.AVAILABILITY_HORIZON_DAYS,
            fixed_blocks=blocks,
            buffer_minutes=policy.buffer_minutes,
            skip_holidays=policy.skip_holidays,
            holiday_country=settings.HOLIDAY_COUNTRY,
        )
    return BusinessRules(
        business_days=ALL_WEEK,
        day_start=time(0, 0),
        day_end=time(23, 59),
        step_minutes=settings.AVAILABILITY_STEP_MINUTES,
        horizon_days=settings.AVAILABILITY_HORIZON_DAYS,
        fixed_blocks=(),
        buffer_minutes=effective_buffer(kind, policy),
    )


# ---------------------------------------------------------------- (a) fields


def check_fields(window: Window) -> None:
    if not (window.tenant_id or "").strip():
        raise ValidationError("tenant_id is required", field="tenant_id")
    if not (window.created_by or window.recorded_by or "").strip():
        raise ValidationError("actor_id is required", field="actor_id")
    if not (window.resource_key or "").strip():
        raise ValidationError("resource is required", field="resource_key")
    if window.end <= window.start:
        raise ValidationError(
            "end must be after start", field="end", rule="window_order"
        )


def require_text(value: str | None, field: str, *, max_length: int = 160) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", field=field)
    if len(text) > max_length:
        raise ValidationError(
            f"{field} must be at most {max_length} characters", field=field
        )
    return text


def require_choice(value: str | None, field: str, choices: Iterable[str]) -> str:
    normalized = (value or "").strip().lower()
    allowed = sorted(choices)
    if normalized not in allowed:
        raise ValidationError(
            f"{field} must be one of {', '.join(allowed)}",
            field=field,
            details={"allowed": allowed},
        )
    return normalized


# ---------------------------------------------------------------- (b) policy bounds


def notice_multiplier(window: Window, policy: PolicySettings) -> int:
    """Holidays and soft blackout periods double the notice requirement."""
    if touches_holiday(window.start, window.end, settings.HOLIDAY_COUNTRY):
        return 2
    if any(not p.hard for p in policy.blackouts_covering(window.start, window.end)):
        return 2
    return 1


def _check_duration(window: Window, minimum: int, maximum: int, unit: str = "minutes") -> None:
    if unit == "hours":
        actual = window.duration_minutes / 60
    else:
        actual = window.duration_minutes
    if actual < minimum or actual > maximum:
        raise ValidationError(
            f"{window.kind} duration must be between {minimum} and {maximum} {unit}",
            field="duration",
            rule="duration",
            details={"minimum": minimum, "maximum": maximum, "actual": actual},
        )


def _check_not_past(window: Window, now: datetime) -> None:
    if window.start < now:
        raise ValidationError(
            "start must not be in the past", field="start", rule="advance_notice"
        )


def _check_notice_hours(
    window: Window, now: datetime, hours: int, policy: PolicySettings
) -> None:
    _check_not_past(window, now)
    required = hours * notice_multiplier(window, policy)
    if window.start - now < timedelta(hours=required):
        raise ValidationError(
            f"{window.kind} requires at least {required}h advance notice",
            field="start",
            rule="advance_notice",
            details={"required_hours": required},
        )


def _check_notice_days(window: Window, now: datetime, required: int) -> None:
    _check_not_past(window, now)
    lead_days = (window.start.date() - now.date()).days
    if lead_days < required:
        raise ValidationError(
            f"{window.kind} requires at least {required} days advance notice",
            field="start",
            rule="advance_notice",
            details={"required_days": required, "actual_days": lead_days},
        )


def _year_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime(day.year, 1, 1)
    return start, datetime(day.year + 1, 1, 1)


def _pto_bounds(db: Session, window: Window, policy: PtoPolicySettings, now: datetime, ignore_keys) -> None:
    days = int(window.attr("requested_days") or 0)
    if days > policy.max_consecutive_pto_days:
        raise ValidationError(
            f"PTO requests are limited to {policy.max_consecutive_pto_days} consecutive days",
            field="end_date",
            rule="max_consecutive_days",
        )
    holiday_or_soft_blackout = notice_multiplier(window, policy) > 1
    required = (
        policy.holiday_notice_days()
        if holiday_or_soft_blackout
        else policy.min_advance_notice_days
    )
    _check_notice_days(window, now, required)

    year_start, year_end = _year_bounds(window.start.date())
    used = sum(
        int(w.attr("requested_days") or 0)
        for w in store.find_current(
            db,
            window.tenant_id,
            kind="pto",
            statuses=machine_for("pto").blocking,
            resource_key=window.resource_key,
            start=year_start,
            end=year_end,
        )
        if w.business_key not in ignore_keys
    )
    if used + days > policy.annual_pto_days_per_employee:
        raise ValidationError(
            f"Request exceeds the annual allowance of {policy.annual_pto_days_per_employee} days",
            field="end_date",
            rule="annual_allowance",
            details={"used": used, "requested": days},
        )


def _training_bounds(
    db: Session, window: Window, policy: TrainingPolicySettings, now: datetime, ignore_keys
) -> None:
    _check_notice_days(window, now, policy.min_advance_notice_days * notice_multiplier(window, policy))
    requirement = policy.requirement_for(window.attr("role"))
    if requirement is None:
        return
    year_start, year_end = _year_bounds(window.start.date())
    booked = [
        w
        for w in store.find_current(
            db,
            window.tenant_id,
            kind="training",
            statuses={"scheduled", "in_progress", "completed"},
            resource_key=window.resource_key,
            start=year_start,
            end=year_end,
        )
        if w.business_key not in ignore_keys
    ]
    hours = sum(float(w.attr("scheduled_hours") or 0) for w in booked)
    new_hours = float(window.attr("scheduled_hours") or 0)
    if hours + new_hours > requirement.annual_training_hours_budget:
        raise ValidationError(
            f"Training exceeds the annual budget of {requirement.annual_training_hours_budget}h",
            field="hours",
            rule="training_hours_budget",
            details={"used": hours, "requested": new_hours},
        )
    spent = sum(float(w.attr("cost") or 0) for w in booked)
    if not policy.can_take_training(window.attr("role"), spent, float(window.attr("cost") or 0)):
        raise ValidationError(
            f"Training exceeds the annual budget of {requirement.annual_training_budget:.2f}",
            field="cost",
            rule="training_budget",
            details={"spent": spent},
        )
    days = {d for w in booked for d in _days_of(w)}
    days.update(_days_of(window))
    if len(days) > requirement.max_training_days_per_year:
        raise ValidationError(
            f"Training exceeds {requirement.max_training_days_per_year} days per year",
            field="start",
            rule="training_days",
        )


def _days_of(window: Window) -> set[date]:
    day = window.start.date()
    last = (window.end - timedelta(microseconds=1)).date()
    out = set()
    while day <= last:
        out.add(day)
        day += timedelta(days=1)
    return out


def _appointment_bounds(window: Window, policy: AppointmentPolicySettings, now: datetime) -> None:
    _check_duration(window, policy.min_duration_minutes, policy.max_duration_minutes)
    rules = business_rules_for("appointment", policy)
    if not is_business_day(window.start.date(), rules):
        raise ValidationError(
            "Appointments can only be booked on business days",
            field="start",
            rule="business_day",
        )
    if not within_business_hours(window.start, window.end, rules):
        raise ValidationError(
            f"Appointments must fall within {policy.business_hours_start:%H:%M}-"
            f"{policy.business_hours_end:%H:%M}",
            field="start",
            rule="business_hours",
        )
    block = overlapping_fixed_block(window.start, window.end, rules)
    if block is not None:
        raise ValidationError(
            f"Appointment overlaps the fixed block {block[0]:%H:%M}-{block[1]:%H:%M}",
            field="start",
            rule="fixed_block",
        )
    _check_notice_hours(window, now, policy.min_advance_notice_hours, policy)


def _on_call_bounds(window: Window, policy: OnCallPolicySettings, now: datetime) -> None:
    _check_duration(
        window, policy.min_shift_duration_hours, policy.max_shift_duration_hours, "hours"
    )
    _check_notice_hours(window, now, policy.min_advance_notice_hours, policy)
    if window.start - now > timedelta(hours=policy.max_advance_notice_hours):
        raise ValidationError(
            f"On-call shifts can be scheduled at most {policy.max_advance_notice_hours}h ahead",
            field="start",
            rule="max_advance_notice",
        )


def check_policy_bounds(
    db: Session,
    window: Window,
    policy: PolicySettings,
    now: datetime,
    *,
    ignore_keys: Iterable[str] = (),
) -> None:
    ignore = set(ignore_keys)
    kind = window.kind
    if kind == "pto":
        _pto_bounds(db, window, policy, now, ignore)
    elif kind == "training":
        _training_bounds(db, window, policy, now, ignore)
    elif kind == "appointment":
        _appointment_bounds(window, policy, now)
    elif kind == "on_call":
        _on_call_bounds(window, policy, now)
    elif kind in {"prep_room", "driver"}:
        _check_duration(window, policy.min_duration_minutes, policy.max_duration_minutes)
        _check_notice_hours(window, now, policy.min_advance_notice_hours, policy)
    elif kind == "backfill":
        limit = getattr(policy, "max_service_duration_hours", None)
        daily = window.attr("daily_hours")
        if limit is not None and daily is not None and float(daily) > limit:
            raise ValidationError(
                f"Coverage shifts are limited to {limit}h per day",
                field="daily_hours",
                rule="duration",
            )


# ---------------------------------------------------------------- (c) blackouts


def check_blackouts(window: Window, policy: PolicySettings) -> None:
    hard = [p for p in policy.blackouts_covering(window.start, window.end) if p.hard]
    if hard:
        period = hard[0]
        raise ValidationError(
            f"Requested window falls in blackout period {period.name!r}",
            field="start",
            rule="blackout",
            details={
                "blackout": period.name,
                "start_date": period.start_date.isoformat(),
                "end_date": period.end_date.isoformat(),
            },
        )


def check_request(
    db: Session,
    window: Window,
    policy: PolicySettings,
    now: datetime,
    *,
    ignore_keys: Iterable[str] = (),
) -> None:
    check_fields(window)
    check_policy_bounds(db, window, policy, now, ignore_keys=ignore_keys)
    check_blackouts(window, policy)


# ---------------------------------------------------------------- (d) capacity


def _overlapping(db: Session, window: Window, statuses: set[str], ignore_keys, **filters) -> list[Window]:
    return [
        w
        for w in store.find_current(
            db,
            window.tenant_id,
            kind=window.kind,
            statuses=statuses,
            start=window.start,
            end=window.end,
            **filters,
        )
        if w.business_key not in ignore_keys and w.business_key != window.business_key
    ]


def _raise_capacity(message: str, *, limit: int, current: int, rule: str) -> None:
    raise CapacityExceededError(message, limit=limit, current=current, rule=rule)


def _quarter_bounds(day: date) -> tuple[datetime, datetime]:
    first_month = 3 * ((day.month - 1) // 3) + 1
    start = datetime(day.year, first_month, 1)
    if first_month == 10:
        return start, datetime(day.year + 1, 1, 1)
    return start, datetime(day.year, first_month + 3, 1)


def _weekend_saturday(window: Window) -> date | None:
    for day in sorted(_days_of(window)):
        if day.weekday() >= 5:
            return day - timedelta(days=day.weekday() - 5)
    return None


def _check_on_call_capacity(db: Session, window: Window, policy: OnCallPolicySettings, ignore) -> None:
    q_start, q_end = _quarter_bounds(window.start.date())
    in_quarter = [
        w
        for w in store.find_current(
            db,
            window.tenant_id,
            kind="on_call",
            statuses=machine_for("on_call").blocking,
            resource_key=window.resource_key,
            start=q_start,
            end=q_end,
        )
        if w.business_key not in ignore
        and w.business_key != window.business_key
        and q_start <= w.start < q_end
    ]
    if len(in_quarter) >= policy.max_on_call_per_director_per_quarter:
        _raise_capacity(
            "Director has reached the on-call limit for this quarter",
            limit=policy.max_on_call_per_director_per_quarter,
            current=len(in_quarter),
            rule="quarterly_on_call",
        )

    saturday = _weekend_saturday(window)
    if saturday is None:
        return
    streak = 0
    for weeks_back in range(1, policy.max_consecutive_weekends_on + 1):
        prior = saturday - timedelta(days=7 * weeks_back)
        prior_start = datetime.combine(prior, time.min)
        covered = [
            w
            for w in store.find_current(
                db,
                window.tenant_id,
                kind="on_call",
                statuses=machine_for("on_call").blocking,
                resource_key=window.resource_key,
                start=prior_start,
                end=prior_start + timedelta(days=2),
            )
            if w.business_key not in ignore and w.business_key != window.business_key
        ]
        if not covered:
            break
        streak += 1
    if streak + 1 > policy.max_consecutive_weekends_on:
        _raise_capacity(
            f"Director would work more than {policy.max_consecutive_weekends_on} weekends in a row",
            limit=policy.max_consecutive_weekends_on,
            current=streak,
            rule="consecutive_weekends",
        )


def embalmer_shift_windows(
    db: Session, tenant_id: str, embalmer_id: str, day: date, ignore_keys=()
) -> list[Window]:
    day_start = datetime.combine(day, time.min)
    return [
        w
        for w in store.find_current(
            db,
            tenant_id,
            kind="prep_room",
            statuses=machine_for("prep_room").blocking,
            start=day_start,
            end=day_start + timedelta(days=1),
        )
        if w.attr("embalmer_id") == embalmer_id and w.business_key not in ignore_keys
    ]


def _check_embalmer_shift(db: Session, window: Window, policy: PrepRoomPolicySettings, ignore) -> None:
    shift = [
        w
        for w in embalmer_shift_windows(
            db, window.tenant_id, window.attr("embalmer_id"), window.start.date(), ignore
        )
        if w.business_key != window.business_key
    ]
    if len(shift) >= policy.max_preparations_per_embalmer_per_shift:
        _raise_capacity(
            "Embalmer has no preparations left on this shift",
            limit=policy.max_preparations_per_embalmer_per_shift,
            current=len(shift),
            rule="embalmer_shift_preparations",
        )
    # every earlier preparation is followed by a break
    minutes = (
        sum(w.duration_minutes for w in shift)
        + window.duration_minutes
        + policy.break_minutes_between_preparations * len(shift)
    )
    if minutes > policy.embalmer_shift_hours * 60:
        _raise_capacity(
            f"Preparations and breaks would exceed the {policy.embalmer_shift_hours}h shift",
            limit=policy.embalmer_shift_hours * 60,
            current=minutes,
            rule="embalmer_shift_hours",
        )


def check_capacity(
    db: Session,
    window: Window,
    policy: PolicySettings,
    *,
    ignore_keys: Iterable[str] = (),
) -> None:
    ignore = set(ignore_keys)
    kind = window.kind
    if kind == "pto":
        active = machine_for("pto").blocking
        others = [
            w
            for w in _overlapping(db, window, active, ignore)
            if w.resource_key != window.resource_key
        ]
        role = window.attr("role")
        same_role = {w.resource_key for w in others if w.attr("role") == role}
        role_cap = policy.role_policy(role).max_concurrent_employees
        if len(same_role) >= role_cap:
            _raise_capacity(
                f"Too many {role}s already off during this period",
                limit=role_cap,
                current=len(same_role),
                rule="concurrent_pto_role",
            )
        everyone = {w.resource_key for w in others}
        if len(everyone) >= policy.max_concurrent_employees_on_pto:
            _raise_capacity(
                "Too many employees already off during this period",
                limit=policy.max_concurrent_employees_on_pto,
                current=len(everyone),
                rule="concurrent_pto",
            )
    elif kind == "training":
        role = window.attr("role")
        same_role = {
            w.resource_key
            for w in _overlapping(db, window, {"scheduled", "in_progress"}, ignore)
            if w.attr("role") == role and w.resource_key != window.resource_key
        }
        if len(same_role) >= policy.max_concurrent_in_training:
            _raise_capacity(
                f"Too many {role}s already in training during this period",
                limit=policy.max_concurrent_in_training,
                current=len(same_role),
                rule="concurrent_training",
            )
    elif kind == "appointment":
        day_start = datetime.combine(window.start.date(), time.min)
        same_day = [
            w
            for w in store.find_current(
                db,
                window.tenant_id,
                kind="appointment",
                statuses=machine_for("appointment").blocking,
                resource_key=window.resource_key,
                start=day_start,
                end=day_start + timedelta(days=1),
            )
            if w.business_key not in ignore and w.business_key != window.business_key
        ]
        if len(same_day) >= policy.max_appointments_per_director_per_day:
            _raise_capacity(
                "Director is fully booked for the day",
                limit=policy.max_appointments_per_director_per_day,
                current=len(same_day),
                rule="daily_appointments",
            )
    elif kind == "prep_room":
        embalmer = window.attr("embalmer_id")
        busy = [
            w
            for w in _overlapping(db, window, machine_for("prep_room").blocking, ignore)
            if w.attr("embalmer_id") == embalmer
        ]
        if len(busy) >= policy.max_concurrent_reservations_per_embalmer:
            _raise_capacity(
                "Embalmer already holds a reservation in this period",
                limit=policy.max_concurrent_reservations_per_embalmer,
                current=len(busy),
                rule="embalmer_concurrency",
            )
        _check_embalmer_shift(db, window, policy, ignore)
    elif kind == "driver":
        day_start = datetime.combine(window.start.date(), time.min)
        same_day = [
            w
            for w in store.find_current(
                db,
                window.tenant_id,
                kind="driver",
                statuses=machine_for("driver").blocking,
                resource_key=window.resource_key,
                start=day_start,
                end=day_start + timedelta(days=1),
            )
            if w.business_key not in ignore and w.business_key != window.business_key
        ]
        if len(same_day) >= policy.max_assignments_per_driver_per_day:
            _raise_capacity(
                "Driver has reached the daily assignment limit",
                limit=policy.max_assignments_per_driver_per_day,
                current=len(same_day),
                rule="daily_assignments",
            )
    elif kind == "on_call":
        _check_on_call_capacity(db, window, policy, ignore)


# ---------------------------------------------------------------- (e) conflicts


def existing_on_resource(
    db: Session,
    tenant_id: str,
    resource_key: str,
    start: datetime,
    end: datetime,
    *,
    kind: str,
    buffer_minutes: int,
) -> list[Window]:
    pad = timedelta(minutes=buffer_minutes)
    return [
        w
        for w in store.find_current_by_resource(
            db, tenant_id, resource_key, start - pad, end + pad
        )
        if kinds_conflict(kind, w.kind)
    ]


def check_conflicts(
    db: Session,
    window: Window,
    policy: PolicySettings,
    *,
    ignore_keys: Iterable[str] = (),
) -> None:
    buffer_minutes = effective_buffer(window.kind, policy)
    ignore = set(ignore_keys) | {window.business_key}
    hits: list[Window] = []
    for resource in window.resource_keys:
        existing = existing_on_resource(
            db,
            window.tenant_id,
            resource,
            window.start,
            window.end,
            kind=window.kind,
            buffer_minutes=buffer_minutes,
        )
        hits.extend(
            find_conflicts(
                window.start, window.end, existing, buffer_minutes, ignore_keys=ignore
            )
        )
    if hits:
        first = hits[0]
        raise ConflictError(
            f"{first.resource_key} is already booked "
            f"{first.start:%Y-%m-%d %H:%M}-{first.end:%H:%M} "
            f"(buffer {buffer_minutes} min)",
            conflicting_keys=sorted({w.business_key for w in hits}),
            details={"buffer_minutes": buffer_minutes},
        )


def check_occupancy(
    db: Session,
    window: Window,
    policy: PolicySettings,
    *,
    ignore_keys: Iterable[str] = (),
) -> None:
    check_capacity(db, window, policy, ignore_keys=ignore_keys)
    check_conflicts(db, window, policy, ignore_keys=ignore_keys)
