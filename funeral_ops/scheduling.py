import math
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, time, timedelta
from typing import Iterable

import structlog
from sqlalchemy.orm import Session

from . import store
from .audit import enqueue_notification, log_audit_event
from .config import settings
from .core.availability import Slot, available_slots, touches_holiday
from .core.conflicts import find_conflicts
from .core.locks import resource_locks
from .core.ranking import Candidate, StaffRef, rank_candidates
from .core.rotation import pattern_weeks, plan_weekend_rotation
from .core.state_machine import TransitionContext
from .core.windows import Window, resource_key, to_utc_naive, utc_now_naive
from .errors import (
    CapacityExceededError,
    ConflictError,
    InvalidStateTransitionError,
    SchedulingError,
    ValidationError,
)
from .lifecycles import (
    COMMITTED_STATUSES,
    CONFIRM_TARGETS,
    DRIVER_EVENT_TYPES,
    ON_CALL_SHIFT_TYPES,
    OPEN_SWAP_STATUSES,
    PREMIUM_TYPES,
    PREP_PRIORITIES,
    PTO_TYPES,
    MACHINES,
    coverage_hours,
    has_auto_release_timeout,
    license_covers,
    machine_for,
    needs_email_reminder,
    requested_days,
)
from .policies import load_settings, load_window_settings
from .schemas import AppointmentPolicySettings, PrepRoomPolicySettings
from .validation import (
    business_rules_for,
    check_capacity,
    check_occupancy,
    check_request,
    effective_buffer,
    embalmer_shift_windows,
    existing_on_resource,
    kinds_conflict,
    require_choice,
    require_text,
)

logger = structlog.get_logger("funeral_ops.scheduling")

RESOURCE_TYPE_BY_KIND = {
    "prep_room": "room",
    "appointment": "employee",
    "driver": "employee",
    "pto": "employee",
    "training": "employee",
    "backfill": "employee",
    "on_call": "employee",
}
SECONDARY_RESOURCE_TYPE_BY_KIND = {"driver": "vehicle"}


def _now(now: datetime | None) -> datetime:
    return to_utc_naive(now) if now is not None else utc_now_naive()


def _actor(actor_id: str | None) -> str:
    return require_text(actor_id, "actor_id")


def _lock_keys(window: Window, *extra) -> list:
    keys = [(window.tenant_id, key) for key in window.resource_keys]
    keys.extend((window.tenant_id, key) for key in extra if key)
    return keys


@contextmanager
def _rejections(db: Session, operation: str, **fields):
    try:
        yield
    except SchedulingError as exc:
        db.rollback()
        logger.warning(
            "scheduling_rejected",
            operation=operation,
            error=type(exc).__name__,
            rule=exc.rule,
            reason=exc.message,
            **fields,
        )
        raise


def _create(
    db: Session,
    window: Window,
    *,
    now: datetime,
    extra_lock_keys: Iterable[str] = (),
) -> Window:
    """Run the ordered checks and persist version 1 of ``window``."""
    with _rejections(
        db, "create", tenant_id=window.tenant_id, kind=window.kind, actor_id=window.created_by
    ):
        policy = load_window_settings(db, window.tenant_id, window.kind)
        with resource_locks.hold(*_lock_keys(window, *extra_lock_keys)):
            check_request(db, window, policy, now)
            check_occupancy(db, window, policy)
            store.save(db, window, now=now)
            log_audit_event(
                db,
                window.tenant_id,
                f"{window.kind}.create",
                actor_id=window.created_by,
                related_key=window.business_key,
                payload={
                    "resource": window.resource_key,
                    "start": window.start.isoformat(),
                    "end": window.end.isoformat(),
                    "status": window.status,
                },
            )
            db.commit()
    created = store.get_current(db, window.tenant_id, window.business_key)
    logger.info(
        "window_created",
        tenant_id=created.tenant_id,
        kind=created.kind,
        business_key=created.business_key,
        resource=created.resource_key,
        actor_id=created.created_by,
    )
    return created


def _new_window(
    tenant_id: str,
    kind: str,
    resource: str,
    start: datetime,
    end: datetime,
    *,
    actor_id: str,
    now: datetime,
    subject_ref: str | None = None,
    secondary_resource: str | None = None,
    attributes: dict | None = None,
) -> Window:
    return Window(
        tenant_id=require_text(tenant_id, "tenant_id", max_length=80),
        kind=kind,
        resource_key=resource,
        secondary_resource_key=secondary_resource,
        subject_ref=subject_ref,
        start=to_utc_naive(start),
        end=to_utc_naive(end),
        status=machine_for(kind).initial,
        attributes={k: v for k, v in (attributes or {}).items() if v is not None},
        created_at=now,
        created_by=actor_id,
        recorded_by=actor_id,
    )


def _positive_minutes(value: int, field: str) -> int:
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a whole number of minutes", field=field) from None
    if minutes <= 0:
        raise ValidationError(f"{field} must be > 0", field=field, rule="window_order")
    return minutes


def _amount(value, field: str) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field) from None
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0", field=field)
    return amount


def _employee_key(employee_id: str, field: str = "employee_id") -> str:
    return resource_key("employee", require_text(employee_id, field, max_length=80))


def _roster_member(db: Session, tenant_id: str, employee_id: str, field: str):
    member = store.get_staff_member(db, tenant_id, require_text(employee_id, field, max_length=80))
    if member is None or not member.is_active:
        raise ValidationError(
            f"{employee_id} is not on the active roster", field=field, rule="unknown_employee"
        )
    return member


# ---------------------------------------------------------------- create


def reserve_prep_room(
    db: Session,
    tenant_id: str,
    *,
    room_id: str,
    embalmer_id: str,
    case_id: str,
    start: datetime,
    duration_minutes: int,
    actor_id: str,
    priority: str = "normal",
    family_id: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Window:
    now = _now(now)
    actor = _actor(actor_id)
    minutes = _positive_minutes(duration_minutes, "duration_minutes")
    room = resource_key("room", require_text(room_id, "room_id", max_length=80))
    embalmer = require_text(embalmer_id, "embalmer_id", max_length=80)
    window = _new_window(
        tenant_id,
        "prep_room",
        room,
        start,
        to_utc_naive(start) + timedelta(minutes=minutes),
        actor_id=actor,
        now=now,
        subject_ref=require_text(case_id, "case_id"),
        attributes={
            "embalmer_id": embalmer,
            "priority": require_choice(priority, "priority", PREP_PRIORITIES),
            "family_id": (family_id or "").strip() or None,
            "notes": (notes or "").strip() or None,
        },
    )
    return _create(db, window, now=now, extra_lock_keys=[resource_key("employee", embalmer)])


def schedule_appointment(
    db: Session,
    tenant_id: str,
    *,
    director_id: str,
    family_name: str,
    start: datetime,
    duration_minutes: int,
    actor_id: str,
    contact_email: str | None = None,
    contact_phone: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Window:
    now = _now(now)
    actor = _actor(actor_id)
    minutes = _positive_minutes(duration_minutes, "duration_minutes")
    window = _new_window(
        tenant_id,
        "appointment",
        _employee_key(director_id, "director_id"),
        start,
        to_utc_naive(start) + timedelta(minutes=minutes),
        actor_id=actor,
        now=now,
        subject_ref=require_text(family_name, "family_name", max_length=120),
        attributes={
            "contact_email": (contact_email or "").strip().lower() or None,
            "contact_phone": (contact_phone or "").strip() or None,
            "notes": (notes or "").strip() or None,
            "reminder_email_sent": False,
            "reminder_sms_sent": False,
        },
    )
    return _create(db, window, now=now)


def assign_driver(
    db: Session,
    tenant_id: str,
    *,
    driver_id: str,
    vehicle_id: str,
    case_id: str,
    event_type: str,
    scheduled_time: datetime,
    estimated_duration_minutes: int,
    actor_id: str,
    pickup_location: str | None = None,
    dropoff_location: str | None = None,
    now: datetime | None = None,
) -> Window:
    now = _now(now)
    actor = _actor(actor_id)
    minutes = _positive_minutes(estimated_duration_minutes, "estimated_duration_minutes")
    window = _new_window(
        tenant_id,
        "driver",
        _employee_key(driver_id, "driver_id"),
        scheduled_time,
        to_utc_naive(scheduled_time) + timedelta(minutes=minutes),
        actor_id=actor,
        now=now,
        subject_ref=require_text(case_id, "case_id"),
        secondary_resource=resource_key(
            "vehicle", require_text(vehicle_id, "vehicle_id", max_length=80)
        ),
        attributes={
            "event_type": require_choice(event_type, "event_type", DRIVER_EVENT_TYPES),
            "estimated_duration_minutes": minutes,
            "pickup_location": (pickup_location or "").strip() or None,
            "dropoff_location": (dropoff_location or "").strip() or None,
        },
    )
    return _create(db, window, now=now)


def create_pto_request(
    db: Session,
    tenant_id: str,
    *,
    employee_id: str,
    employee_name: str,
    role: str,
    pto_type: str,
    start_date: date,
    end_date: date,
    actor_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Window:
    now = _now(now)
    with _rejections(db, "create", tenant_id=tenant_id, kind="pto", actor_id=actor_id):
        actor = _actor(actor_id)
        if end_date < start_date:
            raise ValidationError(
                "end_date must be >= start_date", field="end_date", rule="window_order"
            )
        start = datetime.combine(start_date, time.min)
        end = datetime.combine(end_date + timedelta(days=1), time.min)
        role = require_text(role, "role", max_length=40).lower()
        policy = load_settings(db, tenant_id, "pto")
        role_policy = policy.role_policy(role)
        window = _new_window(
            tenant_id,
            "pto",
            _employee_key(employee_id),
            start,
            end,
            actor_id=actor,
            now=now,
            subject_ref=require_choice(pto_type, "pto_type", PTO_TYPES),
            attributes={
                "employee_name": require_text(employee_name, "employee_name", max_length=120),
                "role": role,
                "reason": (reason or "").strip() or None,
                "requested_days": requested_days(start, end),
                "requires_director_approval": role_policy.requires_director_approval,
                "requires_backfill": role_policy.requires_backfill,
                "backfill_requirements_met": False,
            },
        )
    return _create(db, window, now=now, extra_lock_keys=[f"role:pto:{role}"])


def schedule_training(
    db: Session,
    tenant_id: str,
    *,
    employee_id: str,
    employee_name: str,
    role: str,
    training_name: str,
    start: datetime,
    end: datetime,
    actor_id: str,
    cost: float = 0,
    hours: float | None = None,
    provider: str | None = None,
    now: datetime | None = None,
) -> Window:
    now = _now(now)
    with _rejections(db, "create", tenant_id=tenant_id, kind="training", actor_id=actor_id):
        actor = _actor(actor_id)
        role = require_text(role, "role", max_length=40).lower()
        cost = _amount(cost, "cost")
        start, end = to_utc_naive(start), to_utc_naive(end)
        if hours is None:
            scheduled_hours = round((end - start).total_seconds() / 3600, 2)
        else:
            scheduled_hours = _amount(hours, "hours")
        if scheduled_hours <= 0:
            raise ValidationError("hours must be > 0", field="hours")
        policy = load_settings(db, tenant_id, "training")
        requirement = policy.requirement_for(role)
        requires_approval = cost > policy.approval_required_above_cost or bool(
            requirement and requirement.requires_director_approval_for_training
        )
        window = _new_window(
            tenant_id,
            "training",
            _employee_key(employee_id),
            start,
            end,
            actor_id=actor,
            now=now,
            subject_ref=require_text(training_name, "training_name"),
            attributes={
                "employee_name": require_text(employee_name, "employee_name", max_length=120),
                "role": role,
                "cost": round(cost, 2),
                "scheduled_hours": scheduled_hours,
                "provider": (provider or "").strip() or None,
                "requires_director_approval": requires_approval,
            },
        )
    return _create(db, window, now=now, extra_lock_keys=[f"role:training:{role}"])


def _premium_for(
    db: Session, absence: Window, premium_type: str | None
) -> tuple[str, float]:
    if premium_type is None:
        if absence.kind == "training":
            premium_type = "training_coverage"
        elif touches_holiday(absence.start, absence.end, settings.HOLIDAY_COUNTRY):
            premium_type = "holiday"
        else:
            premium_type = "none"
    premium_type = require_choice(premium_type, "premium_type", PREMIUM_TYPES)
    if premium_type == "none":
        return premium_type, 1.0
    if premium_type == "training_coverage":
        training = load_settings(db, absence.tenant_id, "training")
        if not training.enable_training_backfill:
            raise ValidationError(
                "Training backfill is disabled for this tenant",
                field="premium_type",
                rule="training_backfill_disabled",
            )
        return premium_type, training.backfill_premium_multiplier
    pto = load_settings(db, absence.tenant_id, "pto")
    if not pto.enable_premium_pay_for_backfill:
        return premium_type, 1.0
    return premium_type, pto.premium_multiplier


def suggest_backfill(
    db: Session,
    tenant_id: str,
    *,
    absence_key: str,
    backfill_employee_id: str,
    actor_id: str,
    premium_type: str | None = None,
    now: datetime | None = None,
) -> Window:
    """Propose a substitute for a PTO or training absence."""
    now = _now(now)
    actor = _actor(actor_id)
    absence = store.get_current(db, tenant_id, require_text(absence_key, "absence_key"))
    if absence.kind not in {"pto", "training"}:
        raise ValidationError(
            "Backfill can only cover PTO or training", field="absence_key", rule="absence_kind"
        )
    if not machine_for(absence.kind).is_blocking(absence.status):
        raise ValidationError(
            f"Absence is {absence.status} and needs no coverage",
            field="absence_key",
            rule="absence_inactive",
        )
    backfill_key = _employee_key(backfill_employee_id, "backfill_employee_id")
    if backfill_key == absence.resource_key:
        raise ValidationError(
            "An employee cannot cover their own absence",
            field="backfill_employee_id",
            rule="self_coverage",
        )
    member = _roster_member(db, tenant_id, backfill_employee_id, "backfill_employee_id")
    chosen_type, multiplier = _premium_for(db, absence, premium_type)
    days = requested_days(absence.start, absence.end)
    window = _new_window(
        tenant_id,
        "backfill",
        backfill_key,
        absence.start,
        absence.end,
        actor_id=actor,
        now=now,
        subject_ref=absence.business_key,
        attributes={
            "absence_kind": absence.kind,
            "absent_employee": absence.resource_key,
            "backfill_employee_name": member.name,
            "role": member.role,
            "premium_type": chosen_type,
            "premium_multiplier": multiplier,
            "estimated_hours": coverage_hours(days),
            "daily_hours": coverage_hours(1),
        },
    )
    return _create(db, window, now=now)


def assign_on_call(
    db: Session,
    tenant_id: str,
    *,
    director_id: str,
    start: datetime,
    end: datetime,
    actor_id: str,
    shift_type: str | None = None,
    now: datetime | None = None,
) -> Window:
    now = _now(now)
    actor = _actor(actor_id)
    start, end = to_utc_naive(start), to_utc_naive(end)
    if shift_type is None:
        shift_type = "weekend" if any(
            (start + timedelta(days=i)).weekday() >= 5
            for i in range(max(1, math.ceil((end - start) / timedelta(days=1))))
        ) else "weekday"
    window = _new_window(
        tenant_id,
        "on_call",
        _employee_key(director_id, "director_id"),
        start,
        end,
        actor_id=actor,
        now=now,
        subject_ref=require_choice(shift_type, "shift_type", ON_CALL_SHIFT_TYPES),
    )
    return _create(db, window, now=now)


def create_weekend_rotation(
    db: Session,
    tenant_id: str,
    *,
    director_ids: list[str],
    start_date: date,
    actor_id: str,
    pattern: str = "on-off-on-off",
    custom_weeks: Iterable[int] | None = None,
    cycles: int = 1,
    shift_start: time = time(8, 0),
    now: datetime | None = None,
) -> dict:
    """Book a rotating weekend on-call schedule, one ``assign_on_call`` per weekend.

    Weekends the rules refuse (PTO, the advance-notice horizon, quarterly
    caps) are reported under ``skipped`` instead of failing the rotation.
    Running it again later books what has come into range; shifts the
    director already holds are listed under ``existing``.
    """
    now = _now(now)
    actor = _actor(actor_id)
    with _rejections(db, "rotation", tenant_id=tenant_id, kind="on_call", actor_id=actor):
        policy = load_settings(db, tenant_id, "on_call")
        if not policy.enable_fair_rotation:
            raise ValidationError(
                "Fair rotation is disabled for this tenant", field="pattern", rule="rotation_disabled"
            )
        ids = [require_text(d, "director_ids", max_length=80) for d in director_ids or ()]
        weeks = pattern_weeks(pattern, custom_weeks)
        plan = plan_weekend_rotation(
            ids,
            start_date,
            weeks,
            cycles=cycles,
            max_consecutive=policy.max_consecutive_weekends_on,
            pattern=(pattern or "").strip().lower(),
        )
        for director_id in ids:
            _roster_member(db, tenant_id, director_id, "director_ids")

    created, existing, skipped = [], [], []
    for slot in plan.slots:
        start = datetime.combine(slot.saturday, shift_start)
        end = start + timedelta(days=2)
        held = [
            w
            for w in store.find_current(
                db,
                tenant_id,
                kind="on_call",
                statuses=machine_for("on_call").blocking,
                resource_key=resource_key("employee", slot.employee_id),
                start=start,
                end=end,
            )
            if w.start == start
        ]
        if held:
            existing.append(held[0])
            continue
        try:
            created.append(
                assign_on_call(
                    db,
                    tenant_id,
                    director_id=slot.employee_id,
                    start=start,
                    end=end,
                    actor_id=actor,
                    shift_type="weekend",
                    now=now,
                )
            )
        except SchedulingError as exc:
            skipped.append(
                {
                    "employee_id": slot.employee_id,
                    "start": start,
                    "rule": exc.rule,
                    "reason": exc.message,
                }
            )

    total = len(plan.weekends)
    assignments = {}
    for director_id in ids:
        working = [slot.saturday for slot in plan.for_employee(director_id)]
        assignments[director_id] = {
            "weekends_on": working,
            "weekends_off": [s for s in plan.weekends if s not in working],
            "percentage_working": round(100 * len(working) / total, 1),
        }
    logger.info(
        "weekend_rotation_created",
        tenant_id=tenant_id,
        pattern=plan.pattern,
        directors=len(ids),
        created=len(created),
        skipped=len(skipped),
        actor_id=actor,
    )
    return {
        "pattern": plan.pattern,
        "weeks": list(plan.weeks),
        "fair_distribution_score": plan.fair_distribution_score,
        "uncovered_weekends": plan.uncovered,
        "assignments": assignments,
        "created": created,
        "existing": existing,
        "skipped": skipped,
    }


# ---------------------------------------------------------------- shift swaps


def _swappable_shift(db: Session, tenant_id: str, shift_key: str, owner_key: str) -> Window:
    shift = store.get_current(db, tenant_id, require_text(shift_key, "shift_key"))
    if shift.kind != "on_call":
        raise ValidationError(
            "Only on-call shifts can be swapped", field="shift_key", rule="shift_kind"
        )
    if shift.status != "scheduled":
        raise ValidationError(
            f"Shift is {shift.status} and can no longer be swapped",
            field="shift_key",
            rule="shift_status",
        )
    if shift.resource_key != owner_key:
        raise ValidationError(
            "Shift is not assigned to the requesting employee",
            field="from_employee_id",
            rule="not_shift_owner",
        )
    return shift


def request_shift_swap(
    db: Session,
    tenant_id: str,
    *,
    shift_key: str,
    from_employee_id: str,
    to_employee_id: str,
    actor_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Window:
    """Ask ``to_employee_id`` to take over an on-call shift.

    The swap itself never occupies anyone's calendar. The replacement must
    hold at least the same license level and must be able to work the
    shift under the on-call rules (rest gap, quarterly and weekend caps).
    """
    now = _now(now)
    with _rejections(
        db, "shift_swap", tenant_id=tenant_id, kind="shift_swap",
        actor_id=actor_id, shift_key=shift_key,
    ):
        actor = _actor(actor_id)
        from_key = _employee_key(from_employee_id, "from_employee_id")
        to_key = _employee_key(to_employee_id, "to_employee_id")
        if from_key == to_key:
            raise ValidationError(
                "Cannot swap a shift with yourself", field="to_employee_id", rule="self_swap"
            )
        policy = load_window_settings(db, tenant_id, "shift_swap")
        with resource_locks.hold((tenant_id, from_key), (tenant_id, to_key)):
            shift = _swappable_shift(db, tenant_id, shift_key, from_key)
            if shift.start - now < timedelta(hours=policy.swap_notice_hours):
                raise ValidationError(
                    f"Swaps need at least {policy.swap_notice_hours}h notice",
                    field="shift_key",
                    rule="advance_notice",
                )
            requester = _roster_member(db, tenant_id, from_employee_id, "from_employee_id")
            replacement = _roster_member(db, tenant_id, to_employee_id, "to_employee_id")
            if not license_covers(replacement.role, requester.role):
                raise ValidationError(
                    f"A {replacement.role} cannot cover a {requester.role} shift",
                    field="to_employee_id",
                    rule="license_level",
                    details={"required": requester.role, "offered": replacement.role},
                )
            if store.find_current(
                db, tenant_id, kind="shift_swap", statuses=set(OPEN_SWAP_STATUSES),
                subject_ref=shift.business_key,
            ):
                raise ValidationError(
                    "Shift already has an open swap request", field="shift_key", rule="swap_pending"
                )
            pending = [
                w
                for w in store.find_current(
                    db, tenant_id, kind="shift_swap", statuses=set(OPEN_SWAP_STATUSES),
                    resource_key=from_key,
                )
                if w.resource_key == from_key
            ]
            if len(pending) >= policy.max_pending_swaps_per_employee:
                raise CapacityExceededError(
                    "Employee has too many pending swap requests",
                    limit=policy.max_pending_swaps_per_employee,
                    current=len(pending),
                    rule="pending_swaps",
                )
            check_occupancy(
                db,
                shift.next_version(resource_key=to_key),
                policy,
                ignore_keys={shift.business_key},
            )
            window = _new_window(
                tenant_id,
                "shift_swap",
                from_key,
                shift.start,
                shift.end,
                actor_id=actor,
                now=now,
                subject_ref=shift.business_key,
                secondary_resource=to_key,
                attributes={
                    "shift_type": shift.subject_ref,
                    "from_role": requester.role,
                    "to_role": replacement.role,
                    "reason": (reason or "").strip() or None,
                },
            )
            store.save(db, window, now=now)
            log_audit_event(
                db,
                tenant_id,
                "shift_swap.create",
                actor_id=actor,
                related_key=window.business_key,
                payload={"shift": shift.business_key, "from": from_key, "to": to_key},
            )
            db.commit()
    created = store.get_current(db, tenant_id, window.business_key)
    logger.info(
        "shift_swap_requested",
        tenant_id=tenant_id,
        business_key=created.business_key,
        shift_key=shift.business_key,
        actor_id=actor,
    )
    return created


def review_shift_swap(
    db: Session,
    tenant_id: str,
    swap_key: str,
    *,
    approved: bool,
    actor_id: str,
    reviewer_role: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Window:
    """Approve or reject an accepted swap; approval hands the shift over."""
    now = _now(now)
    actor = _actor(actor_id)
    swap = store.get_current(db, tenant_id, require_text(swap_key, "swap_key"))
    if swap.kind != "shift_swap":
        raise ValidationError("Window is not a shift swap", field="swap_key", rule="swap_kind")
    target = "approved" if approved else "rejected"
    with _rejections(
        db, "transition", tenant_id=tenant_id, kind="shift_swap",
        business_key=swap_key, actor_id=actor, target=target,
    ):
        policy = load_window_settings(db, tenant_id, "shift_swap")
        with resource_locks.hold(*_lock_keys(swap)):
            swap = store.get_current(db, tenant_id, swap_key)
            ctx = TransitionContext(
                at=now,
                actor_id=actor,
                policy=policy,
                values={"reviewer_role": reviewer_role, "reason": reason},
            )
            reviewed = machine_for("shift_swap").transition(swap, target, ctx)
            moved = None
            if approved:
                shift = _swappable_shift(db, tenant_id, swap.subject_ref, swap.resource_key)
                moved = shift.next_version(
                    resource_key=swap.secondary_resource_key,
                    recorded_by=actor,
                    attributes={"swapped_from": swap.resource_key, "swap_key": swap_key},
                )
                check_occupancy(db, moved, policy, ignore_keys={shift.business_key})
            stored = store.append_version(db, reviewed, now=now)
            if moved is not None:
                store.append_version(db, moved, now=now)
                enqueue_notification(
                    db,
                    tenant_id,
                    "shift_swap_approved",
                    f"On-call shift {moved.start:%Y-%m-%d %H:%M} moved to {moved.resource_key}",
                    related_key=moved.business_key,
                    payload={"from": swap.resource_key, "to": moved.resource_key},
                )
            log_audit_event(
                db,
                tenant_id,
                f"shift_swap.{target}",
                actor_id=actor,
                related_key=swap_key,
                payload={"from": swap.status, "to": target, "shift": swap.subject_ref},
            )
            db.commit()
    logger.info(
        "window_transitioned",
        tenant_id=tenant_id,
        kind="shift_swap",
        business_key=swap_key,
        from_status=swap.status,
        to_status=stored.status,
        version=stored.version,
        actor_id=actor,
    )
    return stored


# ---------------------------------------------------------------- lifecycle


def _backfill_covered(db: Session, absence: Window) -> bool:
    return bool(
        store.find_current(
            db,
            absence.tenant_id,
            kind="backfill",
            statuses={"confirmed", "completed"},
            subject_ref=absence.business_key,
        )
    )


def transition(
    db: Session,
    tenant_id: str,
    business_key: str,
    target: str,
    *,
    actor_id: str,
    now: datetime | None = None,
    **values,
) -> Window:
    """Move a window to ``target`` and append the resulting version.

    Derived fields come from the machine's effects; caller-supplied values
    only feed inputs such as mileage readings or a cancellation reason.
    """
    now = _now(now)
    actor = _actor(actor_id)
    current = store.get_current(db, tenant_id, business_key)
    target = (target or "").strip().lower()
    if current.kind == "shift_swap" and target in {"approved", "rejected"}:
        return review_shift_swap(
            db,
            tenant_id,
            business_key,
            approved=target == "approved",
            actor_id=actor,
            reviewer_role=values.get("reviewer_role"),
            reason=values.get("reason"),
            now=now,
        )
    with _rejections(
        db, "transition", tenant_id=tenant_id, kind=current.kind,
        business_key=business_key, actor_id=actor, target=target,
    ):
        machine = machine_for(current.kind)
        policy = load_window_settings(db, tenant_id, current.kind)
        with resource_locks.hold(*_lock_keys(current)):
            current = store.get_current(db, tenant_id, business_key)
            values.pop("backfill_requirements_met", None)
            if current.kind == "pto" and target == "approved":
                values["backfill_requirements_met"] = _backfill_covered(db, current)
            ctx = TransitionContext(at=now, actor_id=actor, policy=policy, values=values)
            updated = machine.transition(current, target, ctx)
            if target == CONFIRM_TARGETS.get(current.kind):
                check_occupancy(db, updated, policy, ignore_keys={business_key})
            stored = store.append_version(db, updated, now=now)
            log_audit_event(
                db,
                tenant_id,
                f"{current.kind}.{target}",
                actor_id=actor,
                related_key=business_key,
                payload={"from": current.status, "to": target, "version": stored.version},
            )
            db.commit()
    logger.info(
        "window_transitioned",
        tenant_id=tenant_id,
        kind=stored.kind,
        business_key=business_key,
        from_status=current.status,
        to_status=stored.status,
        version=stored.version,
        actor_id=actor,
    )
    return stored


def confirm(
    db: Session, tenant_id: str, business_key: str, *, actor_id: str, now: datetime | None = None
) -> Window:
    current = store.get_current(db, tenant_id, business_key)
    target = CONFIRM_TARGETS.get(current.kind)
    if target is None:
        raise InvalidStateTransitionError(current.kind, current.status, "confirmed")
    return transition(db, tenant_id, business_key, target, actor_id=actor_id, now=now)


def cancel(
    db: Session,
    tenant_id: str,
    business_key: str,
    *,
    actor_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Window:
    return transition(
        db, tenant_id, business_key, "cancelled", actor_id=actor_id, now=now, reason=reason
    )


def reschedule(
    db: Session,
    tenant_id: str,
    business_key: str,
    *,
    new_start: datetime,
    new_end: datetime,
    actor_id: str,
    now: datetime | None = None,
) -> Window:
    now = _now(now)
    actor = _actor(actor_id)
    current = store.get_current(db, tenant_id, business_key)
    with _rejections(
        db, "reschedule", tenant_id=tenant_id, kind=current.kind,
        business_key=business_key, actor_id=actor,
    ):
        machine = machine_for(current.kind)
        if not machine.occupying:
            raise ValidationError(
                f"{current.kind} requests follow their shift and cannot be moved",
                field="business_key",
                rule="window_locked",
            )
        policy = load_window_settings(db, tenant_id, current.kind)
        ctx = TransitionContext(at=now, actor_id=actor, policy=policy)
        moved = machine.reschedule(
            current, to_utc_naive(new_start), to_utc_naive(new_end), ctx
        )
        ignore = {business_key}
        extra = []
        if current.kind == "prep_room":
            extra.append(resource_key("employee", current.attr("embalmer_id")))
        elif current.kind in {"pto", "training"}:
            extra.append(f"role:{current.kind}:{current.attr('role')}")
        with resource_locks.hold(*_lock_keys(current, *extra)):
            latest = store.get_current(db, tenant_id, business_key)
            if latest.version != current.version:
                raise ValidationError(
                    "Window changed while rescheduling; reload and retry",
                    rule="stale_window",
                )
            check_request(db, moved, policy, now, ignore_keys=ignore)
            check_occupancy(db, moved, policy, ignore_keys=ignore)
            stored = store.append_version(db, moved, now=now)
            log_audit_event(
                db,
                tenant_id,
                f"{current.kind}.reschedule",
                actor_id=actor,
                related_key=business_key,
                payload={
                    "from": [current.start.isoformat(), current.end.isoformat()],
                    "to": [stored.start.isoformat(), stored.end.isoformat()],
                },
            )
            db.commit()
    logger.info(
        "window_rescheduled",
        tenant_id=tenant_id,
        kind=stored.kind,
        business_key=business_key,
        version=stored.version,
        actor_id=actor,
    )
    return stored


def mark_reminder_sent(
    db: Session,
    tenant_id: str,
    business_key: str,
    *,
    actor_id: str,
    channel: str = "email",
    now: datetime | None = None,
) -> Window:
    now = _now(now)
    actor = _actor(actor_id)
    channel = require_choice(channel, "channel", {"email", "sms"})
    current = store.get_current(db, tenant_id, business_key)
    if current.kind != "appointment":
        raise ValidationError("Only appointments carry reminders", field="business_key")
    with _rejections(db, "reminder", tenant_id=tenant_id, business_key=business_key, actor_id=actor):
        ctx = TransitionContext(at=now, actor_id=actor)
        amended = machine_for("appointment").amend(
            current,
            ctx,
            **{f"reminder_{channel}_sent": True, f"reminder_{channel}_sent_at": now.isoformat()},
        )
        stored = store.append_version(db, amended, now=now)
        log_audit_event(
            db,
            tenant_id,
            f"appointment.reminder_{channel}",
            actor_id=actor,
            related_key=business_key,
        )
        db.commit()
    return stored


# ---------------------------------------------------------------- queries


def find_next_available_slot(
    db: Session,
    tenant_id: str,
    *,
    kind: str,
    resource_id: str,
    from_date: date | datetime,
    duration_minutes: int,
    secondary_resource_id: str | None = None,
    limit: int = 1,
    now: datetime | None = None,
) -> Slot | list[Slot] | None:
    """Next free slot for ``resource_id`` under the tenant's rules for ``kind``.

    A slot is only offered when the matching create call would accept it:
    every resource is free (the vehicle too, for driver runs), the notice
    rules hold and daily caps are not reached. With ``limit > 1`` the first
    ``limit`` slots are returned as a list.
    """
    if kind not in MACHINES or not machine_for(kind).blocking:
        raise ValidationError(f"Unknown window kind: {kind!r}", field="kind")
    now = _now(now)
    minutes = _positive_minutes(duration_minutes, "duration_minutes")
    resource = resource_key(RESOURCE_TYPE_BY_KIND[kind], require_text(resource_id, "resource_id"))
    secondary = None
    if secondary_resource_id is not None:
        if kind not in SECONDARY_RESOURCE_TYPE_BY_KIND:
            raise ValidationError(
                f"{kind} windows hold a single resource", field="secondary_resource_id"
            )
        secondary = resource_key(
            SECONDARY_RESOURCE_TYPE_BY_KIND[kind],
            require_text(secondary_resource_id, "secondary_resource_id"),
        )
    policy = load_window_settings(db, tenant_id, kind)
    rules = business_rules_for(kind, policy)

    horizon_start = (
        from_date if isinstance(from_date, datetime) else datetime.combine(from_date, time.min)
    )
    horizon_end = horizon_start + timedelta(days=rules.horizon_days + 1)
    existing = []
    for key in filter(None, (resource, secondary)):
        existing.extend(
            existing_on_resource(
                db,
                tenant_id,
                key,
                horizon_start,
                horizon_end,
                kind=kind,
                buffer_minutes=rules.buffer_minutes,
            )
        )
    closed = set(rules.closed_dates)
    for period in policy.blackout_periods:
        if not period.hard:
            continue
        day = period.start_date
        while day <= period.end_date:
            closed.add(day)
            day += timedelta(days=1)
    if closed:
        rules = replace(rules, closed_dates=frozenset(closed))

    def admit(slot: Slot) -> bool:
        candidate = Window(
            tenant_id=tenant_id,
            kind=kind,
            resource_key=resource,
            secondary_resource_key=secondary,
            start=slot.start,
            end=slot.end,
            status=machine_for(kind).initial,
            created_by="availability",
        )
        try:
            check_request(db, candidate, policy, now)
            check_capacity(db, candidate, policy)
        except SchedulingError:
            return False
        return True

    slots = available_slots(
        existing, from_date, minutes, rules, limit=max(1, limit), admit=admit
    )
    if limit > 1:
        return slots
    return slots[0] if slots else None


def rank_coverage_candidates(
    db: Session,
    tenant_id: str,
    *,
    role: str,
    start: datetime,
    end: datetime,
    for_kind: str = "backfill",
    exclude_employee_ids: Iterable[str] = (),
    now: datetime | None = None,
) -> list[Candidate]:
    """Rank active staff with ``role`` for a coverage window.

    Conflicted staff are kept and penalised so callers can still override.
    """
    now = _now(now)
    start, end = to_utc_naive(start), to_utc_naive(end)
    if end <= start:
        raise ValidationError("end must be after start", field="end", rule="window_order")
    if for_kind not in COMMITTED_STATUSES:
        raise ValidationError(
            f"Cannot rank candidates for {for_kind}", field="for_kind"
        )
    policy = load_window_settings(db, tenant_id, for_kind)
    buffer_minutes = effective_buffer(for_kind, policy)
    excluded = {e.strip() for e in exclude_employee_ids}
    lookback_start = None
    if settings.RANKER_LOOKBACK_DAYS:
        lookback_start = now - timedelta(days=settings.RANKER_LOOKBACK_DAYS)

    staff = [
        StaffRef(employee_id=m.employee_id, name=m.name, role=m.role)
        for m in store.list_staff_by_role(db, tenant_id, role)
        if m.employee_id not in excluded
    ]
    windows_by_employee = {}
    for member in staff:
        windows = store.find_current(
            db, tenant_id, resource_key=resource_key("employee", member.employee_id)
        )
        windows_by_employee[member.employee_id] = [
            w
            for w in windows
            if kinds_conflict(for_kind, w.kind) or w.kind in COMMITTED_STATUSES
        ]
    blocking = {
        kind: set(machine.blocking) if kinds_conflict(for_kind, kind) else set()
        for kind, machine in MACHINES.items()
    }
    return rank_candidates(
        staff,
        windows_by_employee,
        start,
        end,
        blocking=blocking,
        committed=COMMITTED_STATUSES,
        buffer_minutes=buffer_minutes,
        lookback_start=lookback_start,
        penalty=settings.RANKER_CONFLICT_PENALTY,
    )


def rank_backfill_candidates(
    db: Session,
    tenant_id: str,
    *,
    role: str,
    start: datetime,
    end: datetime,
    exclude_employee_ids: Iterable[str] = (),
    now: datetime | None = None,
) -> list[Candidate]:
    return rank_coverage_candidates(
        db,
        tenant_id,
        role=role,
        start=start,
        end=end,
        for_kind="backfill",
        exclude_employee_ids=exclude_employee_ids,
        now=now,
    )


def due_reminders(db: Session, tenant_id: str, *, now: datetime | None = None) -> list[Window]:
    now = _now(now)
    policy: AppointmentPolicySettings = load_settings(db, tenant_id, "appointment")
    return [
        w
        for w in store.find_current(
            db, tenant_id, kind="appointment", statuses={"scheduled", "confirmed"}, start=now
        )
        if needs_email_reminder(w, now, policy.reminder_min_hours, policy.reminder_max_hours)
    ]


def expired_reservations(
    db: Session, tenant_id: str, *, now: datetime | None = None
) -> list[Window]:
    now = _now(now)
    policy: PrepRoomPolicySettings = load_settings(db, tenant_id, "prep_room")
    return [
        w
        for w in store.find_current(
            db, tenant_id, kind="prep_room", statuses={"pending", "confirmed"}
        )
        if has_auto_release_timeout(w, now, policy.auto_release_minutes)
    ]


def embalmer_workload(
    db: Session, tenant_id: str, *, embalmer_id: str, day: date
) -> dict:
    """How much of an embalmer's shift on ``day`` is already taken."""
    policy: PrepRoomPolicySettings = load_settings(db, tenant_id, "prep_room")
    embalmer = require_text(embalmer_id, "embalmer_id", max_length=80)
    windows = embalmer_shift_windows(db, tenant_id, embalmer, day)
    scheduled = sum(w.duration_minutes for w in windows)
    breaks = policy.break_minutes_between_preparations * len(windows)
    return {
        "embalmer_id": embalmer,
        "date": day,
        "preparations": len(windows),
        "cases": [w.subject_ref for w in windows],
        "scheduled_minutes": scheduled,
        "remaining_preparations": max(
            0, policy.max_preparations_per_embalmer_per_shift - len(windows)
        ),
        "remaining_minutes": max(0, policy.embalmer_shift_hours * 60 - scheduled - breaks),
    }


def enqueue_due_reminders(
    db: Session, tenant_id: str, *, now: datetime | None = None
) -> int:
    """Record a ``reminder_due`` notification for every appointment needing one."""
    due = due_reminders(db, tenant_id, now=now)
    for window in due:
        enqueue_notification(
            db,
            tenant_id,
            "reminder_due",
            f"Reminder due for {window.subject_ref} at {window.start:%Y-%m-%d %H:%M}",
            related_key=window.business_key,
            payload={"start": window.start.isoformat(), "resource": window.resource_key},
        )
    db.commit()
    return len(due)


# ---------------------------------------------------------------- service coverage


def check_service_coverage(
    db: Session,
    tenant_id: str,
    *,
    service_type: str,
    start: datetime,
    end: datetime,
    staff: Iterable[tuple[str, str]],
) -> dict:
    """Validate a proposed crew for a service.

    ``staff`` holds ``(employee_id, role)`` pairs. Raises on missing roles,
    overlong services, or crew members who are booked too close to it.
    """
    start, end = to_utc_naive(start), to_utc_naive(end)
    if end <= start:
        raise ValidationError("end must be after start", field="end", rule="window_order")
    policy = load_settings(db, tenant_id, "service_coverage")
    requirements = policy.staffing_requirements.get((service_type or "").strip().lower())
    if requirements is None:
        raise ValidationError(
            f"Unknown service type: {service_type!r}",
            field="service_type",
            details={"allowed": sorted(policy.staffing_requirements)},
        )
    if (end - start) > timedelta(hours=policy.max_service_duration_hours):
        raise ValidationError(
            f"Services are limited to {policy.max_service_duration_hours}h",
            field="end",
            rule="duration",
        )
    crew = [(require_text(e, "employee_id"), (r or "").strip().lower()) for e, r in staff]
    counts: dict[str, int] = {}
    for _, role in crew:
        counts[role] = counts.get(role, 0) + 1
    missing = {
        role: needed - counts.get(role, 0)
        for role, needed in requirements.items()
        if counts.get(role, 0) < needed
    }
    if missing:
        raise ValidationError(
            "Service is understaffed: "
            + ", ".join(f"{n} more {role}" for role, n in sorted(missing.items())),
            field="staff",
            rule="staffing",
            details={"missing": missing},
        )

    pad = timedelta(minutes=policy.buffer_minutes)
    clashes: dict[str, list[str]] = {}
    for employee_id, _ in crew:
        # being on call does not keep someone from working a service
        existing = [
            w
            for w in store.find_current_by_resource(
                db, tenant_id, resource_key("employee", employee_id), start - pad, end + pad
            )
            if w.kind != "on_call"
        ]
        hits = find_conflicts(start, end, existing, policy.buffer_minutes)
        if hits:
            clashes[employee_id] = sorted(w.business_key for w in hits)
    if clashes:
        raise ConflictError(
            "Crew members are booked too close to this service: " + ", ".join(sorted(clashes)),
            conflicting_keys=sorted({k for keys in clashes.values() for k in keys}),
            details={"by_employee": clashes},
        )
    return {
        "service_type": service_type,
        "start": start,
        "end": end,
        "crew": crew,
        "requirements": dict(requirements),
    }
