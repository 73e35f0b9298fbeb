import math
from datetime import date, datetime, timedelta
from typing import Any

from .core.state_machine import StateMachine, TransitionContext, iso, parse_iso
from .core.windows import Window
from .errors import ValidationError

HOURS_PER_COVERAGE_DAY = 8
DEFAULT_MILEAGE_RATE = 0.655
DEFAULT_AUTO_RELEASE_MINUTES = 30
DEFAULT_CANCELLATION_LEAD_HOURS = 24

PTO_TYPES = {"vacation", "sick_leave", "bereavement", "unpaid", "personal"}
PREMIUM_TYPES = {"none", "overtime", "holiday", "training_coverage", "emergency"}
PREP_PRIORITIES = {"normal", "urgent"}
DRIVER_EVENT_TYPES = {"removal", "transfer", "procession"}
ON_CALL_SHIFT_TYPES = {"weekday", "weekend", "holiday"}


def _policy_value(ctx: TransitionContext, name: str, default: Any) -> Any:
    if ctx.policy is None:
        return default
    return getattr(ctx.policy, name, default)


def _append_note(window: Window, note: str | None) -> str | None:
    existing = window.attr("notes")
    if not note:
        return existing
    if existing:
        return f"{existing}\n{note}"
    return note


def _cancelled(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    reason = (ctx.get("reason") or "").strip() or None
    return {
        "cancelled_at": iso(ctx.at),
        "cancelled_by": ctx.actor_id,
        "cancellation_reason": reason,
        "notes": _append_note(window, f"Cancelled: {reason}" if reason else None),
    }


def _stamp(name: str):
    def effect(window: Window, ctx: TransitionContext) -> dict[str, Any]:
        return {name: iso(ctx.at)}

    return effect


# ---------------------------------------------------------------- predicates


def requested_days(start: datetime, end: datetime) -> int:
    return math.ceil((end - start) / timedelta(days=1))


def coverage_hours(days: int | float) -> int:
    return math.ceil(days) * HOURS_PER_COVERAGE_DAY


def calculate_premium_pay(hours: float, base_hourly_rate: float, multiplier: float) -> float:
    return round(float(hours) * float(base_hourly_rate) * float(multiplier), 2)


def has_auto_release_timeout(
    window: Window, now: datetime, minutes: int = DEFAULT_AUTO_RELEASE_MINUTES
) -> bool:
    if window.kind != "prep_room":
        return False
    if window.status not in {"pending", "confirmed"}:
        return False
    if window.attr("checked_in_at"):
        return False
    created = window.created_at or window.valid_from
    if created is None:
        return False
    return now - created >= timedelta(minutes=minutes)


def needs_email_reminder(
    window: Window, now: datetime, min_hours: float = 1, max_hours: float = 36
) -> bool:
    if window.kind != "appointment":
        return False
    if window.status not in {"scheduled", "confirmed"}:
        return False
    if window.attr("reminder_email_sent"):
        return False
    hours_until = (window.start - now).total_seconds() / 3600
    return min_hours <= hours_until <= max_hours


def can_be_cancelled(
    window: Window, now: datetime, lead_hours: float = DEFAULT_CANCELLATION_LEAD_HOURS
) -> bool:
    return window.start - now >= timedelta(hours=lead_hours)


def is_currently_on_pto(window: Window, now: datetime) -> bool:
    return (
        window.kind == "pto"
        and window.status in {"approved", "taken"}
        and window.start <= now < window.end
    )


def is_certification_expired(window: Window, today: date) -> bool:
    raw = window.attr("certification_expires_on")
    if not raw:
        return False
    return date.fromisoformat(raw) < today


def is_certification_expiring(window: Window, today: date, within_days: int) -> bool:
    raw = window.attr("certification_expires_on")
    if not raw:
        return False
    expires = date.fromisoformat(raw)
    return today <= expires <= today + timedelta(days=within_days)


def is_active(window: Window) -> bool:
    machine = MACHINES.get(window.kind)
    if machine is None:
        return False
    return not machine.is_terminal(window.status)


def is_terminal(window: Window) -> bool:
    machine = MACHINES.get(window.kind)
    return bool(machine and machine.is_terminal(window.status))


# ---------------------------------------------------------------- PTO


def _pto_derived(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    return {"requested_days": requested_days(window.start, window.end)}


def _pto_requires_backfill(window: Window, ctx: TransitionContext) -> bool:
    role = window.attr("role")
    if ctx.policy is not None and hasattr(ctx.policy, "role_policy"):
        return bool(ctx.policy.role_policy(role).requires_backfill)
    return bool(window.attr("requires_backfill"))


def _guard_pto_approval(window: Window, ctx: TransitionContext) -> None:
    if _pto_requires_backfill(window, ctx) and not ctx.get("backfill_requirements_met"):
        raise ValidationError(
            "Backfill coverage must be confirmed before approving this request",
            field="backfill_requirements_met",
            rule="backfill_required",
        )


def _guard_reason_required(window: Window, ctx: TransitionContext) -> None:
    if not (ctx.get("reason") or "").strip():
        raise ValidationError(
            "A rejection reason is required", field="reason", rule="reason_required"
        )


def _pto_approved(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    return {
        "decided_at": iso(ctx.at),
        "decided_by": ctx.actor_id,
        "backfill_requirements_met": bool(ctx.get("backfill_requirements_met")),
    }


def _pto_rejected(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    return {
        "decided_at": iso(ctx.at),
        "decided_by": ctx.actor_id,
        "rejection_reason": ctx.get("reason").strip(),
    }


PTO_MACHINE = StateMachine(
    "pto",
    "draft",
    {
        "draft": {"pending", "cancelled"},
        "pending": {"approved", "rejected", "cancelled"},
        "approved": {"taken", "cancelled"},
        "rejected": set(),
        "taken": set(),
        "cancelled": set(),
    },
    guards={
        ("pending", "approved"): _guard_pto_approval,
        ("pending", "rejected"): _guard_reason_required,
    },
    effects={
        "pending": _stamp("submitted_at"),
        "approved": _pto_approved,
        "rejected": _pto_rejected,
        "taken": _stamp("taken_at"),
        "cancelled": _cancelled,
    },
    reschedulable={"draft", "pending"},
    derived=_pto_derived,
)


# ---------------------------------------------------------------- backfill


def _backfill_completed(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    hours = ctx.get("actual_hours")
    if hours is None:
        hours = window.attr("estimated_hours", HOURS_PER_COVERAGE_DAY)
    hours = float(hours)
    if hours <= 0:
        raise ValidationError(
            "actual_hours must be > 0", field="actual_hours", rule="positive_hours"
        )
    updates: dict[str, Any] = {"completed_at": iso(ctx.at), "actual_hours": hours}
    base_rate = ctx.get("base_hourly_rate")
    if base_rate is not None:
        multiplier = float(window.attr("premium_multiplier", 1.0))
        updates["premium_pay"] = calculate_premium_pay(hours, base_rate, multiplier)
    return updates


def _backfill_rejected(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    return {
        "rejected_at": iso(ctx.at),
        "rejection_reason": (ctx.get("reason") or "").strip() or None,
    }


BACKFILL_MACHINE = StateMachine(
    "backfill",
    "suggested",
    {
        "suggested": {"pending_confirmation", "cancelled"},
        "pending_confirmation": {"confirmed", "rejected", "cancelled"},
        "confirmed": {"completed", "cancelled"},
        "rejected": set(),
        "completed": set(),
        "cancelled": set(),
    },
    effects={
        "pending_confirmation": _stamp("requested_at"),
        "confirmed": _stamp("confirmed_at"),
        "rejected": _backfill_rejected,
        "completed": _backfill_completed,
        "cancelled": _cancelled,
    },
    reschedulable={"suggested", "pending_confirmation"},
)


# ---------------------------------------------------------------- prep room


def _guard_auto_release(window: Window, ctx: TransitionContext) -> None:
    minutes = _policy_value(ctx, "auto_release_minutes", DEFAULT_AUTO_RELEASE_MINUTES)
    if not has_auto_release_timeout(window, ctx.at, minutes):
        raise ValidationError(
            f"Reservation is still inside its {minutes} minute hold",
            rule="auto_release_not_due",
        )


def _prep_completed(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    checked_in = parse_iso(window.attr("checked_in_at")) or window.start
    elapsed = ctx.at - checked_in
    return {
        "checked_out_at": iso(ctx.at),
        "actual_duration_minutes": round(elapsed.total_seconds() / 60),
    }


PREP_ROOM_MACHINE = StateMachine(
    "prep_room",
    "pending",
    {
        "pending": {"confirmed", "auto_released", "cancelled"},
        "confirmed": {"in_progress", "auto_released", "cancelled"},
        "in_progress": {"completed"},
        "completed": set(),
        "auto_released": set(),
        "cancelled": set(),
    },
    guards={"auto_released": _guard_auto_release},
    effects={
        "confirmed": _stamp("confirmed_at"),
        "in_progress": _stamp("checked_in_at"),
        "completed": _prep_completed,
        "auto_released": _stamp("released_at"),
        "cancelled": _cancelled,
    },
    reschedulable={"pending", "confirmed"},
)


# ---------------------------------------------------------------- appointment


def _guard_appointment_cancel(window: Window, ctx: TransitionContext) -> None:
    lead = _policy_value(ctx, "cancellation_lead_hours", DEFAULT_CANCELLATION_LEAD_HOURS)
    if not can_be_cancelled(window, ctx.at, lead):
        raise ValidationError(
            f"Appointments must be cancelled at least {lead}h ahead",
            field="start",
            rule="cancellation_notice",
        )


def _guard_no_show(window: Window, ctx: TransitionContext) -> None:
    if ctx.at < window.start:
        raise ValidationError(
            "Cannot mark a no-show before the appointment starts",
            field="start",
            rule="no_show_before_start",
        )


APPOINTMENT_MACHINE = StateMachine(
    "appointment",
    "scheduled",
    {
        "scheduled": {"confirmed", "cancelled", "no_show"},
        "confirmed": {"completed", "cancelled", "no_show"},
        "completed": set(),
        "cancelled": set(),
        "no_show": set(),
    },
    guards={"cancelled": _guard_appointment_cancel, "no_show": _guard_no_show},
    effects={
        "confirmed": _stamp("confirmed_at"),
        "completed": _stamp("completed_at"),
        "cancelled": _cancelled,
        "no_show": _stamp("no_show_at"),
    },
    reschedulable={"scheduled", "confirmed"},
)


# ---------------------------------------------------------------- driver


def _mileage(ctx: TransitionContext, name: str) -> float | None:
    raw = ctx.get(name)
    if raw is None:
        return None
    value = float(raw)
    if value < 0:
        raise ValidationError(f"{name} must be >= 0", field=name, rule="mileage")
    return value


def _driver_started(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    return {"started_at": iso(ctx.at), "mileage_start": _mileage(ctx, "mileage_start")}


def _driver_completed(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    started = parse_iso(window.attr("started_at")) or window.start
    updates: dict[str, Any] = {
        "completed_at": iso(ctx.at),
        "actual_duration_minutes": round((ctx.at - started).total_seconds() / 60),
    }
    mileage_start = window.attr("mileage_start")
    mileage_end = _mileage(ctx, "mileage_end")
    if mileage_end is not None:
        updates["mileage_end"] = mileage_end
    if mileage_start is not None and mileage_end is not None:
        if mileage_end < mileage_start:
            raise ValidationError(
                "mileage_end must be >= mileage_start", field="mileage_end", rule="mileage"
            )
        miles = round(mileage_end - mileage_start, 1)
        rate = float(_policy_value(ctx, "mileage_rate", DEFAULT_MILEAGE_RATE))
        updates["mileage"] = miles
        updates["mileage_allowance"] = round(miles * rate, 2)
    return updates


DRIVER_MACHINE = StateMachine(
    "driver",
    "pending",
    {
        "pending": {"accepted", "cancelled"},
        "accepted": {"in_progress", "cancelled"},
        "in_progress": {"completed", "cancelled"},
        "completed": set(),
        "cancelled": set(),
    },
    effects={
        "accepted": _stamp("accepted_at"),
        "in_progress": _driver_started,
        "completed": _driver_completed,
        "cancelled": _cancelled,
    },
    reschedulable={"pending", "accepted"},
)


# ---------------------------------------------------------------- training


def _training_completed(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    hours = ctx.get("hours_completed")
    if hours is None:
        hours = window.attr("scheduled_hours") or round(window.duration_minutes / 60, 2)
    updates: dict[str, Any] = {"completed_at": iso(ctx.at), "hours_completed": float(hours)}
    if ctx.get("certification_number"):
        updates["certification_number"] = str(ctx.get("certification_number"))
    expires_on = ctx.get("certification_expires_on")
    if expires_on is not None:
        if isinstance(expires_on, datetime):
            expires_on = expires_on.date()
        updates["certification_expires_on"] = expires_on.isoformat()
    return updates


TRAINING_MACHINE = StateMachine(
    "training",
    "scheduled",
    {
        "scheduled": {"in_progress", "cancelled", "no_show"},
        "in_progress": {"completed", "cancelled"},
        "completed": set(),
        "cancelled": set(),
        "no_show": set(),
    },
    effects={
        "in_progress": _stamp("started_at"),
        "completed": _training_completed,
        "cancelled": _cancelled,
        "no_show": _stamp("no_show_at"),
    },
    reschedulable={"scheduled"},
)


# ---------------------------------------------------------------- on-call


def _on_call_completed(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    callbacks = int(ctx.get("callback_count") or 0)
    if callbacks < 0:
        raise ValidationError(
            "callback_count must be >= 0", field="callback_count", rule="callbacks"
        )
    return {
        "completed_at": iso(ctx.at),
        "callback_count": callbacks,
        "duration_hours": round(window.duration_minutes / 60, 2),
    }


ON_CALL_MACHINE = StateMachine(
    "on_call",
    "scheduled",
    {
        "scheduled": {"active", "cancelled"},
        "active": {"completed", "cancelled"},
        "completed": set(),
        "cancelled": set(),
    },
    effects={
        "active": _stamp("activated_at"),
        "completed": _on_call_completed,
        "cancelled": _cancelled,
    },
    reschedulable={"scheduled"},
)


# ---------------------------------------------------------------- shift swap

# a replacement must hold the same license level or a higher one
LICENSE_LEVELS = {"director": 4, "embalmer": 3, "staff": 2, "driver": 1}
SWAP_REVIEWER_ROLES = {"manager", "director", "admin"}
OPEN_SWAP_STATUSES = frozenset({"requested", "accepted"})


def license_covers(replacement_role: str | None, required_role: str | None) -> bool:
    replacement = LICENSE_LEVELS.get((replacement_role or "").strip().lower(), 0)
    required = LICENSE_LEVELS.get((required_role or "").strip().lower(), 0)
    return replacement >= required


def _guard_swap_reviewer(window: Window, ctx: TransitionContext) -> None:
    role = (ctx.get("reviewer_role") or "").strip().lower()
    if role not in SWAP_REVIEWER_ROLES:
        raise ValidationError(
            f"Reviewer must be one of {', '.join(sorted(SWAP_REVIEWER_ROLES))}",
            field="reviewer_role",
            rule="reviewer_role",
        )


def _swap_reviewed(window: Window, ctx: TransitionContext) -> dict[str, Any]:
    updates: dict[str, Any] = {
        "reviewed_at": iso(ctx.at),
        "reviewed_by": ctx.actor_id,
        "reviewer_role": (ctx.get("reviewer_role") or "").strip().lower() or None,
    }
    reason = (ctx.get("reason") or "").strip()
    if reason:
        updates["rejection_reason"] = reason
    return updates


SHIFT_SWAP_MACHINE = StateMachine(
    "shift_swap",
    "requested",
    {
        "requested": {"accepted", "declined", "cancelled"},
        "accepted": {"approved", "rejected", "cancelled"},
        "approved": set(),
        "declined": set(),
        "rejected": set(),
        "cancelled": set(),
    },
    guards={
        "approved": _guard_swap_reviewer,
        "rejected": _guard_reason_required,
    },
    effects={
        "accepted": _stamp("accepted_at"),
        "declined": _stamp("declined_at"),
        "approved": _swap_reviewed,
        "rejected": _swap_reviewed,
        "cancelled": _cancelled,
    },
    occupying=False,
)


MACHINES: dict[str, StateMachine] = {
    machine.kind: machine
    for machine in (
        PTO_MACHINE,
        BACKFILL_MACHINE,
        PREP_ROOM_MACHINE,
        APPOINTMENT_MACHINE,
        DRIVER_MACHINE,
        TRAINING_MACHINE,
        ON_CALL_MACHINE,
        SHIFT_SWAP_MACHINE,
    )
}

CONFIRM_TARGETS = {
    "pto": "approved",
    "backfill": "confirmed",
    "prep_room": "confirmed",
    "appointment": "confirmed",
    "driver": "accepted",
}

# windows in these statuses count toward a candidate's recent workload
COMMITTED_STATUSES = {
    "backfill": {"confirmed", "completed"},
    "on_call": {"scheduled", "active", "completed"},
}


def machine_for(kind: str) -> StateMachine:
    try:
        return MACHINES[kind]
    except KeyError:
        raise ValueError(f"unknown window kind: {kind!r}") from None
