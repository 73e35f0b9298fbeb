from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from funeral_ops import policies, scheduling, store
from funeral_ops.audit import list_audit_events, list_pending_notifications
from funeral_ops.db import Base
from funeral_ops.errors import (
    CapacityExceededError,
    ConflictError,
    InvalidStateTransitionError,
    PolicyNotFoundError,
    ValidationError,
)

NOW = datetime(2026, 3, 1, 8, 0)
TENANT = "harbor-funeral"


def make_session(tmp_path):
    db_path = tmp_path / "test_scheduling.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    policies.onboard_tenant(db, TENANT, actor_id="admin", now=NOW)
    for employee_id, name, role in [
        ("d1", "Adam", "director"),
        ("d2", "Beata", "director"),
        ("d3", "Celina", "director"),
        ("s1", "Dorota", "staff"),
        ("s2", "Ewa", "staff"),
        ("drv1", "Filip", "driver"),
    ]:
        store.upsert_staff_member(db, TENANT, employee_id=employee_id, name=name, role=role)
    return db


def book_appointment(db, hour: int, *, day: int = 3, director_id: str = "d1", minutes: int = 60):
    return scheduling.schedule_appointment(
        db,
        TENANT,
        director_id=director_id,
        family_name=f"Family {hour}",
        start=datetime(2026, 3, day, hour, 0),
        duration_minutes=minutes,
        actor_id="clerk",
        contact_email="Family@Example.com",
        now=NOW,
    )


def test_prep_room_turnaround_buffer(tmp_path):
    db = make_session(tmp_path)
    first = scheduling.reserve_prep_room(
        db,
        TENANT,
        room_id="r1",
        embalmer_id="e1",
        case_id="case-1",
        start=datetime(2026, 3, 2, 10, 0),
        duration_minutes=120,
        actor_id="clerk",
        now=NOW,
    )
    assert first.status == "pending"
    assert first.resource_key == "room:r1"

    with pytest.raises(ConflictError) as exc:
        scheduling.reserve_prep_room(
            db,
            TENANT,
            room_id="r1",
            embalmer_id="e2",
            case_id="case-2",
            start=datetime(2026, 3, 2, 12, 15),
            duration_minutes=120,
            actor_id="clerk",
            now=NOW,
        )
    assert exc.value.conflicting_keys == [first.business_key]

    second = scheduling.reserve_prep_room(
        db,
        TENANT,
        room_id="r1",
        embalmer_id="e2",
        case_id="case-2",
        start=datetime(2026, 3, 2, 12, 31),
        duration_minutes=120,
        actor_id="clerk",
        now=NOW,
    )
    assert second.version == 1
    assert len(store.find_current(db, TENANT, kind="prep_room")) == 2


def test_embalmer_cannot_hold_two_rooms_at_once(tmp_path):
    db = make_session(tmp_path)
    scheduling.reserve_prep_room(
        db, TENANT, room_id="r1", embalmer_id="e1", case_id="c1",
        start=datetime(2026, 3, 2, 10, 0), duration_minutes=120, actor_id="clerk", now=NOW,
    )
    with pytest.raises(CapacityExceededError) as exc:
        scheduling.reserve_prep_room(
            db, TENANT, room_id="r2", embalmer_id="e1", case_id="c2",
            start=datetime(2026, 3, 2, 11, 0), duration_minutes=120, actor_id="clerk", now=NOW,
        )
    assert exc.value.rule == "embalmer_concurrency"
    assert exc.value.limit == 1


def test_prep_room_duration_outside_policy_is_rejected(tmp_path):
    db = make_session(tmp_path)
    with pytest.raises(ValidationError) as exc:
        scheduling.reserve_prep_room(
            db, TENANT, room_id="r1", embalmer_id="e1", case_id="c1",
            start=datetime(2026, 3, 2, 10, 0), duration_minutes=60, actor_id="clerk", now=NOW,
        )
    assert exc.value.rule == "duration"


def test_pto_with_short_notice_is_rejected(tmp_path):
    db = make_session(tmp_path)
    with pytest.raises(ValidationError) as exc:
        scheduling.create_pto_request(
            db,
            TENANT,
            employee_id="s1",
            employee_name="Dorota",
            role="staff",
            pto_type="vacation",
            start_date=date(2026, 3, 11),
            end_date=date(2026, 3, 12),
            actor_id="s1",
            now=NOW,
        )
    assert exc.value.rule == "advance_notice"
    assert exc.value.details["required_days"] == 14
    assert store.find_current(db, TENANT, kind="pto") == []


def test_pto_beyond_consecutive_limit_is_rejected(tmp_path):
    db = make_session(tmp_path)
    with pytest.raises(ValidationError) as exc:
        scheduling.create_pto_request(
            db, TENANT, employee_id="s1", employee_name="Dorota", role="staff",
            pto_type="vacation", start_date=date(2026, 4, 1), end_date=date(2026, 4, 15),
            actor_id="s1", now=NOW,
        )
    assert exc.value.rule == "max_consecutive_days"


def test_appointment_over_lunch_is_rejected(tmp_path):
    db = make_session(tmp_path)
    with pytest.raises(ValidationError) as exc:
        book_appointment(db, 12)
    assert exc.value.rule == "fixed_block"

    with pytest.raises(ValidationError) as exc:
        book_appointment(db, 16, minutes=120)
    assert exc.value.rule == "business_hours"

    with pytest.raises(ValidationError) as exc:
        book_appointment(db, 9, day=7)
    assert exc.value.rule == "business_day"


def test_appointment_daily_capacity(tmp_path):
    db = make_session(tmp_path)
    for hour in (8, 9, 10, 11):
        book_appointment(db, hour)

    with pytest.raises(CapacityExceededError) as exc:
        book_appointment(db, 14)
    assert exc.value.rule == "daily_appointments"
    assert exc.value.limit == 4
    assert exc.value.current == 4

    other_director = book_appointment(db, 14, director_id="d2")
    assert other_director.attr("contact_email") == "family@example.com"


def test_reschedule_onto_conflict_leaves_window_untouched(tmp_path):
    db = make_session(tmp_path)
    book_appointment(db, 9)
    second = book_appointment(db, 10)

    with pytest.raises(ConflictError):
        scheduling.reschedule(
            db,
            TENANT,
            second.business_key,
            new_start=datetime(2026, 3, 3, 9, 30),
            new_end=datetime(2026, 3, 3, 10, 30),
            actor_id="clerk",
            now=NOW,
        )
    current = store.get_current(db, TENANT, second.business_key)
    assert current.version == 1
    assert current.start == datetime(2026, 3, 3, 10, 0)

    moved = scheduling.reschedule(
        db,
        TENANT,
        second.business_key,
        new_start=datetime(2026, 3, 3, 14, 0),
        new_end=datetime(2026, 3, 3, 15, 0),
        actor_id="clerk",
        now=NOW,
    )
    assert moved.version == 2
    history = store.history(db, TENANT, second.business_key)
    assert [w.is_current for w in history] == [False, True]


def test_reschedule_to_own_slot_does_not_conflict_with_itself(tmp_path):
    db = make_session(tmp_path)
    appointment = book_appointment(db, 9)
    moved = scheduling.reschedule(
        db,
        TENANT,
        appointment.business_key,
        new_start=datetime(2026, 3, 3, 9, 30),
        new_end=datetime(2026, 3, 3, 10, 30),
        actor_id="clerk",
        now=NOW,
    )
    assert moved.start == datetime(2026, 3, 3, 9, 30)


def test_director_pto_needs_confirmed_backfill(tmp_path):
    db = make_session(tmp_path)
    pto = scheduling.create_pto_request(
        db,
        TENANT,
        employee_id="d1",
        employee_name="Adam",
        role="director",
        pto_type="vacation",
        start_date=date(2026, 3, 23),
        end_date=date(2026, 3, 24),
        actor_id="d1",
        now=NOW,
    )
    assert pto.status == "draft"
    assert pto.attr("requested_days") == 2
    assert pto.attr("requires_backfill") is True
    scheduling.transition(db, TENANT, pto.business_key, "pending", actor_id="d1", now=NOW)

    # the caller cannot vouch for coverage that does not exist
    with pytest.raises(ValidationError) as exc:
        scheduling.confirm(db, TENANT, pto.business_key, actor_id="owner", now=NOW)
    assert exc.value.rule == "backfill_required"
    with pytest.raises(ValidationError):
        scheduling.transition(
            db, TENANT, pto.business_key, "approved",
            actor_id="owner", now=NOW, backfill_requirements_met=True,
        )
    assert store.get_current(db, TENANT, pto.business_key).status == "pending"

    backfill = scheduling.suggest_backfill(
        db, TENANT, absence_key=pto.business_key, backfill_employee_id="d2", actor_id="owner", now=NOW
    )
    assert backfill.subject_ref == pto.business_key
    assert backfill.resource_key == "employee:d2"
    assert backfill.attr("estimated_hours") == 16
    assert backfill.attr("premium_type") == "none"
    scheduling.transition(db, TENANT, backfill.business_key, "pending_confirmation", actor_id="owner", now=NOW)
    scheduling.confirm(db, TENANT, backfill.business_key, actor_id="d2", now=NOW)

    approved = scheduling.confirm(db, TENANT, pto.business_key, actor_id="owner", now=NOW)
    assert approved.status == "approved"
    assert approved.attr("backfill_requirements_met") is True
    assert approved.version == 3

    actions = [e.action for e in list_audit_events(db, TENANT, related_key=pto.business_key)]
    assert actions == ["pto.create", "pto.pending", "pto.approved"]


def test_backfill_cannot_cover_own_absence(tmp_path):
    db = make_session(tmp_path)
    pto = scheduling.create_pto_request(
        db, TENANT, employee_id="d1", employee_name="Adam", role="director",
        pto_type="vacation", start_date=date(2026, 3, 23), end_date=date(2026, 3, 24),
        actor_id="d1", now=NOW,
    )
    with pytest.raises(ValidationError) as exc:
        scheduling.suggest_backfill(
            db, TENANT, absence_key=pto.business_key, backfill_employee_id="d1", actor_id="owner", now=NOW
        )
    assert exc.value.rule == "self_coverage"


def test_rank_coverage_candidates_puts_absent_director_last(tmp_path):
    db = make_session(tmp_path)
    scheduling.create_pto_request(
        db, TENANT, employee_id="d1", employee_name="Adam", role="director",
        pto_type="vacation", start_date=date(2026, 3, 23), end_date=date(2026, 3, 24),
        actor_id="d1", now=NOW,
    )
    ranked = scheduling.rank_backfill_candidates(
        db, TENANT, role="director", start=datetime(2026, 3, 23), end=datetime(2026, 3, 25), now=NOW
    )
    assert [c.employee_id for c in ranked] == ["d2", "d3", "d1"]
    assert ranked[-1].conflict is True

    trimmed = scheduling.rank_coverage_candidates(
        db,
        TENANT,
        role="director",
        start=datetime(2026, 3, 23),
        end=datetime(2026, 3, 25),
        exclude_employee_ids=["d2"],
        now=NOW,
    )
    assert [c.employee_id for c in trimmed] == ["d3", "d1"]


def test_on_call_rest_gap_is_enforced(tmp_path):
    db = make_session(tmp_path)
    shift = scheduling.assign_on_call(
        db,
        TENANT,
        director_id="d1",
        start=datetime(2026, 3, 4, 8, 0),
        end=datetime(2026, 3, 4, 20, 0),
        actor_id="owner",
        now=NOW,
    )
    assert shift.subject_ref == "weekday"
    with pytest.raises(ConflictError):
        scheduling.assign_on_call(
            db,
            TENANT,
            director_id="d1",
            start=datetime(2026, 3, 5, 0, 0),
            end=datetime(2026, 3, 5, 12, 0),
            actor_id="owner",
            now=NOW,
        )
    later = scheduling.assign_on_call(
        db,
        TENANT,
        director_id="d1",
        start=datetime(2026, 3, 5, 4, 0),
        end=datetime(2026, 3, 5, 16, 0),
        actor_id="owner",
        now=NOW,
    )
    assert later.status == "scheduled"


def test_shared_vehicle_is_double_booking(tmp_path):
    db = make_session(tmp_path)
    first = scheduling.assign_driver(
        db,
        TENANT,
        driver_id="drv1",
        vehicle_id="hearse-1",
        case_id="c1",
        event_type="removal",
        scheduled_time=datetime(2026, 3, 2, 10, 0),
        estimated_duration_minutes=60,
        actor_id="dispatch",
        now=NOW,
    )
    assert first.secondary_resource_key == "vehicle:hearse-1"
    with pytest.raises(ConflictError) as exc:
        scheduling.assign_driver(
            db,
            TENANT,
            driver_id="drv2",
            vehicle_id="hearse-1",
            case_id="c2",
            event_type="transfer",
            scheduled_time=datetime(2026, 3, 2, 11, 30),
            estimated_duration_minutes=60,
            actor_id="dispatch",
            now=NOW,
        )
    assert exc.value.conflicting_keys == [first.business_key]


def test_hard_blackout_blocks_reservations(tmp_path):
    db = make_session(tmp_path)
    policies.update_policy(
        db,
        TENANT,
        "prep_room",
        {
            "blackout_periods": [
                {"name": "Renovation", "start_date": "2026-03-10", "end_date": "2026-03-12"}
            ]
        },
        actor_id="owner",
        now=NOW,
    )
    with pytest.raises(ValidationError) as exc:
        scheduling.reserve_prep_room(
            db, TENANT, room_id="r1", embalmer_id="e1", case_id="c1",
            start=datetime(2026, 3, 11, 9, 0), duration_minutes=120, actor_id="clerk", now=NOW,
        )
    assert exc.value.rule == "blackout"

    slot = scheduling.find_next_available_slot(
        db, TENANT, kind="prep_room", resource_id="r1",
        from_date=date(2026, 3, 10), duration_minutes=120,
        now=NOW,
    )
    assert slot.start == datetime(2026, 3, 13, 0, 0)


def test_find_next_available_slot_respects_existing_bookings(tmp_path):
    db = make_session(tmp_path)
    book_appointment(db, 8, day=2)
    slot = scheduling.find_next_available_slot(
        db, TENANT, kind="appointment", resource_id="d1",
        from_date=date(2026, 3, 2), duration_minutes=60,
        now=NOW,
    )
    assert slot.start == datetime(2026, 3, 2, 9, 0)

    scheduling.reserve_prep_room(
        db, TENANT, room_id="r1", embalmer_id="e1", case_id="c1",
        start=datetime(2026, 3, 2, 10, 0), duration_minutes=120, actor_id="clerk", now=NOW,
    )
    room_slot = scheduling.find_next_available_slot(
        db, TENANT, kind="prep_room", resource_id="r1",
        from_date=datetime(2026, 3, 2, 9, 0), duration_minutes=120,
        now=NOW,
    )
    assert room_slot.start == datetime(2026, 3, 2, 13, 0)


def test_reminders_and_expired_reservations(tmp_path):
    db = make_session(tmp_path)
    appointment = book_appointment(db, 9)
    check_time = datetime(2026, 3, 2, 10, 0)
    assert [w.business_key for w in scheduling.due_reminders(db, TENANT, now=check_time)] == [
        appointment.business_key
    ]
    assert scheduling.enqueue_due_reminders(db, TENANT, now=check_time) == 1
    assert len(list_pending_notifications(db, TENANT, event_type="reminder_due")) == 1

    scheduling.mark_reminder_sent(db, TENANT, appointment.business_key, actor_id="mailer", now=check_time)
    assert scheduling.due_reminders(db, TENANT, now=check_time) == []

    reservation = scheduling.reserve_prep_room(
        db, TENANT, room_id="r1", embalmer_id="e1", case_id="c1",
        start=datetime(2026, 3, 2, 10, 0), duration_minutes=120, actor_id="clerk", now=NOW,
    )
    assert scheduling.expired_reservations(db, TENANT, now=NOW + timedelta(minutes=10)) == []
    expired = scheduling.expired_reservations(db, TENANT, now=NOW + timedelta(minutes=45))
    assert [w.business_key for w in expired] == [reservation.business_key]
    # listing does not release anything by itself
    assert store.get_current(db, TENANT, reservation.business_key).status == "pending"

    scheduling.transition(
        db, TENANT, reservation.business_key, "auto_released",
        actor_id="sweeper", now=NOW + timedelta(minutes=45),
    )
    assert scheduling.expired_reservations(db, TENANT, now=NOW + timedelta(minutes=45)) == []


def test_cancellation_frees_the_slot(tmp_path):
    db = make_session(tmp_path)
    appointment = book_appointment(db, 9)
    with pytest.raises(ValidationError) as exc:
        scheduling.cancel(
            db, TENANT, appointment.business_key, actor_id="clerk",
            now=datetime(2026, 3, 3, 8, 0),
        )
    assert exc.value.rule == "cancellation_notice"

    cancelled = scheduling.cancel(
        db, TENANT, appointment.business_key, actor_id="clerk", reason="moved to Friday", now=NOW
    )
    assert cancelled.status == "cancelled"
    assert cancelled.attr("cancellation_reason") == "moved to Friday"
    replacement = book_appointment(db, 9)
    assert replacement.status == "scheduled"


def test_illegal_transition_is_typed(tmp_path):
    db = make_session(tmp_path)
    appointment = book_appointment(db, 9)
    with pytest.raises(InvalidStateTransitionError) as exc:
        scheduling.transition(db, TENANT, appointment.business_key, "completed", actor_id="clerk", now=NOW)
    assert exc.value.from_status == "scheduled"
    assert store.get_current(db, TENANT, appointment.business_key).version == 1


def test_service_coverage(tmp_path):
    db = make_session(tmp_path)
    book_appointment(db, 10, day=2, director_id="d1")
    start = datetime(2026, 3, 2, 10, 30)
    end = datetime(2026, 3, 2, 12, 30)

    with pytest.raises(ValidationError) as exc:
        scheduling.check_service_coverage(
            db, TENANT, service_type="traditional_funeral", start=start, end=end,
            staff=[("d2", "director"), ("s1", "staff")],
        )
    assert exc.value.rule == "staffing"
    assert exc.value.details["missing"] == {"driver": 1, "staff": 1}

    with pytest.raises(ConflictError):
        scheduling.check_service_coverage(
            db, TENANT, service_type="memorial_service", start=start, end=end,
            staff=[("d1", "director"), ("s1", "staff")],
        )

    result = scheduling.check_service_coverage(
        db, TENANT, service_type="memorial_service", start=start, end=end,
        staff=[("d2", "director"), ("s1", "staff")],
    )
    assert result["requirements"] == {"director": 1, "staff": 1}


def test_unknown_tenant_has_no_policy(tmp_path):
    db = make_session(tmp_path)
    with pytest.raises(PolicyNotFoundError):
        scheduling.reserve_prep_room(
            db, "unknown", room_id="r1", embalmer_id="e1", case_id="c1",
            start=datetime(2026, 3, 2, 10, 0), duration_minutes=120, actor_id="clerk", now=NOW,
        )


def test_missing_actor_is_rejected(tmp_path):
    db = make_session(tmp_path)
    with pytest.raises(ValidationError) as exc:
        scheduling.reserve_prep_room(
            db, TENANT, room_id="r1", embalmer_id="e1", case_id="c1",
            start=datetime(2026, 3, 2, 10, 0), duration_minutes=120, actor_id="  ", now=NOW,
        )
    assert exc.value.field == "actor_id"


def schedule_course(db, employee_id, role, day, *, hours=8, cost=200, name="Grief support"):
    return scheduling.schedule_training(
        db,
        TENANT,
        employee_id=employee_id,
        employee_name=employee_id.upper(),
        role=role,
        training_name=name,
        start=datetime(2026, 3, day, 9, 0),
        end=datetime(2026, 3, day, 9 + hours, 0),
        actor_id="owner",
        cost=cost,
        now=NOW,
    )


def test_training_budget_and_approval_flags(tmp_path):
    db = make_session(tmp_path)
    first = schedule_course(db, "s1", "staff", 4)
    assert first.status == "scheduled"
    assert first.attr("scheduled_hours") == 8.0
    assert first.attr("requires_director_approval") is True
    schedule_course(db, "s1", "staff", 5)

    with pytest.raises(ValidationError) as exc:
        schedule_course(db, "s1", "staff", 6, hours=2, cost=50)
    assert exc.value.rule == "training_hours_budget"

    director_course = schedule_course(db, "d1", "director", 4, cost=1500)
    assert director_course.attr("requires_director_approval") is True
    cheap = schedule_course(db, "d2", "director", 4, cost=100)
    assert cheap.attr("requires_director_approval") is False


def test_training_blocks_other_bookings_and_takes_training_premium(tmp_path):
    db = make_session(tmp_path)
    course = schedule_course(db, "d1", "director", 4)

    with pytest.raises(ConflictError) as exc:
        scheduling.schedule_appointment(
            db, TENANT, director_id="d1", family_name="Kowalski",
            start=datetime(2026, 3, 4, 10, 0), duration_minutes=60, actor_id="clerk", now=NOW,
        )
    assert exc.value.conflicting_keys == [course.business_key]

    cover = scheduling.suggest_backfill(
        db, TENANT, absence_key=course.business_key, backfill_employee_id="d2", actor_id="owner", now=NOW
    )
    assert cover.attr("premium_type") == "training_coverage"
    assert cover.attr("premium_multiplier") == 1.25
    assert cover.attr("estimated_hours") == 8


class RecordingLogger:
    def __init__(self):
        self.events = []

    def info(self, event, **fields):
        self.events.append(("info", event, fields))

    def warning(self, event, **fields):
        self.events.append(("warning", event, fields))


def test_bad_training_inputs_are_rejected_and_logged(tmp_path, monkeypatch):
    db = make_session(tmp_path)
    recorder = RecordingLogger()
    monkeypatch.setattr(scheduling, "logger", recorder)

    with pytest.raises(ValidationError) as exc:
        schedule_course(db, "s1", "staff", 4, cost="a lot")
    assert exc.value.field == "cost"
    with pytest.raises(ValidationError) as exc:
        schedule_course(db, "s1", "staff", 4, cost=-10)
    assert exc.value.field == "cost"
    with pytest.raises(PolicyNotFoundError):
        scheduling.create_pto_request(
            db, "unknown", employee_id="s1", employee_name="Dorota", role="staff",
            pto_type="vacation", start_date=date(2026, 4, 6), end_date=date(2026, 4, 7),
            actor_id="s1", now=NOW,
        )

    rejected = [fields for level, event, fields in recorder.events if event == "scheduling_rejected"]
    assert [f["kind"] for f in rejected] == ["training", "training", "pto"]
    assert rejected[2]["error"] == "PolicyNotFoundError"


def test_slot_search_checks_the_vehicle_for_driver_runs(tmp_path):
    db = make_session(tmp_path)
    scheduling.assign_driver(
        db, TENANT, driver_id="drv1", vehicle_id="hearse-1", case_id="c1",
        event_type="removal", scheduled_time=datetime(2026, 3, 2, 10, 0),
        estimated_duration_minutes=60, actor_id="dispatch", now=NOW,
    )
    driver_only = scheduling.find_next_available_slot(
        db, TENANT, kind="driver", resource_id="drv2",
        from_date=datetime(2026, 3, 2, 9, 0), duration_minutes=60, now=NOW,
    )
    assert driver_only.start == datetime(2026, 3, 2, 9, 0)

    with_vehicle = scheduling.find_next_available_slot(
        db, TENANT, kind="driver", resource_id="drv2", secondary_resource_id="hearse-1",
        from_date=datetime(2026, 3, 2, 9, 0), duration_minutes=60, now=NOW,
    )
    assert with_vehicle.start == datetime(2026, 3, 2, 12, 0)
    booked = scheduling.assign_driver(
        db, TENANT, driver_id="drv2", vehicle_id="hearse-1", case_id="c2",
        event_type="transfer", scheduled_time=with_vehicle.start,
        estimated_duration_minutes=60, actor_id="dispatch", now=NOW,
    )
    assert booked.status == "pending"

    with pytest.raises(ValidationError) as exc:
        scheduling.find_next_available_slot(
            db, TENANT, kind="prep_room", resource_id="r1", secondary_resource_id="hearse-1",
            from_date=date(2026, 3, 2), duration_minutes=120, now=NOW,
        )
    assert exc.value.field == "secondary_resource_id"


def test_slot_search_skips_full_days_and_short_notice(tmp_path):
    db = make_session(tmp_path)
    for hour in (8, 9, 10, 11):
        book_appointment(db, hour)
    slot = scheduling.find_next_available_slot(
        db, TENANT, kind="appointment", resource_id="d1",
        from_date=date(2026, 3, 3), duration_minutes=60, now=NOW,
    )
    assert slot.start == datetime(2026, 3, 4, 8, 0)

    policies.update_policy(
        db, TENANT, "appointment", {"min_advance_notice_hours": 30}, actor_id="owner", now=NOW
    )
    slot = scheduling.find_next_available_slot(
        db, TENANT, kind="appointment", resource_id="d2",
        from_date=date(2026, 3, 2), duration_minutes=60, now=NOW,
    )
    assert slot.start == datetime(2026, 3, 2, 14, 0)
    booked = book_appointment(db, 14, day=2, director_id="d2")
    assert booked.start == slot.start


def reserve(db, room_id, embalmer_id, hour, minutes=120, day=2):
    return scheduling.reserve_prep_room(
        db, TENANT, room_id=room_id, embalmer_id=embalmer_id, case_id=f"case-{room_id}",
        start=datetime(2026, 3, day, hour, 0), duration_minutes=minutes,
        actor_id="clerk", now=NOW,
    )


def test_embalmer_shift_caps_preparations_and_hours(tmp_path):
    db = make_session(tmp_path)
    for room_id, hour in (("r1", 6), ("r2", 9), ("r3", 12)):
        reserve(db, room_id, "e1", hour)

    workload = scheduling.embalmer_workload(db, TENANT, embalmer_id="e1", day=date(2026, 3, 2))
    assert workload["preparations"] == 3
    assert workload["scheduled_minutes"] == 360
    assert workload["remaining_preparations"] == 0
    assert workload["remaining_minutes"] == 30

    with pytest.raises(CapacityExceededError) as exc:
        reserve(db, "r4", "e1", 15)
    assert exc.value.rule == "embalmer_shift_preparations"
    assert exc.value.limit == 3
    assert reserve(db, "r4", "e1", 15, day=3).status == "pending"

    reserve(db, "r5", "e2", 8, minutes=240)
    with pytest.raises(CapacityExceededError) as exc:
        reserve(db, "r6", "e2", 13, minutes=240)
    assert exc.value.rule == "embalmer_shift_hours"
    assert exc.value.current == 510
    assert reserve(db, "r6", "e2", 13, minutes=210).status == "pending"


def on_call(db, director_id, day, *, start_hour=8, hours=12):
    start = datetime(2026, 3, day, start_hour, 0)
    return scheduling.assign_on_call(
        db, TENANT, director_id=director_id, start=start,
        end=start + timedelta(hours=hours), actor_id="owner", now=NOW,
    )


def request_swap(db, shift, to_employee_id, *, from_employee_id="d1", now=NOW):
    return scheduling.request_shift_swap(
        db, TENANT, shift_key=shift.business_key, from_employee_id=from_employee_id,
        to_employee_id=to_employee_id, actor_id=from_employee_id, now=now,
    )


def test_approved_swap_hands_the_shift_over(tmp_path):
    db = make_session(tmp_path)
    shift = on_call(db, "d1", 4)
    swap = request_swap(db, shift, "d2")
    assert swap.status == "requested"
    assert swap.resource_keys == ("employee:d1", "employee:d2")
    assert swap.subject_ref == shift.business_key
    # an open request holds no one's calendar
    assert store.find_current_by_resource(
        db, TENANT, "employee:d2", shift.start, shift.end
    ) == []

    scheduling.transition(db, TENANT, swap.business_key, "accepted", actor_id="d2", now=NOW)
    with pytest.raises(ValidationError) as exc:
        scheduling.transition(db, TENANT, swap.business_key, "approved", actor_id="s1", now=NOW)
    assert exc.value.rule == "reviewer_role"
    assert store.get_current(db, TENANT, swap.business_key).status == "accepted"

    approved = scheduling.transition(
        db, TENANT, swap.business_key, "approved",
        actor_id="boss", reviewer_role="Manager", now=NOW,
    )
    assert approved.status == "approved"
    assert approved.attr("reviewed_by") == "boss"

    moved = store.get_current(db, TENANT, shift.business_key)
    assert moved.resource_key == "employee:d2"
    assert moved.version == 2
    assert moved.attr("swapped_from") == "employee:d1"
    assert [n.event_type for n in list_pending_notifications(db, TENANT)] == ["shift_swap_approved"]
    assert any(e.action == "shift_swap.approved" for e in list_audit_events(db, TENANT))

    # d1 is free again for the same slot
    assert on_call(db, "d1", 4).resource_key == "employee:d1"
    with pytest.raises(ValidationError) as exc:
        scheduling.reschedule(
            db, TENANT, swap.business_key, new_start=shift.start, new_end=shift.end,
            actor_id="owner", now=NOW,
        )
    assert exc.value.rule == "window_locked"


def test_rejected_swap_needs_a_reason_and_leaves_the_shift(tmp_path):
    db = make_session(tmp_path)
    shift = on_call(db, "d1", 4)
    swap = request_swap(db, shift, "d2")
    scheduling.transition(db, TENANT, swap.business_key, "accepted", actor_id="d2", now=NOW)
    with pytest.raises(ValidationError):
        scheduling.review_shift_swap(
            db, TENANT, swap.business_key, approved=False, actor_id="boss", now=NOW
        )
    rejected = scheduling.review_shift_swap(
        db, TENANT, swap.business_key, approved=False, actor_id="boss",
        reason="short staffed", now=NOW,
    )
    assert rejected.attr("rejection_reason") == "short staffed"
    assert store.get_current(db, TENANT, shift.business_key).resource_key == "employee:d1"


def test_swap_request_rules(tmp_path):
    db = make_session(tmp_path)
    shift = on_call(db, "d1", 4)

    cases = [
        (dict(to_employee_id="d1"), "self_swap"),
        (dict(to_employee_id="s1"), "license_level"),
        (dict(to_employee_id="zz"), "unknown_employee"),
        (dict(to_employee_id="d1", from_employee_id="d2"), "not_shift_owner"),
        (dict(to_employee_id="d2", now=datetime(2026, 3, 3, 9, 0)), "advance_notice"),
    ]
    for kwargs, rule in cases:
        with pytest.raises(ValidationError) as exc:
            request_swap(db, shift, **kwargs)
        assert exc.value.rule == rule

    # d3 starts another shift four hours after this one ends
    on_call(db, "d3", 5, start_hour=0)
    with pytest.raises(ConflictError):
        request_swap(db, shift, "d3")
    assert store.find_current(db, TENANT, kind="shift_swap") == []


def test_pending_swaps_are_capped_per_employee(tmp_path):
    db = make_session(tmp_path)
    shifts = [on_call(db, "d1", day) for day in (4, 5, 6)]
    first = request_swap(db, shifts[0], "d2")
    request_swap(db, shifts[1], "d2")

    with pytest.raises(ValidationError) as exc:
        request_swap(db, shifts[0], "d3")
    assert exc.value.rule == "swap_pending"
    with pytest.raises(CapacityExceededError) as exc:
        request_swap(db, shifts[2], "d3")
    assert exc.value.rule == "pending_swaps"
    assert exc.value.limit == 2

    scheduling.cancel(db, TENANT, first.business_key, actor_id="d1", reason="sorted it out", now=NOW)
    assert request_swap(db, shifts[2], "d3").status == "requested"


def test_weekend_rotation_staggers_directors(tmp_path):
    db = make_session(tmp_path)
    result = scheduling.create_weekend_rotation(
        db, TENANT, director_ids=["d1", "d2"], start_date=date(2026, 3, 7),
        actor_id="owner", now=NOW,
    )
    assert result["weeks"] == [1, 3]
    assert result["fair_distribution_score"] == 100
    assert result["uncovered_weekends"] == []
    assert result["assignments"]["d1"]["weekends_on"] == [date(2026, 3, 7), date(2026, 3, 21)]
    assert result["assignments"]["d2"]["weekends_on"] == [date(2026, 3, 14), date(2026, 3, 28)]
    assert result["assignments"]["d2"]["percentage_working"] == 50.0

    [shift] = result["created"]
    assert shift.resource_key == "employee:d1"
    assert shift.subject_ref == "weekend"
    assert (shift.start, shift.end) == (datetime(2026, 3, 7, 8, 0), datetime(2026, 3, 9, 8, 0))
    # later weekends are beyond the on-call booking horizon for now
    assert [s["rule"] for s in result["skipped"]] == ["max_advance_notice"] * 3

    week_later = scheduling.create_weekend_rotation(
        db, TENANT, director_ids=["d1", "d2"], start_date=date(2026, 3, 7),
        actor_id="owner", now=datetime(2026, 3, 8, 8, 0),
    )
    assert [w.business_key for w in week_later["existing"]] == [shift.business_key]
    assert [(w.resource_key, w.start) for w in week_later["created"]] == [
        ("employee:d2", datetime(2026, 3, 14, 8, 0))
    ]


def test_weekend_rotation_validation(tmp_path):
    db = make_session(tmp_path)

    def rotate(**overrides):
        values = dict(director_ids=["d1", "d2"], start_date=date(2026, 3, 7), actor_id="owner", now=NOW)
        values.update(overrides)
        return scheduling.create_weekend_rotation(db, TENANT, **values)

    cases = [
        (dict(director_ids=["d1"]), "rotation_size"),
        (dict(start_date=date(2026, 3, 8)), "rotation_start"),
        (dict(pattern="every-weekend"), "rotation_pattern"),
        (dict(pattern="custom", custom_weeks=[1, 2, 3]), "consecutive_weekends"),
        (dict(pattern="custom", custom_weeks=[1, 2, 3, 4]), "weekend_off"),
        (dict(director_ids=["d1", "zz"]), "unknown_employee"),
    ]
    for kwargs, rule in cases:
        with pytest.raises(ValidationError) as exc:
            rotate(**kwargs)
        assert exc.value.rule == rule
    assert store.find_current(db, TENANT, kind="on_call") == []

    policies.update_policy(db, TENANT, "on_call", {"enable_fair_rotation": False}, actor_id="owner", now=NOW)
    with pytest.raises(ValidationError) as exc:
        rotate()
    assert exc.value.rule == "rotation_disabled"
