from dataclasses import dataclass
from datetime import date, datetime, time

import pytest

from funeral_ops.core.availability import (
    BusinessRules,
    available_slots,
    is_business_day,
    next_available_slot,
    overlapping_fixed_block,
    within_business_hours,
)


@dataclass
class Span:
    start: datetime
    end: datetime


def test_first_slot_is_opening_time_on_an_empty_day():
    slot = next_available_slot([], date(2026, 3, 2), 60, BusinessRules())
    assert slot.start == datetime(2026, 3, 2, 8, 0)
    assert slot.end == datetime(2026, 3, 2, 9, 0)
    assert slot.duration_minutes == 60


def test_lunch_block_is_skipped():
    booked = [
        Span(datetime(2026, 3, 2, 8, 0), datetime(2026, 3, 2, 12, 0)),
    ]
    slot = next_available_slot(booked, date(2026, 3, 2), 60, BusinessRules())
    assert slot.start == datetime(2026, 3, 2, 13, 0)


def test_weekend_is_skipped():
    # 2026-03-07 is a Saturday
    slot = next_available_slot([], date(2026, 3, 7), 60, BusinessRules())
    assert slot.start == datetime(2026, 3, 9, 8, 0)


def test_from_datetime_excludes_earlier_slots_that_day():
    slot = next_available_slot([], datetime(2026, 3, 2, 9, 30), 60, BusinessRules())
    assert slot.start == datetime(2026, 3, 2, 10, 0)


def test_buffer_pushes_next_slot_past_existing_window():
    rules = BusinessRules(buffer_minutes=30, step_minutes=30, fixed_blocks=())
    booked = [Span(datetime(2026, 3, 2, 8, 0), datetime(2026, 3, 2, 9, 0))]
    slot = next_available_slot(booked, date(2026, 3, 2), 60, rules)
    assert slot.start == datetime(2026, 3, 2, 9, 30)


def test_search_is_deterministic():
    booked = [Span(datetime(2026, 3, 3, 9, 0), datetime(2026, 3, 3, 11, 0))]
    first = available_slots(booked, date(2026, 3, 3), 60, BusinessRules(), limit=5)
    second = available_slots(booked, date(2026, 3, 3), 60, BusinessRules(), limit=5)
    assert first == second
    assert [s.start.hour for s in first] == [8, 11, 13, 14, 15]


def test_returns_none_when_horizon_is_full():
    rules = BusinessRules(horizon_days=2, fixed_blocks=())
    booked = [
        Span(datetime(2026, 3, 2, 0, 0), datetime(2026, 3, 4, 0, 0)),
    ]
    assert next_available_slot(booked, date(2026, 3, 2), 60, rules) is None


def test_duration_longer_than_the_day_finds_nothing():
    rules = BusinessRules(horizon_days=3)
    assert next_available_slot([], date(2026, 3, 2), 10 * 60, rules) is None


def test_closed_dates_and_holidays():
    rules = BusinessRules(closed_dates=frozenset({date(2026, 3, 2)}))
    assert not is_business_day(date(2026, 3, 2), rules)
    holiday_rules = BusinessRules(skip_holidays=True, holiday_country="US")
    assert not is_business_day(date(2026, 7, 3), holiday_rules)
    assert is_business_day(date(2026, 7, 2), holiday_rules)


def test_business_hours_and_fixed_blocks():
    rules = BusinessRules()
    assert within_business_hours(datetime(2026, 3, 2, 8), datetime(2026, 3, 2, 17), rules)
    assert not within_business_hours(datetime(2026, 3, 2, 16), datetime(2026, 3, 2, 18), rules)
    block = overlapping_fixed_block(datetime(2026, 3, 2, 11, 30), datetime(2026, 3, 2, 12, 30), rules)
    assert block == (datetime(2026, 3, 2, 12, 0), datetime(2026, 3, 2, 13, 0))
    assert overlapping_fixed_block(datetime(2026, 3, 2, 11), datetime(2026, 3, 2, 12), rules) is None


def test_invalid_rules_are_rejected():
    with pytest.raises(ValueError):
        BusinessRules(day_start=time(17, 0), day_end=time(8, 0))
    with pytest.raises(ValueError):
        available_slots([], date(2026, 3, 2), 0, BusinessRules())


def test_admit_can_veto_free_slots():
    def afternoon_only(slot):
        return slot.start.hour >= 14

    slots = available_slots([], date(2026, 3, 2), 60, BusinessRules(), limit=2, admit=afternoon_only)
    assert [s.start for s in slots] == [datetime(2026, 3, 2, 14, 0), datetime(2026, 3, 2, 15, 0)]

    assert available_slots(
        [], date(2026, 3, 2), 60, BusinessRules(horizon_days=2), admit=lambda slot: False
    ) == []
