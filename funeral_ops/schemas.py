from datetime import date, datetime, time, timedelta

from pydantic import BaseModel, Field, validator

ROLES = ("director", "embalmer", "staff", "driver")


class BlackoutPeriod(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    start_date: date
    end_date: date
    description: str | None = Field(default=None, max_length=300)
    # soft periods only raise the advance-notice requirement
    hard: bool = True

    @validator("end_date")
    @classmethod
    def validate_end_not_before_start(cls, value: date, values: dict) -> date:
        start_date = values.get("start_date")
        if start_date and value < start_date:
            raise ValueError("end_date must be >= start_date")
        return value

    def covers(self, start: datetime, end: datetime) -> bool:
        # end_date is inclusive, window end is exclusive
        last_day = (end - timedelta(microseconds=1)).date() if end > start else start.date()
        return start.date() <= self.end_date and self.start_date <= last_day


class PolicySettings(BaseModel):
    buffer_minutes: int = Field(ge=0, le=24 * 60)
    blackout_periods: list[BlackoutPeriod] = Field(default_factory=list)

    @validator("blackout_periods")
    @classmethod
    def validate_blackouts_do_not_overlap(cls, value: list[BlackoutPeriod]):
        ordered = sorted(value, key=lambda p: p.start_date)
        for previous, current in zip(ordered, ordered[1:]):
            if current.start_date <= previous.end_date:
                raise ValueError(
                    f"blackout periods {previous.name!r} and {current.name!r} overlap"
                )
        return value

    def blackouts_covering(self, start: datetime, end: datetime) -> list[BlackoutPeriod]:
        return [p for p in self.blackout_periods if p.covers(start, end)]


class RolePtoPolicy(BaseModel):
    requires_director_approval: bool = False
    requires_backfill: bool = False
    max_concurrent_employees: int = Field(default=2, ge=1)


class PtoPolicySettings(PolicySettings):
    buffer_minutes: int = Field(default=0, ge=0, le=24 * 60)
    min_advance_notice_days: int = Field(default=14, ge=0)
    min_advance_notice_holidays_days: int | None = Field(default=None, ge=0)
    annual_pto_days_per_employee: int = Field(default=20, ge=0)
    max_concurrent_employees_on_pto: int = Field(default=2, ge=1)
    max_consecutive_pto_days: int = Field(default=10, ge=1)
    enable_premium_pay_for_backfill: bool = True
    premium_multiplier: float = Field(default=1.5, ge=1.0)
    role_policies: dict[str, RolePtoPolicy] = Field(
        default_factory=lambda: {
            "director": RolePtoPolicy(
                requires_director_approval=True,
                requires_backfill=True,
                max_concurrent_employees=1,
            ),
            "embalmer": RolePtoPolicy(
                requires_director_approval=False,
                requires_backfill=True,
                max_concurrent_employees=2,
            ),
            "staff": RolePtoPolicy(
                requires_director_approval=False,
                requires_backfill=False,
                max_concurrent_employees=3,
            ),
        }
    )

    @validator("min_advance_notice_holidays_days")
    @classmethod
    def validate_holiday_notice(cls, value: int | None, values: dict) -> int | None:
        regular = values.get("min_advance_notice_days")
        if value is not None and regular is not None and value < regular:
            raise ValueError(
                "min_advance_notice_holidays_days must be >= min_advance_notice_days"
            )
        return value

    def role_policy(self, role: str | None) -> RolePtoPolicy:
        policy = self.role_policies.get((role or "").strip().lower())
        if policy is not None:
            return policy
        return RolePtoPolicy(max_concurrent_employees=self.max_concurrent_employees_on_pto)

    def holiday_notice_days(self) -> int:
        if self.min_advance_notice_holidays_days is not None:
            return self.min_advance_notice_holidays_days
        return self.min_advance_notice_days * 2


class RoleTrainingRequirement(BaseModel):
    annual_training_hours_budget: int = Field(ge=0)
    annual_training_budget: float = Field(ge=0)
    requires_director_approval_for_training: bool = False
    max_training_days_per_year: int = Field(ge=0)


class TrainingPolicySettings(PolicySettings):
    buffer_minutes: int = Field(default=0, ge=0, le=24 * 60)
    min_advance_notice_days: int = Field(default=0, ge=0)
    enable_training_backfill: bool = True
    backfill_premium_multiplier: float = Field(default=1.25, ge=1.0)
    default_renewal_notice_days: int = Field(default=60, ge=0)
    approval_required_above_cost: float = Field(default=1000, ge=0)
    max_concurrent_in_training: int = Field(default=2, ge=1)
    role_requirements: dict[str, RoleTrainingRequirement] = Field(
        default_factory=lambda: {
            "director": RoleTrainingRequirement(
                annual_training_hours_budget=40,
                annual_training_budget=2000,
                max_training_days_per_year=10,
            ),
            "embalmer": RoleTrainingRequirement(
                annual_training_hours_budget=32,
                annual_training_budget=1500,
                max_training_days_per_year=8,
            ),
            "staff": RoleTrainingRequirement(
                annual_training_hours_budget=16,
                annual_training_budget=500,
                requires_director_approval_for_training=True,
                max_training_days_per_year=4,
            ),
        }
    )

    def requirement_for(self, role: str | None) -> RoleTrainingRequirement | None:
        return self.role_requirements.get((role or "").strip().lower())

    def can_take_training(self, role: str, spent: float, cost: float) -> bool:
        requirement = self.requirement_for(role)
        if requirement is None:
            return False
        return spent + cost <= requirement.annual_training_budget


class OnCallPolicySettings(PolicySettings):
    buffer_minutes: int = Field(default=8 * 60, ge=0, le=24 * 60)
    min_advance_notice_hours: int = Field(default=48, ge=24, le=96)
    max_advance_notice_hours: int = Field(default=168, ge=72, le=168)
    min_shift_duration_hours: int = Field(default=12, ge=8, le=16)
    max_shift_duration_hours: int = Field(default=72, ge=48, le=72)
    max_consecutive_weekends_on: int = Field(default=2, ge=1, le=3)
    min_rest_hours_after_shift: int = Field(default=8, ge=6, le=12)
    enable_fair_rotation: bool = True
    max_on_call_per_director_per_quarter: int = Field(default=13, ge=10, le=16)
    on_call_base_pay_amount: float = Field(default=150, ge=0)
    callback_hourly_rate: float = Field(default=1.5, ge=1.0, le=2.0)
    swap_notice_hours: int = Field(default=48, ge=0)
    max_pending_swaps_per_employee: int = Field(default=2, ge=1)

    @validator("max_advance_notice_hours")
    @classmethod
    def validate_notice_range(cls, value: int, values: dict) -> int:
        minimum = values.get("min_advance_notice_hours")
        if minimum is not None and value < minimum:
            raise ValueError("max_advance_notice_hours must be >= min_advance_notice_hours")
        return value


class ServiceCoveragePolicySettings(PolicySettings):
    buffer_minutes: int = Field(default=0, ge=0, le=24 * 60)
    max_service_duration_hours: int = Field(default=8, ge=1, le=24)
    min_rest_hours: int = Field(default=8, ge=0, le=24)
    staffing_requirements: dict[str, dict[str, int]] = Field(
        default_factory=lambda: {
            "traditional_funeral": {"director": 1, "staff": 2, "driver": 1},
            "memorial_service": {"director": 1, "staff": 1},
            "graveside": {"director": 1, "staff": 1, "driver": 1},
            "visitation": {"staff": 1},
        }
    )

    @validator("staffing_requirements")
    @classmethod
    def validate_requirement_counts(cls, value: dict[str, dict[str, int]]):
        for service_type, roles in value.items():
            for role, count in roles.items():
                if count < 0:
                    raise ValueError(f"{service_type}.{role} must be >= 0")
        return value


class PrepRoomPolicySettings(PolicySettings):
    buffer_minutes: int = Field(default=30, ge=0, le=24 * 60)
    min_duration_minutes: int = Field(default=120, ge=1)
    max_duration_minutes: int = Field(default=480, ge=1)
    min_advance_notice_hours: int = Field(default=0, ge=0)
    auto_release_minutes: int = Field(default=30, ge=1)
    max_concurrent_reservations_per_embalmer: int = Field(default=1, ge=1)
    max_preparations_per_embalmer_per_shift: int = Field(default=3, ge=1)
    embalmer_shift_hours: int = Field(default=8, ge=4, le=12)
    break_minutes_between_preparations: int = Field(default=30, ge=0)

    @validator("max_duration_minutes")
    @classmethod
    def validate_duration_range(cls, value: int, values: dict) -> int:
        minimum = values.get("min_duration_minutes")
        if minimum is not None and value < minimum:
            raise ValueError("max_duration_minutes must be >= min_duration_minutes")
        return value


class AppointmentPolicySettings(PolicySettings):
    buffer_minutes: int = Field(default=0, ge=0, le=24 * 60)
    business_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    business_hours_start: time = time(8, 0)
    business_hours_end: time = time(17, 0)
    lunch_start: time | None = time(12, 0)
    lunch_end: time | None = time(13, 0)
    slot_step_minutes: int = Field(default=60, ge=5)
    min_duration_minutes: int = Field(default=60, ge=1)
    max_duration_minutes: int = Field(default=240, ge=1)
    min_advance_notice_hours: int = Field(default=0, ge=0)
    max_appointments_per_director_per_day: int = Field(default=4, ge=1)
    cancellation_lead_hours: int = Field(default=24, ge=0)
    reminder_min_hours: int = Field(default=1, ge=0)
    reminder_max_hours: int = Field(default=36, ge=1)
    skip_holidays: bool = True

    @validator("business_days")
    @classmethod
    def validate_business_days(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("business_days must not be empty")
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("business_days must be weekday numbers 0-6")
        return sorted(set(value))

    @validator("business_hours_end")
    @classmethod
    def validate_hours(cls, value: time, values: dict) -> time:
        start = values.get("business_hours_start")
        if start is not None and value <= start:
            raise ValueError("business_hours_end must be after business_hours_start")
        return value

    @validator("lunch_end")
    @classmethod
    def validate_lunch(cls, value: time | None, values: dict) -> time | None:
        start = values.get("lunch_start")
        if (start is None) != (value is None):
            raise ValueError("lunch_start and lunch_end must be set together")
        if start is not None and value <= start:
            raise ValueError("lunch_end must be after lunch_start")
        return value

    @validator("max_duration_minutes")
    @classmethod
    def validate_duration_range(cls, value: int, values: dict) -> int:
        minimum = values.get("min_duration_minutes")
        if minimum is not None and value < minimum:
            raise ValueError("max_duration_minutes must be >= min_duration_minutes")
        return value

    @validator("reminder_max_hours")
    @classmethod
    def validate_reminder_range(cls, value: int, values: dict) -> int:
        minimum = values.get("reminder_min_hours")
        if minimum is not None and value < minimum:
            raise ValueError("reminder_max_hours must be >= reminder_min_hours")
        return value


class TransportPolicySettings(PolicySettings):
    buffer_minutes: int = Field(default=60, ge=0, le=24 * 60)
    min_duration_minutes: int = Field(default=15, ge=1)
    max_duration_minutes: int = Field(default=240, ge=1)
    min_advance_notice_hours: int = Field(default=0, ge=0)
    mileage_rate: float = Field(default=0.655, ge=0)
    max_assignments_per_driver_per_day: int = Field(default=8, ge=1)

    @validator("max_duration_minutes")
    @classmethod
    def validate_duration_range(cls, value: int, values: dict) -> int:
        minimum = values.get("min_duration_minutes")
        if minimum is not None and value < minimum:
            raise ValueError("max_duration_minutes must be >= min_duration_minutes")
        return value


POLICY_SCHEMAS: dict[str, type[PolicySettings]] = {
    "pto": PtoPolicySettings,
    "training": TrainingPolicySettings,
    "on_call": OnCallPolicySettings,
    "service_coverage": ServiceCoveragePolicySettings,
    "prep_room": PrepRoomPolicySettings,
    "appointment": AppointmentPolicySettings,
    "transport": TransportPolicySettings,
}
