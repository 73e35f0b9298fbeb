from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

RESOURCE_TYPES = {"employee", "room", "vehicle"}


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def resource_key(resource_type: str, resource_id: str) -> str:
    kind = (resource_type or "").strip().lower()
    ident = str(resource_id or "").strip()
    if kind not in RESOURCE_TYPES:
        raise ValueError(f"unknown resource type: {resource_type!r}")
    if not ident:
        raise ValueError(f"{kind} id is required")
    return f"{kind}:{ident}"


def split_resource_key(key: str) -> tuple[str, str]:
    kind, _, ident = key.partition(":")
    return kind, ident


def new_business_key() -> str:
    return uuid4().hex


@dataclass(frozen=True)
class Window:
    """One version of a reservable time window.

    Instances are never mutated; a lifecycle step or reschedule produces a
    copy with ``version + 1`` that the store appends as a new row.
    """

    tenant_id: str
    kind: str
    resource_key: str
    start: datetime
    end: datetime
    status: str
    business_key: str = field(default_factory=new_business_key)
    version: int = 1
    subject_ref: str | None = None
    secondary_resource_key: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    created_by: str | None = None
    recorded_by: str | None = None
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    is_current: bool = True
    row_id: int | None = None

    @property
    def resource_keys(self) -> tuple[str, ...]:
        if self.secondary_resource_key:
            return (self.resource_key, self.secondary_resource_key)
        return (self.resource_key,)

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def attr(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)

    def next_version(self, **changes) -> "Window":
        attributes = dict(self.attributes)
        attributes.update(changes.pop("attributes", {}) or {})
        return replace(
            self,
            version=self.version + 1,
            attributes=attributes,
            valid_from=None,
            valid_to=None,
            is_current=True,
            row_id=None,
            **changes,
        )
