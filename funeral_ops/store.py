import json
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .core.windows import Window, utc_now_naive
from .errors import ValidationError, WindowNotFoundError
from .lifecycles import machine_for
from .models import StaffMember, WindowVersion


def _attributes_json(attributes: dict) -> str:
    return json.dumps(attributes or {}, ensure_ascii=True, sort_keys=True, default=str)


def to_window(row: WindowVersion) -> Window:
    try:
        attributes = json.loads(row.attributes_json or "{}")
    except ValueError:
        attributes = {}
    return Window(
        tenant_id=row.tenant_id,
        kind=row.kind,
        resource_key=row.resource_key,
        secondary_resource_key=row.secondary_resource_key,
        subject_ref=row.subject_ref,
        start=row.start_at,
        end=row.end_at,
        status=row.status,
        business_key=row.business_key,
        version=row.version,
        attributes=attributes,
        created_at=row.created_at,
        created_by=row.created_by,
        recorded_by=row.recorded_by,
        valid_from=row.valid_from,
        valid_to=row.valid_to,
        is_current=row.is_current,
        row_id=row.id,
    )


def _to_row(window: Window, now: datetime) -> WindowVersion:
    return WindowVersion(
        tenant_id=window.tenant_id,
        kind=window.kind,
        business_key=window.business_key,
        version=window.version,
        resource_key=window.resource_key,
        secondary_resource_key=window.secondary_resource_key,
        subject_ref=window.subject_ref,
        start_at=window.start,
        end_at=window.end,
        status=window.status,
        attributes_json=_attributes_json(window.attributes),
        created_at=window.created_at or now,
        created_by=window.created_by or window.recorded_by,
        recorded_by=window.recorded_by or window.created_by,
        valid_from=now,
        valid_to=None,
        is_current=True,
    )


def _current_row(db: Session, tenant_id: str, business_key: str) -> WindowVersion | None:
    return db.execute(
        select(WindowVersion).where(
            WindowVersion.tenant_id == tenant_id,
            WindowVersion.business_key == business_key,
            WindowVersion.is_current.is_(True),
        )
    ).scalar_one_or_none()


def save(db: Session, window: Window, *, now: datetime | None = None) -> str:
    """Insert version 1 of a new window. Does not commit."""
    if window.version != 1:
        raise ValidationError("new windows start at version 1", field="version")
    if window.end <= window.start:
        raise ValidationError("end must be after start", field="end", rule="window_order")
    if not (window.created_by or window.recorded_by):
        raise ValidationError("actor_id is required", field="actor_id")
    if _current_row(db, window.tenant_id, window.business_key) is not None:
        raise ValidationError(
            f"window {window.business_key} already exists", field="business_key"
        )
    row = _to_row(window, now or utc_now_naive())
    db.add(row)
    db.flush()
    return row.business_key


def append_version(db: Session, window: Window, *, now: datetime | None = None) -> Window:
    """Close the current row and insert ``window`` as its successor."""
    current = _current_row(db, window.tenant_id, window.business_key)
    if current is None:
        raise WindowNotFoundError(window.tenant_id, window.business_key)
    if window.version != current.version + 1:
        raise ValidationError(
            f"expected version {current.version + 1}, got {window.version}",
            field="version",
            rule="stale_window",
        )
    if window.end <= window.start:
        raise ValidationError("end must be after start", field="end", rule="window_order")
    now = now or utc_now_naive()
    current.valid_to = now
    current.is_current = False
    db.flush()
    row = _to_row(window, now)
    row.created_at = current.created_at
    row.created_by = current.created_by
    db.add(row)
    db.flush()
    return to_window(row)


def get_current(db: Session, tenant_id: str, business_key: str) -> Window:
    row = _current_row(db, tenant_id, business_key)
    if row is None:
        raise WindowNotFoundError(tenant_id, business_key)
    return to_window(row)


def history(db: Session, tenant_id: str, business_key: str) -> list[Window]:
    rows = db.execute(
        select(WindowVersion)
        .where(
            WindowVersion.tenant_id == tenant_id,
            WindowVersion.business_key == business_key,
        )
        .order_by(WindowVersion.version.asc())
    ).scalars().all()
    return [to_window(row) for row in rows]


def find_current_by_resource(
    db: Session,
    tenant_id: str,
    resource_key: str,
    start: datetime,
    end: datetime,
    *,
    blocking_only: bool = True,
) -> list[Window]:
    """Current windows on ``resource_key`` that intersect ``[start, end)``.

    Callers that apply a buffer must widen the range themselves.
    """
    rows = db.execute(
        select(WindowVersion)
        .where(
            WindowVersion.tenant_id == tenant_id,
            WindowVersion.is_current.is_(True),
            or_(
                WindowVersion.resource_key == resource_key,
                WindowVersion.secondary_resource_key == resource_key,
            ),
            WindowVersion.start_at < end,
            WindowVersion.end_at > start,
        )
        .order_by(WindowVersion.start_at.asc(), WindowVersion.id.asc())
    ).scalars().all()
    windows = [to_window(row) for row in rows]
    if blocking_only:
        windows = [w for w in windows if machine_for(w.kind).is_blocking(w.status)]
    return windows


def find_current(
    db: Session,
    tenant_id: str,
    *,
    kind: str | None = None,
    statuses: set[str] | None = None,
    subject_ref: str | None = None,
    resource_key: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Window]:
    stmt = select(WindowVersion).where(
        WindowVersion.tenant_id == tenant_id,
        WindowVersion.is_current.is_(True),
    )
    if kind:
        stmt = stmt.where(WindowVersion.kind == kind)
    if statuses:
        stmt = stmt.where(WindowVersion.status.in_(sorted(statuses)))
    if subject_ref:
        stmt = stmt.where(WindowVersion.subject_ref == subject_ref)
    if resource_key:
        stmt = stmt.where(
            or_(
                WindowVersion.resource_key == resource_key,
                WindowVersion.secondary_resource_key == resource_key,
            )
        )
    if end is not None:
        stmt = stmt.where(WindowVersion.start_at < end)
    if start is not None:
        stmt = stmt.where(WindowVersion.end_at > start)
    rows = db.execute(
        stmt.order_by(WindowVersion.start_at.asc(), WindowVersion.id.asc())
    ).scalars().all()
    return [to_window(row) for row in rows]


def upsert_staff_member(
    db: Session,
    tenant_id: str,
    *,
    employee_id: str,
    name: str,
    role: str,
    is_active: bool = True,
) -> StaffMember:
    employee_id = (employee_id or "").strip()
    name = (name or "").strip()
    role = (role or "").strip().lower()
    if not employee_id:
        raise ValidationError("employee_id is required", field="employee_id")
    if not name:
        raise ValidationError("name is required", field="name")
    if not role:
        raise ValidationError("role is required", field="role")

    row = db.execute(
        select(StaffMember).where(
            StaffMember.tenant_id == tenant_id,
            StaffMember.employee_id == employee_id,
        )
    ).scalar_one_or_none()
    now = utc_now_naive()
    if row is None:
        row = StaffMember(
            tenant_id=tenant_id,
            employee_id=employee_id,
            created_at=now,
        )
        db.add(row)
    row.name = name[:120]
    row.role = role[:40]
    row.is_active = bool(is_active)
    row.updated_at = now
    db.commit()
    db.refresh(row)
    return row


def list_staff_by_role(
    db: Session, tenant_id: str, role: str, *, active_only: bool = True
) -> list[StaffMember]:
    stmt = select(StaffMember).where(
        StaffMember.tenant_id == tenant_id,
        StaffMember.role == (role or "").strip().lower(),
    )
    if active_only:
        stmt = stmt.where(StaffMember.is_active.is_(True))
    return db.execute(stmt.order_by(StaffMember.employee_id.asc())).scalars().all()


def get_staff_member(db: Session, tenant_id: str, employee_id: str) -> StaffMember | None:
    return db.execute(
        select(StaffMember).where(
            StaffMember.tenant_id == tenant_id,
            StaffMember.employee_id == employee_id,
        )
    ).scalar_one_or_none()
