from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .core.windows import utc_now_naive
from .db import Base


class PolicyVersion(Base):
    __tablename__ = "policy_versions"
    __table_args__ = (
        UniqueConstraint("business_key", "version", name="uq_policy_versions_key_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(80), index=True)
    kind: Mapped[str] = mapped_column(String(40), index=True)
    business_key: Mapped[str] = mapped_column(String(160), index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    valid_from: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    valid_to: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_by: Mapped[str] = mapped_column(String(160))
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)


class WindowVersion(Base):
    __tablename__ = "window_versions"
    __table_args__ = (
        UniqueConstraint("business_key", "version", name="uq_window_versions_key_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(80), index=True)
    kind: Mapped[str] = mapped_column(String(40), index=True)
    business_key: Mapped[str] = mapped_column(String(64), index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    resource_key: Mapped[str] = mapped_column(String(160), index=True)
    secondary_resource_key: Mapped[str | None] = mapped_column(
        String(160), nullable=True, index=True
    )
    subject_ref: Mapped[str | None] = mapped_column(String(160), nullable=True, index=True)
    start_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    status: Mapped[str] = mapped_column(String(32), index=True)
    attributes_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    created_by: Mapped[str] = mapped_column(String(160))
    recorded_by: Mapped[str] = mapped_column(String(160))
    valid_from: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    valid_to: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


Index(
    "uq_policy_versions_current",
    PolicyVersion.tenant_id,
    PolicyVersion.kind,
    unique=True,
    sqlite_where=PolicyVersion.is_current.is_(True),
    postgresql_where=PolicyVersion.is_current.is_(True),
)

Index(
    "uq_window_versions_current",
    WindowVersion.business_key,
    unique=True,
    sqlite_where=WindowVersion.is_current.is_(True),
    postgresql_where=WindowVersion.is_current.is_(True),
)


class StaffMember(Base):
    __tablename__ = "staff_members"
    __table_args__ = (
        UniqueConstraint("tenant_id", "employee_id", name="uq_staff_members_tenant_employee"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(80), index=True)
    employee_id: Mapped[str] = mapped_column(String(80), index=True)
    name: Mapped[str] = mapped_column(String(120))
    role: Mapped[str] = mapped_column(String(40), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(80), index=True)
    action: Mapped[str] = mapped_column(String(80), index=True)
    actor_id: Mapped[str] = mapped_column(String(160), index=True)
    related_key: Mapped[str | None] = mapped_column(String(160), nullable=True, index=True)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class NotificationEvent(Base):
    __tablename__ = "notification_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(80), index=True)
    event_type: Mapped[str] = mapped_column(String(80), index=True)
    related_key: Mapped[str | None] = mapped_column(String(160), nullable=True, index=True)
    message: Mapped[str] = mapped_column(String(500))
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
