import json

from sqlalchemy import select
from sqlalchemy.orm import Session

from .core.windows import utc_now_naive
from .models import AuditEvent, NotificationEvent


def _to_payload_json(payload: dict | None) -> str | None:
    if not payload:
        return None
    try:
        return json.dumps(
            payload, ensure_ascii=True, separators=(",", ":"), default=str
        )
    except TypeError:
        return json.dumps({"raw": str(payload)}, ensure_ascii=True)


def log_audit_event(
    db: Session,
    tenant_id: str,
    action: str,
    *,
    actor_id: str,
    related_key: str | None = None,
    payload: dict | None = None,
) -> AuditEvent:
    row = AuditEvent(
        tenant_id=tenant_id,
        action=(action or "").strip()[:80],
        actor_id=(actor_id or "").strip()[:160],
        related_key=(related_key or "").strip()[:160] or None,
        payload_json=_to_payload_json(payload),
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.flush()
    return row


def enqueue_notification(
    db: Session,
    tenant_id: str,
    event_type: str,
    message: str,
    *,
    related_key: str | None = None,
    payload: dict | None = None,
) -> NotificationEvent:
    row = NotificationEvent(
        tenant_id=tenant_id,
        event_type=(event_type or "").strip()[:80] or "generic",
        related_key=(related_key or "").strip()[:160] or None,
        message=(message or "").strip()[:500] or "Update",
        payload_json=_to_payload_json(payload),
        status="pending",
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.flush()
    return row


def list_audit_events(
    db: Session, tenant_id: str, *, related_key: str | None = None
) -> list[AuditEvent]:
    stmt = select(AuditEvent).where(AuditEvent.tenant_id == tenant_id)
    if related_key:
        stmt = stmt.where(AuditEvent.related_key == related_key)
    return db.execute(stmt.order_by(AuditEvent.id.asc())).scalars().all()


def list_pending_notifications(
    db: Session, tenant_id: str, *, event_type: str | None = None
) -> list[NotificationEvent]:
    stmt = select(NotificationEvent).where(
        NotificationEvent.tenant_id == tenant_id,
        NotificationEvent.status == "pending",
    )
    if event_type:
        stmt = stmt.where(NotificationEvent.event_type == event_type)
    return db.execute(stmt.order_by(NotificationEvent.id.asc())).scalars().all()
