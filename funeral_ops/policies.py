"""Versioned tenant policies.

Each (tenant, kind) pair has exactly one current row. Writes never touch
payloads in place: the current row is closed and a successor with
``version + 1`` is inserted in the same transaction.
"""

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import pydantic
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .audit import enqueue_notification, log_audit_event
from .config import settings
from .core.locks import policy_locks
from .core.windows import utc_now_naive
from .errors import PolicyNotFoundError, SchedulingError, ValidationError
from .models import PolicyVersion
from .schemas import POLICY_SCHEMAS, PolicySettings

logger = structlog.get_logger("funeral_ops.policies")

POLICY_KINDS = tuple(POLICY_SCHEMAS)

# which policy parameterizes each reservable window kind
WINDOW_POLICY_KINDS = {
    "pto": "pto",
    "training": "training",
    "backfill": "service_coverage",
    "prep_room": "prep_room",
    "appointment": "appointment",
    "driver": "transport",
    "on_call": "on_call",
    "shift_swap": "on_call",
}


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload or {}, ensure_ascii=True, sort_keys=True)


def _json_loads(raw: str | None, fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except Exception:
        return fallback


def _check_kind(kind: str) -> str:
    normalized = (kind or "").strip().lower()
    if normalized not in POLICY_SCHEMAS:
        raise ValidationError(f"Unknown policy kind: {kind!r}", field="kind", rule="policy_kind")
    return normalized


@contextmanager
def _rollback_on_error(db: Session, operation: str, **fields):
    try:
        yield
    except SchedulingError as exc:
        db.rollback()
        logger.warning(
            "policy_write_rejected",
            operation=operation,
            error=type(exc).__name__,
            rule=exc.rule,
            reason=exc.message,
            **fields,
        )
        raise


def policy_business_key(tenant_id: str, kind: str) -> str:
    return f"{tenant_id}:{kind}"


def default_settings(kind: str) -> PolicySettings:
    return POLICY_SCHEMAS[_check_kind(kind)]()


def parse_settings(kind: str, payload: dict) -> PolicySettings:
    schema = POLICY_SCHEMAS[_check_kind(kind)]
    try:
        return schema.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Invalid {kind} policy: {exc.error_count()} problem(s)",
            rule="policy_invalid",
            details={"errors": [_describe(e) for e in exc.errors()]},
        ) from exc


def _describe(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def validate_policy_payload(kind: str, payload: dict) -> list[str]:
    """Return the list of problems with ``payload``; empty means valid."""
    try:
        parse_settings(kind, payload)
    except ValidationError as exc:
        if exc.rule == "policy_kind":
            return [exc.message]
        return list(exc.details.get("errors", []))
    return []


def settings_for(row: PolicyVersion) -> PolicySettings:
    return parse_settings(row.kind, _json_loads(row.payload_json, {}))


def find_current_policy(db: Session, tenant_id: str, kind: str) -> PolicyVersion:
    kind = _check_kind(kind)
    row = db.execute(
        select(PolicyVersion).where(
            PolicyVersion.tenant_id == tenant_id,
            PolicyVersion.kind == kind,
            PolicyVersion.is_current.is_(True),
        )
    ).scalar_one_or_none()
    if row is None:
        raise PolicyNotFoundError(tenant_id, kind)
    return row


def load_settings(db: Session, tenant_id: str, kind: str) -> PolicySettings:
    return settings_for(find_current_policy(db, tenant_id, kind))


def load_window_settings(db: Session, tenant_id: str, window_kind: str) -> PolicySettings:
    return load_settings(db, tenant_id, WINDOW_POLICY_KINDS[window_kind])


def policy_history(db: Session, tenant_id: str, kind: str) -> list[PolicyVersion]:
    kind = _check_kind(kind)
    return db.execute(
        select(PolicyVersion)
        .where(PolicyVersion.tenant_id == tenant_id, PolicyVersion.kind == kind)
        .order_by(PolicyVersion.version.asc())
    ).scalars().all()


def policy_as_of(
    db: Session, tenant_id: str, kind: str, at: datetime
) -> PolicyVersion | None:
    """The version that was in force at ``at``."""
    kind = _check_kind(kind)
    return db.execute(
        select(PolicyVersion)
        .where(
            PolicyVersion.tenant_id == tenant_id,
            PolicyVersion.kind == kind,
            PolicyVersion.valid_from <= at,
            (PolicyVersion.valid_to.is_(None)) | (PolicyVersion.valid_to > at),
        )
        .order_by(PolicyVersion.version.desc())
    ).scalars().first()


def _numeric_leaves(payload: Any, prefix: str = "") -> dict[str, float]:
    leaves: dict[str, float] = {}
    if isinstance(payload, dict):
        for key, value in payload.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            leaves.update(_numeric_leaves(value, path))
    elif isinstance(payload, list):
        for index, value in enumerate(payload):
            leaves.update(_numeric_leaves(value, f"{prefix}[{index}]"))
    elif isinstance(payload, (int, float)) and not isinstance(payload, bool):
        leaves[prefix] = float(payload)
    return leaves


def changed_thresholds(old: PolicySettings | dict, new: PolicySettings | dict) -> list[str]:
    old_payload = old.model_dump(mode="json") if isinstance(old, PolicySettings) else old
    new_payload = new.model_dump(mode="json") if isinstance(new, PolicySettings) else new
    old_leaves = _numeric_leaves(old_payload)
    new_leaves = _numeric_leaves(new_payload)
    return sorted(
        path
        for path in set(old_leaves) | set(new_leaves)
        if old_leaves.get(path) != new_leaves.get(path)
    )


def has_significant_change(old: PolicySettings | dict, new: PolicySettings | dict) -> bool:
    return bool(changed_thresholds(old, new))


def _insert_version(
    db: Session,
    tenant_id: str,
    kind: str,
    policy: PolicySettings,
    *,
    version: int,
    actor_id: str,
    now: datetime,
    notes: str | None,
) -> PolicyVersion:
    row = PolicyVersion(
        tenant_id=tenant_id,
        kind=kind,
        business_key=policy_business_key(tenant_id, kind),
        version=version,
        payload_json=_json_dumps(policy.model_dump(mode="json")),
        valid_from=now,
        valid_to=None,
        is_current=True,
        created_by=actor_id,
        notes=(notes or "").strip()[:500] or None,
    )
    db.add(row)
    db.flush()
    return row


def onboard_tenant(
    db: Session,
    tenant_id: str,
    *,
    actor_id: str | None = None,
    overrides: dict[str, dict] | None = None,
    now: datetime | None = None,
) -> list[PolicyVersion]:
    """Create version 1 of every policy kind the tenant does not have yet."""
    tenant_id = (tenant_id or "").strip()
    if not tenant_id:
        raise ValidationError("tenant_id is required", field="tenant_id")
    actor = (actor_id or settings.DEFAULT_POLICY_ACTOR).strip()
    now = now or utc_now_naive()
    overrides = overrides or {}
    created = []
    with _rollback_on_error(db, "onboard", tenant_id=tenant_id, actor_id=actor):
        for kind in POLICY_KINDS:
            with policy_locks.hold((tenant_id, kind)):
                try:
                    find_current_policy(db, tenant_id, kind)
                    continue
                except PolicyNotFoundError:
                    pass
                payload = default_settings(kind).model_dump(mode="json")
                payload.update(overrides.get(kind, {}))
                policy = parse_settings(kind, payload)
                row = _insert_version(
                    db,
                    tenant_id,
                    kind,
                    policy,
                    version=1,
                    actor_id=actor,
                    now=now,
                    notes="tenant onboarding defaults",
                )
                created.append(row)
        if created:
            log_audit_event(
                db,
                tenant_id,
                "policy.onboard",
                actor_id=actor,
                payload={"kinds": [row.kind for row in created]},
            )
    db.commit()
    for row in created:
        db.refresh(row)
    logger.info("tenant_onboarded", tenant_id=tenant_id, kinds=[r.kind for r in created])
    return created


def close_and_insert_policy(
    db: Session,
    old: PolicyVersion,
    new_settings: PolicySettings | dict,
    *,
    actor_id: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> PolicyVersion:
    actor = (actor_id or "").strip()
    if not actor:
        raise ValidationError("actor_id is required", field="actor_id")
    if isinstance(new_settings, dict):
        new_settings = parse_settings(old.kind, new_settings)
    else:
        new_settings = parse_settings(old.kind, new_settings.model_dump(mode="json"))
    now = now or utc_now_naive()

    with policy_locks.hold((old.tenant_id, old.kind)):
        current = find_current_policy(db, old.tenant_id, old.kind)
        if current.id != old.id or current.version != old.version:
            raise ValidationError(
                f"{old.kind} policy version {old.version} is no longer current",
                field="version",
                rule="stale_policy",
                details={"current_version": current.version},
            )
        current.valid_to = now
        current.is_current = False
        db.flush()
        row = _insert_version(
            db,
            current.tenant_id,
            current.kind,
            new_settings,
            version=current.version + 1,
            actor_id=actor,
            now=now,
            notes=notes,
        )
        db.commit()
    db.refresh(row)
    logger.info(
        "policy_version_created",
        tenant_id=row.tenant_id,
        kind=row.kind,
        version=row.version,
        actor_id=actor,
    )
    return row


def update_policy(
    db: Session,
    tenant_id: str,
    kind: str,
    changes: dict,
    *,
    actor_id: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> PolicyVersion:
    actor = (actor_id or "").strip()
    if not actor:
        raise ValidationError("actor_id is required", field="actor_id")
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("changes must be a non-empty object", field="changes")
    kind = _check_kind(kind)
    with _rollback_on_error(db, "update", tenant_id=tenant_id, kind=kind, actor_id=actor):
        with policy_locks.hold((tenant_id, kind)):
            current = find_current_policy(db, tenant_id, kind)
            old_settings = settings_for(current)
            payload = old_settings.model_dump(mode="json")
            payload.update(changes)
            new_settings = parse_settings(kind, payload)
            changed = changed_thresholds(old_settings, new_settings)

            log_audit_event(
                db,
                tenant_id,
                "policy.update",
                actor_id=actor,
                related_key=policy_business_key(tenant_id, kind),
                payload={"from_version": current.version, "changed": sorted(changes)},
            )
            if changed:
                enqueue_notification(
                    db,
                    tenant_id,
                    "policy_changed",
                    f"{kind} policy thresholds changed: {', '.join(changed)}",
                    related_key=policy_business_key(tenant_id, kind),
                    payload={"kind": kind, "changed": changed},
                )
            row = close_and_insert_policy(
                db, current, new_settings, actor_id=actor, notes=notes, now=now
            )
    return row


def clone_policies(
    db: Session,
    source_tenant_id: str,
    target_tenant_id: str,
    *,
    actor_id: str,
    now: datetime | None = None,
) -> list[PolicyVersion]:
    """Seed a new tenant with another tenant's current settings."""
    overrides = {}
    for kind in POLICY_KINDS:
        try:
            overrides[kind] = load_settings(db, source_tenant_id, kind).model_dump(mode="json")
        except PolicyNotFoundError:
            continue
    return onboard_tenant(
        db, target_tenant_id, actor_id=actor_id, overrides=overrides, now=now
    )
