"""Typed failures raised by the scheduling core.

Every error carries the ``rule`` that rejected the request so callers can
tell a field problem from a policy threshold or a double booking without
parsing messages.
"""

from typing import Any


class SchedulingError(Exception):
    rule = "scheduling"

    def __init__(
        self,
        message: str,
        *,
        rule: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if rule:
            self.rule = rule
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "rule": self.rule,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(SchedulingError):
    rule = "validation"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        rule: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, rule=rule, details=details)
        self.field = field
        if field:
            self.details.setdefault("field", field)


class InvalidStateTransitionError(SchedulingError):
    rule = "state_transition"

    def __init__(self, kind: str, from_status: str, to_status: str):
        super().__init__(
            f"{kind}: transition {from_status!r} -> {to_status!r} is not allowed",
            details={"kind": kind, "from": from_status, "to": to_status},
        )
        self.kind = kind
        self.from_status = from_status
        self.to_status = to_status


class ConflictError(SchedulingError):
    rule = "conflict"

    def __init__(
        self,
        message: str,
        *,
        conflicting_keys: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.conflicting_keys = list(conflicting_keys or [])
        self.details.setdefault("conflicting_keys", self.conflicting_keys)


class PolicyNotFoundError(SchedulingError):
    rule = "policy_missing"

    def __init__(self, tenant_id: str, kind: str):
        super().__init__(
            f"No current {kind} policy for tenant {tenant_id!r}",
            details={"tenant_id": tenant_id, "kind": kind},
        )
        self.tenant_id = tenant_id
        self.kind = kind


class CapacityExceededError(SchedulingError):
    rule = "capacity"

    def __init__(
        self,
        message: str,
        *,
        limit: int,
        current: int,
        rule: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, rule=rule, details=details)
        self.limit = limit
        self.current = current
        self.details.update({"limit": limit, "current": current})


class WindowNotFoundError(SchedulingError):
    rule = "not_found"

    def __init__(self, tenant_id: str, business_key: str):
        super().__init__(
            f"Window {business_key!r} not found for tenant {tenant_id!r}",
            details={"tenant_id": tenant_id, "business_key": business_key},
        )
        self.business_key = business_key
