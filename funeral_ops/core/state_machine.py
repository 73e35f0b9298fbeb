from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from ..errors import InvalidStateTransitionError, ValidationError
from .windows import Window

# statuses that free the resource again
RELEASED_STATUSES = frozenset({"cancelled", "rejected", "auto_released", "no_show"})


@dataclass
class TransitionContext:
    at: datetime
    actor_id: str
    policy: Any = None
    values: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)


Guard = Callable[[Window, TransitionContext], None]
Effect = Callable[[Window, TransitionContext], dict[str, Any]]


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class StateMachine:
    """Transition table plus guards and effects for one window kind.

    ``guards`` may be keyed by ``(from, to)`` or by ``to`` alone. A guard
    raises ``ValidationError`` to veto the step. Effects return attribute
    updates that land in the same new version as the status change.
    Machines built with ``occupying=False`` track requests that never hold
    the resource themselves, so none of their statuses block.
    """

    def __init__(
        self,
        kind: str,
        initial: str,
        transitions: dict[str, set[str]],
        *,
        guards: dict[Any, Guard] | None = None,
        effects: dict[str, Effect] | None = None,
        reschedulable: set[str] | None = None,
        derived: Effect | None = None,
        occupying: bool = True,
    ):
        if initial not in transitions:
            raise ValueError(f"{kind}: initial status {initial!r} missing from table")
        for source, targets in transitions.items():
            unknown = set(targets) - set(transitions)
            if unknown:
                raise ValueError(f"{kind}: {source} points at unknown {sorted(unknown)}")
        self.kind = kind
        self.initial = initial
        self.transitions = {k: frozenset(v) for k, v in transitions.items()}
        self.guards = dict(guards or {})
        self.effects = dict(effects or {})
        self.reschedulable = frozenset(reschedulable or {initial})
        self.derived = derived
        self.occupying = occupying

    @property
    def statuses(self) -> frozenset[str]:
        return frozenset(self.transitions)

    @property
    def terminal(self) -> frozenset[str]:
        return frozenset(s for s, targets in self.transitions.items() if not targets)

    @property
    def blocking(self) -> frozenset[str]:
        if not self.occupying:
            return frozenset()
        return frozenset(s for s in self.transitions if s not in RELEASED_STATUSES)

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal

    def is_blocking(self, status: str) -> bool:
        return status in self.blocking

    def can_transition(self, from_status: str, to_status: str) -> bool:
        return to_status in self.transitions.get(from_status, frozenset())

    def assert_transition(self, from_status: str, to_status: str) -> None:
        if not self.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(self.kind, from_status, to_status)

    def transition(self, window: Window, target: str, ctx: TransitionContext) -> Window:
        if window.kind != self.kind:
            raise ValueError(f"{self.kind} machine cannot drive a {window.kind} window")
        self.assert_transition(window.status, target)

        for key in ((window.status, target), target):
            guard = self.guards.get(key)
            if guard is not None:
                guard(window, ctx)

        updates: dict[str, Any] = {"status_changed_at": iso(ctx.at)}
        effect = self.effects.get(target)
        if effect is not None:
            updates.update(effect(window, ctx) or {})
        new_window = window.next_version(
            status=target, recorded_by=ctx.actor_id, attributes=updates
        )
        return self._with_derived(new_window, ctx)

    def reschedule(
        self, window: Window, start: datetime, end: datetime, ctx: TransitionContext
    ) -> Window:
        if window.status not in self.reschedulable:
            raise ValidationError(
                f"{self.kind} window cannot move while {window.status}",
                field="start",
                rule="window_locked",
            )
        new_window = window.next_version(
            start=start,
            end=end,
            recorded_by=ctx.actor_id,
            attributes={"rescheduled_at": iso(ctx.at)},
        )
        return self._with_derived(new_window, ctx)

    def amend(self, window: Window, ctx: TransitionContext, **attributes) -> Window:
        if self.is_terminal(window.status):
            raise ValidationError(
                f"{self.kind} window is {window.status} and can no longer change",
                rule="terminal_immutable",
            )
        return window.next_version(recorded_by=ctx.actor_id, attributes=attributes)

    def _with_derived(self, window: Window, ctx: TransitionContext) -> Window:
        if self.derived is None:
            return window
        updates = self.derived(window, ctx) or {}
        if not updates:
            return window
        attributes = dict(window.attributes)
        attributes.update(updates)
        return replace(window, attributes=attributes)
