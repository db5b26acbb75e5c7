from __future__ import annotations

from enum import StrEnum

from app.errors import InvalidTransitionError
from app.models import TERMINAL_STATUSES, BookingStatus


class Actor(StrEnum):
    COUPLE = "couple"
    VENDOR = "vendor"
    ADMIN = "admin"
    SYSTEM = "system"  # payment reconciliation and completion gate


S = BookingStatus

# (current status, actor) -> reachable target statuses.
# Admin may do anything a couple or vendor may do from a non-terminal status.
# Payment and completion statuses are reached only by SYSTEM.
_TRANSITIONS: dict[tuple[BookingStatus, Actor], frozenset[BookingStatus]] = {
    (S.REQUEST, Actor.VENDOR): frozenset(
        {S.REQUEST, S.APPROVED, S.DECLINED, S.CANCELLED}
    ),
    (S.REQUEST, Actor.COUPLE): frozenset({S.APPROVED, S.CANCELLED}),
    (S.APPROVED, Actor.COUPLE): frozenset({S.CANCELLED}),
    (S.APPROVED, Actor.VENDOR): frozenset({S.CANCELLED}),
    (S.APPROVED, Actor.SYSTEM): frozenset({S.DOWNPAYMENT, S.FULLY_PAID}),
    (S.DOWNPAYMENT, Actor.COUPLE): frozenset({S.CANCELLED}),
    (S.DOWNPAYMENT, Actor.VENDOR): frozenset({S.CANCELLED}),
    (S.DOWNPAYMENT, Actor.SYSTEM): frozenset({S.FULLY_PAID}),
    (S.FULLY_PAID, Actor.COUPLE): frozenset({S.CANCELLED}),
    (S.FULLY_PAID, Actor.VENDOR): frozenset({S.CANCELLED}),
    (S.FULLY_PAID, Actor.SYSTEM): frozenset({S.COMPLETED}),
}


def allowed_targets(current: BookingStatus, actor: Actor) -> frozenset[BookingStatus]:
    if actor == Actor.ADMIN:
        if current in TERMINAL_STATUSES:
            return frozenset()
        return frozenset().union(
            *(
                targets
                for (status, actor_), targets in _TRANSITIONS.items()
                if status == current and actor_ != Actor.SYSTEM
            )
        )
    return _TRANSITIONS.get((current, actor), frozenset())


def can_transition(current: BookingStatus, actor: Actor, target: BookingStatus) -> bool:
    return target in allowed_targets(current, actor)


def assert_transition(current: BookingStatus, actor: Actor, target: BookingStatus) -> None:
    """Raise InvalidTransitionError unless `actor` may move `current` to `target`."""
    if can_transition(current, actor, target):
        return
    allowed = sorted(s.value for s in allowed_targets(current, actor))
    raise InvalidTransitionError(
        f"Cannot transition from '{current}' to '{target}' as {actor}. Allowed: {allowed}",
        current=current,
        target=target,
        actor=actor,
    )
