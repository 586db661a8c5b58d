# app/payments/state_machine.py
from __future__ import annotations

from app.payments.errors import InvalidTransition
from app.payments.model import PaymentStatus as S


ALLOWED: dict[S, frozenset[S]] = {
    S.CREATED: frozenset({S.PUSHED, S.ERRORED}),
    # a fast callback may land before the pushed -> awaiting step, and a push
    # that never got that step still expires
    S.PUSHED: frozenset({S.AWAITING_CONFIRMATION, S.CONFIRMED, S.DECLINED, S.EXPIRED}),
    S.AWAITING_CONFIRMATION: frozenset({S.CONFIRMED, S.DECLINED, S.EXPIRED}),
    S.CONFIRMED: frozenset(),
    S.DECLINED: frozenset(),
    S.EXPIRED: frozenset(),
    S.ERRORED: frozenset(),
}

# statuses that only make sense once the provider has issued a checkout id
REQUIRES_CHECKOUT = frozenset({S.PUSHED, S.AWAITING_CONFIRMATION, S.CONFIRMED, S.DECLINED, S.EXPIRED})


def can_transition(old: S, new: S) -> bool:
    return new in ALLOWED.get(S(old), frozenset())


def assert_transition(old: S, new: S) -> None:
    if not can_transition(old, new):
        raise InvalidTransition(f"Illegal payment transition: {S(old).value} -> {S(new).value}")


def sources_for(new: S) -> frozenset[S]:
    """Statuses from which `new` may be reached."""
    return frozenset(old for old, targets in ALLOWED.items() if new in targets)


def assert_checkout_invariant(new_status: S, checkout_id: str | None) -> None:
    """
    Invariant: pushed and everything downstream of it carries a checkout id.
    """
    if S(new_status) in REQUIRES_CHECKOUT and not checkout_id:
        raise ValueError(f"Invariant violation: status={S(new_status).value} requires checkout_id")
