"""
Loan status lifecycle.

    pending -> under_review -> approved -> active -> closed
    pending | under_review -> rejected

rejected and closed are terminal. Guards:
  - under_review needs the security deposit paid
  - active needs approved first (approve and activate may be collapsed into one action)
  - closed needs remaining_balance <= closure epsilon, and is never automatic
"""
from __future__ import annotations

from typing import Any

from config import settings
from services.errors import InvalidStateTransition

PENDING = "pending"
UNDER_REVIEW = "under_review"
APPROVED = "approved"
ACTIVE = "active"
REJECTED = "rejected"
CLOSED = "closed"

STATUSES = (PENDING, UNDER_REVIEW, APPROVED, ACTIVE, REJECTED, CLOSED)
ACTIVE_STATUSES = (PENDING, UNDER_REVIEW, APPROVED, ACTIVE)
TERMINAL_STATUSES = (REJECTED, CLOSED)

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({UNDER_REVIEW, REJECTED}),
    UNDER_REVIEW: frozenset({APPROVED, REJECTED}),
    APPROVED: frozenset({ACTIVE}),
    ACTIVE: frozenset({CLOSED}),
    REJECTED: frozenset(),
    CLOSED: frozenset(),
}

def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def is_forward(previous: str, current: str) -> bool:
    """True when `current` is reachable from `previous` along the lifecycle (or equal to it)."""
    if previous == current:
        return True
    frontier = {previous}
    seen: set[str] = set()
    while frontier:
        state = frontier.pop()
        seen.add(state)
        for nxt in TRANSITIONS.get(state, ()):
            if nxt == current:
                return True
            if nxt not in seen:
                frontier.add(nxt)
    return False


def check_transition(loan: Any, target: str) -> None:
    """Raise InvalidStateTransition unless `loan` may move to `target` right now."""
    current = loan.status
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"A loan that is {current.replace('_', ' ')} cannot become {target.replace('_', ' ')}. "
            "Refresh to see its current status.",
            field="status",
            current=current,
            target=target,
        )
    if target == UNDER_REVIEW and not loan.deposit_paid:
        raise InvalidStateTransition(
            "The security deposit must be paid before the loan can be reviewed.",
            field="depositPaid",
            current=current,
            target=target,
        )
    if target == CLOSED:
        remaining = loan.remaining_balance or 0.0
        if remaining > settings.closure_epsilon:
            raise InvalidStateTransition(
                f"Loan cannot be closed until fully repaid; ${remaining:,.2f} is still outstanding.",
                field="remainingBalance",
                current=current,
                target=target,
                remaining_balance=round(remaining, 2),
            )
