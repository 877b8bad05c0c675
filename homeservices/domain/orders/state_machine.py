"""
Order lifecycle state machine

    pending_quote -> quote_submitted -> quote_approved -> payment_captured
        -> scheduled -> in_progress -> completed

Payment sub-states hang off quote_approved (payment_pending, payment_failed).
Any non-terminal state can be cancelled; completed orders can be disputed.
Rescheduling is a self-transition allowed before service starts.
"""

import logging
from enum import Enum

from ...errors import InvalidTransition

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING_QUOTE = "pending_quote"
    QUOTE_SUBMITTED = "quote_submitted"
    QUOTE_APPROVED = "quote_approved"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CAPTURED = "payment_captured"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


S = OrderStatus

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.CANCELLED})

# States in which the order can still move to another slot
RESCHEDULABLE_STATUSES = frozenset(
    {
        S.PENDING_QUOTE,
        S.QUOTE_SUBMITTED,
        S.QUOTE_APPROVED,
        S.PAYMENT_PENDING,
        S.PAYMENT_FAILED,
        S.PAYMENT_CAPTURED,
        S.SCHEDULED,
    }
)

TRANSITIONS: dict[OrderStatus, frozenset] = {
    S.PENDING_QUOTE: frozenset({S.QUOTE_SUBMITTED, S.CANCELLED}),
    S.QUOTE_SUBMITTED: frozenset({S.QUOTE_APPROVED, S.PENDING_QUOTE, S.CANCELLED}),
    S.QUOTE_APPROVED: frozenset(
        {S.PAYMENT_PENDING, S.PAYMENT_FAILED, S.PAYMENT_CAPTURED, S.CANCELLED}
    ),
    S.PAYMENT_PENDING: frozenset({S.PAYMENT_CAPTURED, S.PAYMENT_FAILED, S.CANCELLED}),
    S.PAYMENT_FAILED: frozenset({S.PAYMENT_PENDING, S.PAYMENT_CAPTURED, S.CANCELLED}),
    S.PAYMENT_CAPTURED: frozenset({S.SCHEDULED, S.CANCELLED}),
    S.SCHEDULED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset({S.DISPUTED}),
    S.DISPUTED: frozenset({S.COMPLETED, S.CANCELLED}),
    S.CANCELLED: frozenset(),
}


def is_terminal(status: str) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def can_transition(from_status: str, to_status: str) -> bool:
    """Check a transition against the table; rescheduling uses can_reschedule"""
    try:
        current, target = OrderStatus(from_status), OrderStatus(to_status)
    except ValueError:
        return False
    return target in TRANSITIONS[current]


def can_reschedule(status: str) -> bool:
    try:
        return OrderStatus(status) in RESCHEDULABLE_STATUSES
    except ValueError:
        return False


def validate_transition(from_status: str, to_status: str) -> None:
    """
    Raise InvalidTransition unless from_status -> to_status is legal.

    Raises:
        InvalidTransition: transition not in the table
    """
    if not can_transition(from_status, to_status):
        logger.warning(f"🚫 Rejected order transition {from_status} -> {to_status}")
        raise InvalidTransition(
            f"Cannot move order from {from_status} to {to_status}",
            details={"from": from_status, "to": to_status},
        )
