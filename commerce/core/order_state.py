"""
Order lifecycle state machine.

PENDING ──► PAID ──► SHIPPED ──► DELIVERED ──► REFUNDED
   │          │
   └──► CANCELLED ◄──┘

CANCELLED and REFUNDED are terminal.
"""
from enum import Enum
from typing import Dict, FrozenSet, Union

from commerce.core.errors import InvalidTransitionError


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def is_terminal(status: Union[OrderStatus, str]) -> bool:
    return not TRANSITIONS[OrderStatus(status)]


def can_transition(current: Union[OrderStatus, str], target: Union[OrderStatus, str]) -> bool:
    """Return True when `target` is reachable from `current` in one step."""
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def ensure_transition(current: Union[OrderStatus, str], target: Union[OrderStatus, str]) -> None:
    """
    Validate a transition.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(OrderStatus(current).value, OrderStatus(target).value)
