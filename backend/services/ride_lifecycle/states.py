"""
Order states as observed through the backend API.

The relay never holds authoritative order state and does not enforce this machine;
the backend does. The relay uses it to label the envelopes it forwards and to keep
its own emissions in lifecycle order.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional


class OrderStatus(str, Enum):
    CREATED = "created"
    DRIVER_ACCEPTED = "driver_accepted"
    RIDE_CONFIRMED = "ride_confirmed"
    PICKED_UP = "picked_up"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELED = "canceled"


TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELED})

# Forward path of a ride; canceled is reachable from every non-terminal state
_FORWARD = [
    OrderStatus.CREATED,
    OrderStatus.DRIVER_ACCEPTED,
    OrderStatus.RIDE_CONFIRMED,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_PROGRESS,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
]

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    status: frozenset(
        {_FORWARD[i + 1], OrderStatus.CANCELED} if i + 1 < len(_FORWARD) else set()
    )
    for i, status in enumerate(_FORWARD)
}
TRANSITIONS[OrderStatus.COMPLETED] = frozenset()
TRANSITIONS[OrderStatus.CANCELED] = frozenset()

# Status each lifecycle event moves an order into
EVENT_TARGET_STATUS: Dict[str, OrderStatus] = {
    "accept_order": OrderStatus.DRIVER_ACCEPTED,
    "confirm_ride": OrderStatus.RIDE_CONFIRMED,
    "start_trip": OrderStatus.PICKED_UP,
    "trip_in_progress": OrderStatus.IN_PROGRESS,
    "arrived_at_destination": OrderStatus.DELIVERED,
    "end_trip": OrderStatus.COMPLETED,
    "cancel_order": OrderStatus.CANCELED,
    "order_cancelled": OrderStatus.CANCELED,
}


def _parse_status(value) -> Optional[OrderStatus]:
    """Map a raw backend status string to OrderStatus, None if unknown."""
    try:
        return OrderStatus(value)
    except ValueError:
        return None


def is_terminal(status) -> bool:
    parsed = _parse_status(status)
    return parsed in TERMINAL_STATUSES


def can_transition(current, target) -> bool:
    """Whether the backend would accept moving an order from current to target."""
    current_status = _parse_status(current)
    target_status = _parse_status(target)
    if current_status is None or target_status is None:
        return False
    return target_status in TRANSITIONS[current_status]
