"""
Ride lifecycle - the advisory order state machine the relay sequences clients through.
"""

from .states import (
    EVENT_TARGET_STATUS,
    TERMINAL_STATUSES,
    TRANSITIONS,
    OrderStatus,
    can_transition,
    is_terminal,
)

__all__ = [
    "EVENT_TARGET_STATUS",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "OrderStatus",
    "can_transition",
    "is_terminal",
]
