"""
Services package - Business logic layer.

This package contains the logic that talks to the backend and models the ride
lifecycle, decoupled from the WebSocket/HTTP layer.

Modules:
    - backend_gateway: Outbound calls to the backend HTTP API
    - ride_lifecycle: Advisory order state machine
"""

# Expose commonly used names at package level
from .backend_gateway import (
    BackendAck,
    BackendError,
    BackendGateway,
    BackendStatusError,
    BackendUnavailableError,
    DriverCandidate,
    LastEvent,
    get_backend_gateway,
)
from .ride_lifecycle import OrderStatus, can_transition, is_terminal

__all__ = [
    # Backend gateway
    "BackendAck",
    "BackendError",
    "BackendGateway",
    "BackendStatusError",
    "BackendUnavailableError",
    "DriverCandidate",
    "LastEvent",
    "get_backend_gateway",
    # Ride lifecycle
    "OrderStatus",
    "can_transition",
    "is_terminal",
]
