"""
Backend gateway - outbound request/response calls to the backend service.

Every call may fail with a network error or a non-success status. Callers treat such
failures as an unknown outcome, never as proof the backend rejected the write.
"""

from .client import (
    BackendAck,
    BackendGateway,
    DriverCandidate,
    LastEvent,
    get_backend_gateway,
)
from .exceptions import (
    BackendError,
    BackendStatusError,
    BackendUnavailableError,
)

__all__ = [
    # Client
    "BackendAck",
    "BackendGateway",
    "DriverCandidate",
    "LastEvent",
    "get_backend_gateway",
    # Exceptions
    "BackendError",
    "BackendStatusError",
    "BackendUnavailableError",
]
