"""
HTTP client for the backend service.

The backend owns orders, drivers and push tokens; the relay only reaches it through
this fixed set of request/response endpoints:

    POST /api/v2/event                    generic event sink
    GET  /api/v2/order-status/{order_id}  -> {"order": {"status": ..., ...}}
    POST /api/v2/find-nearby-drivers      -> {"status": ..., "data": [driver, ...]}
    GET  /api/v2/user-type/{user_id}      -> {"userType": ...}
    POST /api/v2/store-fcm-token
    GET  /api/v2/last-event/{user_id}     -> {"event_type": ..., "event_data": ...}

Calls use a blocking requests.Session executed off the event loop, so a slow or
hanging backend only stalls the handler that issued the call.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests
from asgiref.sync import sync_to_async
from django.conf import settings

from .exceptions import BackendError, BackendStatusError, BackendUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class BackendAck:
    """Successful response to a forwarded event."""
    status_code: int
    payload: Any = None


@dataclass
class DriverCandidate:
    """A driver returned by a nearby-drivers query. Never persisted."""
    id: Any
    latitude: float
    longitude: float
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, item: Dict[str, Any]) -> "DriverCandidate":
        return cls(
            id=item.get("id"),
            latitude=float(item["latitude"]),
            longitude=float(item["longitude"]),
            raw=item,
        )


@dataclass
class LastEvent:
    """The last lifecycle event the backend recorded for a user."""
    event_type: str
    event_data: Any = None

    def decoded_data(self) -> Any:
        """Event data is stored JSON-encoded by the backend; tolerate both forms."""
        if isinstance(self.event_data, str):
            try:
                return json.loads(self.event_data)
            except ValueError:
                return self.event_data
        return self.event_data


class BackendGateway:
    """All outbound calls to the backend service."""

    EVENT_PATH = "/api/v2/event"
    ORDER_STATUS_PATH = "/api/v2/order-status/{order_id}"
    NEARBY_DRIVERS_PATH = "/api/v2/find-nearby-drivers"
    USER_TYPE_PATH = "/api/v2/user-type/{user_id}"
    STORE_TOKEN_PATH = "/api/v2/store-fcm-token"
    LAST_EVENT_PATH = "/api/v2/last-event/{user_id}"

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    # ---------------------- Transport ----------------------

    def _request(self, method: str, path: str, **kwargs) -> Tuple[int, Any]:
        """Perform one HTTP call and return (status_code, decoded body). Blocking."""
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("Backend %s %s failed: %s", method, path, e)
            raise BackendUnavailableError(f"Backend unreachable: {e}") from e

        body = self._decode(response)
        if not response.ok:
            logger.warning(
                "Backend %s %s returned %s: %s", method, path, response.status_code, body
            )
            raise BackendStatusError(response.status_code, body)
        return response.status_code, body

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text or None

    async def _call(self, method: str, path: str, **kwargs):
        return await sync_to_async(self._request, thread_sensitive=False)(method, path, **kwargs)

    # ---------------------- Endpoints ----------------------

    async def forward_event(self, event: str, fields: Optional[Dict[str, Any]] = None) -> BackendAck:
        """
        Forward an event to the backend event sink.

        Args:
            event: Event name
            fields: Envelope fields sent alongside the event name

        Returns:
            BackendAck with the decoded backend response

        Raises:
            BackendError: On network failure or non-success status
        """
        payload = {"event": event, **(fields or {})}
        status_code, body = await self._call("POST", self.EVENT_PATH, json=payload)
        logger.debug("Event forwarded to backend: %s | Response: %s", event, body)
        return BackendAck(status_code=status_code, payload=body)

    async def get_order_status(self, order_id) -> Optional[Dict[str, Any]]:
        """Return the backend's current order record, or None if it cannot be read."""
        try:
            _, body = await self._call("GET", self.ORDER_STATUS_PATH.format(order_id=order_id))
        except BackendError as e:
            logger.warning("Could not read status of order %s: %s", order_id, e)
            return None

        order = body.get("order") if isinstance(body, dict) else None
        if not isinstance(order, dict):
            return None
        return order

    async def find_nearby_drivers(self, lat: float, lon: float, radius_meters: float) -> List[DriverCandidate]:
        """
        Ask the backend for drivers around a pickup point.

        Returns an empty list on failure or when the backend reports no drivers.
        """
        try:
            _, body = await self._call(
                "POST",
                self.NEARBY_DRIVERS_PATH,
                json={"from_lat": lat, "from_long": lon, "radius": radius_meters},
            )
        except BackendError as e:
            logger.warning("Nearby-drivers query failed: %s", e)
            return []

        if not isinstance(body, dict) or body.get("status") != "success":
            logger.info("No available drivers found within radius.")
            return []

        candidates = []
        for item in body.get("data") or []:
            try:
                candidates.append(DriverCandidate.from_payload(item))
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning("Ignoring malformed driver candidate: %s", item)
        return candidates

    async def get_user_type(self, user_id) -> Optional[str]:
        """Resolve whether a user is a rider or a driver."""
        _, body = await self._call("GET", self.USER_TYPE_PATH.format(user_id=user_id))
        if isinstance(body, dict):
            return body.get("userType")
        return None

    async def store_notify_token(self, user_id, token: str) -> BackendAck:
        """Store a push-notification token for a user."""
        status_code, body = await self._call(
            "POST",
            self.STORE_TOKEN_PATH,
            json={"user_id": user_id, "notify_token": token},
        )
        return BackendAck(status_code=status_code, payload=body)

    async def get_last_event(self, user_id) -> Optional[LastEvent]:
        """Return the user's last recorded lifecycle event, or None if there is none."""
        _, body = await self._call("GET", self.LAST_EVENT_PATH.format(user_id=user_id))
        if not isinstance(body, dict) or not body.get("event_type"):
            return None
        return LastEvent(event_type=body["event_type"], event_data=body.get("event_data"))


# ---------------------- Singleton ----------------------

_gateway: Optional[BackendGateway] = None


def get_backend_gateway() -> BackendGateway:
    """Get the process-wide gateway configured from settings."""
    global _gateway
    if _gateway is None:
        _gateway = BackendGateway(
            base_url=settings.RELAY_BACKEND_BASE_URL,
            timeout=getattr(settings, "RELAY_BACKEND_TIMEOUT", None),
        )
    return _gateway
