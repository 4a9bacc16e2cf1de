"""
Ride lifecycle event dispatcher.

Maps named client events onto socket emissions and backend forwards. Each handler
implements one step of the ride lifecycle:

    created --accept_order--> driver_accepted --confirm poll--> ride_confirmed
    --start_trip--> picked_up --trip_in_progress--> in_progress
    --arrived_at_destination--> delivered --end_trip--> completed

with canceled reachable from any non-terminal state. The backend enforces the
order state machine; the dispatcher only sequences its own emissions to match.

Events without a registered handler fall through to the forward-only path
(forward to the backend, echo the result to the sender), so new event types
relay without code changes.

Accept race: the accept_order pre-check (phase 1) and the forward (phase 2) are
not atomic. Two drivers accepting the same order inside that window can both pass
the pre-check; the backend is the only arbiter. A loser learns it lost when its
forward is rejected, when its confirm poll reads back another driver, or on a
later attempt that hits the "already taken" path.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from django.conf import settings

from common.utils import calculate_distance
from services.backend_gateway import BackendAck, BackendError, BackendGateway, get_backend_gateway
from services.ride_lifecycle import EVENT_TARGET_STATUS, OrderStatus, can_transition, is_terminal

from .notifications import ChannelFabric, get_fabric
from .registry import SessionRegistry, TaskRegistry, get_session_registry, get_task_registry

logger = logging.getLogger(__name__)

# Outbound synthetic event names. The misspelling is part of the client contract.
RIDE_ALREADY_TAKEN_EVENT = "ride_alreay_taken"
ACCEPT_ORDER_RESPONSE_EVENT = "accept_order_response"
ERROR_EVENT = "error"

DRIVER_FIELDS = (
    "id",
    "name",
    "image_url",
    "phone",
    "vehicle_type",
    "plate_number",
    "color",
    "agora_username",
)


class EventKind(str, Enum):
    """Known inbound event kinds, plus UNKNOWN for everything else."""
    RIDE_CREATED = "ride_created"
    ACCEPT_ORDER = "accept_order"
    ORDER_CANCELLED = "order_cancelled"
    CANCEL_ORDER = "cancel_order"
    REJECT_ORDER = "reject_order"
    DRIVER_ENROUTE_TO_RIDER = "driver_enroute_to_rider"
    DRIVER_ARRIVED = "driver_arrived"
    DRIVER_WAITING = "driver_waiting"
    START_TRIP = "start_trip"
    TRIP_IN_PROGRESS = "trip_in_progress"
    ARRIVED_AT_DESTINATION = "arrived_at_destination"
    UPDATE_DRIVER_LOCATION = "update_driver_location"
    END_TRIP = "end_trip"
    CHAT_MESSAGE = "chat_message"
    UNKNOWN = "unknown"

    @classmethod
    def from_name(cls, name) -> "EventKind":
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class InboundEvent:
    """One client event: its kind, the name it arrived under, and its payload."""
    kind: EventKind
    name: str
    data: Any

    @classmethod
    def parse(cls, name: str, data: Any) -> "InboundEvent":
        return cls(kind=EventKind.from_name(name), name=name, data=data)

    @property
    def payload(self) -> Dict[str, Any]:
        """The payload as a dict; non-object payloads read as empty."""
        return self.data if isinstance(self.data, dict) else {}


# ---------------------- Payload Helpers ----------------------

def _dig(data: Any, *path: str) -> Any:
    """Read a nested key path from dicts, None if any step is missing."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _party_id(value: Any) -> Any:
    """Order parties arrive either as bare ids or as objects with an id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _same_id(a: Any, b: Any) -> bool:
    return a is not None and b is not None and str(a) == str(b)


# ---------------------- Lifecycle Steps ----------------------

@dataclass(frozen=True)
class LifecycleStep:
    """A uniform lifecycle event: forward an envelope, ack success or error."""
    ack_message: str
    required: Tuple[Tuple[str, ...], ...]
    envelope: Callable[[Dict[str, Any]], Dict[str, Any]]


def _enroute_envelope(data):
    position = _dig(data, "driver", "position") or {}
    return {
        "rideId": _dig(data, "order", "id"),
        "driverId": _dig(data, "driver", "id"),
        "status": "on_driver",
        "position": {
            "longitude": position.get("longitude"),
            "latitude": position.get("latitude"),
        },
    }


def _arrived_envelope(data):
    return {
        "rideId": _dig(data, "order", "id"),
        "status": "arrived",
        "driverId": _dig(data, "driver", "id"),
    }


def _start_trip_envelope(data):
    return {
        "order": {
            "id": _dig(data, "order", "id"),
            "status": EVENT_TARGET_STATUS["start_trip"].value,
            "start_time": _dig(data, "order", "start_time") or data.get("start_time"),
        },
    }


def _trip_in_progress_envelope(data):
    return {
        "order_id": data.get("order_id"),
        "driver_id": data.get("driver_id"),
        "status": EVENT_TARGET_STATUS["trip_in_progress"].value,
        "latitude": data.get("latitude"),
        "longitude": data.get("longitude"),
    }


def _destination_envelope(data):
    return {
        "rideId": _dig(data, "order", "id"),
        "status": EVENT_TARGET_STATUS["arrived_at_destination"].value,
        "driverId": _dig(data, "driver", "id"),
    }


LIFECYCLE_STEPS: Dict[EventKind, LifecycleStep] = {
    EventKind.DRIVER_ENROUTE_TO_RIDER: LifecycleStep(
        "Driver Enroute.", (("order", "id"), ("driver", "id")), _enroute_envelope,
    ),
    EventKind.DRIVER_ARRIVED: LifecycleStep(
        "Driver has arrived.", (("order", "id"), ("driver", "id")), _arrived_envelope,
    ),
    EventKind.DRIVER_WAITING: LifecycleStep(
        "Driver is waiting.", (), lambda data: {},
    ),
    EventKind.START_TRIP: LifecycleStep(
        "Trip has started.", (("order", "id"),), _start_trip_envelope,
    ),
    EventKind.TRIP_IN_PROGRESS: LifecycleStep(
        "Trip in progress.", (("order_id",), ("driver_id",)), _trip_in_progress_envelope,
    ),
    EventKind.ARRIVED_AT_DESTINATION: LifecycleStep(
        "Driver has arrived at the destination.", (("order", "id"), ("driver", "id")), _destination_envelope,
    ),
}


# ---------------------- Dispatcher ----------------------

class RideDispatcher:
    """
    Event-handler table keyed by EventKind.

    Composes the backend gateway, the distance filter, the session registry (for
    party-targeted notices) and the channel fabric (for replies and broadcasts).
    Every handler failure is contained at dispatch() and reported to the sender.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        sessions: SessionRegistry,
        fabric: ChannelFabric,
        tasks: TaskRegistry,
        default_radius_meters: Optional[float] = None,
        poll_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.gateway = gateway
        self.sessions = sessions
        self.fabric = fabric
        self.tasks = tasks
        self.default_radius_meters = (
            default_radius_meters if default_radius_meters is not None
            else getattr(settings, "RELAY_DEFAULT_RADIUS_METERS", 2000)
        )
        self.poll_attempts = (
            poll_attempts if poll_attempts is not None
            else getattr(settings, "RELAY_CONFIRM_POLL_ATTEMPTS", 5)
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else getattr(settings, "RELAY_CONFIRM_POLL_INTERVAL", 1.0)
        )

        self._handlers = {
            EventKind.RIDE_CREATED: self.ride_created,
            EventKind.ACCEPT_ORDER: self.accept_order,
            EventKind.ORDER_CANCELLED: self.order_cancelled,
            EventKind.CANCEL_ORDER: self.cancel_order,
            EventKind.REJECT_ORDER: self.forward,
            EventKind.UPDATE_DRIVER_LOCATION: self.update_driver_location,
            EventKind.END_TRIP: self.end_trip,
            EventKind.CHAT_MESSAGE: self.chat_message,
            EventKind.UNKNOWN: self.forward,
        }
        for kind in LIFECYCLE_STEPS:
            self._handlers[kind] = self.lifecycle_step

    def handles(self, name: str) -> bool:
        """Whether name has a registered handler (as opposed to the forward-only path)."""
        return EventKind.from_name(name) is not EventKind.UNKNOWN

    async def dispatch(self, channel_name: str, name: str, data: Any):
        """Route one inbound event to its handler. Never raises."""
        event = InboundEvent.parse(name, data)
        handler = self._handlers[event.kind]
        if event.kind is EventKind.UNKNOWN:
            logger.info("Dynamic event received: %s from %s", name, channel_name)
        else:
            logger.info("Predefined event received: %s from %s", name, channel_name)

        try:
            await handler(channel_name, event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error handling %s for %s", name, channel_name)
            await self._reply(channel_name, ERROR_EVENT, {
                "status": "error",
                "message": f"Failed to process {name}.",
            })

    async def replay(self, channel_name: str, name: str, data: Any) -> bool:
        """Re-run a registered handler with a stored payload. Unknown events are not replayed."""
        if not self.handles(name):
            logger.info("Not replaying %s for %s: no handler registered", name, channel_name)
            return False
        logger.info("Replaying last event %s for %s", name, channel_name)
        await self.dispatch(channel_name, name, data)
        return True

    # ---------------------- Shared Helpers ----------------------

    async def _reply(self, channel_name: str, event: str, payload: Dict[str, Any]):
        await self.fabric.emit_to_connection(channel_name, event, payload)

    async def _forward_and_ack(
        self,
        channel_name: str,
        name: str,
        fields: Dict[str, Any],
        success: Optional[Dict[str, Any]] = None,
        failure_message: Optional[str] = None,
    ) -> Optional[BackendAck]:
        """
        Forward an event to the backend and acknowledge the sender.

        On failure the sender gets an error ack and None is returned. Failed
        forwards are never retried.
        """
        try:
            ack = await self.gateway.forward_event(name, fields)
        except BackendError as e:
            logger.warning("Error forwarding event to backend: %s | Error: %s", name, e.detail)
            await self._reply(channel_name, name, {
                "status": "error",
                "message": failure_message or f"Failed to handle {name}.",
                "error": e.detail,
            })
            return None

        await self._reply(channel_name, name, success or {
            "status": "success",
            "message": f"{name} handled successfully.",
            "data": ack.payload,
        })
        return ack

    async def _forward_quietly(self, name: str, fields: Dict[str, Any]) -> Optional[BackendAck]:
        """Forward a confirmation the client has already been told about; failures are only logged."""
        try:
            return await self.gateway.forward_event(name, fields)
        except BackendError as e:
            logger.warning("Error forwarding %s confirmation to backend: %s", name, e.detail)
            return None

    async def _notify_user(self, user_id, event: str, payload: Dict[str, Any]) -> bool:
        """Emit to a user's connection if they are online. Offline users are skipped, not queued."""
        channel_name = await self.sessions.online_channel(user_id)
        if channel_name is None:
            logger.info("User %s is not connected; dropping %s", user_id, event)
            return False
        return await self.fabric.emit_to_connection(channel_name, event, payload)

    def _radius_meters(self, value) -> float:
        try:
            radius = float(value)
        except (TypeError, ValueError):
            return float(self.default_radius_meters)
        return radius if radius > 0 else float(self.default_radius_meters)

    # ---------------------- Forward-only ----------------------

    async def forward(self, channel_name: str, event: InboundEvent):
        """Generic path: forward to the backend and echo the result to the sender."""
        await self._forward_and_ack(channel_name, event.name, {"data": event.data})

    # ---------------------- Ride Request ----------------------

    async def ride_created(self, channel_name: str, event: InboundEvent):
        """
        Offer a new ride to every nearby driver within radius.

        One ride_created broadcast per admitted driver. Drivers outside the radius
        are skipped and logged. The event is forwarded whether or not any driver
        was admitted.
        """
        data = event.payload
        order = data.get("order")
        try:
            from_lat = float(order["from_lat"])
            from_long = float(order["from_long"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Invalid data received for ride_created event: %s", data)
            await self._reply(channel_name, event.name, {
                "status": "error",
                "message": "Invalid data received for ride_created event.",
            })
            return

        radius = self._radius_meters(data.get("radius"))
        radius_km = radius / 1000
        logger.info(
            "Requesting nearby drivers: from_lat=%s, from_long=%s, radius=%s",
            from_lat, from_long, radius,
        )
        candidates = await self.gateway.find_nearby_drivers(from_lat, from_long, radius)

        emitted = 0
        for driver in candidates:
            distance = calculate_distance(from_lat, from_long, driver.latitude, driver.longitude)
            if distance > radius_km:
                logger.info(
                    "Skipped driver %s (%.2f km, exceeds limit of %.2f km)",
                    driver.id, distance, radius_km,
                )
                continue

            await self.fabric.emit_to_all(event.name, {
                "status": "success",
                "data": {
                    "order": order,
                    "ride_type": data.get("ride_type"),
                    "user": data.get("user"),
                    "driver": driver.raw,
                },
            })
            emitted += 1
            logger.info("Ride event emitted for driver %s (%.2f km)", driver.id, distance)

        logger.info("Ride %s: notified %d of %d nearby drivers", order.get("id"), emitted, len(candidates))
        await self._forward_and_ack(channel_name, event.name, {"data": data})

    # ---------------------- Accept Handshake ----------------------

    async def accept_order(self, channel_name: str, event: InboundEvent):
        """
        Check, commit, then confirm a driver's acceptance.

        1. Check: an order already driver_accepted is rejected with ride_alreay_taken.
        2. Commit: forward accept_order, re-read the order for its tokens, emit
           ride_accepted to the driver and forward it as a confirmation.
        3. Confirm: on a separate task, poll until the backend reads back
           driver_accepted, then emit and forward confirm_ride.
        """
        data = event.payload
        order = data.get("order") if isinstance(data.get("order"), dict) else {}
        driver = data.get("driver") if isinstance(data.get("driver"), dict) else {}
        order_id = order.get("id")

        if not order_id or driver.get("id") is None:
            logger.warning("Invalid order data received for accept_order: %s", data)
            await self._reply(channel_name, ACCEPT_ORDER_RESPONSE_EVENT, {
                "status": "error",
                "message": "Invalid order data.",
            })
            return

        # Phase 1: best-effort pre-check; the backend arbitrates concurrent accepts
        current = await self.gateway.get_order_status(order_id)
        status = (current or {}).get("status")
        if not status:
            await self._reply(channel_name, ACCEPT_ORDER_RESPONSE_EVENT, {
                "status": "error",
                "message": "Invalid order status received.",
            })
            return

        if status == OrderStatus.DRIVER_ACCEPTED:
            logger.info("Ride %s already accepted by another driver.", order_id)
            await self._reply(channel_name, RIDE_ALREADY_TAKEN_EVENT, {
                "status": "error",
                "message": "This ride has already been accepted by another driver.",
                "order_id": order_id,
            })
            return

        if not can_transition(status, OrderStatus.DRIVER_ACCEPTED):
            logger.warning("Order %s is %s; forwarding accept for the backend to arbitrate", order_id, status)

        # Phase 2: commit
        ack = await self._forward_and_ack(channel_name, event.name, {"data": data})
        if ack is None:
            await self._reply(channel_name, "ride_accepted", {
                "status": "error",
                "message": "Failed to accept the ride. Please try again.",
            })
            return

        updated = await self.gateway.get_order_status(order_id) or {}
        driver_token = updated.get("agora_token_driver")
        chat_token = order.get("agora_token_chat") or updated.get("agora_token_chat")

        accepted = {
            "order": {
                "id": order_id,
                "status": OrderStatus.DRIVER_ACCEPTED.value,
                "driver": {key: driver.get(key) for key in DRIVER_FIELDS},
                "agora_token_chat": chat_token,
            },
        }
        await self._reply(channel_name, "ride_accepted", {
            "status": "success",
            "message": "Ride accepted successfully.",
            "data": accepted,
        })
        await self._forward_quietly("ride_accepted", {"data": accepted})

        # Phase 3: confirm without holding up this connection's other events
        self.tasks.spawn(
            channel_name,
            self._confirm_acceptance(channel_name, order_id, driver.get("id"), driver_token),
            cancel_on_disconnect=True,
        )

    async def _poll_order_status(self, order_id, expected: OrderStatus) -> Optional[Dict[str, Any]]:
        """Read the order up to poll_attempts times until it reports expected."""
        for attempt in range(1, self.poll_attempts + 1):
            order = await self.gateway.get_order_status(order_id)
            if order and order.get("status") == expected:
                return order
            if order and is_terminal(order.get("status")):
                logger.info("Order %s became %s while awaiting %s", order_id, order.get("status"), expected.value)
                return None
            logger.debug("Order %s not yet %s (attempt %d/%d)", order_id, expected.value, attempt, self.poll_attempts)
            if attempt < self.poll_attempts:
                await asyncio.sleep(self.poll_interval)
        return None

    async def _confirm_acceptance(self, channel_name: str, order_id, driver_id, driver_token):
        expected = EVENT_TARGET_STATUS["accept_order"]
        observed = await self._poll_order_status(order_id, expected)
        if observed is None:
            # The client may now be out of sync with the backend; nothing else to do
            logger.error("Ride status not confirmed for order %s; abandoning confirmation.", order_id)
            return

        assigned = _party_id(observed.get("driver"))
        if assigned is not None and not _same_id(assigned, driver_id):
            logger.warning(
                "Order %s was accepted by driver %s, not %s; reporting as taken",
                order_id, assigned, driver_id,
            )
            await self._reply(channel_name, RIDE_ALREADY_TAKEN_EVENT, {
                "status": "error",
                "message": "This ride has already been accepted by another driver.",
                "order_id": order_id,
            })
            return

        confirmed = await self.gateway.get_order_status(order_id) or observed
        confirm_data = {
            "order": {
                "id": confirmed.get("id", order_id),
                "status": confirmed.get("status", expected.value),
                "confirmed_at": confirmed.get("confirmed_at"),
                "agora_token_driver": driver_token,
            },
            "driver": {
                "id": _party_id(confirmed.get("driver")) or driver_id,
            },
        }
        await self._reply(channel_name, "confirm_ride", {
            "status": "success",
            "message": "Ride has been confirmed.",
            "data": confirm_data,
        })
        logger.info("Emitted confirm_ride for order %s to %s", order_id, channel_name)
        await self._forward_quietly("confirm_ride", {"data": confirm_data})

    # ---------------------- Cancellation ----------------------

    async def _resolve_counterparty(self, order_id, user_id, data: Dict[str, Any]) -> Tuple[Optional[str], Any]:
        """
        Work out who is cancelling and who must be told.

        Returns (cancelled_by, other_party_id). Parties come from the backend order,
        falling back to ids in the payload; the canceller's role falls back to the
        session registry.
        """
        order = await self.gateway.get_order_status(order_id) or {}
        rider_id = _party_id(order.get("customer")) or data.get("rider_id")
        driver_id = _party_id(order.get("driver")) or data.get("driver_id")

        if _same_id(rider_id, user_id):
            return "rider", driver_id
        if _same_id(driver_id, user_id):
            return "driver", rider_id

        session = await self.sessions.lookup(user_id)
        user_type = session.user_type if session else None
        if user_type == "rider":
            return "rider", driver_id
        if user_type == "driver":
            return "driver", rider_id

        logger.warning("User %s does not match customer or driver for order %s", user_id, order_id)
        return user_type, None

    async def order_cancelled(self, channel_name: str, event: InboundEvent):
        """Tell the other party (if online) and always forward the cancellation."""
        data = event.payload
        order_id = data.get("order_id")
        user_id = data.get("user_id")
        if not order_id or not user_id:
            await self._reply(channel_name, event.name, {
                "status": "error",
                "message": "Invalid request. Missing order_id or user_id.",
            })
            return

        reason = data.get("reason") or "No reason provided"
        cancelled_by, other_party = await self._resolve_counterparty(order_id, user_id, data)
        logger.info("%s %s is cancelling ride order %s", cancelled_by, user_id, order_id)

        if other_party is not None:
            await self._notify_user(other_party, "ride_cancelled", {
                "status": "cancelled",
                "order_id": order_id,
                "cancelled_by": cancelled_by,
                "reason": reason,
            })

        await self._forward_and_ack(channel_name, "ride_cancelled", {
            "data": {
                "order_id": order_id,
                "cancelled_by": cancelled_by,
                "reason": reason,
            },
        })

    async def cancel_order(self, channel_name: str, event: InboundEvent):
        data = event.payload
        order = data.get("order") if isinstance(data.get("order"), dict) else {}
        order_id = order.get("id") or data.get("order_id")
        if not order_id:
            await self._reply(channel_name, event.name, {
                "status": "error",
                "message": "Invalid request. Missing order id.",
            })
            return

        user_id = data.get("user_id")
        cancelled_by = None
        if user_id:
            cancelled_by, other_party = await self._resolve_counterparty(order_id, user_id, data)
            if other_party is not None:
                await self._notify_user(other_party, event.name, {
                    "status": "canceled",
                    "message": "Ride Canceled.",
                    "order_id": order_id,
                    "cancelled_by": cancelled_by,
                    "data": data,
                })
        else:
            logger.info("cancel_order for order %s has no user_id; other party not notified", order_id)

        await self._forward_and_ack(
            channel_name,
            event.name,
            {
                "data": data,
                "cancelled_by": cancelled_by,
                "order": {
                    "id": order_id,
                    "status": EVENT_TARGET_STATUS["cancel_order"].value,
                    "customer_note": order.get("customer_note"),
                    "driver_note": order.get("driver_note"),
                },
            },
            success={"status": "canceled", "message": "Ride Canceled.", "data": data},
        )

    # ---------------------- Trip Progress ----------------------

    async def lifecycle_step(self, channel_name: str, event: InboundEvent):
        """Forward a step-specific envelope; ack success, or ack the error instead of raising."""
        step = LIFECYCLE_STEPS[event.kind]
        data = event.payload
        missing = [".".join(path) for path in step.required if _dig(data, *path) in (None, "")]
        if missing:
            await self._reply(channel_name, event.name, {
                "status": "error",
                "message": f"Missing required field(s): {', '.join(missing)}.",
            })
            return

        await self._forward_and_ack(
            channel_name,
            event.name,
            {"data": data, **step.envelope(data)},
            success={"status": "success", "message": step.ack_message, "data": data},
        )

    async def update_driver_location(self, channel_name: str, event: InboundEvent):
        """Acknowledge only after the backend accepted the location write."""
        data = event.payload
        # Clients send the fix either flat or nested under "data"
        location = data.get("data") if isinstance(data.get("data"), dict) else data
        driver_id = location.get("driver_id")
        if not driver_id:
            await self._reply(channel_name, event.name, {
                "status": "error",
                "message": "Driver ID is missing.",
            })
            return

        latitude = location.get("latitude", location.get("lat"))
        longitude = location.get("longitude", location.get("long"))
        await self._forward_and_ack(
            channel_name,
            event.name,
            {
                "data": data,
                "order_id": location.get("order_id"),
                "driver_id": driver_id,
                "latitude": latitude,
                "longitude": longitude,
            },
            success={"status": "success", "message": "Driver Location updated.", "data": data},
            failure_message="Failed to update driver location.",
        )

    async def end_trip(self, channel_name: str, event: InboundEvent):
        """
        Close out a trip.

        Forwards the event, sends the sender a provisional ack straight away, then
        posts the completion record and notifies driver and rider independently.
        """
        data = event.payload
        if not data.get("order_id") or not data.get("driver_id") or not data.get("rider_id"):
            await self._reply(channel_name, ERROR_EVENT, {
                "status": "error",
                "message": "Invalid request. Missing order_id, driver_id, or rider_id.",
            })
            return

        await self._forward_and_ack(channel_name, event.name, {"data": data})
        await self._reply(channel_name, event.name, {
            "status": "success",
            "message": "Trip has ended (pre-backend processing).",
            "data": data,
        })

        completion = {
            "order_id": data.get("order_id"),
            "driver_id": data.get("driver_id"),
            "rider_id": data.get("rider_id"),
            "status": EVENT_TARGET_STATUS["end_trip"].value,
            "end_time": data.get("end_time"),
            "payment_mode": data.get("payment_mode"),
            "amount": data.get("amount"),
        }
        try:
            ack = await self.gateway.forward_event(event.name, completion)
        except BackendError as e:
            logger.warning("Error in end_trip for order %s: %s", data.get("order_id"), e.detail)
            await self._reply(channel_name, ERROR_EVENT, {
                "status": "error",
                "message": "Failed to end trip",
                "error": e.detail,
            })
            return

        notice = {"status": "success", "message": "Trip ended successfully.", "data": ack.payload}
        for role, user_id in (("Driver", data["driver_id"]), ("Rider", data["rider_id"])):
            if not await self._notify_user(user_id, event.name, notice):
                logger.info("%s %s is not connected; end_trip notice not delivered.", role, user_id)

        logger.info("Trip status updated for order %s", data.get("order_id"))

    # ---------------------- Chat ----------------------

    async def chat_message(self, channel_name: str, event: InboundEvent):
        data = event.payload
        room = data.get("room")
        payload = {"status": "success", "message": "New chat message.", "data": data}
        if room:
            await self.fabric.emit_to_room(room, event.name, payload)
            logger.info("Broadcasted chat_message to room %s", room)
        else:
            await self.fabric.emit_to_all(event.name, payload)
            logger.info("Broadcasted chat_message to all clients")

        await self._forward_and_ack(channel_name, event.name, {"data": data})


# ---------------------- Singleton ----------------------

_dispatcher: Optional[RideDispatcher] = None


def get_dispatcher() -> RideDispatcher:
    """Get the process-wide dispatcher wired to the shared registries."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = RideDispatcher(
            gateway=get_backend_gateway(),
            sessions=get_session_registry(),
            fabric=get_fabric(),
            tasks=get_task_registry(),
        )
    return _dispatcher
