"""
Connection lifecycle: registration, rooms and disconnect cleanup.

register_user binds a user id to the calling connection, reports presence to the
backend and replays the user's last unfinished lifecycle event so a reconnecting
client catches up. Disconnect flips presence to offline and releases the
connection's room and cancellable tasks; the backend presence report runs on its
own task so teardown never waits on the network.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from django.utils import timezone

from services.backend_gateway import BackendError, BackendGateway, get_backend_gateway

from .dispatcher import EventKind, RideDispatcher, get_dispatcher
from .notifications import ChannelFabric, get_fabric
from .registry import (
    OFFLINE,
    ONLINE,
    RoomManager,
    Session,
    SessionRegistry,
    TaskRegistry,
    get_room_manager,
    get_session_registry,
    get_task_registry,
)

logger = logging.getLogger(__name__)

PRESENCE_EVENT = "update_connection_status"

# A finished trip is never replayed on reconnect
NON_REPLAYABLE_EVENTS = {EventKind.END_TRIP.value}


def presence_envelope(user_id, user_type: Optional[str], presence: str) -> Dict[str, Any]:
    """Backend envelope reporting a user's connection status change."""
    return {
        "data": {
            "userId": user_id,
            "userType": user_type,
            "event_type": "connection_status_change",
            "event_data": json.dumps({
                "status": presence,
                "timestamp": timezone.now().isoformat(),
            }),
            "user_connection_status": presence,
            "driver_connection_status": presence if user_type == "driver" else None,
        },
    }


class ConnectionManager:
    """Connection-level operations shared by every relay consumer."""

    def __init__(
        self,
        gateway: BackendGateway,
        sessions: SessionRegistry,
        rooms: RoomManager,
        fabric: ChannelFabric,
        tasks: TaskRegistry,
        dispatcher: RideDispatcher,
    ):
        self.gateway = gateway
        self.sessions = sessions
        self.rooms = rooms
        self.fabric = fabric
        self.tasks = tasks
        self.dispatcher = dispatcher

    async def connect(self, channel_name: str):
        await self.fabric.add_to_broadcast(channel_name)
        logger.info("A user connected: %s", channel_name)

    # ---------------------- Registration ----------------------

    def start_registration(self, channel_name: str, data: Any) -> asyncio.Task:
        """Run register_user on a task that is cancelled if the connection closes first."""
        return self.tasks.spawn(
            channel_name,
            self.register_user(channel_name, data),
            cancel_on_disconnect=True,
        )

    async def register_user(self, channel_name: str, data: Any) -> Optional[Session]:
        """
        Register the calling connection as a user.

        Args:
            channel_name: The caller's channel name
            data: {"userId": ..., "notify_token": optional, "data": optional}

        Returns:
            The registered Session, or None if the payload had no user id
        """
        data = data if isinstance(data, dict) else {}
        user_id = data.get("userId") or data.get("user_id")
        if not user_id:
            logger.warning("register_user without a user id from %s", channel_name)
            await self.fabric.emit_to_connection(channel_name, "register_user", {
                "status": "error",
                "message": "User ID is required.",
            })
            return None

        logger.info("Logging user %s", user_id)

        try:
            user_type = await self.gateway.get_user_type(user_id)
        except BackendError as e:
            logger.warning("Could not resolve user type for %s: %s", user_id, e)
            user_type = None

        token = data.get("notify_token")
        if token:
            try:
                await self.gateway.store_notify_token(user_id, token)
                logger.info("Stored notify token for %s %s", user_type, user_id)
            except BackendError as e:
                logger.warning("Failed to store notify token for %s: %s", user_id, e)

        session = await self.sessions.register(user_id, channel_name, user_type)
        await self._report_presence(user_id, user_type, ONLINE)

        await self._replay_last_event(channel_name, user_id, user_type)

        current = data.get("data")
        if isinstance(current, dict) and current.get("event") == EventKind.UPDATE_DRIVER_LOCATION.value:
            await self.fabric.emit_to_connection(channel_name, "driver_location_update", {
                "driver_id": user_id,
                "latitude": current.get("latitude"),
                "longitude": current.get("longitude"),
            })

        logger.info("User %s (%s) connected", user_id, user_type)
        return session

    async def _replay_last_event(self, channel_name: str, user_id, user_type: Optional[str]):
        try:
            last_event = await self.gateway.get_last_event(user_id)
        except BackendError as e:
            logger.warning("Could not fetch last event for %s: %s", user_id, e)
            return

        if last_event is None or last_event.event_type in NON_REPLAYABLE_EVENTS:
            return

        logger.info("Re-emitting last event %s for %s %s", last_event.event_type, user_type, user_id)
        await self.dispatcher.replay(channel_name, last_event.event_type, last_event.decoded_data())

    async def _report_presence(self, user_id, user_type: Optional[str], presence: str):
        try:
            await self.gateway.forward_event(PRESENCE_EVENT, presence_envelope(user_id, user_type, presence))
        except BackendError as e:
            logger.warning("Error updating %s status for %s: %s", presence, user_id, e)

    # ---------------------- Rooms ----------------------

    async def join_room(self, channel_name: str, room: Any):
        if not room:
            return
        room = str(room)
        previous = await self.rooms.join(channel_name, room)
        if previous and previous != room:
            await self.fabric.leave_room(channel_name, previous)
        await self.fabric.join_room(channel_name, room)
        logger.info("Socket %s joined room: %s", channel_name, room)

    async def leave_room(self, channel_name: str, room: Any = None):
        left = await self.rooms.leave(channel_name, str(room) if room else None)
        if left is None:
            return
        await self.fabric.leave_room(channel_name, left)
        logger.info("Socket %s left room: %s", channel_name, left)

    # ---------------------- Disconnect ----------------------

    async def disconnect(self, channel_name: str) -> Optional[Session]:
        """
        Tear down a connection.

        Only lock-guarded registry updates happen inline; the offline presence
        report is spawned so it cannot delay teardown.

        Cancellable tasks (an unfinished registration, the accept confirm poll)
        are cancelled before the session is marked offline, so a registration
        still waiting on the backend can never bind this connection afterwards.
        """
        pending = self.tasks.pending(channel_name)
        cancelled = self.tasks.release(channel_name)
        if cancelled:
            logger.info("Cancelled %d of %d pending task(s) for %s", cancelled, pending, channel_name)

        session = await self.sessions.mark_offline(channel_name)
        await self.leave_room(channel_name)
        await self.fabric.remove_from_broadcast(channel_name)

        if session is None:
            logger.info("Unregistered connection closed: %s", channel_name)
            return None

        self.tasks.spawn(
            channel_name,
            self._report_presence(session.user_id, session.user_type, OFFLINE),
        )
        logger.info("User %s (%s) disconnected", session.user_id, session.user_type)
        return session


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager(
            gateway=get_backend_gateway(),
            sessions=get_session_registry(),
            rooms=get_room_manager(),
            fabric=get_fabric(),
            tasks=get_task_registry(),
            dispatcher=get_dispatcher(),
        )
    return _connection_manager
