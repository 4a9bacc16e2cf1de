"""
Relay WebSocket Consumer

The single endpoint riders and drivers connect to.

Connection-level events (handled by the ConnectionManager):
    - register_user: Bind this connection to a user id
    - join_room: Join a named room (one room per connection)
    - leave_room: Leave the current room

Every other event goes to the RideDispatcher. Events run on their own tasks, so a
slow backend call in one handler never holds up the next frame on this connection.
"""

import logging
from typing import Any

from ..connection import get_connection_manager
from ..registry import get_task_registry
from .base import BaseConsumer

logger = logging.getLogger(__name__)


class RelayConsumer(BaseConsumer):
    """WebSocket consumer relaying ride lifecycle events."""

    async def on_connect(self):
        self.connections = get_connection_manager()
        self.tasks = get_task_registry()
        await self.connections.connect(self.channel_name)

    async def on_disconnect(self, close_code):
        logger.info("Connection %s closed (code=%s)", self.channel_name, close_code)
        await self.connections.disconnect(self.channel_name)

    async def handle_event(self, event: str, data: Any):
        if event == "join_room":
            await self.connections.join_room(self.channel_name, data)
            return
        if event == "leave_room":
            await self.connections.leave_room(self.channel_name, data)
            return

        if event == "register_user":
            self.connections.start_registration(self.channel_name, data)
            return

        self.tasks.spawn(
            self.channel_name,
            self.connections.dispatcher.dispatch(self.channel_name, event, data),
        )
