"""
Outbound emission helpers for sending WebSocket frames to connected clients.

Every frame leaves through the channel layer as a "relay.emit" message, which the
RelayConsumer turns into {"event": ..., "data": ...}. Three scopes are supported:

- one connection (by channel name)
- one room (channel-layer group per room)
- every connection (the global group each connection joins on connect)
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Optional

from channels.exceptions import ChannelFull
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

BROADCAST_GROUP = "relay.all"
EMIT_MESSAGE_TYPE = "relay.emit"

_GROUP_UNSAFE = re.compile(r"[^a-zA-Z0-9\-_.]")
_MAX_GROUP_NAME = 90


def room_group_name(room) -> str:
    """
    Channel-layer group name for a client-chosen room name.

    Group names only allow ASCII alphanumerics, hyphens, underscores and periods, so
    other characters are replaced and a digest of the original name keeps distinct
    rooms apart.
    """
    room = str(room)
    safe = _GROUP_UNSAFE.sub("_", room)
    if safe != room or len(safe) > _MAX_GROUP_NAME - 15:
        digest = hashlib.sha1(room.encode("utf-8")).hexdigest()[:8]
        safe = f"{safe[:_MAX_GROUP_NAME - 24]}.{digest}"
    return f"room.{safe}"


def build_frame(event: str, data: Any) -> dict:
    return {"type": EMIT_MESSAGE_TYPE, "event": event, "data": data}


class ChannelFabric:
    """Emits relay frames over the Django Channels layer."""

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer

    @property
    def channel_layer(self):
        if self._channel_layer is None:
            self._channel_layer = get_channel_layer()
        return self._channel_layer

    # ---------------------- Membership ----------------------

    async def add_to_broadcast(self, channel_name: str):
        await self.channel_layer.group_add(BROADCAST_GROUP, channel_name)

    async def remove_from_broadcast(self, channel_name: str):
        await self.channel_layer.group_discard(BROADCAST_GROUP, channel_name)

    async def join_room(self, channel_name: str, room: str):
        await self.channel_layer.group_add(room_group_name(room), channel_name)

    async def leave_room(self, channel_name: str, room: str):
        await self.channel_layer.group_discard(room_group_name(room), channel_name)

    # ---------------------- Emission ----------------------

    async def emit_to_connection(self, channel_name: Optional[str], event: str, data: Any) -> bool:
        """Send one frame to a single connection. Returns False if it could not be queued."""
        if not channel_name:
            return False
        try:
            await self.channel_layer.send(channel_name, build_frame(event, data))
        except ChannelFull:
            logger.warning("Dropped %s for %s: channel full", event, channel_name)
            return False
        logger.debug("WS -> %s: %s", channel_name, event)
        return True

    async def emit_to_room(self, room: str, event: str, data: Any):
        logger.debug("WS -> room %s: %s", room, event)
        await self.channel_layer.group_send(room_group_name(room), build_frame(event, data))

    async def emit_to_all(self, event: str, data: Any):
        logger.debug("WS -> all: %s", event)
        await self.channel_layer.group_send(BROADCAST_GROUP, build_frame(event, data))


_fabric: Optional[ChannelFabric] = None


def get_fabric() -> ChannelFabric:
    global _fabric
    if _fabric is None:
        _fabric = ChannelFabric()
    return _fabric
