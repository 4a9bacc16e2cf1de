"""Base WebSocket consumer with shared functionality for all consumers."""

import logging
from typing import Any

from channels.generic.websocket import AsyncJsonWebsocketConsumer

logger = logging.getLogger(__name__)


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Base consumer speaking {"event": ..., "data": ...} frames in both directions.

    Subclasses should override:
        - on_connect(): custom connect logic
        - on_disconnect(close_code): custom cleanup
        - handle_event(event, data): handle incoming events
    """

    async def connect(self):
        await self.accept()
        await self.on_connect()

    async def on_connect(self):
        """Override in subclass for custom connect logic."""
        pass

    async def disconnect(self, close_code):
        try:
            await self.on_disconnect(close_code)
        except Exception:
            logger.exception("Error during disconnect for %s", self.channel_name)

    async def on_disconnect(self, close_code):
        """Override in subclass for custom disconnect logic."""
        pass

    async def receive(self, text_data=None, bytes_data=None, **kwargs):
        # A malformed frame is reported to the client instead of closing the socket
        try:
            content = await self.decode_json(text_data) if text_data else None
        except ValueError:
            await self.send_error("Malformed frame")
            return
        await self.receive_json(content, **kwargs)

    async def receive_json(self, content, **kwargs):
        """Route incoming events to the subclass handler."""
        event = content.get("event") if isinstance(content, dict) else None
        if not event or not isinstance(event, str):
            await self.send_error("Event name is required")
            return

        try:
            await self.handle_event(event, content.get("data"))
        except Exception:
            logger.exception("Error handling event %s", event)
            await self.send_error(f"Error processing {event}")

    async def handle_event(self, event: str, data: Any):
        """Override in subclass to handle specific events."""
        await self.send_error(f"Unknown event: {event}")

    # ---------------------- Response Helpers ----------------------

    async def send_event(self, event: str, data: Any):
        await self.send_json({"event": event, "data": data})

    async def send_error(self, message: str):
        """Send an error frame to the client."""
        await self.send_event("error", {
            "status": "error",
            "message": message,
        })

    # ---------------------- Channel Layer Handlers ----------------------
    # These handle messages sent through the channel layer by server-side code

    async def relay_emit(self, message):
        """Frames emitted through the ChannelFabric."""
        await self.send_event(message["event"], message.get("data"))
