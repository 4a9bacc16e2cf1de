"""
Realtime app relaying ride lifecycle events between WebSocket clients and the backend.

This app provides:
- The relay WebSocket consumer shared by riders and drivers
- Session, room and task registries for connected clients
- The event dispatcher implementing the ride lifecycle handlers
- Outbound emission over the channel layer
- The HTTP broadcast endpoint

Key Components:
    - registry.py: SessionRegistry, RoomManager, TaskRegistry
    - dispatcher.py: RideDispatcher and the event handler table
    - connection.py: register_user, rooms and disconnect cleanup
    - notifications.py: ChannelFabric for per-connection, room and global emission
    - consumers/: WebSocket consumers

Usage:
    from realtime.consumers import RelayConsumer
    from realtime.dispatcher import get_dispatcher
    from realtime.notifications import get_fabric
"""
