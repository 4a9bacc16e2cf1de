"""
ASGI config for the relay.

HTTP goes to Django (index, health, broadcast); WebSocket connections go to the
realtime routing. Clients are authenticated upstream, so no auth middleware wraps
the WebSocket stack.
"""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "relay_backend.settings")

# Initialise Django before importing anything that touches models or settings
django_asgi_app = get_asgi_application()

from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402

from realtime.routing import websocket_urlpatterns  # noqa: E402

application = ProtocolTypeRouter({
    "http": django_asgi_app,
    "websocket": URLRouter(websocket_urlpatterns),
})
