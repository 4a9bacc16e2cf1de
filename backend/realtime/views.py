import logging

from asgiref.sync import async_to_sync
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from .notifications import get_fabric
from .serializers import BroadcastSerializer

logger = logging.getLogger(__name__)


@api_view(['POST'])
def broadcast_event(request):
    """
    Broadcast an event to connected WebSocket clients.

    Body: {"event": "...", "data": {...}, "room": optional}
    """
    serializer = BroadcastSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(
            {'message': 'Invalid event or data.'},
            status=status.HTTP_400_BAD_REQUEST
        )

    event = serializer.validated_data['event']
    data = serializer.validated_data['data']
    room = serializer.validated_data.get('room')

    fabric = get_fabric()
    if room:
        async_to_sync(fabric.emit_to_room)(room, event, data)
    else:
        async_to_sync(fabric.emit_to_all)(event, data)
    logger.info("Broadcasted %s to %s", event, f"room {room}" if room else "all clients")

    return Response({'message': 'Event broadcasted successfully.'})
