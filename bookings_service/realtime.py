import logging
from collections import defaultdict
from typing import Any, Dict, Set

from fastapi import WebSocket

from .database import utcnow

logger = logging.getLogger(__name__)


def building_channel(building_number) -> str:
    return f"building_{building_number}"


def user_channel(owner_id) -> str:
    return f"user_{owner_id}"


class Broadcaster:
    """Push room and booking changes to connected clients."""

    async def broadcast_room_status(self, room_number: str, building_number: int, status: str) -> None:
        raise NotImplementedError

    async def broadcast_booking_update(self, owner_id: str, booking: Dict[str, Any]) -> None:
        raise NotImplementedError


class NullBroadcaster(Broadcaster):
    async def broadcast_room_status(self, room_number, building_number, status):
        return None

    async def broadcast_booking_update(self, owner_id, booking):
        return None


class WebSocketHub(Broadcaster):
    """
    Channel-based fan-out over FastAPI WebSockets.

    Clients subscribe to ``building_<n>`` for room status changes and to
    ``user_<id>`` for updates to their own bookings. A socket that fails
    to receive is dropped from every channel.
    """

    def __init__(self):
        self.channels: Dict[str, Set[WebSocket]] = defaultdict(set)

    def subscribe(self, channel: str, websocket: WebSocket) -> None:
        self.channels[channel].add(websocket)

    def unsubscribe(self, channel: str, websocket: WebSocket) -> None:
        sockets = self.channels.get(channel)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.channels[channel]

    def disconnect(self, websocket: WebSocket) -> None:
        for channel in list(self.channels):
            self.unsubscribe(channel, websocket)

    async def publish(self, channel: str, event: str, data: Dict[str, Any]) -> int:
        message = {"event": event, "data": data, "timestamp": utcnow().isoformat()}
        delivered = 0
        for websocket in list(self.channels.get(channel, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception:
                logger.warning("Dropping websocket on %s after failed send", channel)
                self.disconnect(websocket)
        return delivered

    async def broadcast_room_status(self, room_number, building_number, status):
        await self.publish(
            building_channel(building_number),
            "roomStatusChanged",
            {"building_number": building_number, "room_number": room_number, "status": status},
        )

    async def broadcast_booking_update(self, owner_id, booking):
        await self.publish(user_channel(owner_id), "bookingUpdated", {"booking": booking})
