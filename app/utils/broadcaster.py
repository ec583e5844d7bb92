"""
Publish/subscribe fan-out to connected websocket clients (lane kiosks, dashboards).

Route handlers are plain `def` functions running in the threadpool, so
broadcast() hands the actual sends to the event loop the sockets live on.
"""
import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

ROOM_STATUS_CHANGED = "ROOM_STATUS_CHANGED"
INVENTORY_UPDATED = "INVENTORY_UPDATED"
ROOM_ASSIGNED = "ROOM_ASSIGNED"
ROOM_RELEASED = "ROOM_RELEASED"
SESSION_UPDATED = "SESSION_UPDATED"
SELECTION_PROPOSED = "SELECTION_PROPOSED"
SELECTION_LOCKED = "SELECTION_LOCKED"
SELECTION_ACKNOWLEDGED = "SELECTION_ACKNOWLEDGED"
WAITLIST_CREATED = "WAITLIST_CREATED"
WAITLIST_UPDATED = "WAITLIST_UPDATED"
ASSIGNMENT_CREATED = "ASSIGNMENT_CREATED"
ASSIGNMENT_FAILED = "ASSIGNMENT_FAILED"
CHECKOUT_REQUESTED = "CHECKOUT_REQUESTED"
CHECKOUT_CLAIMED = "CHECKOUT_CLAIMED"
CHECKOUT_UPDATED = "CHECKOUT_UPDATED"
CHECKOUT_COMPLETED = "CHECKOUT_COMPLETED"
UPGRADE_HOLD_AVAILABLE = "UPGRADE_HOLD_AVAILABLE"
UPGRADE_OFFER_EXPIRED = "UPGRADE_OFFER_EXPIRED"

EVENT_TYPES = {
    ROOM_STATUS_CHANGED, INVENTORY_UPDATED, ROOM_ASSIGNED, ROOM_RELEASED,
    SESSION_UPDATED, SELECTION_PROPOSED, SELECTION_LOCKED, SELECTION_ACKNOWLEDGED,
    WAITLIST_CREATED, WAITLIST_UPDATED, ASSIGNMENT_CREATED, ASSIGNMENT_FAILED,
    CHECKOUT_REQUESTED, CHECKOUT_CLAIMED, CHECKOUT_UPDATED, CHECKOUT_COMPLETED,
    UPGRADE_HOLD_AVAILABLE, UPGRADE_OFFER_EXPIRED,
}


def build_event(event_type: str, payload: dict) -> dict:
    return {
        "type": event_type,
        "payload": jsonable_encoder(payload),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class Broadcaster:
    def __init__(self):
        self._clients = {}
        self._lock = threading.Lock()
        self._loop = None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket, lane_id: Optional[str] = None, events: Optional[Iterable[str]] = None) -> str:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        client_id = uuid.uuid4().hex
        with self._lock:
            self._clients[client_id] = {
                "socket": websocket,
                "lane_id": lane_id,
                "events": set(events) if events else None,
            }
        logger.info("Websocket client %s connected (lane=%s)", client_id, lane_id)
        return client_id

    def disconnect(self, client_id: str):
        with self._lock:
            removed = self._clients.pop(client_id, None)
        if removed:
            logger.info("Websocket client %s removed", client_id)

    def subscribe(self, client_id: str, events: Optional[Iterable[str]]):
        """Replace a client's event filter; an empty list means every event."""
        with self._lock:
            client = self._clients.get(client_id)
            if client:
                client["events"] = set(events) if events else None

    def broadcast(self, event_type: str, payload: dict):
        """Send to every client subscribed to event_type."""
        self._dispatch(build_event(event_type, payload), lane_id=None)

    def broadcast_to_lane(self, event_type: str, payload: dict, lane_id: str):
        """Send only to clients registered for lane_id."""
        self._dispatch(build_event(event_type, payload), lane_id=lane_id)

    def _targets(self, event_type: str, lane_id: Optional[str]):
        with self._lock:
            items = list(self._clients.items())
        return [
            (client_id, client)
            for client_id, client in items
            if (lane_id is None or client["lane_id"] == lane_id)
            and (client["events"] is None or event_type in client["events"])
        ]

    def _dispatch(self, message: dict, lane_id: Optional[str]):
        targets = self._targets(message["type"], lane_id)
        loop = self._loop
        if not targets or loop is None or loop.is_closed():
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        coro = self._send_all(message, targets)
        try:
            if running is loop:
                loop.create_task(coro)
            else:
                asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError as e:
            coro.close()
            logger.warning(f"Broadcast of {message['type']} dropped: {e}")

    async def _send_all(self, message: dict, targets):
        for client_id, client in targets:
            try:
                await client["socket"].send_json(message)
            except Exception as e:
                logger.warning(f"Dropping websocket client {client_id}: {e}")
                self.disconnect(client_id)


broadcaster = Broadcaster()


def publish(events):
    """
    Emit (event_type, payload[, lane_id]) tuples collected during a
    transaction. Call only after commit.
    """
    for event in events:
        if len(event) == 3:
            broadcaster.broadcast_to_lane(event[0], event[1], event[2])
        else:
            broadcaster.broadcast(event[0], event[1])
