"""
Websocket endpoint for lane kiosks and staff dashboards.

Clients may pass lane_id to receive lane-scoped events and an events filter
(comma separated). A {"type": "subscribe", "events": [...]} message replaces
the filter at any time.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from app.utils.broadcaster import EVENT_TYPES, broadcaster

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Websocket"])


def _parse_events(raw) -> Optional[list]:
    if not raw:
        return None
    names = raw.split(",") if isinstance(raw, str) else list(raw)
    return [name.strip() for name in names if name and name.strip() in EVENT_TYPES] or None


@router.websocket("/ws")
async def websocket_events(
    websocket: WebSocket,
    lane_id: Optional[str] = Query(None),
    events: Optional[str] = Query(None),
):
    client_id = await broadcaster.connect(websocket, lane_id, _parse_events(events))

    try:
        await websocket.send_json({
            "type": "connection",
            "client_id": client_id,
            "lane_id": lane_id,
        })

        while True:
            message = await websocket.receive_json()
            kind = message.get("type") if isinstance(message, dict) else None

            if kind == "subscribe":
                subscribed = _parse_events(message.get("events"))
                broadcaster.subscribe(client_id, subscribed)
                await websocket.send_json({"type": "subscribed", "events": subscribed or sorted(EVENT_TYPES)})
            elif kind == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                logger.debug(f"Ignoring websocket message from {client_id}: {message}")

    except WebSocketDisconnect:
        logger.info(f"Websocket client {client_id} disconnected")
    except ValueError as e:
        logger.warning(f"Websocket client {client_id} sent invalid JSON: {e}")
    finally:
        broadcaster.disconnect(client_id)
