from datetime import datetime

import pytest

from app.routers.ws import _parse_events
from app.utils import broadcaster as events
from app.utils.broadcaster import broadcaster, build_event, publish


def test_build_event_encodes_payload():
    event = build_event(events.ROOM_ASSIGNED, {"room_id": 3, "at": datetime(2024, 1, 8, 21, 0)})

    assert event["type"] == "ROOM_ASSIGNED"
    assert event["payload"] == {"room_id": 3, "at": "2024-01-08T21:00:00"}
    assert event["timestamp"]


def test_publish_routes_lane_events(monkeypatch):
    sent = []
    monkeypatch.setattr(broadcaster, "broadcast", lambda t, p: sent.append((t, None)))
    monkeypatch.setattr(broadcaster, "broadcast_to_lane", lambda t, p, lane: sent.append((t, lane)))

    publish([
        (events.INVENTORY_UPDATED, {}),
        (events.SESSION_UPDATED, {}, "L1"),
    ])

    assert sent == [("INVENTORY_UPDATED", None), ("SESSION_UPDATED", "L1")]


def test_publish_without_clients_is_a_no_op():
    publish([(events.INVENTORY_UPDATED, {"reason": "TEST"})])


def test_parse_events_drops_unknown_names():
    assert _parse_events("SESSION_UPDATED, BOGUS") == ["SESSION_UPDATED"]
    assert _parse_events("BOGUS") is None
    assert _parse_events(None) is None


class TestWebsocket:
    def test_lane_subscription(self, anon_client):
        with anon_client.websocket_connect("/ws?lane_id=L1") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connection"
            assert hello["lane_id"] == "L1"

            ws.send_json({"type": "subscribe", "events": ["SESSION_UPDATED"]})
            assert ws.receive_json() == {"type": "subscribed", "events": ["SESSION_UPDATED"]}

            broadcaster.broadcast_to_lane(events.SESSION_UPDATED, {"session_id": 60}, "L1")
            message = ws.receive_json()
            assert message["type"] == "SESSION_UPDATED"
            assert message["payload"] == {"session_id": 60}

            # filtered out by type, then by lane
            broadcaster.broadcast(events.ROOM_STATUS_CHANGED, {"room_id": 3})
            broadcaster.broadcast_to_lane(events.SESSION_UPDATED, {"session_id": 61}, "L2")

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

        assert broadcaster.client_count == 0

    @pytest.mark.parametrize("query", ["", "?events=CHECKOUT_REQUESTED"])
    def test_dashboard_receives_global_events(self, anon_client, query):
        with anon_client.websocket_connect(f"/ws{query}") as ws:
            ws.receive_json()

            broadcaster.broadcast(events.CHECKOUT_REQUESTED, {"request_id": 1})
            assert ws.receive_json()["type"] == "CHECKOUT_REQUESTED"
