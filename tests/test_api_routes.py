"""
Tests for API Routes and the signaling websocket.
Uses FastAPI TestClient against an app built around a mocked overlay.
"""

# pylint: disable=redefined-outer-name

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from relaynode.config.settings import Settings
from relaynode.core.messages import RoomUpdateEnvelope
from relaynode.main import create_app


async def _no_events():
    return
    yield  # pylint: disable=unreachable


@pytest.fixture
def mock_overlay():
    overlay = MagicMock()
    overlay.start = AsyncMock()
    overlay.subscribe = AsyncMock()
    overlay.close = AsyncMock()
    overlay.publish = AsyncMock(return_value="msg-1")
    overlay.events = _no_events
    return overlay


@pytest.fixture
def app(mock_overlay):
    return create_app(Settings(node_id="node-test", overlay_topic="room-updates"), overlay=mock_overlay)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def join(room_id: str, user_id: str) -> dict:
    return {"type": "Join", "payload": {"user_id": user_id, "user_color": "#00ff00", "room_id": room_id}}


def room_list(ws) -> list:
    """Round-trips a GetRooms, which also proves earlier frames were handled."""
    ws.send_json({"type": "GetRooms", "payload": {}})
    reply = ws.receive_json()
    assert reply["type"] == "RoomList"
    return reply["payload"]["rooms"]


def test_health_check(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "online"
    assert data["running"] is True
    assert data["node_id"] == "node-test"


def test_rooms_empty(client):
    assert client.get("/api/rooms").json() == []
    assert client.get("/api/rooms/snapshots").json() == []


def test_doc1_scenario_over_websockets(client, mock_overlay):
    """Two clients share a room, one writes, the other leaves."""
    with client.websocket_connect("/signal") as b:
        with client.websocket_connect("/signal") as a:
            a.send_json(join("doc1", "alice"))
            assert room_list(a) == [{"room_id": "doc1", "peer_count": 1, "encrypted": False}]

            b.send_json(join("doc1", "bob"))
            notice = a.receive_json()
            assert notice["type"] == "Join"
            assert notice["payload"]["user_id"] == "bob"

            b.send_json({"type": "SyncUpdate", "payload": {"update": [1, 2, 3], "room_id": "doc1"}})
            update = a.receive_json()
            assert update["type"] == "SyncUpdate"
            assert update["payload"]["update"] == [1, 2, 3]

            # Nothing queued for B besides its own RoomList answer
            assert room_list(b)[0]["peer_count"] == 2

        # A closed, its membership is gone before the session exit returns
        assert room_list(b) == [{"room_id": "doc1", "peer_count": 1, "encrypted": False}]

    mock_overlay.publish.assert_awaited_once()
    topic, data = mock_overlay.publish.call_args[0]
    assert topic == "room-updates"
    assert RoomUpdateEnvelope.model_validate_json(data).room.document_state == b"\x01\x02\x03"

    snapshots = client.get("/api/rooms/snapshots").json()
    assert snapshots[0]["room_id"] == "doc1"
    assert snapshots[0]["room"]["document_state"] == [1, 2, 3]


def test_offer_relay_over_websockets(client):
    with client.websocket_connect("/signal") as alice, client.websocket_connect("/signal") as bob:
        alice.send_json({"type": "Register", "payload": {"peer_id": "alice"}})
        bob.send_json({"type": "Register", "payload": {"peer_id": "bob"}})
        room_list(alice)
        room_list(bob)

        sdp = "v=0\r\no=- 1 2 IN IP4 127.0.0.1\r\n"
        alice.send_json({"type": "Offer", "payload": {"sdp": sdp, "from_peer": "mallory", "to_peer": "bob"}})

        assert bob.receive_json() == {
            "type": "Offer",
            "payload": {"sdp": sdp, "from_peer": "alice", "to_peer": "bob"},
        }


def test_malformed_frame_keeps_connection(client):
    with client.websocket_connect("/signal") as ws:
        ws.send_text("this is not json")
        ws.send_json({"type": "Nope", "payload": {}})

        assert room_list(ws) == []


def test_stats_count_connections(client):
    with client.websocket_connect("/signal") as ws:
        room_list(ws)
        stats = client.get("/api/stats").json()

    assert stats["websocket"]["total_connections"] == 1
    assert stats["websocket"]["messages_received"] == 1
    assert stats["overlay"]["connected_peers"] == 0


def test_lifespan_stops_node(app, mock_overlay):
    with TestClient(app):
        assert app.state.node.is_running()

    assert not app.state.node.is_running()
    mock_overlay.close.assert_awaited_once()


def test_closed_sessions_leave_nothing_behind(client):
    """Every session exit tears its client down, however the endpoint ends."""
    for i in range(20):
        with client.websocket_connect("/signal") as ws:
            ws.send_json(join("doc1", f"user-{i}"))
            assert room_list(ws)[0]["peer_count"] == 1

    stats = client.get("/api/stats").json()
    assert stats["websocket"]["active_connections"] == 0
    assert stats["websocket"]["total_connections"] == 20
    assert client.get("/api/rooms").json() == []
