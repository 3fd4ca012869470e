"""
Tests for the signaling HTTP and WebSocket surface.

Each test builds its own application around a fresh hub so no state leaks
through the process-wide instance.
"""

import pytest
from fastapi.testclient import TestClient

from syncmeet.main import create_app
from syncmeet.webrtc.hub import SignalingHub


@pytest.fixture
def app_hub():
    return SignalingHub(rate_limit_enabled=False)


@pytest.fixture
def client(app_hub):
    with TestClient(create_app(app_hub)) as test_client:
        yield test_client


def join_over_socket(websocket, room_id="R1"):
    connected = websocket.receive_json()
    websocket.send_json(
        {"type": "request-join", "payload": {"roomId": room_id, "userId": "u1", "displayName": "Ann"}}
    )
    approved = websocket.receive_json()
    websocket.send_json(
        {"type": "join-room", "payload": {"roomId": room_id, "userId": "u1", "displayName": "Ann"}}
    )
    participants = websocket.receive_json()
    return connected, approved, participants


class TestWebSocketEndpoint:
    """Test the signaling socket."""

    def test_greeting_and_admission(self, client):
        """Test that the first joiner is greeted, approved as host and given an empty roster."""
        with client.websocket_connect("/signaling/ws") as websocket:
            connected, approved, participants = join_over_socket(websocket)

        assert connected["type"] == "connected"
        assert connected["payload"]["connectionId"]
        assert approved["type"] == "join-approved"
        assert approved["payload"]["isHost"] is True
        assert participants == {
            "type": "room-participants",
            "payload": {"roomId": "R1", "participants": []},
            "roomId": "R1",
        }

    def test_disconnect_removes_room(self, client, app_hub):
        """Test that closing the socket runs the departure path."""
        with client.websocket_connect("/signaling/ws") as websocket:
            join_over_socket(websocket)
            assert app_hub.directory.get_room("R1") is not None

        assert app_hub.directory.get_room("R1") is None
        assert len(app_hub.registry) == 0

    def test_error_frame_keeps_socket_open(self, client):
        """Test that a bad frame yields an error and the session continues."""
        with client.websocket_connect("/signaling/ws") as websocket:
            websocket.receive_json()
            websocket.send_text("{broken")
            error = websocket.receive_json()
            websocket.send_json({"type": "request-join", "payload": {"roomId": "R1", "userId": "u1", "displayName": "A"}})
            approved = websocket.receive_json()

        assert error["type"] == "error"
        assert error["payload"]["code"] == "invalid_payload"
        assert approved["type"] == "join-approved"


class TestRestEndpoints:
    """Test configuration and introspection endpoints."""

    def test_webrtc_config(self, client):
        """Test that ICE servers are served in camelCase."""
        response = client.get("/signaling/config")

        assert response.status_code == 200
        data = response.json()
        assert data["iceServers"]
        assert data["iceServers"][0]["urls"]
        assert data["iceTransportPolicy"] in ("all", "relay")

    def test_unknown_room(self, client):
        """Test that a missing room is a 404 with the error body."""
        response = client.get("/signaling/rooms/nowhere")

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "room_not_found"

    def test_room_summary(self, client):
        """Test the summary of an occupied room."""
        with client.websocket_connect("/signaling/ws") as websocket:
            connected, _, _ = join_over_socket(websocket)
            response = client.get("/signaling/rooms/R1")

        assert response.status_code == 200
        summary = response.json()
        assert summary["roomId"] == "R1"
        assert summary["participantCount"] == 1
        assert summary["hostConnectionId"] == connected["payload"]["connectionId"]
        assert summary["pendingRequests"] == 0

    def test_health(self, client):
        """Test the health endpoint on an idle server."""
        response = client.get("/signaling/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "connections": 0,
            "rooms": 0,
            "participants": 0,
            "pending_requests": 0,
        }

    def test_stats_lists_rooms(self, client):
        """Test that stats include per-room details."""
        with client.websocket_connect("/signaling/ws") as websocket:
            join_over_socket(websocket)
            stats = client.get("/signaling/stats").json()

        assert stats["rooms"] == 1
        assert stats["room_details"][0]["roomId"] == "R1"

    def test_root(self, client):
        """Test the liveness check."""
        assert client.get("/").json()["message"] == "SyncMeet signaling server is running"
