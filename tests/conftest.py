"""
Pytest configuration for SyncMeet tests.

Provides in-memory stand-ins for the WebSocket transport, aiortc peer
connections and media devices so signaling and negotiation logic can be
exercised without a network or camera.
"""

import json
import os
import sys
import uuid

import pytest
from aiortc import RTCSessionDescription

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from syncmeet.client.media import LocalMedia, MediaProvider  # noqa: E402
from syncmeet.client.negotiation import PeerNegotiationEngine  # noqa: E402
from syncmeet.webrtc.errors import MediaAcquisitionError, SignalingErrorCode  # noqa: E402
from syncmeet.webrtc.hub import SignalingHub  # noqa: E402
from syncmeet.webrtc.rooms import RoomDirectory  # noqa: E402


class FakeWebSocket:
    """Server-side transport handle recording every JSON frame."""

    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)

    def of_type(self, message_type):
        return [m for m in self.sent if m["type"] == message_type]

    def types(self):
        return [m["type"] for m in self.sent]

    def clear(self):
        self.sent.clear()


class FakeClientTransport:
    """Client-side WebSocket: records text frames and replays queued inbound ones."""

    def __init__(self, inbound=None):
        self.sent = []
        self.inbound = list(inbound or [])
        self.closed = False

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.inbound:
            yield frame if isinstance(frame, str) else json.dumps(frame)

    def of_type(self, message_type):
        return [m for m in self.sent if m["type"] == message_type]


class FakeTrack:
    """Media track with the ``on``/``stop`` surface of aiortc's MediaStreamTrack."""

    def __init__(self, kind, label=""):
        self.kind = kind
        self.label = label
        self.id = uuid.uuid4().hex
        self.stopped = False
        self._listeners = {}

    def on(self, event, f=None):
        def register(handler):
            self._listeners.setdefault(event, []).append(handler)
            return handler

        return register(f) if f is not None else register

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        for handler in self._listeners.get("ended", []):
            handler()


class FakeSender:
    def __init__(self, track):
        self.track = track
        self.replaced = []

    def replaceTrack(self, track):
        self.track = track
        self.replaced.append(track)


class FakePeerConnection:
    """Signaling-state machine of RTCPeerConnection without any networking."""

    def __init__(self, name):
        self.name = name
        self.handlers = {}
        self.senders = []
        self.localDescription = None
        self.remoteDescription = None
        self.signalingState = "stable"
        self.connectionState = "new"
        self.added_candidates = []
        self.closed = False
        self.tracks_stopped_at_close = None
        self.reject_remote_description = False

    def on(self, event, f=None):
        def register(handler):
            self.handlers.setdefault(event, []).append(handler)
            return handler

        return register(f) if f is not None else register

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"offer-from-{self.name}", type="offer")

    async def createAnswer(self):
        if self.signalingState != "have-remote-offer":
            raise RuntimeError(f"Cannot create answer in signaling state {self.signalingState}")
        return RTCSessionDescription(sdp=f"answer-from-{self.name}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        if self.reject_remote_description:
            raise ValueError("Malformed SDP")
        if description.type == "offer" and self.signalingState == "have-local-offer":
            raise RuntimeError("Cannot handle offer in signaling state have-local-offer")
        if description.type == "answer" and self.signalingState != "have-local-offer":
            raise RuntimeError(f"Cannot handle answer in signaling state {self.signalingState}")
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise RuntimeError("Remote description is not set")
        self.added_candidates.append(candidate)

    async def close(self):
        self.tracks_stopped_at_close = all(s.track is None or s.track.stopped for s in self.senders)
        self.closed = True
        self.signalingState = "closed"


class FakeMediaProvider(MediaProvider):
    """Hands out FakeTracks; each device can be switched off."""

    def __init__(self, camera=True, microphone=True, display=True):
        self.camera = camera
        self.microphone = microphone
        self.display = display
        self.opened = []

    async def get_user_media(self, audio=True, video=True):
        if video and not self.camera:
            raise MediaAcquisitionError("Camera denied", error_code=SignalingErrorCode.CAMERA_UNAVAILABLE)
        if audio and not self.microphone:
            raise MediaAcquisitionError("Microphone denied")
        media = LocalMedia(
            audio_track=FakeTrack("audio", "microphone") if audio else None,
            video_track=FakeTrack("video", "camera") if video else None,
        )
        self.opened.extend(media.tracks())
        return media

    async def get_display_media(self):
        if not self.display:
            raise MediaAcquisitionError(
                "Screen capture denied", error_code=SignalingErrorCode.SCREEN_SHARE_UNAVAILABLE
            )
        track = FakeTrack("video", "display")
        self.opened.append(track)
        return track


class EngineHarness:
    """A negotiation engine wired to fakes, with everything it sends recorded."""

    def __init__(self, local_connection_id, local_media=None, media_provider=None, negotiation_timeout=None):
        self.sent = []
        self.connections = []
        self.errors = []
        self.remote_tracks = []
        self.media_provider = media_provider or FakeMediaProvider()
        self.engine = PeerNegotiationEngine(
            send=self._send,
            local_media=local_media,
            media_provider=self.media_provider,
            peer_connection_factory=self._factory,
            negotiation_timeout=negotiation_timeout,
            on_remote_track=lambda remote_id, track: self.remote_tracks.append((remote_id, track)),
            on_error=self.errors.append,
        )
        self.engine.local_connection_id = local_connection_id

    async def _send(self, message):
        self.sent.append(message)

    def _factory(self):
        connection = FakePeerConnection(f"pc{len(self.connections)}")
        self.connections.append(connection)
        return connection

    def of_type(self, message_type):
        return [m for m in self.sent if m.type.value == message_type]


def offer_payload(target, caller, sdp="remote-offer"):
    return {"target": target, "caller": caller, "sdp": {"type": "offer", "sdp": sdp}}


def answer_payload(target, caller, sdp="remote-answer"):
    return {"target": target, "caller": caller, "sdp": {"type": "answer", "sdp": sdp}}


def candidate_payload(target, caller, candidate, sdp_mid="0", sdp_m_line_index=0):
    return {
        "target": target,
        "caller": caller,
        "candidate": {"candidate": candidate, "sdpMid": sdp_mid, "sdpMLineIndex": sdp_m_line_index},
    }


@pytest.fixture
def directory():
    """Fresh room directory."""
    return RoomDirectory()


@pytest.fixture
def hub():
    """Signaling hub with its own registry and directory."""
    return SignalingHub(rate_limit_enabled=False)


@pytest.fixture
def connect(hub):
    """Connect a fake socket to the hub under a chosen connection id."""

    async def _connect(connection_id):
        websocket = FakeWebSocket()
        await hub.connect(websocket, connection_id)
        websocket.clear()
        return websocket

    return _connect


@pytest.fixture
def fake_track():
    return FakeTrack


@pytest.fixture
def media_provider():
    return FakeMediaProvider()


@pytest.fixture
def local_media():
    """Camera and microphone tracks."""
    return LocalMedia(audio_track=FakeTrack("audio", "microphone"), video_track=FakeTrack("video", "camera"))


@pytest.fixture
def make_engine():
    """Build an EngineHarness for a local connection id."""
    return EngineHarness


@pytest.fixture
def payloads():
    """Builders for relayed negotiation payloads."""
    return {
        "offer": offer_payload,
        "answer": answer_payload,
        "candidate": candidate_payload,
    }


@pytest.fixture
def peer_connection_factory():
    """Zero-argument factory of FakePeerConnections, exposing what it built."""
    created = []

    def factory():
        connection = FakePeerConnection(f"pc{len(created)}")
        created.append(connection)
        return connection

    factory.created = created
    return factory


@pytest.fixture
def client_transport():
    return FakeClientTransport


@pytest.fixture
def provider_factory():
    return FakeMediaProvider


@pytest.fixture
def websocket_factory():
    return FakeWebSocket
