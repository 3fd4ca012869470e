"""
Tests for the meeting session: the client half of the signaling protocol.

Frames are fed straight into ``handle_message``/``run`` and outbound frames
are captured by a fake transport.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from syncmeet.client.peer_link import NegotiationState
from syncmeet.client.session import MeetingSession, generate_user_id
from syncmeet.webrtc.schemas import SignalingMessage


@pytest.fixture
def session(provider_factory, client_transport, peer_connection_factory):
    """Session with fake media and peer connections, attached to a fake transport."""
    meeting = MeetingSession(
        "R1",
        "Alice",
        user_id="u-alice",
        media_provider=provider_factory(),
        peer_connection_factory=peer_connection_factory,
        reaction_ttl=10,
    )
    meeting.attach(client_transport())
    return meeting


def server_message(message_type, payload=None, sender_id=None):
    data = {"type": message_type, "payload": payload or {}}
    if sender_id:
        data["senderId"] = sender_id
    return SignalingMessage.model_validate(data)


async def admitted(session, is_host=True):
    await session.handle_message(server_message("connected", {"connectionId": "c-alice"}))
    await session.handle_message(
        server_message("join-approved", {"roomId": "R1", "userId": "u-alice", "displayName": "Alice", "isHost": is_host})
    )


class TestAdmission:
    """Test the client side of the admission handshake."""

    @pytest.mark.asyncio
    async def test_connected_triggers_request_join(self, session):
        """Test that the greeting is answered with request-join."""
        await session.handle_message(server_message("connected", {"connectionId": "c-alice"}))

        assert session.connection_id == "c-alice"
        assert session.engine.local_connection_id == "c-alice"
        request = session._transport.of_type("request-join")[0]
        assert request["payload"] == {
            "roomId": "R1",
            "userId": "u-alice",
            "displayName": "Alice",
            "claimsHostPriority": False,
        }

    @pytest.mark.asyncio
    async def test_approval_sends_join_room(self, session):
        """Test that approval finalizes the join and records host status."""
        await admitted(session, is_host=True)

        assert session.is_joined is True
        assert session.is_host is True
        assert session._transport.of_type("join-room")[0]["payload"]["roomId"] == "R1"

    @pytest.mark.asyncio
    async def test_waiting_then_rejected(self, session):
        """Test that a rejection ends waiting and surfaces the reason."""
        await session.handle_message(server_message("waiting-for-approval", {"roomId": "R1"}))
        assert session.is_waiting is True

        await session.handle_message(
            server_message("join-rejected", {"reason": "Room host is no longer available.", "code": "host_unavailable"})
        )

        assert session.is_waiting is False
        assert session.is_joined is False
        assert session.error == "Room host is no longer available."

    @pytest.mark.asyncio
    async def test_host_handles_join_requests(self, session):
        """Test that the host sees, answers and loses join requests."""
        await admitted(session)
        for requester in ["c-bob", "c-carol"]:
            await session.handle_message(
                server_message(
                    "join-request-received",
                    {"requesterConnectionId": requester, "userId": f"u-{requester}", "displayName": requester},
                )
            )
        assert list(session.join_requests) == ["c-bob", "c-carol"]

        await session.respond_to_join_request("c-bob", True)
        await session.handle_message(
            server_message("join-request-cancelled", {"requesterConnectionId": "c-carol", "reason": "requester-left"})
        )

        assert session.join_requests == {}
        resolution = session._transport.of_type("resolve-join-request")[0]
        assert resolution["payload"] == {"requesterConnectionId": "c-bob", "approved": True}

    @pytest.mark.asyncio
    async def test_promotion(self, session):
        """Test that you-are-host makes the session host."""
        await admitted(session, is_host=False)

        await session.handle_message(server_message("you-are-host", {"roomId": "R1"}))

        assert session.is_host is True

    @pytest.mark.asyncio
    async def test_claims_host_priority_forwarded(self, provider_factory, client_transport):
        """Test that the host priority claim is sent with the request."""
        meeting = MeetingSession("R1", "Alice", claims_host_priority=True, media_provider=provider_factory())
        meeting.attach(client_transport())

        await meeting.handle_message(server_message("connected", {"connectionId": "c-alice"}))

        assert meeting._transport.of_type("request-join")[0]["payload"]["claimsHostPriority"] is True


class TestNegotiationDispatch:
    """Test that negotiation traffic reaches the engine."""

    @pytest.mark.asyncio
    async def test_user_connected_creates_offer(self, session):
        """Test that a newcomer gets an offer from us."""
        await admitted(session)

        await session.handle_message(
            server_message("user-connected", {"connectionId": "c-bob", "userId": "u-bob", "displayName": "Bob"})
        )

        offer = session._transport.of_type("offer")[0]
        assert offer["payload"]["target"] == "c-bob"
        assert offer["payload"]["caller"] == "c-alice"
        assert session.engine.links["c-bob"].state == NegotiationState.OFFER_CREATED

    @pytest.mark.asyncio
    async def test_offer_answered_using_sender_id(self, session):
        """Test that offers are answered to the server-stamped sender."""
        await admitted(session, is_host=False)

        await session.handle_message(
            server_message(
                "offer",
                {"target": "c-alice", "caller": "spoofed", "sdp": {"type": "offer", "sdp": "v=0"}},
                sender_id="c-bob",
            )
        )

        answer = session._transport.of_type("answer")[0]
        assert answer["payload"]["target"] == "c-bob"

    @pytest.mark.asyncio
    async def test_user_disconnected_cleans_up(self, session):
        """Test that a departure removes the link, hand and media state."""
        await admitted(session)
        await session.handle_message(
            server_message("user-connected", {"connectionId": "c-bob", "userId": "u-bob", "displayName": "Bob"})
        )
        await session.handle_message(
            server_message("peer-hand-toggled", {"roomId": "R1", "sourceConnectionId": "c-bob", "isRaised": True})
        )

        await session.handle_message(
            server_message("user-disconnected", {"connectionId": "c-bob", "userId": "u-bob", "roomId": "R1"})
        )

        assert "c-bob" not in session.engine.links
        assert "c-bob" not in session.raised_hands


class TestRoomSignals:
    """Test chat, reactions, hands and media toggles."""

    @pytest.mark.asyncio
    async def test_chat_round_trip(self, session):
        """Test that sent chat is not shown until the server echoes it."""
        await admitted(session)

        sent = await session.send_chat_message("hi")
        assert session.messages == []
        outbound = session._transport.of_type("chat-message")[0]
        assert outbound["payload"]["body"] == "hi"
        assert outbound["payload"]["senderName"] == "Alice"

        await session.handle_message(server_message("chat-message", outbound["payload"], sender_id="c-alice"))
        assert session.messages == [sent]

    @pytest.mark.asyncio
    async def test_reactions(self, session):
        """Test that local and remote reactions are both shown."""
        await admitted(session)

        await session.send_reaction("👍")
        await session.handle_message(
            server_message("peer-reaction", {"roomId": "R1", "sourceConnectionId": "c-bob", "emoji": "🎉"})
        )

        assert [(r.source_connection_id, r.emoji) for r in session.reactions.active] == [
            ("c-alice", "👍"),
            ("c-bob", "🎉"),
        ]
        assert session._transport.of_type("send-reaction")[0]["payload"]["emoji"] == "👍"
        session.reactions.clear()

    @pytest.mark.asyncio
    async def test_toggle_hand(self, session):
        """Test that raising the hand is tracked locally and broadcast."""
        await admitted(session)

        assert await session.toggle_hand() is True

        assert "c-alice" in session.raised_hands
        assert session._transport.of_type("toggle-hand")[0]["payload"]["isRaised"] is True

    @pytest.mark.asyncio
    async def test_signals_wait_for_connection_id(self, session):
        """Test that reactions and hands are not sent before the server assigns an id."""
        await session.send_reaction("👍")

        assert await session.toggle_hand() is False
        assert session._transport.of_type("send-reaction") == []
        assert session._transport.of_type("toggle-hand") == []
        assert session.reactions.active == []

    @pytest.mark.asyncio
    async def test_toggle_video_announced(self, session):
        """Test that turning video off is broadcast to the room."""
        await session.prepare_media()
        await admitted(session)

        assert await session.toggle_video() is False

        announcement = session._transport.of_type("toggle-media")[0]
        assert announcement["payload"]["kind"] == "video"
        assert announcement["payload"]["isEnabled"] is False

    @pytest.mark.asyncio
    async def test_peer_media_state_recorded(self, session):
        """Test that remote media toggles are kept per participant."""
        await session.handle_message(
            server_message(
                "peer-toggled-media",
                {"roomId": "R1", "sourceConnectionId": "c-bob", "kind": "audio", "isEnabled": False},
            )
        )

        assert session.remote_media == {"c-bob": {"audio": False}}

    @pytest.mark.asyncio
    async def test_screen_share_announced(self, session):
        """Test that screen sharing start and stop are broadcast."""
        await session.prepare_media()
        await admitted(session)

        assert await session.share_screen() is True
        assert await session.stop_screen_share() is True

        kinds = [(m["payload"]["kind"], m["payload"]["isEnabled"]) for m in session._transport.of_type("toggle-media")]
        assert kinds == [("screen", True), ("screen", False), ("video", True)]

    @pytest.mark.asyncio
    async def test_system_ended_screen_share_announced(self, session):
        """Test that capture ended outside the app is broadcast like a manual stop."""
        await session.prepare_media()
        await admitted(session)
        await session.share_screen()

        session.engine.local_media.video_track.stop()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert session.engine.is_screen_sharing is False
        kinds = [(m["payload"]["kind"], m["payload"]["isEnabled"]) for m in session._transport.of_type("toggle-media")]
        assert kinds == [("screen", True), ("screen", False), ("video", True)]

    @pytest.mark.asyncio
    async def test_server_error_recorded(self, session):
        """Test that error frames are surfaced."""
        await session.handle_message(server_message("error", {"code": "not_host", "message": "Only the host may do that"}))

        assert session.error == "Only the host may do that"


class TestSessionLifecycle:
    """Test media preparation, the receive loop and leaving."""

    def test_generated_user_id(self):
        """Test the short random user id."""
        assert len(generate_user_id()) == 7
        assert generate_user_id() != generate_user_id()

    @pytest.mark.asyncio
    async def test_prepare_media_degrades_to_viewer(self, provider_factory, client_transport):
        """Test that a session without devices continues in viewer mode."""
        meeting = MeetingSession("R1", "Alice", media_provider=provider_factory(camera=False, microphone=False))

        await meeting.prepare_media()

        assert meeting.engine.local_media.is_empty
        assert meeting.warning == "Could not access camera/microphone. You are in viewer mode."

    @pytest.mark.asyncio
    async def test_run_processes_inbound_frames(self, session, client_transport):
        """Test that run consumes frames and ignores malformed ones."""
        session.attach(
            client_transport(
                [
                    "not json",
                    {"type": "connected", "payload": {"connectionId": "c-alice"}},
                    {"type": "waiting-for-approval", "payload": {"roomId": "R1"}},
                ]
            )
        )

        await session.run()

        assert session.connection_id == "c-alice"
        assert session.is_waiting is True

    @pytest.mark.asyncio
    async def test_open_connects_with_websockets(self, provider_factory, client_transport):
        """Test that open acquires media and connects to the configured URL."""
        transport = client_transport()
        meeting = MeetingSession(
            "R1", "Alice", server_url="ws://signal.test/signaling/ws", media_provider=provider_factory()
        )

        with patch("syncmeet.client.session.websockets.connect", new=AsyncMock(return_value=transport)) as connect:
            await meeting.open()

        connect.assert_awaited_once_with("ws://signal.test/signaling/ws")
        assert meeting._transport is transport
        assert not meeting.engine.local_media.is_empty

    @pytest.mark.asyncio
    async def test_leave_releases_everything(self, session):
        """Test that leaving stops media, sends leave-room and closes the socket."""
        await session.prepare_media()
        await admitted(session)
        tracks = session.engine.local_media.tracks()
        transport = session._transport

        await session.leave()

        assert all(track.stopped for track in tracks)
        assert transport.of_type("leave-room")[0]["payload"] == {"roomId": "R1"}
        assert transport.closed is True
        assert session.is_joined is False
