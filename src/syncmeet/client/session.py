"""
Meeting Session

Client side of one meeting: speaks the signaling protocol over a WebSocket,
drives the admission handshake and forwards negotiation traffic to the
peer negotiation engine. Chat, reactions and raised hands are kept as plain
state for a UI layer to render.
"""

import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import websockets
from pydantic import ValidationError

from syncmeet.client.ephemeral import RaisedHands, ReactionBoard
from syncmeet.client.media import MediaProvider, PlayerMediaProvider, acquire_local_media
from syncmeet.client.negotiation import PeerConnectionFactory, PeerNegotiationEngine
from syncmeet.config import settings
from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.errors import SignalingError
from syncmeet.webrtc.schemas import (
    ChatMessagePayload,
    ConnectedPayload,
    ErrorPayload,
    HandTogglePayload,
    JoinApprovedPayload,
    JoinRejectedPayload,
    JoinRequestCancelledPayload,
    JoinRequestReceivedPayload,
    MediaKind,
    MediaTogglePayload,
    MessageType,
    ReactionPayload,
    RoomParticipantsPayload,
    SignalingMessage,
    UserConnectedPayload,
    UserDisconnectedPayload,
)

logger = get_logger(prefix="[Meeting-Session]")

Handler = Callable[[SignalingMessage], Awaitable[None]]


def generate_user_id() -> str:
    """Short random identifier of the local user."""
    return uuid4().hex[:7]


class MeetingSession:
    """
    One participant's view of a meeting.

    Args:
        room_id: Room to join
        display_name: Name shown to other participants
        server_url: Signaling WebSocket URL
        user_id: Client-generated identity, random when omitted
        claims_host_priority: This client created the room earlier
        media_provider: Camera/microphone/display source
        peer_connection_factory: Peer connection constructor for the engine
        reaction_ttl: Seconds a reaction stays visible
        negotiation_timeout: Seconds an offer may go unanswered
    """

    def __init__(
        self,
        room_id: str,
        display_name: str,
        server_url: Optional[str] = None,
        user_id: Optional[str] = None,
        claims_host_priority: bool = False,
        media_provider: Optional[MediaProvider] = None,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
        reaction_ttl: Optional[float] = None,
        negotiation_timeout: Optional[float] = None,
    ):
        self.room_id = room_id
        self.display_name = display_name
        self.server_url = server_url or settings.SIGNALING_SERVER_URL
        self.user_id = user_id or generate_user_id()
        self.claims_host_priority = claims_host_priority
        self.media_provider = media_provider or PlayerMediaProvider()

        self.connection_id: Optional[str] = None
        self.is_waiting = False
        self.is_joined = False
        self.is_host = False
        self.error: Optional[str] = None
        self.warning: Optional[str] = None
        self.join_requests: Dict[str, JoinRequestReceivedPayload] = {}
        self.messages: List[ChatMessagePayload] = []
        self.remote_media: Dict[str, Dict[str, bool]] = {}
        self.reactions = ReactionBoard(ttl=reaction_ttl)
        self.raised_hands = RaisedHands()
        self.engine = PeerNegotiationEngine(
            send=self.send,
            media_provider=self.media_provider,
            peer_connection_factory=peer_connection_factory,
            negotiation_timeout=(
                settings.CLIENT_NEGOTIATION_TIMEOUT if negotiation_timeout is None else negotiation_timeout
            ),
            on_error=self._on_engine_error,
            on_screen_share_ended=self._on_screen_share_ended,
        )

        self._transport: Any = None
        self._handlers: Dict[MessageType, Handler] = {
            MessageType.CONNECTED: self._on_connected,
            MessageType.JOIN_APPROVED: self._on_join_approved,
            MessageType.WAITING_FOR_APPROVAL: self._on_waiting_for_approval,
            MessageType.JOIN_REJECTED: self._on_join_rejected,
            MessageType.JOIN_REQUEST_RECEIVED: self._on_join_request_received,
            MessageType.JOIN_REQUEST_CANCELLED: self._on_join_request_cancelled,
            MessageType.YOU_ARE_HOST: self._on_you_are_host,
            MessageType.ROOM_PARTICIPANTS: self._on_room_participants,
            MessageType.USER_CONNECTED: self._on_user_connected,
            MessageType.USER_DISCONNECTED: self._on_user_disconnected,
            MessageType.OFFER: self._on_offer,
            MessageType.ANSWER: self._on_answer,
            MessageType.ICE_CANDIDATE: self._on_ice_candidate,
            MessageType.CHAT_MESSAGE: self._on_chat_message,
            MessageType.PEER_REACTION: self._on_peer_reaction,
            MessageType.PEER_HAND_TOGGLED: self._on_peer_hand_toggled,
            MessageType.PEER_TOGGLED_MEDIA: self._on_peer_toggled_media,
            MessageType.ERROR: self._on_error,
        }

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def prepare_media(self) -> None:
        """Acquire camera and microphone, degrading on failure."""
        media, warning = await acquire_local_media(self.media_provider)
        self.engine.local_media = media
        self.engine.video_enabled = media.video_track is not None
        self.engine.audio_enabled = media.audio_track is not None
        if warning:
            self.warning = warning

    def attach(self, transport: Any) -> None:
        """Use an already open transport (``send``/``close``/async iteration)."""
        self._transport = transport

    async def open(self) -> None:
        """Acquire media and connect to the signaling server."""
        await self.prepare_media()
        logger.info(f"Connecting to {self.server_url}")
        self.attach(await websockets.connect(self.server_url))

    async def run(self) -> None:
        """Process inbound frames until the server closes the connection."""
        if self._transport is None:
            raise RuntimeError("Not connected to signaling server")
        try:
            async for raw in self._transport:
                await self.handle_text(raw)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Signaling connection closed")

    async def __aenter__(self) -> "MeetingSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.leave()

    async def send(self, message: SignalingMessage) -> None:
        if self._transport is None:
            logger.warning(f"Not connected, dropping {message.type.value}")
            return
        await self._transport.send(json.dumps(message.to_wire()))

    async def handle_text(self, raw: Any) -> None:
        try:
            message = SignalingMessage.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Ignoring malformed frame: {e}")
            return
        await self.handle_message(message)

    async def handle_message(self, message: SignalingMessage) -> None:
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug(f"No handler for {message.type.value}")
            return
        try:
            await handler(message)
        except ValidationError as e:
            logger.warning(f"Ignoring {message.type.value} with invalid payload: {e}")

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _on_connected(self, message: SignalingMessage) -> None:
        payload = ConnectedPayload.model_validate(message.payload)
        self.connection_id = payload.connection_id
        self.engine.local_connection_id = payload.connection_id
        logger.info(f"Connected as {self.connection_id}, requesting to join {self.room_id}")
        await self.send(
            SignalingMessage.create_request_join(
                self.room_id, self.user_id, self.display_name, self.claims_host_priority
            )
        )

    async def _on_join_approved(self, message: SignalingMessage) -> None:
        payload = JoinApprovedPayload.model_validate(message.payload)
        self.is_waiting = False
        self.is_joined = True
        self.is_host = payload.is_host
        self.error = None
        await self.send(SignalingMessage.create_join_room(self.room_id, self.user_id, self.display_name))

    async def _on_waiting_for_approval(self, message: SignalingMessage) -> None:
        self.is_waiting = True

    async def _on_join_rejected(self, message: SignalingMessage) -> None:
        payload = JoinRejectedPayload.model_validate(message.payload)
        self.is_waiting = False
        self.error = payload.reason
        logger.info(f"Join rejected: {payload.reason}")

    async def _on_join_request_received(self, message: SignalingMessage) -> None:
        payload = JoinRequestReceivedPayload.model_validate(message.payload)
        self.join_requests[payload.requester_connection_id] = payload

    async def _on_join_request_cancelled(self, message: SignalingMessage) -> None:
        payload = JoinRequestCancelledPayload.model_validate(message.payload)
        self.join_requests.pop(payload.requester_connection_id, None)

    async def _on_you_are_host(self, message: SignalingMessage) -> None:
        self.is_host = True
        logger.info(f"Now hosting {self.room_id}")

    async def respond_to_join_request(self, requester_connection_id: str, approved: bool) -> None:
        self.join_requests.pop(requester_connection_id, None)
        await self.send(SignalingMessage.create_resolve_join_request(requester_connection_id, approved))

    # ------------------------------------------------------------------
    # Membership and negotiation
    # ------------------------------------------------------------------

    async def _on_room_participants(self, message: SignalingMessage) -> None:
        payload = RoomParticipantsPayload.model_validate(message.payload)
        self.engine.register_participants(payload.participants)

    async def _on_user_connected(self, message: SignalingMessage) -> None:
        payload = UserConnectedPayload.model_validate(message.payload)
        await self.engine.handle_user_connected(payload.connection_id, payload.user_id, payload.display_name)

    async def _on_user_disconnected(self, message: SignalingMessage) -> None:
        payload = UserDisconnectedPayload.model_validate(message.payload)
        await self.engine.handle_user_disconnected(payload.connection_id)
        self.raised_hands.discard(payload.connection_id)
        self.remote_media.pop(payload.connection_id, None)

    def _directed_sender(self, message: SignalingMessage) -> Optional[str]:
        return message.sender_id or message.payload.get("caller")

    async def _on_offer(self, message: SignalingMessage) -> None:
        sender_id = self._directed_sender(message)
        if sender_id:
            await self.engine.handle_offer(sender_id, message.payload)

    async def _on_answer(self, message: SignalingMessage) -> None:
        sender_id = self._directed_sender(message)
        if sender_id:
            await self.engine.handle_answer(sender_id, message.payload)

    async def _on_ice_candidate(self, message: SignalingMessage) -> None:
        sender_id = self._directed_sender(message)
        if sender_id:
            await self.engine.handle_ice_candidate(sender_id, message.payload)

    def _on_engine_error(self, error: SignalingError) -> None:
        self.warning = error.message

    # ------------------------------------------------------------------
    # Room signals
    # ------------------------------------------------------------------

    async def _on_chat_message(self, message: SignalingMessage) -> None:
        self.messages.append(ChatMessagePayload.model_validate(message.payload))

    async def _on_peer_reaction(self, message: SignalingMessage) -> None:
        payload = ReactionPayload.model_validate(message.payload)
        self.reactions.add(payload.source_connection_id, payload.emoji)

    async def _on_peer_hand_toggled(self, message: SignalingMessage) -> None:
        payload = HandTogglePayload.model_validate(message.payload)
        self.raised_hands.apply(payload.source_connection_id, payload.is_raised)

    async def _on_peer_toggled_media(self, message: SignalingMessage) -> None:
        payload = MediaTogglePayload.model_validate(message.payload)
        self.remote_media.setdefault(payload.source_connection_id, {})[payload.kind.value] = payload.is_enabled

    async def _on_error(self, message: SignalingMessage) -> None:
        payload = ErrorPayload.model_validate(message.payload)
        logger.warning(f"Server error {payload.code}: {payload.message}")
        self.error = payload.message

    async def send_chat_message(self, body: str) -> ChatMessagePayload:
        """Send a chat line; the server echoes it back to us."""
        message = SignalingMessage.create_chat_message(
            self.room_id, uuid4().hex, self.display_name, body, int(time.time() * 1000)
        )
        await self.send(message)
        return ChatMessagePayload.model_validate(message.payload)

    async def send_reaction(self, emoji: str) -> None:
        if self.connection_id is None:
            return
        self.reactions.add(self.connection_id, emoji)
        await self.send(SignalingMessage.create_send_reaction(self.room_id, self.connection_id, emoji))

    async def toggle_hand(self) -> bool:
        if self.connection_id is None:
            return self.raised_hands.local_raised
        is_raised = self.raised_hands.toggle_local(self.connection_id)
        await self.send(SignalingMessage.create_toggle_hand(self.room_id, self.connection_id, is_raised))
        return is_raised

    # ------------------------------------------------------------------
    # Local media controls
    # ------------------------------------------------------------------

    async def _announce_media(self, kind: MediaKind, enabled: bool) -> None:
        if self.is_joined:
            await self.send(
                SignalingMessage.create_toggle_media(self.room_id, self.connection_id or "", kind, enabled)
            )

    async def toggle_audio(self) -> bool:
        enabled = await self.engine.toggle_audio(not self.engine.audio_enabled)
        await self._announce_media(MediaKind.AUDIO, enabled)
        return enabled

    async def toggle_video(self) -> bool:
        enabled = await self.engine.toggle_video(not self.engine.video_enabled)
        await self._announce_media(MediaKind.VIDEO, enabled)
        return enabled

    async def share_screen(self) -> bool:
        started = await self.engine.start_screen_share()
        if started:
            await self._announce_media(MediaKind.SCREEN, True)
        else:
            self.warning = self.engine.warning
        return started

    async def stop_screen_share(self) -> bool:
        return await self.engine.stop_screen_share()

    async def _on_screen_share_ended(self, restored: bool) -> None:
        await self._announce_media(MediaKind.SCREEN, False)
        await self._announce_media(MediaKind.VIDEO, restored)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def leave(self) -> None:
        """Release media, close peer links and the signaling connection."""
        await self.engine.close()
        self.reactions.clear()
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                if self.is_joined or self.is_waiting:
                    await transport.send(json.dumps(SignalingMessage.create_leave_room(self.room_id).to_wire()))
            except websockets.exceptions.ConnectionClosed:
                logger.debug("Connection already closed while leaving")
            await transport.close()
        self.is_joined = False
        self.is_waiting = False
        self.is_host = False
        logger.info(f"Left room {self.room_id}")
