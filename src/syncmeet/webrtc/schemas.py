"""
Signaling Message Schemas

Pydantic models for every message exchanged between meeting clients and the
signaling server. Field names are snake_case in Python and camelCase on the
wire; both spellings are accepted when parsing.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from syncmeet.webrtc.errors import InvalidPayloadError


class MessageType(str, Enum):
    """Signaling message types."""
    # Transport
    CONNECTED = "connected"
    ERROR = "error"

    # Admission
    REQUEST_JOIN = "request-join"
    JOIN_APPROVED = "join-approved"
    WAITING_FOR_APPROVAL = "waiting-for-approval"
    JOIN_REJECTED = "join-rejected"
    JOIN_REQUEST_RECEIVED = "join-request-received"
    JOIN_REQUEST_CANCELLED = "join-request-cancelled"
    RESOLVE_JOIN_REQUEST = "resolve-join-request"

    # Membership
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    USER_CONNECTED = "user-connected"
    ROOM_PARTICIPANTS = "room-participants"
    YOU_ARE_HOST = "you-are-host"
    USER_DISCONNECTED = "user-disconnected"

    # Directed negotiation relay
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"

    # Room broadcast relay
    CHAT_MESSAGE = "chat-message"
    SEND_REACTION = "send-reaction"
    PEER_REACTION = "peer-reaction"
    TOGGLE_HAND = "toggle-hand"
    PEER_HAND_TOGGLED = "peer-hand-toggled"
    TOGGLE_MEDIA = "toggle-media"
    PEER_TOGGLED_MEDIA = "peer-toggled-media"


# Commands a client may send; everything else is server-originated.
CLIENT_MESSAGE_TYPES = frozenset(
    {
        MessageType.REQUEST_JOIN,
        MessageType.RESOLVE_JOIN_REQUEST,
        MessageType.JOIN_ROOM,
        MessageType.LEAVE_ROOM,
        MessageType.OFFER,
        MessageType.ANSWER,
        MessageType.ICE_CANDIDATE,
        MessageType.CHAT_MESSAGE,
        MessageType.SEND_REACTION,
        MessageType.TOGGLE_HAND,
        MessageType.TOGGLE_MEDIA,
    }
)

DIRECTED_MESSAGE_TYPES = frozenset({MessageType.OFFER, MessageType.ANSWER, MessageType.ICE_CANDIDATE})


class SignalingModel(BaseModel):
    """Base model serialised with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# Admission
# ============================================================================

class ParticipantInfo(SignalingModel):
    """Public identity of a room participant."""
    connection_id: str = Field(..., description="Server-assigned connection identifier")
    user_id: str = Field(..., description="Client-generated user identifier")
    display_name: str = Field(..., description="Name shown to other participants")


class RequestJoinPayload(SignalingModel):
    """Ask to enter a room."""
    room_id: str = Field(..., min_length=1, description="Room identifier")
    user_id: str = Field(..., min_length=1, description="Client-generated user identifier")
    display_name: str = Field(..., description="Name shown to other participants")
    claims_host_priority: bool = Field(False, description="Requester created this room earlier")


class JoinApprovedPayload(SignalingModel):
    room_id: str
    user_id: str
    display_name: str
    is_host: bool


class WaitingForApprovalPayload(SignalingModel):
    room_id: Optional[str] = None


class JoinRejectedPayload(SignalingModel):
    reason: str = Field(..., description="Human-readable rejection reason")
    code: Optional[str] = Field(None, description="Machine-readable error code")
    room_id: Optional[str] = None


class JoinRequestReceivedPayload(SignalingModel):
    """Delivered to the host when someone waits for approval."""
    requester_connection_id: str
    user_id: str
    display_name: str
    room_id: Optional[str] = None


class JoinRequestCancelledPayload(SignalingModel):
    requester_connection_id: str
    reason: str


class ResolveJoinRequestPayload(SignalingModel):
    """Host decision on a pending join request."""
    requester_connection_id: str = Field(..., min_length=1)
    approved: bool


# ============================================================================
# Membership
# ============================================================================

class JoinRoomPayload(SignalingModel):
    room_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    display_name: str


class LeaveRoomPayload(SignalingModel):
    room_id: Optional[str] = Field(None, description="Room to leave; every room when omitted")


class UserConnectedPayload(SignalingModel):
    user_id: str
    connection_id: str
    display_name: str


class RoomParticipantsPayload(SignalingModel):
    room_id: str
    participants: List[ParticipantInfo] = Field(default_factory=list)


class YouAreHostPayload(SignalingModel):
    room_id: str


class UserDisconnectedPayload(SignalingModel):
    user_id: str
    connection_id: str
    room_id: Optional[str] = None


class ConnectedPayload(SignalingModel):
    connection_id: str


class ErrorPayload(SignalingModel):
    """Error message payload."""
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


# ============================================================================
# Negotiation relay
# ============================================================================

class SessionDescriptionPayload(SignalingModel):
    """SDP in the shape of a browser RTCSessionDescription."""
    type: str = Field(..., description="SDP type: 'offer' or 'answer'")
    sdp: str = Field(..., description="SDP string containing session information")


class IceCandidatePayload(SignalingModel):
    """ICE candidate in the shape of a browser RTCIceCandidate."""
    candidate: str = Field(..., description="ICE candidate string")
    sdp_mid: Optional[str] = Field(None, alias="sdpMid", description="Media stream ID")
    sdp_m_line_index: Optional[int] = Field(None, alias="sdpMLineIndex", description="Media line index")


class DirectedSignalPayload(SignalingModel):
    """
    Addressing envelope of offer/answer/ice-candidate payloads.

    Only ``target`` is interpreted by the server; the remaining keys are
    forwarded untouched.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    target: str = Field(..., min_length=1, description="Recipient connection id")
    caller: Optional[str] = Field(None, description="Sender connection id")


# ============================================================================
# Room broadcasts
# ============================================================================

class ChatMessagePayload(SignalingModel):
    room_id: str = Field(..., min_length=1)
    id: str = Field(..., description="Sender-generated message id")
    sender_name: str
    body: str
    timestamp_millis: int


class ReactionPayload(SignalingModel):
    room_id: str = Field(..., min_length=1)
    source_connection_id: str
    emoji: str = Field(..., min_length=1)


class HandTogglePayload(SignalingModel):
    room_id: str = Field(..., min_length=1)
    source_connection_id: str
    is_raised: bool


class MediaKind(str, Enum):
    """Media stream types."""
    AUDIO = "audio"
    VIDEO = "video"
    SCREEN = "screen"


class MediaTogglePayload(SignalingModel):
    room_id: str = Field(..., min_length=1)
    source_connection_id: str
    kind: MediaKind
    is_enabled: bool


# ============================================================================
# ICE configuration
# ============================================================================

class IceServerConfig(SignalingModel):
    """ICE server configuration for STUN/TURN."""
    urls: List[str] = Field(..., description="List of STUN/TURN server URLs")
    username: Optional[str] = Field(None, description="Username for TURN server authentication")
    credential: Optional[str] = Field(None, description="Credential for TURN server authentication")


class WebRtcConfig(SignalingModel):
    """WebRTC configuration for clients."""
    ice_servers: List[IceServerConfig] = Field(..., description="List of ICE servers")
    ice_transport_policy: str = Field("all", description="ICE transport policy: 'all' or 'relay'")
    bundle_policy: str = Field("balanced", description="Bundle policy")
    rtcp_mux_policy: str = Field("require", description="RTCP mux policy")


# ============================================================================
# Room introspection
# ============================================================================

class RoomSummary(SignalingModel):
    """Read-only view of a room for the REST surface."""
    room_id: str
    participant_count: int
    host_connection_id: Optional[str] = None
    pending_requests: int = 0
    created_at: float


# ============================================================================
# Envelope
# ============================================================================

class SignalingMessage(SignalingModel):
    """Envelope of every frame on the signaling socket."""
    type: MessageType = Field(..., description="Type of the message")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Message payload")
    sender_id: Optional[str] = Field(None, description="Connection id of the originator, stamped by the server")
    room_id: Optional[str] = Field(None, description="Room identifier")
    timestamp: Optional[str] = Field(None, description="Message timestamp")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def create_connected(cls, connection_id: str) -> "SignalingMessage":
        """Create the greeting sent right after the socket is accepted."""
        return cls(type=MessageType.CONNECTED, payload=ConnectedPayload(connection_id=connection_id).to_payload())

    @classmethod
    def create_request_join(
        cls, room_id: str, user_id: str, display_name: str, claims_host_priority: bool = False
    ) -> "SignalingMessage":
        """Create a join request."""
        return cls(
            type=MessageType.REQUEST_JOIN,
            payload=RequestJoinPayload(
                room_id=room_id,
                user_id=user_id,
                display_name=display_name,
                claims_host_priority=claims_host_priority,
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_join_approved(cls, room_id: str, user_id: str, display_name: str, is_host: bool) -> "SignalingMessage":
        """Create an admission result."""
        return cls(
            type=MessageType.JOIN_APPROVED,
            payload=JoinApprovedPayload(
                room_id=room_id, user_id=user_id, display_name=display_name, is_host=is_host
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_waiting_for_approval(cls, room_id: str) -> "SignalingMessage":
        """Create the acknowledgement sent to a queued requester."""
        return cls(
            type=MessageType.WAITING_FOR_APPROVAL,
            payload=WaitingForApprovalPayload(room_id=room_id).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_join_rejected(
        cls, reason: str, code: Optional[str] = None, room_id: Optional[str] = None
    ) -> "SignalingMessage":
        """Create a join rejection."""
        return cls(
            type=MessageType.JOIN_REJECTED,
            payload=JoinRejectedPayload(reason=reason, code=code, room_id=room_id).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_join_request_received(
        cls, requester_connection_id: str, user_id: str, display_name: str, room_id: str
    ) -> "SignalingMessage":
        """Create the host notification for a pending request."""
        return cls(
            type=MessageType.JOIN_REQUEST_RECEIVED,
            payload=JoinRequestReceivedPayload(
                requester_connection_id=requester_connection_id,
                user_id=user_id,
                display_name=display_name,
                room_id=room_id,
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_join_request_cancelled(
        cls, requester_connection_id: str, reason: str, room_id: str
    ) -> "SignalingMessage":
        """Create the host notification for a withdrawn request."""
        return cls(
            type=MessageType.JOIN_REQUEST_CANCELLED,
            payload=JoinRequestCancelledPayload(
                requester_connection_id=requester_connection_id, reason=reason
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_resolve_join_request(cls, requester_connection_id: str, approved: bool) -> "SignalingMessage":
        """Create a host decision."""
        return cls(
            type=MessageType.RESOLVE_JOIN_REQUEST,
            payload=ResolveJoinRequestPayload(
                requester_connection_id=requester_connection_id, approved=approved
            ).to_payload(),
        )

    @classmethod
    def create_join_room(cls, room_id: str, user_id: str, display_name: str) -> "SignalingMessage":
        """Create the membership registration sent after admission."""
        return cls(
            type=MessageType.JOIN_ROOM,
            payload=JoinRoomPayload(room_id=room_id, user_id=user_id, display_name=display_name).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_leave_room(cls, room_id: Optional[str] = None) -> "SignalingMessage":
        """Create an explicit leave."""
        return cls(type=MessageType.LEAVE_ROOM, payload=LeaveRoomPayload(room_id=room_id).to_payload(), room_id=room_id)

    @classmethod
    def create_user_connected(
        cls, room_id: str, connection_id: str, user_id: str, display_name: str
    ) -> "SignalingMessage":
        """Create a user connected event."""
        return cls(
            type=MessageType.USER_CONNECTED,
            payload=UserConnectedPayload(
                user_id=user_id, connection_id=connection_id, display_name=display_name
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_room_participants(cls, room_id: str, participants: List[ParticipantInfo]) -> "SignalingMessage":
        """Create the roster sent to a newly joined participant."""
        return cls(
            type=MessageType.ROOM_PARTICIPANTS,
            payload=RoomParticipantsPayload(room_id=room_id, participants=participants).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_you_are_host(cls, room_id: str) -> "SignalingMessage":
        """Create a host promotion notice."""
        return cls(type=MessageType.YOU_ARE_HOST, payload=YouAreHostPayload(room_id=room_id).to_payload(), room_id=room_id)

    @classmethod
    def create_user_disconnected(cls, room_id: str, connection_id: str, user_id: str) -> "SignalingMessage":
        """Create a user disconnected event."""
        return cls(
            type=MessageType.USER_DISCONNECTED,
            payload=UserDisconnectedPayload(user_id=user_id, connection_id=connection_id, room_id=room_id).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_offer(cls, target: str, caller: str, sdp: str) -> "SignalingMessage":
        """Create an offer message."""
        return cls._create_description(MessageType.OFFER, target, caller, sdp)

    @classmethod
    def create_answer(cls, target: str, caller: str, sdp: str) -> "SignalingMessage":
        """Create an answer message."""
        return cls._create_description(MessageType.ANSWER, target, caller, sdp)

    @classmethod
    def _create_description(cls, message_type: MessageType, target: str, caller: str, sdp: str) -> "SignalingMessage":
        description = SessionDescriptionPayload(type=message_type.value, sdp=sdp)
        return cls(
            type=message_type,
            payload={"target": target, "caller": caller, "sdp": description.to_payload()},
        )

    @classmethod
    def create_ice_candidate(
        cls,
        target: str,
        caller: str,
        candidate: str,
        sdp_mid: Optional[str] = None,
        sdp_m_line_index: Optional[int] = None,
    ) -> "SignalingMessage":
        """Create an ICE candidate message."""
        ice = IceCandidatePayload(candidate=candidate, sdp_mid=sdp_mid, sdp_m_line_index=sdp_m_line_index)
        return cls(
            type=MessageType.ICE_CANDIDATE,
            payload={"target": target, "caller": caller, "candidate": ice.model_dump(by_alias=True)},
        )

    @classmethod
    def create_chat_message(
        cls, room_id: str, message_id: str, sender_name: str, body: str, timestamp_millis: int
    ) -> "SignalingMessage":
        """Create a chat message."""
        return cls(
            type=MessageType.CHAT_MESSAGE,
            payload=ChatMessagePayload(
                room_id=room_id,
                id=message_id,
                sender_name=sender_name,
                body=body,
                timestamp_millis=timestamp_millis,
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_send_reaction(cls, room_id: str, source_connection_id: str, emoji: str) -> "SignalingMessage":
        """Create a reaction broadcast request."""
        return cls(
            type=MessageType.SEND_REACTION,
            payload=ReactionPayload(
                room_id=room_id, source_connection_id=source_connection_id, emoji=emoji
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_toggle_hand(cls, room_id: str, source_connection_id: str, is_raised: bool) -> "SignalingMessage":
        """Create a raised-hand broadcast request."""
        return cls(
            type=MessageType.TOGGLE_HAND,
            payload=HandTogglePayload(
                room_id=room_id, source_connection_id=source_connection_id, is_raised=is_raised
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_toggle_media(
        cls, room_id: str, source_connection_id: str, kind: MediaKind, is_enabled: bool
    ) -> "SignalingMessage":
        """Create a media state broadcast request."""
        return cls(
            type=MessageType.TOGGLE_MEDIA,
            payload=MediaTogglePayload(
                room_id=room_id, source_connection_id=source_connection_id, kind=kind, is_enabled=is_enabled
            ).to_payload(),
            room_id=room_id,
        )

    @classmethod
    def create_error(cls, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "SignalingMessage":
        """Create an error message."""
        return cls(
            type=MessageType.ERROR,
            payload=ErrorPayload(code=code, message=message, details=details).to_payload(),
        )


ModelT = TypeVar("ModelT", bound=SignalingModel)


def parse_payload(model: Type[ModelT], message: SignalingMessage) -> ModelT:
    """
    Validate a message payload against its model.

    Raises:
        InvalidPayloadError: The payload does not match the model
    """
    try:
        return model.model_validate(message.payload)
    except ValidationError as e:
        raise InvalidPayloadError(
            f"Invalid {message.type.value} payload",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        )
