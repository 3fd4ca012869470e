"""
Relay Router

Forwards negotiation payloads to one addressed connection and ephemeral room
signals (chat, reactions, raised hands, media toggles) to the members of a
room. Payload content is validated only as far as addressing requires and is
forwarded verbatim; the envelope's senderId is stamped with the real source.
"""

from datetime import datetime, timezone
from typing import Dict, List

from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.rooms import Delivery, RoomDirectory
from syncmeet.webrtc.schemas import (
    ChatMessagePayload,
    DirectedSignalPayload,
    HandTogglePayload,
    MediaTogglePayload,
    MessageType,
    ReactionPayload,
    SignalingMessage,
    parse_payload,
)

logger = get_logger(prefix="[Relay-Router]")

# Inbound broadcast type -> (payload model, outbound type, echo to sender)
BROADCAST_ROUTES: Dict[MessageType, tuple] = {
    MessageType.CHAT_MESSAGE: (ChatMessagePayload, MessageType.CHAT_MESSAGE, True),
    MessageType.SEND_REACTION: (ReactionPayload, MessageType.PEER_REACTION, False),
    MessageType.TOGGLE_HAND: (HandTogglePayload, MessageType.PEER_HAND_TOGGLED, False),
    MessageType.TOGGLE_MEDIA: (MediaTogglePayload, MessageType.PEER_TOGGLED_MEDIA, False),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RelayRouter:
    """Stateless forwarding on top of the room directory's membership view."""

    def __init__(self, directory: RoomDirectory):
        self.directory = directory

    def route_directed(self, sender_id: str, message: SignalingMessage) -> List[Delivery]:
        """
        Forward an offer, answer or ICE candidate to its target.

        Raises:
            InvalidPayloadError: The payload has no target
        """
        addressed = parse_payload(DirectedSignalPayload, message)
        outbound = SignalingMessage(
            type=message.type,
            payload=message.payload,
            sender_id=sender_id,
            room_id=message.room_id,
            timestamp=_now(),
        )
        logger.debug(
            f"Relaying {message.type.value} {sender_id} -> {addressed.target}",
            extra={"sender_id": sender_id, "target": addressed.target},
        )
        return [Delivery(addressed.target, outbound)]

    def route_broadcast(self, sender_id: str, message: SignalingMessage) -> List[Delivery]:
        """
        Forward a room signal to the room's participants.

        Chat is echoed to the sender too; reactions, hand and media toggles are
        not. Signals from connections outside the room are dropped.

        Raises:
            InvalidPayloadError: The payload does not match the message type
        """
        model, outbound_type, echo = BROADCAST_ROUTES[message.type]
        payload = parse_payload(model, message)
        room_id = payload.room_id

        if not self.directory.is_participant(room_id, sender_id):
            logger.warning(
                f"Dropping {message.type.value} from {sender_id}: not a participant of {room_id}",
                extra={"sender_id": sender_id, "room_id": room_id},
            )
            return []

        outbound = SignalingMessage(
            type=outbound_type,
            payload=message.payload,
            sender_id=sender_id,
            room_id=room_id,
            timestamp=_now(),
        )
        recipients = [
            connection_id
            for connection_id in self.directory.participant_ids(room_id)
            if echo or connection_id != sender_id
        ]
        logger.debug(
            f"Broadcasting {outbound_type.value} from {sender_id} to {len(recipients)} participant(s)",
            extra={"room_id": room_id, "sender_id": sender_id},
        )
        return [Delivery(connection_id, outbound) for connection_id in recipients]
