"""
Meeting client: local media, peer negotiation and the signaling session.
"""

from syncmeet.client.ephemeral import RaisedHands, Reaction, ReactionBoard
from syncmeet.client.media import LocalMedia, MediaProvider, PlayerMediaProvider, acquire_local_media
from syncmeet.client.negotiation import PeerNegotiationEngine
from syncmeet.client.peer_link import NegotiationState, PeerLink
from syncmeet.client.session import MeetingSession

__all__ = [
    "LocalMedia",
    "MediaProvider",
    "PlayerMediaProvider",
    "acquire_local_media",
    "PeerNegotiationEngine",
    "NegotiationState",
    "PeerLink",
    "MeetingSession",
    "Reaction",
    "ReactionBoard",
    "RaisedHands",
]
