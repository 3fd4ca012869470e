"""
Signaling Module

Room admission, host management and message relay for peer-to-peer meetings.
"""

from syncmeet.webrtc.hub import SignalingHub, signaling_hub
from syncmeet.webrtc.router import router
from syncmeet.webrtc.schemas import IceServerConfig, MessageType, SignalingMessage, WebRtcConfig

__all__ = [
    "router",
    "SignalingHub",
    "signaling_hub",
    "SignalingMessage",
    "WebRtcConfig",
    "IceServerConfig",
    "MessageType",
]
