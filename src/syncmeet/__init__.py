"""SyncMeet: host-moderated WebRTC meeting rooms.

The ``webrtc`` package is the coordination server (admission, relay) and the
``client`` package is the peer negotiation side that browsers normally run.
"""

__version__ = "1.0.0"
