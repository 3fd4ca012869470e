"""Per-remote-participant negotiation state."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from syncmeet.managers.logging_manager import get_logger

logger = get_logger(prefix="[Peer-Link]")


class NegotiationState(str, Enum):
    """SDP exchange progress of one peer link."""
    IDLE = "idle"
    OFFER_CREATED = "offer-created"
    OFFER_RECEIVED = "offer-received"
    STABLE = "stable"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class PeerLink:
    """
    Negotiation and media relationship with one remote participant.

    ``polite`` decides glare: when both sides offer at once the polite side
    drops its own offer and answers, the impolite side ignores the incoming one.
    Remote ICE candidates that arrive before the remote description are kept
    in ``pending_remote_candidates``.
    """
    remote_connection_id: str
    connection: Any
    polite: bool
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    state: NegotiationState = NegotiationState.IDLE
    remote_description_set: bool = False
    pending_remote_candidates: List[Any] = field(default_factory=list)
    audio_sender: Any = None
    video_sender: Any = None
    remote_tracks: List[Any] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    negotiation_timer: Optional[asyncio.TimerHandle] = None

    def transition(self, state: NegotiationState) -> None:
        if state != self.state:
            logger.debug(f"{self.remote_connection_id}: {self.state.value} -> {state.value}")
            self.state = state

    def buffer_candidate(self, candidate: Any) -> None:
        self.pending_remote_candidates.append(candidate)

    def drain_candidates(self) -> List[Any]:
        candidates, self.pending_remote_candidates = self.pending_remote_candidates, []
        return candidates

    def cancel_timer(self) -> None:
        if self.negotiation_timer is not None:
            self.negotiation_timer.cancel()
            self.negotiation_timer = None

    def reset_connection(self, connection: Any) -> None:
        """Swap in a fresh connection object, keeping identity and buffered candidates."""
        self.cancel_timer()
        self.connection = connection
        self.remote_description_set = False
        self.audio_sender = None
        self.video_sender = None
        self.remote_tracks = []
        self.transition(NegotiationState.IDLE)
