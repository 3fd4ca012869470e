"""
Peer Negotiation Engine

Maintains one peer connection per remote participant of a mesh meeting and
drives offer/answer/ICE exchange through the signaling channel.

Conventions:
- Participants already in the room offer to a newcomer when they receive
  ``user-connected``; the newcomer only answers.
- On offer collision the side with the lexicographically smaller connection
  id is polite: it drops its own offer by recreating its connection and
  answers. The impolite side ignores the incoming offer.
- Remote candidates arriving before the remote description are buffered and
  applied in arrival order once it is set.
- aiortc gathers its own candidates before setLocalDescription returns and
  puts them in the SDP, so it never fires ``icecandidate``. The handler only
  forwards candidates from connection objects that trickle them.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from syncmeet.client.media import LocalMedia, MediaProvider, PlayerMediaProvider
from syncmeet.client.peer_link import NegotiationState, PeerLink
from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.errors import MediaAcquisitionError, NegotiationError, SignalingError
from syncmeet.webrtc.ice import build_webrtc_config
from syncmeet.webrtc.schemas import (
    IceCandidatePayload,
    ParticipantInfo,
    SessionDescriptionPayload,
    SignalingMessage,
    WebRtcConfig,
)

logger = get_logger(prefix="[Peer-Negotiation]")

SendCallable = Callable[[SignalingMessage], Awaitable[None]]
PeerConnectionFactory = Callable[[], Any]

CANDIDATE_PREFIX = "candidate:"


def default_peer_connection_factory(config: Optional[WebRtcConfig] = None) -> PeerConnectionFactory:
    """Factory of aiortc peer connections using the configured ICE servers."""
    config = config or build_webrtc_config()
    ice_servers = [
        RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
        for server in config.ice_servers
    ]

    def factory() -> RTCPeerConnection:
        return RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))

    return factory


def parse_session_description(data: Any, expected_type: str) -> RTCSessionDescription:
    """
    Convert a relayed ``{type, sdp}`` object to an RTCSessionDescription.

    Raises:
        ValueError: Malformed description or unexpected type
    """
    description = SessionDescriptionPayload.model_validate(data)
    if description.type != expected_type:
        raise ValueError(f"Expected {expected_type} description, got {description.type}")
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


def parse_ice_candidate(data: Any) -> Optional[Any]:
    """
    Convert a relayed browser-style candidate to an aiortc candidate.

    Returns:
        The candidate, or None for an end-of-candidates marker

    Raises:
        ValueError: Malformed candidate
    """
    payload = IceCandidatePayload.model_validate(data)
    text = payload.candidate.strip()
    if not text:
        return None
    if text.startswith(CANDIDATE_PREFIX):
        text = text[len(CANDIDATE_PREFIX):]
    try:
        candidate = candidate_from_sdp(text)
    except (AssertionError, IndexError) as e:
        raise ValueError(f"Malformed ICE candidate: {payload.candidate}") from e
    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_m_line_index
    return candidate


def serialize_ice_candidate(candidate: Any) -> Dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


async def _maybe_await(result: Any) -> Any:
    # RTCRtpSender.replaceTrack is synchronous in aiortc
    if inspect.isawaitable(result):
        return await result
    return result


class PeerNegotiationEngine:
    """
    Mesh of peer links for one local participant.

    Args:
        send: Coroutine delivering a message on the signaling channel
        local_media: Tracks attached to every new link
        media_provider: Source of camera and display tracks for screen sharing
        peer_connection_factory: Zero-argument callable returning a peer connection
        negotiation_timeout: Seconds an offer may go unanswered, None for no limit
        on_remote_track: Called with ``(remote_connection_id, track)``
        on_error: Called with a SignalingError for recoverable failures
        on_screen_share_ended: Called, and awaited if it returns an awaitable,
            with True when the camera is sent again after a screen share
            stops, whether the user or the system ended it
    """

    def __init__(
        self,
        send: SendCallable,
        local_media: Optional[LocalMedia] = None,
        media_provider: Optional[MediaProvider] = None,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
        negotiation_timeout: Optional[float] = None,
        on_remote_track: Optional[Callable[[str, Any], None]] = None,
        on_error: Optional[Callable[[SignalingError], None]] = None,
        on_screen_share_ended: Optional[Callable[[bool], Any]] = None,
    ):
        self._send = send
        self.local_media = local_media or LocalMedia()
        self.media_provider = media_provider or PlayerMediaProvider()
        self._factory = peer_connection_factory
        self.negotiation_timeout = negotiation_timeout
        self.on_remote_track = on_remote_track
        self.on_error = on_error
        self.on_screen_share_ended = on_screen_share_ended

        self.local_connection_id: Optional[str] = None
        self.links: Dict[str, PeerLink] = {}
        self.roster: Dict[str, ParticipantInfo] = {}
        self.audio_enabled = True
        self.video_enabled = True
        self.is_screen_sharing = False
        self.warning: Optional[str] = None

        self._screen_track: Any = None
        self._media_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Roster and link lifecycle
    # ------------------------------------------------------------------

    def register_participants(self, participants: List[ParticipantInfo]) -> None:
        """Record the room roster received after joining."""
        for participant in participants:
            if participant.connection_id == self.local_connection_id:
                continue
            self.roster[participant.connection_id] = participant
            link = self.links.get(participant.connection_id)
            if link is not None:
                link.user_id = participant.user_id
                link.display_name = participant.display_name

    def is_polite_towards(self, remote_connection_id: str) -> bool:
        return (self.local_connection_id or "") < remote_connection_id

    def _new_connection(self, remote_connection_id: str) -> Any:
        if self._factory is None:
            self._factory = default_peer_connection_factory()
        pc = self._factory()

        @pc.on("track")
        def on_track(track):
            link = self.links.get(remote_connection_id)
            if link is None or link.connection is not pc:
                return
            logger.info(f"Received {track.kind} track from {remote_connection_id}")
            link.remote_tracks.append(track)
            if self.on_remote_track is not None:
                self.on_remote_track(remote_connection_id, track)

        @pc.on("icecandidate")
        async def on_ice_candidate(event):
            candidate = getattr(event, "candidate", event)
            if candidate is None or self.local_connection_id is None:
                return
            link = self.links.get(remote_connection_id)
            if link is None or link.connection is not pc:
                return
            ice = serialize_ice_candidate(candidate)
            await self._send(
                SignalingMessage.create_ice_candidate(
                    remote_connection_id,
                    self.local_connection_id,
                    ice["candidate"],
                    ice["sdpMid"],
                    ice["sdpMLineIndex"],
                )
            )

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"Connection to {remote_connection_id}: {pc.connectionState}")

        return pc

    async def _attach_local_tracks(self, link: PeerLink) -> None:
        for track in self.local_media.tracks():
            sender = link.connection.addTrack(track)
            if track.kind == "audio":
                link.audio_sender = sender
                if not self.audio_enabled:
                    await _maybe_await(sender.replaceTrack(None))
            else:
                link.video_sender = sender
                if not self.video_enabled:
                    await _maybe_await(sender.replaceTrack(None))

    async def _ensure_link(self, remote_connection_id: str) -> PeerLink:
        link = self.links.get(remote_connection_id)
        if link is not None:
            return link
        async with self._media_lock:
            link = self.links.get(remote_connection_id)
            if link is not None:
                return link
            participant = self.roster.get(remote_connection_id)
            link = PeerLink(
                remote_connection_id=remote_connection_id,
                connection=self._new_connection(remote_connection_id),
                polite=self.is_polite_towards(remote_connection_id),
                user_id=participant.user_id if participant else None,
                display_name=participant.display_name if participant else None,
            )
            await self._attach_local_tracks(link)
            self.links[remote_connection_id] = link
            logger.debug(f"Created link to {remote_connection_id} (polite={link.polite})")
        return link

    async def _recreate_connection(self, link: PeerLink) -> None:
        old = link.connection
        async with self._media_lock:
            link.reset_connection(self._new_connection(link.remote_connection_id))
            await self._attach_local_tracks(link)
        await self._close_connection(old, link.remote_connection_id)

    async def _close_connection(self, pc: Any, remote_connection_id: str) -> None:
        try:
            await pc.close()
        except Exception as e:
            logger.warning(f"Error closing connection to {remote_connection_id}: {e}")

    async def _close_link(self, link: PeerLink) -> None:
        link.cancel_timer()
        link.pending_remote_candidates.clear()
        link.transition(NegotiationState.CLOSED)
        await self._close_connection(link.connection, link.remote_connection_id)

    def _fail_link(self, link: PeerLink, error: Exception) -> None:
        logger.error(f"Negotiation with {link.remote_connection_id} failed: {error}", exc_info=True)
        link.cancel_timer()
        link.transition(NegotiationState.FAILED)
        self._report(NegotiationError(link.remote_connection_id, f"Negotiation failed: {error}"))

    def _report(self, error: SignalingError) -> None:
        if self.on_error is not None:
            self.on_error(error)

    # ------------------------------------------------------------------
    # Signaling events
    # ------------------------------------------------------------------

    async def handle_user_connected(self, connection_id: str, user_id: str, display_name: str) -> None:
        """A newcomer joined: create its link and send it an offer."""
        if connection_id == self.local_connection_id or self._closed:
            return
        self.roster[connection_id] = ParticipantInfo(
            connection_id=connection_id, user_id=user_id, display_name=display_name
        )
        link = await self._ensure_link(connection_id)
        link.user_id, link.display_name = user_id, display_name
        async with link.lock:
            if link.state != NegotiationState.IDLE:
                logger.debug(f"Link to {connection_id} already negotiating ({link.state.value})")
                return
            await self._send_offer(link)

    async def _send_offer(self, link: PeerLink) -> None:
        pc = link.connection
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            link.transition(NegotiationState.OFFER_CREATED)
            await self._send(
                SignalingMessage.create_offer(
                    link.remote_connection_id, self.local_connection_id, pc.localDescription.sdp
                )
            )
        except Exception as e:
            self._fail_link(link, e)
            return
        self._schedule_timeout(link)

    async def handle_offer(self, sender_id: str, payload: Dict[str, Any]) -> None:
        """Apply a remote offer and answer it, resolving glare by politeness."""
        if self._closed:
            return
        try:
            description = parse_session_description(payload.get("sdp"), "offer")
        except ValueError as e:
            logger.warning(f"Dropping malformed offer from {sender_id}: {e}")
            return

        link = await self._ensure_link(sender_id)
        async with link.lock:
            if link.state == NegotiationState.OFFER_CREATED:
                if not link.polite:
                    logger.info(f"Ignoring colliding offer from {sender_id}")
                    return
                logger.info(f"Offer collision with {sender_id}, rolling back local offer")
                await self._recreate_connection(link)
            elif link.state == NegotiationState.FAILED:
                await self._recreate_connection(link)

            pc = link.connection
            try:
                await pc.setRemoteDescription(description)
                link.remote_description_set = True
                link.transition(NegotiationState.OFFER_RECEIVED)
                await self._apply_buffered_candidates(link)
                answer = await pc.createAnswer()
                await pc.setLocalDescription(answer)
                link.transition(NegotiationState.STABLE)
                await self._send(
                    SignalingMessage.create_answer(sender_id, self.local_connection_id, pc.localDescription.sdp)
                )
            except Exception as e:
                self._fail_link(link, e)

    async def handle_answer(self, sender_id: str, payload: Dict[str, Any]) -> None:
        """Apply the answer to our outstanding offer."""
        link = self.links.get(sender_id)
        if link is None:
            logger.debug(f"Answer from {sender_id} without a link dropped")
            return
        try:
            description = parse_session_description(payload.get("sdp"), "answer")
        except ValueError as e:
            logger.warning(f"Dropping malformed answer from {sender_id}: {e}")
            return

        async with link.lock:
            if link.state != NegotiationState.OFFER_CREATED:
                logger.debug(f"Unexpected answer from {sender_id} in state {link.state.value}")
                return
            try:
                await link.connection.setRemoteDescription(description)
                link.remote_description_set = True
                link.cancel_timer()
                link.transition(NegotiationState.STABLE)
                await self._apply_buffered_candidates(link)
            except Exception as e:
                self._fail_link(link, e)

    async def handle_ice_candidate(self, sender_id: str, payload: Dict[str, Any]) -> None:
        """Apply a remote candidate, or buffer it until the remote description is set."""
        link = self.links.get(sender_id)
        if link is None:
            logger.debug(f"ICE candidate from {sender_id} without a link dropped")
            return
        try:
            candidate = parse_ice_candidate(payload.get("candidate"))
        except ValueError as e:
            logger.warning(f"Dropping malformed ICE candidate from {sender_id}: {e}")
            return
        if candidate is None:
            return

        async with link.lock:
            if not link.remote_description_set:
                link.buffer_candidate(candidate)
                return
            await self._add_candidate(link, candidate)

    async def _apply_buffered_candidates(self, link: PeerLink) -> None:
        for candidate in link.drain_candidates():
            await self._add_candidate(link, candidate)

    async def _add_candidate(self, link: PeerLink, candidate: Any) -> None:
        try:
            await link.connection.addIceCandidate(candidate)
        except Exception as e:
            logger.error(f"Failed to add ICE candidate from {link.remote_connection_id}: {e}")

    async def handle_user_disconnected(self, connection_id: str) -> None:
        """Tear down the link to a departed participant."""
        self.roster.pop(connection_id, None)
        link = self.links.pop(connection_id, None)
        if link is None:
            return
        await self._close_link(link)
        logger.info(f"Closed link to {connection_id}")

    # ------------------------------------------------------------------
    # Negotiation timeout
    # ------------------------------------------------------------------

    def _schedule_timeout(self, link: PeerLink) -> None:
        if not self.negotiation_timeout:
            return
        link.cancel_timer()
        loop = asyncio.get_running_loop()
        link.negotiation_timer = loop.call_later(
            self.negotiation_timeout, self._on_negotiation_timeout, link, link.connection
        )

    def _on_negotiation_timeout(self, link: PeerLink, pc: Any) -> None:
        link.negotiation_timer = None
        if link.connection is pc and link.state == NegotiationState.OFFER_CREATED:
            self._spawn(self._expire_link(link, pc))

    async def _expire_link(self, link: PeerLink, pc: Any) -> None:
        async with link.lock:
            if link.connection is not pc or link.state != NegotiationState.OFFER_CREATED:
                return
            logger.warning(f"No answer from {link.remote_connection_id} in {self.negotiation_timeout}s")
            link.transition(NegotiationState.FAILED)
            if self.links.get(link.remote_connection_id) is link:
                del self.links[link.remote_connection_id]
            await self._close_connection(pc, link.remote_connection_id)
        self._report(NegotiationError(link.remote_connection_id, "Negotiation timed out"))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Local media
    # ------------------------------------------------------------------

    async def _replace_on_links(self, kind: str, track: Any) -> None:
        for link in list(self.links.values()):
            sender = link.audio_sender if kind == "audio" else link.video_sender
            if sender is None:
                continue
            try:
                await _maybe_await(sender.replaceTrack(track))
            except Exception as e:
                logger.error(f"Failed to replace {kind} track for {link.remote_connection_id}: {e}")

    async def replace_video_track(self, track: Any) -> None:
        """Swap the outgoing video track on every link without renegotiation."""
        async with self._media_lock:
            self.local_media = self.local_media.with_video(track)
            await self._replace_on_links("video", track if self.video_enabled else None)

    async def toggle_audio(self, enabled: bool) -> bool:
        async with self._media_lock:
            self.audio_enabled = enabled
            await self._replace_on_links("audio", self.local_media.audio_track if enabled else None)
        return self.audio_enabled

    async def toggle_video(self, enabled: bool) -> bool:
        async with self._media_lock:
            self.video_enabled = enabled
            await self._replace_on_links("video", self.local_media.video_track if enabled else None)
        return self.video_enabled

    async def start_screen_share(self) -> bool:
        """
        Send display capture instead of the camera on every link.

        Returns:
            True when sharing, False if capture could not be started
        """
        if self.is_screen_sharing:
            return True
        try:
            display_track = await self.media_provider.get_display_media()
        except MediaAcquisitionError as e:
            logger.warning(f"Screen share unavailable: {e.message}")
            self.warning = e.message
            self._report(e)
            return False

        async with self._media_lock:
            if self._closed:
                display_track.stop()
                return False
            camera_track = self.local_media.video_track
            self.local_media = self.local_media.with_video(display_track)
            self._screen_track = display_track
            self.is_screen_sharing = True
            self.video_enabled = True
            await self._replace_on_links("video", display_track)
            if camera_track is not None:
                camera_track.stop()

        display_track.on("ended", lambda: self._on_display_ended(display_track))
        logger.info("Screen sharing started")
        return True

    def _on_display_ended(self, track: Any) -> None:
        if self._screen_track is track:
            logger.info("Display capture ended by the system")
            self._spawn(self._end_screen_share(track))

    async def stop_screen_share(self) -> bool:
        """
        Return to the camera.

        Returns:
            True when the camera is sent again, False when video stays off
        """
        restored = await self._end_screen_share(None)
        return bool(restored)

    async def _end_screen_share(self, expected_track: Any) -> Optional[bool]:
        # None when there was no share to end (or a different one is running)
        async with self._media_lock:
            display_track = self._screen_track
            if display_track is None:
                return None
            if expected_track is not None and display_track is not expected_track:
                return None
            self._screen_track = None
            self.is_screen_sharing = False

            camera_track = None
            try:
                camera_media = await self.media_provider.get_user_media(audio=False, video=True)
                camera_track = camera_media.video_track
            except MediaAcquisitionError as e:
                logger.warning(f"Could not restart camera after screen sharing: {e.message}")
                self.warning = "Could not restart camera after screen sharing. Video is off."
                self._report(e)

            if self._closed:
                if camera_track is not None:
                    camera_track.stop()
                display_track.stop()
                return None

            self.local_media = self.local_media.with_video(camera_track)
            if camera_track is None:
                self.video_enabled = False
            await self._replace_on_links("video", camera_track if self.video_enabled else None)
            display_track.stop()
            restored = self.video_enabled

        logger.info("Screen sharing stopped")
        if self.on_screen_share_ended is not None:
            await _maybe_await(self.on_screen_share_ended(restored))
        return restored

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Release local devices, then close every link."""
        self._closed = True
        media, screen_track = self.local_media, self._screen_track
        self.local_media = LocalMedia()
        self._screen_track = None
        self.is_screen_sharing = False
        media.stop()
        if screen_track is not None and screen_track is not media.video_track:
            screen_track.stop()

        links = list(self.links.values())
        self.links.clear()
        for link in links:
            await self._close_link(link)

        for task in list(self._tasks):
            task.cancel()
        logger.info(f"Closed {len(links)} peer links")
