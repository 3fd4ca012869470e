"""
Local media for a meeting session.

``LocalMedia`` holds the camera/microphone tracks shared by every peer link.
``PlayerMediaProvider`` opens devices through aiortc's FFmpeg-backed
``MediaPlayer``; any object implementing ``MediaProvider`` can replace it
(tests use in-memory tracks).
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, List, Optional, Tuple

import av
from aiortc.contrib.media import MediaPlayer

from syncmeet.config import Settings, settings as default_settings
from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.errors import MediaAcquisitionError, SignalingErrorCode

logger = get_logger(prefix="[Client-Media]")

AUDIO_ONLY_WARNING = "Could not access camera. You joined with audio only."
VIEWER_MODE_WARNING = "Could not access camera/microphone. You are in viewer mode."


@dataclass(frozen=True)
class LocalMedia:
    """The local stream: at most one audio and one video track."""
    audio_track: Optional[Any] = None
    video_track: Optional[Any] = None

    def tracks(self) -> List[Any]:
        return [t for t in (self.audio_track, self.video_track) if t is not None]

    @property
    def is_empty(self) -> bool:
        return not self.tracks()

    def with_video(self, video_track: Optional[Any]) -> "LocalMedia":
        """Same audio track, new video source."""
        return replace(self, video_track=video_track)

    def stop(self) -> None:
        """Release the underlying devices."""
        for track in self.tracks():
            track.stop()


class MediaProvider(ABC):
    """Source of camera, microphone and display-capture tracks."""

    @abstractmethod
    async def get_user_media(self, audio: bool = True, video: bool = True) -> LocalMedia:
        """
        Open the requested devices.

        Raises:
            MediaAcquisitionError: A requested device is denied or unavailable
        """

    @abstractmethod
    async def get_display_media(self) -> Any:
        """
        Start display capture and return its video track.

        Raises:
            MediaAcquisitionError: Capture is denied or unavailable
        """


class PlayerMediaProvider(MediaProvider):
    """Opens devices with ``aiortc.contrib.media.MediaPlayer``."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    async def _open(self, device: str, media_format: Optional[str], options: Optional[dict]) -> MediaPlayer:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: MediaPlayer(device, format=media_format, options=options))

    async def _open_track(self, kind: str, device: str, media_format: Optional[str], options=None) -> Any:
        try:
            player = await self._open(device, media_format, options)
        except (av.error.FFmpegError, OSError) as e:
            raise MediaAcquisitionError(
                f"Could not open {kind} device {device}: {e}",
                error_code=SignalingErrorCode.CAMERA_UNAVAILABLE if kind == "video" else SignalingErrorCode.MEDIA_UNAVAILABLE,
                details={"device": device, "kind": kind},
            ) from e
        track = player.video if kind == "video" else player.audio
        if track is None:
            raise MediaAcquisitionError(f"Device {device} has no {kind} stream", details={"device": device})
        return track

    async def get_user_media(self, audio: bool = True, video: bool = True) -> LocalMedia:
        video_track = None
        if video:
            video_track = await self._open_track(
                "video",
                self.settings.MEDIA_CAMERA_DEVICE,
                self.settings.MEDIA_CAMERA_FORMAT,
                {"video_size": self.settings.MEDIA_VIDEO_SIZE},
            )
        audio_track = None
        if audio:
            try:
                audio_track = await self._open_track(
                    "audio", self.settings.MEDIA_MICROPHONE_DEVICE, self.settings.MEDIA_MICROPHONE_FORMAT
                )
            except MediaAcquisitionError:
                if video_track is not None:
                    video_track.stop()
                raise
        return LocalMedia(audio_track=audio_track, video_track=video_track)

    async def get_display_media(self) -> Any:
        try:
            return await self._open_track(
                "video",
                self.settings.MEDIA_DISPLAY_DEVICE,
                self.settings.MEDIA_DISPLAY_FORMAT,
                {"video_size": self.settings.MEDIA_VIDEO_SIZE, "framerate": "15"},
            )
        except MediaAcquisitionError as e:
            raise MediaAcquisitionError(
                f"Screen capture unavailable: {e.message}",
                error_code=SignalingErrorCode.SCREEN_SHARE_UNAVAILABLE,
                details=e.details,
            ) from e


async def acquire_local_media(provider: MediaProvider) -> Tuple[LocalMedia, Optional[str]]:
    """
    Open camera and microphone, degrading instead of failing.

    Order: video+audio, then audio only, then an empty stream.

    Returns:
        The acquired media and a user-facing warning (None at full capability)
    """
    try:
        return await provider.get_user_media(audio=True, video=True), None
    except MediaAcquisitionError as e:
        logger.warning(f"Camera and microphone unavailable, trying audio only: {e.message}")

    try:
        return await provider.get_user_media(audio=True, video=False), AUDIO_ONLY_WARNING
    except MediaAcquisitionError as e:
        logger.warning(f"Microphone unavailable, continuing as viewer: {e.message}")

    return LocalMedia(), VIEWER_MODE_WARNING
