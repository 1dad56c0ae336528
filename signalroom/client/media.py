"""Local media sources and their binding to the outgoing connection."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import (
    PERMISSION_BLOCKED_MESSAGE,
    MediaAccessError,
    MediaErrorCategory,
    categorize_device_error,
)
from .interfaces import DeviceError, DisplayCapture, MediaCapture, MediaStream, MediaTrack

logger = logging.getLogger(__name__)

IDEAL_CONSTRAINTS = {
    "video": {"width": {"ideal": 1280}, "height": {"ideal": 720}, "facingMode": "user"},
    "audio": {"echoCancellation": True, "noiseSuppression": True},
}
MINIMAL_CONSTRAINTS = {"video": True, "audio": True}
SCREEN_CONSTRAINTS = {"video": {"cursor": "always", "displaySurface": "monitor"}, "audio": True}


class MediaSource(str, enum.Enum):
    CAMERA_VIDEO = "camera-video"
    CAMERA_AUDIO = "camera-audio"
    SCREEN_VIDEO = "screen-video"
    SCREEN_AUDIO = "screen-audio"


@dataclass(slots=True)
class OutgoingTrack:
    source: MediaSource
    track: MediaTrack
    stream: MediaStream


@dataclass(slots=True)
class LocalPreview:
    """What the local user sees: the primary source plus an optional camera overlay."""

    primary: Optional[MediaStream]
    overlay: Optional[MediaTrack]


def _first(tracks) -> Optional[MediaTrack]:
    return tracks[0] if tracks else None


class MediaSourceManager:
    """Own the camera and screen streams and decide which tracks are sent."""

    def __init__(self, capture: MediaCapture | None, display: DisplayCapture | None = None) -> None:
        self._capture = capture
        self._display = display
        self.camera_stream: MediaStream | None = None
        self.screen_stream: MediaStream | None = None

    @property
    def screen_sharing(self) -> bool:
        return self.screen_stream is not None

    @property
    def camera_video(self) -> Optional[MediaTrack]:
        return _first(self.camera_stream.get_video_tracks()) if self.camera_stream else None

    @property
    def camera_audio(self) -> Optional[MediaTrack]:
        return _first(self.camera_stream.get_audio_tracks()) if self.camera_stream else None

    @property
    def screen_video(self) -> Optional[MediaTrack]:
        return _first(self.screen_stream.get_video_tracks()) if self.screen_stream else None

    @property
    def screen_audio(self) -> Optional[MediaTrack]:
        return _first(self.screen_stream.get_audio_tracks()) if self.screen_stream else None

    async def check_permissions(self) -> None:
        """Fail fast when camera or microphone access is already denied.

        ``prompt`` proceeds, since capture itself will ask. A capture object
        without ``query_permission``, or one that cannot answer the query,
        leaves the decision to :meth:`acquire_camera`.
        """

        query = getattr(self._capture, "query_permission", None)
        if query is None:
            logger.warning("Permission query not available, relying on capture errors")
            return
        try:
            camera = await query("camera")
            microphone = await query("microphone")
        except (DeviceError, NotImplementedError) as exc:
            logger.warning("Permission query failed (may not be supported): %s", exc)
            return
        logger.info("Permission state: camera=%s microphone=%s", camera, microphone)
        if "denied" in (camera, microphone):
            raise MediaAccessError(MediaErrorCategory.PERMISSION_DENIED, PERMISSION_BLOCKED_MESSAGE)

    async def acquire_camera(self) -> MediaStream:
        """Open camera and microphone, degrading constraints before giving up.

        Ideal constraints are tried first, then whatever the enumerated devices
        can offer. An over-constrained failure gets one last attempt with
        minimal constraints.
        """

        if self._capture is None:
            raise MediaAccessError.for_camera(MediaErrorCategory.UNSUPPORTED)

        try:
            devices = await self._capture.enumerate_devices()
            has_video = any(device.kind == "videoinput" for device in devices)
            has_audio = any(device.kind == "audioinput" for device in devices)
            try:
                stream = await self._capture.get_user_media(IDEAL_CONSTRAINTS)
            except DeviceError as exc:
                logger.info("Ideal constraints failed (%s); trying fallback constraints", exc.name)
                stream = await self._capture.get_user_media({"video": has_video, "audio": has_audio})
        except DeviceError as exc:
            category = categorize_device_error(exc.name)
            if category is not MediaErrorCategory.UNSUPPORTED_CONSTRAINTS:
                logger.error("Error accessing media devices: %s (%s)", exc.name, exc)
                raise MediaAccessError.for_camera(category, str(exc)) from exc
            try:
                stream = await self._capture.get_user_media(MINIMAL_CONSTRAINTS)
            except DeviceError as fallback_exc:
                logger.error("Minimal constraints failed: %s", fallback_exc.name)
                raise MediaAccessError.for_camera(category, str(fallback_exc)) from fallback_exc
            logger.info("Connected with basic settings")

        if not stream.get_video_tracks():
            logger.warning("No video track received")
        if not stream.get_audio_tracks():
            logger.warning("No audio track received")
        self.camera_stream = stream
        return stream

    async def start_screen(self) -> MediaTrack:
        """Start display capture and return its video track."""

        if self._display is None:
            raise MediaAccessError.for_screen(MediaErrorCategory.UNSUPPORTED)
        try:
            stream = await self._display.get_display_media(SCREEN_CONSTRAINTS)
        except DeviceError as exc:
            raise MediaAccessError.for_screen(categorize_device_error(exc.name), str(exc)) from exc

        video = _first(stream.get_video_tracks())
        if video is None:
            for track in stream.get_tracks():
                track.stop()
            raise MediaAccessError(MediaErrorCategory.UNKNOWN, "Failed to get screen video track")
        self.screen_stream = stream
        return video

    def stop_screen(self) -> None:
        if self.screen_stream is None:
            return
        for track in self.screen_stream.get_tracks():
            track.stop()
        self.screen_stream = None

    def active_video(self) -> Optional[MediaTrack]:
        """Return the track that should drive the outgoing video sender."""

        if self.screen_sharing:
            return self.screen_video
        return self.camera_video

    def outgoing_tracks(self) -> list[OutgoingTrack]:
        """Tracks to attach to a new connection; screen video takes the video slot."""

        tracks: list[OutgoingTrack] = []
        if self.screen_stream is not None:
            if self.screen_video is not None:
                tracks.append(OutgoingTrack(MediaSource.SCREEN_VIDEO, self.screen_video, self.screen_stream))
            if self.screen_audio is not None:
                tracks.append(OutgoingTrack(MediaSource.SCREEN_AUDIO, self.screen_audio, self.screen_stream))
        if self.camera_stream is not None:
            if self.camera_audio is not None:
                tracks.append(OutgoingTrack(MediaSource.CAMERA_AUDIO, self.camera_audio, self.camera_stream))
            if not self.screen_sharing and self.camera_video is not None:
                tracks.append(OutgoingTrack(MediaSource.CAMERA_VIDEO, self.camera_video, self.camera_stream))
        return tracks

    def bindings(self) -> dict[MediaSource, bool]:
        """Report which logical sources currently drive an outgoing sender."""

        bound = {item.source for item in self.outgoing_tracks()}
        return {source: source in bound for source in MediaSource}

    def preview(self) -> LocalPreview:
        if self.screen_sharing:
            camera = self.camera_video
            overlay = camera if camera is not None and camera.enabled else None
            return LocalPreview(primary=self.screen_stream, overlay=overlay)
        return LocalPreview(primary=self.camera_stream, overlay=None)

    def toggle_audio(self) -> bool:
        """Mute or unmute the microphone and return whether it is now enabled."""

        track = self.camera_audio
        if track is None:
            raise MediaAccessError(MediaErrorCategory.NO_DEVICE, "No audio track available")
        track.enabled = not track.enabled
        return track.enabled

    def toggle_video(self) -> bool:
        """Turn the camera on or off and return whether it is now enabled."""

        track = self.camera_video
        if track is None:
            raise MediaAccessError(MediaErrorCategory.NO_DEVICE, "No video track available")
        track.enabled = not track.enabled
        return track.enabled

    def stop_all(self) -> None:
        self.stop_screen()
        if self.camera_stream is not None:
            for track in self.camera_stream.get_tracks():
                track.stop()
            self.camera_stream = None
