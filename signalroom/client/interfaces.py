"""Capability interfaces for the media and peer-connection collaborators.

The negotiation client never talks to a concrete WebRTC stack. Whatever
environment hosts it (a browser bridge, aiortc, a test double) supplies
objects shaped like the protocols below.
"""
from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, Sequence

SessionDescription = dict
IceCandidate = Any


class DeviceError(Exception):
    """Failure raised by a capture API, carrying the DOM-style error ``name``."""

    def __init__(self, name: str, message: str = "") -> None:
        super().__init__(message or name)
        self.name = name


class MediaTrack(Protocol):
    kind: str
    id: str
    enabled: bool
    on_ended: Optional[Callable[[], None]]

    def stop(self) -> None: ...


class MediaStream(Protocol):
    def get_tracks(self) -> Sequence[MediaTrack]: ...

    def get_audio_tracks(self) -> Sequence[MediaTrack]: ...

    def get_video_tracks(self) -> Sequence[MediaTrack]: ...


class MediaDeviceInfo(Protocol):
    kind: str


class MediaCapture(Protocol):
    async def enumerate_devices(self) -> Sequence[MediaDeviceInfo]: ...

    async def get_user_media(self, constraints: dict) -> MediaStream: ...


class PermissionQuery(Protocol):
    """Optional extra on a :class:`MediaCapture`.

    ``query_permission("camera")`` returns ``"granted"``, ``"prompt"`` or
    ``"denied"``; it may raise :class:`DeviceError` or
    :class:`NotImplementedError` when the name cannot be queried.
    """

    async def query_permission(self, name: str) -> str: ...


class DisplayCapture(Protocol):
    async def get_display_media(self, constraints: dict) -> MediaStream: ...


class RtpSender(Protocol):
    track: Optional[MediaTrack]

    async def replace_track(self, track: Optional[MediaTrack]) -> None: ...


class PeerConnection(Protocol):
    connection_state: str
    ice_connection_state: str

    on_ice_candidate: Optional[Callable[[Optional[IceCandidate]], None]]
    on_connection_state_change: Optional[Callable[[str], None]]
    on_ice_connection_state_change: Optional[Callable[[str], None]]
    on_track: Optional[Callable[[MediaTrack, Sequence[MediaStream]], None]]

    def add_track(self, track: MediaTrack, stream: MediaStream) -> RtpSender: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    async def restart_ice(self) -> None: ...

    def close(self) -> None: ...


PeerConnectionFactory = Callable[[dict], PeerConnection]
MessageHandler = Callable[[dict], None]
