"""Tests for local media acquisition and source binding."""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from signalroom.client.interfaces import DeviceError
from signalroom.client.media import (
    IDEAL_CONSTRAINTS,
    MINIMAL_CONSTRAINTS,
    SCREEN_CONSTRAINTS,
    MediaSource,
    MediaSourceManager,
)
from signalroom.errors import PERMISSION_BLOCKED_MESSAGE, MediaAccessError, MediaErrorCategory


class FakeTrack:
    def __init__(self, kind: str, track_id: str) -> None:
        self.kind = kind
        self.id = track_id
        self.enabled = True
        self.stopped = False
        self.on_ended = None

    def stop(self) -> None:
        self.stopped = True


class FakeStream:
    def __init__(self, *tracks: FakeTrack) -> None:
        self.tracks = list(tracks)

    def get_tracks(self):
        return list(self.tracks)

    def get_audio_tracks(self):
        return [track for track in self.tracks if track.kind == "audio"]

    def get_video_tracks(self):
        return [track for track in self.tracks if track.kind == "video"]


class FakeCapture:
    def __init__(self, stream: FakeStream, failures: list[DeviceError] | None = None) -> None:
        self.stream = stream
        self.failures = list(failures or [])
        self.requests: list[dict] = []

    async def enumerate_devices(self):
        return [SimpleNamespace(kind="videoinput"), SimpleNamespace(kind="audioinput")]

    async def get_user_media(self, constraints: dict) -> FakeStream:
        self.requests.append(constraints)
        if self.failures:
            raise self.failures.pop(0)
        return self.stream


class PermissionCapture(FakeCapture):
    def __init__(self, stream: FakeStream, states: dict[str, str] | None = None) -> None:
        super().__init__(stream)
        self.states = states
        self.queried: list[str] = []

    async def query_permission(self, name: str) -> str:
        self.queried.append(name)
        if self.states is None:
            raise NotImplementedError(name)
        return self.states[name]


class FakeDisplay:
    def __init__(self, stream: FakeStream | None = None, error: DeviceError | None = None) -> None:
        self.stream = stream
        self.error = error
        self.requests: list[dict] = []

    async def get_display_media(self, constraints: dict) -> FakeStream:
        self.requests.append(constraints)
        if self.error is not None:
            raise self.error
        assert self.stream is not None
        return self.stream


def camera() -> FakeStream:
    return FakeStream(FakeTrack("audio", "mic"), FakeTrack("video", "cam"))


@pytest.mark.asyncio
async def test_acquire_camera_with_ideal_constraints():
    stream = camera()
    capture = FakeCapture(stream)
    media = MediaSourceManager(capture)

    assert await media.acquire_camera() is stream
    assert capture.requests == [IDEAL_CONSTRAINTS]
    assert media.camera_video.id == "cam"
    assert media.camera_audio.id == "mic"


@pytest.mark.asyncio
async def test_overconstrained_falls_back_to_minimal_constraints():
    capture = FakeCapture(
        camera(),
        failures=[DeviceError("OverconstrainedError"), DeviceError("OverconstrainedError")],
    )
    media = MediaSourceManager(capture)

    await media.acquire_camera()

    assert capture.requests == [IDEAL_CONSTRAINTS, {"video": True, "audio": True}, MINIMAL_CONSTRAINTS]


@pytest.mark.asyncio
async def test_overconstrained_gives_up_after_minimal_attempt():
    capture = FakeCapture(camera(), failures=[DeviceError("OverconstrainedError")] * 3)
    media = MediaSourceManager(capture)

    with pytest.raises(MediaAccessError) as excinfo:
        await media.acquire_camera()

    assert excinfo.value.category is MediaErrorCategory.UNSUPPORTED_CONSTRAINTS
    assert len(capture.requests) == 3
    assert media.camera_stream is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("name", "category"),
    [
        ("NotAllowedError", MediaErrorCategory.PERMISSION_DENIED),
        ("PermissionDeniedError", MediaErrorCategory.PERMISSION_DENIED),
        ("NotFoundError", MediaErrorCategory.NO_DEVICE),
        ("NotReadableError", MediaErrorCategory.DEVICE_BUSY),
        ("SomethingOdd", MediaErrorCategory.UNKNOWN),
    ],
)
async def test_capture_errors_are_categorized(name, category):
    capture = FakeCapture(camera(), failures=[DeviceError(name), DeviceError(name)])
    media = MediaSourceManager(capture)

    with pytest.raises(MediaAccessError) as excinfo:
        await media.acquire_camera()

    assert excinfo.value.category is category
    assert str(excinfo.value).startswith("Failed to access camera/microphone.")


@pytest.mark.asyncio
async def test_missing_capture_api_is_unsupported():
    media = MediaSourceManager(None)

    with pytest.raises(MediaAccessError) as excinfo:
        await media.acquire_camera()

    assert excinfo.value.category is MediaErrorCategory.UNSUPPORTED


@pytest.mark.asyncio
async def test_screen_video_takes_the_outgoing_video_slot():
    screen_stream = FakeStream(FakeTrack("video", "screen"), FakeTrack("audio", "screen-audio"))
    display = FakeDisplay(screen_stream)
    media = MediaSourceManager(FakeCapture(camera()), display)
    await media.acquire_camera()

    bound = {item.source: item.track.id for item in media.outgoing_tracks()}
    assert bound == {MediaSource.CAMERA_AUDIO: "mic", MediaSource.CAMERA_VIDEO: "cam"}

    track = await media.start_screen()
    assert track.id == "screen"
    assert display.requests == [SCREEN_CONSTRAINTS]
    assert media.active_video() is track

    bindings = media.bindings()
    assert bindings[MediaSource.SCREEN_VIDEO] is True
    assert bindings[MediaSource.SCREEN_AUDIO] is True
    assert bindings[MediaSource.CAMERA_AUDIO] is True
    assert bindings[MediaSource.CAMERA_VIDEO] is False

    preview = media.preview()
    assert preview.primary is screen_stream
    assert preview.overlay is media.camera_video

    media.stop_screen()
    assert all(t.stopped for t in screen_stream.tracks)
    assert media.active_video() is media.camera_video
    assert media.preview().overlay is None


@pytest.mark.asyncio
async def test_disabled_camera_is_not_shown_as_overlay():
    media = MediaSourceManager(FakeCapture(camera()), FakeDisplay(FakeStream(FakeTrack("video", "screen"))))
    await media.acquire_camera()
    assert media.toggle_video() is False

    await media.start_screen()

    assert media.preview().overlay is None


@pytest.mark.asyncio
async def test_screen_without_video_track_is_rejected():
    audio_only = FakeStream(FakeTrack("audio", "screen-audio"))
    media = MediaSourceManager(FakeCapture(camera()), FakeDisplay(audio_only))

    with pytest.raises(MediaAccessError):
        await media.start_screen()

    assert audio_only.tracks[0].stopped
    assert not media.screen_sharing


@pytest.mark.asyncio
async def test_screen_share_cancelled_by_user():
    media = MediaSourceManager(FakeCapture(camera()), FakeDisplay(error=DeviceError("AbortError")))

    with pytest.raises(MediaAccessError) as excinfo:
        await media.start_screen()

    assert excinfo.value.category is MediaErrorCategory.CANCELLED
    assert str(excinfo.value) == "Screen sharing was cancelled"


@pytest.mark.asyncio
async def test_toggle_audio_and_stop_all():
    stream = camera()
    media = MediaSourceManager(FakeCapture(stream))
    await media.acquire_camera()

    assert media.toggle_audio() is False
    assert media.toggle_audio() is True

    media.stop_all()
    assert all(track.stopped for track in stream.tracks)
    assert media.camera_stream is None
    with pytest.raises(MediaAccessError):
        media.toggle_audio()


@pytest.mark.asyncio
async def test_denied_permission_fails_before_capture():
    capture = PermissionCapture(camera(), {"camera": "granted", "microphone": "denied"})
    media = MediaSourceManager(capture)

    with pytest.raises(MediaAccessError) as excinfo:
        await media.check_permissions()

    assert excinfo.value.category is MediaErrorCategory.PERMISSION_DENIED
    assert str(excinfo.value) == PERMISSION_BLOCKED_MESSAGE
    assert capture.queried == ["camera", "microphone"]
    assert capture.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "states",
    [
        {"camera": "prompt", "microphone": "prompt"},
        {"camera": "granted", "microphone": "prompt"},
        None,
    ],
)
async def test_prompt_or_unanswerable_permission_proceeds_to_capture(states):
    capture = PermissionCapture(camera(), states)
    media = MediaSourceManager(capture)

    await media.check_permissions()
    await media.acquire_camera()

    assert capture.queried[0] == "camera"
    assert capture.requests == [IDEAL_CONSTRAINTS]


@pytest.mark.asyncio
async def test_capture_without_permission_query_proceeds():
    capture = FakeCapture(camera())
    media = MediaSourceManager(capture)

    await media.check_permissions()

    assert capture.requests == []
