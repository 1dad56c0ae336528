"""Peer-side negotiation state machine.

Every input (user action, relay message, channel state change or
peer-connection callback) becomes an event on one queue, and a single worker
applies events in order. Handlers may suspend while awaiting the media or
peer-connection subsystem; events arriving meanwhile wait in the queue.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import random
import string
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from ..core.config import settings
from ..errors import (
    CapacityError,
    MessageValidationError,
    NegotiationError,
    SignalingError,
    TransportError,
)
from ..schemas import signaling as schemas
from .channel import ChannelState, SignalingChannel
from .interfaces import (
    IceCandidate,
    MediaStream,
    MediaTrack,
    PeerConnection,
    PeerConnectionFactory,
    RtpSender,
    SessionDescription,
)
from .media import MediaSource, MediaSourceManager

logger = logging.getLogger(__name__)

StatusHandler = Callable[[str], None]
ErrorHandler = Callable[[SignalingError], None]
RemoteStreamHandler = Callable[[Optional[MediaStream]], None]

STATUS_CONNECTING = "Connecting..."
STATUS_WAITING = "Waiting for participant..."
STATUS_CONNECTED = "Connected"
STATUS_CONNECTION_LOST = "Connection lost"
STATUS_RECONNECTING = "Connection lost. Attempting to reconnect..."
STATUS_DISCONNECTED = "Disconnected"
STATUS_LEFT = "Left the call"


class CallState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_LOCAL_MEDIA = "awaiting_local_media"
    SIGNALING_CONNECTING = "signaling_connecting"
    WAITING_FOR_PEER = "waiting_for_peer"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"


IN_ROOM_STATES = frozenset(
    {
        CallState.WAITING_FOR_PEER,
        CallState.OFFERING,
        CallState.ANSWERING,
        CallState.CONNECTED,
    }
)


def create_room_id() -> str:
    """Return a random seven character room id."""

    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choices(alphabet, k=7))


@dataclass
class NegotiationSession:
    """State of one call attempt in one room."""

    room: str
    name: str
    peer_connection: PeerConnection | None = None
    video_sender: RtpSender | None = None
    attached: dict[MediaSource, MediaTrack] = field(default_factory=dict)
    local_description: SessionDescription | None = None
    remote_description: SessionDescription | None = None
    pending_candidates: list[IceCandidate] = field(default_factory=list)
    remote_stream: MediaStream | None = None

    def reset_connection(self) -> None:
        self.peer_connection = None
        self.video_sender = None
        self.attached.clear()
        self.local_description = None
        self.remote_description = None
        self.pending_candidates.clear()
        self.remote_stream = None


@dataclass(slots=True)
class _Event:
    kind: str
    payload: Any = None
    future: asyncio.Future | None = None


class NegotiationEngine:
    """Drive offer/answer/ICE exchange for a two-party call.

    Errors raised while handling a user action propagate to the awaiting
    caller. Errors from relay messages and connection callbacks have no
    caller, so they are logged and passed to ``on_error`` instead.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        media: MediaSourceManager,
        peer_connection_factory: PeerConnectionFactory,
        *,
        rtc_configuration: dict | None = None,
        on_status: StatusHandler | None = None,
        on_error: ErrorHandler | None = None,
        on_remote_stream: RemoteStreamHandler | None = None,
    ) -> None:
        self._channel = channel
        self._media = media
        self._factory = peer_connection_factory
        self._rtc_configuration = rtc_configuration or settings.rtc_configuration()
        self._on_status = on_status
        self._on_error = on_error
        self._on_remote_stream = on_remote_stream

        self._queue: asyncio.Queue[_Event] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self.state = CallState.IDLE
        self.session: NegotiationSession | None = None

        channel.on_message = self.handle_message
        channel.on_state_change = self.handle_channel_state

        self._handlers: dict[str, Callable[[Any], Awaitable[Any]]] = {
            "join": self._on_join,
            "leave": self._on_leave,
            "toggle-screen": self._on_toggle_screen,
            "toggle-audio": self._on_toggle_audio,
            "toggle-video": self._on_toggle_video,
            "screen-ended": self._on_screen_ended,
            "message": self._on_message,
            "channel-state": self._on_channel_state,
            "local-candidate": self._on_local_candidate,
            "connection-state": self._on_connection_state,
            "ice-state": self._on_ice_state,
            "track": self._on_track,
        }
        self._message_handlers: dict[schemas.MessageType, Callable[[dict], Awaitable[None]]] = {
            schemas.MessageType.JOINED: self._on_joined,
            schemas.MessageType.USER_JOINED: self._on_user_joined,
            schemas.MessageType.OFFER: self._on_offer,
            schemas.MessageType.ANSWER: self._on_answer,
            schemas.MessageType.ICE_CANDIDATE: self._on_remote_candidate,
            schemas.MessageType.USER_LEFT: self._on_user_left,
            schemas.MessageType.ERROR: self._on_relay_error,
        }

    @property
    def media(self) -> MediaSourceManager:
        return self._media

    # User actions

    async def join(self, room: str, name: str | None = None) -> None:
        """Acquire local media, connect to the relay and join ``room``."""

        room = (room or "").strip()
        if not room:
            raise MessageValidationError("Please enter a room ID")
        display_name = (name or "").strip() or settings.default_display_name
        await self._submit("join", (room, display_name))

    async def leave(self) -> None:
        await self._submit("leave")

    async def toggle_screen_share(self) -> bool:
        """Start or stop screen sharing; returns whether sharing is now active."""

        return await self._submit("toggle-screen")

    async def toggle_audio(self) -> bool:
        return await self._submit("toggle-audio")

    async def toggle_video(self) -> bool:
        return await self._submit("toggle-video")

    # Inputs from collaborators

    def handle_message(self, message: dict) -> None:
        self._post("message", message)

    def handle_channel_state(self, state: ChannelState) -> None:
        self._post("channel-state", state)

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""

        await self._queue.join()

    async def shutdown(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    # Event queue

    def _submit(self, kind: str, payload: Any = None) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._post(kind, payload, future)
        return future

    def _post(self, kind: str, payload: Any = None, future: asyncio.Future | None = None) -> None:
        self._queue.put_nowait(_Event(kind, payload, future))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                result = await self._handlers[event.kind](event.payload)
            except asyncio.CancelledError:
                if event.future is not None and not event.future.done():
                    event.future.cancel()
                raise
            except Exception as exc:
                if event.future is not None:
                    if not event.future.done():
                        event.future.set_exception(exc)
                elif isinstance(exc, SignalingError):
                    self._surface(exc)
                else:
                    logger.exception("Unhandled error while processing %s", event.kind)
            else:
                if event.future is not None and not event.future.done():
                    event.future.set_result(result)
            finally:
                self._queue.task_done()

    # Helpers

    def _set_state(self, state: CallState) -> None:
        if state is not self.state:
            logger.debug("Call state %s -> %s", self.state.value, state.value)
            self.state = state

    def _status(self, text: str) -> None:
        logger.info("Status: %s", text)
        if self._on_status is not None:
            self._on_status(text)

    def _surface(self, exc: SignalingError) -> None:
        logger.warning("%s: %s", type(exc).__name__, exc)
        if self._on_error is not None:
            self._on_error(exc)

    def _current_pc(self, pc: PeerConnection) -> bool:
        return self.session is not None and self.session.peer_connection is pc

    async def _send(self, message: dict) -> bool:
        try:
            await self._channel.send(message)
        except TransportError as exc:
            self._surface(exc)
            return False
        return True

    def _create_peer_connection(self) -> PeerConnection:
        session = self.session
        if session is None:
            raise NegotiationError("No active call to create a peer connection for")
        if session.peer_connection is not None:
            self._close_peer_connection()

        pc = self._factory(self._rtc_configuration)
        pc.on_ice_candidate = lambda candidate: self._post("local-candidate", (pc, candidate))
        pc.on_connection_state_change = lambda state: self._post("connection-state", (pc, state))
        pc.on_ice_connection_state_change = lambda state: self._post("ice-state", (pc, state))
        pc.on_track = lambda track, streams: self._post("track", (pc, track, streams))

        outgoing = self._media.outgoing_tracks()
        if not outgoing:
            logger.warning("No local tracks to add to the peer connection")
        for item in outgoing:
            sender = pc.add_track(item.track, item.stream)
            session.attached[item.source] = item.track
            if item.track.kind == "video":
                session.video_sender = sender
        session.peer_connection = pc
        return pc

    def _close_peer_connection(self) -> None:
        session = self.session
        if session is None or session.peer_connection is None:
            return
        pc = session.peer_connection
        session.reset_connection()
        pc.close()

    async def _flush_candidates(self, pc: PeerConnection) -> None:
        session = self.session
        if session is None:
            return
        pending, session.pending_candidates = session.pending_candidates, []
        for candidate in pending:
            await self._add_candidate(pc, candidate)

    async def _add_candidate(self, pc: PeerConnection, candidate: IceCandidate) -> None:
        try:
            await pc.add_ice_candidate(candidate)
        except Exception as exc:
            self._surface(NegotiationError(f"Error adding ICE candidate: {exc}"))

    async def _replace_video(self, track: MediaTrack | None, source: MediaSource | None) -> bool:
        session = self.session
        if session is None or session.peer_connection is None or session.video_sender is None:
            return False
        if session.peer_connection.connection_state in ("closed", "failed"):
            logger.warning("Not replacing video track: connection is %s", session.peer_connection.connection_state)
            return False
        try:
            await session.video_sender.replace_track(track)
        except Exception as exc:
            self._surface(NegotiationError(f"Error replacing video track: {exc}"))
            return False
        session.attached.pop(MediaSource.CAMERA_VIDEO, None)
        session.attached.pop(MediaSource.SCREEN_VIDEO, None)
        if source is not None and track is not None:
            session.attached[source] = track
        return True

    def _mark_connected_if_ready(self, pc: PeerConnection) -> None:
        if pc.connection_state == "connected":
            self._set_state(CallState.CONNECTED)
            self._status(STATUS_CONNECTED)

    # Handlers for user actions

    async def _on_join(self, payload: tuple[str, str]) -> None:
        room, name = payload
        if self.state not in (CallState.IDLE, CallState.CLOSED):
            raise MessageValidationError("Already in a call")

        self.session = NegotiationSession(room=room, name=name)
        self._set_state(CallState.AWAITING_LOCAL_MEDIA)
        try:
            await self._media.check_permissions()
            await self._media.acquire_camera()
        except SignalingError:
            self.session = None
            self._set_state(CallState.CLOSED)
            raise

        self._set_state(CallState.SIGNALING_CONNECTING)
        self._status(STATUS_CONNECTING)
        try:
            await self._channel.connect(room, name)
        except TransportError:
            self._media.stop_all()
            self.session = None
            self._set_state(CallState.CLOSED)
            raise

    async def _on_leave(self, _: Any) -> None:
        self._media.stop_all()
        self._close_peer_connection()
        if self.session is not None and self._channel.is_open:
            await self._send(schemas.LeaveMessage(room=self.session.room).to_wire())
        await self._channel.close()
        if self.session is not None and self._on_remote_stream is not None:
            self._on_remote_stream(None)
        self.session = None
        self._set_state(CallState.IDLE)
        self._status(STATUS_LEFT)

    async def _on_toggle_screen(self, _: Any) -> bool:
        if self._media.screen_sharing:
            await self._stop_screen_share()
            return False

        track = await self._media.start_screen()
        track.on_ended = lambda: self._post("screen-ended", track)

        session = self.session
        if session is None or session.peer_connection is None:
            logger.info("Screen sharing started. Will be shared when peer connects.")
            return True
        if session.video_sender is None:
            logger.warning("No outgoing video sender; screen share is visible locally only")
            return True
        if await self._replace_video(track, MediaSource.SCREEN_VIDEO):
            logger.info("Screen sharing started")
        return True

    async def _stop_screen_share(self) -> None:
        self._media.stop_screen()
        camera = self._media.camera_video
        await self._replace_video(camera, MediaSource.CAMERA_VIDEO if camera is not None else None)
        logger.info("Screen sharing stopped")

    async def _on_screen_ended(self, track: MediaTrack) -> None:
        if self._media.screen_sharing and self._media.screen_video is track:
            await self._stop_screen_share()

    async def _on_toggle_audio(self, _: Any) -> bool:
        enabled = self._media.toggle_audio()
        logger.info("Microphone %s", "unmuted" if enabled else "muted")
        return enabled

    async def _on_toggle_video(self, _: Any) -> bool:
        enabled = self._media.toggle_video()
        logger.info("Video turned %s", "on" if enabled else "off")
        return enabled

    # Handlers for relay messages

    async def _on_message(self, message: dict) -> None:
        try:
            message_type = schemas.MessageType(message.get("type"))
        except ValueError:
            logger.warning("Unknown message type: %s", message.get("type"))
            return
        handler = self._message_handlers.get(message_type)
        if handler is None:
            logger.warning("Unexpected message type from relay: %s", message_type.value)
            return
        await handler(message)

    async def _on_joined(self, message: dict) -> None:
        logger.info("Joined room %s with %s", message.get("room"), message.get("participants"))
        if self.state is CallState.SIGNALING_CONNECTING:
            self._set_state(CallState.WAITING_FOR_PEER)
            self._status(STATUS_WAITING)

    async def _on_user_joined(self, message: dict) -> None:
        session = self.session
        if self.state not in IN_ROOM_STATES or session is None:
            logger.debug("Ignoring user-joined in state %s", self.state.value)
            return
        logger.info("%s joined the call", message.get("name"))

        pc = self._create_peer_connection()
        self._set_state(CallState.OFFERING)
        try:
            offer = await pc.create_offer()
            await pc.set_local_description(offer)
        except Exception as exc:
            raise NegotiationError(f"Error creating offer: {exc}") from exc
        session.local_description = offer
        await self._send(schemas.OfferMessage(room=session.room, offer=offer).to_wire())

    async def _on_offer(self, message: dict) -> None:
        session = self.session
        if self.state not in IN_ROOM_STATES or session is None:
            logger.debug("Ignoring offer in state %s", self.state.value)
            return
        if self.state is CallState.OFFERING:
            logger.warning("Ignoring offer received while offering")
            return

        pc = session.peer_connection or self._create_peer_connection()
        offer = message.get("offer")
        try:
            await pc.set_remote_description(offer)
            session.remote_description = offer
            await self._flush_candidates(pc)
            answer = await pc.create_answer()
            await pc.set_local_description(answer)
        except Exception as exc:
            raise NegotiationError(f"Error handling offer: {exc}") from exc
        session.local_description = answer
        self._set_state(CallState.ANSWERING)
        await self._send(schemas.AnswerMessage(room=session.room, answer=answer).to_wire())
        self._mark_connected_if_ready(pc)

    async def _on_answer(self, message: dict) -> None:
        session = self.session
        if session is None or session.peer_connection is None:
            logger.warning("Received answer without a peer connection")
            return
        pc = session.peer_connection
        answer = message.get("answer")
        try:
            await pc.set_remote_description(answer)
        except Exception as exc:
            raise NegotiationError(f"Error handling answer: {exc}") from exc
        session.remote_description = answer
        await self._flush_candidates(pc)
        self._mark_connected_if_ready(pc)

    async def _on_remote_candidate(self, message: dict) -> None:
        session = self.session
        if session is None or session.peer_connection is None:
            logger.debug("Dropping remote ICE candidate: no peer connection")
            return
        candidate = message.get("candidate")
        if session.remote_description is None:
            session.pending_candidates.append(candidate)
            return
        await self._add_candidate(session.peer_connection, candidate)

    async def _on_user_left(self, message: dict) -> None:
        logger.info("%s left the call", message.get("name"))
        if self.session is None:
            return
        self._close_peer_connection()
        if self._on_remote_stream is not None:
            self._on_remote_stream(None)
        if self.state in IN_ROOM_STATES:
            self._set_state(CallState.WAITING_FOR_PEER)
            self._status(STATUS_WAITING)

    async def _on_relay_error(self, message: dict) -> None:
        text = message.get("message") or "Unknown error"
        if text == schemas.ROOM_FULL and self.session is not None:
            error: SignalingError = CapacityError(self.session.room, text)
        else:
            error = MessageValidationError(text)

        if self.state is CallState.SIGNALING_CONNECTING:
            self._media.stop_all()
            await self._channel.close()
            self.session = None
            self._set_state(CallState.CLOSED)
        self._surface(error)

    # Handlers for channel and peer-connection callbacks

    async def _on_channel_state(self, state: ChannelState) -> None:
        if self.session is None:
            return
        if state is ChannelState.RECONNECTING:
            self._status(STATUS_RECONNECTING)
        elif state is ChannelState.DISCONNECTED:
            self._status(STATUS_DISCONNECTED)
            self._surface(TransportError("Disconnected from signaling server"))

    async def _on_local_candidate(self, payload: tuple[PeerConnection, IceCandidate | None]) -> None:
        pc, candidate = payload
        session = self.session
        if candidate is None or session is None or not self._current_pc(pc):
            return
        if not self._channel.is_open:
            logger.warning("Cannot send ICE candidate: signaling channel is %s", self._channel.state.value)
            return
        await self._send(schemas.IceCandidateMessage(room=session.room, candidate=candidate).to_wire())

    async def _on_connection_state(self, payload: tuple[PeerConnection, str]) -> None:
        pc, state = payload
        if not self._current_pc(pc):
            return
        logger.info("Connection state: %s", state)
        if state == "connected":
            if self.state in (CallState.OFFERING, CallState.ANSWERING):
                self._set_state(CallState.CONNECTED)
            self._status(STATUS_CONNECTED)
            screen = self._media.screen_video
            session = self.session
            if (
                screen is not None
                and session is not None
                and session.video_sender is not None
                and session.video_sender.track is not screen
            ):
                await self._replace_video(screen, MediaSource.SCREEN_VIDEO)
        elif state in ("disconnected", "failed"):
            self._status(STATUS_CONNECTION_LOST)

    async def _on_ice_state(self, payload: tuple[PeerConnection, str]) -> None:
        pc, state = payload
        if not self._current_pc(pc):
            return
        logger.info("ICE connection state: %s", state)
        if state == "failed":
            try:
                await pc.restart_ice()
            except Exception as exc:
                raise NegotiationError(f"ICE restart failed: {exc}") from exc

    async def _on_track(self, payload: tuple[PeerConnection, MediaTrack, Sequence[MediaStream]]) -> None:
        pc, track, streams = payload
        session = self.session
        if session is None or not self._current_pc(pc):
            return
        logger.info("Received remote %s track", track.kind)
        if not streams:
            return
        session.remote_stream = streams[0]
        if self._on_remote_stream is not None:
            self._on_remote_stream(streams[0])
        self._status(STATUS_CONNECTED)
