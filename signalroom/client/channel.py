"""Reconnecting WebSocket transport to the signaling relay."""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from contextlib import suppress
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from ..core.config import settings
from ..errors import MessageValidationError, TransportError
from ..schemas import signaling as schemas
from .interfaces import MessageHandler

logger = logging.getLogger(__name__)

ABNORMAL_CLOSURE = 1006

RELAY_TO_CLIENT = frozenset(
    {
        schemas.MessageType.JOINED,
        schemas.MessageType.USER_JOINED,
        schemas.MessageType.OFFER,
        schemas.MessageType.ANSWER,
        schemas.MessageType.ICE_CANDIDATE,
        schemas.MessageType.USER_LEFT,
        schemas.MessageType.ERROR,
    }
)


class ChannelState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


StateHandler = Callable[[ChannelState], None]


class SignalingChannel:
    """Carry signaling messages to and from one relay endpoint.

    An abnormal closure schedules a single reconnect after
    ``reconnect_delay`` seconds that re-sends the same ``join``. A clean
    close, a failed reconnect or an explicit :meth:`close` ends the channel.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        on_message: MessageHandler | None = None,
        on_state_change: StateHandler | None = None,
        reconnect_delay: float | None = None,
    ) -> None:
        self.url = url or settings.signaling_url
        self.on_message = on_message
        self.on_state_change = on_state_change
        self._reconnect_delay = (
            settings.reconnect_delay_seconds if reconnect_delay is None else reconnect_delay
        )
        self._ws: Any = None
        self._receive_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._state = ChannelState.IDLE
        self._left = False
        self._reconnecting = False
        self.room: str | None = None
        self.name: str | None = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    @property
    def pending_reconnect(self) -> Optional[asyncio.Task[None]]:
        return self._reconnect_task

    async def connect(self, room: str, name: str) -> None:
        """Open the transport and announce ``join`` for ``room``."""

        self.room = room
        self.name = name
        if not self._reconnecting:
            self._left = False
        self._set_state(ChannelState.RECONNECTING if self._reconnecting else ChannelState.CONNECTING)
        try:
            ws = await websockets.connect(self.url)
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as exc:
            logger.error("Failed to connect to signaling server %s: %s", self.url, exc)
            self._ws = None
            if not self._left:
                self._set_state(ChannelState.DISCONNECTED)
            raise TransportError(f"Failed to connect to signaling server at {self.url}") from exc

        if self._left:
            logger.info("Channel closed while connecting to %s; dropping the new socket", self.url)
            with suppress(ConnectionClosed, OSError):
                await ws.close()
            return

        self._ws = ws
        logger.info("Connected to signaling server %s", self.url)
        self._set_state(ChannelState.OPEN)
        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))
        await self.send(schemas.JoinMessage(room=room, name=name).to_wire())

    async def send(self, message: dict) -> None:
        """Send a message; raises :class:`TransportError` unless the channel is open."""

        if not self.is_open or self._ws is None:
            raise TransportError("NotConnected")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise TransportError("NotConnected") from exc

    async def close(self) -> None:
        """Leave for good: cancel any pending reconnect and close the socket."""

        self._left = True
        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
            self._reconnect_task = None
        ws, self._ws = self._ws, None
        self._set_state(ChannelState.CLOSED)
        if ws is not None:
            with suppress(ConnectionClosed, OSError):
                await ws.close()
        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _receive_loop(self, ws: Any) -> None:
        close_code: int | None = None
        try:
            async for raw in ws:
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            close_code = exc.rcvd.code if exc.rcvd is not None else ABNORMAL_CLOSURE
        self._handle_closed(ws, close_code)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            data = schemas.decode(raw)
            message = schemas.parse_message(data, allowed=RELAY_TO_CLIENT)
        except MessageValidationError as exc:
            logger.warning("Ignoring signaling message: %s", exc)
            return
        logger.debug("Received %s", message.type.value)
        if self.on_message is not None:
            self.on_message(data)

    def _handle_closed(self, ws: Any, close_code: int | None) -> None:
        if ws is not self._ws or self._left:
            return
        self._ws = None
        self._receive_task = None
        logger.info("Disconnected from signaling server (code=%s)", close_code)

        if close_code == ABNORMAL_CLOSURE and not self._reconnecting and self.room and self.name:
            self._set_state(ChannelState.RECONNECTING)
            self._reconnect_task = asyncio.create_task(self._reconnect_after(self._reconnect_delay))
        else:
            self._set_state(ChannelState.DISCONNECTED)

    async def _reconnect_after(self, delay: float) -> None:
        # Stays registered as the pending reconnect until the handshake is
        # over, so close() can cancel it mid-connect.
        try:
            await asyncio.sleep(delay)
            if self._left or self.room is None or self.name is None:
                return
            logger.warning("Connection lost. Attempting to reconnect to %s", self.url)
            self._reconnecting = True
            try:
                await self.connect(self.room, self.name)
            except TransportError:
                logger.error("Reconnect to %s failed; giving up", self.url)
        finally:
            self._reconnecting = False
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        self._state = state
        if self.on_state_change is not None:
            self.on_state_change(state)
