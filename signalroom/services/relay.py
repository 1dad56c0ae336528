"""Per-connection signaling state machine for the relay."""
from __future__ import annotations

import enum
import logging
from typing import Any, Callable
from uuid import uuid4

from ..core.config import settings
from ..errors import CapacityError, MessageValidationError
from ..schemas import signaling as schemas
from .rooms import Participant, RoomRegistry, SendCallable, always_writable

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    UNJOINED = "unjoined"
    JOINED = "joined"
    LEFT = "left"


class RelayConnection:
    """Route messages for a single relay connection.

    The relay never inspects offer, answer or candidate bodies; it only
    decides who receives them.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        send: SendCallable,
        *,
        is_writable: Callable[[], bool] = always_writable,
        connection_id: str | None = None,
    ) -> None:
        self._registry = registry
        self._send = send
        self._is_writable = is_writable
        self.connection_id = connection_id or str(uuid4())
        self.state = ConnectionState.UNJOINED
        self.room: str | None = None
        self.name: str | None = None

    async def handle_text(self, raw: str | bytes) -> None:
        """Decode and handle one inbound frame."""

        try:
            data = schemas.decode(raw)
        except MessageValidationError as exc:
            logger.warning("Error parsing message on %s: %s", self.connection_id, exc)
            await self._send_error(str(exc))
            return
        await self.handle_message(data)

    async def handle_message(self, data: dict[str, Any]) -> None:
        """Apply one decoded message to the connection state machine."""

        try:
            message = schemas.parse_message(data, allowed=schemas.CLIENT_TO_RELAY)
        except MessageValidationError as exc:
            await self._send_error(str(exc))
            return

        if self.state is ConnectionState.LEFT:
            logger.debug("Dropping %s from %s: connection already left", message.type.value, self.connection_id)
            return

        if message.type is schemas.MessageType.JOIN:
            await self._handle_join(message)
        elif message.type is schemas.MessageType.LEAVE:
            await self.leave()
        else:
            await self._forward(message)

    async def leave(self) -> None:
        """Leave the joined room; later calls are no-ops."""

        if self.state is not ConnectionState.JOINED or self.room is None:
            return
        room = self.room
        self.state = ConnectionState.LEFT

        remaining = await self._registry.leave(room, self.connection_id)
        if remaining is None:
            return
        notice = schemas.UserLeftMessage(name=self.name or "Someone")
        await self._registry.broadcast_except(room, self.connection_id, notice.to_wire())

    async def close(self) -> None:
        """Handle transport closure exactly like an explicit leave."""

        logger.info("Signaling connection %s closed", self.connection_id)
        await self.leave()
        self.state = ConnectionState.LEFT

    async def _handle_join(self, message: schemas.JoinMessage) -> None:
        if self.state is ConnectionState.JOINED:
            await self._send_error(schemas.ALREADY_JOINED)
            return

        room = message.room
        if not room or not room.strip():
            await self._send_error(schemas.ROOM_REQUIRED)
            return

        name = (message.name or "").strip() or settings.default_display_name
        participant = Participant(
            connection_id=self.connection_id,
            name=name,
            send=self._send,
            is_writable=self._is_writable,
        )
        try:
            names = await self._registry.join(room, participant)
        except CapacityError as exc:
            logger.info("Rejected %s from room %s: %s", name, room, exc)
            await self._send_error(str(exc))
            return

        self.state = ConnectionState.JOINED
        self.room = room
        self.name = name

        await self._send(schemas.JoinedMessage(room=room, participants=names).to_wire())
        await self._registry.broadcast_except(
            room,
            self.connection_id,
            schemas.UserJoinedMessage(name=name).to_wire(),
        )

    async def _forward(self, message: schemas.SignalMessage) -> None:
        if self.state is not ConnectionState.JOINED or self.room is None:
            logger.debug("Dropping %s from %s: not in a room", message.type.value, self.connection_id)
            return
        await self._registry.broadcast_except(
            self.room,
            self.connection_id,
            schemas.forward_envelope(message),
        )

    async def _send_error(self, text: str) -> None:
        try:
            await self._send(schemas.ErrorMessage(message=text).to_wire())
        except Exception as exc:
            logger.warning("Could not report error to %s: %s", self.connection_id, exc)
