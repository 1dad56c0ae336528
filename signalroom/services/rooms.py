"""In-memory room registry for the signaling relay."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from ..errors import CapacityError, MessageValidationError

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]

ROOM_CAPACITY = 2


def always_writable() -> bool:
    return True


@dataclass(slots=True)
class Participant:
    """Connection handle plus display name for a room member."""

    connection_id: str
    name: str
    send: SendCallable
    is_writable: Callable[[], bool] = always_writable


@dataclass
class Room:
    """A room and the participants it owns, keyed by connection id in join order."""

    room_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)
    delivery_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def names(self) -> list[str]:
        return [participant.name for participant in self.participants.values()]


class RoomRegistry:
    """Track room membership and fan out messages between members.

    Joins and leaves run under one registry lock; each room additionally
    serializes its own deliveries so messages reach a member in send order.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}
        self._membership: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> int:
        return ROOM_CAPACITY

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def participants(self, room_id: str) -> list[str]:
        """Return the display names currently in ``room_id``."""

        room = self._rooms.get(room_id)
        return room.names() if room else []

    async def join(self, room_id: str, participant: Participant) -> list[str]:
        """Add ``participant`` to the room and return every member's name.

        Raises :class:`CapacityError` without touching state when the room is full.
        """

        async with self._lock:
            current = self._membership.get(participant.connection_id)
            if current is not None:
                raise MessageValidationError(f"Participant already belongs to room {current!r}")

            room = self._rooms.get(room_id)
            if room is not None and len(room.participants) >= ROOM_CAPACITY:
                raise CapacityError(room_id)
            if room is None:
                room = Room(room_id)
                self._rooms[room_id] = room
                logger.info("Room %s created", room_id)

            room.participants[participant.connection_id] = participant
            self._membership[participant.connection_id] = room_id
            logger.info(
                "User %s joined room %s (%d participants)",
                participant.name,
                room_id,
                len(room.participants),
            )
            return room.names()

    async def leave(self, room_id: str, connection_id: str) -> Optional[int]:
        """Remove a member, deleting the room once empty.

        Returns the number of members left, or ``None`` when there was nothing to remove.
        """

        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return None
            participant = room.participants.pop(connection_id, None)
            if participant is None:
                return None
            self._membership.pop(connection_id, None)

            remaining = len(room.participants)
            if remaining == 0:
                self._rooms.pop(room_id, None)
                logger.info("Room %s deleted (empty)", room_id)
            else:
                logger.info(
                    "User %s left room %s (%d participants remaining)",
                    participant.name,
                    room_id,
                    remaining,
                )
            return remaining

    async def broadcast_except(self, room_id: str, sender_id: str, message: dict) -> None:
        """Send ``message`` to every member of the room except the sender."""

        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return
            recipients = [
                participant
                for participant in room.participants.values()
                if participant.connection_id != sender_id
            ]

        if not recipients:
            return

        async with room.delivery_lock:
            targets = []
            for participant in recipients:
                if not participant.is_writable():
                    logger.debug("Skipping %s in room %s: transport not writable", participant.name, room_id)
                    continue
                targets.append(participant)
            results = await asyncio.gather(
                *(participant.send(message) for participant in targets),
                return_exceptions=True,
            )

        for participant, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Delivery of %s to %s in room %s failed: %s",
                    message.get("type"),
                    participant.name,
                    room_id,
                    result,
                )


registry = RoomRegistry()
