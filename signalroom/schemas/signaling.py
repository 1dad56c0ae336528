"""Data contracts for the signaling wire protocol."""
from __future__ import annotations

import enum
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import MessageValidationError

UNKNOWN_TYPE = "Unknown message type"
INVALID_FORMAT = "Invalid message format"
ROOM_REQUIRED = "Room ID is required"
ROOM_FULL = "Room is full"
ALREADY_JOINED = "Already joined a room"


class MessageType(str, enum.Enum):
    JOIN = "join"
    JOINED = "joined"
    USER_JOINED = "user-joined"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    LEAVE = "leave"
    USER_LEFT = "user-left"
    ERROR = "error"


class SignalMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: MessageType

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class JoinMessage(SignalMessage):
    type: MessageType = MessageType.JOIN
    room: str | None = Field(default=None, description="Room identifier chosen by the client")
    name: str | None = Field(default=None, description="Display name")


class JoinedMessage(SignalMessage):
    type: MessageType = MessageType.JOINED
    room: str
    participants: list[str]


class UserJoinedMessage(SignalMessage):
    type: MessageType = MessageType.USER_JOINED
    name: str


class OfferMessage(SignalMessage):
    type: MessageType = MessageType.OFFER
    room: str | None = None
    offer: Any = None


class AnswerMessage(SignalMessage):
    type: MessageType = MessageType.ANSWER
    room: str | None = None
    answer: Any = None


class IceCandidateMessage(SignalMessage):
    type: MessageType = MessageType.ICE_CANDIDATE
    room: str | None = None
    candidate: Any = None


class LeaveMessage(SignalMessage):
    type: MessageType = MessageType.LEAVE
    room: str | None = None


class UserLeftMessage(SignalMessage):
    type: MessageType = MessageType.USER_LEFT
    name: str


class ErrorMessage(SignalMessage):
    type: MessageType = MessageType.ERROR
    message: str


MESSAGE_MODELS: dict[MessageType, type[SignalMessage]] = {
    MessageType.JOIN: JoinMessage,
    MessageType.JOINED: JoinedMessage,
    MessageType.USER_JOINED: UserJoinedMessage,
    MessageType.OFFER: OfferMessage,
    MessageType.ANSWER: AnswerMessage,
    MessageType.ICE_CANDIDATE: IceCandidateMessage,
    MessageType.LEAVE: LeaveMessage,
    MessageType.USER_LEFT: UserLeftMessage,
    MessageType.ERROR: ErrorMessage,
}

CLIENT_TO_RELAY = frozenset(
    {
        MessageType.JOIN,
        MessageType.OFFER,
        MessageType.ANSWER,
        MessageType.ICE_CANDIDATE,
        MessageType.LEAVE,
    }
)

# Field carrying the opaque body of each forwarded negotiation message.
PAYLOAD_FIELDS: dict[MessageType, str] = {
    MessageType.OFFER: "offer",
    MessageType.ANSWER: "answer",
    MessageType.ICE_CANDIDATE: "candidate",
}


def decode(raw: str | bytes) -> dict[str, Any]:
    """Decode a text frame into a JSON object."""

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MessageValidationError(INVALID_FORMAT) from exc
    if not isinstance(data, dict):
        raise MessageValidationError(INVALID_FORMAT)
    return data


def parse_message(data: dict[str, Any], allowed: frozenset[MessageType] | None = None) -> SignalMessage:
    """Validate a decoded message against the model for its ``type``.

    ``allowed`` restricts which types are accepted; anything outside it is
    reported as an unknown type.
    """

    try:
        message_type = MessageType(data.get("type"))
    except ValueError as exc:
        raise MessageValidationError(UNKNOWN_TYPE) from exc
    if allowed is not None and message_type not in allowed:
        raise MessageValidationError(UNKNOWN_TYPE)
    try:
        return MESSAGE_MODELS[message_type].model_validate(data)
    except ValidationError as exc:
        raise MessageValidationError(INVALID_FORMAT) from exc


def forward_envelope(message: SignalMessage) -> dict[str, Any]:
    """Build the relayed form of an offer/answer/candidate: type plus opaque body."""

    field = PAYLOAD_FIELDS[message.type]
    envelope: dict[str, Any] = {"type": message.type.value}
    body = getattr(message, field)
    if body is not None:
        envelope[field] = body
    return envelope
