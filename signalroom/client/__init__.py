"""Peer-side signaling client."""
from .channel import ChannelState, SignalingChannel
from .media import MediaSource, MediaSourceManager
from .negotiation import CallState, NegotiationEngine, NegotiationSession, create_room_id

__all__ = [
    "CallState",
    "ChannelState",
    "MediaSource",
    "MediaSourceManager",
    "NegotiationEngine",
    "NegotiationSession",
    "SignalingChannel",
    "create_room_id",
]
