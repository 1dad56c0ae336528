"""Two-peer WebRTC signaling relay and negotiation client."""

__version__ = "0.1.0"
