"""Error taxonomy shared by the relay and the peer client."""
from __future__ import annotations

import enum


class SignalingError(RuntimeError):
    """Base class for every error raised by signalroom."""


class MessageValidationError(SignalingError):
    """A signaling message was malformed, of unknown type, or missing a field."""


class CapacityError(SignalingError):
    """The requested room already holds its maximum number of participants."""

    def __init__(self, room: str, message: str = "Room is full") -> None:
        super().__init__(message)
        self.room = room


class TransportError(SignalingError):
    """A send was attempted while the signaling transport was not open."""


class NegotiationError(SignalingError):
    """Applying a session description or ICE candidate failed."""


class MediaErrorCategory(str, enum.Enum):
    PERMISSION_DENIED = "permission_denied"
    NO_DEVICE = "no_device"
    DEVICE_BUSY = "device_busy"
    UNSUPPORTED_CONSTRAINTS = "unsupported_constraints"
    CANCELLED = "cancelled"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


# DOM-style error names reported by capture APIs, including legacy aliases.
_CATEGORY_BY_NAME = {
    "NotAllowedError": MediaErrorCategory.PERMISSION_DENIED,
    "PermissionDeniedError": MediaErrorCategory.PERMISSION_DENIED,
    "NotFoundError": MediaErrorCategory.NO_DEVICE,
    "DevicesNotFoundError": MediaErrorCategory.NO_DEVICE,
    "NotReadableError": MediaErrorCategory.DEVICE_BUSY,
    "TrackStartError": MediaErrorCategory.DEVICE_BUSY,
    "OverconstrainedError": MediaErrorCategory.UNSUPPORTED_CONSTRAINTS,
    "ConstraintNotSatisfiedError": MediaErrorCategory.UNSUPPORTED_CONSTRAINTS,
    "AbortError": MediaErrorCategory.CANCELLED,
}

_CAMERA_MESSAGES = {
    MediaErrorCategory.PERMISSION_DENIED: (
        "Please allow camera and microphone access in your browser settings and try again."
    ),
    MediaErrorCategory.NO_DEVICE: "No camera or microphone found. Please connect a device and try again.",
    MediaErrorCategory.DEVICE_BUSY: (
        "Camera or microphone is already in use by another application. "
        "Please close other apps and try again."
    ),
    MediaErrorCategory.UNSUPPORTED_CONSTRAINTS: (
        "Unable to access camera/microphone with any settings. Please check your device permissions."
    ),
    MediaErrorCategory.UNSUPPORTED: "Media capture is not available in this environment.",
}

PERMISSION_BLOCKED_MESSAGE = (
    "Camera/microphone access is blocked. Please enable it in your browser settings "
    "(lock icon in address bar) and refresh the page."
)

_SCREEN_MESSAGES = {
    MediaErrorCategory.PERMISSION_DENIED: "Screen sharing permission denied",
    MediaErrorCategory.NO_DEVICE: "No screen/window available to share",
    MediaErrorCategory.DEVICE_BUSY: "Cannot access screen (may be in use)",
    MediaErrorCategory.CANCELLED: "Screen sharing was cancelled",
    MediaErrorCategory.UNSUPPORTED: "Screen sharing is not supported in this environment",
}


def categorize_device_error(name: str | None) -> MediaErrorCategory:
    """Map a capture error name onto a :class:`MediaErrorCategory`."""

    if not name:
        return MediaErrorCategory.UNKNOWN
    return _CATEGORY_BY_NAME.get(name, MediaErrorCategory.UNKNOWN)


class MediaAccessError(SignalingError):
    """Local capture could not be started."""

    def __init__(self, category: MediaErrorCategory, message: str) -> None:
        super().__init__(message)
        self.category = category

    @classmethod
    def for_camera(cls, category: MediaErrorCategory, detail: str | None = None) -> "MediaAccessError":
        prefix = "Failed to access camera/microphone. "
        text = _CAMERA_MESSAGES.get(category)
        if text is None:
            text = f"Error: {detail or 'Unknown error'}."
        if category is MediaErrorCategory.UNSUPPORTED_CONSTRAINTS:
            return cls(category, text)
        return cls(category, prefix + text)

    @classmethod
    def for_screen(cls, category: MediaErrorCategory, detail: str | None = None) -> "MediaAccessError":
        text = _SCREEN_MESSAGES.get(category) or f"Screen sharing failed: {detail or 'Unknown error'}"
        return cls(category, text)
