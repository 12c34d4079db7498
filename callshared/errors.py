"""Error taxonomy for the call controller."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class CallError(Exception):
    """Base class for every recoverable call failure."""


class MediaAcquisitionError(CallError):
    """Camera or microphone permission denied, or the device is missing."""


class JoinFailure(CallError):
    """Transport connect or publish failed while joining a room."""


class ClipboardError(CallError):
    """A clipboard mechanism could not copy the text."""


class TransportError(CallError):
    """Raised by a transport; ``code`` mirrors the SDK error code string."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        message = super().__str__()
        if self.code and self.code not in message:
            return f"{self.code}: {message}"
        return message


class ScreenShareFailure(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    MULTI_TRACK_CONFLICT = "multi_track_conflict"
    UNKNOWN = "unknown"


MULTIPLE_VIDEO_TRACKS_CODE = "CAN_NOT_PUBLISH_MULTIPLE_VIDEO_TRACKS"


class ScreenShareError(CallError):
    """Screen sharing could not start; the camera has been restored."""

    def __init__(self, reason: ScreenShareFailure, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


def classify_screen_share_error(exc: BaseException) -> ScreenShareError:
    """Map a capture or publish failure onto a ``ScreenShareError``."""
    if isinstance(exc, ScreenShareError):
        return exc
    text = str(exc)
    if isinstance(exc, PermissionError) or "NotAllowedError" in text or "Permission denied" in text:
        reason = ScreenShareFailure.PERMISSION_DENIED
    elif MULTIPLE_VIDEO_TRACKS_CODE in text or getattr(exc, "code", None) == MULTIPLE_VIDEO_TRACKS_CODE:
        reason = ScreenShareFailure.MULTI_TRACK_CONFLICT
    else:
        reason = ScreenShareFailure.UNKNOWN
    return ScreenShareError(reason, text or reason.value)
