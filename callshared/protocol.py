"""Core primitives shared by every part of the call controller.

Event names, session and track enums, capture presets and the small
out-of-band metadata channel used to announce display names all live here
so transports, managers and the UI bridge agree on one vocabulary.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json
import struct


class SessionState(str, Enum):
    """Top-level lifecycle of a call session."""

    INIT = "init"
    JOINING = "joining"
    JOINED = "joined"
    ENDED = "ended"


class ShareMode(str, Enum):
    """Which local video-kind track currently feeds the outgoing video."""

    NONE = "none"
    CAMERA = "camera"
    SCREEN_SHARING = "screen_sharing"


class TrackKind(str, Enum):
    """Media kind carried by a single track."""

    AUDIO = "audio"
    VIDEO = "video"
    SCREEN = "screen"

    @property
    def is_video(self) -> bool:
        return self is not TrackKind.AUDIO


class MediaType(str, Enum):
    """Media type as seen by remote subscribers (screen arrives as video)."""

    AUDIO = "audio"
    VIDEO = "video"


class TransportEvent(str, Enum):
    """Events emitted by a realtime media transport."""

    PARTICIPANT_JOINED = "participant-joined"
    PARTICIPANT_LEFT = "participant-left"
    VIDEO_PUBLISHED = "video-published"
    AUDIO_PUBLISHED = "audio-published"
    VIDEO_UNPUBLISHED = "video-unpublished"
    AUDIO_UNPUBLISHED = "audio-unpublished"
    METADATA = "metadata"


class TrackEvent(str, Enum):
    """Events emitted by an individual track."""

    CAPTURE_ENDED = "capture-ended"


DEFAULT_ORIGIN = "http://127.0.0.1:8100"
LINK_PATH = "/video-call"
ROOM_QUERY_PARAM = "room"
LOCAL_VIDEO_SURFACE = "local-video"
REMOTE_VIDEO_SURFACE_PREFIX = "remote-video-"
DEFAULT_UI_PORT = 8100


def remote_surface_for(participant_id: str) -> str:
    return f"{REMOTE_VIDEO_SURFACE_PREFIX}{participant_id}"


@dataclass(slots=True)
class AudioCaptureConfig:
    """Microphone capture settings."""

    sample_rate: int = 16000
    channels: int = 1
    frame_ms: int = 20
    device: Optional[int] = None

    @property
    def frame_samples(self) -> int:
        return int(self.sample_rate * self.frame_ms / 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "frame_ms": self.frame_ms,
            "device": self.device,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AudioCaptureConfig":
        device = data.get("device")
        return cls(
            sample_rate=int(data.get("sample_rate", 16000)),
            channels=int(data.get("channels", 1)),
            frame_ms=int(data.get("frame_ms", 20)),
            device=int(device) if device is not None else None,
        )


@dataclass(slots=True)
class VideoEncoderConfig:
    """Camera capture and JPEG encoding settings."""

    width: int = 640
    height: int = 360
    fps: int = 12
    quality: int = 60
    device_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "fps": self.fps,
            "quality": self.quality,
            "device_index": self.device_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VideoEncoderConfig":
        return cls(
            width=int(data.get("width", 640)),
            height=int(data.get("height", 360)),
            fps=max(1, int(data.get("fps", 12))),
            quality=max(20, min(int(data.get("quality", 60)), 90)),
            device_index=int(data.get("device_index", 0)),
        )


# (width, height, fps) for the named screen encoder presets
SCREEN_PRESETS: Dict[str, tuple[int, int, int]] = {
    "720p_1": (1280, 720, 5),
    "720p_2": (1280, 720, 30),
    "1080p_1": (1920, 1080, 5),
    "1080p_2": (1920, 1080, 30),
}


@dataclass(slots=True)
class ScreenShareConfig:
    """Screen capture settings.

    ``optimization_mode`` is either ``"detail"`` (sharper frames, preset fps)
    or ``"motion"`` (lower quality, at least 15 fps).
    """

    encoder_preset: str = "1080p_1"
    optimization_mode: str = "detail"
    monitor: Optional[int] = None

    def resolution(self) -> tuple[int, int]:
        width, height, _ = SCREEN_PRESETS.get(self.encoder_preset, SCREEN_PRESETS["1080p_1"])
        return width, height

    @property
    def fps(self) -> int:
        _, _, fps = SCREEN_PRESETS.get(self.encoder_preset, SCREEN_PRESETS["1080p_1"])
        if self.optimization_mode == "motion":
            return max(fps, 15)
        return fps

    @property
    def quality(self) -> int:
        return 85 if self.optimization_mode == "detail" else 60

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoder_preset": self.encoder_preset,
            "optimization_mode": self.optimization_mode,
            "monitor": self.monitor,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScreenShareConfig":
        monitor = data.get("monitor")
        return cls(
            encoder_preset=str(data.get("encoder_preset", "1080p_1")),
            optimization_mode=str(data.get("optimization_mode", "detail")),
            monitor=int(monitor) if monitor is not None else None,
        )


@dataclass(slots=True)
class ParticipantMetadata:
    """Display-name announcement exchanged out of band at join time."""

    participant_id: str
    display_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticipantMetadata":
        return cls(
            participant_id=str(data["participant_id"]),
            display_name=str(data["display_name"]),
        )


class MetadataEnvelope(TypedDict):
    """Generic representation of metadata messages."""

    kind: str
    data: Dict[str, Any]


METADATA_KIND_PARTICIPANT = "participant"


def encode_metadata_message(metadata: ParticipantMetadata) -> bytes:
    """Serialize a metadata announcement using length-prefixed JSON."""

    envelope: MetadataEnvelope = {
        "kind": METADATA_KIND_PARTICIPANT,
        "data": metadata.to_dict(),
    }
    payload = json.dumps(envelope, separators=(',', ':')).encode("utf-8")
    return struct.pack("!I", len(payload)) + payload


def decode_metadata_stream(buffer: bytes) -> tuple[list[ParticipantMetadata], bytes]:
    """Decode as many complete metadata messages from the buffer as possible.

    Envelopes of an unknown kind are skipped. Returns a tuple of
    (announcements, remaining_buffer).
    """

    offset = 0
    announcements: list[ParticipantMetadata] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        envelope: MetadataEnvelope = json.loads(buffer[start:end].decode("utf-8"))
        if envelope.get("kind") == METADATA_KIND_PARTICIPANT:
            announcements.append(ParticipantMetadata.from_dict(envelope["data"]))
        offset = end

    return announcements, buffer[offset:]
