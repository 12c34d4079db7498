"""Structural interfaces for the realtime media transport and its tracks.

The transport itself (connection establishment, media encoding, NAT
traversal) is an external service; the controller only depends on the
narrow surface described here. ``callclient.loopback`` ships an in-process
implementation.
"""
from __future__ import annotations

from typing import Optional, Protocol, Sequence, Tuple

from callshared.protocol import (
    AudioCaptureConfig,
    MediaType,
    ParticipantMetadata,
    ScreenShareConfig,
    TrackKind,
    VideoEncoderConfig,
)

from .events import EventHandler


class MediaTrack(Protocol):
    """A single local or remote media stream."""

    @property
    def kind(self) -> TrackKind:
        ...

    @property
    def enabled(self) -> bool:
        ...

    @property
    def closed(self) -> bool:
        ...

    @property
    def surface(self) -> Optional[str]:
        ...

    def set_enabled(self, enabled: bool) -> None:
        ...

    def bind_to_surface(self, surface: str) -> None:
        """Render the track into an opaque surface supplied by the UI."""
        ...

    def stop(self) -> None:
        """Stop rendering without releasing the capture device."""
        ...

    async def close(self) -> None:
        """Release the capture device. Safe to call more than once."""
        ...

    def on(self, event: str, handler: EventHandler) -> None:
        ...

    def off(self, event: str, handler: EventHandler) -> None:
        ...


class RemoteTrack(MediaTrack, Protocol):
    """A subscribed track published by another participant."""

    def play(self) -> None:
        """Start local playback (audio output for audio tracks)."""
        ...


class RealtimeMediaTransport(Protocol):
    """Connection to one room of a realtime media service.

    Emits the events named in ``callshared.protocol.TransportEvent`` in the
    order the service delivers them:

    * ``participant-joined(participant_id)``
    * ``video-published(participant_id, track)`` / ``audio-published(...)``
    * ``video-unpublished(participant_id)`` / ``audio-unpublished(...)``
    * ``participant-left(participant_id)``
    * ``metadata(participant_id, display_name)``
    """

    async def connect(
        self,
        app_id: Optional[str],
        room_id: str,
        token: Optional[str] = None,
        uid: Optional[str] = None,
    ) -> str:
        """Join ``room_id`` and return the local participant id."""
        ...

    async def disconnect(self) -> None:
        ...

    async def publish(self, tracks: Sequence[MediaTrack]) -> None:
        ...

    async def unpublish(self, tracks: Sequence[MediaTrack]) -> None:
        ...

    async def subscribe(self, participant_id: str, media_type: MediaType) -> RemoteTrack:
        ...

    async def create_microphone_and_camera_tracks(
        self,
        audio_config: AudioCaptureConfig,
        video_config: VideoEncoderConfig,
    ) -> Tuple[MediaTrack, MediaTrack]:
        ...

    async def create_screen_track(self, config: ScreenShareConfig) -> MediaTrack:
        ...

    async def send_metadata(self, metadata: ParticipantMetadata) -> None:
        """Announce local participant metadata to the rest of the room."""
        ...

    def on(self, event: str, handler: EventHandler) -> None:
        ...

    def off(self, event: str, handler: EventHandler) -> None:
        ...
