"""In-process realtime media transport.

``LoopbackHub`` plays the part of the media service for every
``LoopbackTransport`` attached to it: it tracks room membership, the tracks
each member publishes and the metadata each member announced, and delivers
room events to the other members in the order they happen. Useful for local
demos and for exercising the session controller without a network.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from callshared.errors import MULTIPLE_VIDEO_TRACKS_CODE, TransportError
from callshared.protocol import (
    AudioCaptureConfig,
    MediaType,
    ParticipantMetadata,
    ScreenShareConfig,
    TrackKind,
    TransportEvent,
    VideoEncoderConfig,
    decode_metadata_stream,
    encode_metadata_message,
)

from .devices import FrameSink, LocalMediaTrack, MediaDevices, SpeakerPlayback
from .events import EventEmitter
from .transport import MediaTrack

logger = logging.getLogger(__name__)


def media_type_for(kind: TrackKind) -> MediaType:
    return MediaType.AUDIO if kind == TrackKind.AUDIO else MediaType.VIDEO


def _published_event(media_type: MediaType) -> TransportEvent:
    if media_type == MediaType.AUDIO:
        return TransportEvent.AUDIO_PUBLISHED
    return TransportEvent.VIDEO_PUBLISHED


def _unpublished_event(media_type: MediaType) -> TransportEvent:
    if media_type == MediaType.AUDIO:
        return TransportEvent.AUDIO_UNPUBLISHED
    return TransportEvent.VIDEO_UNPUBLISHED


class RemoteMediaTrack(EventEmitter):
    """A subscriber's view of a track published by another participant."""

    def __init__(
        self,
        participant_id: str,
        source: MediaTrack,
        *,
        frame_sink: Optional[FrameSink] = None,
        playback: Optional[SpeakerPlayback] = None,
    ) -> None:
        super().__init__()
        self._participant_id = participant_id
        self._source = source
        self._kind = source.kind
        self._frame_sink = frame_sink
        self._playback = playback
        self._enabled = True
        self._closed = False
        self._surface: Optional[str] = None
        self._attached = False
        self._playing = False

    @property
    def participant_id(self) -> str:
        return self._participant_id

    @property
    def kind(self) -> TrackKind:
        return self._kind

    @property
    def media_type(self) -> MediaType:
        return media_type_for(self._kind)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def surface(self) -> Optional[str]:
        return self._surface

    @property
    def playing(self) -> bool:
        return self._playing

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def attach(self) -> None:
        if self._attached or self._closed:
            return
        if isinstance(self._source, LocalMediaTrack):
            self._source.add_frame_listener(self._on_source_frame)
        self._attached = True

    def bind_to_surface(self, surface: str) -> None:
        if self._closed:
            return
        self._surface = surface
        self.attach()

    def play(self) -> None:
        """Start audio playback on the local output device."""
        if self._closed:
            return
        self._playing = True
        if self._playback is not None:
            try:
                self._playback.start()
            except Exception:
                logger.exception("Unable to start playback for %s", self._participant_id)
                self._playback = None
        self.attach()

    def stop(self) -> None:
        self._surface = None
        self._playing = False
        if self._playback is not None:
            self._playback.stop()

    async def close(self) -> None:
        if self._closed:
            return
        self.stop()
        self._closed = True
        if self._attached and isinstance(self._source, LocalMediaTrack):
            self._source.remove_frame_listener(self._on_source_frame)
        self._attached = False
        self.remove_all_listeners()

    async def _on_source_frame(self, payload: bytes) -> None:
        if self._closed or not self._enabled:
            return
        if self._playing and self._playback is not None:
            self._playback.feed(payload)
        if self._surface and self._frame_sink is not None:
            result = self._frame_sink(self._surface, payload)
            if asyncio.iscoroutine(result):
                await result


@dataclass(slots=True)
class _RoomState:
    members: Dict[str, "LoopbackTransport"] = field(default_factory=dict)
    metadata: Dict[str, bytes] = field(default_factory=dict)
    publications: Dict[str, Dict[MediaType, MediaTrack]] = field(default_factory=dict)


class LoopbackHub:
    """Room registry shared by every loopback transport in the process."""

    def __init__(self) -> None:
        self._rooms: Dict[str, _RoomState] = {}

    def members(self, room_id: str) -> List[str]:
        room = self._rooms.get(room_id)
        return list(room.members) if room else []

    def publications(self, room_id: str, uid: str) -> Dict[MediaType, MediaTrack]:
        room = self._rooms.get(room_id)
        if room is None:
            return {}
        return dict(room.publications.get(uid, {}))

    def published_track(self, room_id: str, uid: str, media_type: MediaType) -> Optional[MediaTrack]:
        return self.publications(room_id, uid).get(media_type)

    async def join(self, room_id: str, uid: str, transport: "LoopbackTransport") -> None:
        room = self._rooms.setdefault(room_id, _RoomState())
        if uid in room.members:
            raise TransportError(f"Participant {uid} already in room {room_id}", code="UID_CONFLICT")
        peers = list(room.members.items())
        metadata = list(room.metadata.values())
        publications = [(peer_uid, dict(tracks)) for peer_uid, tracks in room.publications.items()]
        room.members[uid] = transport
        logger.info("%s joined loopback room %s", uid, room_id)

        for _, peer in peers:
            await peer._deliver(TransportEvent.PARTICIPANT_JOINED, uid)
        for peer_uid, _ in peers:
            await transport._deliver(TransportEvent.PARTICIPANT_JOINED, peer_uid)
        for payload in metadata:
            await transport._receive_metadata(payload)
        for peer_uid, tracks in publications:
            for media_type, track in tracks.items():
                await transport._receive_publication(peer_uid, media_type, track)

    async def leave(self, room_id: str, uid: str) -> None:
        room = self._rooms.get(room_id)
        if room is None or uid not in room.members:
            return
        room.members.pop(uid)
        room.metadata.pop(uid, None)
        room.publications.pop(uid, None)
        peers = list(room.members.values())
        if not room.members:
            del self._rooms[room_id]
        logger.info("%s left loopback room %s", uid, room_id)
        for peer in peers:
            await peer._receive_departure(uid)

    async def publish(self, room_id: str, uid: str, tracks: Sequence[MediaTrack]) -> None:
        room = self._require_member(room_id, uid)
        published = room.publications.setdefault(uid, {})
        for track in tracks:
            media_type = media_type_for(track.kind)
            published[media_type] = track
            for peer_uid, peer in list(room.members.items()):
                if peer_uid != uid:
                    await peer._receive_publication(uid, media_type, track)

    async def unpublish(self, room_id: str, uid: str, tracks: Sequence[MediaTrack]) -> None:
        room = self._require_member(room_id, uid)
        published = room.publications.get(uid, {})
        for track in tracks:
            media_type = media_type_for(track.kind)
            if published.get(media_type) is not track:
                continue
            del published[media_type]
            for peer_uid, peer in list(room.members.items()):
                if peer_uid != uid:
                    await peer._receive_unpublication(uid, media_type)

    async def announce(self, room_id: str, uid: str, payload: bytes) -> None:
        room = self._require_member(room_id, uid)
        room.metadata[uid] = payload
        for peer_uid, peer in list(room.members.items()):
            if peer_uid != uid:
                await peer._receive_metadata(payload)

    def _require_member(self, room_id: str, uid: str) -> _RoomState:
        room = self._rooms.get(room_id)
        if room is None or uid not in room.members:
            raise TransportError(f"{uid} is not connected to room {room_id}", code="INVALID_OPERATION")
        return room


class LoopbackTransport(EventEmitter):
    """``RealtimeMediaTransport`` backed by a ``LoopbackHub``.

    Like the hosted SDKs it stands in for, a client may publish at most one
    video-kind track at a time; a second one is rejected with
    ``CAN_NOT_PUBLISH_MULTIPLE_VIDEO_TRACKS``.
    """

    def __init__(
        self,
        hub: LoopbackHub,
        *,
        devices: Optional[MediaDevices] = None,
        frame_sink: Optional[FrameSink] = None,
        mode: str = "rtc",
        codec: str = "vp8",
    ) -> None:
        super().__init__()
        self._hub = hub
        self._frame_sink = frame_sink
        self._devices = devices if devices is not None else MediaDevices(frame_sink=frame_sink)
        self._mode = mode
        self._codec = codec
        self._room_id: Optional[str] = None
        self._uid: Optional[str] = None
        self._published: List[MediaTrack] = []
        self._offered: Dict[Tuple[str, MediaType], RemoteMediaTrack] = {}
        self._metadata_buffer = bytearray()

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def uid(self) -> Optional[str]:
        return self._uid

    @property
    def connected(self) -> bool:
        return self._uid is not None

    @property
    def published_tracks(self) -> List[MediaTrack]:
        return list(self._published)

    async def connect(
        self,
        app_id: Optional[str],
        room_id: str,
        token: Optional[str] = None,
        uid: Optional[str] = None,
    ) -> str:
        if self._uid is not None:
            raise TransportError("Transport is already connected", code="INVALID_OPERATION")
        if not room_id:
            raise TransportError("Room id is required", code="INVALID_PARAMS")
        local_uid = uid or uuid.uuid4().hex[:8]
        logger.info("Connecting %s to room %s (mode=%s codec=%s)", local_uid, room_id, self._mode, self._codec)
        self._room_id = room_id
        self._uid = local_uid
        try:
            await self._hub.join(room_id, local_uid, self)
        except Exception:
            self._room_id = None
            self._uid = None
            raise
        return local_uid

    async def disconnect(self) -> None:
        if self._uid is None or self._room_id is None:
            return
        room_id, uid = self._room_id, self._uid
        self._room_id = None
        self._uid = None
        self._published.clear()
        self._metadata_buffer.clear()
        offered = list(self._offered.values())
        self._offered.clear()
        for track in offered:
            await track.close()
        await self._hub.leave(room_id, uid)
        logger.info("Disconnected %s from room %s", uid, room_id)

    async def publish(self, tracks: Sequence[MediaTrack]) -> None:
        room_id, uid = self._require_connection()
        video_count = sum(1 for track in self._published if track.kind.is_video)
        for track in tracks:
            if track in self._published:
                continue
            if track.kind.is_video:
                video_count += 1
                if video_count > 1:
                    raise TransportError("Only one video track can be published", code=MULTIPLE_VIDEO_TRACKS_CODE)
        fresh = [track for track in tracks if track not in self._published]
        self._published.extend(fresh)
        await self._hub.publish(room_id, uid, fresh)

    async def unpublish(self, tracks: Sequence[MediaTrack]) -> None:
        room_id, uid = self._require_connection()
        removed = [track for track in tracks if track in self._published]
        for track in removed:
            self._published.remove(track)
        await self._hub.unpublish(room_id, uid, removed)

    async def subscribe(self, participant_id: str, media_type: MediaType) -> RemoteMediaTrack:
        self._require_connection()
        track = self._offered.get((participant_id, media_type))
        if track is None:
            raise TransportError(f"{participant_id} has not published {media_type.value}", code="INVALID_REMOTE_USER")
        track.attach()
        return track

    async def create_microphone_and_camera_tracks(
        self,
        audio_config: AudioCaptureConfig,
        video_config: VideoEncoderConfig,
    ) -> Tuple[MediaTrack, MediaTrack]:
        return await self._devices.create_microphone_and_camera_tracks(audio_config, video_config)

    async def create_screen_track(self, config: ScreenShareConfig) -> MediaTrack:
        return await self._devices.create_screen_track(config)

    async def send_metadata(self, metadata: ParticipantMetadata) -> None:
        room_id, uid = self._require_connection()
        await self._hub.announce(room_id, uid, encode_metadata_message(metadata))

    def _require_connection(self) -> Tuple[str, str]:
        if self._room_id is None or self._uid is None:
            raise TransportError("Transport is not connected", code="INVALID_OPERATION")
        return self._room_id, self._uid

    async def _deliver(self, event: TransportEvent, *args: object) -> None:
        logger.debug("Loopback %s delivering %s %s", self._uid, event.value, args)
        await self.emit(event, *args)

    async def _receive_publication(self, participant_id: str, media_type: MediaType, source: MediaTrack) -> None:
        previous = self._offered.pop((participant_id, media_type), None)
        if previous is not None:
            await previous.close()
        playback = None
        if media_type == MediaType.AUDIO:
            playback = self._devices.create_playback()
        track = RemoteMediaTrack(participant_id, source, frame_sink=self._frame_sink, playback=playback)
        self._offered[(participant_id, media_type)] = track
        await self._deliver(_published_event(media_type), participant_id, track)

    async def _receive_unpublication(self, participant_id: str, media_type: MediaType) -> None:
        track = self._offered.pop((participant_id, media_type), None)
        if track is not None:
            await track.close()
        await self._deliver(_unpublished_event(media_type), participant_id)

    async def _receive_departure(self, participant_id: str) -> None:
        for key in [key for key in self._offered if key[0] == participant_id]:
            await self._offered.pop(key).close()
        await self._deliver(TransportEvent.PARTICIPANT_LEFT, participant_id)

    async def _receive_metadata(self, payload: bytes) -> None:
        self._metadata_buffer.extend(payload)
        announcements, remaining = decode_metadata_stream(bytes(self._metadata_buffer))
        self._metadata_buffer = bytearray(remaining)
        for metadata in announcements:
            await self._deliver(TransportEvent.METADATA, metadata.participant_id, metadata.display_name)
