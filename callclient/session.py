from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from callshared.errors import CallError, ClipboardError, JoinFailure, MediaAcquisitionError, ScreenShareError
from callshared.links import build_shareable_link, generate_room_id, room_from_url
from callshared.protocol import (
    DEFAULT_ORIGIN,
    AudioCaptureConfig,
    MediaType,
    ParticipantMetadata,
    ScreenShareConfig,
    SessionState,
    ShareMode,
    TransportEvent,
    VideoEncoderConfig,
    remote_surface_for,
)

from .clipboard import ClipboardResult, copy_to_clipboard
from .events import EventHandler
from .roster import RosterRegistry
from .tracks import TrackLifecycleManager
from .transport import MediaTrack, RealtimeMediaTransport

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], Awaitable[None] | None]
ClipboardCopier = Callable[[str], ClipboardResult]


@dataclass(slots=True)
class Outcome:
    """Result of a public session operation.

    ``skipped`` marks a guarded no-op (wrong state, duplicate trigger).
    """

    ok: bool
    error: Optional[CallError] = None
    skipped: bool = False
    value: object = None

    @classmethod
    def success(cls, value: object = None) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def noop(cls) -> "Outcome":
        return cls(ok=True, skipped=True)

    @classmethod
    def failure(cls, error: CallError) -> "Outcome":
        return cls(ok=False, error=error)

    def to_dict(self) -> Dict[str, object]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "error": type(self.error).__name__ if self.error else None,
            "message": str(self.error) if self.error else None,
            "reason": getattr(getattr(self.error, "reason", None), "value", None),
        }


class _SupersededJoin(Exception):
    pass


class SessionController:
    """Top-level call state machine.

    Owns the session (room, state, local identity), drives the track manager
    and the transport, and routes transport events into the roster. Public
    operations report failures as ``Outcome`` values instead of raising.
    """

    def __init__(
        self,
        transport: RealtimeMediaTransport,
        *,
        app_id: Optional[str] = None,
        token: Optional[str] = None,
        origin: str = DEFAULT_ORIGIN,
        audio_config: Optional[AudioCaptureConfig] = None,
        video_config: Optional[VideoEncoderConfig] = None,
        screen_config: Optional[ScreenShareConfig] = None,
        tracks: Optional[TrackLifecycleManager] = None,
        roster: Optional[RosterRegistry] = None,
        on_change: Optional[ChangeCallback] = None,
        clipboard: ClipboardCopier = copy_to_clipboard,
    ) -> None:
        self._transport = transport
        self._app_id = app_id
        self._token = token
        self._origin = origin
        self._audio_config = audio_config or AudioCaptureConfig()
        self._video_config = video_config or VideoEncoderConfig()
        self._screen_config = screen_config or ScreenShareConfig()
        self._tracks = tracks if tracks is not None else TrackLifecycleManager(transport)
        self._roster = roster if roster is not None else RosterRegistry()
        self._on_change = on_change
        self._clipboard = clipboard
        self._state = SessionState.INIT
        self._room_id: Optional[str] = None
        self._display_name: Optional[str] = None
        self._local_participant_id: Optional[str] = None
        self._connected = False
        self._generation = 0
        self._active_join: Optional[int] = None
        self._op_lock = asyncio.Lock()
        self._subscriptions: List[Tuple[TransportEvent, EventHandler]] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def display_name(self) -> Optional[str]:
        return self._display_name

    @property
    def local_participant_id(self) -> Optional[str]:
        return self._local_participant_id

    @property
    def origin(self) -> str:
        return self._origin

    @property
    def shareable_link(self) -> Optional[str]:
        if self._room_id is None:
            return None
        return build_shareable_link(self._origin, self._room_id)

    @property
    def roster(self) -> RosterRegistry:
        return self._roster

    @property
    def tracks(self) -> TrackLifecycleManager:
        return self._tracks

    @property
    def generation(self) -> int:
        return self._generation

    def set_on_change(self, callback: Optional[ChangeCallback]) -> None:
        self._on_change = callback

    def assign_or_adopt_room(self, existing_room_id: Optional[str] = None) -> str:
        """Adopt an external room id, or generate one; the first assignment sticks."""
        if self._room_id is not None:
            return self._room_id
        existing = (existing_room_id or "").strip()
        if existing:
            self._room_id = existing
            logger.info("Adopted room %s", existing)
        else:
            self._room_id = generate_room_id()
            logger.info("Generated room %s", self._room_id)
        return self._room_id

    def assign_room_from_url(self, url: Optional[str]) -> str:
        return self.assign_or_adopt_room(room_from_url(url))

    async def join(self, display_name: str) -> Outcome:
        if self._state != SessionState.INIT:
            logger.debug("Ignoring join while %s", self._state.value)
            return Outcome.noop()
        name = (display_name or "").strip()
        if not name:
            return Outcome.failure(JoinFailure("Display name is required"))
        if self._room_id is None:
            return Outcome.failure(JoinFailure("No room assigned"))

        self._generation += 1
        generation = self._generation
        self._active_join = generation
        self._state = SessionState.JOINING
        self._display_name = name
        room_id = self._room_id
        logger.info("Joining room %s as %s", room_id, name)
        await self._notify_change()

        async with self._op_lock:
            try:
                self._ensure_current(generation)
                await self._tracks.acquire_local_media(self._audio_config, self._video_config)
                self._ensure_current(generation)
                self._subscribe_transport_events(generation)
                uid = await self._transport.connect(self._app_id, room_id, self._token, None)
                self._connected = True
                self._local_participant_id = uid
                self._ensure_current(generation)
                await self._transport.send_metadata(ParticipantMetadata(participant_id=uid, display_name=name))
                await self._tracks.publish_local_media()
                self._ensure_current(generation)
            except _SupersededJoin:
                logger.info("Join of room %s abandoned by a later leave", room_id)
                await self._release_session()
                if self._active_join == generation:
                    self._state = SessionState.INIT
                return Outcome.noop()
            except MediaAcquisitionError as exc:
                logger.warning("Unable to acquire local media: %s", exc)
                await self._abort_join(generation)
                return Outcome.failure(exc)
            except Exception as exc:
                logger.exception("Failed to join room %s", room_id)
                await self._abort_join(generation)
                failure = JoinFailure(str(exc) or "Failed to join the call")
                failure.__cause__ = exc
                return Outcome.failure(failure)
            self._active_join = None
            self._state = SessionState.JOINED
        logger.info("Joined room %s as %s (%s)", room_id, name, uid)
        await self._notify_change()
        return Outcome.success(uid)

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _SupersededJoin()

    async def _abort_join(self, generation: int) -> None:
        await self._release_session()
        if self._active_join == generation:
            self._active_join = None
            self._state = SessionState.INIT
        await self._notify_change()

    async def leave(self) -> Outcome:
        return await self._leave(SessionState.INIT)

    async def end_call(self) -> Outcome:
        return await self._leave(SessionState.ENDED)

    async def _leave(self, final_state: SessionState) -> Outcome:
        if self._state not in (SessionState.JOINING, SessionState.JOINED):
            return Outcome.noop()
        # Any join still in flight becomes stale and unwinds itself first.
        self._generation += 1
        self._active_join = None
        async with self._op_lock:
            await self._release_session()
            self._state = final_state
        logger.info("Left room %s (%s)", self._room_id, final_state.value)
        await self._notify_change()
        return Outcome.success()

    def restart(self) -> Outcome:
        """Start over after ``end_call`` with a fresh room."""
        if self._state != SessionState.ENDED:
            return Outcome.noop()
        self._room_id = None
        self._display_name = None
        self._state = SessionState.INIT
        room_id = self.assign_or_adopt_room()
        return Outcome.success(room_id)

    async def _release_session(self) -> None:
        self._unsubscribe_transport_events()
        await self._tracks.teardown_all()
        if self._connected:
            self._connected = False
            try:
                await self._transport.disconnect()
            except Exception:
                logger.exception("Error while disconnecting from room %s", self._room_id)
        self._roster.clear()
        self._local_participant_id = None

    async def toggle_mute(self) -> Outcome:
        if self._state != SessionState.JOINED:
            return Outcome.noop()
        enabled = not self._tracks.audio_enabled
        if not self._tracks.set_audio_enabled(enabled):
            return Outcome.noop()
        logger.info("Microphone %s", "unmuted" if enabled else "muted")
        await self._notify_change()
        return Outcome.success(enabled)

    async def toggle_camera(self) -> Outcome:
        if self._state != SessionState.JOINED:
            return Outcome.noop()
        enabled = not self._tracks.camera_enabled
        if not self._tracks.set_camera_enabled(enabled):
            return Outcome.noop()
        logger.info("Camera %s", "on" if enabled else "off")
        await self._notify_change()
        return Outcome.success(enabled)

    async def toggle_screen_share(self) -> Outcome:
        if self._state != SessionState.JOINED:
            return Outcome.noop()
        try:
            if self._tracks.mode == ShareMode.SCREEN_SHARING:
                await self._tracks.stop_screen_share()
                sharing = False
            else:
                await self._tracks.start_screen_share(self._screen_config)
                sharing = True
        except ScreenShareError as exc:
            logger.warning("Screen share failed: %s (%s)", exc, exc.reason.value)
            await self._notify_change()
            return Outcome.failure(exc)
        await self._notify_change()
        return Outcome.success(sharing)

    async def copy_shareable_link(self) -> Outcome:
        link = self.shareable_link
        if link is None:
            return Outcome.failure(ClipboardError("No room assigned"))
        result = await asyncio.to_thread(self._clipboard, link)
        if result.ok:
            return Outcome.success(result.method)
        return Outcome.failure(result.error or ClipboardError("Unable to copy link"))

    def _subscribe_transport_events(self, generation: int) -> None:
        self._unsubscribe_transport_events()
        routes = {
            TransportEvent.VIDEO_PUBLISHED: self._on_video_published,
            TransportEvent.AUDIO_PUBLISHED: self._on_audio_published,
            TransportEvent.VIDEO_UNPUBLISHED: self._on_video_unpublished,
            TransportEvent.AUDIO_UNPUBLISHED: self._on_audio_unpublished,
            TransportEvent.PARTICIPANT_LEFT: self._on_participant_left,
            TransportEvent.METADATA: self._on_metadata,
        }
        for event, route in routes.items():
            handler = self._guarded(generation, event, route)
            self._transport.on(event, handler)
            self._subscriptions.append((event, handler))

    def _unsubscribe_transport_events(self) -> None:
        for event, handler in self._subscriptions:
            self._transport.off(event, handler)
        self._subscriptions.clear()

    def _guarded(self, generation: int, event: TransportEvent, route: Callable[..., Awaitable[None]]) -> EventHandler:
        async def handler(*args: object) -> None:
            if generation != self._generation:
                logger.debug("Dropping %s from stale join %s", event.value, generation)
                return
            logger.debug("Routing %s %s", event.value, args)
            await route(*args)
            await self._notify_change()

        return handler

    async def _on_video_published(self, participant_id: str, _track: Optional[MediaTrack] = None) -> None:
        self._roster.on_participant_video_published(participant_id)
        remote = await self._transport.subscribe(participant_id, MediaType.VIDEO)
        remote.bind_to_surface(remote_surface_for(participant_id))

    async def _on_audio_published(self, participant_id: str, _track: Optional[MediaTrack] = None) -> None:
        self._roster.on_participant_audio_changed(participant_id, True)
        remote = await self._transport.subscribe(participant_id, MediaType.AUDIO)
        remote.play()

    async def _on_video_unpublished(self, participant_id: str) -> None:
        self._roster.on_participant_video_unpublished(participant_id)

    async def _on_audio_unpublished(self, participant_id: str) -> None:
        self._roster.on_participant_audio_changed(participant_id, False)

    async def _on_participant_left(self, participant_id: str) -> None:
        self._roster.on_participant_left(participant_id)

    async def _on_metadata(self, participant_id: str, display_name: str) -> None:
        if participant_id == self._local_participant_id:
            return
        self._roster.on_participant_metadata(participant_id, display_name)

    async def _notify_change(self) -> None:
        if self._on_change is None:
            return
        try:
            result = self._on_change()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Session change callback failed")

    def snapshot(self) -> Dict[str, object]:
        return {
            "state": self._state.value,
            "room_id": self._room_id,
            "shareable_link": self.shareable_link,
            "display_name": self._display_name,
            "local_participant_id": self._local_participant_id,
            "media": {
                "mode": self._tracks.published_mode.value,
                "audio_enabled": self._tracks.audio_enabled,
                "camera_enabled": self._tracks.camera_enabled,
                "screen_sharing": self._tracks.published_mode == ShareMode.SCREEN_SHARING,
            },
            "participants": self._roster.snapshot(),
        }
