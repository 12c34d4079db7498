from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Tuple

from callshared.errors import MediaAcquisitionError, classify_screen_share_error
from callshared.protocol import (
    LOCAL_VIDEO_SURFACE,
    AudioCaptureConfig,
    ScreenShareConfig,
    ShareMode,
    TrackEvent,
    VideoEncoderConfig,
)

from .transport import MediaTrack, RealtimeMediaTransport

logger = logging.getLogger(__name__)


class TrackLifecycleManager:
    """Owns the local audio, camera and screen tracks.

    Outgoing video goes through a single published-video slot. Publishing a
    video-kind track always vacates the slot first, so a camera and a screen
    track are never published at the same time. Mode changes run under one
    lock; ``stop_screen_share`` is guarded by the current mode, which makes
    the user path and the ``capture-ended`` path converge on one teardown.

    ``acquire_local_media`` enters CAMERA mode before anything is published;
    until ``publish_local_media`` runs, ``published_video`` is ``None`` even
    though the mode is CAMERA. Report ``published_mode`` to observers.
    """

    def __init__(self, transport: RealtimeMediaTransport, *, local_surface: str = LOCAL_VIDEO_SURFACE) -> None:
        self._transport = transport
        self._local_surface = local_surface
        self._mode = ShareMode.NONE
        self._audio_track: Optional[MediaTrack] = None
        self._camera_track: Optional[MediaTrack] = None
        self._screen_track: Optional[MediaTrack] = None
        self._published_video: Optional[MediaTrack] = None
        self._starting_screen: Optional[MediaTrack] = None
        self._ended_while_starting = False
        self._audio_published = False
        self._audio_enabled = True
        self._camera_enabled = True
        self._lock = asyncio.Lock()

    @property
    def mode(self) -> ShareMode:
        return self._mode

    @property
    def audio_enabled(self) -> bool:
        return self._audio_enabled

    @property
    def camera_enabled(self) -> bool:
        return self._camera_enabled

    @property
    def audio_track(self) -> Optional[MediaTrack]:
        return self._audio_track

    @property
    def camera_track(self) -> Optional[MediaTrack]:
        return self._camera_track

    @property
    def screen_track(self) -> Optional[MediaTrack]:
        return self._screen_track

    @property
    def published_video(self) -> Optional[MediaTrack]:
        return self._published_video

    @property
    def published_mode(self) -> ShareMode:
        """The mode as seen by the room: NONE until a video track is published."""
        if self._published_video is None:
            return ShareMode.NONE
        return self._mode

    def open_tracks(self) -> List[MediaTrack]:
        tracks = [self._audio_track, self._camera_track, self._screen_track]
        return [track for track in tracks if track is not None and not track.closed]

    async def acquire_local_media(
        self,
        audio_config: Optional[AudioCaptureConfig] = None,
        video_config: Optional[VideoEncoderConfig] = None,
    ) -> Tuple[MediaTrack, MediaTrack]:
        async with self._lock:
            if self._audio_track is not None and self._camera_track is not None:
                return self._audio_track, self._camera_track
            try:
                audio_track, video_track = await self._transport.create_microphone_and_camera_tracks(
                    audio_config or AudioCaptureConfig(),
                    video_config or VideoEncoderConfig(),
                )
            except MediaAcquisitionError:
                raise
            except Exception as exc:
                raise MediaAcquisitionError(str(exc) or "Unable to acquire camera and microphone") from exc
            self._audio_track = audio_track
            self._camera_track = video_track
            self._audio_enabled = True
            self._camera_enabled = True
            video_track.bind_to_surface(self._local_surface)
            self._mode = ShareMode.CAMERA
            logger.info("Acquired local microphone and camera")
            return audio_track, video_track

    async def publish_local_media(self) -> None:
        """Publish the audio track and whichever track the current mode selects."""
        async with self._lock:
            if self._audio_track is not None and not self._audio_published:
                await self._transport.publish([self._audio_track])
                self._audio_published = True
            if self._mode == ShareMode.CAMERA and self._camera_track is not None:
                await self._publish_video(self._camera_track)
            elif self._mode == ShareMode.SCREEN_SHARING and self._screen_track is not None:
                await self._publish_video(self._screen_track)

    async def _publish_video(self, track: MediaTrack) -> None:
        if self._published_video is track:
            return
        await self._vacate_video_slot()
        await self._transport.publish([track])
        self._published_video = track

    async def _vacate_video_slot(self) -> None:
        current = self._published_video
        if current is None:
            return
        self._published_video = None
        await self._transport.unpublish([current])

    def set_audio_enabled(self, enabled: bool) -> bool:
        if self._audio_track is None:
            return False
        self._audio_track.set_enabled(enabled)
        self._audio_enabled = enabled
        return True

    def set_camera_enabled(self, enabled: bool) -> bool:
        if self._camera_track is None:
            return False
        self._camera_track.set_enabled(enabled)
        self._camera_enabled = enabled
        if enabled and self._mode == ShareMode.CAMERA:
            self._camera_track.bind_to_surface(self._local_surface)
        return True

    async def start_screen_share(self, config: Optional[ScreenShareConfig] = None) -> MediaTrack:
        async with self._lock:
            if self._mode == ShareMode.SCREEN_SHARING and self._screen_track is not None:
                return self._screen_track
            camera = self._camera_track
            if camera is not None and self._published_video is camera:
                try:
                    await self._vacate_video_slot()
                except Exception as exc:
                    self._published_video = camera
                    raise classify_screen_share_error(exc) from exc
                camera.stop()
            screen: Optional[MediaTrack] = None
            self._ended_while_starting = False
            try:
                screen = await self._transport.create_screen_track(config or ScreenShareConfig())
                self._starting_screen = screen
                screen.on(TrackEvent.CAPTURE_ENDED, self._on_capture_ended)
                await self._transport.publish([screen])
            except Exception as exc:
                self._starting_screen = None
                error = classify_screen_share_error(exc)
                logger.warning("Screen share failed (%s); restoring camera", error.reason.value)
                if screen is not None:
                    screen.off(TrackEvent.CAPTURE_ENDED, self._on_capture_ended)
                    await self._close_quietly(screen)
                await self._restore_camera()
                raise error from exc
            self._starting_screen = None
            self._published_video = screen
            self._screen_track = screen
            screen.bind_to_surface(self._local_surface)
            self._mode = ShareMode.SCREEN_SHARING
            logger.info("Screen sharing started")
            ended_early = self._ended_while_starting
            self._ended_while_starting = False
        if ended_early and self._screen_track is screen:
            logger.info("Screen capture ended while sharing was starting")
            await self.stop_screen_share()
        return screen

    async def stop_screen_share(self) -> bool:
        """Tear down screen sharing; returns ``False`` when not sharing."""
        async with self._lock:
            if self._mode != ShareMode.SCREEN_SHARING:
                return False
            screen = self._screen_track
            self._screen_track = None
            if screen is not None:
                screen.off(TrackEvent.CAPTURE_ENDED, self._on_capture_ended)
                if self._published_video is screen:
                    self._published_video = None
                    try:
                        await self._transport.unpublish([screen])
                    except Exception:
                        logger.exception("Failed to unpublish screen track")
                await self._close_quietly(screen)
            await self._restore_camera()
            logger.info("Screen sharing stopped; mode is now %s", self._mode.value)
            return True

    async def _on_capture_ended(self, track: object = None) -> None:
        # Runs under the lock while a share is starting; the stop waits for the release.
        if track is not None and track is self._starting_screen:
            self._ended_while_starting = True
            return
        if track is not None and track is not self._screen_track:
            logger.debug("Ignoring capture end from a screen track no longer in use")
            return
        logger.info("Screen capture ended externally")
        await self.stop_screen_share()

    async def _restore_camera(self) -> None:
        camera = self._camera_track
        if camera is None or camera.closed:
            self._mode = ShareMode.NONE
            return
        try:
            await self._publish_video(camera)
        except Exception:
            logger.exception("Failed to republish camera track")
            self._mode = ShareMode.NONE
            return
        if self._camera_enabled:
            camera.bind_to_surface(self._local_surface)
        self._mode = ShareMode.CAMERA

    async def teardown_all(self) -> None:
        async with self._lock:
            screen = self._screen_track
            if screen is not None:
                screen.off(TrackEvent.CAPTURE_ENDED, self._on_capture_ended)
            tracks = [self._audio_track, self._camera_track, screen]
            self._audio_track = None
            self._camera_track = None
            self._screen_track = None
            self._published_video = None
            self._audio_published = False
            self._mode = ShareMode.NONE
            for track in tracks:
                if track is not None:
                    await self._close_quietly(track)
            logger.info("Local tracks torn down")

    async def _close_quietly(self, track: MediaTrack) -> None:
        try:
            track.stop()
            await track.close()
        except Exception:
            logger.exception("Failed to close %s track", track.kind.value)
