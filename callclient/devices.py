from __future__ import annotations

import asyncio
import logging
import queue
import time
from typing import Awaitable, Callable, List, Optional, Tuple

import cv2
import numpy as np
from mss import mss

from callshared.errors import MediaAcquisitionError
from callshared.protocol import (
    AudioCaptureConfig,
    ScreenShareConfig,
    TrackEvent,
    TrackKind,
    VideoEncoderConfig,
)

from .events import EventEmitter

logger = logging.getLogger(__name__)

FrameSink = Callable[[str, bytes], Awaitable[None] | None]
FrameListener = Callable[[bytes], Awaitable[None] | None]


class LocalMediaTrack(EventEmitter):
    """Base for locally captured tracks.

    Holds the enabled flag and surface binding, and fans captured payloads out
    to the bound surface and to any frame listeners (the transport forwards
    published tracks to subscribers this way). Subclasses own the capture
    device and call ``push_frame``.
    """

    def __init__(self, kind: TrackKind, *, frame_sink: Optional[FrameSink] = None) -> None:
        super().__init__()
        self._kind = kind
        self._enabled = True
        self._closed = False
        self._surface: Optional[str] = None
        self._frame_sink = frame_sink
        self._frame_listeners: List[FrameListener] = []

    @property
    def kind(self) -> TrackKind:
        return self._kind

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def surface(self) -> Optional[str]:
        return self._surface

    def set_enabled(self, enabled: bool) -> None:
        if self._closed:
            return
        self._enabled = enabled

    def bind_to_surface(self, surface: str) -> None:
        if self._closed:
            return
        self._surface = surface

    def stop(self) -> None:
        self._surface = None

    def add_frame_listener(self, listener: FrameListener) -> None:
        self._frame_listeners.append(listener)

    def remove_frame_listener(self, listener: FrameListener) -> None:
        if listener in self._frame_listeners:
            self._frame_listeners.remove(listener)

    async def start(self) -> None:
        """Open the capture device; the base track has none."""

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._surface = None
        try:
            await self._release()
        finally:
            self._frame_listeners.clear()
        logger.debug("Closed local %s track", self._kind.value)

    async def _release(self) -> None:
        return None

    async def end_capture(self) -> None:
        """Signal that capture ended outside the controller's control."""
        if self._closed:
            return
        logger.info("Capture ended for local %s track", self._kind.value)
        await self.emit(TrackEvent.CAPTURE_ENDED, self)

    async def push_frame(self, payload: bytes) -> None:
        if self._closed or not self._enabled:
            return
        if self._surface and self._frame_sink is not None:
            try:
                result = self._frame_sink(self._surface, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Frame sink failed for surface %s", self._surface)
        for listener in list(self._frame_listeners):
            try:
                result = listener(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Frame listener failed")


class CameraTrack(LocalMediaTrack):
    """Captures webcam frames with OpenCV and encodes them as JPEG."""

    def __init__(self, config: VideoEncoderConfig, *, frame_sink: Optional[FrameSink] = None) -> None:
        super().__init__(TrackKind.VIDEO, frame_sink=frame_sink)
        self._config = config
        self._cap: Optional[cv2.VideoCapture] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        cap = await asyncio.to_thread(cv2.VideoCapture, self._config.device_index)
        if not cap.isOpened():
            cap.release()
            raise MediaAcquisitionError(f"Camera {self._config.device_index} is not available")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._config.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._config.height)
        cap.set(cv2.CAP_PROP_FPS, self._config.fps)
        self._cap = cap
        self._stop_event.clear()
        self._task = asyncio.create_task(self._capture_loop())

    async def _capture_loop(self) -> None:  # pragma: no cover - hardware dependent
        assert self._cap is not None
        cap = self._cap
        frame_interval = 1 / max(1, self._config.fps)
        while not self._stop_event.is_set():
            if not self._enabled:
                await asyncio.sleep(0.2)
                continue
            frame = await asyncio.to_thread(self._read_frame, cap)
            if frame is None:
                await asyncio.sleep(frame_interval)
                continue
            success, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self._config.quality])
            if success:
                await self.push_frame(buffer.tobytes())
            await asyncio.sleep(frame_interval)

    def _read_frame(self, cap: cv2.VideoCapture) -> Optional[np.ndarray]:  # pragma: no cover - hardware dependent
        ret, frame = cap.read()
        if not ret:
            return None
        return cv2.resize(frame, (self._config.width, self._config.height))

    async def _release(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        if self._cap is not None:
            self._cap.release()
            self._cap = None


class MicrophoneTrack(LocalMediaTrack):
    """Captures 20 ms float32 microphone frames with sounddevice."""

    def __init__(self, config: AudioCaptureConfig, *, frame_sink: Optional[FrameSink] = None) -> None:
        super().__init__(TrackKind.AUDIO, frame_sink=frame_sink)
        self._config = config
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream = None

    async def start(self) -> None:
        try:
            import sounddevice as sd
        except OSError as exc:
            raise MediaAcquisitionError(f"Audio backend is not available: {exc}") from exc

        self._loop = asyncio.get_running_loop()
        try:
            stream = sd.InputStream(
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype="float32",
                blocksize=self._config.frame_samples,
                device=self._config.device,
                callback=self._capture_callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise MediaAcquisitionError(f"Microphone is not available: {exc}") from exc
        self._stream = stream

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if self._closed or not self._enabled or self._loop is None:
            return
        if status:
            logger.warning("Audio input status: %s", status)
        payload = np.array(indata, dtype=np.float32).flatten().tobytes()
        self._loop.call_soon_threadsafe(lambda: asyncio.ensure_future(self.push_frame(payload)))

    async def _release(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None


class ScreenCaptureTrack(LocalMediaTrack):
    """Grabs a monitor with mss and encodes frames as JPEG.

    A failed grab (display gone, capture revoked) ends the capture and emits
    ``capture-ended``; the owner decides how to tear the track down.
    """

    def __init__(self, config: ScreenShareConfig, *, frame_sink: Optional[FrameSink] = None) -> None:
        super().__init__(TrackKind.SCREEN, frame_sink=frame_sink)
        self._config = config
        self._monitor: Optional[dict] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        try:
            self._monitor = await asyncio.to_thread(self._prepare_monitor)
        except Exception as exc:
            raise PermissionError(f"Permission denied for screen capture: {exc}") from exc
        self._stop_event.clear()
        self._task = asyncio.create_task(self._capture_loop())

    def _prepare_monitor(self) -> dict:
        with mss() as sct:
            index = self._config.monitor
            if index is not None and 0 < index < len(sct.monitors):
                return dict(sct.monitors[index])
            return dict(sct.monitors[1])

    async def _capture_loop(self) -> None:  # pragma: no cover - hardware dependent
        assert self._monitor is not None
        frame_interval = 1 / max(1, self._config.fps)
        last_sent = time.perf_counter()
        while not self._stop_event.is_set():
            if not self._enabled:
                await asyncio.sleep(0.2)
                continue
            try:
                frame_bytes = await asyncio.to_thread(self._capture_frame, self._monitor)
            except Exception:
                logger.exception("Screen capture failed")
                self._stop_event.set()
                asyncio.create_task(self.end_capture())
                return
            if frame_bytes is not None:
                await self.push_frame(frame_bytes)
            now = time.perf_counter()
            elapsed = now - last_sent
            if elapsed < frame_interval:
                await asyncio.sleep(frame_interval - elapsed)
            last_sent = now

    def _capture_frame(self, monitor: dict) -> Optional[bytes]:  # pragma: no cover - hardware dependent
        with mss() as sct:
            raw = sct.grab(monitor)
        frame = cv2.cvtColor(np.array(raw), cv2.COLOR_BGRA2BGR)
        width, height = self._config.resolution()
        if frame.shape[1] > width or frame.shape[0] > height:
            frame = cv2.resize(frame, (width, height))
        success, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self._config.quality])
        if not success:
            return None
        return bytes(encoded)

    async def _release(self) -> None:
        self._stop_event.set()
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task():
            await task


class SpeakerPlayback:
    """Plays remote float32 audio frames on the default output device."""

    def __init__(self, config: AudioCaptureConfig) -> None:
        self._config = config
        self._queue: "queue.Queue[bytes]" = queue.Queue(maxsize=32)
        self._stream = None

    def start(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        self._stream = sd.OutputStream(
            samplerate=self._config.sample_rate,
            channels=self._config.channels,
            dtype="float32",
            blocksize=self._config.frame_samples,
            callback=self._playback_callback,
        )
        self._stream.start()

    def feed(self, payload: bytes) -> None:
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            pass

    def _playback_callback(self, outdata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio output status: %s", status)
        try:
            chunk = self._queue.get_nowait()
        except queue.Empty:
            outdata.fill(0)
            return
        samples = np.frombuffer(chunk, dtype=np.float32)
        required = frames * self._config.channels
        if samples.size < required:
            padded = np.zeros(required, dtype=np.float32)
            padded[: samples.size] = samples
        else:
            padded = samples[:required]
        outdata[:] = padded.reshape(frames, self._config.channels)

    def stop(self) -> None:
        if self._stream is None:
            return
        self._stream.stop()
        self._stream.close()
        self._stream = None


class MediaDevices:
    """Creates capture tracks backed by the local camera, microphone and screen."""

    def __init__(self, *, frame_sink: Optional[FrameSink] = None) -> None:
        self._frame_sink = frame_sink

    async def create_microphone_and_camera_tracks(
        self,
        audio_config: AudioCaptureConfig,
        video_config: VideoEncoderConfig,
    ) -> Tuple[LocalMediaTrack, LocalMediaTrack]:
        audio_track = MicrophoneTrack(audio_config, frame_sink=self._frame_sink)
        await audio_track.start()
        video_track = CameraTrack(video_config, frame_sink=self._frame_sink)
        try:
            await video_track.start()
        except Exception:
            await audio_track.close()
            raise
        return audio_track, video_track

    async def create_screen_track(self, config: ScreenShareConfig) -> LocalMediaTrack:
        track = ScreenCaptureTrack(config, frame_sink=self._frame_sink)
        await track.start()
        return track

    def create_playback(self, config: Optional[AudioCaptureConfig] = None) -> Optional[SpeakerPlayback]:
        return SpeakerPlayback(config or AudioCaptureConfig())
