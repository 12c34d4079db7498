from typing import List, Optional, Tuple

import pytest

from callclient.devices import LocalMediaTrack
from callclient.loopback import LoopbackHub, LoopbackTransport
from callshared.errors import MediaAcquisitionError
from callshared.protocol import AudioCaptureConfig, ScreenShareConfig, TrackKind, VideoEncoderConfig


class FakeDevices:
    """Device factory producing hardware-free tracks, with failure switches."""

    def __init__(self) -> None:
        self.created: List[LocalMediaTrack] = []
        self.camera_error: Optional[Exception] = None
        self.screen_error: Optional[Exception] = None

    async def create_microphone_and_camera_tracks(
        self,
        audio_config: AudioCaptureConfig,
        video_config: VideoEncoderConfig,
    ) -> Tuple[LocalMediaTrack, LocalMediaTrack]:
        if self.camera_error is not None:
            raise self.camera_error
        audio = LocalMediaTrack(TrackKind.AUDIO)
        video = LocalMediaTrack(TrackKind.VIDEO)
        self.created.extend([audio, video])
        return audio, video

    async def create_screen_track(self, config: ScreenShareConfig) -> LocalMediaTrack:
        if self.screen_error is not None:
            raise self.screen_error
        screen = LocalMediaTrack(TrackKind.SCREEN)
        self.created.append(screen)
        return screen

    def create_playback(self, config: Optional[AudioCaptureConfig] = None) -> None:
        return None

    def open_tracks(self) -> List[LocalMediaTrack]:
        return [track for track in self.created if not track.closed]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def hub() -> LoopbackHub:
    return LoopbackHub()


@pytest.fixture
def devices() -> FakeDevices:
    return FakeDevices()


@pytest.fixture
def transport(hub: LoopbackHub, devices: FakeDevices) -> LoopbackTransport:
    return LoopbackTransport(hub, devices=devices)


@pytest.fixture
def denied_devices() -> FakeDevices:
    fake = FakeDevices()
    fake.camera_error = MediaAcquisitionError("Permission denied")
    return fake
