import asyncio
import re

import pytest

from callclient.clipboard import ClipboardResult
from callclient.loopback import LoopbackTransport
from callclient.session import SessionController
from callshared.errors import (
    ClipboardError,
    JoinFailure,
    MediaAcquisitionError,
    ScreenShareError,
    ScreenShareFailure,
    TransportError,
)
from callshared.protocol import MediaType, SessionState, ShareMode, TransportEvent


def make_controller(hub, devices, room_id="abc123", **kwargs) -> SessionController:
    transport = LoopbackTransport(hub, devices=devices)
    controller = SessionController(transport, origin="https://meet.example.com", **kwargs)
    controller.assign_or_adopt_room(room_id)
    return controller


def roster_names(controller: SessionController) -> dict:
    return {participant.id: participant.display_name for participant in controller.roster.list()}


def test_fresh_load_generates_room_and_link(transport) -> None:
    controller = SessionController(transport, origin="https://meet.example.com")
    room_id = controller.assign_or_adopt_room(None)

    assert re.fullmatch(r"[0-9a-z]{5,7}", room_id)
    assert controller.shareable_link == f"https://meet.example.com/video-call?room={room_id}"
    assert controller.assign_or_adopt_room("other") == room_id


def test_room_is_adopted_from_url(transport) -> None:
    controller = SessionController(transport)
    assert controller.assign_room_from_url("https://meet.example.com/video-call?room=abc123") == "abc123"
    assert controller.room_id == "abc123"


@pytest.mark.anyio
async def test_join_publishes_local_media(hub, devices) -> None:
    controller = make_controller(hub, devices)

    outcome = await controller.join("Alice")

    assert outcome.ok is True
    assert controller.state == SessionState.JOINED
    assert controller.local_participant_id == outcome.value
    assert hub.members("abc123") == [outcome.value]
    publications = hub.publications("abc123", outcome.value)
    assert set(publications) == {MediaType.AUDIO, MediaType.VIDEO}
    assert controller.tracks.mode == ShareMode.CAMERA


@pytest.mark.anyio
async def test_duplicate_join_is_noop(hub, devices) -> None:
    controller = make_controller(hub, devices)

    first, second = await asyncio.gather(controller.join("Alice"), controller.join("Alice"))

    assert first.ok and not first.skipped
    assert second.skipped is True
    assert len(hub.members("abc123")) == 1
    assert (await controller.join("Alice")).skipped is True


@pytest.mark.anyio
async def test_join_requires_room_and_name(transport) -> None:
    controller = SessionController(transport)
    outcome = await controller.join("Alice")
    assert isinstance(outcome.error, JoinFailure)

    controller.assign_or_adopt_room("abc123")
    outcome = await controller.join("   ")
    assert isinstance(outcome.error, JoinFailure)
    assert controller.state == SessionState.INIT


@pytest.mark.anyio
async def test_media_denied_returns_to_init(hub, denied_devices) -> None:
    controller = make_controller(hub, denied_devices)

    outcome = await controller.join("Alice")

    assert outcome.ok is False
    assert isinstance(outcome.error, MediaAcquisitionError)
    assert controller.state == SessionState.INIT
    assert hub.members("abc123") == []


@pytest.mark.anyio
async def test_connect_failure_releases_tracks(hub, devices, monkeypatch) -> None:
    controller = make_controller(hub, devices)
    transport = controller._transport

    async def refuse(*args, **kwargs):
        raise TransportError("service unreachable", code="NETWORK_ERROR")

    monkeypatch.setattr(transport, "connect", refuse)

    outcome = await controller.join("Alice")

    assert isinstance(outcome.error, JoinFailure)
    assert controller.state == SessionState.INIT
    assert devices.open_tracks() == []
    assert transport.listener_count() == 0


@pytest.mark.anyio
async def test_publish_failure_disconnects(hub, devices, monkeypatch) -> None:
    controller = make_controller(hub, devices)
    transport = controller._transport

    async def refuse(tracks):
        raise TransportError("publish rejected")

    monkeypatch.setattr(transport, "publish", refuse)

    outcome = await controller.join("Alice")

    assert isinstance(outcome.error, JoinFailure)
    assert controller.state == SessionState.INIT
    assert hub.members("abc123") == []
    assert devices.open_tracks() == []

    monkeypatch.undo()
    retry = await controller.join("Alice")
    assert retry.ok is True


@pytest.mark.anyio
async def test_two_participants_see_each_other(hub, devices) -> None:
    alice = make_controller(hub, devices)
    bob = make_controller(hub, devices)

    await alice.join("Alice")
    await bob.join("Bob")

    alice_id = alice.local_participant_id
    bob_id = bob.local_participant_id
    assert roster_names(alice) == {bob_id: "Bob"}
    assert roster_names(bob) == {alice_id: "Alice"}
    assert alice.roster.get(bob_id).has_audio is True

    remote = await bob._transport.subscribe(alice_id, MediaType.VIDEO)
    assert remote.surface == f"remote-video-{alice_id}"


@pytest.mark.anyio
async def test_join_then_leave_releases_everything(hub, devices) -> None:
    alice = make_controller(hub, devices)
    await alice.join("Alice")
    others = [make_controller(hub, devices) for _ in range(3)]
    for index, other in enumerate(others):
        await other.join(f"Guest {index}")
    assert len(alice.roster) == 3

    outcome = await alice.leave()

    assert outcome.ok is True
    assert alice.state == SessionState.INIT
    assert alice.roster.list() == []
    assert alice.tracks.open_tracks() == []
    assert alice._transport.listener_count() == 0
    assert alice.room_id == "abc123"
    for other in others:
        assert alice_id_absent(other, alice)


def alice_id_absent(other: SessionController, alice: SessionController) -> bool:
    return all(participant.display_name != "Alice" for participant in other.roster.list())


@pytest.mark.anyio
async def test_leave_during_join_is_deferred(hub, devices, monkeypatch) -> None:
    controller = make_controller(hub, devices)
    transport = controller._transport
    original_connect = transport.connect
    reached = asyncio.Event()
    release = asyncio.Event()

    async def slow_connect(*args, **kwargs):
        reached.set()
        await release.wait()
        return await original_connect(*args, **kwargs)

    monkeypatch.setattr(transport, "connect", slow_connect)

    join_task = asyncio.create_task(controller.join("Alice"))
    await reached.wait()
    assert controller.state == SessionState.JOINING
    leave_task = asyncio.create_task(controller.leave())
    await asyncio.sleep(0)
    release.set()

    join_outcome = await join_task
    leave_outcome = await leave_task

    assert join_outcome.skipped is True
    assert leave_outcome.ok is True
    assert controller.state == SessionState.INIT
    assert hub.members("abc123") == []
    assert devices.open_tracks() == []
    assert transport.listener_count() == 0


@pytest.mark.anyio
async def test_events_from_stale_generation_are_dropped(transport) -> None:
    controller = SessionController(transport)
    controller._subscribe_transport_events(controller.generation)
    controller._generation += 1

    await transport.emit(TransportEvent.METADATA, "x", "Mallory")
    await transport.emit(TransportEvent.PARTICIPANT_LEFT, "x")

    assert controller.roster.display_name_for("x") == "User x"


@pytest.mark.anyio
async def test_toggles_require_joined_state(hub, devices) -> None:
    controller = make_controller(hub, devices)

    assert (await controller.toggle_mute()).skipped is True
    assert (await controller.toggle_camera()).skipped is True
    assert (await controller.toggle_screen_share()).skipped is True


@pytest.mark.anyio
async def test_toggle_mute_twice_restores_flag(hub, devices) -> None:
    controller = make_controller(hub, devices)
    await controller.join("Alice")
    original = controller.tracks.audio_enabled

    first = await controller.toggle_mute()
    second = await controller.toggle_mute()

    assert first.value is (not original)
    assert second.value is original
    assert controller.tracks.audio_enabled is original
    assert controller.tracks.audio_track.enabled is original


@pytest.mark.anyio
async def test_toggle_camera_keeps_track_published(hub, devices) -> None:
    controller = make_controller(hub, devices)
    await controller.join("Alice")

    outcome = await controller.toggle_camera()

    assert outcome.value is False
    camera = controller.tracks.camera_track
    assert camera.enabled is False
    assert hub.published_track("abc123", controller.local_participant_id, MediaType.VIDEO) is camera


@pytest.mark.anyio
async def test_screen_share_does_not_disturb_remote_roster(hub, devices) -> None:
    alice = make_controller(hub, devices)
    bob = make_controller(hub, devices)
    await alice.join("Alice")
    await bob.join("Bob")
    camera = alice.tracks.camera_track

    outcome = await alice.toggle_screen_share()

    assert outcome.value is True
    assert alice.tracks.mode == ShareMode.SCREEN_SHARING
    assert camera.closed is False
    alice_id = alice.local_participant_id
    assert hub.published_track("abc123", alice_id, MediaType.VIDEO) is alice.tracks.screen_track
    assert roster_names(bob) == {alice_id: "Alice"}
    assert bob.roster.get(alice_id).has_video is True


@pytest.mark.anyio
async def test_capture_ended_then_manual_stop(hub, devices) -> None:
    alice = make_controller(hub, devices)
    await alice.join("Alice")
    await alice.toggle_screen_share()
    screen = alice.tracks.screen_track

    await screen.end_capture()

    assert alice.tracks.mode == ShareMode.CAMERA
    assert hub.published_track("abc123", alice.local_participant_id, MediaType.VIDEO) is alice.tracks.camera_track
    assert await alice.tracks.stop_screen_share() is False
    assert alice.tracks.mode == ShareMode.CAMERA


@pytest.mark.anyio
async def test_screen_share_failure_is_reported(hub, devices) -> None:
    alice = make_controller(hub, devices)
    await alice.join("Alice")
    devices.screen_error = RuntimeError("NotAllowedError: Permission denied")

    outcome = await alice.toggle_screen_share()

    assert outcome.ok is False
    assert isinstance(outcome.error, ScreenShareError)
    assert outcome.error.reason == ScreenShareFailure.PERMISSION_DENIED
    assert outcome.to_dict()["reason"] == "permission_denied"
    assert alice.state == SessionState.JOINED
    assert alice.tracks.mode == ShareMode.CAMERA


@pytest.mark.anyio
async def test_end_call_and_restart(hub, devices) -> None:
    controller = make_controller(hub, devices)
    await controller.join("Alice")

    assert (await controller.end_call()).ok is True
    assert controller.state == SessionState.ENDED
    assert (await controller.join("Alice")).skipped is True

    outcome = controller.restart()
    assert outcome.ok is True
    assert controller.state == SessionState.INIT
    assert re.fullmatch(r"[0-9a-z]{5,7}", controller.room_id)
    assert controller.restart().skipped is True


@pytest.mark.anyio
async def test_copy_shareable_link_reports_outcome(hub, devices) -> None:
    copied = []

    def fake_clipboard(text: str) -> ClipboardResult:
        copied.append(text)
        return ClipboardResult(ok=True, method="tk")

    controller = make_controller(hub, devices, clipboard=fake_clipboard)
    outcome = await controller.copy_shareable_link()
    assert outcome.ok is True
    assert copied == ["https://meet.example.com/video-call?room=abc123"]

    def broken_clipboard(text: str) -> ClipboardResult:
        return ClipboardResult(ok=False, error=ClipboardError("no clipboard"))

    failing = make_controller(hub, devices, clipboard=broken_clipboard)
    outcome = await failing.copy_shareable_link()
    assert outcome.ok is False
    assert isinstance(outcome.error, ClipboardError)
    assert failing.state == SessionState.INIT


@pytest.mark.anyio
async def test_change_callback_failures_are_contained(hub, devices) -> None:
    calls = []

    async def on_change() -> None:
        calls.append(1)
        raise RuntimeError("ui gone")

    controller = make_controller(hub, devices, on_change=on_change)
    outcome = await controller.join("Alice")

    assert outcome.ok is True
    assert len(calls) >= 2
    snapshot = controller.snapshot()
    assert snapshot["state"] == "joined"
    assert snapshot["media"]["mode"] == "camera"


@pytest.mark.anyio
async def test_snapshots_during_join_only_report_published_video(hub, devices) -> None:
    bob = make_controller(hub, devices)
    await bob.join("Bob")
    seen = []

    def record() -> None:
        seen.append((alice.snapshot(), alice.tracks.published_video))

    alice = make_controller(hub, devices, on_change=record)
    await alice.join("Alice")

    joining = [snapshot for snapshot, _ in seen if snapshot["state"] == "joining"]
    assert len(joining) > 1
    assert all(snapshot["media"]["mode"] == "none" for snapshot in joining)
    for snapshot, video in seen:
        if snapshot["media"]["mode"] != "none":
            assert video is not None
    assert seen[-1][0]["media"]["mode"] == "camera"
