import re
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from callclient.app import ClientApp, UiConnections
from callclient.loopback import LoopbackTransport
from callclient.session import Outcome, SessionController
from callshared.errors import ScreenShareError, ScreenShareFailure


def make_app(hub, devices, **kwargs) -> ClientApp:
    controller = SessionController(LoopbackTransport(hub, devices=devices), origin="http://127.0.0.1:8100")
    return ClientApp(controller=controller, **kwargs)


@pytest.mark.anyio
async def test_join_message_joins_with_prefilled_name(hub, devices) -> None:
    app = make_app(hub, devices, room_id="abc123", display_name="Alice")
    broadcast = AsyncMock()
    app._ui.broadcast = broadcast

    await app._handle_ui_message({"type": "join", "payload": {}})

    assert app.controller.state.value == "joined"
    assert app.controller.display_name == "Alice"
    messages = [call.args[0] for call in broadcast.await_args_list]
    assert messages[0] == {
        "type": "session_status",
        "payload": {"state": "joining", "room_id": "abc123", "display_name": "Alice"},
    }
    assert any(message["type"] == "state_snapshot" for message in messages)
    assert messages[-1]["payload"]["state"] == "joined"


@pytest.mark.anyio
async def test_failed_operation_is_broadcast(hub, devices, monkeypatch) -> None:
    app = make_app(hub, devices, room_id="abc123")
    broadcast = AsyncMock()
    app._ui.broadcast = broadcast
    failure = Outcome.failure(ScreenShareError(ScreenShareFailure.MULTI_TRACK_CONFLICT))
    monkeypatch.setattr(app.controller, "toggle_screen_share", AsyncMock(return_value=failure))

    await app._handle_ui_message({"type": "toggle_screen_share"})

    message = broadcast.await_args.args[0]
    assert message["type"] == "operation_failed"
    assert message["payload"]["operation"] == "toggle_screen_share"
    assert message["payload"]["reason"] == "multi_track_conflict"


@pytest.mark.anyio
async def test_leave_and_unknown_messages(hub, devices) -> None:
    app = make_app(hub, devices, room_id="abc123")
    app._ui.broadcast = AsyncMock()
    await app._handle_ui_message({"type": "join", "payload": {"display_name": "Bob"}})

    await app._handle_ui_message({"type": "leave"})
    await app._handle_ui_message({"type": "does_not_exist"})

    assert app.controller.state.value == "init"
    assert hub.members("abc123") == []


@pytest.mark.anyio
async def test_video_frames_are_forwarded_as_base64(hub, devices) -> None:
    app = make_app(hub, devices)
    broadcast = AsyncMock()
    app._ui.broadcast = broadcast

    await app._handle_video_frame("local-video", b"\xff\xd8jpeg")

    assert broadcast.await_args.args[0] == {
        "type": "video_frame",
        "payload": {"surface": "local-video", "frame": "/9hqcGVn"},
    }


def test_shareable_link_is_served(hub, devices) -> None:
    app = make_app(hub, devices, room_id="abc123")
    client = TestClient(app.app)

    response = client.get(app.controller.shareable_link)

    assert response.status_code == 200
    assert 'data-room="abc123"' in response.text
    assert app.call_page_url == "http://127.0.0.1:8100/video-call?room=abc123"


def test_call_page_adopts_room_from_link(hub, devices) -> None:
    app = make_app(hub, devices)
    assert app.controller.room_id is None
    assert app.call_page_url == "http://127.0.0.1:8100/video-call"
    client = TestClient(app.app)

    assert client.get("/video-call?room=other42").status_code == 200
    assert app.controller.room_id == "other42"

    client.get("/video-call?room=ignored")
    assert app.controller.room_id == "other42"
    config = client.get("/api/config").json()
    assert config["shareable_link"] == "http://127.0.0.1:8100/video-call?room=other42"


def test_call_page_without_room_generates_one(hub, devices) -> None:
    app = make_app(hub, devices)

    response = TestClient(app.app).get("/video-call")

    room_id = app.controller.room_id
    assert re.fullmatch(r"[0-9a-z]{5,7}", room_id)
    assert f'data-room="{room_id}"' in response.text
    assert app.controller.shareable_link.endswith(f"/video-call?room={room_id}")


def test_config_adopts_room_parameter(hub, devices) -> None:
    app = make_app(hub, devices)
    client = TestClient(app.app)

    assert client.get("/api/config", params={"room": "zz999"}).json()["room_id"] == "zz999"
    assert app.controller.room_id == "zz999"


class DummySocket:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.accepted = False
        self.sent: list = []
        self.application_state = WebSocketState.CONNECTED

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


@pytest.mark.anyio
async def test_ui_connections_drop_failed_sockets() -> None:
    connections = UiConnections()
    healthy = DummySocket()
    broken = DummySocket(fail=True)
    closed = DummySocket()
    closed.application_state = WebSocketState.DISCONNECTED
    for ws in (healthy, broken, closed):
        await connections.add(ws)

    await connections.broadcast({"type": "heartbeat"})
    await connections.broadcast({"type": "state_snapshot"})

    assert healthy.accepted is True
    assert healthy.sent == [{"type": "heartbeat"}, {"type": "state_snapshot"}]
    assert len(connections) == 1
