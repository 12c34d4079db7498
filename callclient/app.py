from __future__ import annotations

import asyncio
import base64
import html
import logging
import webbrowser
from typing import Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from starlette.websockets import WebSocketState

from callshared.protocol import DEFAULT_ORIGIN, DEFAULT_UI_PORT, LINK_PATH, ScreenShareConfig

from .devices import MediaDevices
from .loopback import LoopbackHub, LoopbackTransport
from .session import Outcome, SessionController

logger = logging.getLogger(__name__)


class UiConnections:
    """Browser WebSocket connections that receive session updates.

    Sends are serialised so a frame push never interleaves with a snapshot.
    Sockets that fail or have closed are dropped on the next broadcast.
    """

    def __init__(self) -> None:
        self._sockets: Set[WebSocket] = set()
        self._send_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sockets)

    async def add(self, ws: WebSocket) -> None:
        await ws.accept()
        self._sockets.add(ws)

    def discard(self, ws: WebSocket) -> None:
        self._sockets.discard(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        stale: List[WebSocket] = []
        async with self._send_lock:
            for ws in list(self._sockets):
                if ws.application_state != WebSocketState.CONNECTED:
                    stale.append(ws)
                    continue
                try:
                    await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to push %s to the UI", message.get("type"))
                    stale.append(ws)
        for ws in stale:
            self._sockets.discard(ws)


CALL_PAGE_TEMPLATE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Room {room_id}</title></head>
<body data-room="{room_id}" data-link="{link}" data-control="/ws/control"></body>
</html>
"""


class ClientApp:
    """Local web bridge between the browser UI and the session controller.

    The UI sends operation requests over ``/ws/control`` and renders whatever
    ``session_status``, ``state_snapshot`` and ``video_frame`` messages come
    back. Layout and styling live entirely in the UI.
    """

    def __init__(
        self,
        *,
        room_id: Optional[str] = None,
        display_name: Optional[str] = None,
        origin: str = DEFAULT_ORIGIN,
        app_id: Optional[str] = None,
        screen_config: Optional[ScreenShareConfig] = None,
        controller: Optional[SessionController] = None,
    ) -> None:
        self._prefill_display_name = display_name
        self._ui = UiConnections()
        if controller is None:
            transport = LoopbackTransport(
                LoopbackHub(),
                devices=MediaDevices(frame_sink=self._handle_video_frame),
                frame_sink=self._handle_video_frame,
            )
            controller = SessionController(
                transport,
                app_id=app_id,
                origin=origin,
                screen_config=screen_config,
            )
        self._controller = controller
        self._controller.set_on_change(self._broadcast_snapshot)
        if room_id:
            self._controller.assign_or_adopt_room(room_id)
        self._uvicorn_server = None
        self._app = FastAPI()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def controller(self) -> SessionController:
        return self._controller

    @property
    def call_page_url(self) -> str:
        """The shareable link once a room is assigned, else the bare call page."""
        link = self._controller.shareable_link
        if link:
            return link
        return f"{self._controller.origin.rstrip('/')}{LINK_PATH}"

    def _configure_routes(self) -> None:
        @self._app.get(LINK_PATH)
        async def call_page(request: Request) -> HTMLResponse:
            # First load adopts ?room= or generates a room; later loads keep it.
            room_id = self._controller.assign_room_from_url(str(request.url))
            return HTMLResponse(
                CALL_PAGE_TEMPLATE.format(
                    room_id=html.escape(room_id),
                    link=html.escape(self._controller.shareable_link or ""),
                )
            )

        @self._app.get("/api/config")
        async def config(room: Optional[str] = None) -> Dict[str, object]:
            if room:
                self._controller.assign_or_adopt_room(room)
            return {
                "prefill_display_name": self._prefill_display_name,
                "room_id": self._controller.room_id,
                "shareable_link": self._controller.shareable_link,
                "state": self._controller.state.value,
            }

        @self._app.post("/api/copy-link")
        async def copy_link() -> Dict[str, object]:
            if self._controller.room_id is None:
                raise HTTPException(status_code=412, detail="No room assigned")
            outcome = await self._controller.copy_shareable_link()
            return {"method": outcome.value, **outcome.to_dict()}

        @self._app.websocket("/ws/control")
        async def ws_control(websocket: WebSocket) -> None:
            await self._ui.add(websocket)
            try:
                await websocket.send_json(
                    {
                        "type": "state_snapshot",
                        "payload": self._controller.snapshot(),
                    }
                )
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                self._ui.discard(websocket)

    async def _handle_ui_message(self, data: Dict[str, object]) -> None:
        """Handle messages coming from the web UI via WebSocket."""

        kind = data.get("type")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}
        if kind == "join":
            display_name = str(payload.get("display_name") or self._prefill_display_name or "").strip()
            await self._broadcast_session_status("joining")
            outcome = await self._controller.join(display_name)
        elif kind == "leave":
            outcome = await self._controller.leave()
        elif kind == "end_call":
            outcome = await self._controller.end_call()
        elif kind == "restart":
            outcome = self._controller.restart()
        elif kind == "toggle_mute":
            outcome = await self._controller.toggle_mute()
        elif kind == "toggle_camera":
            outcome = await self._controller.toggle_camera()
        elif kind == "toggle_screen_share":
            outcome = await self._controller.toggle_screen_share()
        elif kind == "copy_link":
            outcome = await self._controller.copy_shareable_link()
        elif kind == "heartbeat":
            return
        else:
            logger.warning("Unhandled UI message: %s", data)
            return
        await self._report_outcome(str(kind), outcome)

    async def _report_outcome(self, operation: str, outcome: Outcome) -> None:
        if outcome.ok:
            await self._broadcast_session_status(self._controller.state.value)
            return
        await self._ui.broadcast(
            {
                "type": "operation_failed",
                "payload": {
                    "operation": operation,
                    **outcome.to_dict(),
                },
            }
        )

    async def _broadcast_session_status(self, state: str) -> None:
        await self._ui.broadcast(
            {
                "type": "session_status",
                "payload": {
                    "state": state,
                    "room_id": self._controller.room_id,
                    "display_name": self._controller.display_name or self._prefill_display_name,
                },
            }
        )

    async def _broadcast_snapshot(self) -> None:
        await self._ui.broadcast(
            {
                "type": "state_snapshot",
                "payload": self._controller.snapshot(),
            }
        )

    async def _handle_video_frame(self, surface: str, frame: bytes) -> None:
        await self._ui.broadcast(
            {
                "type": "video_frame",
                "payload": {
                    "surface": surface,
                    "frame": base64.b64encode(frame).decode("ascii"),
                },
            }
        )

    async def shutdown(self) -> None:
        await self._controller.leave()

    async def run(self, host: str = "127.0.0.1", port: int = DEFAULT_UI_PORT, *, open_browser: bool = True) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        if open_browser:
            webbrowser.open_new_tab(self.call_page_url)
        try:
            await server.serve()
        finally:
            self._uvicorn_server = None
            await self.shutdown()
