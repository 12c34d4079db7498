from __future__ import annotations

import argparse
import asyncio
import logging
import os

from callshared.protocol import DEFAULT_UI_PORT, ScreenShareConfig, SCREEN_PRESETS

from .app import ClientApp


def main() -> None:
    parser = argparse.ArgumentParser(description="Room video call client")
    parser.add_argument("--room", help="Room id to join; a fresh one is generated when omitted")
    parser.add_argument("--display-name", help="Optional display name to pre-fill in the UI")
    parser.add_argument(
        "--app-id",
        default=os.environ.get("ROOMCALL_APP_ID"),
        help="Application id passed to the media transport (default: $ROOMCALL_APP_ID)",
    )
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=DEFAULT_UI_PORT, help="Port for the local UI web server")
    parser.add_argument("--origin", help="Origin used in shareable links (default: the UI address)")
    parser.add_argument(
        "--screen-preset",
        default="1080p_1",
        choices=sorted(SCREEN_PRESETS),
        help="Screen share encoder preset",
    )
    parser.add_argument(
        "--screen-mode",
        default="detail",
        choices=["detail", "motion"],
        help="Screen share optimisation mode",
    )
    parser.add_argument("--no-browser", action="store_true", help="Do not open the UI in a browser")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    ui_host = args.ui_host if args.ui_host != "0.0.0.0" else "127.0.0.1"
    origin = args.origin or f"http://{ui_host}:{args.ui_port}"
    app = ClientApp(
        room_id=args.room,
        display_name=args.display_name,
        origin=origin,
        app_id=args.app_id,
        screen_config=ScreenShareConfig(encoder_preset=args.screen_preset, optimization_mode=args.screen_mode),
    )

    asyncio.run(app.run(host=args.ui_host, port=args.ui_port, open_browser=not args.no_browser))


if __name__ == "__main__":
    main()
