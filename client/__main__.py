from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from shared.protocol import (
    ANIMATION_TYPES,
    COLOR_THEMES,
    DEFAULT_ANIMATION,
    DEFAULT_COLOR_THEME,
    DEFAULT_HTTP_PORT,
    PRESENCE_POLL_INTERVAL_SECONDS,
    STATUS_POLL_INTERVAL_SECONDS,
    Role,
)

from .app import ClientApp


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Display/controller pairing client")
    parser.add_argument(
        "--server-url",
        default=f"http://127.0.0.1:{DEFAULT_HTTP_PORT}",
        help="Base URL of the pairing server",
    )
    parser.add_argument("--user-id", help="Optional user id reported to the server")
    parser.add_argument("--token", help="Optional auth token; anonymous when omitted")
    parser.add_argument("--board-id", help="Board to associate with the pairing")
    parser.add_argument("--state-file", type=Path, help="File used to persist the session code between runs")
    parser.add_argument("--p2p", action="store_true", help="Try a direct WebRTC data channel")
    parser.add_argument("--poll-interval", type=float, default=STATUS_POLL_INTERVAL_SECONDS, help="Seconds between pairing status polls")
    parser.add_argument(
        "--presence-poll-interval",
        type=float,
        default=PRESENCE_POLL_INTERVAL_SECONDS,
        help="Seconds between presence refreshes",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    subparsers = parser.add_subparsers(dest="role", required=True)
    display = subparsers.add_parser("display", help="Show a session code and render incoming messages")
    display.add_argument("--code", help="Reuse a specific session code")
    controller = subparsers.add_parser("controller", help="Pair with a display and send lines from stdin")
    controller.add_argument("code", nargs="?", help="Session code shown on the display")
    controller.add_argument("--animation", choices=ANIMATION_TYPES, default=DEFAULT_ANIMATION, help="Animation type for sent messages")
    controller.add_argument("--theme", choices=COLOR_THEMES, default=DEFAULT_COLOR_THEME, help="Colour theme for sent messages")
    return parser


def main() -> None:
    args = build_parser().parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    role = Role(args.role)
    app = ClientApp(
        role,
        args.server_url,
        user_id=args.user_id,
        token=args.token,
        board_id=args.board_id,
        state_file=args.state_file,
        use_p2p=args.p2p,
        poll_interval=args.poll_interval,
        presence_poll_interval=args.presence_poll_interval,
        animation_type=getattr(args, "animation", DEFAULT_ANIMATION),
        color_theme=getattr(args, "theme", DEFAULT_COLOR_THEME),
    )

    try:
        asyncio.run(app.run(args.code))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
