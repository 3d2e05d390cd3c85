"""Command line entry points: run the chat server or replay frames offline."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Iterable, Set, TextIO

from aiohttp import web

from .config import ChatConfig
from .errors import ValidationError
from .protocol import PROTOCOL_VERSION, ForceDisconnect, Notification, decode_intent
from .router import ChatRouter
from .ws_transport import create_app

logger = logging.getLogger(__name__)

ADMIN_PASSWORD_ENV = "ROOMCHAT_ADMIN_PASSWORD"


def simulate(frames: Iterable[dict], output: TextIO, config: ChatConfig | None = None) -> None:
    """Feed client frames through a router and write every delivery as NDJSON.

    Each frame names its connection in ``conn``; ``{"conn": ..., "t":
    "disconnect"}`` closes that connection. Connections are opened on first
    use and frames from a force-disconnected connection are dropped.
    """

    router = ChatRouter(config)
    known: Set[str] = set()
    closed: Set[str] = set()
    terminated: list[str] = []

    def callback_for(connection_id: str):
        def _callback(notification: Notification) -> None:
            line = {"conn": connection_id, "t": notification.event, "body": notification.body()}
            output.write(json.dumps(line) + "\n")
            if isinstance(notification, ForceDisconnect):
                terminated.append(connection_id)

        return _callback

    def close(connection_id: str) -> None:
        closed.add(connection_id)
        router.disconnect(connection_id)

    for frame in frames:
        connection_id = frame.get("conn")
        if not isinstance(connection_id, str):
            raise ValueError(f"frame without conn: {frame}")
        if connection_id in closed:
            continue
        if connection_id not in known:
            known.add(connection_id)
            router.connect(connection_id)
            router.hub.subscribe(connection_id, callback_for(connection_id))

        if frame.get("t") == "disconnect":
            close(connection_id)
            continue

        payload = {key: value for key, value in frame.items() if key != "conn"}
        payload.setdefault("v", PROTOCOL_VERSION)
        try:
            intent = decode_intent(payload)
        except ValidationError as exc:
            router.reject(connection_id, exc)
            continue
        router.handle(connection_id, intent)
        while terminated:
            close(terminated.pop(0))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _config_from_args(args: argparse.Namespace) -> ChatConfig:
    config = ChatConfig(
        general_room=args.general_room,
        admin_username=args.admin_username,
        single_session=not args.allow_multiple_sessions,
    )
    if args.admin_password:
        config.admin_password = args.admin_password
    else:
        logger.info("no admin password configured; simulating with the default one")
    if getattr(args, "ping_interval", None) is not None:
        config.ping_interval_s = args.ping_interval
    return config


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, _config_from_args(args))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(_config_from_args(args))
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--general-room", default="General", help="Room every user joins after signing in")
    parser.add_argument("--admin-username", default="admin", help="Primary admin account name")
    parser.add_argument(
        "--admin-password",
        default=os.environ.get(ADMIN_PASSWORD_ENV),
        help=f"Primary admin password; defaults to ${ADMIN_PASSWORD_ENV}",
    )
    parser.add_argument(
        "--allow-multiple-sessions",
        action="store_true",
        help="Keep earlier connections open when a user signs in again",
    )


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Room chat server")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    _add_common_options(serve_parser)

    simulate_parser = subparsers.add_parser("simulate", help="Replay client frames through the router")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    _add_common_options(simulate_parser)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    if not args.admin_password:
        serve_parser.error(f"an admin password is required; pass --admin-password or set {ADMIN_PASSWORD_ENV}")
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
