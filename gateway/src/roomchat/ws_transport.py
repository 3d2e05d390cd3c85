from __future__ import annotations

import asyncio
import json
import logging
import secrets
from typing import Any, Union

from aiohttp import WSMsgType, web

from .config import ChatConfig
from .errors import ValidationError
from .protocol import (
    PROTOCOL_VERSION,
    ForceDisconnect,
    Login,
    Notification,
    Signup,
    decode_intent,
    encode_notification,
)
from .router import ChatRouter

logger = logging.getLogger(__name__)

CLOSE_POLICY_VIOLATION = 1008


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(config: ChatConfig | None = None, *, router: ChatRouter | None = None) -> web.Application:
    config = config or ChatConfig()
    router = router or ChatRouter(config)
    app = web.Application()
    app["router"] = router
    app["config"] = config
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)
    return app


def _error_frame(code: str, message: str) -> dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": "error", "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    router: ChatRouter = request.app["router"]
    config: ChatConfig = request.app["config"]

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    connection_id = f"c_{secrets.token_urlsafe(8)}"
    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[Notification, dict, None]] = asyncio.Queue(maxsize=config.outbound_queue_size)
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        logger.warning("closing %s: %s", connection_id, message)
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue(item: Notification | dict) -> None:
        try:
            outbound.put_nowait(item)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        nonlocal closed
        try:
            while True:
                item = await outbound.get()
                if item is None:
                    break
                if isinstance(item, dict):
                    await ws.send_json(item)
                    continue
                await ws.send_json(encode_notification(item))
                if isinstance(item, ForceDisconnect):
                    closed = True
                    await ws.close(code=CLOSE_POLICY_VIOLATION, message=item.reason.encode("utf-8"))
                    break
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= config.ping_interval_s:
                    await ws.send_json({"v": PROTOCOL_VERSION, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    router.connect(connection_id)
    subscription = router.hub.subscribe(connection_id, enqueue)
    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    logger.debug("connection %s opened", connection_id)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                mark_activity()
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue

                frame_type = frame.get("t") if isinstance(frame, dict) else None
                if frame_type == "ping":
                    enqueue({"v": PROTOCOL_VERSION, "t": "pong"})
                    continue
                if frame_type == "pong":
                    continue

                try:
                    intent = decode_intent(frame)
                except ValidationError as exc:
                    logger.warning("bad frame from %s: %s", connection_id, exc)
                    router.reject(connection_id, exc)
                    continue
                if isinstance(intent, (Signup, Login)):
                    credentials = await asyncio.to_thread(router.check_credentials, intent)
                    router.handle(connection_id, intent, credentials)
                    continue
                router.handle(connection_id, intent)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        router.disconnect(connection_id)
        router.hub.unsubscribe(subscription)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)
        logger.debug("connection %s closed", connection_id)

    return ws
