import asyncio
import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from roomchat.accounts import AccountStore
from roomchat.config import ChatConfig
from roomchat.router import ChatRouter
from roomchat.ws_transport import create_app

from .ws_helpers import send_frame


class WsHeartbeatTests(unittest.IsolatedAsyncioTestCase):
    async def _start_client(self, *, ping_interval_s: int, ping_miss_limit: int) -> tuple[TestClient, TestServer]:
        config = ChatConfig(admin_password="secret", ping_interval_s=ping_interval_s, ping_miss_limit=ping_miss_limit)
        self.router = ChatRouter(config, accounts=AccountStore(iterations=1000))
        server = TestServer(create_app(config, router=self.router))
        await server.start_server()
        client = TestClient(server)
        await client.start_server()
        return client, server

    async def test_idle_ping_triggers_timeout_close(self):
        client, server = await self._start_client(ping_interval_s=1, ping_miss_limit=0)
        try:
            ws = await client.ws_connect("/v1/ws")
            await send_frame(ws, "signup", {"username": "idle", "password": "pw"})

            loop = asyncio.get_running_loop()
            ping_deadline = loop.time() + 8
            ping_seen = False

            while not ping_seen:
                remaining = ping_deadline - loop.time()
                if remaining <= 0:
                    self.fail("Timed out waiting for server ping")

                msg = await ws.receive(timeout=remaining)
                if msg.type == WSMsgType.TEXT:
                    if msg.json().get("t") == "ping":
                        ping_seen = True
                elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    self.fail("Connection closed before ping was observed")

            close_deadline = loop.time() + 8
            close_seen = ws.closed

            while not close_seen:
                remaining = close_deadline - loop.time()
                if remaining <= 0:
                    self.fail("Timed out waiting for server to close idle connection")

                msg = await ws.receive(timeout=remaining)
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    close_seen = True

            await asyncio.sleep(0.1)
            self.assertEqual(self.router.sessions.connections_of("idle"), [])
            self.assertEqual(self.router.rooms.members("General"), [])
        finally:
            await client.close()
            await server.close()


if __name__ == "__main__":
    unittest.main()
