import asyncio
import threading
import unittest
from unittest import mock

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from roomchat.accounts import AccountStore
from roomchat.config import ChatConfig
from roomchat.router import ChatRouter
from roomchat.ws_transport import CLOSE_POLICY_VIOLATION, create_app

from .ws_helpers import collect_events, recv_event, send_frame


class WsTransportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        config = ChatConfig(admin_password="secret", ping_interval_s=3600)
        self.router = ChatRouter(config, accounts=AccountStore(iterations=1000))
        self.app = create_app(config, router=self.router)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.sockets = []

    async def asyncTearDown(self):
        for ws in self.sockets:
            await ws.close()
        await self.client.close()
        await self.server.close()

    async def _connect(self):
        ws = await self.client.ws_connect("/v1/ws")
        self.sockets.append(ws)
        return ws

    async def _auth(self, event: str, username: str, password: str = "pw"):
        ws = await self._connect()
        await send_frame(ws, event, {"username": username, "password": password})
        auth = await recv_event(ws, "auth_success")
        init = await recv_event(ws, "init_room_data")
        return ws, auth, init

    async def test_healthz(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_signup_returns_auth_success_and_general_room(self):
        _, auth, init = await self._auth("signup", "alice", "pw1")

        self.assertEqual(auth["body"], {"username": "alice", "isAdmin": False})
        self.assertEqual(init["body"]["rooms"], ["General"])
        self.assertEqual(init["body"]["currentRoom"], "General")
        self.assertEqual(init["body"]["messages"], [])

    async def test_bad_login_reports_auth_error_and_keeps_connection(self):
        ws = await self._connect()
        await send_frame(ws, "login", {"username": "ghost", "password": "pw"})
        error = await recv_event(ws, "auth_error")
        self.assertEqual(error["body"], "Invalid username or password")

        await send_frame(ws, "signup", {"username": "ghost", "password": "pw"})
        auth = await recv_event(ws, "auth_success")
        self.assertEqual(auth["body"]["username"], "ghost")

    async def test_malformed_frames_get_error_frames(self):
        ws = await self._connect()

        await ws.send_str("{not json")
        first = await recv_event(ws, "error")
        await send_frame(ws, "teleport")
        second = await recv_event(ws, "error")

        self.assertEqual(first["body"]["code"], "invalid_request")
        self.assertEqual(second["body"], {"code": "invalid_request", "message": "unknown frame type"})

    async def test_ping_frame_gets_pong(self):
        ws = await self._connect()
        await send_frame(ws, "ping")
        pong = await recv_event(ws, "pong")
        self.assertEqual(pong, {"v": 1, "t": "pong"})

    async def test_send_before_login_is_rejected(self):
        ws = await self._connect()
        await send_frame(ws, "send_message", {"roomName": "General", "text": "hi"})

        error = await recv_event(ws, "auth_error")

        self.assertEqual(error["body"], "Authentication required")
        self.assertEqual(self.router.rooms.history("General"), [])

    async def test_message_reaches_other_room_member(self):
        bob, _, _ = await self._auth("signup", "bob")
        alice, _, _ = await self._auth("signup", "alice", "pw1")

        await send_frame(alice, "send_message", {"roomName": "General", "text": "hi"})

        received = await recv_event(bob, "new_message")
        echoed = await recv_event(alice, "new_message")
        self.assertEqual(received["body"]["senderName"], "alice")
        self.assertEqual(received["body"]["text"], "hi")
        self.assertEqual(received["body"]["roomName"], "General")
        self.assertEqual(received["body"], echoed["body"])

    async def test_messages_arrive_in_append_order(self):
        bob, _, _ = await self._auth("signup", "bob")
        alice, _, _ = await self._auth("signup", "alice")

        await asyncio.gather(
            *(send_frame(alice if i % 2 else bob, "send_message", {"roomName": "General", "text": str(i)}) for i in range(10))
        )

        seen = []
        for ws in (bob, alice):
            ids = []
            while len(ids) < 10:
                ids.append((await recv_event(ws, "new_message"))["body"]["id"])
            seen.append(ids)

        self.assertEqual(seen[0], seen[1])
        self.assertEqual(seen[0], [m.id for m in self.router.rooms.history("General")])

    async def test_password_checks_run_off_the_event_loop(self):
        threads = []
        check = self.router.check_credentials

        def recording_check(intent):
            threads.append(threading.get_ident())
            return check(intent)

        with mock.patch.object(self.router, "check_credentials", side_effect=recording_check):
            await self._auth("signup", "alice")
            ws = await self._connect()
            await send_frame(ws, "login", {"username": "alice", "password": "wrong"})
            await recv_event(ws, "auth_error")

        self.assertEqual(len(threads), 2)
        self.assertNotIn(threading.get_ident(), threads)

    async def test_create_room_updates_every_client(self):
        bob, _, _ = await self._auth("signup", "bob")
        alice, _, _ = await self._auth("signup", "alice")

        await send_frame(alice, "create_room", "dev")

        for ws in (bob, alice):
            update = await recv_event(ws, "update_room_list")
            self.assertEqual(update["body"], ["General", "dev"])

    async def test_join_room_replays_history(self):
        bob, _, _ = await self._auth("signup", "bob")
        await send_frame(bob, "create_room", "dev")
        await send_frame(bob, "join_room", "dev")
        await recv_event(bob, "init_room_data")
        await send_frame(bob, "send_message", {"roomName": "dev", "text": "notes"})
        await recv_event(bob, "new_message")

        await send_frame(bob, "join_room", "General")
        await recv_event(bob, "init_room_data")
        await send_frame(bob, "join_room", "dev")
        init = await recv_event(bob, "init_room_data")

        self.assertEqual([m["text"] for m in init["body"]["messages"]], ["notes"])

    async def test_disconnect_updates_room_members(self):
        bob, _, _ = await self._auth("signup", "bob")
        alice, _, _ = await self._auth("signup", "alice")
        joined = await recv_event(bob, "update_user_list")
        self.assertEqual([u["username"] for u in joined["body"]], ["bob", "alice"])

        await alice.close()

        left = await recv_event(bob, "update_user_list")
        self.assertEqual(left["body"], [{"username": "bob", "isBanned": False}])

    async def test_ban_forces_disconnect_of_target_only(self):
        admin, auth, _ = await self._auth("login", "admin", "secret")
        self.assertTrue(auth["body"]["isAdmin"])
        bob, _, _ = await self._auth("signup", "bob")
        alice, _, _ = await self._auth("signup", "alice")

        await send_frame(admin, "admin_toggle_ban", "alice")

        kicked = await recv_event(alice, "force_disconnect")
        self.assertEqual(kicked["body"], "You have been banned")
        closing = await alice.receive(timeout=2)
        self.assertEqual(closing.type, WSMsgType.CLOSE)
        self.assertEqual(closing.data, CLOSE_POLICY_VIOLATION)

        banned = {"username": "alice", "isBanned": True}
        users = await recv_event(admin, "update_user_list", predicate=lambda f: banned in f["body"])
        self.assertEqual([u["username"] for u in users["body"]], ["admin", "bob", "alice"])

        frames = await collect_events(bob, timeout=0.2)
        self.assertNotIn("force_disconnect", [f["t"] for f in frames])
        self.assertEqual(self.router.sessions.connections_of("alice"), [])

        retry = await self._connect()
        await send_frame(retry, "login", {"username": "alice", "password": "pw"})
        error = await recv_event(retry, "auth_error")
        self.assertEqual(error["body"], "This account has been banned")

    async def test_second_login_replaces_first_connection(self):
        first, _, _ = await self._auth("signup", "alice")
        second, _, _ = await self._auth("login", "alice")

        kicked = await recv_event(first, "force_disconnect")

        self.assertEqual(kicked["body"], "Signed in from another connection")
        self.assertEqual(len(self.router.sessions.connections_of("alice")), 1)
        await send_frame(second, "send_message", {"roomName": "General", "text": "still here"})
        message = await recv_event(second, "new_message")
        self.assertEqual(message["body"]["text"], "still here")


if __name__ == "__main__":
    unittest.main()
