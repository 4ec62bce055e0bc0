"""Tests for the async relay client with a fake WebSocket and a mocked HTTP transport."""

import asyncio
import json

import httpx
import pytest

from roomrelay.client import ConnectionState, RelayClient
from roomrelay.config import ClientSettings


FAST = ClientSettings(reconnect_attempts=3, reconnect_delay=0.0, reconnect_delay_max=0.0, page_size=2)


class FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, frames=()):
        self.sent = []
        self.closed = False
        self.incoming = asyncio.Queue()
        for frame in frames:
            self.push(frame)

    def push(self, frame):
        self.incoming.put_nowait(json.dumps(frame))

    def drop(self):
        self.incoming.put_nowait(None)

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True
        self.drop()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def types(self):
        return [frame["type"] for frame in self.sent]


class FakeConnector:
    """Hands out scripted sockets (or raises scripted errors) per connect call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls = []

    def __call__(self, url):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeHistory:
    """HTTP handler serving /messages and /messages/search.

    Clearing ``gate`` holds every response until it is set again.
    """

    def __init__(self, status=200):
        self.status = status
        self.requests = []
        self.gate = asyncio.Event()
        self.gate.set()

    async def __call__(self, request):
        self.requests.append(request)
        await self.gate.wait()
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "boom"})
        params = request.url.params
        if request.url.path == "/messages/search":
            return httpx.Response(200, json={"messages": [
                {"id": 1, "room": params["room"], "sender": "bob", "text": params["query"]},
            ]})
        skip = int(params.get("skip", 0))
        newest = 10 - skip
        messages = [
            {"id": i, "room": params["room"], "sender": "bob", "senderId": "b", "text": f"m{i}"}
            for i in range(max(newest - 1, 1), newest + 1)
        ]
        return httpx.Response(200, json={"messages": messages, "hasMore": newest - 2 > 0})


def make_client(connector, history=None):
    history = history or FakeHistory()
    http = httpx.AsyncClient(transport=httpx.MockTransport(history), base_url="http://relay.test")
    return RelayClient("http://relay.test", settings=FAST, http_client=http, ws_connect=connector), history


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestConnection:
    """Tests for announce and reconnect behaviour."""

    @pytest.mark.asyncio
    async def test_announces_identity_before_anything_else(self):
        sock = FakeSocket([{"type": "connected", "id": "a"}, {"type": "room_list", "rooms": ["General", "Dev"]}])
        client, history = make_client(FakeConnector(sock))

        await client.connect("alice", room="Dev")
        await eventually(lambda: client.view.connection_id == "a" and history.requests)

        assert client.ws_url == "ws://relay.test/ws"
        assert sock.sent[0] == {"type": "user_join", "username": "alice", "room": "Dev"}
        assert client.view.rooms == ["General", "Dev"]
        assert history.requests[0].url.params["room"] == "Dev"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_reannounces_after_transport_loss(self):
        first, second = FakeSocket(), FakeSocket()
        client, _ = make_client(FakeConnector(first, OSError("down"), second))

        await client.connect("alice")
        await client.join_room("Dev")
        first.drop()

        await eventually(lambda: second.sent)
        assert client.connection.state == ConnectionState.CONNECTED
        assert second.sent[0] == {"type": "user_join", "username": "alice", "room": "Dev"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self):
        connector = FakeConnector()
        client, _ = make_client(connector)

        await client.connect("alice")

        assert client.connection.state == ConnectionState.DISCONNECTED
        assert client.connection.show_banner is True
        assert len(connector.urls) == FAST.reconnect_attempts
        await client.aclose()

    @pytest.mark.asyncio
    async def test_user_disconnect_stops_retrying(self):
        sock = FakeSocket()
        connector = FakeConnector(sock, FakeSocket())
        client, _ = make_client(connector)

        await client.connect("alice")
        await client.disconnect()

        assert sock.closed is True
        assert client.connection.state == ConnectionState.DISCONNECTED
        assert client.connection.show_banner is False
        assert len(connector.urls) == 1
        await client.aclose()


class TestMessaging:
    """Tests for optimistic sends and other actions."""

    @pytest.mark.asyncio
    async def test_offline_send_stays_pending_until_acknowledged(self):
        sock = FakeSocket()
        client, _ = make_client(FakeConnector(sock))

        pending = await client.send_message("written offline")
        assert pending is not None
        assert client.view.is_pending(pending.client_id)

        await client.connect("alice")
        assert sock.types() == ["user_join"]
        assert client.view.rendered()[-1]["status"] == "pending"

        await client.retry(pending.client_id)
        assert sock.sent[-1] == {"type": "send_message", "text": "written offline", "clientId": pending.client_id}

        sock.push({"type": "message_delivered", "id": 11, "clientId": pending.client_id})
        await eventually(lambda: not client.view.is_pending(pending.client_id))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_send_clears_typing(self):
        sock = FakeSocket()
        client, _ = make_client(FakeConnector(sock))
        await client.connect("alice")

        assert await client.send_message("   ") is None
        await client.set_typing(True)
        await client.send_message("hi")

        assert sock.types() == ["user_join", "typing", "send_message", "typing"]
        assert sock.sent[-1] == {"type": "typing", "isTyping": False}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_leaving_active_room_returns_to_default(self):
        sock = FakeSocket()
        client, _ = make_client(FakeConnector(sock))
        await client.connect("alice", room="Dev")

        await client.leave_room("General")
        await client.leave_room("Dev")

        assert sock.sent[1:] == [
            {"type": "leave_room", "room": "Dev", "username": "alice"},
            {"type": "join_room", "room": "General"},
        ]
        assert client.view.active_room == "General"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_other_actions(self):
        sock = FakeSocket([{"type": "connected", "id": "a"}])
        client, _ = make_client(FakeConnector(sock))
        await client.connect("alice")
        await eventually(lambda: client.view.connection_id == "a")

        await client.create_room("Dev")
        await client.send_private_message("b", "psst")
        await client.mark_read("b", "a")
        await client.react(4, "👍")

        assert sock.sent[1:] == [
            {"type": "create_room", "name": "Dev"},
            {"type": "private_message", "recipientId": "b", "text": "psst"},
            {"type": "message_read", "senderId": "b", "recipientId": "a"},
            {"type": "message_reaction", "messageId": 4, "reaction": "👍", "userId": "a"},
        ]
        await client.aclose()


class TestHistory:
    """Tests for pagination and search over HTTP."""

    @pytest.mark.asyncio
    async def test_load_latest_and_older(self):
        client, history = make_client(FakeConnector())

        assert await client.load_latest() is True
        assert [m["id"] for m in client.view.rendered()] == [9, 10]

        assert await client.load_older() is True
        assert history.requests[-1].url.params["skip"] == "2"
        assert history.requests[-1].url.params["limit"] == "2"
        assert [m["id"] for m in client.view.rendered()] == [7, 8, 9, 10]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_concurrent_older_fetches_are_collapsed(self):
        client, history = make_client(FakeConnector())
        await client.load_latest()

        history.gate.clear()
        first = asyncio.create_task(client.load_older())
        await eventually(lambda: len(history.requests) == 2)

        assert client.view.loading is True
        assert await client.load_older() is False
        assert await client.load_latest() is False

        history.gate.set()
        assert await first is True
        assert len(history.requests) == 2
        assert [m["id"] for m in client.view.rendered()] == [7, 8, 9, 10]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_failed_fetch_releases_guard(self):
        client, _ = make_client(FakeConnector(), FakeHistory(status=500))

        assert await client.load_latest() is False
        assert client.view.loading is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_search_and_clear(self):
        client, history = make_client(FakeConnector())
        await client.load_latest()

        await client.search("hello")
        assert history.requests[-1].url.path == "/messages/search"
        assert [m["text"] for m in client.view.rendered()] == ["hello"]

        client.clear_search()
        assert [m["id"] for m in client.view.rendered()] == [9, 10]

        await client.search("   ")
        assert client.view.search_results is None
        await client.aclose()
