"""Unit tests for the WebSocket relay adapter against a small in-test relay server."""
import asyncio
import json

import pytest
from websockets.asyncio.server import serve

from marketcall.errors import RelayUnavailable
from marketcall.net.relay import RelayFilter
from marketcall.net.websocket_relay import WebSocketRelay

from tests.fakes import wait_until


class RelayServer:
    """Stores inserted records and pushes them to matching subscriptions."""

    def __init__(self):
        self.records = []
        self.frames = []
        self.subs = {}

    async def handler(self, ws):
        mine = set()
        try:
            async for raw in ws:
                frame = json.loads(raw)
                self.frames.append(frame)
                kind = frame["type"]
                if kind == "subscribe":
                    self.subs[frame["sub"]] = (ws, RelayFilter(**frame["filter"]))
                    mine.add(frame["sub"])
                elif kind == "unsubscribe":
                    self.subs.pop(frame["sub"], None)
                elif kind == "insert":
                    record = frame["record"]
                    self.records.append(record)
                    for sub_id, (peer, flt) in list(self.subs.items()):
                        if flt.matches(record):
                            await peer.send(json.dumps({"type": "inserted", "sub": sub_id, "record": record}))
                elif kind == "delete":
                    flt = RelayFilter(**frame["filter"])
                    self.records = [r for r in self.records if not flt.matches(r)]
        finally:
            for sub_id in mine:
                self.subs.pop(sub_id, None)


@pytest.fixture
async def relay_server():
    server = RelayServer()
    async with serve(server.handler, "127.0.0.1", 0) as ws_server:
        port = ws_server.sockets[0].getsockname()[1]
        server.url = f"ws://127.0.0.1:{port}"
        yield server


class TestWebSocketRelay:
    """Test the JSON relay protocol."""

    @pytest.mark.asyncio
    async def test_insert_reaches_subscriber(self, relay_server):
        relay = WebSocketRelay(relay_server.url)
        await relay.connect()
        received = []

        async def on_record(record):
            received.append(record)

        await relay.subscribe_on_insert(RelayFilter(to_participant_id="bob"), on_record)
        await relay.insert({"id": "1", "session_id": "conv-1", "to_participant_id": "bob", "kind": "offer"})
        await relay.insert({"id": "2", "session_id": "conv-1", "to_participant_id": "carol", "kind": "offer"})
        await wait_until(lambda: len(relay_server.records) == 2)
        await wait_until(lambda: received)
        await asyncio.sleep(0.05)

        assert [r["id"] for r in received] == ["1"]
        await relay.disconnect()

    @pytest.mark.asyncio
    async def test_unsubscribe_and_delete_frames(self, relay_server):
        relay = WebSocketRelay(relay_server.url)
        await relay.connect()

        async def on_record(record):
            pass

        sub = await relay.subscribe_on_insert(RelayFilter(session_id="conv-1"), on_record)
        await sub.unsubscribe()
        await sub.unsubscribe()
        await relay.delete(RelayFilter(session_id="conv-1"))
        await wait_until(lambda: len(relay_server.frames) == 3)

        assert [f["type"] for f in relay_server.frames] == ["subscribe", "unsubscribe", "delete"]
        assert relay_server.frames[2]["filter"] == {"session_id": "conv-1"}
        await relay.disconnect()

    @pytest.mark.asyncio
    async def test_send_when_disconnected(self):
        relay = WebSocketRelay("ws://127.0.0.1:1")

        with pytest.raises(RelayUnavailable):
            await relay.insert({"id": "1"})

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        relay = WebSocketRelay("ws://127.0.0.1:1")

        with pytest.raises(RelayUnavailable):
            await relay.connect()
        assert not relay.is_connected
