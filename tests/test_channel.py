# tests/test_channel.py

import asyncio
import json
import pytest
import pytest_asyncio

import websockets

from pixelforge.core.contracts import EditorMutation, MutationType
from pixelforge.editor.buffer import RequestBuffer
from pixelforge.editor.channel import ChannelState, EditorChannel, decode


def m(type_: str, **payload) -> EditorMutation:
    return EditorMutation(type=type_, **payload)


class TestRequestBuffer:

    def test_drain_is_fifo_and_empties(self):
        buffer = RequestBuffer()
        buffer.push(m("A"))
        buffer.push(m("B"))

        assert [x.type for x in buffer.drain()] == ["A", "B"]
        assert len(buffer) == 0
        assert buffer.drain() == []

    def test_push_front_keeps_original_order(self):
        buffer = RequestBuffer()
        buffer.push(m("C"))
        buffer.push_front([m("A"), m("B")])
        assert [x.type for x in buffer] == ["A", "B", "C"]


class TestDecode:

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"no_type": 1}'])
    def test_malformed_messages_are_dropped(self, raw):
        assert decode(raw) is None

    def test_extra_fields_are_kept(self):
        mutation = decode('{"type": "RELOAD_MAP", "map": {"name": "town"}}')
        assert mutation.type == "RELOAD_MAP"
        assert mutation.payload == {"map": {"name": "town"}}


class FakeHub:
    """记录每个连接收到的消息；`kick()` 主动断开当前连接。"""
    def __init__(self):
        self.sessions = []
        self.received = asyncio.Queue()
        self._current = None

    async def handler(self, ws):
        self._current = ws
        self.sessions.append(ws)
        try:
            async for raw in ws:
                await self.received.put((len(self.sessions), json.loads(raw)))
        except websockets.exceptions.ConnectionClosed:
            pass

    async def kick(self):
        await self._current.close()

    async def push(self, data: dict):
        await self._current.send(json.dumps(data))

    async def take(self, count: int, timeout: float = 5.0):
        items = []
        for _ in range(count):
            items.append(await asyncio.wait_for(self.received.get(), timeout=timeout))
        return items


@pytest_asyncio.fixture
async def hub_server():
    hub = FakeHub()
    async with websockets.serve(hub.handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield hub, f"ws://127.0.0.1:{port}/ws"


class TestEditorChannel:

    @pytest.mark.asyncio
    async def test_hello_then_buffered_messages_in_order(self, hub_server):
        hub, url = hub_server
        channel = EditorChannel(url, hello=m(MutationType.EDITOR_CONNECTED), reconnect_interval=0.05)
        await channel.send(m("FIRST"))
        await channel.send({"type": "SECOND", "n": 2})
        assert channel.buffered == 2

        channel.start()
        try:
            await channel.wait_open(timeout=5)
            await channel.send(m("THIRD"))
            messages = await hub.take(4)
        finally:
            await channel.close()

        assert [data["type"] for _, data in messages] == ["EDITOR_CONNECTED", "FIRST", "SECOND", "THIRD"]
        assert messages[2][1]["n"] == 2
        assert channel.buffered == 0

    @pytest.mark.asyncio
    async def test_reconnect_delivers_queued_messages_exactly_once(self, hub_server):
        hub, url = hub_server
        disconnected = asyncio.Event()
        channel = EditorChannel(url, hello=m(MutationType.EDITOR_CONNECTED), reconnect_interval=0.05)

        def on_message(mutation):
            if mutation.type == MutationType.EDITOR_DISCONNECTED:
                disconnected.set()

        channel.listen(on_message)
        channel.start()
        try:
            await channel.wait_open(timeout=5)
            await hub.take(1)

            await hub.kick()
            await asyncio.wait_for(disconnected.wait(), timeout=5)
            await channel.send(m("QUEUED"))

            await channel.wait_open(timeout=5)
            messages = await hub.take(2)
            await asyncio.sleep(0.1)
        finally:
            await channel.close()

        assert [(session, data["type"]) for session, data in messages] == [
            (2, "EDITOR_CONNECTED"), (2, "QUEUED"),
        ]
        assert hub.received.empty()
        assert channel.connections == 2

    @pytest.mark.asyncio
    async def test_listeners_receive_incoming_messages(self, hub_server):
        hub, url = hub_server
        got = asyncio.Queue()
        channel = EditorChannel(url, reconnect_interval=0.05)

        async def on_message(mutation):
            await got.put(mutation)

        def broken(mutation):
            raise ValueError("listener bug")

        channel.listen(broken)
        channel.listen(on_message)
        channel.start()
        try:
            await channel.wait_open(timeout=5)
            await asyncio.sleep(0.05)
            await hub.push({"type": "INIT", "outputRoot": "/tmp/out"})
            mutation = await asyncio.wait_for(got.get(), timeout=5)
        finally:
            await channel.close()

        assert mutation.type == "INIT"
        assert mutation.payload == {"outputRoot": "/tmp/out"}
        assert channel.state is ChannelState.DISCONNECTED
