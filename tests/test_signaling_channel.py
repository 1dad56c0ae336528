"""Tests for the reconnecting signaling channel."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest
from websockets.exceptions import ConnectionClosedError

from signalroom.client import channel as channel_module
from signalroom.client.channel import ChannelState, SignalingChannel
from signalroom.errors import TransportError

_CLEAN = object()


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._messages: asyncio.Queue[object] = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        await self._messages.put(_CLEAN)

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._messages.get()
        if item is _CLEAN:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def queue_message(self, payload: dict | str) -> None:
        await self._messages.put(payload if isinstance(payload, str) else json.dumps(payload))

    async def drop(self) -> None:
        """Simulate losing the connection without a close frame."""

        await self._messages.put(ConnectionClosedError(None, None))

    async def close_cleanly(self) -> None:
        await self._messages.put(_CLEAN)


class DummyConnector:
    def __init__(self, fail_after: int | None = None, hold_after: int | None = None) -> None:
        self.sockets: list[DummyWebSocket] = []
        self.urls: list[str] = []
        self.fail_after = fail_after
        self.hold_after = hold_after
        self.release = asyncio.Event()
        self.holding = asyncio.Event()

    async def connect(self, url: str) -> DummyWebSocket:
        self.urls.append(url)
        if self.fail_after is not None and len(self.urls) > self.fail_after:
            raise OSError("connection refused")
        if self.hold_after is not None and len(self.urls) > self.hold_after:
            # Handshake in flight until the test releases it.
            self.holding.set()
            await self.release.wait()
        ws = DummyWebSocket()
        self.sockets.append(ws)
        return ws


@pytest.fixture
def connector(monkeypatch):
    dummy = DummyConnector()
    monkeypatch.setattr(channel_module, "websockets", SimpleNamespace(connect=dummy.connect))
    return dummy


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_connect_sends_join(connector):
    states: list[ChannelState] = []
    channel = SignalingChannel("ws://relay/ws", on_state_change=states.append)

    await channel.connect("r1", "Alice")

    assert connector.urls == ["ws://relay/ws"]
    assert connector.sockets[0].sent == [{"type": "join", "room": "r1", "name": "Alice"}]
    assert channel.is_open
    assert states == [ChannelState.CONNECTING, ChannelState.OPEN]
    await channel.close()


@pytest.mark.asyncio
async def test_send_requires_open_channel(connector):
    channel = SignalingChannel("ws://relay/ws")

    with pytest.raises(TransportError):
        await channel.send({"type": "offer", "offer": {}})

    await channel.connect("r1", "Alice")
    await channel.close()

    with pytest.raises(TransportError):
        await channel.send({"type": "leave", "room": "r1"})


@pytest.mark.asyncio
async def test_inbound_messages_are_dispatched_and_junk_ignored(connector):
    received: list[dict] = []
    channel = SignalingChannel("ws://relay/ws", on_message=received.append)
    await channel.connect("r1", "Alice")
    ws = connector.sockets[0]

    await ws.queue_message({"type": "joined", "room": "r1", "participants": ["Alice"]})
    await ws.queue_message("garbage")
    await ws.queue_message({"type": "mystery"})
    await ws.queue_message({"type": "join", "room": "r1"})
    await ws.queue_message({"type": "user-joined", "name": "Bob"})
    await settle()

    assert received == [
        {"type": "joined", "room": "r1", "participants": ["Alice"]},
        {"type": "user-joined", "name": "Bob"},
    ]
    await channel.close()


@pytest.mark.asyncio
async def test_abnormal_close_retries_join_exactly_once(connector):
    states: list[ChannelState] = []
    channel = SignalingChannel("ws://relay/ws", on_state_change=states.append, reconnect_delay=0.01)
    await channel.connect("r1", "Alice")

    await connector.sockets[0].drop()
    await settle()
    assert channel.state is ChannelState.RECONNECTING
    retry = channel.pending_reconnect
    assert retry is not None
    await retry

    assert len(connector.sockets) == 2
    assert connector.sockets[1].sent == [{"type": "join", "room": "r1", "name": "Alice"}]
    assert channel.is_open
    assert states == [
        ChannelState.CONNECTING,
        ChannelState.OPEN,
        ChannelState.RECONNECTING,
        ChannelState.OPEN,
    ]
    await channel.close()


@pytest.mark.asyncio
async def test_clean_close_does_not_reconnect(connector):
    channel = SignalingChannel("ws://relay/ws", reconnect_delay=0)
    await channel.connect("r1", "Alice")

    await connector.sockets[0].close_cleanly()
    await settle()

    assert channel.state is ChannelState.DISCONNECTED
    assert channel.pending_reconnect is None
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_leave_cancels_pending_reconnect(connector):
    channel = SignalingChannel("ws://relay/ws", reconnect_delay=10)
    await channel.connect("r1", "Alice")

    await connector.sockets[0].drop()
    await settle()
    retry = channel.pending_reconnect
    assert retry is not None

    await channel.close()
    await settle()

    assert retry.cancelled()
    assert channel.state is ChannelState.CLOSED
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_failed_reconnect_is_terminal(monkeypatch):
    connector = DummyConnector(fail_after=1)
    monkeypatch.setattr(channel_module, "websockets", SimpleNamespace(connect=connector.connect))
    channel = SignalingChannel("ws://relay/ws", reconnect_delay=0)
    await channel.connect("r1", "Alice")

    await connector.sockets[0].drop()
    await settle()
    retry = channel.pending_reconnect
    assert retry is not None
    await retry
    await settle()

    assert channel.state is ChannelState.DISCONNECTED
    assert channel.pending_reconnect is None
    assert len(connector.urls) == 2


@pytest.mark.asyncio
async def test_close_during_reconnect_handshake_does_not_rejoin(monkeypatch):
    connector = DummyConnector(hold_after=1)
    monkeypatch.setattr(channel_module, "websockets", SimpleNamespace(connect=connector.connect))
    channel = SignalingChannel("ws://relay/ws", reconnect_delay=0)
    await channel.connect("r1", "Alice")

    await connector.sockets[0].drop()
    await settle()
    await connector.holding.wait()
    retry = channel.pending_reconnect
    assert retry is not None
    assert channel.state is ChannelState.RECONNECTING

    await channel.close()
    connector.release.set()
    await settle()

    assert retry.done()
    assert channel.state is ChannelState.CLOSED
    assert channel.pending_reconnect is None
    assert len(connector.sockets) == 1
    assert not channel.is_open


@pytest.mark.asyncio
async def test_close_during_initial_handshake_drops_new_socket(monkeypatch):
    connector = DummyConnector(hold_after=0)
    monkeypatch.setattr(channel_module, "websockets", SimpleNamespace(connect=connector.connect))
    channel = SignalingChannel("ws://relay/ws")

    connecting = asyncio.create_task(channel.connect("r1", "Alice"))
    await connector.holding.wait()
    await channel.close()
    connector.release.set()
    await connecting

    assert channel.state is ChannelState.CLOSED
    assert connector.sockets[0].sent == []
    assert connector.sockets[0].closed
