import asyncio
import json

import pytest

from client.events import EventBus
from client.relay_client import RelayClient, RelayNotConnected, RelayRejected
from shared.protocol import JoinRequest, RelayEvent, Role, encode_event


class DummySocket:
    def __init__(self, *frames: str) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self._incoming.put_nowait(frame)

    def push(self, frame) -> None:
        self._incoming.put_nowait(frame)

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def recv(self) -> str:
        return await self._incoming.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_client(socket: DummySocket, bus: EventBus, reasons: list) -> RelayClient:
    async def connector(url: str) -> DummySocket:
        return socket

    return RelayClient(
        "ws://pairing.test/ws",
        JoinRequest("ROOM42", Role.DISPLAY),
        bus,
        on_disconnect=reasons.append,
        heartbeat_interval=0,
        connector=connector,
    )


@pytest.mark.anyio
async def test_join_then_dispatch_then_disconnect() -> None:
    socket = DummySocket(
        encode_event(
            RelayEvent.SESSION_JOINED,
            {"peerId": "peer-1", "sessionCode": "ROOM42", "role": "display", "peers": [{"role": "controller"}]},
        )
    )
    bus = EventBus()
    received: list[dict] = []
    reasons: list = []
    bus.subscribe(RelayEvent.MESSAGE_RECEIVED, received.append)
    client = make_client(socket, bus, reasons)

    joined = await client.connect()

    assert joined["peerId"] == "peer-1"
    assert client.peer_id == "peer-1"
    assert client.peers == [{"role": "controller"}]
    assert client.connected is True
    assert socket.sent[0] == {"event": "join", "data": {"sessionCode": "ROOM42", "role": "display"}}

    socket.push(encode_event(RelayEvent.MESSAGE_RECEIVED, {"content": "HI"}))
    socket.push("{broken")
    socket.push(None)
    for _ in range(20):
        await asyncio.sleep(0)

    assert received == [{"content": "HI"}]
    assert reasons == ["server_closed"]
    assert client.connected is False


@pytest.mark.anyio
async def test_rejected_join_raises_with_code() -> None:
    socket = DummySocket(encode_event(RelayEvent.ERROR, {"code": "session_not_paired", "message": "Session is not paired yet"}))
    client = make_client(socket, EventBus(), [])

    with pytest.raises(RelayRejected) as excinfo:
        await client.connect()

    assert excinfo.value.code == "session_not_paired"
    assert socket.closed is True
    assert client.connected is False


@pytest.mark.anyio
async def test_send_requires_open_channel() -> None:
    client = make_client(DummySocket(), EventBus(), [])
    with pytest.raises(RelayNotConnected):
        await client.send(RelayEvent.CLIENT_ACTIVITY, {})


@pytest.mark.anyio
async def test_client_close_does_not_report_disconnect() -> None:
    socket = DummySocket(encode_event(RelayEvent.SESSION_JOINED, {"peerId": "peer-2"}))
    reasons: list = []
    client = make_client(socket, EventBus(), reasons)
    await client.connect()

    await client.send(RelayEvent.CLIENT_ACTIVITY, {"kind": "tap"})
    await client.close()
    await asyncio.sleep(0)

    assert socket.sent[-1] == {"event": "client:activity", "data": {"kind": "tap"}}
    assert socket.closed is True
    assert reasons == []


@pytest.mark.anyio
async def test_keepalive_sends_liveness_ping_not_heartbeat() -> None:
    socket = DummySocket(encode_event(RelayEvent.SESSION_JOINED, {"peerId": "peer-3"}))

    async def connector(url: str) -> DummySocket:
        return socket

    client = RelayClient(
        "ws://pairing.test/ws",
        JoinRequest("ROOM42", Role.CONTROLLER),
        EventBus(),
        heartbeat_interval=0.01,
        connector=connector,
    )
    await client.connect()
    await asyncio.sleep(0.05)
    await client.close()

    events = {frame["event"] for frame in socket.sent[1:]}
    assert events == {"client:ping"}
