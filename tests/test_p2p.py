import asyncio
import json

import pytest

from client.events import EventBus
from client.p2p import DATA_CHANNEL_LABEL, P2PNegotiator, P2PStatus
from shared.protocol import RelayEvent, Role


class Emitter:
    def __init__(self) -> None:
        self.handlers: dict = {}

    def on(self, event: str):
        def decorator(func):
            self.handlers[event] = func
            return func

        return decorator

    def emit(self, event: str, *args) -> None:
        handler = self.handlers.get(event)
        if handler is not None:
            handler(*args)


class FakeChannel(Emitter):
    def __init__(self, label: str) -> None:
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.peer = None
        self.sent: list[str] = []

    def send(self, text: str) -> None:
        self.sent.append(text)
        if self.peer is not None:
            self.peer.emit("message", text)

    def close(self) -> None:
        self.readyState = "closed"


class FakeDescription:
    def __init__(self, sdp: str, type: str) -> None:
        self.sdp = sdp
        self.type = type


class FakePeer(Emitter):
    def __init__(self) -> None:
        super().__init__()
        self.channel = None
        self.localDescription = None
        self.remoteDescription = None
        self.signalingState = "stable"
        self.connectionState = "new"
        self.candidates: list = []
        self.closed = False

    def createDataChannel(self, label: str, ordered: bool = True) -> FakeChannel:
        self.channel = FakeChannel(label)
        return self.channel

    async def createOffer(self) -> FakeDescription:
        return FakeDescription("v=0 offer", "offer")

    async def createAnswer(self) -> FakeDescription:
        return FakeDescription("v=0 answer", "answer")

    async def setLocalDescription(self, description) -> None:
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description) -> None:
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True


class PeerFactory:
    def __init__(self) -> None:
        self.created: list[FakePeer] = []

    def __call__(self) -> FakePeer:
        peer = FakePeer()
        self.created.append(peer)
        return peer


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def open_channels(controller_pc: FakePeer, display_pc: FakePeer) -> FakeChannel:
    remote = FakeChannel(DATA_CHANNEL_LABEL)
    remote.peer = controller_pc.channel
    controller_pc.channel.peer = remote
    remote.readyState = "open"
    display_pc.emit("datachannel", remote)
    controller_pc.channel.readyState = "open"
    controller_pc.channel.emit("open")
    return remote


@pytest.mark.anyio
async def test_loopback_negotiation_reaches_connected_once() -> None:
    factory = PeerFactory()
    controller_bus, display_bus = EventBus(), EventBus()
    controller_states: list[P2PStatus] = []
    display_states: list[P2PStatus] = []
    received: list[dict] = []

    controller = P2PNegotiator(
        Role.CONTROLLER,
        display_bus.emit,
        on_status=controller_states.append,
        peer_factory=factory,
    )
    display = P2PNegotiator(
        Role.DISPLAY,
        controller_bus.emit,
        on_message=received.append,
        on_status=display_states.append,
        peer_factory=factory,
    )
    controller.attach(controller_bus)
    display.attach(display_bus)

    assert await controller.start() is True
    controller_pc, display_pc = factory.created
    assert controller_pc.channel.label == DATA_CHANNEL_LABEL
    assert display_pc.remoteDescription.sdp == "v=0 offer"
    assert controller_pc.remoteDescription.type == "answer"

    remote = open_channels(controller_pc, display_pc)

    assert controller.is_p2p and display.is_p2p
    assert controller_states == [P2PStatus.CONNECTING, P2PStatus.CONNECTED]
    assert display_states == [P2PStatus.CONNECTING, P2PStatus.CONNECTED]

    assert controller.send_message({"content": "HELLO", "messageId": "m-1"}) is True
    await settle()
    assert received == [{"content": "HELLO", "messageId": "m-1"}]
    assert json.loads(controller_pc.channel.sent[0])["content"] == "HELLO"

    remote.emit("message", "{broken")
    await settle()
    assert len(received) == 1

    await controller.close()
    await display.close()
    assert controller_states[-2:] == [P2PStatus.CLOSED, P2PStatus.DISCONNECTED]
    assert controller_pc.closed and display_pc.closed


@pytest.mark.anyio
async def test_ice_candidates_are_applied() -> None:
    factory = PeerFactory()
    display_bus = EventBus()
    signals: list[tuple] = []

    async def signal(event, data):
        signals.append((event, data))

    display = P2PNegotiator(Role.DISPLAY, signal, peer_factory=factory)
    display.attach(display_bus)
    await display_bus.emit(
        RelayEvent.WEBRTC_OFFER,
        {"from": "peer-ctrl", "offer": {"sdp": "v=0 offer", "type": "offer"}},
    )

    assert signals[0][0] == RelayEvent.WEBRTC_ANSWER
    assert signals[0][1]["target"] == "peer-ctrl"

    await display_bus.emit(
        RelayEvent.WEBRTC_ICE_CANDIDATE,
        {
            "candidate": {
                "candidate": "candidate:1 1 UDP 2122252543 192.168.1.20 54321 typ host",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
            }
        },
    )
    await display_bus.emit(RelayEvent.WEBRTC_ICE_CANDIDATE, {"candidate": {}})

    candidates = factory.created[0].candidates
    assert len(candidates) == 1
    assert candidates[0].ip == "192.168.1.20"
    assert candidates[0].sdpMid == "0"
    await display.close()


@pytest.mark.anyio
async def test_negotiation_deadline_gives_up() -> None:
    states: list[P2PStatus] = []

    async def signal(event, data):
        return None

    controller = P2PNegotiator(
        Role.CONTROLLER,
        signal,
        on_status=states.append,
        peer_factory=PeerFactory(),
        negotiation_timeout=0.01,
    )

    assert await controller.start() is True
    await asyncio.sleep(0.05)

    assert controller.gave_up is True
    assert controller.status == P2PStatus.DISCONNECTED
    assert states == [P2PStatus.CONNECTING, P2PStatus.FAILED, P2PStatus.DISCONNECTED]
    assert await controller.start() is False

    controller.reset()
    assert await controller.start() is True
    await controller.close()


@pytest.mark.anyio
async def test_send_requires_open_channel_and_display_never_offers() -> None:
    async def signal(event, data):
        return None

    display = P2PNegotiator(Role.DISPLAY, signal, peer_factory=PeerFactory())
    assert await display.start() is False
    assert display.send_message({"content": "x"}) is False

    controller = P2PNegotiator(Role.CONTROLLER, signal, peer_factory=PeerFactory(), negotiation_timeout=60)
    await controller.start()
    assert controller.send_message({"content": "x"}) is False
    await controller.close()
    assert controller.status == P2PStatus.DISCONNECTED


@pytest.mark.anyio
async def test_failed_connection_state_falls_back() -> None:
    factory = PeerFactory()
    states: list[P2PStatus] = []

    async def signal(event, data):
        return None

    controller = P2PNegotiator(Role.CONTROLLER, signal, on_status=states.append, peer_factory=factory, negotiation_timeout=60)
    await controller.start()
    peer = factory.created[0]
    peer.connectionState = "failed"
    peer.emit("connectionstatechange")
    await settle()

    assert states == [P2PStatus.CONNECTING, P2PStatus.FAILED, P2PStatus.DISCONNECTED]
    assert controller.gave_up is False
    assert peer.closed is True
