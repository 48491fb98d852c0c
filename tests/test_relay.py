import asyncio
import json
from typing import Optional

import pytest
from starlette.websockets import WebSocketDisconnect

from server.presence import PresenceRegistry
from server.rate_limit import RateLimiter
from server.relay import SignalingRelay
from server.session_registry import SessionRegistry
from shared.protocol import BoardMessage, DisconnectReason, JoinRequest, RelayEvent, Role, encode_event


class DummyWebSocket:
    def __init__(self, *frames: Optional[str]) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self.close_code = None
        self._incoming: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self._incoming.put_nowait(frame)

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    async def receive_text(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise WebSocketDisconnect(1000)
        return item

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code
        self._incoming.put_nowait(None)

    def events(self) -> list[str]:
        return [frame["event"] for frame in self.sent]

    def frames(self, event: RelayEvent) -> list[dict]:
        return [frame["data"] for frame in self.sent if frame["event"] == event.value]


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def make_relay(code: str = "ROOM42", *, paired: bool = True, tier_lookup=None):
    registry = SessionRegistry()
    presence = PresenceRegistry()
    await registry.register(code)
    if paired:
        await registry.pair(code, user_id="ctrl-user")
    return registry, presence, SignalingRelay(registry, presence, tier_lookup=tier_lookup)


def join_frame(code: str, role: str, **extra) -> str:
    return encode_event(RelayEvent.JOIN, {"sessionCode": code, "role": role, **extra})


@pytest.mark.anyio
async def test_join_rejected_until_session_is_paired() -> None:
    _, _, relay = await make_relay(paired=False)
    websocket = DummyWebSocket(join_frame("room42", "display"))

    await relay.serve(websocket, "127.0.0.1")

    assert websocket.frames(RelayEvent.ERROR)[0]["code"] == "session_not_paired"
    assert websocket.closed is True
    assert websocket.close_code == 1008


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("frame", "code"),
    [
        (encode_event(RelayEvent.CLIENT_HEARTBEAT, {}), "expected_join"),
        (join_frame("nope", "display"), "invalid_session_code"),
        (join_frame("ROOM42", "spectator"), "invalid_role"),
        (join_frame("ZZZZZZ", "display"), "session_not_found"),
        ("{broken", "malformed"),
    ],
)
async def test_join_errors(frame: str, code: str) -> None:
    _, _, relay = await make_relay()
    websocket = DummyWebSocket(frame)

    await relay.serve(websocket)

    assert websocket.frames(RelayEvent.ERROR)[0]["code"] == code
    assert websocket.closed is True


@pytest.mark.anyio
async def test_join_rejected_for_terminated_session() -> None:
    registry, _, relay = await make_relay()
    await registry.terminate("ROOM42", DisconnectReason.ENDED)
    websocket = DummyWebSocket(join_frame("ROOM42", "controller"))

    await relay.serve(websocket)

    assert websocket.frames(RelayEvent.ERROR)[0]["code"] == "session_terminated"


@pytest.mark.anyio
async def test_messages_reach_display_once() -> None:
    registry, presence, relay = await make_relay()
    display_ws = DummyWebSocket()
    controller_ws = DummyWebSocket()
    await relay.attach(display_ws, JoinRequest("ROOM42", Role.DISPLAY))
    controller = await relay.attach(controller_ws, JoinRequest("ROOM42", Role.CONTROLLER, user_id="ctrl-user", token="t"))

    joined = controller_ws.frames(RelayEvent.SESSION_JOINED)[0]
    assert joined["role"] == "controller"
    assert [peer["role"] for peer in joined["peers"]] == ["display"]
    assert controller.authenticated is True
    assert display_ws.frames(RelayEvent.CONNECTION_STATUS) == [{"connected": True}]
    assert display_ws.frames(RelayEvent.CONTROLLER_TIER) == [{"tier": "free"}]

    payload = {"messageId": "m-1", "content": "HELLO", "animationType": "wave", "colorTheme": "teal"}
    await relay.handle(controller, RelayEvent.MESSAGE_SEND, payload)
    await relay.handle(controller, RelayEvent.MESSAGE_SEND, payload)

    received = display_ws.frames(RelayEvent.MESSAGE_RECEIVED)
    assert len(received) == 1
    assert received[0]["content"] == "HELLO"
    assert received[0]["animationType"] == "wave"
    assert controller_ws.frames(RelayEvent.MESSAGE_RECEIVED) == []

    published, duplicate = await relay.publish_message("room42", BoardMessage.from_dict(payload))
    assert (published, duplicate) == (False, True)

    status = await registry.get_status("ROOM42")
    assert status["controllerConnected"] is True
    assert status["displayConnected"] is True
    assert (await presence.stats("ROOM42"))["total"] == 2


@pytest.mark.anyio
async def test_malformed_message_gets_error() -> None:
    _, _, relay = await make_relay()
    controller_ws = DummyWebSocket()
    controller = await relay.attach(controller_ws, JoinRequest("ROOM42", Role.CONTROLLER))

    await relay.handle(controller, RelayEvent.MESSAGE_SEND, {"content": 42})

    assert controller_ws.frames(RelayEvent.ERROR)[0]["code"] == "malformed"


@pytest.mark.anyio
async def test_newer_join_supersedes_same_role() -> None:
    registry, _, relay = await make_relay()
    first_ws = DummyWebSocket()
    second_ws = DummyWebSocket()
    first = await relay.attach(first_ws, JoinRequest("ROOM42", Role.DISPLAY))
    await relay.attach(second_ws, JoinRequest("ROOM42", Role.DISPLAY))

    assert first_ws.frames(RelayEvent.FORCE_DISCONNECT)[0]["reason"] == "superseded"
    assert first_ws.closed is True
    assert first.disconnected_at is not None
    assert second_ws.closed is False
    assert len(await relay.connections_for("ROOM42")) == 1
    assert (await registry.get_status("ROOM42"))["displayConnected"] is True


@pytest.mark.anyio
async def test_signaling_is_forwarded_to_other_role() -> None:
    _, _, relay = await make_relay()
    display_ws = DummyWebSocket()
    controller_ws = DummyWebSocket()
    display = await relay.attach(display_ws, JoinRequest("ROOM42", Role.DISPLAY))
    controller = await relay.attach(controller_ws, JoinRequest("ROOM42", Role.CONTROLLER))

    await relay.handle(controller, RelayEvent.WEBRTC_OFFER, {"offer": {"sdp": "v=0", "type": "offer"}})
    await relay.handle(display, RelayEvent.WEBRTC_ANSWER, {"target": controller.peer_id, "answer": {"sdp": "v=0", "type": "answer"}})

    offer = display_ws.frames(RelayEvent.WEBRTC_OFFER)[0]
    assert offer["from"] == controller.peer_id
    answer = controller_ws.frames(RelayEvent.WEBRTC_ANSWER)[0]
    assert answer["from"] == display.peer_id
    assert "target" not in answer


@pytest.mark.anyio
async def test_terminate_session_notifies_then_disconnects() -> None:
    registry, presence, relay = await make_relay()
    display_ws = DummyWebSocket()
    controller_ws = DummyWebSocket()
    await relay.attach(display_ws, JoinRequest("ROOM42", Role.DISPLAY))
    await relay.attach(controller_ws, JoinRequest("ROOM42", Role.CONTROLLER))

    assert await relay.terminate_session("ROOM42", DisconnectReason.ENDED) is True

    for websocket in (display_ws, controller_ws):
        events = websocket.events()
        assert events.index("session:terminated") < events.index("session:force-disconnect")
        assert websocket.closed is True
    assert (await registry.get_status("ROOM42"))["status"] == "terminated"
    assert await relay.has_connections("ROOM42") is False
    assert (await presence.stats("ROOM42"))["total"] == 0


@pytest.mark.anyio
async def test_tier_lookup_result_and_fallback() -> None:
    async def lookup(user_id):
        return "pro" if user_id == "paying" else ""

    _, _, relay = await make_relay(tier_lookup=lookup)
    display_ws = DummyWebSocket()
    await relay.attach(display_ws, JoinRequest("ROOM42", Role.DISPLAY))
    await relay.attach(DummyWebSocket(), JoinRequest("ROOM42", Role.CONTROLLER, user_id="paying"))
    assert display_ws.frames(RelayEvent.CONTROLLER_TIER)[-1] == {"tier": "pro"}

    async def broken(user_id):
        raise RuntimeError("billing down")

    _, _, relay = await make_relay(tier_lookup=broken)
    assert await relay.lookup_tier("someone") == "free"


@pytest.mark.anyio
async def test_serve_detaches_on_client_disconnect() -> None:
    registry, _, relay = await make_relay()
    websocket = DummyWebSocket(
        join_frame("ROOM42", "controller"),
        encode_event(RelayEvent.CLIENT_ACTIVITY, {"kind": "tap"}),
        None,
    )

    await relay.serve(websocket)

    assert websocket.events()[0] == "session:joined"
    assert await relay.has_connections("ROOM42") is False
    assert (await registry.get_status("ROOM42"))["controllerConnected"] is False


@pytest.mark.anyio
async def test_message_send_is_rate_limited_per_user() -> None:
    registry = SessionRegistry()
    presence = PresenceRegistry()
    await registry.register("ROOM42")
    await registry.pair("ROOM42", user_id="ctrl-user")
    now = [500.0]
    relay = SignalingRelay(registry, presence, message_limiter=RateLimiter(2, 60.0, clock=lambda: now[0]))
    display_ws = DummyWebSocket()
    controller_ws = DummyWebSocket()
    await relay.attach(display_ws, JoinRequest("ROOM42", Role.DISPLAY))
    controller = await relay.attach(controller_ws, JoinRequest("ROOM42", Role.CONTROLLER, user_id="ctrl-user"))

    for content in ("ONE", "TWO", "THREE"):
        await relay.handle(controller, RelayEvent.MESSAGE_SEND, {"content": content})

    assert [frame["content"] for frame in display_ws.frames(RelayEvent.MESSAGE_RECEIVED)] == ["ONE", "TWO"]
    error = controller_ws.frames(RelayEvent.ERROR)[0]
    assert error["code"] == "rate_limited"
    assert error["retryAfter"] == 60

    now[0] += 61
    await relay.handle(controller, RelayEvent.MESSAGE_SEND, {"content": "FOUR"})
    assert display_ws.frames(RelayEvent.MESSAGE_RECEIVED)[-1]["content"] == "FOUR"


@pytest.mark.anyio
async def test_bad_board_cell_gets_error_and_keeps_connection() -> None:
    _, _, relay = await make_relay()
    controller_ws = DummyWebSocket(
        join_frame("ROOM42", "controller"),
        encode_event(RelayEvent.MESSAGE_SEND, {"content": "A", "boardState": [["A"]]}),
        encode_event(RelayEvent.MESSAGE_SEND, {"content": ""}),
    )
    serving = asyncio.create_task(relay.serve(controller_ws, "10.0.0.2"))
    for _ in range(20):
        await asyncio.sleep(0)

    errors = controller_ws.frames(RelayEvent.ERROR)
    assert [error["code"] for error in errors] == ["malformed", "malformed"]
    assert "cells must be objects" in errors[0]["message"]
    assert len(await relay.connections_for("ROOM42")) == 1

    await controller_ws.close()
    await serving
    assert await relay.connections_for("ROOM42") == []
