import pytest

from server.session_registry import (
    AlreadyPaired,
    AlreadyTerminated,
    SessionNotFound,
    SessionRegistry,
)
from shared.protocol import DisconnectReason, InvalidSessionCode, Role


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_register_pair_status_roundtrip() -> None:
    registry = SessionRegistry()

    registered = await registry.register("abc123")
    assert registered["sessionCode"] == "ABC123"
    assert registered["paired"] is False

    await registry.pair("ABC123", user_id="user-1", board_id="board-9")
    status = await registry.get_status("abc123")

    assert status["paired"] is True
    assert status["status"] == "paired"
    assert status["controllerId"] == "user-1"
    assert status["boardId"] == "board-9"
    assert status["pairedAt"] is not None


@pytest.mark.anyio
async def test_register_is_idempotent_until_paired() -> None:
    registry = SessionRegistry()
    await registry.register("AAAAAA")
    await registry.register("aaaaaa")
    snapshot = await registry.snapshot()
    assert snapshot["session_count"] == 1

    await registry.pair("AAAAAA", device_id="device-1")
    with pytest.raises(AlreadyPaired):
        await registry.register("AAAAAA")


@pytest.mark.anyio
async def test_pair_errors() -> None:
    registry = SessionRegistry()
    with pytest.raises(SessionNotFound):
        await registry.pair("ZZZZZZ")
    with pytest.raises(InvalidSessionCode):
        await registry.pair("bad")

    await registry.register("BBBBBB")
    await registry.pair("BBBBBB", user_id="first")
    with pytest.raises(AlreadyPaired):
        await registry.pair("BBBBBB", user_id="second")

    await registry.terminate("BBBBBB", DisconnectReason.ENDED)
    with pytest.raises(AlreadyTerminated):
        await registry.pair("BBBBBB", user_id="first")


@pytest.mark.anyio
async def test_repair_by_same_controller_is_idempotent() -> None:
    registry = SessionRegistry()
    await registry.register("CCCCCC")
    await registry.pair("CCCCCC", user_id="ctrl")
    again = await registry.pair("CCCCCC", user_id="ctrl")
    assert again["controllerId"] == "ctrl"

    await registry.register("DDDDDD")
    await registry.pair("DDDDDD", device_id="dev-1")
    again = await registry.pair("DDDDDD", device_id="dev-1")
    assert again["controllerId"] == "dev-1"


@pytest.mark.anyio
async def test_ttl_expiry_and_reregistration() -> None:
    clock = FakeClock()
    registry = SessionRegistry(session_ttl=100.0, clock=clock)
    await registry.register("EEEEEE")
    clock.advance(50)
    assert await registry.record_activity("EEEEEE") is True
    clock.advance(60)
    assert await registry.exists("EEEEEE") is True

    clock.advance(101)
    expired = await registry.purge_expired()
    assert expired == ["EEEEEE"]
    assert await registry.exists("EEEEEE") is False
    with pytest.raises(SessionNotFound):
        await registry.get_status("EEEEEE")

    fresh = await registry.register("EEEEEE")
    assert fresh["status"] == "unpaired"
    assert fresh["createdAt"] == clock.now


@pytest.mark.anyio
async def test_connection_flags_and_inactivity_duration() -> None:
    clock = FakeClock()
    registry = SessionRegistry(clock=clock)
    await registry.register("FFFFFF")
    await registry.pair("FFFFFF", user_id="u")
    await registry.set_connected("FFFFFF", Role.CONTROLLER, True)
    await registry.set_connected("FFFFFF", Role.DISPLAY, True)

    status = await registry.get_status("FFFFFF")
    assert status["controllerConnected"] is True
    assert status["displayConnected"] is True

    clock.advance(42)
    assert await registry.inactivity_duration("FFFFFF") == pytest.approx(42)
    assert await registry.inactivity_duration("GGGGGG") is None


@pytest.mark.anyio
async def test_terminate_records_reason_and_events() -> None:
    registry = SessionRegistry()
    await registry.register("HHHHHH")
    await registry.pair("HHHHHH")

    assert await registry.terminate("HHHHHH", DisconnectReason.INACTIVITY) is True
    assert await registry.terminate("HHHHHH", DisconnectReason.INACTIVITY) is False

    status = await registry.get_status("HHHHHH")
    assert status["status"] == "terminated"
    assert status["paired"] is False
    assert status["disconnectReason"] == "inactivity"

    events = await registry.get_recent_events("hhhhhh", limit=10)
    assert [event["type"] for event in events] == [
        "session_terminated",
        "session_paired",
        "session_registered",
    ]
    assert await registry.get_recent_events(limit=0) == []
