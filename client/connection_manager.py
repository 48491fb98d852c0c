from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.protocol import (
    DEFAULT_ANIMATION,
    DEFAULT_COLOR_THEME,
    STATUS_POLL_INTERVAL_SECONDS,
    BoardMessage,
    BoardState,
    InactivityWarning,
    JoinRequest,
    RelayEvent,
    Role,
    SessionNotice,
    SessionStatus,
    is_paired,
)

from .events import EventBus, Subscription
from .relay_client import RelayClient, RelayNotConnected
from .session_api import ApiError, SessionApiClient
from .session_context import SessionContext

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY = 2.0
RECONNECT_MAX_DELAY = 30.0
SEEN_MESSAGE_LIMIT = 200

DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]
RelayFactory = Callable[[JoinRequest, EventBus, DisconnectCallback], Any]
Callback = Callable[..., Awaitable[None] | None]


class ManagerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    UNPAIRED = "unpaired"
    AWAITING_ACK = "awaiting_ack"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(slots=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    via: tuple[str, ...] = ()
    published: bool = False
    error: Optional[str] = None


class ConnectionManager:
    """Drives one client through pairing, relay connection and reconnection."""

    def __init__(
        self,
        context: SessionContext,
        api: SessionApiClient,
        *,
        relay_url: Optional[str] = None,
        relay_factory: Optional[RelayFactory] = None,
        bus: Optional[EventBus] = None,
        poll_interval: float = STATUS_POLL_INTERVAL_SECONDS,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY,
        on_state: Optional[Callback] = None,
        on_message: Optional[Callback] = None,
        on_tier: Optional[Callback] = None,
        on_inactivity_warning: Optional[Callback] = None,
        on_terminated: Optional[Callback] = None,
        on_force_disconnect: Optional[Callback] = None,
        on_paired: Optional[Callback] = None,
        on_presence: Optional[Callback] = None,
    ) -> None:
        if relay_factory is None:
            if relay_url is None:
                raise ValueError("relay_url or relay_factory is required")
            relay_factory = self._default_relay_factory(relay_url)
        self._context = context
        self._api = api
        self._relay_factory = relay_factory
        self._bus = bus or EventBus()
        self._poll_interval = poll_interval
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._callbacks: Dict[str, Optional[Callback]] = {
            "state": on_state,
            "message": on_message,
            "tier": on_tier,
            "inactivity_warning": on_inactivity_warning,
            "terminated": on_terminated,
            "force_disconnect": on_force_disconnect,
            "paired": on_paired,
            "presence": on_presence,
        }
        self._state = ManagerState.IDLE if context.role == Role.DISPLAY else ManagerState.UNPAIRED
        self._relay: Any = None
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._subscriptions: List[Subscription] = []
        self._seen_messages: OrderedDict[str, None] = OrderedDict()
        self._reregistered = False
        self._closing = False
        self._terminated = False

    @staticmethod
    def _default_relay_factory(relay_url: str) -> RelayFactory:
        def factory(request: JoinRequest, bus: EventBus, on_disconnect: DisconnectCallback) -> RelayClient:
            return RelayClient(relay_url, request, bus, on_disconnect=on_disconnect)

        return factory

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def relay(self) -> Any:
        return self._relay

    @property
    def relay_open(self) -> bool:
        return self._relay is not None and bool(self._relay.connected)

    async def send_event(self, event: RelayEvent, data: Dict[str, Any]) -> None:
        """Send a raw relay event; raises ``RelayNotConnected`` when the channel is down."""

        if self._relay is None:
            raise RelayNotConnected("relay channel is not open")
        await self._relay.send(event, data)

    # display

    async def assign_code(self, code: str) -> None:
        if self._context.role != Role.DISPLAY:
            raise RuntimeError("assign_code is only valid for a display")
        code = self._context.set_session_code(code)
        self._context.is_connected = False
        self._context.save()
        await self._api.register(code)
        logger.info("Registered session code %s; waiting for a controller", code)
        self._closing = False
        self._start_polling()

    def _start_polling(self) -> None:
        self._reregistered = False
        self._set_state(ManagerState.POLLING)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        try:
            while not self._closing:
                if await self.poll_once():
                    return
                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            pass

    async def poll_once(self) -> bool:
        """Check the registry once; returns True when pairing was observed and handled."""

        code = self._context.session_code
        if code is None:
            return False
        try:
            status = await self._api.get_status(code)
        except ApiError as exc:
            if exc.not_found:
                await self._reregister(code)
            else:
                logger.warning("Status poll for %s failed: %s", code, exc)
            return False
        self._reregistered = False
        if status.get("status") == SessionStatus.TERMINATED.value:
            logger.info("Session %s was terminated; registering it again", code)
            await self._reregister(code)
            return False
        if not is_paired(status):
            return False
        await self._on_display_paired()
        return True

    async def _reregister(self, code: str) -> None:
        if self._reregistered:
            return
        self._reregistered = True
        logger.info("Session %s is gone from the registry; registering it again", code)
        try:
            await self._api.register(code)
        except ApiError as exc:
            logger.warning("Re-registering %s failed: %s", code, exc)

    async def _on_display_paired(self) -> None:
        logger.info("Controller paired with %s; opening relay", self._context.session_code)
        self._context.is_connected = True
        try:
            await self._open_relay()
        except Exception as exc:
            logger.warning("Failed to open relay for %s: %s", self._context.session_code, exc)
            self._context.is_connected = False
            self._schedule_reconnect()
            return
        self._context.record_activity()
        self._set_state(ManagerState.CONNECTED)

    # controller

    async def pair(self, code: str) -> Dict[str, Any]:
        if self._context.role != Role.CONTROLLER:
            raise RuntimeError("pair is only valid for a controller")
        code = self._context.set_session_code(code)
        result = await self._api.pair(
            code,
            user_id=self._context.user_id,
            board_id=self._context.board_id,
            device_id=self._context.device_id,
        )
        self._context.controller_has_paired = True
        self._context.board_id = result.get("boardId") or self._context.board_id
        if result.get("userTier"):
            self._context.controller_tier = str(result["userTier"])
        self._context.save()
        logger.info("Paired with session %s", code)
        self._closing = False
        self._set_state(ManagerState.AWAITING_ACK)
        try:
            await self._open_relay()
        except Exception as exc:
            logger.warning("Failed to open relay for %s: %s", code, exc)
            self._schedule_reconnect()
        return result

    async def resume(self) -> bool:
        """Reconnect using persisted state, e.g. after a restart."""

        if self._context.session_code is None:
            return False
        self._closing = False
        if self._context.role == Role.DISPLAY:
            self._start_polling()
            return True
        if not self._context.controller_has_paired:
            return False
        return await self._reconnect_once()

    # relay

    async def _open_relay(self) -> None:
        code = self._context.session_code
        if code is None:
            raise RuntimeError("no session code assigned")
        if self._context.role == Role.DISPLAY and not self._context.is_connected:
            raise RuntimeError("display relay opened before pairing was observed")
        if self._context.role == Role.CONTROLLER and not self._context.controller_has_paired:
            raise RuntimeError("controller relay opened before pairing")
        self._terminated = False
        await self._close_relay()
        self._subscribe()
        request = JoinRequest(
            session_code=code,
            role=self._context.role,
            user_id=self._context.user_id,
            token=self._context.token,
        )
        relay = self._relay_factory(request, self._bus, self._handle_relay_drop)
        await relay.connect()
        self._relay = relay

    async def _close_relay(self) -> None:
        relay, self._relay = self._relay, None
        if relay is not None:
            try:
                await relay.close()
            except Exception:
                logger.debug("Error closing relay", exc_info=True)

    def _subscribe(self) -> None:
        if self._subscriptions:
            return
        handlers = {
            RelayEvent.CONNECTION_STATUS: self._handle_connection_status,
            RelayEvent.MESSAGE_RECEIVED: self.deliver_message,
            RelayEvent.CONTROLLER_TIER: self._handle_tier,
            RelayEvent.INACTIVITY_WARNING: self._handle_inactivity_warning,
            RelayEvent.SESSION_TERMINATED: self._handle_terminated,
            RelayEvent.FORCE_DISCONNECT: self._handle_force_disconnect,
            RelayEvent.SESSION_PAIRED: self._handle_paired,
            RelayEvent.PRESENCE_UPDATE: self._handle_presence,
            RelayEvent.ERROR: self._handle_error,
        }
        self._subscriptions = [self._bus.subscribe(event, handler) for event, handler in handlers.items()]

    def _unsubscribe(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    async def _handle_connection_status(self, data: Dict[str, Any]) -> None:
        if self._context.role != Role.CONTROLLER:
            return
        if not data.get("connected"):
            logger.debug("Relay reported the controller link as down")
            return
        self._context.is_connected = True
        self._context.record_activity()
        self._set_state(ManagerState.CONNECTED)

    async def deliver_message(self, data: Dict[str, Any]) -> bool:
        """Accept a board message from the relay or a data channel, once per message id."""

        try:
            message = BoardMessage.from_dict(data)
        except ValueError as exc:
            logger.warning("Dropping malformed board message: %s", exc)
            return False
        if message.message_id in self._seen_messages:
            logger.debug("Dropping duplicate message %s", message.message_id)
            return False
        self._seen_messages[message.message_id] = None
        if len(self._seen_messages) > SEEN_MESSAGE_LIMIT:
            self._seen_messages.popitem(last=False)
        self._context.current_message = message
        self._context.record_activity()
        await self._notify("message", message)
        return True

    async def _handle_tier(self, data: Dict[str, Any]) -> None:
        tier = str(data.get("tier") or self._context.controller_tier)
        self._context.controller_tier = tier
        await self._notify("tier", tier)

    async def _handle_inactivity_warning(self, data: Dict[str, Any]) -> None:
        warning = InactivityWarning.from_dict(data)
        logger.info("Inactivity warning: %s", warning.message)
        await self._notify("inactivity_warning", warning)

    async def _handle_terminated(self, data: Dict[str, Any]) -> None:
        self._terminated = True
        notice = SessionNotice.from_dict(data)
        logger.info("Session %s terminated (%s)", self._context.session_code, notice.reason)
        await self._stop(ManagerState.DISCONNECTED)
        self._context.reset(keep_code=self._context.role == Role.DISPLAY)
        await self._notify("terminated", notice)

    async def _handle_force_disconnect(self, data: Dict[str, Any]) -> None:
        notice = SessionNotice.from_dict(data)
        if self._terminated:
            # The server always follows session:terminated with a per-connection notice.
            logger.debug("Ignoring %s notice after session termination", notice.reason)
            return
        logger.info("Disconnected by server (%s): %s", notice.reason, notice.message)
        await self._stop(ManagerState.DISCONNECTED)
        await self._notify("force_disconnect", notice)

    async def _handle_paired(self, data: Dict[str, Any]) -> None:
        await self._notify("paired", data)

    async def _handle_presence(self, data: Dict[str, Any]) -> None:
        await self._notify("presence", data)

    async def _handle_error(self, data: Dict[str, Any]) -> None:
        logger.warning("Relay error %s: %s", data.get("code"), data.get("message"))

    # sending

    async def send(
        self,
        content: str,
        animation_type: str = DEFAULT_ANIMATION,
        color_theme: str = DEFAULT_COLOR_THEME,
        board_state: Optional[BoardState] = None,
        *,
        data_channel: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> SendResult:
        """Send a board message; never raises.

        The message goes over the relay and through the HTTP broker with the
        same ``messageId``; ``data_channel`` is tried as well when given.
        """

        code = self._context.session_code
        if not self._context.is_connected or code is None or not self.relay_open:
            return SendResult(success=False, error="not connected")
        message = BoardMessage(
            content=content,
            animation_type=animation_type,
            color_theme=color_theme,
            board_state=board_state,
        )
        payload = message.to_dict()
        via: list[str] = []
        errors: list[str] = []

        if data_channel is not None and data_channel(payload):
            via.append("p2p")
        try:
            await self._relay.send(RelayEvent.MESSAGE_SEND, payload)
        except RelayNotConnected as exc:
            errors.append(f"relay: {exc}")
        else:
            via.append("relay")

        published = False
        try:
            result = await self._api.publish_message(code, message)
        except ApiError as exc:
            logger.debug("Broker publish for %s failed: %s", message.message_id, exc)
            errors.append(f"broker: {exc.message}")
        else:
            published = bool(result.get("success"))
            if published:
                via.append("broker")

        if not via:
            return SendResult(success=False, message_id=message.message_id, error="; ".join(errors) or "send failed")
        self._context.current_message = message
        self._context.record_activity()
        return SendResult(success=True, message_id=message.message_id, via=tuple(via), published=published)

    # reconnection

    async def _handle_relay_drop(self, reason: Optional[str]) -> None:
        if self._closing or self._state == ManagerState.DISCONNECTED:
            return
        logger.warning("Relay connection lost (%s); reconnecting", reason)
        self._relay = None
        self._context.is_connected = False
        self._set_state(ManagerState.POLLING if self._context.role == Role.DISPLAY else ManagerState.AWAITING_ACK)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        delay = self._reconnect_base_delay
        try:
            while not self._closing:
                await asyncio.sleep(delay)
                try:
                    if await self._reconnect_once():
                        return
                except Exception:
                    logger.warning("Reconnect attempt failed", exc_info=True)
                delay = min(delay * 2, self._reconnect_max_delay)
                logger.info("Retrying connection in %.1fs", delay)
        except asyncio.CancelledError:
            pass

    async def _reconnect_once(self) -> bool:
        """Re-derive pairing from the registry; returns True when no more retries are needed."""

        code = self._context.session_code
        if code is None:
            return True
        if self._context.role == Role.DISPLAY:
            self._start_polling()
            return True
        try:
            status = await self._api.get_status(code)
        except ApiError as exc:
            if not exc.not_found:
                raise
            status = {"paired": False}
        if not is_paired(status) or status.get("status") == SessionStatus.TERMINATED.value:
            logger.info("Session %s is no longer paired; clearing pairing", code)
            self._context.controller_has_paired = False
            self._context.is_connected = False
            self._context.save()
            self._set_state(ManagerState.UNPAIRED)
            return True
        self._context.controller_has_paired = True
        self._set_state(ManagerState.AWAITING_ACK)
        await self._open_relay()
        return True

    # teardown

    async def disconnect(self) -> None:
        """Single teardown: stop polling and reconnecting, close the relay, drop handlers."""

        await self._stop(ManagerState.DISCONNECTED)
        self._unsubscribe()
        logger.info("Connection manager stopped")

    async def _stop(self, state: ManagerState) -> None:
        self._closing = True
        current = asyncio.current_task()
        for task in (self._poll_task, self._reconnect_task):
            if task is not None and task is not current:
                task.cancel()
        self._poll_task = None
        self._reconnect_task = None
        await self._close_relay()
        self._context.is_connected = False
        self._set_state(state)

    def _set_state(self, state: ManagerState) -> None:
        if self._state == state:
            return
        logger.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        callback = self._callbacks.get("state")
        if callback is None:
            return
        try:
            result = callback(state)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("State callback failed")

    async def _notify(self, name: str, *args: Any) -> None:
        callback = self._callbacks.get(name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("%s callback failed", name)
