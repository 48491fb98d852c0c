from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from shared.protocol import (
    DEFAULT_ANIMATION,
    DEFAULT_COLOR_THEME,
    PRESENCE_POLL_INTERVAL_SECONDS,
    RELAY_PATH,
    STATUS_POLL_INTERVAL_SECONDS,
    BoardMessage,
    InactivityWarning,
    Role,
    SessionNotice,
    generate_session_code,
)

from .activity import ActivityTracker
from .connection_manager import ConnectionManager, ManagerState, SendResult
from .p2p import P2PNegotiator, P2PStatus
from .presence import PresenceTracker
from .session_api import ApiError, SessionApiClient
from .session_context import SessionContext

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 10


def relay_url_for(server_url: str) -> str:
    base = server_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + RELAY_PATH


class ClientApp:
    """Client runtime wiring pairing, relay, presence and P2P for one role."""

    def __init__(
        self,
        role: Role,
        server_url: str,
        *,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        board_id: Optional[str] = None,
        state_file: Optional[Path] = None,
        use_p2p: bool = False,
        poll_interval: float = STATUS_POLL_INTERVAL_SECONDS,
        presence_poll_interval: float = PRESENCE_POLL_INTERVAL_SECONDS,
        animation_type: str = DEFAULT_ANIMATION,
        color_theme: str = DEFAULT_COLOR_THEME,
        output: Callable[[str], None] = print,
        api: Optional[SessionApiClient] = None,
        manager: Optional[ConnectionManager] = None,
    ) -> None:
        self._role = role
        self._output = output
        self._animation_type = animation_type
        self._color_theme = color_theme
        self._context = SessionContext(
            role=role,
            user_id=user_id,
            token=token,
            board_id=board_id,
            device_id=uuid.uuid4().hex,
            state_file=state_file,
        )
        self._api = api or SessionApiClient(server_url, token=token)
        self._manager = manager or ConnectionManager(
            self._context,
            self._api,
            relay_url=relay_url_for(server_url),
            poll_interval=poll_interval,
            on_state=self._on_state,
            on_message=self._on_message,
            on_tier=self._on_tier,
            on_inactivity_warning=self._on_inactivity_warning,
            on_terminated=self._on_terminated,
            on_force_disconnect=self._on_force_disconnect,
            on_presence=self._on_presence,
        )
        self._activity = ActivityTracker(self._context, self._manager.send_event)
        self._presence = PresenceTracker(self._api, self._context, poll_interval=presence_poll_interval)
        self._p2p: Optional[P2PNegotiator] = None
        if use_p2p:
            self._p2p = P2PNegotiator(
                role,
                self._manager.send_event,
                on_message=self._manager.deliver_message,
                on_status=self._on_p2p_status,
            )
            self._p2p.attach(self._manager.bus)
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    async def generate_code(self) -> str:
        """Pick a code the registry does not know about yet."""

        for _ in range(CODE_ATTEMPTS):
            code = generate_session_code()
            if not await self._api.exists(code):
                return code
            logger.debug("Session code %s is taken; trying another", code)
        raise RuntimeError("Unable to find a free session code")

    async def start_display(self, code: Optional[str] = None) -> str:
        if code is None and self._context.load():
            code = self._context.session_code
        for _ in range(CODE_ATTEMPTS):
            if code is None:
                code = await self.generate_code()
            try:
                await self._manager.assign_code(code)
            except ApiError as exc:
                if exc.status_code != 409:
                    raise
                logger.info("Session code %s is already paired elsewhere", code)
                code = None
                continue
            self._output(f"Session code: {self._context.session_code}")
            return self._context.session_code or code
        raise RuntimeError("Unable to register a session code")

    async def start_controller(self, code: Optional[str] = None) -> Dict[str, Any]:
        if code is None:
            self._context.load()
            if self._context.session_code and self._context.controller_has_paired:
                if await self._manager.resume():
                    return {"sessionCode": self._context.session_code}
            raise ValueError("a session code is required to pair")
        result = await self._manager.pair(code)
        self._output(f"Paired with {self._context.session_code}")
        return result

    async def send(self, content: str) -> SendResult:
        data_channel = self._p2p.send_message if self._p2p is not None and self._p2p.is_p2p else None
        result = await self._manager.send(
            content,
            self._animation_type,
            self._color_theme,
            data_channel=data_channel,
        )
        if result.success:
            await self._activity.record_activity("message")
        else:
            self._output(f"Message not sent: {result.error}")
        return result

    async def run(self, code: Optional[str] = None) -> None:
        try:
            if self._role == Role.DISPLAY:
                await self.start_display(code)
                await self._stop_event.wait()
            else:
                await self.start_controller(code)
                reader = asyncio.create_task(self._read_input())
                stopper = asyncio.create_task(self._stop_event.wait())
                await asyncio.wait({reader, stopper}, return_when=asyncio.FIRST_COMPLETED)
                for task in (reader, stopper):
                    task.cancel()
        finally:
            await self.shutdown()

    def stop(self) -> None:
        self._stop_event.set()

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._p2p is not None:
            await self._p2p.close()
        await self._presence.stop()
        await self._manager.disconnect()
        await self._api.close()
        logger.info("Client stopped")

    async def _read_input(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                return
            content = line.rstrip("\n")
            if content:
                await self.send(content)

    async def _on_state(self, state: ManagerState) -> None:
        logger.info("Connection state: %s", state.value)
        if state == ManagerState.CONNECTED:
            await self._presence.join(self._role)
            self._presence.start_polling()
            await self._activity.record_activity("connected", force=True)
            await self._maybe_start_p2p()
        elif state in (ManagerState.DISCONNECTED, ManagerState.POLLING, ManagerState.UNPAIRED):
            self._presence.stop_polling()
            if self._p2p is not None:
                await self._p2p.cleanup()

    async def _maybe_start_p2p(self, displays: Optional[int] = None) -> None:
        p2p = self._p2p
        if p2p is None or self._role != Role.CONTROLLER or p2p.gave_up:
            return
        if p2p.status != P2PStatus.DISCONNECTED:
            return
        if displays is None:
            displays = self._presence.stats.get("displays", 0)
        if displays > 0 and self._manager.state == ManagerState.CONNECTED:
            await p2p.start()

    def _on_message(self, message: BoardMessage) -> None:
        self._output(f"[{message.animation_type}/{message.color_theme}] {message.content}")

    def _on_tier(self, tier: str) -> None:
        logger.info("Controller tier: %s", tier)

    def _on_inactivity_warning(self, warning: InactivityWarning) -> None:
        self._output(f"Warning: {warning.message}")

    async def _on_presence(self, data: Dict[str, Any]) -> None:
        stats = data.get("stats") or {}
        await self._maybe_start_p2p(int(stats.get("displays", 0)))

    def _on_terminated(self, notice: SessionNotice) -> None:
        self._output(f"Session ended: {notice.message or notice.reason}")
        if self._role == Role.DISPLAY:
            self._spawn(self._restart_display())
        else:
            self.stop()

    def _on_force_disconnect(self, notice: SessionNotice) -> None:
        self._output(f"Disconnected: {notice.message or notice.reason}")
        self.stop()

    def _on_p2p_status(self, status: P2PStatus) -> None:
        logger.info("Direct connection %s", status.value)

    async def _restart_display(self) -> None:
        if self._p2p is not None:
            self._p2p.reset()
        self._context.reset()
        try:
            await self.start_display()
        except Exception:
            logger.exception("Failed to start a new display session")
            self.stop()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
