from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from shared.protocol import (
    RELAY_HEARTBEAT_SECONDS,
    JoinRequest,
    RelayEvent,
    decode_event,
    encode_event,
)

from .events import EventBus

logger = logging.getLogger(__name__)

DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]
Connector = Callable[[str], Awaitable[Any]]

JOIN_TIMEOUT = 10.0


class RelayNotConnected(RuntimeError):
    """Raised when sending on a relay channel that is not open."""


class RelayRejected(ConnectionError):
    """The server refused the join handshake."""

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}" if message else code)


class RelayClient:
    """Handles the WebSocket relay connection for one joined client."""

    def __init__(
        self,
        url: str,
        request: JoinRequest,
        bus: EventBus,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        heartbeat_interval: float = RELAY_HEARTBEAT_SECONDS,
        connector: Connector = websockets.connect,
    ) -> None:
        self._url = url
        self._request = request
        self._bus = bus
        self._on_disconnect = on_disconnect
        self._heartbeat_interval = heartbeat_interval
        self._connector = connector
        self._ws: Any = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._dispatch_tasks: set[asyncio.Task[None]] = set()
        self._closing = False
        self.peer_id: Optional[str] = None
        self.peers: list[Dict[str, Any]] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closing

    @property
    def request(self) -> JoinRequest:
        return self._request

    async def connect(self, timeout: float = JOIN_TIMEOUT) -> Dict[str, Any]:
        """Open the socket, send ``join`` and wait for ``session:joined``."""

        logger.info("Connecting to relay %s as %s for %s", self._url, self._request.role.value, self._request.session_code)
        self._closing = False
        self._ws = await self._connector(self._url)
        try:
            await self._ws.send(encode_event(RelayEvent.JOIN, self._request.to_dict()))
            raw = await asyncio.wait_for(self._ws.recv(), timeout)
            event, data = decode_event(raw)
        except (asyncio.TimeoutError, ConnectionClosed, ValueError) as exc:
            await self._abort()
            raise ConnectionError(f"Relay handshake failed: {exc}") from exc
        if event == RelayEvent.ERROR:
            await self._abort()
            raise RelayRejected(str(data.get("code") or "error"), str(data.get("message") or ""))
        if event != RelayEvent.SESSION_JOINED:
            await self._abort()
            raise RelayRejected("unexpected_event", f"Expected session:joined, got {event.value}")

        self.peer_id = data.get("peerId")
        peers = data.get("peers")
        self.peers = peers if isinstance(peers, list) else []
        logger.info("Joined relay as peer %s", self.peer_id)
        self._recv_task = asyncio.create_task(self._recv_loop())
        if self._heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        return data

    async def send(self, event: RelayEvent, data: Dict[str, Any]) -> None:
        if not self.connected:
            raise RelayNotConnected("relay channel is not open")
        try:
            await self._ws.send(encode_event(event, data))
        except ConnectionClosed as exc:
            raise RelayNotConnected("relay channel closed") from exc

    async def close(self) -> None:
        self._closing = True
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._recv_task):
            if task is not None and task is not current:
                task.cancel()
        self._heartbeat_task = None
        self._recv_task = None
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error while closing relay socket", exc_info=True)

    async def _abort(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error while closing rejected relay socket", exc_info=True)

    async def _recv_loop(self) -> None:
        ws = self._ws
        disconnect_reason: Optional[str] = None
        try:
            async for raw in ws:
                try:
                    event, data = decode_event(raw)
                except ValueError:
                    logger.warning("Dropping malformed relay frame")
                    continue
                task = asyncio.create_task(self._dispatch(event, data))
                self._dispatch_tasks.add(task)
                task.add_done_callback(self._dispatch_tasks.discard)
            disconnect_reason = "server_closed"
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            disconnect_reason = "connection_lost"
        except Exception:
            logger.exception("Error while receiving from relay")
            disconnect_reason = "recv_error"
        if self._dispatch_tasks:
            # Let already-received events (terminate, force-disconnect) settle first.
            await asyncio.wait(list(self._dispatch_tasks))
        if self._closing:
            return
        logger.info("Relay connection ended (%s)", disconnect_reason)
        await self.close()
        await self._notify_disconnect(disconnect_reason)

    async def _dispatch(self, event: RelayEvent, data: Dict[str, Any]) -> None:
        logger.debug("Relay event %s", event.value)
        await self._bus.emit(event, data)

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _heartbeat_loop(self) -> None:
        try:
            while self.connected:
                await asyncio.sleep(self._heartbeat_interval)
                await self.send(RelayEvent.CLIENT_PING, {})
        except asyncio.CancelledError:
            pass
        except RelayNotConnected:
            logger.debug("Heartbeat stopped; relay channel closed")
