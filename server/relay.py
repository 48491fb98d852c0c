from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from starlette.websockets import WebSocketDisconnect

from shared.protocol import (
    DEFAULT_TIER,
    SIGNALING_EVENTS,
    BoardMessage,
    DisconnectReason,
    InvalidSessionCode,
    JoinRequest,
    RelayErrorCode,
    RelayEvent,
    Role,
    SessionStatus,
    decode_event,
    encode_event,
    normalize_session_code,
)

from .presence import PresenceRegistry
from .rate_limit import RateLimiter
from .session_registry import SessionNotFound, SessionRegistry

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
SEEN_MESSAGE_LIMIT = 500

DISCONNECT_MESSAGES = {
    DisconnectReason.INACTIVITY: "Session ended due to inactivity.",
    DisconnectReason.ADMIN: "An administrator ended this connection.",
    DisconnectReason.ENDED: "The session was ended.",
    DisconnectReason.EXPIRED: "The session has expired.",
    DisconnectReason.SUPERSEDED: "This connection was replaced by a newer one.",
    DisconnectReason.STALE: "Connection timed out.",
    DisconnectReason.SHUTDOWN: "Server is shutting down.",
}

TierLookup = Callable[[Optional[str]], Awaitable[str]]


@dataclass(slots=True)
class RelayConnection:
    """One joined WebSocket on the relay."""

    peer_id: str
    session_code: str
    role: Role
    websocket: Any
    user_id: Optional[str]
    authenticated: bool
    ip: Optional[str]
    joined_at: float
    last_seen: float
    disconnected_at: Optional[float] = None
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def presence_id(self) -> str:
        return self.user_id or f"{self.role.value}:{self.peer_id}"

    async def send(self, event: RelayEvent, data: Dict[str, Any]) -> bool:
        if self.disconnected_at is not None:
            return False
        try:
            async with self.send_lock:
                await self.websocket.send_text(encode_event(event, data))
        except Exception:
            logger.debug("Failed to send %s to peer %s", event.value, self.peer_id)
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peerId": self.peer_id,
            "sessionCode": self.session_code,
            "role": self.role.value,
            "userId": self.user_id,
            "authenticated": self.authenticated,
            "ip": self.ip,
            "joinedAt": self.joined_at,
            "lastSeenAt": self.last_seen,
            "disconnectedAt": self.disconnected_at,
        }


class SignalingRelay:
    """Routes relay events between the display and controller of each session."""

    def __init__(
        self,
        registry: SessionRegistry,
        presence: PresenceRegistry,
        *,
        tier_lookup: Optional[TierLookup] = None,
        message_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._presence = presence
        self._tier_lookup = tier_lookup
        self._clock = clock
        self._message_limiter = message_limiter or RateLimiter(name="relay messages", clock=clock)
        self._rooms: Dict[str, Dict[str, RelayConnection]] = {}
        self._active: Dict[str, Dict[Role, str]] = {}
        self._tiers: Dict[str, str] = {}
        self._seen_messages: Dict[str, OrderedDict[str, None]] = {}
        self._lock = asyncio.Lock()

    async def serve(self, websocket: Any, ip: Optional[str] = None) -> None:
        """Drive one accepted WebSocket until it disconnects."""

        connection: Optional[RelayConnection] = None
        try:
            connection = await self._handshake(websocket, ip)
            if connection is None:
                return
            while True:
                text = await websocket.receive_text()
                try:
                    event, data = decode_event(text)
                except ValueError as exc:
                    await connection.send(
                        RelayEvent.ERROR,
                        {"code": RelayErrorCode.MALFORMED.value, "message": str(exc)},
                    )
                    continue
                await self.handle(connection, event, data)
        except WebSocketDisconnect:
            logger.info("Relay peer %s closed the connection", connection.peer_id if connection else ip)
        except Exception:
            if connection is not None and connection.disconnected_at is not None:
                logger.debug("Relay peer %s closed by server", connection.peer_id)
            else:
                logger.exception("Error while handling relay peer %s", ip)
        finally:
            if connection is not None:
                await self.detach(connection)

    async def _handshake(self, websocket: Any, ip: Optional[str]) -> Optional[RelayConnection]:
        text = await websocket.receive_text()
        try:
            event, data = decode_event(text)
        except ValueError:
            await self._reject(websocket, RelayErrorCode.MALFORMED, "Malformed relay frame")
            return None
        if event != RelayEvent.JOIN:
            await self._reject(websocket, RelayErrorCode.EXPECTED_JOIN, "Expected join as first message")
            return None
        try:
            request = JoinRequest.from_dict(data)
        except InvalidSessionCode as exc:
            await self._reject(websocket, RelayErrorCode.INVALID_SESSION_CODE, str(exc))
            return None
        except ValueError:
            await self._reject(websocket, RelayErrorCode.INVALID_ROLE, f"Unknown role {data.get('role')!r}")
            return None

        try:
            status = await self._registry.get_status(request.session_code)
        except SessionNotFound as exc:
            await self._reject(websocket, RelayErrorCode.SESSION_NOT_FOUND, str(exc))
            return None
        if status["status"] == SessionStatus.TERMINATED.value:
            await self._reject(websocket, RelayErrorCode.SESSION_TERMINATED, "Session has been terminated")
            return None
        if not status["paired"]:
            await self._reject(websocket, RelayErrorCode.SESSION_NOT_PAIRED, "Session is not paired yet")
            return None
        return await self.attach(websocket, request, ip=ip)

    async def _reject(self, websocket: Any, code: RelayErrorCode, message: str) -> None:
        logger.warning("Rejected relay join: %s (%s)", code.value, message)
        try:
            await websocket.send_text(encode_event(RelayEvent.ERROR, {"code": code.value, "message": message}))
            await websocket.close(code=POLICY_VIOLATION)
        except Exception:
            logger.debug("Failed to notify rejected relay peer")

    async def attach(self, websocket: Any, request: JoinRequest, *, ip: Optional[str] = None) -> RelayConnection:
        now = self._clock()
        code = request.session_code
        connection = RelayConnection(
            peer_id=uuid.uuid4().hex[:12],
            session_code=code,
            role=request.role,
            websocket=websocket,
            user_id=request.user_id,
            authenticated=bool(request.token),
            ip=ip,
            joined_at=now,
            last_seen=now,
        )
        async with self._lock:
            room = self._rooms.setdefault(code, {})
            active = self._active.setdefault(code, {})
            previous = room.get(active.get(request.role, ""))
            room[connection.peer_id] = connection
            active[request.role] = connection.peer_id
            peers = [other.to_dict() for other in room.values() if other is not connection and other is not previous]

        if previous is not None:
            logger.info("Peer %s supersedes %s as %s in %s", connection.peer_id, previous.peer_id, request.role.value, code)
            await self._close(previous, DisconnectReason.SUPERSEDED)

        await self._registry.set_connected(code, request.role, True)
        await self._presence.join(code, connection.presence_id, request.role, name=request.user_id)
        logger.info(
            "Peer %s joined %s as %s (authenticated=%s, ip=%s)",
            connection.peer_id,
            code,
            request.role.value,
            connection.authenticated,
            ip,
        )
        await connection.send(
            RelayEvent.SESSION_JOINED,
            {
                "peerId": connection.peer_id,
                "sessionCode": code,
                "role": request.role.value,
                "peers": peers,
            },
        )

        if request.role == Role.CONTROLLER:
            tier = await self.lookup_tier(request.user_id)
            self._tiers[code] = tier
            await self.broadcast(code, RelayEvent.CONNECTION_STATUS, {"connected": True})
            await self.broadcast(code, RelayEvent.CONTROLLER_TIER, {"tier": tier})
        elif code in self._tiers:
            await connection.send(RelayEvent.CONTROLLER_TIER, {"tier": self._tiers[code]})
        await self.broadcast_presence(code)
        return connection

    async def detach(self, connection: RelayConnection) -> bool:
        """Remove ``connection`` from its room. Safe to call more than once."""

        code = connection.session_code
        async with self._lock:
            room = self._rooms.get(code)
            if room is None or room.get(connection.peer_id) is not connection:
                return False
            room.pop(connection.peer_id, None)
            active = self._active.get(code, {})
            was_active = active.get(connection.role) == connection.peer_id
            if was_active:
                active.pop(connection.role, None)
            still_present = any(other.presence_id == connection.presence_id for other in room.values())
            if not room:
                self._rooms.pop(code, None)
                self._active.pop(code, None)
        if connection.disconnected_at is None:
            connection.disconnected_at = self._clock()

        if was_active:
            await self._registry.set_connected(code, connection.role, False)
            if connection.role == Role.CONTROLLER:
                await self.broadcast(code, RelayEvent.CONNECTION_STATUS, {"connected": False})
        if not still_present:
            await self._presence.leave(code, connection.presence_id)
        await self.broadcast_presence(code)
        logger.info("Peer %s left %s", connection.peer_id, code)
        return True

    async def handle(self, connection: RelayConnection, event: RelayEvent, data: Dict[str, Any]) -> None:
        connection.last_seen = self._clock()

        if event == RelayEvent.CLIENT_PING:
            return

        if event in (RelayEvent.CLIENT_ACTIVITY, RelayEvent.CLIENT_HEARTBEAT):
            await self._registry.record_activity(connection.session_code)
            await self._presence.update_activity(connection.session_code, connection.presence_id)
            return

        if event == RelayEvent.MESSAGE_SEND:
            limit = self._message_limiter.check(connection.user_id or connection.ip or connection.peer_id)
            if not limit.allowed:
                await connection.send(
                    RelayEvent.ERROR,
                    {
                        "code": RelayErrorCode.RATE_LIMITED.value,
                        "message": f"Rate limited: {limit.retry_after}s remaining",
                        "retryAfter": limit.retry_after,
                    },
                )
                return
            try:
                message = BoardMessage.from_dict(data)
            except ValueError as exc:
                await connection.send(
                    RelayEvent.ERROR,
                    {"code": RelayErrorCode.MALFORMED.value, "message": str(exc)},
                )
                return
            await self.publish_message(connection.session_code, message)
            await self._presence.update_activity(connection.session_code, connection.presence_id)
            return

        if event in SIGNALING_EVENTS:
            await self._forward_signal(connection, event, data)
            return

        if event == RelayEvent.JOIN:
            await connection.send(
                RelayEvent.ERROR,
                {"code": RelayErrorCode.MALFORMED.value, "message": "Already joined"},
            )
            return

        logger.debug("Unhandled relay event %s from %s", event.value, connection.peer_id)

    async def publish_message(self, code: str, message: BoardMessage) -> tuple[bool, bool]:
        """Deliver ``message`` to the session's displays.

        Returns ``(published, duplicate)``. A message id already seen for the
        session is dropped.
        """

        code = normalize_session_code(code)
        if not self._remember_message(code, message.message_id):
            logger.debug("Dropped duplicate message %s for %s", message.message_id, code)
            return False, True
        await self._registry.record_activity(code)
        delivered = await self.broadcast(
            code,
            RelayEvent.MESSAGE_RECEIVED,
            message.to_dict(),
            roles={Role.DISPLAY},
        )
        logger.debug("Message %s delivered to %d display(s) in %s", message.message_id, delivered, code)
        return True, False

    async def _forward_signal(self, connection: RelayConnection, event: RelayEvent, data: Dict[str, Any]) -> None:
        target_id = data.get("target")
        async with self._lock:
            room = self._rooms.get(connection.session_code, {})
            if target_id:
                target = room.get(str(target_id))
            else:
                other_role = Role.DISPLAY if connection.role == Role.CONTROLLER else Role.CONTROLLER
                target = room.get(self._active.get(connection.session_code, {}).get(other_role, ""))
        if target is None or target is connection:
            logger.debug("No signaling target for %s from %s", event.value, connection.peer_id)
            return
        payload = {key: value for key, value in data.items() if key != "target"}
        payload["from"] = connection.peer_id
        await target.send(event, payload)

    async def broadcast(
        self,
        code: str,
        event: RelayEvent,
        data: Dict[str, Any],
        *,
        exclude: Optional[Iterable[str]] = None,
        roles: Optional[Iterable[Role]] = None,
    ) -> int:
        excluded = set(exclude or [])
        allowed = set(roles) if roles is not None else None
        delivered = 0
        for connection in await self.connections_for(code):
            if connection.peer_id in excluded:
                continue
            if allowed is not None and connection.role not in allowed:
                continue
            if await connection.send(event, data):
                delivered += 1
        return delivered

    async def notify_paired(self, code: str, user_id: Optional[str], board_id: Optional[str]) -> None:
        await self.broadcast(
            code,
            RelayEvent.SESSION_PAIRED,
            {"sessionCode": code, "userId": user_id, "boardId": board_id},
        )

    async def warn_inactivity(self, code: str, minutes_remaining: int) -> int:
        plural = "" if minutes_remaining == 1 else "s"
        return await self.broadcast(
            code,
            RelayEvent.INACTIVITY_WARNING,
            {
                "message": f"Session will end in {minutes_remaining} minute{plural} due to inactivity.",
                "minutesRemaining": minutes_remaining,
            },
        )

    async def terminate_session(
        self,
        code: str,
        reason: DisconnectReason,
        message: Optional[str] = None,
    ) -> bool:
        """End a session: notify the room, then disconnect every connection."""

        code = normalize_session_code(code)
        terminated = await self._registry.terminate(code, reason)
        notice = {"reason": reason.value, "message": message or DISCONNECT_MESSAGES[reason]}
        connections = await self.connections_for(code)
        for connection in connections:
            await connection.send(RelayEvent.SESSION_TERMINATED, notice)
        for connection in connections:
            await self._close(connection, reason, message)
        await self._presence.drop_session(code)
        self._forget_session(code)
        if terminated or connections:
            logger.info("Session %s terminated (reason=%s, connections=%d)", code, reason.value, len(connections))
        return terminated or bool(connections)

    async def force_disconnect(
        self,
        peer_id: str,
        reason: DisconnectReason = DisconnectReason.ADMIN,
        message: Optional[str] = None,
    ) -> bool:
        connection = await self.get_connection(peer_id)
        if connection is None:
            return False
        await self._close(connection, reason, message)
        return True

    async def _close(
        self,
        connection: RelayConnection,
        reason: DisconnectReason,
        message: Optional[str] = None,
    ) -> None:
        await connection.send(
            RelayEvent.FORCE_DISCONNECT,
            {"reason": reason.value, "message": message or DISCONNECT_MESSAGES[reason]},
        )
        connection.disconnected_at = self._clock()
        await self.detach(connection)
        try:
            await connection.websocket.close()
        except Exception:
            logger.debug("Failed to close websocket for peer %s", connection.peer_id)
        logger.info("Force-disconnected peer %s (reason=%s)", connection.peer_id, reason.value)

    async def disconnect_all(self, reason: DisconnectReason = DisconnectReason.SHUTDOWN) -> None:
        async with self._lock:
            connections = [conn for room in self._rooms.values() for conn in room.values()]
        for connection in connections:
            await self._close(connection, reason)

    async def connections_for(self, code: str) -> list[RelayConnection]:
        async with self._lock:
            return list(self._rooms.get(code, {}).values())

    async def get_connection(self, peer_id: str) -> Optional[RelayConnection]:
        async with self._lock:
            for room in self._rooms.values():
                if peer_id in room:
                    return room[peer_id]
        return None

    async def has_connections(self, code: str) -> bool:
        async with self._lock:
            return bool(self._rooms.get(code))

    async def active_codes(self) -> list[str]:
        async with self._lock:
            return list(self._rooms)

    async def stale_connections(self, threshold: float) -> list[RelayConnection]:
        cutoff = self._clock() - threshold
        async with self._lock:
            return [
                connection
                for room in self._rooms.values()
                for connection in room.values()
                if connection.last_seen < cutoff
            ]

    async def snapshot(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "rooms": {
                    code: [connection.to_dict() for connection in room.values()]
                    for code, room in self._rooms.items()
                },
                "connection_count": sum(len(room) for room in self._rooms.values()),
            }

    async def lookup_tier(self, user_id: Optional[str]) -> str:
        if self._tier_lookup is None or not user_id:
            return DEFAULT_TIER
        try:
            tier = await self._tier_lookup(user_id)
        except Exception:
            logger.warning("Tier lookup failed for %s; using %s", user_id, DEFAULT_TIER, exc_info=True)
            return DEFAULT_TIER
        return tier or DEFAULT_TIER

    def _remember_message(self, code: str, message_id: str) -> bool:
        seen = self._seen_messages.setdefault(code, OrderedDict())
        if message_id in seen:
            return False
        seen[message_id] = None
        if len(seen) > SEEN_MESSAGE_LIMIT:
            seen.popitem(last=False)
        return True

    def cleanup_rate_limits(self) -> int:
        return self._message_limiter.cleanup()

    def _forget_session(self, code: str) -> None:
        self._seen_messages.pop(code, None)
        self._tiers.pop(code, None)

    async def broadcast_presence(self, code: str) -> None:
        stats = await self._presence.stats(code)
        await self.broadcast(code, RelayEvent.PRESENCE_UPDATE, {"sessionCode": code, "stats": stats})
