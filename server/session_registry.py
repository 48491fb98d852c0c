from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from shared.protocol import (
    SESSION_TTL_SECONDS,
    DisconnectReason,
    Role,
    SessionStatus,
    normalize_session_code,
)

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 1000


class RegistryError(Exception):
    """Base class for session registry failures."""

    def __init__(self, code: str, message: Optional[str] = None) -> None:
        self.code = code
        super().__init__(message or code)


class SessionNotFound(RegistryError, LookupError):
    def __init__(self, code: str) -> None:
        super().__init__(code, f"Session {code} not found or expired")


class AlreadyPaired(RegistryError):
    def __init__(self, code: str) -> None:
        super().__init__(code, f"Session {code} is already paired")


class AlreadyTerminated(RegistryError):
    def __init__(self, code: str) -> None:
        super().__init__(code, f"Session {code} has been terminated")


@dataclass(slots=True)
class Session:
    code: str
    created_at: float
    last_activity_at: float
    status: SessionStatus = SessionStatus.UNPAIRED
    controller_id: Optional[str] = None
    device_id: Optional[str] = None
    board_id: Optional[str] = None
    paired_at: Optional[float] = None
    display_connected: bool = False
    controller_connected: bool = False
    disconnect_reason: Optional[DisconnectReason] = None
    ended_at: Optional[float] = None

    @property
    def is_live(self) -> bool:
        return self.status in (SessionStatus.UNPAIRED, SessionStatus.PAIRED)

    def to_status(self) -> dict[str, object]:
        return {
            "sessionCode": self.code,
            "status": self.status.value,
            "paired": self.status == SessionStatus.PAIRED,
            "controllerId": self.controller_id,
            "controllerConnected": self.controller_connected,
            "displayConnected": self.display_connected,
            "boardId": self.board_id,
            "createdAt": self.created_at,
            "pairedAt": self.paired_at,
            "lastActivityAt": self.last_activity_at,
            "disconnectReason": self.disconnect_reason.value if self.disconnect_reason else None,
        }


class SessionRegistry:
    """Server-authoritative mapping from session code to pairing state."""

    def __init__(
        self,
        *,
        session_ttl: float = SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._session_ttl = session_ttl
        self._clock = clock
        self._event_log: list[dict] = []

    @property
    def session_ttl(self) -> float:
        return self._session_ttl

    def now(self) -> float:
        return self._clock()

    async def register(self, code: str) -> dict[str, object]:
        code = normalize_session_code(code)
        now = self._clock()
        async with self._lock:
            session = self._live_session_locked(code, now)
            if session is not None:
                if session.status == SessionStatus.PAIRED:
                    raise AlreadyPaired(code)
                session.last_activity_at = now
                logger.debug("Session %s re-registered while waiting", code)
                return session.to_status()
            session = Session(code=code, created_at=now, last_activity_at=now)
            self._sessions[code] = session
            logger.info("Registered session %s", code)
            self._record_event("session_registered", code)
            return session.to_status()

    async def pair(
        self,
        code: str,
        *,
        user_id: Optional[str] = None,
        board_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> dict[str, object]:
        code = normalize_session_code(code)
        now = self._clock()
        async with self._lock:
            session = self._sessions.get(code)
            if session is None or session.status == SessionStatus.EXPIRED or self._is_lapsed(session, now):
                raise SessionNotFound(code)
            if session.status == SessionStatus.TERMINATED:
                raise AlreadyTerminated(code)
            if session.status == SessionStatus.PAIRED:
                if self._same_controller(session, user_id, device_id):
                    session.last_activity_at = now
                    logger.info("Session %s already paired with this controller", code)
                    return session.to_status()
                raise AlreadyPaired(code)
            session.status = SessionStatus.PAIRED
            session.controller_id = user_id or device_id
            session.device_id = device_id
            session.board_id = board_id
            session.paired_at = now
            session.last_activity_at = now
            logger.info("Paired session %s (controller=%s)", code, session.controller_id or "anonymous")
            self._record_event(
                "session_paired",
                code,
                {
                    "controller_id": session.controller_id,
                    "board_id": board_id,
                },
            )
            return session.to_status()

    async def get_status(self, code: str) -> dict[str, object]:
        code = normalize_session_code(code)
        async with self._lock:
            session = self._sessions.get(code)
            if session is None:
                raise SessionNotFound(code)
            if self._is_lapsed(session, self._clock()):
                self._expire_locked(session)
            if session.status == SessionStatus.EXPIRED:
                raise SessionNotFound(code)
            return session.to_status()

    async def exists(self, code: str) -> bool:
        code = normalize_session_code(code)
        async with self._lock:
            return self._live_session_locked(code, self._clock()) is not None

    async def record_activity(self, code: str) -> bool:
        code = normalize_session_code(code)
        async with self._lock:
            session = self._sessions.get(code)
            if session is None or not session.is_live:
                return False
            session.last_activity_at = self._clock()
            return True

    async def inactivity_duration(self, code: str) -> Optional[float]:
        code = normalize_session_code(code)
        async with self._lock:
            session = self._sessions.get(code)
            if session is None:
                return None
            return max(0.0, self._clock() - session.last_activity_at)

    async def set_connected(self, code: str, role: Role, connected: bool) -> bool:
        code = normalize_session_code(code)
        async with self._lock:
            session = self._sessions.get(code)
            if session is None:
                return False
            if role == Role.CONTROLLER:
                session.controller_connected = connected
            else:
                session.display_connected = connected
            session.last_activity_at = self._clock()
            self._record_event(
                f"{role.value}_{'connected' if connected else 'disconnected'}",
                code,
            )
            return True

    async def terminate(self, code: str, reason: DisconnectReason) -> bool:
        code = normalize_session_code(code)
        async with self._lock:
            session = self._sessions.get(code)
            if session is None or not session.is_live:
                return False
            session.status = SessionStatus.TERMINATED
            session.disconnect_reason = reason
            session.display_connected = False
            session.controller_connected = False
            session.last_activity_at = self._clock()
            session.ended_at = session.last_activity_at
            logger.info("Terminated session %s (reason=%s)", code, reason.value)
            self._record_event("session_terminated", code, {"reason": reason.value})
            return True

    async def expire(self, code: str) -> bool:
        code = normalize_session_code(code)
        async with self._lock:
            session = self._sessions.get(code)
            if session is None or not session.is_live:
                return False
            self._expire_locked(session)
            return True

    async def purge_expired(self) -> list[str]:
        """Mark every live session idle for longer than the TTL as expired."""

        now = self._clock()
        expired: list[str] = []
        async with self._lock:
            for session in self._sessions.values():
                if session.is_live and self._is_lapsed(session, now):
                    self._expire_locked(session)
                    expired.append(session.code)
            # Ended sessions linger for one more TTL so late status polls still see the reason.
            for code in [
                code
                for code, session in self._sessions.items()
                if session.ended_at is not None and now - session.ended_at > self._session_ttl
            ]:
                self._sessions.pop(code, None)
        if expired:
            logger.info("Expired %d idle session(s)", len(expired))
        return expired

    async def live_codes(self) -> list[str]:
        async with self._lock:
            return [code for code, session in self._sessions.items() if session.is_live]

    async def snapshot(self) -> dict:
        async with self._lock:
            now = self._clock()
            sessions = []
            for session in self._sessions.values():
                status = session.to_status()
                status["inactivitySeconds"] = max(0.0, now - session.last_activity_at)
                sessions.append(status)
            return {
                "sessions": sessions,
                "session_count": len(sessions),
                "live_count": sum(1 for session in self._sessions.values() if session.is_live),
                "events": list(self._event_log[-300:]),
            }

    async def get_recent_events(self, code: Optional[str] = None, limit: int = 100) -> list[dict[str, object]]:
        if limit <= 0:
            return []
        if code is not None:
            code = normalize_session_code(code)
        async with self._lock:
            if code is None:
                return list(reversed(self._event_log[-limit:]))
            matched: list[dict[str, object]] = []
            for event in reversed(self._event_log):
                if event["session_code"] == code:
                    matched.append(event)
                    if len(matched) >= limit:
                        break
            return matched

    async def record_event(self, event_type: str, code: str, details: Optional[Dict[str, object]] = None) -> None:
        async with self._lock:
            self._record_event(event_type, code, details)

    def _live_session_locked(self, code: str, now: float) -> Optional[Session]:
        session = self._sessions.get(code)
        if session is None or not session.is_live:
            return None
        if self._is_lapsed(session, now):
            self._expire_locked(session)
            return None
        return session

    def _is_lapsed(self, session: Session, now: float) -> bool:
        return session.is_live and now - session.last_activity_at > self._session_ttl

    def _expire_locked(self, session: Session) -> None:
        session.status = SessionStatus.EXPIRED
        session.disconnect_reason = DisconnectReason.EXPIRED
        session.display_connected = False
        session.controller_connected = False
        session.ended_at = self._clock()
        logger.info("Session %s expired", session.code)
        self._record_event("session_expired", session.code)

    @staticmethod
    def _same_controller(session: Session, user_id: Optional[str], device_id: Optional[str]) -> bool:
        if user_id and user_id == session.controller_id:
            return True
        if device_id and device_id == session.device_id:
            return True
        return not user_id and not device_id and session.controller_id is None

    def _record_event(self, event_type: str, code: str, details: Optional[Dict[str, object]] = None) -> None:
        event = {
            "event_id": uuid.uuid4().hex,
            "type": event_type,
            "session_code": code,
            "timestamp": self._clock(),
            "details": details or {},
        }
        self._event_log.append(event)
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)
        logger.debug("session_event %s %s %s", event_type, code, event["details"])
