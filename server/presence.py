from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from shared.protocol import PRESENCE_IDLE_SECONDS, Role, normalize_session_code

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PresenceEntry:
    user_id: str
    type: Role
    name: str
    joined_at: float
    last_seen: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "type": self.type.value,
            "name": self.name,
            "joinedAt": self.joined_at,
            "lastSeen": self.last_seen,
            "metadata": dict(self.metadata),
        }


class PresenceRegistry:
    """Tracks which users are currently present in each session."""

    def __init__(
        self,
        *,
        idle_timeout: float = PRESENCE_IDLE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions: Dict[str, Dict[str, PresenceEntry]] = {}
        self._lock = asyncio.Lock()
        self._idle_timeout = idle_timeout
        self._clock = clock

    async def join(
        self,
        code: str,
        user_id: str,
        user_type: Role,
        *,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PresenceEntry:
        """Insert or refresh the entry for ``user_id``, keeping its original join time."""

        code = normalize_session_code(code)
        now = self._clock()
        async with self._lock:
            users = self._sessions.setdefault(code, {})
            entry = users.get(user_id)
            if entry is None:
                entry = PresenceEntry(
                    user_id=user_id,
                    type=user_type,
                    name=name or user_id,
                    joined_at=now,
                    last_seen=now,
                    metadata=dict(metadata or {}),
                )
                users[user_id] = entry
                logger.info("Presence join %s as %s in %s", user_id, user_type.value, code)
            else:
                entry.type = user_type
                if name:
                    entry.name = name
                if metadata:
                    entry.metadata.update(metadata)
                entry.last_seen = now
                logger.debug("Presence refresh %s in %s", user_id, code)
            return entry

    async def leave(self, code: str, user_id: str) -> bool:
        code = normalize_session_code(code)
        async with self._lock:
            users = self._sessions.get(code)
            if not users or users.pop(user_id, None) is None:
                return False
            if not users:
                self._sessions.pop(code, None)
            logger.info("Presence leave %s from %s", user_id, code)
            return True

    async def update_activity(self, code: str, user_id: str) -> bool:
        code = normalize_session_code(code)
        async with self._lock:
            entry = self._sessions.get(code, {}).get(user_id)
            if entry is None:
                return False
            entry.last_seen = self._clock()
            return True

    async def users(self, code: str) -> list[dict[str, Any]]:
        code = normalize_session_code(code)
        async with self._lock:
            entries = sorted(self._sessions.get(code, {}).values(), key=lambda item: item.joined_at)
            return [entry.to_dict() for entry in entries]

    async def stats(self, code: str) -> dict[str, int]:
        code = normalize_session_code(code)
        async with self._lock:
            return self._stats_locked(code)

    async def summary(self, code: str) -> dict[str, Any]:
        code = normalize_session_code(code)
        async with self._lock:
            entries = list(self._sessions.get(code, {}).values())
            return {
                "sessionCode": code,
                "stats": self._stats_locked(code),
                "controllers": [entry.user_id for entry in entries if entry.type == Role.CONTROLLER],
                "displays": [entry.user_id for entry in entries if entry.type == Role.DISPLAY],
            }

    async def is_online(self, code: str, user_id: str) -> bool:
        code = normalize_session_code(code)
        async with self._lock:
            return user_id in self._sessions.get(code, {})

    async def cleanup_idle(self, code: Optional[str] = None, idle_seconds: Optional[float] = None) -> int:
        """Drop entries that have not been seen within the idle window."""

        threshold = self._idle_timeout if idle_seconds is None else idle_seconds
        cutoff = self._clock() - threshold
        removed = 0
        async with self._lock:
            codes = [normalize_session_code(code)] if code is not None else list(self._sessions)
            for session_code in codes:
                users = self._sessions.get(session_code)
                if not users:
                    continue
                for user_id in [uid for uid, entry in users.items() if entry.last_seen < cutoff]:
                    users.pop(user_id, None)
                    removed += 1
                if not users:
                    self._sessions.pop(session_code, None)
        if removed:
            logger.info("Removed %d idle presence entr%s", removed, "y" if removed == 1 else "ies")
        return removed

    async def drop_session(self, code: str) -> None:
        code = normalize_session_code(code)
        async with self._lock:
            self._sessions.pop(code, None)

    def _stats_locked(self, code: str) -> dict[str, int]:
        entries = self._sessions.get(code, {}).values()
        controllers = sum(1 for entry in entries if entry.type == Role.CONTROLLER)
        displays = sum(1 for entry in entries if entry.type == Role.DISPLAY)
        return {
            "total": controllers + displays,
            "controllers": controllers,
            "displays": displays,
        }
