from __future__ import annotations

import asyncio
import logging
import secrets
import string
from typing import Any, Dict, List, Optional

from shared.protocol import PRESENCE_HEARTBEAT_SECONDS, PRESENCE_POLL_INTERVAL_SECONDS, Role

from .session_api import ApiError, SessionApiClient
from .session_context import SessionContext

logger = logging.getLogger(__name__)

_ANON_ALPHABET = string.ascii_lowercase + string.digits


def anonymous_user_id() -> str:
    return "anonymous_" + "".join(secrets.choice(_ANON_ALPHABET) for _ in range(7))


class PresenceTracker:
    """Client half of presence: announces this user and caches who else is here."""

    def __init__(
        self,
        api: SessionApiClient,
        context: SessionContext,
        *,
        poll_interval: float = PRESENCE_POLL_INTERVAL_SECONDS,
        heartbeat_interval: float = PRESENCE_HEARTBEAT_SECONDS,
    ) -> None:
        self._api = api
        self._context = context
        self._poll_interval = poll_interval
        self._heartbeat_interval = heartbeat_interval
        self._user_id = context.user_id or anonymous_user_id()
        self._joined = False
        self._users: List[Dict[str, Any]] = []
        self._stats: Dict[str, int] = {"total": 0, "controllers": 0, "displays": 0}
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def users(self) -> List[Dict[str, Any]]:
        return list(self._users)

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    @property
    def joined(self) -> bool:
        return self._joined

    async def join(self, user_type: Role, display_name: Optional[str] = None) -> bool:
        code = self._context.session_code
        if not code:
            return False
        try:
            await self._api.presence_join(code, self._user_id, user_type, name=display_name)
        except ApiError as exc:
            logger.warning("Presence join failed for %s: %s", code, exc)
            return False
        self._joined = True
        self._start_heartbeat()
        return True

    async def leave(self) -> bool:
        self._cancel_heartbeat()
        code = self._context.session_code
        if not code or not self._joined:
            return False
        self._joined = False
        try:
            result = await self._api.presence_leave(code, self._user_id)
        except ApiError as exc:
            logger.warning("Presence leave failed for %s: %s", code, exc)
            return False
        return bool(result.get("success"))

    async def update_activity(self) -> bool:
        code = self._context.session_code
        if not code or not self._joined:
            return False
        try:
            result = await self._api.presence_activity(code, self._user_id)
        except ApiError as exc:
            logger.debug("Presence activity update failed for %s: %s", code, exc)
            return False
        return bool(result.get("success"))

    async def fetch_presence(self) -> Dict[str, int]:
        code = self._context.session_code
        if code:
            try:
                summary = await self._api.presence_summary(code)
            except ApiError as exc:
                logger.debug("Presence stats fetch failed for %s: %s", code, exc)
            else:
                stats = summary.get("stats")
                if isinstance(stats, dict):
                    self._stats = {key: int(stats.get(key, 0)) for key in ("total", "controllers", "displays")}
        return self.stats

    async def fetch_users(self) -> List[Dict[str, Any]]:
        code = self._context.session_code
        if code:
            try:
                self._users = await self._api.presence_users(code)
            except ApiError as exc:
                logger.debug("Presence users fetch failed for %s: %s", code, exc)
        return self.users

    def get_controllers(self) -> List[Dict[str, Any]]:
        return [user for user in self._users if user.get("type") == Role.CONTROLLER.value]

    def get_displays(self) -> List[Dict[str, Any]]:
        return [user for user in self._users if user.get("type") == Role.DISPLAY.value]

    def is_user_online(self, user_id: str) -> bool:
        return any(user.get("userId") == user_id for user in self._users)

    def start_polling(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def stop(self) -> None:
        self.stop_polling()
        await self.leave()

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _poll_loop(self) -> None:
        try:
            while True:
                await self.fetch_presence()
                await self.fetch_users()
                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self) -> None:
        try:
            while self._joined:
                await asyncio.sleep(self._heartbeat_interval)
                await self.update_activity()
        except asyncio.CancelledError:
            pass
