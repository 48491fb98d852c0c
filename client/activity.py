from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.protocol import ACTIVITY_THROTTLE_SECONDS, RelayEvent

from .session_context import SessionContext

logger = logging.getLogger(__name__)

Sender = Callable[[RelayEvent, Dict[str, Any]], Awaitable[None]]


class ActivityTracker:
    """Stamps local activity and reports it to the relay, throttled."""

    def __init__(
        self,
        context: SessionContext,
        sender: Optional[Sender] = None,
        *,
        throttle: float = ACTIVITY_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._context = context
        self._sender = sender
        self._throttle = throttle
        self._clock = clock
        self._last_emitted: Optional[float] = None

    def attach(self, sender: Optional[Sender]) -> None:
        self._sender = sender
        self._last_emitted = None

    async def record_activity(self, kind: Optional[str] = None, *, force: bool = False) -> bool:
        """Update ``last_activity_at`` and report it unless a report went out recently.

        Returns whether a ``client:activity`` frame was sent.
        """

        now = self._context.record_activity(self._clock())
        if not force and self._last_emitted is not None and now - self._last_emitted < self._throttle:
            return False
        return await self._emit(RelayEvent.CLIENT_ACTIVITY, {"kind": kind} if kind else {}, now)

    async def heartbeat(self) -> bool:
        """Stamp activity and report it unthrottled; the server renews the session."""

        self._context.record_activity(self._clock())
        return await self._emit(RelayEvent.CLIENT_HEARTBEAT, {}, None)

    async def _emit(self, event: RelayEvent, data: Dict[str, Any], stamp: Optional[float]) -> bool:
        if self._sender is None or not self._context.is_connected:
            return False
        try:
            await self._sender(event, data)
        except Exception as exc:
            logger.debug("Failed to report %s: %s", event.value, exc)
            return False
        if stamp is not None:
            self._last_emitted = stamp
        return True
