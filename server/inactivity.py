from __future__ import annotations

import asyncio
import logging
import math
from typing import Optional

from shared.protocol import (
    INACTIVITY_CHECK_INTERVAL_SECONDS,
    INACTIVITY_TIMEOUT_SECONDS,
    INACTIVITY_WARNING_SECONDS,
    STALE_CONNECTION_SECONDS,
    DisconnectReason,
)

from .presence import PresenceRegistry
from .relay import SignalingRelay
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class InactivityMonitor:
    """Periodically warns, terminates and expires idle sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        relay: SignalingRelay,
        presence: Optional[PresenceRegistry] = None,
        *,
        warning_after: float = INACTIVITY_WARNING_SECONDS,
        timeout: float = INACTIVITY_TIMEOUT_SECONDS,
        stale_after: float = STALE_CONNECTION_SECONDS,
        interval: float = INACTIVITY_CHECK_INTERVAL_SECONDS,
    ) -> None:
        if warning_after >= timeout:
            raise ValueError("warning threshold must be shorter than the inactivity timeout")
        self._registry = registry
        self._relay = relay
        self._presence = presence
        self._warning_after = warning_after
        self._timeout = timeout
        self._stale_after = stale_after
        self._interval = interval
        self._warned: set[str] = set()

    async def run(self) -> None:
        logger.info(
            "Inactivity monitor running (warning=%ss, timeout=%ss, interval=%ss)",
            self._warning_after,
            self._timeout,
            self._interval,
        )
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.check_once()
            except Exception:
                logger.exception("Inactivity check failed")

    async def check_once(self) -> dict[str, list[str]]:
        """Run one pass and report what it did, keyed by action."""

        report: dict[str, list[str]] = {"warned": [], "terminated": [], "stale": [], "expired": []}

        for connection in await self._relay.stale_connections(self._stale_after):
            logger.info("Dropping stale peer %s in %s", connection.peer_id, connection.session_code)
            await self._relay.force_disconnect(connection.peer_id, DisconnectReason.STALE)
            report["stale"].append(connection.peer_id)

        active = await self._relay.active_codes()
        self._warned.intersection_update(active)
        for code in active:
            idle = await self._registry.inactivity_duration(code)
            if idle is None:
                continue
            if idle >= self._timeout:
                logger.info("Session %s idle for %.0fs; terminating", code, idle)
                await self._relay.terminate_session(code, DisconnectReason.INACTIVITY)
                self._warned.discard(code)
                report["terminated"].append(code)
            elif idle >= self._warning_after:
                if code in self._warned:
                    continue
                minutes = max(1, math.ceil((self._timeout - idle) / 60))
                await self._relay.warn_inactivity(code, minutes)
                await self._registry.record_event("inactivity_warning", code, {"minutes_remaining": minutes})
                self._warned.add(code)
                report["warned"].append(code)
            else:
                self._warned.discard(code)

        report["expired"] = await self._registry.purge_expired()
        for code in report["expired"]:
            self._warned.discard(code)
            await self._relay.terminate_session(code, DisconnectReason.EXPIRED)
        self._relay.cleanup_rate_limits()
        if self._presence is not None:
            await self._presence.cleanup_idle()
        return report
