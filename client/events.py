from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.protocol import RelayEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None] | None]


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`; cancel it to stop receiving events."""

    def __init__(self, bus: "EventBus", event: RelayEvent, handler: EventHandler) -> None:
        self._bus = bus
        self.event = event
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


class EventBus:
    """Dispatches relay events to subscribers keyed by :class:`RelayEvent`."""

    def __init__(self) -> None:
        self._handlers: Dict[RelayEvent, List[Subscription]] = {}

    def subscribe(self, event: RelayEvent, handler: EventHandler) -> Subscription:
        if not isinstance(event, RelayEvent):
            raise TypeError(f"event must be a RelayEvent, got {type(event).__name__}")
        subscription = Subscription(self, event, handler)
        self._handlers.setdefault(event, []).append(subscription)
        return subscription

    def subscriber_count(self, event: Optional[RelayEvent] = None) -> int:
        if event is not None:
            return len(self._handlers.get(event, []))
        return sum(len(handlers) for handlers in self._handlers.values())

    def clear(self) -> None:
        for subscriptions in list(self._handlers.values()):
            for subscription in list(subscriptions):
                subscription.cancel()

    async def emit(self, event: RelayEvent, payload: Dict[str, Any]) -> int:
        """Call every handler for ``event``; a failing handler does not stop the others."""

        delivered = 0
        for subscription in list(self._handlers.get(event, [])):
            if not subscription.active:
                continue
            try:
                result = subscription.handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error while handling relay event %s", event.value)
            else:
                delivered += 1
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.event)
        if not handlers:
            return
        try:
            handlers.remove(subscription)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(subscription.event, None)
