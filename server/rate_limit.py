from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from shared.protocol import MESSAGE_RATE_LIMIT, RATE_LIMIT_WINDOW_SECONDS

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Sliding-window request counter keyed by user id or client address.

    Each allowed request is remembered for ``window`` seconds; once ``max_requests``
    are inside the window further requests are refused until the oldest one ages out.
    Refused requests are not counted.
    """

    def __init__(
        self,
        max_requests: int = MESSAGE_RATE_LIMIT,
        window: float = RATE_LIMIT_WINDOW_SECONDS,
        *,
        name: str = "requests",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests <= 0 or window <= 0:
            raise ValueError("rate limit and window must be positive")
        self.max_requests = max_requests
        self.window = window
        self._name = name
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}

    def check(self, key: Optional[str]) -> RateLimitResult:
        now = self._clock()
        key = key or "anonymous"
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= self.window:
            hits.popleft()
        if len(hits) >= self.max_requests:
            retry_after = max(1, math.ceil(hits[0] + self.window - now))
            logger.warning("Rate limit exceeded for %s by %s (retry in %ss)", self._name, key, retry_after)
            return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)
        hits.append(now)
        return RateLimitResult(allowed=True, remaining=self.max_requests - len(hits))

    def cleanup(self) -> int:
        """Forget keys with no requests left inside the window."""

        now = self._clock()
        idle = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window]
        for key in idle:
            del self._hits[key]
        if idle:
            logger.debug("Dropped %d idle %s rate limit entries", len(idle), self._name)
        return len(idle)
