from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

from shared.protocol import (
    DEFAULT_HTTP_PORT,
    INACTIVITY_CHECK_INTERVAL_SECONDS,
    INACTIVITY_TIMEOUT_SECONDS,
    INACTIVITY_WARNING_SECONDS,
    MESSAGE_RATE_LIMIT,
    PRESENCE_IDLE_SECONDS,
    RATE_LIMIT_WINDOW_SECONDS,
    SESSION_TTL_SECONDS,
    STALE_CONNECTION_SECONDS,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLIPSYNC_"
_CASTS = {"str": str, "int": int, "float": float}


@dataclass(slots=True)
class ServerSettings:
    """Runtime settings for the pairing server."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_HTTP_PORT
    session_ttl: float = SESSION_TTL_SECONDS
    inactivity_timeout: float = INACTIVITY_TIMEOUT_SECONDS
    inactivity_warning: float = INACTIVITY_WARNING_SECONDS
    inactivity_check_interval: float = INACTIVITY_CHECK_INTERVAL_SECONDS
    stale_connection_timeout: float = STALE_CONNECTION_SECONDS
    presence_idle_timeout: float = PRESENCE_IDLE_SECONDS
    message_rate_limit: int = MESSAGE_RATE_LIMIT
    rate_limit_window: float = RATE_LIMIT_WINDOW_SECONDS
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 5

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerSettings":
        """Build settings from ``FLIPSYNC_*`` variables, e.g. ``FLIPSYNC_PORT=8080``."""

        environ = os.environ if environ is None else environ
        settings = cls()
        for item in fields(cls):
            raw = environ.get(ENV_PREFIX + item.name.upper())
            if raw is None or raw == "":
                continue
            try:
                if item.name == "log_file":
                    value: object = Path(raw)
                elif item.name == "log_level":
                    value = raw.upper()
                else:
                    # Annotations are strings under postponed evaluation.
                    value = _CASTS[str(item.type)](raw)
            except ValueError as exc:
                raise ValueError(f"{ENV_PREFIX}{item.name.upper()} has an invalid value {raw!r}") from exc
            setattr(settings, item.name, value)
            logger.debug("Setting %s from environment", item.name)
        settings.validate()
        return settings

    def validate(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")
        if self.inactivity_warning >= self.inactivity_timeout:
            raise ValueError("inactivity warning must come before the inactivity timeout")
        for name in ("session_ttl", "inactivity_timeout", "inactivity_check_interval", "stale_connection_timeout", "message_rate_limit", "rate_limit_window"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
