from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from shared.protocol import DEFAULT_TIER, BoardMessage, Role, normalize_session_code

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionContext:
    """State of one client session, shared by the components that serve it."""

    role: Role
    session_code: Optional[str] = None
    user_id: Optional[str] = None
    token: Optional[str] = None
    board_id: Optional[str] = None
    device_id: Optional[str] = None
    is_connected: bool = False
    controller_has_paired: bool = False
    controller_tier: str = DEFAULT_TIER
    last_activity_at: Optional[float] = None
    current_message: Optional[BoardMessage] = None
    state_file: Optional[Path] = None

    def set_session_code(self, code: str) -> str:
        self.session_code = normalize_session_code(code)
        return self.session_code

    def record_activity(self, timestamp: Optional[float] = None) -> float:
        self.last_activity_at = time.time() if timestamp is None else timestamp
        return self.last_activity_at

    def reset(self, *, keep_code: bool = False) -> None:
        """Forget connection state; the identity fields are kept."""

        if not keep_code:
            self.session_code = None
        self.is_connected = False
        self.controller_has_paired = False
        self.controller_tier = DEFAULT_TIER
        self.current_message = None
        self.save()

    def save(self) -> None:
        if self.state_file is None:
            return
        state = {
            "sessionCode": self.session_code,
            "controllerHasPaired": self.controller_has_paired,
        }
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.state_file.write_text(json.dumps(state), encoding="utf-8")
        except OSError:
            logger.warning("Failed to persist session state to %s", self.state_file, exc_info=True)

    def load(self) -> bool:
        if self.state_file is None or not self.state_file.exists():
            return False
        try:
            state = json.loads(self.state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable session state in %s", self.state_file)
            return False
        code = state.get("sessionCode")
        if code:
            try:
                self.set_session_code(code)
            except ValueError:
                logger.warning("Ignoring invalid stored session code %r", code)
                return False
        self.controller_has_paired = bool(state.get("controllerHasPaired")) and self.session_code is not None
        logger.debug("Loaded session state (code=%s, paired=%s)", self.session_code, self.controller_has_paired)
        return True
