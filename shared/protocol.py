"""Core protocol primitives shared between server and client.

The relay carries JSON envelopes over WebSocket text frames, while the session
control plane is plain HTTP. This module centralises event names, payload
schemas, session-code rules and serialization helpers so both halves of the
application remain in sync.
"""
from __future__ import annotations

import json
import logging
import random
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, TypedDict

logger = logging.getLogger(__name__)

SESSION_CODE_LENGTH = 6
SESSION_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_SESSION_CODE_RE = re.compile(r"^[A-Z0-9]{6}$")

ANIMATION_TYPES = ("flip", "scroll", "fade", "wave", "bounce")
COLOR_THEMES = ("monochrome", "teal", "vintage", "custom")
DEFAULT_ANIMATION = "flip"
DEFAULT_COLOR_THEME = "monochrome"
DEFAULT_TIER = "free"

DEFAULT_HTTP_PORT = 3001
RELAY_PATH = "/ws"

SESSION_TTL_SECONDS = 24 * 60 * 60
INACTIVITY_TIMEOUT_SECONDS = 15 * 60
INACTIVITY_WARNING_SECONDS = 10 * 60
INACTIVITY_CHECK_INTERVAL_SECONDS = 60.0
STALE_CONNECTION_SECONDS = 5 * 60
PRESENCE_IDLE_SECONDS = 30 * 60

STATUS_POLL_INTERVAL_SECONDS = 3.0
PRESENCE_POLL_INTERVAL_SECONDS = 5.0
PRESENCE_HEARTBEAT_SECONDS = 30.0
RELAY_HEARTBEAT_SECONDS = 20.0
ACTIVITY_THROTTLE_SECONDS = 5.0
NEGOTIATION_TIMEOUT_SECONDS = 10.0

MAX_MESSAGE_LENGTH = 1000
MESSAGE_RATE_LIMIT = 10
IP_RATE_LIMIT = 20
RATE_LIMIT_WINDOW_SECONDS = 60.0


class InvalidSessionCode(ValueError):
    """Raised when a value cannot be normalized into a session code."""


class Role(str, Enum):
    """The two ends of a pairing."""

    DISPLAY = "display"
    CONTROLLER = "controller"


class SessionStatus(str, Enum):
    UNPAIRED = "unpaired"
    PAIRED = "paired"
    TERMINATED = "terminated"
    EXPIRED = "expired"


class DisconnectReason(str, Enum):
    """Why a session or a single connection was ended by the server."""

    INACTIVITY = "inactivity"
    ADMIN = "admin"
    ENDED = "ended"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"
    STALE = "stale"
    SHUTDOWN = "shutdown"


class RelayEvent(str, Enum):
    """Closed set of events exchanged over the relay channel."""

    # client -> server
    JOIN = "join"
    MESSAGE_SEND = "message:send"
    CLIENT_ACTIVITY = "client:activity"
    CLIENT_HEARTBEAT = "client:heartbeat"
    # liveness only; does not count as session activity
    CLIENT_PING = "client:ping"
    # server -> client
    SESSION_JOINED = "session:joined"
    ERROR = "error"
    CONNECTION_STATUS = "connection:status"
    MESSAGE_RECEIVED = "message:received"
    CONTROLLER_TIER = "controller:tier"
    INACTIVITY_WARNING = "session:inactivity:warning"
    SESSION_TERMINATED = "session:terminated"
    FORCE_DISCONNECT = "session:force-disconnect"
    SESSION_PAIRED = "session:paired"
    PRESENCE_UPDATE = "presence:update"
    # both directions
    WEBRTC_OFFER = "webrtc:offer"
    WEBRTC_ANSWER = "webrtc:answer"
    WEBRTC_ICE_CANDIDATE = "webrtc:ice-candidate"


SIGNALING_EVENTS = frozenset(
    {
        RelayEvent.WEBRTC_OFFER,
        RelayEvent.WEBRTC_ANSWER,
        RelayEvent.WEBRTC_ICE_CANDIDATE,
    }
)


class RelayErrorCode(str, Enum):
    INVALID_SESSION_CODE = "invalid_session_code"
    INVALID_ROLE = "invalid_role"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_NOT_PAIRED = "session_not_paired"
    SESSION_TERMINATED = "session_terminated"
    EXPECTED_JOIN = "expected_join"
    MALFORMED = "malformed"
    RATE_LIMITED = "rate_limited"


class RelayEnvelope(TypedDict):
    """Generic representation of relay frames."""

    event: str
    data: Dict[str, Any]


class ConnectionStatusPayload(TypedDict):
    connected: bool


class ControllerTierPayload(TypedDict):
    tier: str


class InactivityWarningPayload(TypedDict):
    message: str
    minutesRemaining: int


class SessionNoticePayload(TypedDict):
    reason: str
    message: str


def encode_event(event: RelayEvent, data: Dict[str, Any]) -> str:
    """Serialize a relay frame as compact JSON text."""

    envelope: RelayEnvelope = {
        "event": event.value,
        "data": data,
    }
    return json.dumps(envelope, separators=(",", ":"))


def decode_event(text: str) -> Tuple[RelayEvent, Dict[str, Any]]:
    """Parse a relay frame.

    Raises ``ValueError`` for malformed JSON, unknown event names or a
    non-object payload.
    """

    envelope = json.loads(text)
    if not isinstance(envelope, dict):
        raise ValueError("relay frame must be a JSON object")
    event = RelayEvent(envelope.get("event"))
    data = envelope.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError(f"payload for {event.value} must be an object")
    return event, data


def normalize_session_code(value: object) -> str:
    """Return the canonical (upper-case) form of a session code.

    Codes are case-insensitive: surrounding whitespace is stripped and the
    result upper-cased before validation.
    """

    if not isinstance(value, str):
        raise InvalidSessionCode("session code must be a string")
    code = value.strip().upper()
    if not _SESSION_CODE_RE.match(code):
        raise InvalidSessionCode(
            f"session code must be {SESSION_CODE_LENGTH} characters from A-Z and 0-9"
        )
    return code


def is_valid_session_code(value: object) -> bool:
    try:
        normalize_session_code(value)
    except InvalidSessionCode:
        return False
    return True


_code_random = random.SystemRandom()


def generate_session_code() -> str:
    return "".join(_code_random.choice(SESSION_CODE_ALPHABET) for _ in range(SESSION_CODE_LENGTH))


def new_message_id() -> str:
    return uuid.uuid4().hex


def is_paired(status: Dict[str, Any]) -> bool:
    """Decide whether a status snapshot reports a completed pairing.

    ``paired`` is the canonical field. Older servers did not send it, so the
    legacy signals are only consulted when it is missing.
    """

    if "paired" in status:
        return bool(status["paired"])
    legacy = (
        status.get("status") == SessionStatus.PAIRED.value
        or bool(status.get("controllerId"))
        or status.get("controllerConnected") is True
    )
    if legacy:
        logger.debug("Pairing inferred from deprecated status fields: %s", sorted(status))
    return legacy


@dataclass(slots=True)
class Cell:
    """A single character slot on the board."""

    char: str
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"char": self.char}
        if self.color is not None:
            data["color"] = self.color
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cell":
        if not isinstance(data, dict):
            raise ValueError("boardState cells must be objects")
        char = data.get("char", " ")
        if not isinstance(char, str) or len(char) != 1:
            raise ValueError("cell char must be a single character")
        color = data.get("color")
        if color is not None and not isinstance(color, str):
            raise ValueError("cell color must be a string")
        return cls(char=char, color=color)


BoardState = List[List[Cell]]


def board_state_from_raw(raw: Any) -> Optional[BoardState]:
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ValueError("boardState must be a list of rows")
    rows: BoardState = []
    for row in raw:
        if not isinstance(row, list):
            raise ValueError("boardState rows must be lists of cells")
        rows.append([Cell.from_dict(cell) for cell in row])
    return rows


@dataclass(slots=True)
class BoardMessage:
    """Payload forwarded from a controller to its display. Never persisted."""

    content: str
    animation_type: str = DEFAULT_ANIMATION
    color_theme: str = DEFAULT_COLOR_THEME
    board_state: Optional[BoardState] = None
    message_id: str = field(default_factory=new_message_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "messageId": self.message_id,
            "content": self.content,
            "animationType": self.animation_type,
            "colorTheme": self.color_theme,
        }
        if self.board_state is not None:
            data["boardState"] = [[cell.to_dict() for cell in row] for row in self.board_state]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoardMessage":
        """Build a message from a wire payload.

        Unknown animation types and colour themes fall back to the defaults;
        a missing ``messageId`` gets a fresh one. Content must hold between 1
        and ``MAX_MESSAGE_LENGTH`` characters.
        """

        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError("content must be a string")
        if not content:
            raise ValueError("message cannot be empty")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"message is longer than {MAX_MESSAGE_LENGTH} characters")
        animation = data.get("animationType")
        if animation not in ANIMATION_TYPES:
            animation = DEFAULT_ANIMATION
        theme = data.get("colorTheme")
        if theme not in COLOR_THEMES:
            theme = DEFAULT_COLOR_THEME
        message_id = data.get("messageId")
        if not isinstance(message_id, str) or not message_id:
            message_id = new_message_id()
        return cls(
            content=content,
            animation_type=animation,
            color_theme=theme,
            board_state=board_state_from_raw(data.get("boardState")),
            message_id=message_id,
        )


@dataclass(slots=True)
class SessionNotice:
    """Out-of-band notification carried by terminate/force-disconnect events."""

    reason: str
    message: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionNotice":
        return cls(
            reason=str(data.get("reason") or "unknown"),
            message=str(data.get("message") or ""),
        )


@dataclass(slots=True)
class InactivityWarning:
    message: str
    minutes_remaining: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InactivityWarning":
        try:
            minutes = int(data.get("minutesRemaining", 0))
        except (TypeError, ValueError):
            minutes = 0
        return cls(
            message=str(data.get("message") or ""),
            minutes_remaining=max(0, minutes),
        )


@dataclass(slots=True)
class JoinRequest:
    """First frame a client sends on the relay."""

    session_code: str
    role: Role
    user_id: Optional[str] = None
    token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "sessionCode": self.session_code,
            "role": self.role.value,
        }
        if self.user_id:
            data["userId"] = self.user_id
        if self.token:
            data["token"] = self.token
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinRequest":
        user_id = data.get("userId")
        token = data.get("token")
        return cls(
            session_code=normalize_session_code(data.get("sessionCode")),
            role=Role(data.get("role") or Role.DISPLAY.value),
            user_id=str(user_id) if user_id else None,
            token=str(token) if token else None,
        )
