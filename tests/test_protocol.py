import pytest

from shared.protocol import (
    MAX_MESSAGE_LENGTH,
    SESSION_CODE_ALPHABET,
    BoardMessage,
    InactivityWarning,
    InvalidSessionCode,
    JoinRequest,
    RelayEvent,
    Role,
    decode_event,
    encode_event,
    generate_session_code,
    is_paired,
    is_valid_session_code,
    normalize_session_code,
)


def test_encode_decode_event_roundtrip() -> None:
    encoded = encode_event(RelayEvent.CONNECTION_STATUS, {"connected": True})
    event, data = decode_event(encoded)
    assert event is RelayEvent.CONNECTION_STATUS
    assert data == {"connected": True}


def test_decode_event_rejects_unknown_event_and_bad_payload() -> None:
    with pytest.raises(ValueError):
        decode_event('{"event": "nope", "data": {}}')
    with pytest.raises(ValueError):
        decode_event('{"event": "join", "data": [1, 2]}')
    with pytest.raises(ValueError):
        decode_event("not json")


def test_session_codes_are_case_insensitive() -> None:
    assert normalize_session_code("  ab12cd ") == "AB12CD"
    assert is_valid_session_code("xyz789") is True
    assert is_valid_session_code("ABC") is False
    assert is_valid_session_code("ABC-12") is False
    with pytest.raises(InvalidSessionCode):
        normalize_session_code(None)
    with pytest.raises(ValueError):
        normalize_session_code("TOOLONG1")


def test_generated_codes_use_alphabet() -> None:
    for _ in range(20):
        code = generate_session_code()
        assert len(code) == 6
        assert set(code) <= set(SESSION_CODE_ALPHABET)


def test_is_paired_prefers_canonical_field() -> None:
    assert is_paired({"paired": False, "controllerId": "someone", "status": "paired"}) is False
    assert is_paired({"paired": True}) is True


def test_is_paired_falls_back_to_legacy_fields() -> None:
    assert is_paired({"status": "paired"}) is True
    assert is_paired({"controllerId": "ctrl-1"}) is True
    assert is_paired({"controllerConnected": True}) is True
    assert is_paired({"status": "unpaired", "controllerId": None}) is False


def test_board_message_defaults_unknown_enums() -> None:
    message = BoardMessage.from_dict(
        {
            "content": "HELLO",
            "animationType": "spin",
            "colorTheme": "neon",
            "boardState": [[{"char": "H", "color": "#fff"}, {"char": "I"}]],
        }
    )
    assert message.animation_type == "flip"
    assert message.color_theme == "monochrome"
    assert message.message_id
    assert message.board_state is not None
    assert message.board_state[0][0].color == "#fff"
    assert message.to_dict()["boardState"][0][1] == {"char": "I"}


def test_board_message_rejects_bad_cells() -> None:
    with pytest.raises(ValueError):
        BoardMessage.from_dict({"content": "x", "boardState": [[{"char": "AB"}]]})
    with pytest.raises(ValueError):
        BoardMessage.from_dict({"content": 5})
    with pytest.raises(ValueError, match="cells must be objects"):
        BoardMessage.from_dict({"content": "x", "boardState": [["A"]]})
    with pytest.raises(ValueError):
        BoardMessage.from_dict({"content": "x", "boardState": [[None]]})


def test_board_message_content_length_bounds() -> None:
    with pytest.raises(ValueError, match="empty"):
        BoardMessage.from_dict({"content": ""})
    with pytest.raises(ValueError, match="longer than 1000"):
        BoardMessage.from_dict({"content": "A" * (MAX_MESSAGE_LENGTH + 1)})
    assert BoardMessage.from_dict({"content": "A" * MAX_MESSAGE_LENGTH}).content == "A" * 1000


def test_join_request_normalizes_code() -> None:
    request = JoinRequest.from_dict({"sessionCode": "abc123", "role": "controller", "token": "t"})
    assert request.session_code == "ABC123"
    assert request.role is Role.CONTROLLER
    assert request.to_dict() == {"sessionCode": "ABC123", "role": "controller", "token": "t"}
    with pytest.raises(ValueError):
        JoinRequest.from_dict({"sessionCode": "abc123", "role": "spectator"})


def test_inactivity_warning_clamps_minutes() -> None:
    warning = InactivityWarning.from_dict({"message": "soon", "minutesRemaining": "-3"})
    assert warning.minutes_remaining == 0
    assert InactivityWarning.from_dict({"minutesRemaining": "x"}).minutes_remaining == 0
