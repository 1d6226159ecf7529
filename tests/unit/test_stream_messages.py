"""Unit tests for stream frame decoding."""

import json

from deckterm.schemas.stream import (
    ErrorFrame,
    ExitNotice,
    IdleTimeoutNotice,
    IgnoredMessage,
    InputMessage,
    PingMessage,
    PongMessage,
    RawInput,
    ResizeMessage,
    decode_client_message,
)


class TestDecodeClientMessage:
    def test_input(self):
        message = decode_client_message('{"type": "input", "data": "ls -la\\r"}')
        assert message == InputMessage(type="input", data="ls -la\r")

    def test_resize(self):
        message = decode_client_message('{"type": "resize", "cols": 100, "rows": 40}')
        assert isinstance(message, ResizeMessage)
        assert (message.cols, message.rows) == (100, 40)

    def test_resize_missing_dimension(self):
        message = decode_client_message('{"type": "resize", "rows": 40}')
        assert isinstance(message, ResizeMessage)
        assert message.cols is None

    def test_ping_and_pong(self):
        assert isinstance(decode_client_message('{"type": "ping"}'), PingMessage)
        assert isinstance(decode_client_message('{"type": "pong"}'), PongMessage)

    def test_plain_keystrokes_are_raw(self):
        message = decode_client_message("echo hi\r")
        assert message == RawInput(data=b"echo hi\r")

    def test_unknown_type_is_ignored(self):
        message = decode_client_message('{"type": "telemetry", "x": 1}')
        assert message == IgnoredMessage(original_type="telemetry")

    def test_wrong_field_type_is_ignored(self):
        assert isinstance(decode_client_message('{"type": "input", "data": 42}'), IgnoredMessage)
        assert isinstance(decode_client_message('{"type": "resize", "cols": "wide"}'), IgnoredMessage)

    def test_untagged_object_is_ignored(self):
        assert decode_client_message("{}") == IgnoredMessage()

    def test_bare_json_values_are_raw(self):
        assert decode_client_message("42") == RawInput(data=b"42")
        assert decode_client_message('"quoted"') == RawInput(data=b'"quoted"')
        assert decode_client_message("[1, 2]") == RawInput(data=b"[1, 2]")

    def test_bytes_are_raw(self):
        assert decode_client_message(b"\x1b[A") == RawInput(data=b"\x1b[A")


class TestServerFrames:
    def test_exit_notice(self):
        assert json.loads(ExitNotice(code=0).model_dump_json()) == {"type": "exit", "code": 0}

    def test_idle_timeout_notice(self):
        assert json.loads(IdleTimeoutNotice().model_dump_json()) == {"type": "idle_timeout"}

    def test_error_frame(self):
        frame = ErrorFrame(code="not_found", message="Terminal not found.")
        assert json.loads(frame.model_dump_json()) == {
            "type": "error",
            "code": "not_found",
            "message": "Terminal not found.",
        }
