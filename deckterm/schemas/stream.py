"""Frames exchanged on /ws/terminals/{id}.

Client frames are JSON objects tagged by ``type``. Anything that is not a JSON
object (plain keystrokes, binary frames, bare JSON values) is kept as RawInput
and written to the PTY verbatim. A JSON object that is not a recognised control
message becomes IgnoredMessage and never reaches the shell.
"""

import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


# ── Client → server ─────────────────────────────────────────────────────────


class InputMessage(BaseModel):
    type: Literal["input"]
    data: str


class ResizeMessage(BaseModel):
    type: Literal["resize"]
    cols: int | None = None
    rows: int | None = None


class PingMessage(BaseModel):
    type: Literal["ping"]


class PongMessage(BaseModel):
    type: Literal["pong"]


class RawInput(BaseModel):
    """Fallback for payloads that are not JSON objects."""

    type: Literal["raw"] = "raw"
    data: bytes


class IgnoredMessage(BaseModel):
    type: Literal["ignored"] = "ignored"
    original_type: str | None = None


ClientMessage = Union[InputMessage, ResizeMessage, PingMessage, PongMessage, RawInput, IgnoredMessage]

_tagged_adapter = TypeAdapter(
    Annotated[
        Union[InputMessage, ResizeMessage, PingMessage, PongMessage],
        Field(discriminator="type"),
    ]
)


def decode_client_message(raw: str | bytes) -> ClientMessage:
    """Decode one inbound frame. Never raises."""
    if isinstance(raw, (bytes, bytearray)):
        return RawInput(data=bytes(raw))
    try:
        payload = json.loads(raw)
    except (ValueError, RecursionError):
        return RawInput(data=raw.encode("utf-8"))
    if not isinstance(payload, dict):
        return RawInput(data=raw.encode("utf-8"))
    try:
        return _tagged_adapter.validate_python(payload)
    except ValidationError:
        kind = payload.get("type")
        return IgnoredMessage(original_type=kind if isinstance(kind, str) else None)


# ── Server → client ─────────────────────────────────────────────────────────


class ExitNotice(BaseModel):
    type: Literal["exit"] = "exit"
    code: int | None = None


class IdleTimeoutNotice(BaseModel):
    type: Literal["idle_timeout"] = "idle_timeout"


class ClosedNotice(BaseModel):
    type: Literal["closed"] = "closed"


class PongFrame(BaseModel):
    type: Literal["pong"] = "pong"


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str
