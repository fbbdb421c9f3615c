"""voyeurs network protocol definitions.

Every frame on the wire is a 4-byte big-endian length followed by a UTF-8
JSON envelope ``{"type": ..., "payload": {...}}``.
"""
from __future__ import annotations
import json
import math
import struct
from dataclasses import dataclass
from typing import Any, ClassVar, Union

from shared.errors import MalformedMessage, UnsupportedVersion

PROTOCOL_VERSION = 1
SUPPORTED_VERSIONS = frozenset({PROTOCOL_VERSION})

MAX_FRAME_SIZE = 64 * 1024
_HEADER = struct.Struct(">I")
HEADER_SIZE = _HEADER.size

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1

# ---- Message types ----
MSG_HELLO = "HELLO"
MSG_FULL_STATE = "FULL_STATE"
MSG_STATE_DELTA = "STATE_DELTA"
MSG_PING = "PING"
MSG_PONG = "PONG"
MSG_ERROR = "ERROR"


@dataclass(frozen=True)
class PlaybackState:
    media_ref: str = ""
    position: float = 0.0  # seconds
    paused: bool = True
    rate: float = 1.0
    epoch: int = 0


@dataclass(frozen=True)
class Hello:
    TYPE: ClassVar[str] = MSG_HELLO
    protocol_version: int = PROTOCOL_VERSION
    username: str = ""


@dataclass(frozen=True)
class FullState:
    TYPE: ClassVar[str] = MSG_FULL_STATE
    state: PlaybackState


@dataclass(frozen=True)
class StateDelta:
    TYPE: ClassVar[str] = MSG_STATE_DELTA
    state: PlaybackState


@dataclass(frozen=True)
class Ping:
    TYPE: ClassVar[str] = MSG_PING
    sent_time: int  # ms since the sender's session started


@dataclass(frozen=True)
class Pong:
    TYPE: ClassVar[str] = MSG_PONG
    echoed_sent_time: int


@dataclass(frozen=True)
class Error:
    TYPE: ClassVar[str] = MSG_ERROR
    reason: str


Message = Union[Hello, FullState, StateDelta, Ping, Pong, Error]


def _state_to_dict(state: PlaybackState) -> dict[str, Any]:
    return {
        "media_ref": state.media_ref,
        "position": float(state.position),
        "paused": state.paused,
        "rate": float(state.rate),
        "epoch": state.epoch,
    }


def _payload(msg: Message) -> dict[str, Any]:
    if isinstance(msg, Hello):
        return {"protocol_version": msg.protocol_version, "username": msg.username}
    if isinstance(msg, (FullState, StateDelta)):
        return _state_to_dict(msg.state)
    if isinstance(msg, Ping):
        return {"sent_time": msg.sent_time}
    if isinstance(msg, Pong):
        return {"echoed_sent_time": msg.echoed_sent_time}
    if isinstance(msg, Error):
        return {"reason": msg.reason}
    raise TypeError(f"Not a protocol message: {msg!r}")


def encode(msg: Message) -> bytes:
    """Serialize a message into one length-prefixed frame."""
    body = json.dumps(
        {"type": msg.TYPE, "payload": _payload(msg)},
        separators=(",", ":"),
        allow_nan=False,
    ).encode("utf-8")
    if len(body) > MAX_FRAME_SIZE:
        raise ValueError(f"Message too large to frame ({len(body)} bytes)")
    return _HEADER.pack(len(body)) + body


# ---- decoding ----

def _reject_constant(name: str) -> Any:
    raise MalformedMessage(f"Non-finite number {name} in message")


def _field(payload: dict[str, Any], key: str) -> Any:
    try:
        return payload[key]
    except KeyError:
        raise MalformedMessage(f"Missing field '{key}'") from None


def _int(payload: dict[str, Any], key: str, upper: int) -> int:
    val = _field(payload, key)
    # bool is an int subclass; refuse it explicitly
    if isinstance(val, bool) or not isinstance(val, int):
        raise MalformedMessage(f"Field '{key}' must be an integer")
    if not 0 <= val <= upper:
        raise MalformedMessage(f"Field '{key}' out of range: {val}")
    return val


def _float(payload: dict[str, Any], key: str) -> float:
    val = _field(payload, key)
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise MalformedMessage(f"Field '{key}' must be a number")
    val = float(val)
    if not math.isfinite(val):
        raise MalformedMessage(f"Field '{key}' must be finite")
    return val


def _bool(payload: dict[str, Any], key: str) -> bool:
    val = _field(payload, key)
    if not isinstance(val, bool):
        raise MalformedMessage(f"Field '{key}' must be a boolean")
    return val


def _str(payload: dict[str, Any], key: str) -> str:
    val = _field(payload, key)
    if not isinstance(val, str):
        raise MalformedMessage(f"Field '{key}' must be a string")
    return val


def _state_from_dict(payload: dict[str, Any]) -> PlaybackState:
    rate = _float(payload, "rate")
    if rate <= 0.0:
        raise MalformedMessage(f"Rate must be positive, got {rate}")
    return PlaybackState(
        media_ref=_str(payload, "media_ref"),
        position=_float(payload, "position"),
        paused=_bool(payload, "paused"),
        rate=rate,
        epoch=_int(payload, "epoch", _U64_MAX),
    )


def _decode_body(body: bytes) -> Message:
    try:
        data = json.loads(body.decode("utf-8"), parse_constant=_reject_constant)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"Invalid envelope: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage("Envelope must be an object")
    msg_type = data.get("type")
    payload = data.get("payload", {})
    if not isinstance(payload, dict):
        raise MalformedMessage("Payload must be an object")

    if msg_type == MSG_HELLO:
        version = _int(payload, "protocol_version", _U32_MAX)
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersion(version)
        username = _str(payload, "username") if "username" in payload else ""
        return Hello(protocol_version=version, username=username)
    if msg_type == MSG_FULL_STATE:
        return FullState(_state_from_dict(payload))
    if msg_type == MSG_STATE_DELTA:
        return StateDelta(_state_from_dict(payload))
    if msg_type == MSG_PING:
        return Ping(sent_time=_int(payload, "sent_time", _U64_MAX))
    if msg_type == MSG_PONG:
        return Pong(echoed_sent_time=_int(payload, "echoed_sent_time", _U64_MAX))
    if msg_type == MSG_ERROR:
        return Error(reason=_str(payload, "reason"))
    raise MalformedMessage(f"Unknown message type: {msg_type!r}")


def decode(data: bytes) -> Message:
    """Decode exactly one frame. Raises MalformedMessage or UnsupportedVersion."""
    if len(data) < HEADER_SIZE:
        raise MalformedMessage("Truncated frame header")
    (length,) = _HEADER.unpack_from(data)
    if length > MAX_FRAME_SIZE:
        raise MalformedMessage(f"Frame length {length} exceeds limit")
    if len(data) - HEADER_SIZE < length:
        raise MalformedMessage("Truncated frame body")
    if len(data) - HEADER_SIZE > length:
        raise MalformedMessage("Trailing bytes after frame")
    return _decode_body(bytes(data[HEADER_SIZE:]))


class FrameReader:
    """Reassembles frames from a byte stream fed in arbitrary chunks."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, chunk: bytes) -> list[Message]:
        self._buf.extend(chunk)
        messages: list[Message] = []
        while len(self._buf) >= HEADER_SIZE:
            (length,) = _HEADER.unpack_from(self._buf)
            if length > MAX_FRAME_SIZE:
                raise MalformedMessage(f"Frame length {length} exceeds limit")
            end = HEADER_SIZE + length
            if len(self._buf) < end:
                break
            body = bytes(self._buf[HEADER_SIZE:end])
            del self._buf[:end]
            messages.append(_decode_body(body))
        return messages

    @property
    def pending_bytes(self) -> int:
        return len(self._buf)
