"""Line-delimited JSON codec for the bridge <-> backend stdio protocol.

Every message is one compact JSON object terminated by ``\\n``. Requests carry
``id``/``method``/``params``; responses carry ``id`` plus exactly one of
``result`` or ``error``; events carry ``event``/``data`` and no id.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ..constants import DEFAULT_MAX_MESSAGE_BYTES, DEFAULT_READ_CHUNK
from .errors import MalformedResponse

JsonValue = Union[None, bool, int, float, str, List["JsonValue"], Dict[str, "JsonValue"]]

_ID_VALUE = re.compile(rb'\s*:\s*(\d+)(?![\d.eE])')
_RAW_PREVIEW = 256


def _check_text(text: str, path: str) -> None:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        raise TypeError(f"{path}: string is not encodable as UTF-8 (lone surrogate)") from None


def ensure_json_value(value: Any, *, _path: str = "payload") -> JsonValue:
    """Reject values that have no JSON representation.

    Raises:
        TypeError: for non-JSON types, non-string object keys, strings that
            cannot be written as UTF-8, or NaN/inf floats.
    """
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, str):
        _check_text(value, _path)
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise TypeError(f"{_path}: {value!r} is not valid JSON")
        return value
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            ensure_json_value(item, _path=f"{_path}[{index}]")
        return value
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{_path}: object keys must be strings, got {type(key).__name__}")
            _check_text(key, _path)
            ensure_json_value(item, _path=f"{_path}.{key}")
        return value
    raise TypeError(f"{_path}: {type(value).__name__} is not a JSON value")


@dataclass(frozen=True)
class RequestEnvelope:
    id: int
    method: str
    payload: JsonValue = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "method": self.method, "params": self.payload}


@dataclass(frozen=True)
class ResponseEnvelope:
    id: int
    result: JsonValue = None
    error: JsonValue = None
    is_error: bool = False

    @classmethod
    def success(cls, request_id: int, result: JsonValue) -> "ResponseEnvelope":
        return cls(id=request_id, result=result)

    @classmethod
    def failure(cls, request_id: int, error: JsonValue) -> "ResponseEnvelope":
        return cls(id=request_id, error=error, is_error=True)


@dataclass(frozen=True)
class EventEnvelope:
    """Unsolicited notification pushed by the backend (e.g. install progress)."""

    event: str
    data: JsonValue = None


Message = Union[ResponseEnvelope, EventEnvelope]


def encode(envelope: RequestEnvelope) -> bytes:
    """Serialise one request as a single newline-terminated frame."""
    if not isinstance(envelope.method, str) or not envelope.method:
        raise ValueError("request method must be a non-empty string")
    ensure_json_value(envelope.payload)
    text = json.dumps(envelope.to_dict(), ensure_ascii=False, separators=(",", ":"),
                      allow_nan=False)
    return text.encode("utf-8") + b"\n"


def _salvage_id(raw: bytes) -> Optional[int]:
    """Recover the request id of a broken frame from its outermost object only.

    Ids nested inside ``result``, ``error`` or event ``data`` belong to other
    requests and are never returned.
    """
    if not raw.lstrip().startswith(b"{"):
        return None
    depth = 0
    in_string = False
    escaped = False
    string_start = 0
    for index, byte in enumerate(raw):
        if in_string:
            if escaped:
                escaped = False
            elif byte == 0x5C:  # backslash
                escaped = True
            elif byte == 0x22:
                in_string = False
                if depth == 1 and raw[string_start:index] == b"id":
                    match = _ID_VALUE.match(raw, index + 1)
                    if match is not None:
                        return int(match.group(1))
            continue
        if byte == 0x22:
            in_string = True
            string_start = index + 1
        elif byte in (0x7B, 0x5B):
            depth += 1
        elif byte in (0x7D, 0x5D):
            depth -= 1
    return None


def decode_frame(frame: bytes) -> Message:
    """Decode one complete frame (without its terminator).

    Raises:
        MalformedResponse: if the frame is not a valid response or event.
    """
    try:
        data = json.loads(frame.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedResponse(f"undecodable frame: {exc}", raw=frame,
                                request_id=_salvage_id(frame)) from None

    if not isinstance(data, dict):
        raise MalformedResponse("frame is not a JSON object", raw=frame)

    if "event" in data and "id" not in data:
        topic = data["event"]
        if not isinstance(topic, str) or not topic:
            raise MalformedResponse("event name must be a non-empty string", raw=frame)
        return EventEnvelope(event=topic, data=data.get("data"))

    request_id = data.get("id")
    # bool is an int subclass but never a valid id
    if not isinstance(request_id, int) or isinstance(request_id, bool):
        raise MalformedResponse("response id missing or not an integer", raw=frame)

    has_result = "result" in data
    has_error = "error" in data
    if has_result == has_error:
        raise MalformedResponse("response must carry exactly one of result/error",
                                raw=frame, request_id=request_id)
    if has_error:
        return ResponseEnvelope.failure(request_id, data["error"])
    return ResponseEnvelope.success(request_id, data["result"])


class FrameBuffer:
    """Accumulates raw bytes and yields complete newline-delimited frames."""

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_MESSAGE_BYTES) -> None:
        self._buffer = bytearray()
        self._max = max_frame_bytes
        self._discarding = False
        self._discarded_preview = b""

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def pending_bytes(self) -> int:
        return len(self._buffer)

    def next_frame(self) -> Optional[bytes]:
        """Return the next complete frame, or ``None`` if more bytes are needed.

        Raises:
            MalformedResponse: when a frame exceeded the size limit; the
                oversized bytes are dropped up to the next terminator.
        """
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                if len(self._buffer) > self._max:
                    if not self._discarding:
                        self._discarded_preview = bytes(self._buffer[:_RAW_PREVIEW])
                    self._discarding = True
                    del self._buffer[:]
                return None

            frame = bytes(self._buffer[:index])
            del self._buffer[:index + 1]

            if self._discarding or len(frame) > self._max:
                preview = self._discarded_preview if self._discarding else frame[:_RAW_PREVIEW]
                self._discarding = False
                self._discarded_preview = b""
                raise MalformedResponse(f"frame exceeds {self._max} bytes", raw=preview,
                                        request_id=_salvage_id(preview))

            frame = frame.rstrip(b"\r")
            if not frame.strip():
                continue
            return frame

    def take_remainder(self) -> bytes:
        remainder = self._discarded_preview if self._discarding else bytes(self._buffer)
        del self._buffer[:]
        self._discarding = False
        self._discarded_preview = b""
        return remainder


class StreamDecoder:
    """Reads messages one at a time from a backend output stream."""

    def __init__(self, reader: asyncio.StreamReader, *,
                 max_frame_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
                 chunk_size: int = DEFAULT_READ_CHUNK) -> None:
        self._reader = reader
        self._frames = FrameBuffer(max_frame_bytes)
        self._chunk_size = chunk_size
        self._eof = False

    async def decode(self) -> Optional[Message]:
        """Return the next message, or ``None`` once the stream is exhausted.

        Raises:
            MalformedResponse: for one bad frame; the next call resumes at the
                following frame boundary.
        """
        while True:
            frame = self._frames.next_frame()
            if frame is not None:
                return decode_frame(frame)
            if self._eof:
                return None
            chunk = await self._reader.read(self._chunk_size)
            if not chunk:
                self._eof = True
                remainder = self._frames.take_remainder()
                if remainder.strip():
                    raise MalformedResponse("stream ended inside a frame", raw=remainder,
                                            request_id=_salvage_id(remainder))
                return None
            self._frames.feed(chunk)


class LineCodec:
    """Codec instance owned by a bridge; carries the frame size limit."""

    def __init__(self, *, max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES) -> None:
        self.max_message_bytes = max_message_bytes

    def encode(self, envelope: RequestEnvelope) -> bytes:
        data = encode(envelope)
        if len(data) > self.max_message_bytes:
            raise ValueError(f"request {envelope.id} is {len(data)} bytes, "
                             f"limit is {self.max_message_bytes}")
        return data

    def decoder(self, reader: asyncio.StreamReader) -> StreamDecoder:
        return StreamDecoder(reader, max_frame_bytes=self.max_message_bytes)


__all__ = [
    "JsonValue",
    "RequestEnvelope",
    "ResponseEnvelope",
    "EventEnvelope",
    "Message",
    "ensure_json_value",
    "encode",
    "decode_frame",
    "FrameBuffer",
    "StreamDecoder",
    "LineCodec",
]
